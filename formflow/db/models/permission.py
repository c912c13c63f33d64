from __future__ import annotations

from sqlalchemy import ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from formflow.db.base import Base


class PermissionRow(Base):
    """Per-resource grant. One row per (user_id, resource, resource_id)."""

    __tablename__ = "permissions"
    __table_args__ = (
        # NULL resource_id values never collide, so resource-wide grants rely on the upsert path
        Index("uq_permissions_user_resource", "user_id", "resource", "resource_id", unique=True),
    )

    # auto-increment id doubles as creation order
    pk: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), unique=True)

    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    resource: Mapped[str] = mapped_column(String(120), index=True)
    resource_id: Mapped[str | None] = mapped_column(String(120), nullable=True, index=True)
    application_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    permissions_json: Mapped[str] = mapped_column(Text, default="{}")
    field_permissions_json: Mapped[str | None] = mapped_column(Text, nullable=True)
