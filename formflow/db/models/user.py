from sqlalchemy import Boolean, Enum, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from formflow.core.models import Role
from formflow.db.base import Base


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), default="", index=True)
    role: Mapped[Role] = mapped_column(Enum(Role), index=True, default=Role.USER)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # [{"resource": "forms", "actions": ["read"]}, ...]
    permissions_json: Mapped[str] = mapped_column(Text, default="[]")
