from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from formflow.core.models import SubmissionStatus
from formflow.db.base import Base


class SubmissionRow(Base):
    __tablename__ = "form_submissions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    form_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    application_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    submitted_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)

    status: Mapped[SubmissionStatus] = mapped_column(
        Enum(SubmissionStatus), index=True, default=SubmissionStatus.SUBMITTED
    )
    data_json: Mapped[str] = mapped_column(Text, default="{}")
    # NULL until the first workflow action
    workflow_state_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Optimistic concurrency: every save bumps it, saves compare it.
    revision: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
