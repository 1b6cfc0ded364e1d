"""Snoozed messages waiting to return to their folder."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import Boolean, ForeignKey, Index, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.models.states import FolderType
from app.models.types import UTCDateTime, enum_column


class SnoozedEmail(Base):
    __tablename__ = "snoozed_emails"
    __table_args__ = (Index("ix_snoozed_emails_due", "unsnoozed", "snooze_until"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    message_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("mail_messages.id", ondelete="CASCADE"),
        nullable=False,
    )
    snooze_until: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    original_folder_type: Mapped[FolderType] = mapped_column(
        enum_column(FolderType), nullable=False, default=FolderType.INBOX
    )
    unsnoozed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
