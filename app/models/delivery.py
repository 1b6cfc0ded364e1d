"""Outbound delivery models.

Tables:
- queued_sends: undo-send window; sent at ``send_at`` unless canceled first
- scheduled_emails: user-scheduled messages with bounded retries
- notifications: user-facing notices (failed sends, returned snoozes)
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.models.states import ScheduledStatus
from app.models.types import JSONType, UTCDateTime, enum_column


class QueuedSend(Base):
    """A message held for the undo-send window.

    Terminal once ``sent`` or ``canceled``; the two are never both true.
    Rows are kept after delivery for auditing.
    """

    __tablename__ = "queued_sends"
    __table_args__ = (
        Index("ix_queued_sends_due", "sent", "canceled", "send_at"),
        CheckConstraint("NOT (sent AND canceled)", name="ck_queued_sends_terminal"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    account_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("email_accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    to_recipients: Mapped[list] = mapped_column(JSONType, nullable=False)
    cc_recipients: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    bcc_recipients: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    subject: Mapped[str] = mapped_column(String(1000), nullable=False, default="")
    body_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    body_html: Mapped[str | None] = mapped_column(Text, nullable=True)
    in_reply_to: Mapped[str | None] = mapped_column(
        String(500), nullable=True, comment="Message-ID being replied to"
    )
    send_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    canceled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now()
    )

    @property
    def is_terminal(self) -> bool:
        return self.sent or self.canceled


class ScheduledEmail(Base):
    """A message to deliver at ``scheduled_for``."""

    __tablename__ = "scheduled_emails"
    __table_args__ = (
        Index("ix_scheduled_emails_due", "status", "scheduled_for"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    account_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("email_accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    to_recipients: Mapped[list] = mapped_column(JSONType, nullable=False)
    cc_recipients: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    bcc_recipients: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    subject: Mapped[str] = mapped_column(String(1000), nullable=False, default="")
    body_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    body_html: Mapped[str | None] = mapped_column(Text, nullable=True)
    in_reply_to: Mapped[str | None] = mapped_column(String(500), nullable=True)
    scheduled_for: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[ScheduledStatus] = mapped_column(
        enum_column(ScheduledStatus),
        nullable=False,
        default=ScheduledStatus.QUEUED,
        comment="queued | sending | sent | failed",
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now()
    )


class Notification(Base):
    """A notice shown to the user."""

    __tablename__ = "notifications"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    account_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="info")
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    link: Mapped[str | None] = mapped_column(String(500), nullable=True)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
