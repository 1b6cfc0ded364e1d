"""Vacation auto-reply configuration and reply log."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import Boolean, ForeignKey, String, Text, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.models.types import UTCDateTime


class VacationResponder(Base):
    __tablename__ = "vacation_responders"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    account_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("email_accounts.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    start_date: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Null = active immediately"
    )
    end_date: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Null = active until disabled"
    )
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now()
    )


class VacationReply(Base):
    """One auto-reply sent to ``sender_email`` in the current window."""

    __tablename__ = "vacation_replies"
    __table_args__ = (
        UniqueConstraint("responder_id", "sender_email", name="uq_vacation_reply_sender"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    responder_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("vacation_responders.id", ondelete="CASCADE"),
        nullable=False,
    )
    sender_email: Mapped[str] = mapped_column(String(255), nullable=False)
    replied_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
