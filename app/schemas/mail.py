"""Pydantic schemas for the mail endpoints."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.states import Provider, ScheduledStatus, SyncStatus
from app.services.mail.base import SendParams


# ── Accounts ──


class AccountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider: Provider
    email_address: str
    sync_status: SyncStatus
    last_synced_at: datetime | None = None
    initial_synced_at: datetime | None = None
    error_message: str | None = None
    is_primary: bool = False
    created_at: datetime | None = None


class AuthorizationUrlRequest(BaseModel):
    provider: Provider
    redirect_uri: str
    state: str
    code_challenge: str


class AuthorizationUrlResponse(BaseModel):
    url: str


class ConnectRequest(BaseModel):
    """Payload of the OAuth callback once the frontend has checked ``state``."""

    provider: Provider
    code: str
    redirect_uri: str
    code_verifier: str


class PauseRequest(BaseModel):
    paused: bool


# ── Drafts ──


class Recipient(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    name: str | None = None

    @field_validator("email")
    @classmethod
    def _has_at(cls, value: str) -> str:
        value = value.strip()
        if "@" not in value:
            raise ValueError("Invalid email address")
        return value


class DraftIn(BaseModel):
    account_id: UUID
    to: list[Recipient] = Field(min_length=1)
    cc: list[Recipient] | None = None
    bcc: list[Recipient] | None = None
    subject: str = Field(default="", max_length=1000)
    body_text: str | None = None
    body_html: str | None = None
    in_reply_to: str | None = None

    def to_params(self) -> SendParams:
        def _dump(recipients: list[Recipient] | None) -> list[dict] | None:
            if not recipients:
                return None
            return [r.model_dump(exclude_none=True) for r in recipients]

        return SendParams(
            to=_dump(self.to) or [],
            cc=_dump(self.cc),
            bcc=_dump(self.bcc),
            subject=self.subject,
            body_text=self.body_text,
            body_html=self.body_html,
            in_reply_to=self.in_reply_to,
        )


# ── Undo-send ──


class QueueSendRequest(DraftIn):
    delay_seconds: int | None = Field(default=None, ge=0, le=300)


class QueueSendResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    send_at: datetime


class CancelSendRequest(BaseModel):
    queue_id: UUID


class CancelSendResponse(BaseModel):
    success: bool = True
    message: str = "Email send canceled"


# ── Scheduled send ──


class ScheduleRequest(DraftIn):
    scheduled_for: datetime


class ScheduledEmailRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_id: UUID
    subject: str
    scheduled_for: datetime
    status: ScheduledStatus
    retry_count: int
    error_message: str | None = None
    sent_at: datetime | None = None


# ── Snooze ──


class SnoozeRequest(BaseModel):
    message_id: UUID
    snooze_until: datetime


class SnoozeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    message_id: UUID
    snooze_until: datetime
    unsnoozed: bool


# ── Vacation ──


class VacationConfigRequest(BaseModel):
    account_id: UUID
    enabled: bool
    start_date: datetime | None = None
    end_date: datetime | None = None
    message: str = Field(min_length=1)


class VacationConfigRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_id: UUID
    enabled: bool
    start_date: datetime | None = None
    end_date: datetime | None = None
    message: str
    updated_at: datetime | None = None
