"""Pydantic schemas for API request/response validation."""

from app.schemas.mail import (
    AccountRead,
    AuthorizationUrlRequest,
    AuthorizationUrlResponse,
    CancelSendRequest,
    CancelSendResponse,
    ConnectRequest,
    DraftIn,
    PauseRequest,
    QueueSendRequest,
    QueueSendResponse,
    Recipient,
    ScheduledEmailRead,
    ScheduleRequest,
    SnoozeRead,
    SnoozeRequest,
    VacationConfigRead,
    VacationConfigRequest,
)

__all__ = [
    "AccountRead",
    "AuthorizationUrlRequest",
    "AuthorizationUrlResponse",
    "ConnectRequest",
    "PauseRequest",
    "Recipient",
    "DraftIn",
    "QueueSendRequest",
    "QueueSendResponse",
    "CancelSendRequest",
    "CancelSendResponse",
    "ScheduleRequest",
    "ScheduledEmailRead",
    "SnoozeRequest",
    "SnoozeRead",
    "VacationConfigRequest",
    "VacationConfigRead",
]
