"""SQLAlchemy models package."""

from app.models.mail import (
    Contact,
    EmailAccount,
    MailFolder,
    MailMessage,
    OAuthCredential,
    SyncCheckpoint,
)
from app.models.delivery import Notification, QueuedSend, ScheduledEmail
from app.models.vacation import VacationReply, VacationResponder
from app.models.snooze import SnoozedEmail
from app.models.event import Event
from app.models.states import (
    FolderType,
    Provider,
    ScheduledStatus,
    SyncStatus,
    SyncType,
)

__all__ = [
    "EmailAccount",
    "OAuthCredential",
    "SyncCheckpoint",
    "MailFolder",
    "MailMessage",
    "Contact",
    "QueuedSend",
    "ScheduledEmail",
    "Notification",
    "VacationResponder",
    "VacationReply",
    "SnoozedEmail",
    "Event",
    "FolderType",
    "Provider",
    "ScheduledStatus",
    "SyncStatus",
    "SyncType",
]
