"""Status enums and their transition tables.

Status columns store the enum values; every status change made by the
engine goes through :func:`transition` so that an illegal move (for
example ``sent -> queued``) raises instead of being written.
"""

from enum import Enum

from app.core.errors import IllegalTransition


class Provider(str, Enum):
    """Mail provider of an account."""

    GOOGLE = "GOOGLE"
    MICROSOFT = "MICROSOFT"


class SyncStatus(str, Enum):
    """Account-level sync state."""

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"
    PAUSED = "paused"  # user-disabled, excluded from automatic triggers


class SyncType(str, Enum):
    """Kinds of per-account sync checkpoints."""

    MESSAGES = "messages"
    FOLDERS = "folders"
    CALENDAR = "calendar"
    CONTACTS = "contacts"


class ScheduledStatus(str, Enum):
    """Delivery state of a scheduled email."""

    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class FolderType(str, Enum):
    INBOX = "inbox"
    SENT = "sent"
    DRAFTS = "drafts"
    TRASH = "trash"
    SPAM = "spam"
    ARCHIVE = "archive"
    STARRED = "starred"
    IMPORTANT = "important"
    SNOOZED = "snoozed"
    CUSTOM = "custom"


SYNC_TRANSITIONS: dict[SyncStatus, frozenset[SyncStatus]] = {
    SyncStatus.IDLE: frozenset({SyncStatus.SYNCING, SyncStatus.PAUSED}),
    # error -> idle is a reconnect
    SyncStatus.ERROR: frozenset({SyncStatus.SYNCING, SyncStatus.PAUSED, SyncStatus.IDLE}),
    SyncStatus.SYNCING: frozenset({SyncStatus.IDLE, SyncStatus.ERROR}),
    SyncStatus.PAUSED: frozenset({SyncStatus.IDLE}),
}

SCHEDULED_TRANSITIONS: dict[ScheduledStatus, frozenset[ScheduledStatus]] = {
    ScheduledStatus.QUEUED: frozenset({ScheduledStatus.SENDING}),
    ScheduledStatus.SENDING: frozenset(
        {ScheduledStatus.SENT, ScheduledStatus.QUEUED, ScheduledStatus.FAILED}
    ),
    ScheduledStatus.SENT: frozenset(),
    ScheduledStatus.FAILED: frozenset(),
}


def transition(current, target):
    """Validate ``current -> target`` and return ``target``.

    Works for both :class:`SyncStatus` and :class:`ScheduledStatus`.
    """
    if isinstance(current, SyncStatus):
        table = SYNC_TRANSITIONS
    elif isinstance(current, ScheduledStatus):
        table = SCHEDULED_TRANSITIONS
    else:
        raise TypeError(f"No transition table for {type(current).__name__}")

    if target not in table[current]:
        raise IllegalTransition(current.value, target.value)
    return target


def allowed_sources(target) -> frozenset:
    """All states from which ``target`` may be entered."""
    table = SYNC_TRANSITIONS if isinstance(target, SyncStatus) else SCHEDULED_TRANSITIONS
    return frozenset(state for state, targets in table.items() if target in targets)
