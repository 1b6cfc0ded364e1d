"""Abstract mail provider interface and shared data structures."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from app.models.states import FolderType
from app.models.types import utcnow

if TYPE_CHECKING:
    from app.services.mail.http import ProviderHttp


@dataclass
class TokenSet:
    """Tokens returned by a code exchange or refresh."""

    access_token: str
    refresh_token: str
    expires_at: datetime
    scopes: list[str] | None = None

    @classmethod
    def from_response(cls, data: dict, fallback_refresh_token: str = "") -> TokenSet:
        """Build from an OAuth token endpoint response (``expires_in`` seconds)."""
        scope = data.get("scope")
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or fallback_refresh_token,
            expires_at=utcnow() + timedelta(seconds=int(data.get("expires_in", 3600))),
            scopes=scope.split() if scope else None,
        )


@dataclass
class Folder:
    """A provider folder (Graph) or label (Gmail)."""

    provider_folder_id: str
    name: str
    folder_type: FolderType = FolderType.CUSTOM
    is_system_folder: bool = False
    unread_count: int = 0
    total_count: int = 0


@dataclass
class NormalizedMessage:
    """Provider-agnostic message, ready to be stored."""

    provider_message_id: str
    provider_thread_id: str | None
    internet_message_id: str | None
    sender: dict  # {"name": "...", "email": "..."}
    to_recipients: list[dict]
    cc_recipients: list[dict] | None
    bcc_recipients: list[dict] | None
    subject: str | None
    date: datetime
    snippet: str | None
    body_text: str | None
    body_html: str | None
    folder_id: str | None
    # None when the provider only reports an opaque folder id
    folder_type: FolderType | None
    is_read: bool
    is_starred: bool
    is_draft: bool
    has_attachments: bool
    raw_headers: dict | None  # References, In-Reply-To


class ChangeKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass
class SyncChange:
    """One entry of a delta: a created/updated message or a deleted id."""

    kind: ChangeKind
    provider_message_id: str
    message: NormalizedMessage | None = None


@dataclass
class ChangeSet:
    """Changes since a cursor plus the cursor to resume from next time."""

    changes: list[SyncChange] = field(default_factory=list)
    new_cursor: str | None = None


@dataclass
class MessagePage:
    messages: list[NormalizedMessage] = field(default_factory=list)
    next_cursor: str | None = None  # pageToken or @odata.nextLink


@dataclass
class SendParams:
    """Payload for sending an email."""

    to: list[dict]  # [{"name": "...", "email": "..."}]
    subject: str
    cc: list[dict] | None = None
    bcc: list[dict] | None = None
    body_text: str | None = None
    body_html: str | None = None
    in_reply_to: str | None = None
    references: list[str] | None = None


@dataclass
class SendResult:
    """Result from a successful send."""

    message_id: str  # provider_message_id, empty when the provider does not return one
    thread_id: str | None = None


@dataclass
class ContactInfo:
    email: str
    name: str | None = None
    phone: str | None = None
    company: str | None = None
    job_title: str | None = None


class MailProvider(ABC):
    """Abstract interface for a mail provider (Gmail, Microsoft).

    Every call takes the access token explicitly; token lifecycle belongs
    to :class:`app.services.token_manager.TokenManager`. Failures surface as
    the errors in :mod:`app.core.errors`.
    """

    def __init__(self, http: ProviderHttp, client_id: str, client_secret: str) -> None:
        self.http = http
        self.client_id = client_id
        self.client_secret = client_secret

    # ── OAuth ──

    @abstractmethod
    def get_auth_url(self, redirect_uri: str, state: str, code_challenge: str) -> str:
        """Authorization URL for the PKCE code flow."""

    @abstractmethod
    async def exchange_code(
        self, code: str, redirect_uri: str, code_verifier: str
    ) -> TokenSet:
        """Trade an authorization code for tokens."""

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> TokenSet:
        """Obtain a fresh access token."""

    # ── Mailbox ──

    @abstractmethod
    async def get_profile(self, token: str) -> dict:
        """Return account profile with at least ``email_address``."""

    @abstractmethod
    async def list_folders(self, token: str) -> list[Folder]:
        """All folders/labels of the mailbox."""

    @abstractmethod
    async def list_messages(
        self,
        token: str,
        folder_id: str | None = None,
        cursor: str | None = None,
        limit: int = 50,
    ) -> MessagePage:
        """One page of messages, newest first."""

    @abstractmethod
    async def list_changes(self, token: str, cursor: str | None) -> ChangeSet:
        """Changes since ``cursor``; with no cursor, the current baseline."""

    @abstractmethod
    async def send_message(self, token: str, params: SendParams) -> SendResult:
        """Send a new message."""

    @abstractmethod
    async def list_contacts(self, token: str, limit: int = 100) -> list[ContactInfo]:
        """Up to ``limit`` address book entries."""
