"""Shared fixtures: a SQLite-backed container with fake providers.

Each test gets its own database file. The engine uses ``NullPool`` so no
connection outlives the event loop that opened it (the FastAPI test
client runs the app on a loop of its own).
"""

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

import app.models  # noqa: F401  (registers every table on Base.metadata)
from app.config import Settings
from app.container import Container
from app.core.errors import ProviderUnavailable
from app.database import Base
from app.models.mail import EmailAccount, MailMessage
from app.models.states import FolderType, Provider, SyncStatus
from app.models.types import utcnow
from app.services.mail.base import (
    ChangeSet,
    ContactInfo,
    Folder,
    MailProvider,
    MessagePage,
    NormalizedMessage,
    SendParams,
    SendResult,
    TokenSet,
)
from app.services.mail.factory import ProviderRegistry


# ─── Fakes ───────────────────────────────────────────────────────────


class FakeProvider(MailProvider):
    """In-memory provider recording every call."""

    def __init__(self, name: str = "fake") -> None:
        super().__init__(None, f"{name}-client", f"{name}-secret")
        self.profile_email = "owner@example.com"
        self.folders = [Folder("INBOX", "Inbox", FolderType.INBOX, True)]
        self.pages: dict[str, list[NormalizedMessage]] = {}
        self.contacts: list[ContactInfo] = []
        self.baseline_cursor = "100"
        self.change_set = ChangeSet(changes=[], new_cursor="100")

        self.refresh_calls = 0
        self.refresh_error: Exception | None = None
        self.change_cursors: list[str | None] = []
        self.changes_error: Exception | None = None
        self.changes_entered = asyncio.Event()
        self.changes_gate: asyncio.Event | None = None

        self.sent: list[SendParams] = []
        self.send_failures = 0

    def get_auth_url(self, redirect_uri: str, state: str, code_challenge: str) -> str:
        return f"https://auth.example.com/?redirect_uri={redirect_uri}&state={state}"

    async def exchange_code(self, code: str, redirect_uri: str, code_verifier: str) -> TokenSet:
        return TokenSet(
            access_token=f"access-{code}",
            refresh_token=f"refresh-{code}",
            expires_at=utcnow() + timedelta(hours=1),
            scopes=["mail"],
        )

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        self.refresh_calls += 1
        await asyncio.sleep(0.01)
        if self.refresh_error is not None:
            raise self.refresh_error
        return TokenSet(
            access_token=f"refreshed-{self.refresh_calls}",
            refresh_token="rotated-refresh",
            expires_at=utcnow() + timedelta(hours=1),
        )

    async def get_profile(self, token: str) -> dict:
        return {"email_address": self.profile_email}

    async def list_folders(self, token: str) -> list[Folder]:
        return list(self.folders)

    async def list_messages(
        self,
        token: str,
        folder_id: str | None = None,
        cursor: str | None = None,
        limit: int = 50,
    ) -> MessagePage:
        return MessagePage(messages=list(self.pages.get(folder_id or "", []))[:limit])

    async def list_changes(self, token: str, cursor: str | None) -> ChangeSet:
        self.change_cursors.append(cursor)
        self.changes_entered.set()
        if self.changes_gate is not None:
            await self.changes_gate.wait()
        if self.changes_error is not None:
            raise self.changes_error
        if cursor is None:
            return ChangeSet(changes=[], new_cursor=self.baseline_cursor)
        return self.change_set

    async def send_message(self, token: str, params: SendParams) -> SendResult:
        if self.send_failures > 0:
            self.send_failures -= 1
            raise ProviderUnavailable("Provider unavailable (503): try later")
        self.sent.append(params)
        return SendResult(message_id=f"sent-{len(self.sent)}")

    async def list_contacts(self, token: str, limit: int = 100) -> list[ContactInfo]:
        return list(self.contacts)[:limit]


class RecordingDispatcher:
    """Collects dispatched sync requests instead of enqueuing jobs."""

    def __init__(self) -> None:
        self.delta: list[UUID] = []
        self.initial: list[UUID] = []

    async def dispatch_delta_sync(self, account_id: UUID) -> None:
        self.delta.append(account_id)

    async def dispatch_initial_sync(self, account_id: UUID) -> None:
        self.initial.append(account_id)


# ─── Builders ────────────────────────────────────────────────────────


def make_message(
    provider_message_id: str,
    *,
    sender: str = "alice@example.com",
    subject: str | None = "Hello",
    folder_type: FolderType | None = FolderType.INBOX,
    is_read: bool = False,
) -> NormalizedMessage:
    return NormalizedMessage(
        provider_message_id=provider_message_id,
        provider_thread_id=f"thread-{provider_message_id}",
        internet_message_id=f"<{provider_message_id}@example.com>",
        sender={"name": "Alice", "email": sender},
        to_recipients=[{"name": "", "email": "owner@example.com"}],
        cc_recipients=None,
        bcc_recipients=None,
        subject=subject,
        date=datetime(2026, 1, 5, 9, 30, tzinfo=timezone.utc),
        snippet="Hi there",
        body_text="Hi there",
        body_html=None,
        folder_id="INBOX",
        folder_type=folder_type,
        is_read=is_read,
        is_starred=False,
        is_draft=False,
        has_attachments=False,
        raw_headers=None,
    )


# ─── Fixtures ────────────────────────────────────────────────────────


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'inbox.db'}",
        encryption_key="test-encryption-secret",
        cron_secret="cron-secret",
        microsoft_webhook_client_state="client-state-123",
    )


@pytest.fixture
def google() -> FakeProvider:
    return FakeProvider("google")


@pytest.fixture
def microsoft() -> FakeProvider:
    return FakeProvider("microsoft")


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest_asyncio.fixture
async def container(settings, google, microsoft, dispatcher):
    engine = create_async_engine(settings.database_url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    built = Container.build(
        settings,
        engine=engine,
        providers=ProviderRegistry({Provider.GOOGLE: google, Provider.MICROSOFT: microsoft}),
        dispatcher=dispatcher,
    )
    yield built
    await engine.dispose()


@pytest.fixture
def user_id() -> UUID:
    return uuid4()


@pytest.fixture
def make_account(container, user_id):
    """Insert a connected account with a stored credential."""

    async def _make(
        *,
        provider: Provider = Provider.GOOGLE,
        email: str = "owner@example.com",
        owner: UUID | None = None,
        expires_in: timedelta = timedelta(hours=1),
        initial_synced: bool = True,
        sync_status: SyncStatus = SyncStatus.IDLE,
        subscription_id: str | None = None,
    ) -> EmailAccount:
        async with container.session_maker() as db:
            account = EmailAccount(
                user_id=owner or user_id,
                provider=provider,
                email_address=email,
                sync_status=sync_status,
                initial_synced_at=utcnow() if initial_synced else None,
                webhook_subscription_id=subscription_id,
            )
            db.add(account)
            await db.commit()
            await db.refresh(account)

        await container.credentials.replace(
            account.id,
            TokenSet(
                access_token="stored-access",
                refresh_token="stored-refresh",
                expires_at=utcnow() + expires_in,
            ),
        )
        await container.checkpoints.initialize(account.id)
        return account

    return _make


@pytest.fixture
def store_message(container):
    """Insert a synced message directly."""

    async def _store(
        account: EmailAccount,
        *,
        sender: str = "alice@example.com",
        subject: str | None = "Hello",
        folder_type: FolderType = FolderType.INBOX,
    ) -> MailMessage:
        async with container.session_maker() as db:
            message = MailMessage(
                user_id=account.user_id,
                account_id=account.id,
                provider_message_id=f"msg-{uuid4().hex[:8]}",
                sender={"name": "Sender", "email": sender},
                to_recipients=[{"name": "", "email": account.email_address}],
                subject=subject,
                date=utcnow(),
                folder_id="INBOX",
                folder_type=folder_type,
            )
            db.add(message)
            await db.commit()
            await db.refresh(message)
        return message

    return _store
