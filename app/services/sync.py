"""Initial and incremental mailbox sync with a per-account claim.

At most one sync runs per account. A run starts by moving the account to
``syncing`` with a compare-and-swap ``UPDATE``; whoever loses the race
gets ``SyncOutcome.SKIPPED`` back without any provider call. The claim is
a lease: a ``syncing`` row older than ``stale_after`` (a crashed worker)
can be claimed again.

Delta sync writes the message changes and the advanced cursor in one
transaction, so a crash before commit replays the same change set from
the same cursor, which the writes tolerate.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import CredentialError, TransientProviderError
from app.database import upsert
from app.models.mail import Contact, EmailAccount, MailFolder, MailMessage
from app.models.states import (
    FolderType,
    SyncStatus,
    SyncType,
    allowed_sources,
    transition,
)
from app.models.types import utcnow
from app.services.checkpoints import SyncCheckpointStore
from app.services.events import EventEmitter
from app.services.mail.base import ChangeKind, MailProvider, NormalizedMessage
from app.services.mail.factory import ProviderRegistry
from app.services.token_manager import TokenManager

if TYPE_CHECKING:
    from app.services.vacation import VacationResponderService

logger = logging.getLogger(__name__)

REAUTH_MESSAGE = "Re-authentication required. Please reconnect your account."
REPEATED_FAILURE_MESSAGE = "Multiple sync failures. Please check your connection."

# Fields a provider-side change may flip on an already stored message
_MUTABLE_FIELDS = ("is_read", "is_starred", "is_draft", "folder_id", "folder_type")


class SyncOutcome(str, Enum):
    SYNCED = "synced"
    SKIPPED = "skipped"  # another run holds the claim, or the account is not eligible
    FAILED = "failed"


@dataclass
class SyncResult:
    account_id: UUID
    outcome: SyncOutcome
    kind: str | None = None  # "initial" | "delta"
    changes: int = 0
    error: Exception | None = None

    def as_dict(self) -> dict:
        data: dict = {
            "account_id": str(self.account_id),
            "status": self.outcome.value,
            "kind": self.kind,
            "changes": self.changes,
        }
        if self.error is not None:
            data["error"] = str(self.error)
        return data


@dataclass
class SweepResult:
    total: int = 0
    synced: int = 0
    skipped: int = 0
    failed: int = 0
    results: list[SyncResult] = field(default_factory=list)


@dataclass
class FolderSyncResult:
    created: int = 0
    updated: int = 0
    deactivated: int = 0


class SyncCoordinator:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        tokens: TokenManager,
        providers: ProviderRegistry,
        checkpoints: SyncCheckpointStore,
        events: EventEmitter,
        vacation: VacationResponderService | None = None,
        *,
        max_per_folder: int = 500,
        page_size: int = 50,
        contacts_limit: int = 100,
        error_threshold: int = 3,
        stale_after: timedelta = timedelta(minutes=15),
        sweep_concurrency: int = 5,
    ) -> None:
        self.session_maker = session_maker
        self.tokens = tokens
        self.providers = providers
        self.checkpoints = checkpoints
        self.events = events
        self.vacation = vacation
        self.max_per_folder = max_per_folder
        self.page_size = page_size
        self.contacts_limit = contacts_limit
        self.error_threshold = error_threshold
        self.stale_after = stale_after
        self.sweep_concurrency = sweep_concurrency

    # ── Entry points ──

    async def sync_account(self, account_id: UUID, *, manual: bool = False) -> SyncResult:
        """Initial sync for a never-synced account, delta sync otherwise."""
        return await self._run(account_id, manual=manual, kind=None)

    async def initial_sync(self, account_id: UUID, *, manual: bool = False) -> SyncResult:
        return await self._run(account_id, manual=manual, kind="initial")

    async def delta_sync(self, account_id: UUID, *, manual: bool = False) -> SyncResult:
        return await self._run(account_id, manual=manual, kind="delta")

    async def sync_folders(self, account_id: UUID) -> FolderSyncResult:
        """Refresh the folder list outside of a full sync."""
        async with self.session_maker() as db:
            account = await db.get(EmailAccount, account_id)
        if account is None:
            raise ValueError(f"Unknown account {account_id}")
        token = (await self.tokens.get_valid_token(account.id)).unwrap()
        provider = self.providers.get(account.provider)
        return await self._sync_folders(account, provider, token)

    async def sweep(self) -> SweepResult:
        """Sync every eligible account with bounded parallelism."""
        async with self.session_maker() as db:
            account_ids = (
                await db.execute(
                    select(EmailAccount.id).where(
                        EmailAccount.archived_at.is_(None),
                        EmailAccount.sync_status.not_in(
                            [SyncStatus.ERROR, SyncStatus.PAUSED]
                        ),
                    )
                )
            ).scalars().all()

        semaphore = asyncio.Semaphore(self.sweep_concurrency)

        async def _one(account_id: UUID) -> SyncResult:
            async with semaphore:
                try:
                    return await self.sync_account(account_id)
                except Exception as e:
                    logger.exception("Sweep: sync crashed for account %s", account_id)
                    return SyncResult(account_id, SyncOutcome.FAILED, error=e)

        results = await asyncio.gather(*(_one(a) for a in account_ids))
        sweep = SweepResult(total=len(results), results=list(results))
        for r in results:
            if r.outcome == SyncOutcome.SYNCED:
                sweep.synced += 1
            elif r.outcome == SyncOutcome.SKIPPED:
                sweep.skipped += 1
            else:
                sweep.failed += 1
        logger.info(
            "Sync sweep: %d accounts, %d synced, %d skipped, %d failed",
            sweep.total,
            sweep.synced,
            sweep.skipped,
            sweep.failed,
        )
        return sweep

    # ── Claim / release ──

    async def _claim(self, account_id: UUID, *, manual: bool) -> EmailAccount | None:
        now = utcnow()
        # Automatic triggers never pick up an account parked in ``error``
        sources = allowed_sources(SyncStatus.SYNCING) if manual else {SyncStatus.IDLE}
        stale_before = now - self.stale_after

        async with self.session_maker() as db:
            result = await db.execute(
                update(EmailAccount)
                .where(
                    EmailAccount.id == account_id,
                    EmailAccount.archived_at.is_(None),
                    or_(
                        EmailAccount.sync_status.in_(list(sources)),
                        and_(
                            EmailAccount.sync_status == SyncStatus.SYNCING,
                            or_(
                                EmailAccount.sync_started_at.is_(None),
                                EmailAccount.sync_started_at < stale_before,
                            ),
                        ),
                    ),
                )
                .values(sync_status=SyncStatus.SYNCING, sync_started_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if result.rowcount != 1:
                return None
            return await db.get(EmailAccount, account_id)

    async def _release(
        self,
        db: AsyncSession,
        account: EmailAccount,
        target: SyncStatus,
        *,
        success: bool = False,
        error_message: str | None = None,
        initial_done: bool = False,
    ) -> bool:
        """Leave ``syncing``; a no-op if the lease was taken over meanwhile."""
        transition(SyncStatus.SYNCING, target)
        now = utcnow()
        values: dict = {"sync_status": target, "sync_started_at": None}
        if success:
            values["last_synced_at"] = now
            values["error_message"] = None
        if error_message is not None:
            values["error_message"] = error_message
        if initial_done:
            values["initial_synced_at"] = now

        result = await db.execute(
            update(EmailAccount)
            .where(
                EmailAccount.id == account.id,
                EmailAccount.sync_status == SyncStatus.SYNCING,
                EmailAccount.sync_started_at == account.sync_started_at,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("Sync lease for account %s was taken over", account.id)
            return False
        return True

    async def _release_after_failure(
        self, account: EmailAccount, target: SyncStatus, error_message: str | None = None
    ) -> None:
        async with self.session_maker() as db:
            await self._release(db, account, target, error_message=error_message)
            await db.commit()

    # ── Run ──

    async def _run(self, account_id: UUID, *, manual: bool, kind: str | None) -> SyncResult:
        account = await self._claim(account_id, manual=manual)
        if account is None:
            logger.info("Account %s already syncing or not eligible, skipping", account_id)
            return SyncResult(account_id, SyncOutcome.SKIPPED)

        if kind is None:
            kind = "initial" if account.initial_synced_at is None else "delta"
        logger.info("Starting %s sync for account %s", kind, account_id)

        try:
            if kind == "initial":
                changes, received = await self._initial(account)
            else:
                changes, received = await self._delta(account)
        except CredentialError as e:
            logger.warning("Credential error syncing account %s: %s", account_id, e)
            await self._release_after_failure(account, SyncStatus.ERROR, REAUTH_MESSAGE)
            return SyncResult(account_id, SyncOutcome.FAILED, kind, error=e)
        except TransientProviderError as e:
            await self.checkpoints.record_failure(account_id, SyncType.MESSAGES, str(e))
            await self._release_after_failure(account, SyncStatus.IDLE)
            return SyncResult(account_id, SyncOutcome.FAILED, kind, error=e)
        except Exception as e:
            logger.exception("%s sync failed for account %s", kind.capitalize(), account_id)
            count = await self.checkpoints.record_failure(
                account_id, SyncType.MESSAGES, str(e) or type(e).__name__
            )
            if count >= self.error_threshold:
                await self._release_after_failure(
                    account, SyncStatus.ERROR, REPEATED_FAILURE_MESSAGE
                )
            else:
                await self._release_after_failure(account, SyncStatus.IDLE)
            return SyncResult(account_id, SyncOutcome.FAILED, kind, error=e)

        await self._after_commit(account, kind, changes, received)
        logger.info(
            "%s sync complete for account %s: %d changes",
            kind.capitalize(),
            account_id,
            changes,
        )
        return SyncResult(account_id, SyncOutcome.SYNCED, kind, changes=changes)

    async def _initial(self, account: EmailAccount) -> tuple[int, list[MailMessage]]:
        token = (await self.tokens.get_valid_token(account.id)).unwrap()
        provider = self.providers.get(account.provider)

        await self.checkpoints.initialize(account.id)
        # Baseline for the first delta sync, taken before listing so mail that
        # arrives meanwhile is replayed by the next delta
        baseline = await provider.list_changes(token, None)
        await self._sync_folders(account, provider, token)

        async with self.session_maker() as db:
            folders = (
                await db.execute(
                    select(MailFolder).where(
                        MailFolder.account_id == account.id,
                        MailFolder.is_active.is_(True),
                    )
                )
            ).scalars().all()

        total = 0
        for folder in folders:
            total += await self._sync_folder_messages(account, provider, token, folder)

        contacts_ok = await self._sync_contacts(account, provider, token)

        async with self.session_maker() as db:
            await self.checkpoints.advance(db, account.id, SyncType.MESSAGES, baseline.new_cursor)
            await self.checkpoints.advance(db, account.id, SyncType.CALENDAR, None)
            if contacts_ok:
                await self.checkpoints.advance(db, account.id, SyncType.CONTACTS, None)
            await self._release(db, account, SyncStatus.IDLE, success=True, initial_done=True)
            await db.commit()

        # Existing mail is not "received" for downstream consumers
        return total, []

    async def _sync_folder_messages(
        self,
        account: EmailAccount,
        provider: MailProvider,
        token: str,
        folder: MailFolder,
    ) -> int:
        count = 0
        cursor: str | None = None
        while count < self.max_per_folder:
            page = await provider.list_messages(
                token,
                folder_id=folder.provider_folder_id,
                cursor=cursor,
                limit=min(self.page_size, self.max_per_folder - count),
            )
            if not page.messages:
                break

            async with self.session_maker() as db:
                for message in page.messages:
                    if message.folder_type is None:
                        message.folder_type = folder.folder_type
                        message.folder_id = folder.provider_folder_id
                    await self._apply_message(db, account, message, {})
                await db.commit()

            count += len(page.messages)
            if not page.next_cursor:
                break
            cursor = page.next_cursor

        logger.debug("Synced %d messages from folder %s", count, folder.name)
        return count

    async def _delta(self, account: EmailAccount) -> tuple[int, list[MailMessage]]:
        token = (await self.tokens.get_valid_token(account.id)).unwrap()
        provider = self.providers.get(account.provider)

        checkpoint = await self.checkpoints.get(account.id, SyncType.MESSAGES)
        cursor = checkpoint.cursor if checkpoint else None
        change_set = await provider.list_changes(token, cursor)

        received: list[MailMessage] = []
        async with self.session_maker() as db:
            folder_map = await self._folder_map(db, account.id)
            for change in change_set.changes:
                if change.kind == ChangeKind.DELETED:
                    await db.execute(
                        update(MailMessage)
                        .where(
                            MailMessage.account_id == account.id,
                            MailMessage.provider_message_id == change.provider_message_id,
                            MailMessage.archived_at.is_(None),
                        )
                        .values(archived_at=utcnow())
                        .execution_options(synchronize_session=False)
                    )
                elif change.message is not None:
                    inserted = await self._apply_message(db, account, change.message, folder_map)
                    # An update for a message older than the local mirror is not new mail
                    if inserted is not None and change.kind == ChangeKind.CREATED:
                        received.append(inserted)

            # Cursor moves only together with the writes it covers
            await self.checkpoints.advance(db, account.id, SyncType.MESSAGES, change_set.new_cursor)
            await self._release(db, account, SyncStatus.IDLE, success=True)
            await db.commit()

        return len(change_set.changes), received

    async def _after_commit(
        self,
        account: EmailAccount,
        kind: str,
        changes: int,
        received: list[MailMessage],
    ) -> None:
        for message in received:
            if message.folder_type != FolderType.INBOX:
                continue
            await self.events.emit(
                "message.received",
                "message",
                entity_id=message.id,
                actor_id=account.user_id,
                payload={
                    "account_id": str(account.id),
                    "from": message.sender.get("email"),
                    "subject": message.subject,
                },
            )
            if self.vacation is not None:
                await self.vacation.handle_inbound(account, message)

        await self.events.emit(
            "sync.completed",
            "email_account",
            entity_id=account.id,
            actor_id=account.user_id,
            payload={"kind": kind, "changes": changes},
        )

    # ── Writes ──

    async def _folder_map(self, db: AsyncSession, account_id: UUID) -> dict[str, FolderType]:
        rows = await db.execute(
            select(MailFolder.provider_folder_id, MailFolder.folder_type).where(
                MailFolder.account_id == account_id
            )
        )
        return {pid: ftype for pid, ftype in rows.all()}

    async def _apply_message(
        self,
        db: AsyncSession,
        account: EmailAccount,
        message: NormalizedMessage,
        folder_map: dict[str, FolderType],
    ) -> MailMessage | None:
        """Insert a new message or update the fields that changed.

        Returns the row when it was inserted, ``None`` for an update.
        """
        folder_type = (
            message.folder_type
            or folder_map.get(message.folder_id or "")
            or FolderType.INBOX
        )
        existing = (
            await db.execute(
                select(MailMessage).where(
                    MailMessage.account_id == account.id,
                    MailMessage.provider_message_id == message.provider_message_id,
                )
            )
        ).scalar_one_or_none()

        if existing is None:
            row = MailMessage(
                user_id=account.user_id,
                account_id=account.id,
                provider_message_id=message.provider_message_id,
                provider_thread_id=message.provider_thread_id,
                internet_message_id=message.internet_message_id,
                sender=message.sender,
                to_recipients=message.to_recipients,
                cc_recipients=message.cc_recipients,
                bcc_recipients=message.bcc_recipients,
                subject=message.subject,
                date=message.date,
                snippet=message.snippet,
                body_text=message.body_text,
                body_html=message.body_html,
                folder_id=message.folder_id,
                folder_type=folder_type,
                is_read=message.is_read,
                is_starred=message.is_starred,
                is_draft=message.is_draft,
                has_attachments=message.has_attachments,
                raw_headers=message.raw_headers,
                synced_at=utcnow(),
            )
            db.add(row)
            await db.flush()
            return row

        incoming = {
            "is_read": message.is_read,
            "is_starred": message.is_starred,
            "is_draft": message.is_draft,
            "folder_id": message.folder_id,
            "folder_type": folder_type,
        }
        changed = False
        for name in _MUTABLE_FIELDS:
            if getattr(existing, name) != incoming[name]:
                setattr(existing, name, incoming[name])
                changed = True
        if existing.archived_at is not None:
            # Reported again, so it is back in the mailbox
            existing.archived_at = None
            changed = True
        if changed:
            existing.synced_at = utcnow()
        return None

    async def _sync_folders(
        self, account: EmailAccount, provider: MailProvider, token: str
    ) -> FolderSyncResult:
        folders = await provider.list_folders(token)
        result = FolderSyncResult()

        async with self.session_maker() as db:
            existing = {
                f.provider_folder_id: f
                for f in (
                    await db.execute(
                        select(MailFolder).where(MailFolder.account_id == account.id)
                    )
                ).scalars()
            }
            seen: set[str] = set()
            for folder in folders:
                seen.add(folder.provider_folder_id)
                row = existing.get(folder.provider_folder_id)
                if row is None:
                    db.add(
                        MailFolder(
                            account_id=account.id,
                            provider_folder_id=folder.provider_folder_id,
                            name=folder.name,
                            folder_type=folder.folder_type,
                            is_system_folder=folder.is_system_folder,
                            unread_count=folder.unread_count,
                            total_count=folder.total_count,
                            is_active=True,
                        )
                    )
                    result.created += 1
                    continue
                row.name = folder.name
                row.folder_type = folder.folder_type
                row.is_system_folder = folder.is_system_folder
                row.unread_count = folder.unread_count
                row.total_count = folder.total_count
                row.is_active = True
                result.updated += 1

            for provider_folder_id, row in existing.items():
                if provider_folder_id not in seen and row.is_active:
                    row.is_active = False
                    result.deactivated += 1

            await self.checkpoints.advance(db, account.id, SyncType.FOLDERS, None)
            await db.commit()

        logger.info(
            "Folders for account %s: %d new, %d updated, %d deactivated",
            account.id,
            result.created,
            result.updated,
            result.deactivated,
        )
        return result

    async def _sync_contacts(
        self, account: EmailAccount, provider: MailProvider, token: str
    ) -> bool:
        """Harvest contacts; failures are logged and do not fail the sync."""
        try:
            contacts = await provider.list_contacts(token, limit=self.contacts_limit)
            async with self.session_maker() as db:
                for contact in contacts:
                    values = {
                        "user_id": account.user_id,
                        "email": contact.email,
                        "name": contact.name,
                        "phone": contact.phone,
                        "company": contact.company,
                        "job_title": contact.job_title,
                        "source": "auto",
                        "updated_at": utcnow(),
                    }
                    stmt = upsert(db, Contact).values(**values)
                    await db.execute(
                        stmt.on_conflict_do_update(
                            index_elements=["user_id", "email"],
                            set_={
                                k: v
                                for k, v in values.items()
                                if k not in ("user_id", "email", "source")
                            },
                        )
                    )
                await db.commit()
        except Exception:
            logger.exception("Contact sync failed for account %s (non-critical)", account.id)
            return False
        return True
