"""Connecting, pausing and disconnecting mailboxes."""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import AccountNotFound, ProviderRequestError
from app.models.mail import EmailAccount
from app.models.states import Provider, SyncStatus, transition
from app.models.types import utcnow
from app.services.checkpoints import SyncCheckpointStore
from app.services.credentials import CredentialStore
from app.services.events import EventEmitter
from app.services.mail.factory import ProviderRegistry
from app.services.webhooks import SyncDispatcher

logger = logging.getLogger(__name__)


async def get_owned_account(
    db: AsyncSession, user_id: UUID, account_id: UUID
) -> EmailAccount:
    """Load a connected account of ``user_id`` or raise :class:`AccountNotFound`."""
    account = (
        await db.execute(
            select(EmailAccount).where(
                EmailAccount.id == account_id,
                EmailAccount.user_id == user_id,
                EmailAccount.archived_at.is_(None),
            )
        )
    ).scalar_one_or_none()
    if account is None:
        raise AccountNotFound("Account not found or unauthorized")
    return account


class AccountService:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        credentials: CredentialStore,
        checkpoints: SyncCheckpointStore,
        providers: ProviderRegistry,
        dispatcher: SyncDispatcher,
        events: EventEmitter,
    ) -> None:
        self.session_maker = session_maker
        self.credentials = credentials
        self.checkpoints = checkpoints
        self.providers = providers
        self.dispatcher = dispatcher
        self.events = events

    def authorization_url(
        self, provider: Provider, redirect_uri: str, state: str, code_challenge: str
    ) -> str:
        return self.providers.get(provider).get_auth_url(redirect_uri, state, code_challenge)

    async def connect(
        self,
        user_id: UUID,
        provider: Provider,
        code: str,
        redirect_uri: str,
        code_verifier: str,
    ) -> EmailAccount:
        """Finish the OAuth callback: store tokens and schedule the first sync.

        Reconnecting an address the user already has reactivates that
        account (and clears its error) instead of creating a second one.
        """
        adapter = self.providers.get(provider)
        tokens = await adapter.exchange_code(code, redirect_uri, code_verifier)
        profile = await adapter.get_profile(tokens.access_token)
        email = (profile.get("email_address") or "").strip()
        if not email:
            raise ProviderRequestError("No email address found in user profile")

        async with self.session_maker() as db:
            account = (
                await db.execute(
                    select(EmailAccount).where(
                        EmailAccount.user_id == user_id,
                        EmailAccount.provider == provider,
                        func.lower(EmailAccount.email_address) == email.lower(),
                    )
                )
            ).scalar_one_or_none()

            if account is None:
                active = (
                    await db.execute(
                        select(func.count(EmailAccount.id)).where(
                            EmailAccount.user_id == user_id,
                            EmailAccount.archived_at.is_(None),
                        )
                    )
                ).scalar_one()
                account = EmailAccount(
                    user_id=user_id,
                    provider=provider,
                    email_address=email,
                    sync_status=SyncStatus.IDLE,
                    is_primary=active == 0,
                )
                db.add(account)
                await db.flush()
                action = "created"
            else:
                account.archived_at = None
                account.error_message = None
                if account.sync_status == SyncStatus.ERROR:
                    account.sync_status = transition(account.sync_status, SyncStatus.IDLE)
                action = "reconnected"

            await self.credentials.write(db, account.id, tokens, scopes=tokens.scopes or [])
            await db.commit()
            await db.refresh(account)

        await self.checkpoints.initialize(account.id)
        logger.info("Account %s %s (%s)", account.id, action, provider.value)

        if account.initial_synced_at is None:
            await self.dispatcher.dispatch_initial_sync(account.id)
        else:
            await self.dispatcher.dispatch_delta_sync(account.id)

        await self.events.emit(
            "account.connected",
            "email_account",
            entity_id=account.id,
            actor_id=user_id,
            payload={"provider": provider.value, "action": action},
        )
        return account

    async def set_paused(self, user_id: UUID, account_id: UUID, paused: bool) -> EmailAccount:
        """Pause (exclude from automatic syncs) or resume an account."""
        async with self.session_maker() as db:
            account = await get_owned_account(db, user_id, account_id)
            target = SyncStatus.PAUSED if paused else SyncStatus.IDLE
            if account.sync_status != target:
                account.sync_status = transition(account.sync_status, target)
            await db.commit()
            await db.refresh(account)
        logger.info("Account %s %s", account_id, "paused" if paused else "resumed")
        return account

    async def disconnect(self, user_id: UUID, account_id: UUID) -> None:
        """Soft-archive the account and drop its token material."""
        async with self.session_maker() as db:
            account = await get_owned_account(db, user_id, account_id)
            account.archived_at = utcnow()
            account.is_primary = False
            account.webhook_subscription_id = None
            await db.commit()

        await self.credentials.delete(account_id)
        await self.events.emit(
            "account.disconnected",
            "email_account",
            entity_id=account_id,
            actor_id=user_id,
        )
        logger.info("Account %s disconnected", account_id)
