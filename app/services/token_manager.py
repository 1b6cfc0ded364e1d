"""Access-token lifecycle: validity checks and single-flight refresh.

Refreshes for one account are serialised twice over:

- inside the process, concurrent callers share one in-flight refresh task;
- across processes, the refresh re-reads the credential under
  ``SELECT ... FOR UPDATE`` and re-checks expiry, so a refresh completed
  by another worker is reused instead of repeated.

A failed refresh leaves the stored credential untouched.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import (
    CredentialError,
    MailEngineError,
    ProviderRequestError,
    TokenExpired,
    TokenRevoked,
    TransientProviderError,
)
from app.models.mail import EmailAccount
from app.services.credentials import CredentialStore
from app.services.mail.factory import ProviderRegistry

logger = logging.getLogger(__name__)


@dataclass
class TokenResult:
    """Either a usable access token or the reason there is none."""

    token: str | None = None
    error: MailEngineError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.token)

    def unwrap(self) -> str:
        if self.error is not None:
            raise self.error
        if not self.token:
            raise TokenRevoked("Token not found")
        return self.token


@dataclass
class RefreshSweepResult:
    total: int = 0
    refreshed: int = 0
    failed: int = 0


class TokenManager:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        credentials: CredentialStore,
        providers: ProviderRegistry,
        refresh_margin: timedelta = timedelta(minutes=10),
    ) -> None:
        self.session_maker = session_maker
        self.credentials = credentials
        self.providers = providers
        self.refresh_margin = refresh_margin
        self._inflight: dict[UUID, asyncio.Task[str]] = {}

    async def get_valid_token(self, account_id: UUID) -> TokenResult:
        """Return a non-expired access token, refreshing it if needed."""
        try:
            cred = await self.credentials.load(account_id)
        except CredentialError as e:
            logger.error("Stored credential for account %s is unreadable", account_id)
            return TokenResult(error=e)
        if cred is None:
            return TokenResult(error=TokenRevoked("Token not found"))

        if not cred.expires_within(self.refresh_margin):
            return TokenResult(token=cred.access_token)

        try:
            token = await self._refresh_single_flight(account_id)
        except (CredentialError, TransientProviderError) as e:
            logger.warning("Token refresh failed for account %s: %s", account_id, e)
            return TokenResult(error=e)
        return TokenResult(token=token)

    async def _refresh_single_flight(self, account_id: UUID) -> str:
        task = self._inflight.get(account_id)
        if task is None:
            task = asyncio.create_task(self._refresh(account_id))
            self._inflight[account_id] = task

            def _forget(done: asyncio.Task[str]) -> None:
                if self._inflight.get(account_id) is done:
                    del self._inflight[account_id]

            task.add_done_callback(_forget)
        # One cancelled caller must not cancel the refresh the others await
        return await asyncio.shield(task)

    async def _refresh(self, account_id: UUID) -> str:
        async with self.session_maker() as db:
            cred = await self.credentials.load_for_update(db, account_id)
            if cred is None:
                raise TokenRevoked("Token not found")
            if not cred.expires_within(self.refresh_margin):
                logger.debug("Account %s already refreshed elsewhere", account_id)
                return cred.access_token

            provider_name = (
                await db.execute(
                    select(EmailAccount.provider).where(EmailAccount.id == account_id)
                )
            ).scalar_one()
            provider = self.providers.get(provider_name)

            try:
                tokens = await provider.refresh_token(cred.refresh_token)
            except ProviderRequestError as e:
                raise TokenExpired(f"Token refresh rejected: {e}") from e

            await self.credentials.write(db, account_id, tokens)
            await db.commit()

        logger.info("Refreshed token for account %s", account_id)
        return tokens.access_token

    async def refresh_if_expiring_soon(self) -> RefreshSweepResult:
        """Refresh every credential that expires within the margin."""
        account_ids = await self.credentials.list_expiring(self.refresh_margin)
        result = RefreshSweepResult(total=len(account_ids))
        for account_id in account_ids:
            token = await self.get_valid_token(account_id)
            if token.ok:
                result.refreshed += 1
            else:
                result.failed += 1
        logger.info(
            "Token sweep: %d expiring, %d refreshed, %d failed",
            result.total,
            result.refreshed,
            result.failed,
        )
        return result
