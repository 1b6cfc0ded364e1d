"""Push notification ingest for Gmail (Pub/Sub) and Microsoft Graph.

A verified notification only *requests* a delta sync for the account it
names: the sync is dispatched to the job queue and never awaited here.
Duplicate requests are harmless because the coordinator's claim turns
all but one into a no-op.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol
from uuid import UUID

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import VerificationError
from app.models.mail import EmailAccount
from app.models.states import Provider
from app.models.types import utcnow

logger = logging.getLogger(__name__)

_DIGITS = re.compile(r"[0-9]+")
# Graph timestamps carry 7 fractional digits
_FRACTION = re.compile(r"(\.\d{6})\d+")


# ── Dispatch ──


class SyncDispatcher(Protocol):
    async def dispatch_delta_sync(self, account_id: UUID) -> None: ...

    async def dispatch_initial_sync(self, account_id: UUID) -> None: ...


class ArqSyncDispatcher:
    """Enqueues sync jobs on the arq worker queue.

    Job ids are keyed by account, so a burst of notifications for one
    mailbox leaves a single pending job.
    """

    def __init__(self, redis_settings: RedisSettings) -> None:
        self.redis_settings = redis_settings
        self._pool: ArqRedis | None = None

    async def _get_pool(self) -> ArqRedis:
        if self._pool is None:
            self._pool = await create_pool(self.redis_settings)
        return self._pool

    async def _enqueue(self, function: str, account_id: UUID) -> None:
        pool = await self._get_pool()
        job = await pool.enqueue_job(
            function, str(account_id), _job_id=f"{function}:{account_id}"
        )
        if job is None:
            logger.debug("%s already pending for account %s", function, account_id)

    async def dispatch_delta_sync(self, account_id: UUID) -> None:
        await self._enqueue("delta_sync_account", account_id)

    async def dispatch_initial_sync(self, account_id: UUID) -> None:
        await self._enqueue("initial_sync_account", account_id)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None


# ── Verification ──


@dataclass(frozen=True)
class GoogleNotification:
    email_address: str
    history_id: str


@dataclass(frozen=True)
class MicrosoftNotification:
    subscription_id: str
    change_type: str
    resource: str


def verify_google(payload: dict) -> GoogleNotification:
    """Decode and check a Gmail Pub/Sub push envelope.

    The envelope is ``{"message": {"data": base64(JSON)}}`` where the JSON
    carries ``emailAddress`` and a numeric ``historyId``.
    """
    message = payload.get("message") if isinstance(payload, dict) else None
    data = message.get("data") if isinstance(message, dict) else None
    if not isinstance(data, str):
        raise VerificationError("Invalid Google webhook payload: missing message.data")

    # Accept both the standard and the URL-safe alphabet, padded or not
    normalized = data.replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)
    try:
        decoded = json.loads(base64.b64decode(normalized).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise VerificationError(f"Failed to verify Google webhook: {e}") from e

    if not isinstance(decoded, dict):
        raise VerificationError("Invalid Google webhook data: not an object")
    email = decoded.get("emailAddress")
    history_id = decoded.get("historyId")
    if not email or history_id is None or history_id == "":
        raise VerificationError(
            "Invalid Google webhook data: missing emailAddress or historyId"
        )
    if isinstance(history_id, bool) or not _DIGITS.fullmatch(str(history_id)):
        raise VerificationError("Invalid Google webhook data: historyId must be numeric")

    return GoogleNotification(email_address=str(email), history_id=str(history_id))


def _parse_graph_datetime(value: str) -> datetime:
    text = _FRACTION.sub(r"\1", value.strip())
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def verify_microsoft(
    notification: dict,
    expected_client_state: str,
    now: datetime | None = None,
) -> MicrosoftNotification:
    """Check one entry of a Graph change notification's ``value`` array."""
    if not isinstance(notification, dict):
        raise VerificationError("Invalid Microsoft webhook: notification is not an object")
    if not expected_client_state:
        raise VerificationError("Microsoft webhook client state is not configured")

    client_state = notification.get("clientState")
    if not isinstance(client_state, str) or not hmac.compare_digest(
        client_state.encode(), expected_client_state.encode()
    ):
        raise VerificationError("Invalid Microsoft webhook: clientState mismatch")

    subscription_id = notification.get("subscriptionId")
    change_type = notification.get("changeType")
    resource = notification.get("resource")
    if not subscription_id or not change_type or not resource:
        raise VerificationError("Invalid Microsoft webhook: missing required fields")

    expires = notification.get("subscriptionExpirationDateTime")
    if expires:
        try:
            expires_at = _parse_graph_datetime(str(expires))
        except ValueError as e:
            raise VerificationError(
                "Invalid Microsoft webhook: bad subscriptionExpirationDateTime"
            ) from e
        if expires_at < (now or utcnow()):
            raise VerificationError("Microsoft webhook subscription has expired")

    return MicrosoftNotification(
        subscription_id=str(subscription_id),
        change_type=str(change_type),
        resource=str(resource),
    )


def validate_microsoft_endpoint(validation_token: str | None) -> str | None:
    """Token to echo back for Graph's subscription validation handshake."""
    if not validation_token or not isinstance(validation_token, str):
        return None
    return validation_token


# ── Ingest ──


class WebhookIngest:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        dispatcher: SyncDispatcher,
        microsoft_client_state: str,
    ) -> None:
        self.session_maker = session_maker
        self.dispatcher = dispatcher
        self.microsoft_client_state = microsoft_client_state

    async def handle_google(self, payload: dict) -> UUID | None:
        """Verify and dispatch; an unknown address is not an error.

        Raises :class:`VerificationError` for a malformed envelope.
        """
        notification = verify_google(payload)

        async with self.session_maker() as db:
            account_id = (
                await db.execute(
                    select(EmailAccount.id)
                    .where(
                        func.lower(EmailAccount.email_address)
                        == notification.email_address.lower(),
                        EmailAccount.provider == Provider.GOOGLE,
                        EmailAccount.archived_at.is_(None),
                    )
                    .order_by(EmailAccount.created_at)
                    .limit(1)
                )
            ).scalar_one_or_none()

        if account_id is None:
            logger.info("Google notification for unknown mailbox, ignored")
            return None

        logger.info(
            "Google notification for account %s (historyId %s)",
            account_id,
            notification.history_id,
        )
        await self.dispatcher.dispatch_delta_sync(account_id)
        return account_id

    async def handle_microsoft(self, payload: dict) -> list[UUID]:
        """Verify each notification and dispatch one sync per account.

        Invalid notifications are logged and dropped.
        """
        notifications = payload.get("value") if isinstance(payload, dict) else None
        if not isinstance(notifications, list) or not notifications:
            logger.warning("Microsoft webhook without notifications, ignored")
            return []

        subscription_ids: list[str] = []
        for raw in notifications:
            try:
                verified = verify_microsoft(raw, self.microsoft_client_state)
            except VerificationError as e:
                logger.warning("Dropped Microsoft notification: %s", e)
                continue
            if verified.subscription_id not in subscription_ids:
                subscription_ids.append(verified.subscription_id)

        if not subscription_ids:
            return []

        async with self.session_maker() as db:
            rows = (
                await db.execute(
                    select(EmailAccount.webhook_subscription_id, EmailAccount.id).where(
                        EmailAccount.webhook_subscription_id.in_(subscription_ids),
                        EmailAccount.provider == Provider.MICROSOFT,
                        EmailAccount.archived_at.is_(None),
                    )
                )
            ).all()
        by_subscription = {sub: account_id for sub, account_id in rows}

        dispatched: list[UUID] = []
        for subscription_id in subscription_ids:
            account_id = by_subscription.get(subscription_id)
            if account_id is None:
                logger.info("Microsoft notification for unknown subscription, ignored")
                continue
            await self.dispatcher.dispatch_delta_sync(account_id)
            dispatched.append(account_id)

        logger.info("Microsoft webhook: %d syncs dispatched", len(dispatched))
        return dispatched
