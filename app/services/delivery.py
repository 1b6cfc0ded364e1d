"""Outbound delivery: undo-send window and scheduled sends.

Undo-send
    A message is stored with ``send_at = now + delay`` and can be canceled
    only while ``now < send_at``. The scan sends rows that are due, not
    canceled and not yet sent. Cancel and scan are separated by time, so
    they cannot both win.

Scheduled send
    Each due row is claimed with a conditional ``queued -> sending``
    update, so two scanners never send the same row. A failed attempt goes
    back to ``queued`` with ``retry_count + 1`` until the retry budget is
    spent, then ends in ``failed`` and notifies the user.

Every item is isolated: a failure is recorded on the row and the batch
moves on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import (
    AlreadyCanceled,
    AlreadySent,
    DeliveryError,
    QueuedSendNotFound,
    UndoWindowExpired,
)
from app.models.delivery import Notification, QueuedSend, ScheduledEmail
from app.models.mail import EmailAccount
from app.models.states import ScheduledStatus, transition
from app.models.types import utcnow
from app.services.accounts import get_owned_account
from app.services.events import EventEmitter
from app.services.mail.base import SendParams, SendResult
from app.services.mail.factory import ProviderRegistry
from app.services.token_manager import TokenManager

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    total: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0

    def as_dict(self) -> dict:
        return {
            "total": self.total,
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
        }


def _params(row: QueuedSend | ScheduledEmail) -> SendParams:
    return SendParams(
        to=row.to_recipients,
        cc=row.cc_recipients,
        bcc=row.bcc_recipients,
        subject=row.subject,
        body_text=row.body_text,
        body_html=row.body_html,
        in_reply_to=row.in_reply_to,
    )


class DeliveryQueue:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        tokens: TokenManager,
        providers: ProviderRegistry,
        events: EventEmitter,
        *,
        default_delay_seconds: int = 5,
        max_retries: int = 3,
        batch_limit: int = 50,
        stale_sending_after: timedelta = timedelta(minutes=15),
    ) -> None:
        self.session_maker = session_maker
        self.tokens = tokens
        self.providers = providers
        self.events = events
        self.default_delay_seconds = default_delay_seconds
        self.max_retries = max_retries
        self.batch_limit = batch_limit
        self.stale_sending_after = stale_sending_after

    async def _send(self, db: AsyncSession, account_id: UUID, params: SendParams) -> SendResult:
        account = await db.get(EmailAccount, account_id)
        if account is None or account.archived_at is not None:
            raise DeliveryError("Email account not found")
        token = (await self.tokens.get_valid_token(account_id)).unwrap()
        return await self.providers.get(account.provider).send_message(token, params)

    # ── Undo-send ──

    async def enqueue_undo_send(
        self,
        user_id: UUID,
        account_id: UUID,
        draft: SendParams,
        delay_seconds: int | None = None,
    ) -> QueuedSend:
        if not draft.to:
            raise ValueError("At least one recipient is required")
        delay = self.default_delay_seconds if delay_seconds is None else delay_seconds
        if delay < 0:
            raise ValueError("delay_seconds must not be negative")

        async with self.session_maker() as db:
            await get_owned_account(db, user_id, account_id)
            queued = QueuedSend(
                user_id=user_id,
                account_id=account_id,
                to_recipients=draft.to,
                cc_recipients=draft.cc,
                bcc_recipients=draft.bcc,
                subject=draft.subject,
                body_text=draft.body_text,
                body_html=draft.body_html,
                in_reply_to=draft.in_reply_to,
                send_at=utcnow() + timedelta(seconds=delay),
                canceled=False,
                sent=False,
            )
            db.add(queued)
            await db.commit()
            await db.refresh(queued)

        logger.info("Queued send %s for %s", queued.id, queued.send_at.isoformat())
        return queued

    async def cancel_undo_send(
        self, user_id: UUID, queue_id: UUID, now: datetime | None = None
    ) -> QueuedSend:
        """Cancel while the undo window is open.

        Raises :class:`QueuedSendNotFound`, :class:`AlreadySent`,
        :class:`AlreadyCanceled` or :class:`UndoWindowExpired`.
        """
        now = now or utcnow()
        async with self.session_maker() as db:
            result = await db.execute(
                update(QueuedSend)
                .where(
                    QueuedSend.id == queue_id,
                    QueuedSend.user_id == user_id,
                    QueuedSend.sent.is_(False),
                    QueuedSend.canceled.is_(False),
                    QueuedSend.send_at > now,
                )
                .values(canceled=True, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

            row = (
                await db.execute(
                    select(QueuedSend).where(
                        QueuedSend.id == queue_id, QueuedSend.user_id == user_id
                    )
                )
            ).scalar_one_or_none()

        if result.rowcount == 1:
            logger.info("Canceled queued send %s", queue_id)
            return row
        if row is None:
            raise QueuedSendNotFound("Queued send not found")
        if row.sent:
            raise AlreadySent()
        if row.canceled:
            raise AlreadyCanceled()
        raise UndoWindowExpired()

    async def process_due_queued_sends(
        self, limit: int | None = None, now: datetime | None = None
    ) -> BatchResult:
        now = now or utcnow()
        async with self.session_maker() as db:
            due_ids = (
                await db.execute(
                    select(QueuedSend.id)
                    .where(
                        QueuedSend.sent.is_(False),
                        QueuedSend.canceled.is_(False),
                        QueuedSend.send_at <= now,
                    )
                    .order_by(QueuedSend.send_at)
                    .limit(limit or self.batch_limit)
                )
            ).scalars().all()

        batch = BatchResult(total=len(due_ids))
        for queue_id in due_ids:
            try:
                outcome = await self._process_queued(queue_id, now)
            except Exception:
                logger.exception("Queued send %s could not be processed", queue_id)
                outcome = False
            if outcome is None:
                batch.skipped += 1
            elif outcome:
                batch.processed += 1
            else:
                batch.failed += 1

        if batch.total:
            logger.info(
                "Queued sends: %d due, %d sent, %d failed, %d skipped",
                batch.total,
                batch.processed,
                batch.failed,
                batch.skipped,
            )
        return batch

    async def _process_queued(self, queue_id: UUID, now: datetime) -> bool | None:
        """Send one row; ``None`` when another worker holds it or it changed."""
        async with self.session_maker() as db:
            row = (
                await db.execute(
                    select(QueuedSend)
                    .where(
                        QueuedSend.id == queue_id,
                        QueuedSend.sent.is_(False),
                        QueuedSend.canceled.is_(False),
                        QueuedSend.send_at <= now,
                    )
                    .with_for_update(skip_locked=True)
                )
            ).scalar_one_or_none()
            if row is None:
                return None

            try:
                result = await self._send(db, row.account_id, _params(row))
            except Exception as e:
                logger.warning("Queued send %s failed: %s", queue_id, e)
                row.error = str(e) or type(e).__name__
                row.updated_at = utcnow()
                await db.commit()
                return False

            row.sent = True
            row.error = None
            row.provider_message_id = result.message_id or None
            row.updated_at = utcnow()
            await db.commit()

        await self.events.emit(
            "message.sent",
            "message",
            entity_id=result.message_id or None,
            actor_id=row.user_id,
            payload={"queued_send_id": str(queue_id), "delayed": True},
            metadata={"source": "cron"},
        )
        return True

    # ── Scheduled send ──

    async def schedule_email(
        self,
        user_id: UUID,
        account_id: UUID,
        draft: SendParams,
        scheduled_for: datetime,
    ) -> ScheduledEmail:
        if not draft.to:
            raise ValueError("At least one recipient is required")
        if scheduled_for.tzinfo is None:
            raise ValueError("scheduled_for must include a timezone")
        if scheduled_for <= utcnow():
            raise ValueError("scheduled_for must be in the future")

        async with self.session_maker() as db:
            await get_owned_account(db, user_id, account_id)
            scheduled = ScheduledEmail(
                user_id=user_id,
                account_id=account_id,
                to_recipients=draft.to,
                cc_recipients=draft.cc,
                bcc_recipients=draft.bcc,
                subject=draft.subject,
                body_text=draft.body_text,
                body_html=draft.body_html,
                in_reply_to=draft.in_reply_to,
                scheduled_for=scheduled_for,
                status=ScheduledStatus.QUEUED,
                retry_count=0,
            )
            db.add(scheduled)
            await db.commit()
            await db.refresh(scheduled)

        logger.info("Scheduled email %s for %s", scheduled.id, scheduled_for.isoformat())
        return scheduled

    async def recover_stale_sending(self, now: datetime | None = None) -> int:
        """Return rows stuck in ``sending`` (a crashed worker) to ``queued``."""
        now = now or utcnow()
        transition(ScheduledStatus.SENDING, ScheduledStatus.QUEUED)
        async with self.session_maker() as db:
            result = await db.execute(
                update(ScheduledEmail)
                .where(
                    ScheduledEmail.status == ScheduledStatus.SENDING,
                    ScheduledEmail.updated_at < now - self.stale_sending_after,
                )
                .values(status=ScheduledStatus.QUEUED, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount:
            logger.warning("Recovered %d scheduled emails stuck in sending", result.rowcount)
        return result.rowcount

    async def process_due_scheduled_emails(
        self, limit: int | None = None, now: datetime | None = None
    ) -> BatchResult:
        now = now or utcnow()
        await self.recover_stale_sending(now)

        async with self.session_maker() as db:
            due_ids = (
                await db.execute(
                    select(ScheduledEmail.id)
                    .where(
                        ScheduledEmail.status == ScheduledStatus.QUEUED,
                        ScheduledEmail.scheduled_for <= now,
                    )
                    .order_by(ScheduledEmail.scheduled_for)
                    .limit(limit or self.batch_limit)
                )
            ).scalars().all()

        batch = BatchResult(total=len(due_ids))
        for scheduled_id in due_ids:
            try:
                outcome = await self._process_scheduled(scheduled_id)
            except Exception:
                logger.exception("Scheduled email %s could not be processed", scheduled_id)
                outcome = False
            if outcome is None:
                batch.skipped += 1
            elif outcome:
                batch.processed += 1
            else:
                batch.failed += 1

        if batch.total:
            logger.info(
                "Scheduled emails: %d due, %d sent, %d failed, %d skipped",
                batch.total,
                batch.processed,
                batch.failed,
                batch.skipped,
            )
        return batch

    async def _claim_scheduled(self, db: AsyncSession, scheduled_id: UUID) -> bool:
        transition(ScheduledStatus.QUEUED, ScheduledStatus.SENDING)
        result = await db.execute(
            update(ScheduledEmail)
            .where(
                ScheduledEmail.id == scheduled_id,
                ScheduledEmail.status == ScheduledStatus.QUEUED,
            )
            .values(status=ScheduledStatus.SENDING, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount == 1

    async def _process_scheduled(self, scheduled_id: UUID) -> bool | None:
        async with self.session_maker() as db:
            if not await self._claim_scheduled(db, scheduled_id):
                return None
            row = await db.get(ScheduledEmail, scheduled_id)

            try:
                result = await self._send(db, row.account_id, _params(row))
            except Exception as e:
                await self._record_scheduled_failure(db, row, str(e) or type(e).__name__)
                return False

            transition(row.status, ScheduledStatus.SENT)
            now = utcnow()
            await db.execute(
                update(ScheduledEmail)
                .where(
                    ScheduledEmail.id == scheduled_id,
                    ScheduledEmail.status == ScheduledStatus.SENDING,
                )
                .values(
                    status=ScheduledStatus.SENT,
                    sent_at=now,
                    provider_message_id=result.message_id or None,
                    error_message=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        logger.info("Scheduled email %s sent", scheduled_id)
        await self.events.emit(
            "message.sent",
            "message",
            entity_id=result.message_id or None,
            actor_id=row.user_id,
            payload={"scheduled_email_id": str(scheduled_id), "scheduled": True},
            metadata={"source": "cron"},
        )
        return True

    async def _record_scheduled_failure(
        self, db: AsyncSession, row: ScheduledEmail, error: str
    ) -> None:
        """Requeue with ``retry_count + 1``, or fail once the budget is spent."""
        attempts = row.retry_count + 1
        target = (
            ScheduledStatus.FAILED if attempts >= self.max_retries else ScheduledStatus.QUEUED
        )
        transition(ScheduledStatus.SENDING, target)

        await db.execute(
            update(ScheduledEmail)
            .where(
                ScheduledEmail.id == row.id,
                ScheduledEmail.status == ScheduledStatus.SENDING,
                ScheduledEmail.retry_count == row.retry_count,
            )
            .values(
                status=target,
                retry_count=attempts,
                error_message=error,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

        if target == ScheduledStatus.FAILED:
            logger.error(
                "Scheduled email %s failed after %d attempts: %s", row.id, attempts, error
            )
            db.add(
                Notification(
                    user_id=row.user_id,
                    account_id=row.account_id,
                    type="error",
                    title="Scheduled Email Failed",
                    message=(
                        f'Failed to send "{row.subject}" after {attempts} attempts: {error}'
                    ),
                    link="/app/scheduled",
                )
            )
        else:
            logger.warning(
                "Scheduled email %s attempt %d failed, requeued: %s", row.id, attempts, error
            )
        await db.commit()
