"""Return snoozed messages to their folder once the snooze expires."""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.delivery import Notification
from app.models.mail import MailMessage
from app.models.snooze import SnoozedEmail
from app.models.states import FolderType
from app.models.types import utcnow
from app.services.delivery import BatchResult

logger = logging.getLogger(__name__)


class SnoozeService:
    def __init__(
        self, session_maker: async_sessionmaker[AsyncSession], batch_limit: int = 100
    ) -> None:
        self.session_maker = session_maker
        self.batch_limit = batch_limit

    async def snooze(
        self, user_id: UUID, message_id: UUID, snooze_until: datetime
    ) -> SnoozedEmail:
        """Hide a message in the snoozed folder until ``snooze_until``."""
        async with self.session_maker() as db:
            message = (
                await db.execute(
                    select(MailMessage).where(
                        MailMessage.id == message_id, MailMessage.user_id == user_id
                    )
                )
            ).scalar_one_or_none()
            if message is None:
                raise LookupError("Message not found")
            if message.folder_type == FolderType.SNOOZED:
                raise ValueError("Message is already snoozed")

            snoozed = SnoozedEmail(
                user_id=user_id,
                message_id=message_id,
                snooze_until=snooze_until,
                original_folder_type=message.folder_type,
            )
            message.folder_type = FolderType.SNOOZED
            db.add(snoozed)
            await db.commit()
            await db.refresh(snoozed)
        return snoozed

    async def process_due_snoozes(
        self, limit: int | None = None, now: datetime | None = None
    ) -> BatchResult:
        now = now or utcnow()
        async with self.session_maker() as db:
            due_ids = (
                await db.execute(
                    select(SnoozedEmail.id)
                    .where(
                        SnoozedEmail.unsnoozed.is_(False),
                        SnoozedEmail.snooze_until <= now,
                    )
                    .order_by(SnoozedEmail.snooze_until)
                    .limit(limit or self.batch_limit)
                )
            ).scalars().all()

        batch = BatchResult(total=len(due_ids))
        for snooze_id in due_ids:
            try:
                returned = await self._unsnooze(snooze_id)
            except Exception:
                logger.exception("Failed to unsnooze %s", snooze_id)
                batch.failed += 1
                continue
            if returned:
                batch.processed += 1
            else:
                batch.skipped += 1

        if batch.total:
            logger.info(
                "Snoozes: %d due, %d returned, %d failed",
                batch.total,
                batch.processed,
                batch.failed,
            )
        return batch

    async def _unsnooze(self, snooze_id: UUID) -> bool:
        async with self.session_maker() as db:
            # Marking first makes a concurrent scan skip the row
            claimed = await db.execute(
                update(SnoozedEmail)
                .where(SnoozedEmail.id == snooze_id, SnoozedEmail.unsnoozed.is_(False))
                .values(unsnoozed=True)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                return False

            snoozed = await db.get(SnoozedEmail, snooze_id)
            message = await db.get(MailMessage, snoozed.message_id)
            if message is not None:
                message.folder_type = snoozed.original_folder_type
                message.is_read = False
                db.add(
                    Notification(
                        user_id=snoozed.user_id,
                        account_id=message.account_id,
                        type="info",
                        title="Snoozed Email Returned",
                        message=f'"{message.subject or "(no subject)"}" is back in your inbox',
                        link=f"/app/inbox?message={message.id}",
                    )
                )
            await db.commit()
        return True
