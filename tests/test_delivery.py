"""Tests for undo-send, scheduled send and snooze processing."""

from datetime import datetime, timedelta
from unittest.mock import patch
from uuid import uuid4

import pytest
from sqlalchemy import select

from app.core.errors import (
    AccountNotFound,
    AlreadyCanceled,
    AlreadySent,
    QueuedSendNotFound,
    UndoWindowExpired,
)
from app.models.delivery import Notification, QueuedSend, ScheduledEmail
from app.models.event import Event
from app.models.mail import MailMessage
from app.models.snooze import SnoozedEmail
from app.models.states import FolderType, ScheduledStatus
from app.models.types import utcnow
from app.services.mail.base import SendParams


# ─── Helpers ─────────────────────────────────────────────────────────


def _draft(subject: str = "Quarterly report") -> SendParams:
    return SendParams(
        to=[{"email": "bob@example.com", "name": "Bob"}],
        subject=subject,
        body_text="See attached",
    )


async def _get(container, model, row_id):
    async with container.session_maker() as db:
        return await db.get(model, row_id)


async def _notifications(container, user_id) -> list[Notification]:
    async with container.session_maker() as db:
        return list(
            (
                await db.execute(select(Notification).where(Notification.user_id == user_id))
            ).scalars()
        )


# ─── Undo-send ───────────────────────────────────────────────────────


class TestUndoSend:
    @pytest.mark.asyncio
    async def test_enqueue_uses_default_delay(self, container, make_account, user_id):
        account = await make_account()
        before = utcnow()

        queued = await container.delivery.enqueue_undo_send(user_id, account.id, _draft())

        assert queued.sent is False
        assert queued.canceled is False
        assert before + timedelta(seconds=5) <= queued.send_at
        assert queued.send_at <= utcnow() + timedelta(seconds=5)

    @pytest.mark.asyncio
    async def test_enqueue_rejects_foreign_account(self, container, make_account):
        account = await make_account()

        with pytest.raises(AccountNotFound):
            await container.delivery.enqueue_undo_send(uuid4(), account.id, _draft())

    @pytest.mark.asyncio
    async def test_enqueue_requires_recipient(self, container, make_account, user_id):
        account = await make_account()

        with pytest.raises(ValueError):
            await container.delivery.enqueue_undo_send(
                user_id, account.id, SendParams(to=[], subject="x")
            )

    @pytest.mark.asyncio
    async def test_cancel_inside_window(self, container, make_account, user_id, google):
        account = await make_account()
        queued = await container.delivery.enqueue_undo_send(user_id, account.id, _draft(), 30)

        canceled = await container.delivery.cancel_undo_send(user_id, queued.id)
        assert canceled.canceled is True

        with pytest.raises(AlreadyCanceled):
            await container.delivery.cancel_undo_send(user_id, queued.id)

        batch = await container.delivery.process_due_queued_sends(
            now=queued.send_at + timedelta(seconds=1)
        )
        assert batch.total == 0
        assert google.sent == []

    @pytest.mark.asyncio
    async def test_cancel_at_send_time_is_too_late(self, container, make_account, user_id):
        account = await make_account()
        queued = await container.delivery.enqueue_undo_send(user_id, account.id, _draft(), 10)

        with pytest.raises(UndoWindowExpired) as exc:
            await container.delivery.cancel_undo_send(user_id, queued.id, now=queued.send_at)
        assert str(exc.value) == "Undo window has expired"

        row = await _get(container, QueuedSend, queued.id)
        assert row.canceled is False

    @pytest.mark.asyncio
    async def test_cancel_unknown_or_foreign(self, container, make_account, user_id):
        account = await make_account()
        queued = await container.delivery.enqueue_undo_send(user_id, account.id, _draft(), 30)

        with pytest.raises(QueuedSendNotFound):
            await container.delivery.cancel_undo_send(user_id, uuid4())
        with pytest.raises(QueuedSendNotFound):
            await container.delivery.cancel_undo_send(uuid4(), queued.id)

    @pytest.mark.asyncio
    async def test_due_send_is_delivered_once(self, container, make_account, user_id, google):
        account = await make_account()
        queued = await container.delivery.enqueue_undo_send(user_id, account.id, _draft(), 5)
        later = queued.send_at + timedelta(seconds=1)

        early = await container.delivery.process_due_queued_sends(now=queued.send_at - timedelta(seconds=1))
        assert early.total == 0

        batch = await container.delivery.process_due_queued_sends(now=later)
        assert batch.as_dict() == {"total": 1, "processed": 1, "failed": 0, "skipped": 0}
        assert [p.subject for p in google.sent] == ["Quarterly report"]

        again = await container.delivery.process_due_queued_sends(now=later)
        assert again.total == 0
        assert len(google.sent) == 1

        row = await _get(container, QueuedSend, queued.id)
        assert row.sent is True
        assert row.provider_message_id == "sent-1"
        with pytest.raises(AlreadySent) as exc:
            await container.delivery.cancel_undo_send(user_id, queued.id)
        assert str(exc.value) == "Email has already been sent"

    @pytest.mark.asyncio
    async def test_failed_send_is_isolated(self, container, make_account, user_id, google):
        account = await make_account()
        first = await container.delivery.enqueue_undo_send(user_id, account.id, _draft("one"), 0)
        await container.delivery.enqueue_undo_send(user_id, account.id, _draft("two"), 0)
        google.send_failures = 1

        batch = await container.delivery.process_due_queued_sends(
            now=utcnow() + timedelta(seconds=1)
        )

        assert batch.processed == 1
        assert batch.failed == 1
        failed = await _get(container, QueuedSend, first.id)
        assert failed.sent is False
        assert "503" in failed.error

        async with container.session_maker() as db:
            sent_events = (
                await db.execute(select(Event).where(Event.event_type == "message.sent"))
            ).scalars().all()
        assert len(sent_events) == 1
        assert sent_events[0].event_metadata["source"] == "cron"

    @pytest.mark.asyncio
    async def test_crash_on_one_row_does_not_stop_the_batch(
        self, container, make_account, user_id, google
    ):
        account = await make_account()
        broken = await container.delivery.enqueue_undo_send(user_id, account.id, _draft("one"), 0)
        await container.delivery.enqueue_undo_send(user_id, account.id, _draft("two"), 0)
        process = container.delivery._process_queued

        async def process_or_crash(queue_id, now):
            if queue_id == broken.id:
                raise RuntimeError("connection reset while loading row")
            return await process(queue_id, now)

        with patch.object(container.delivery, "_process_queued", process_or_crash):
            batch = await container.delivery.process_due_queued_sends(
                now=utcnow() + timedelta(seconds=1)
            )

        assert batch.as_dict() == {"total": 2, "processed": 1, "failed": 1, "skipped": 0}
        assert [p.subject for p in google.sent] == ["two"]
        assert (await _get(container, QueuedSend, broken.id)).sent is False


# ─── Scheduled send ──────────────────────────────────────────────────


class TestScheduledSend:
    @pytest.mark.asyncio
    async def test_schedule_must_be_future_and_aware(self, container, make_account, user_id):
        account = await make_account()

        with pytest.raises(ValueError):
            await container.delivery.schedule_email(
                user_id, account.id, _draft(), utcnow() - timedelta(minutes=1)
            )
        with pytest.raises(ValueError):
            await container.delivery.schedule_email(
                user_id, account.id, _draft(), datetime(2099, 1, 1, 9, 0)
            )

    @pytest.mark.asyncio
    async def test_sent_when_due(self, container, make_account, user_id, google):
        account = await make_account()
        scheduled = await container.delivery.schedule_email(
            user_id, account.id, _draft(), utcnow() + timedelta(minutes=1)
        )

        not_yet = await container.delivery.process_due_scheduled_emails()
        assert not_yet.total == 0

        batch = await container.delivery.process_due_scheduled_emails(
            now=utcnow() + timedelta(minutes=2)
        )
        assert batch.processed == 1

        row = await _get(container, ScheduledEmail, scheduled.id)
        assert row.status == ScheduledStatus.SENT
        assert row.retry_count == 0
        assert row.sent_at is not None
        assert row.provider_message_id == "sent-1"

    @pytest.mark.asyncio
    async def test_three_failures_end_in_failed(self, container, make_account, user_id, google):
        account = await make_account()
        scheduled = await container.delivery.schedule_email(
            user_id, account.id, _draft("Launch plan"), utcnow() + timedelta(minutes=1)
        )
        google.send_failures = 10
        due = utcnow() + timedelta(minutes=2)

        for attempt in (1, 2):
            batch = await container.delivery.process_due_scheduled_emails(now=due)
            assert batch.failed == 1
            row = await _get(container, ScheduledEmail, scheduled.id)
            assert row.status == ScheduledStatus.QUEUED
            assert row.retry_count == attempt

        await container.delivery.process_due_scheduled_emails(now=due)
        row = await _get(container, ScheduledEmail, scheduled.id)
        assert row.status == ScheduledStatus.FAILED
        assert row.retry_count == 3
        assert "503" in row.error_message

        notes = await _notifications(container, user_id)
        assert len(notes) == 1
        assert notes[0].title == "Scheduled Email Failed"
        assert notes[0].type == "error"
        assert "Launch plan" in notes[0].message

        # Terminal: never picked up again
        final = await container.delivery.process_due_scheduled_emails(now=due)
        assert final.total == 0
        assert google.sent == []

    @pytest.mark.asyncio
    async def test_two_failures_then_success(self, container, make_account, user_id, google):
        account = await make_account()
        scheduled = await container.delivery.schedule_email(
            user_id, account.id, _draft(), utcnow() + timedelta(minutes=1)
        )
        google.send_failures = 2
        due = utcnow() + timedelta(minutes=2)

        for _ in range(3):
            await container.delivery.process_due_scheduled_emails(now=due)

        row = await _get(container, ScheduledEmail, scheduled.id)
        assert row.status == ScheduledStatus.SENT
        assert row.retry_count == 2
        assert len(google.sent) == 1
        assert await _notifications(container, user_id) == []

    @pytest.mark.asyncio
    async def test_stale_sending_row_is_recovered(self, container, make_account, user_id, google):
        account = await make_account()
        scheduled = await container.delivery.schedule_email(
            user_id, account.id, _draft(), utcnow() + timedelta(minutes=1)
        )
        async with container.session_maker() as db:
            row = await db.get(ScheduledEmail, scheduled.id)
            row.status = ScheduledStatus.SENDING
            row.updated_at = utcnow() - timedelta(hours=1)
            await db.commit()

        batch = await container.delivery.process_due_scheduled_emails(
            now=utcnow() + timedelta(minutes=2)
        )

        assert batch.processed == 1
        row = await _get(container, ScheduledEmail, scheduled.id)
        assert row.status == ScheduledStatus.SENT


# ─── Snooze ──────────────────────────────────────────────────────────


class TestSnooze:
    @pytest.mark.asyncio
    async def test_snoozed_message_returns_when_due(
        self, container, make_account, store_message, user_id
    ):
        account = await make_account()
        message = await store_message(account, subject="Follow up")
        until = utcnow() + timedelta(hours=1)

        snoozed = await container.snoozes.snooze(user_id, message.id, until)
        assert (await _get(container, MailMessage, message.id)).folder_type == FolderType.SNOOZED

        with pytest.raises(ValueError):
            await container.snoozes.snooze(user_id, message.id, until)

        early = await container.snoozes.process_due_snoozes(now=utcnow())
        assert early.total == 0

        batch = await container.snoozes.process_due_snoozes(now=until + timedelta(seconds=1))
        assert batch.processed == 1

        restored = await _get(container, MailMessage, message.id)
        assert restored.folder_type == FolderType.INBOX
        assert restored.is_read is False
        assert (await _get(container, SnoozedEmail, snoozed.id)).unsnoozed is True

        notes = await _notifications(container, user_id)
        assert [n.title for n in notes] == ["Snoozed Email Returned"]

        again = await container.snoozes.process_due_snoozes(now=until + timedelta(seconds=1))
        assert again.total == 0

    @pytest.mark.asyncio
    async def test_snooze_unknown_message(self, container, user_id):
        with pytest.raises(LookupError):
            await container.snoozes.snooze(user_id, uuid4(), utcnow() + timedelta(hours=1))
