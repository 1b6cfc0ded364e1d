"""Vacation auto-replies, at most one per sender per active window.

The reply row is reserved *before* the provider send (insert on conflict
do nothing), so two syncs racing on mail from the same sender cannot both
reply. A failed send gives the reservation back.
"""

from __future__ import annotations

import html
import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import upsert
from app.models.mail import EmailAccount, MailMessage
from app.models.states import FolderType
from app.models.types import utcnow
from app.models.vacation import VacationReply, VacationResponder
from app.services.accounts import get_owned_account
from app.services.events import EventEmitter
from app.services.mail.base import SendParams
from app.services.mail.factory import ProviderRegistry
from app.services.token_manager import TokenManager

logger = logging.getLogger(__name__)


def is_active(responder: VacationResponder, now: datetime) -> bool:
    """Enabled and inside [start_date, end_date]; a missing bound is open."""
    if not responder.enabled:
        return False
    if responder.start_date is not None and now < responder.start_date:
        return False
    if responder.end_date is not None and now > responder.end_date:
        return False
    return True


def build_reply(responder: VacationResponder, message: MailMessage) -> SendParams:
    """Auto-reply without threading headers or quoted content."""
    sender = message.sender or {}
    subject = (message.subject or "").strip()
    body_html = "<p>" + html.escape(responder.message).replace("\n", "<br>") + "</p>"
    return SendParams(
        to=[{"email": sender.get("email", ""), "name": sender.get("name") or ""}],
        subject=f"Automatic reply: {subject}" if subject else "Automatic reply",
        body_text=responder.message,
        body_html=body_html,
    )


class VacationResponderService:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        tokens: TokenManager,
        providers: ProviderRegistry,
        events: EventEmitter,
    ) -> None:
        self.session_maker = session_maker
        self.tokens = tokens
        self.providers = providers
        self.events = events

    # ── Inbound ──

    async def handle_inbound(self, account: EmailAccount, message: MailMessage) -> bool:
        """Reply to ``message`` if the account's responder is active.

        Returns whether a reply was sent. Never raises: a failed auto-reply
        must not affect the sync that delivered the message.
        """
        try:
            return await self._reply(account, message)
        except Exception:
            logger.exception("Vacation auto-reply failed for message %s", message.id)
            return False

    async def _reply(self, account: EmailAccount, message: MailMessage) -> bool:
        if message.folder_type != FolderType.INBOX:
            return False
        sender = ((message.sender or {}).get("email") or "").strip().lower()
        if not sender or sender == account.email_address.lower():
            return False

        async with self.session_maker() as db:
            responder = (
                await db.execute(
                    select(VacationResponder).where(
                        VacationResponder.account_id == account.id,
                        VacationResponder.enabled.is_(True),
                    )
                )
            ).scalar_one_or_none()
            if responder is None or not is_active(responder, utcnow()):
                return False

            stmt = (
                upsert(db, VacationReply)
                .values(responder_id=responder.id, sender_email=sender, replied_at=utcnow())
                .on_conflict_do_nothing(index_elements=["responder_id", "sender_email"])
                .returning(VacationReply.id)
            )
            reply_id = (await db.execute(stmt)).scalar_one_or_none()
            await db.commit()

        if reply_id is None:
            logger.debug("Already replied to this sender for account %s", account.id)
            return False

        try:
            token = (await self.tokens.get_valid_token(account.id)).unwrap()
            provider = self.providers.get(account.provider)
            await provider.send_message(token, build_reply(responder, message))
        except Exception:
            await self._release(reply_id)
            raise

        await self.events.emit(
            "email.vacation_auto_reply",
            "message",
            entity_id=message.id,
            actor_id=account.user_id,
            payload={
                "message_id": str(message.id),
                "sender_email": sender,
                "vacation_responder_id": str(responder.id),
            },
        )
        logger.info("Vacation auto-reply sent for account %s", account.id)
        return True

    async def _release(self, reply_id: UUID) -> None:
        async with self.session_maker() as db:
            await db.execute(delete(VacationReply).where(VacationReply.id == reply_id))
            await db.commit()

    # ── Configuration ──

    async def set_config(
        self,
        user_id: UUID,
        account_id: UUID,
        enabled: bool,
        start_date: datetime | None,
        end_date: datetime | None,
        message: str,
    ) -> VacationResponder:
        """Create or update the responder; disabling forgets who was replied to."""
        if start_date and end_date and end_date < start_date:
            raise ValueError("end_date must not be before start_date")

        async with self.session_maker() as db:
            await get_owned_account(db, user_id, account_id)
            responder = (
                await db.execute(
                    select(VacationResponder).where(
                        VacationResponder.account_id == account_id
                    )
                )
            ).scalar_one_or_none()

            action = "updated"
            if responder is None:
                action = "created"
                responder = VacationResponder(user_id=user_id, account_id=account_id)
                db.add(responder)

            responder.enabled = enabled
            responder.start_date = start_date
            responder.end_date = end_date
            responder.message = message
            await db.flush()

            if not enabled:
                result = await db.execute(
                    delete(VacationReply).where(VacationReply.responder_id == responder.id)
                )
                logger.info(
                    "Vacation responder disabled for account %s, %d replies purged",
                    account_id,
                    result.rowcount,
                )
            await db.commit()
            await db.refresh(responder)

        await self.events.emit(
            "vacation.configured",
            "vacation_responder",
            entity_id=responder.id,
            actor_id=user_id,
            payload={"account_id": str(account_id), "enabled": enabled, "action": action},
        )
        return responder

    async def get_config(self, user_id: UUID, account_id: UUID) -> VacationResponder | None:
        async with self.session_maker() as db:
            return (
                await db.execute(
                    select(VacationResponder).where(
                        VacationResponder.account_id == account_id,
                        VacationResponder.user_id == user_id,
                    )
                )
            ).scalar_one_or_none()
