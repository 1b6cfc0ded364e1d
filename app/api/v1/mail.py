"""Mail endpoints: undo-send, scheduled send, snooze and manual sync.

The caller is identified by the ``X-User-ID`` header; every lookup is
scoped to that user.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from app.core.errors import (
    AccountNotFound,
    CredentialError,
    QueuedSendNotFound,
    QueueStateError,
)
from app.deps import AppContainer, DbSession, UserId
from app.schemas.mail import (
    CancelSendRequest,
    CancelSendResponse,
    QueueSendRequest,
    QueueSendResponse,
    ScheduledEmailRead,
    ScheduleRequest,
    SnoozeRead,
    SnoozeRequest,
)
from app.services.accounts import get_owned_account
from app.services.sync import REAUTH_MESSAGE, SyncOutcome

logger = logging.getLogger(__name__)

router = APIRouter()


def _account_not_found() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail="Email account not found",
    )


# ── Undo-send ────────────────────────────────────────────────────────


@router.post(
    "/queue",
    response_model=QueueSendResponse,
    status_code=status.HTTP_201_CREATED,
)
async def queue_send(req: QueueSendRequest, user_id: UserId, container: AppContainer):
    """Queue a message behind the undo-send window."""
    try:
        queued = await container.delivery.enqueue_undo_send(
            user_id, req.account_id, req.to_params(), req.delay_seconds
        )
    except AccountNotFound:
        raise _account_not_found()
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return queued


@router.post("/cancel-send", response_model=CancelSendResponse)
async def cancel_send(req: CancelSendRequest, user_id: UserId, container: AppContainer):
    """Cancel a queued send while its undo window is still open."""
    try:
        await container.delivery.cancel_undo_send(user_id, req.queue_id)
    except QueuedSendNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Queued send not found",
        )
    except QueueStateError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return CancelSendResponse()


# ── Scheduled send ───────────────────────────────────────────────────


@router.post(
    "/schedule",
    response_model=ScheduledEmailRead,
    status_code=status.HTTP_201_CREATED,
)
async def schedule_send(req: ScheduleRequest, user_id: UserId, container: AppContainer):
    try:
        return await container.delivery.schedule_email(
            user_id, req.account_id, req.to_params(), req.scheduled_for
        )
    except AccountNotFound:
        raise _account_not_found()
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


# ── Snooze ───────────────────────────────────────────────────────────


@router.post("/snooze", response_model=SnoozeRead, status_code=status.HTTP_201_CREATED)
async def snooze_message(req: SnoozeRequest, user_id: UserId, container: AppContainer):
    try:
        return await container.snoozes.snooze(user_id, req.message_id, req.snooze_until)
    except LookupError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


# ── Sync ─────────────────────────────────────────────────────────────


@router.post("/sync/{account_id}")
async def trigger_sync(
    account_id: UUID,
    user_id: UserId,
    db: DbSession,
    container: AppContainer,
):
    """Run a sync now and wait for it.

    An account that is already syncing answers ``{"status": "skipped"}``.
    """
    try:
        await get_owned_account(db, user_id, account_id)
    except AccountNotFound:
        raise _account_not_found()

    result = await container.sync.sync_account(account_id, manual=True)

    if result.outcome == SyncOutcome.FAILED:
        if isinstance(result.error, CredentialError):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=REAUTH_MESSAGE,
            )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Sync failed: {result.error}",
        )
    return result.as_dict()
