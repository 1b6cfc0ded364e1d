"""Entry points for the external periodic invoker.

Every endpoint requires ``Authorization: Bearer <CRON_SECRET>``.
"""

import logging

from fastapi import APIRouter

from app.deps import AppContainer, CronAuth

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[CronAuth])


@router.get("/refresh-tokens")
async def refresh_tokens(container: AppContainer):
    """Refresh every access token that is about to expire."""
    result = await container.tokens.refresh_if_expiring_soon()
    return {"total": result.total, "refreshed": result.refreshed, "failed": result.failed}


@router.get("/sync-emails")
async def sync_emails(container: AppContainer):
    """Sync every eligible account."""
    sweep = await container.sync.sweep()
    return {
        "total": sweep.total,
        "synced": sweep.synced,
        "skipped": sweep.skipped,
        "failed": sweep.failed,
        "results": [r.as_dict() for r in sweep.results],
    }


@router.get("/process-queued-sends")
async def process_queued_sends(container: AppContainer):
    result = await container.delivery.process_due_queued_sends()
    return result.as_dict()


@router.get("/process-scheduled-emails")
async def process_scheduled_emails(container: AppContainer):
    result = await container.delivery.process_due_scheduled_emails()
    return result.as_dict()


@router.get("/process-snoozed-emails")
async def process_snoozed_emails(container: AppContainer):
    result = await container.snoozes.process_due_snoozes()
    return result.as_dict()
