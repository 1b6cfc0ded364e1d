"""Arq task definitions for mailbox sync.

Jobs are enqueued by the webhook dispatcher and after an account is
connected. Periodic work is driven by the external cron invoker through
the HTTP cron endpoints, not by arq cron jobs.
"""

import logging
from uuid import UUID

from app.config import get_settings
from app.container import Container
from app.workers.settings import redis_settings

logger = logging.getLogger(__name__)


def _container(ctx: dict) -> Container:
    return ctx["container"]


async def delta_sync_account(ctx: dict, account_id: str) -> dict:
    """Incremental sync requested by a push notification."""
    result = await _container(ctx).sync.delta_sync(UUID(account_id))
    logger.info("Job delta_sync_account %s: %s", account_id, result.outcome.value)
    return result.as_dict()


async def initial_sync_account(ctx: dict, account_id: str) -> dict:
    """Full first sync of a newly connected account."""
    result = await _container(ctx).sync.initial_sync(UUID(account_id))
    logger.info("Job initial_sync_account %s: %s", account_id, result.outcome.value)
    return result.as_dict()


# ── Lifecycle ───────────────────────────────────────────────────────


async def startup(ctx: dict) -> None:
    """Worker startup hook."""
    logger.info("Worker starting up...")
    ctx["container"] = Container.build(get_settings())


async def shutdown(ctx: dict) -> None:
    """Worker shutdown hook."""
    logger.info("Worker shutting down...")
    container = ctx.get("container")
    if container is not None:
        await container.close()


class WorkerSettings:
    """Arq worker settings."""

    functions = [delta_sync_account, initial_sync_account]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = redis_settings
    max_jobs = 10
    job_timeout = 600  # 10 minutes max per job
    # Job ids are reused per account; a kept result would block the next enqueue
    keep_result = 0
