"""Composition root: builds every component once per process.

The API process keeps the container on ``app.state.container``; the arq
worker keeps it in the job context. Tests build one around a SQLite
engine, fake providers and a recording dispatcher.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from arq.connections import RedisSettings
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.config import Settings
from app.database import build_engine, build_session_maker
from app.services.accounts import AccountService
from app.services.checkpoints import SyncCheckpointStore
from app.services.credentials import CredentialStore
from app.services.crypto import TokenCipher
from app.services.delivery import DeliveryQueue
from app.services.events import EventEmitter
from app.services.mail.factory import ProviderRegistry
from app.services.snooze import SnoozeService
from app.services.sync import SyncCoordinator
from app.services.token_manager import TokenManager
from app.services.vacation import VacationResponderService
from app.services.webhooks import ArqSyncDispatcher, SyncDispatcher, WebhookIngest

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    credentials: CredentialStore
    providers: ProviderRegistry
    tokens: TokenManager
    checkpoints: SyncCheckpointStore
    events: EventEmitter
    vacation: VacationResponderService
    sync: SyncCoordinator
    dispatcher: SyncDispatcher
    webhooks: WebhookIngest
    accounts: AccountService
    delivery: DeliveryQueue
    snoozes: SnoozeService

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        engine: AsyncEngine | None = None,
        providers: ProviderRegistry | None = None,
        dispatcher: SyncDispatcher | None = None,
    ) -> Container:
        engine = engine or build_engine(settings.database_url, echo=settings.debug)
        session_maker = build_session_maker(engine)
        providers = providers or ProviderRegistry.from_settings(settings)
        dispatcher = dispatcher or ArqSyncDispatcher(
            RedisSettings.from_dsn(settings.redis_url)
        )

        credentials = CredentialStore(session_maker, TokenCipher(settings.encryption_key))
        tokens = TokenManager(
            session_maker,
            credentials,
            providers,
            refresh_margin=timedelta(seconds=settings.token_refresh_margin_seconds),
        )
        checkpoints = SyncCheckpointStore(session_maker)
        events = EventEmitter(session_maker)
        vacation = VacationResponderService(session_maker, tokens, providers, events)
        sync = SyncCoordinator(
            session_maker,
            tokens,
            providers,
            checkpoints,
            events,
            vacation,
            max_per_folder=settings.initial_sync_max_per_folder,
            page_size=settings.initial_sync_page_size,
            contacts_limit=settings.initial_sync_contacts_limit,
            error_threshold=settings.sync_error_threshold,
            stale_after=timedelta(seconds=settings.sync_stale_after_seconds),
            sweep_concurrency=settings.sync_sweep_concurrency,
        )

        return cls(
            settings=settings,
            engine=engine,
            session_maker=session_maker,
            credentials=credentials,
            providers=providers,
            tokens=tokens,
            checkpoints=checkpoints,
            events=events,
            vacation=vacation,
            sync=sync,
            dispatcher=dispatcher,
            webhooks=WebhookIngest(
                session_maker, dispatcher, settings.microsoft_webhook_client_state
            ),
            accounts=AccountService(
                session_maker, credentials, checkpoints, providers, dispatcher, events
            ),
            delivery=DeliveryQueue(
                session_maker,
                tokens,
                providers,
                events,
                default_delay_seconds=settings.undo_send_default_delay_seconds,
                max_retries=settings.scheduled_send_max_retries,
                batch_limit=settings.delivery_batch_limit,
            ),
            snoozes=SnoozeService(session_maker, batch_limit=settings.snooze_batch_limit),
        )

    async def close(self) -> None:
        close = getattr(self.dispatcher, "close", None)
        if close is not None:
            await close()
        await self.engine.dispose()
        logger.info("Container closed")
