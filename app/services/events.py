"""Append-only domain events for downstream consumers (UI refresh, audit)."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.event import Event
from app.models.types import utcnow

logger = logging.getLogger(__name__)


class EventEmitter:
    """Writes events in their own transaction; a failed write is only logged."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self.session_maker = session_maker

    async def emit(
        self,
        event_type: str,
        entity_type: str,
        entity_id: Any = None,
        actor_id: Any = None,
        payload: dict | None = None,
        metadata: dict | None = None,
    ) -> None:
        event = Event(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            actor_id=str(actor_id) if actor_id is not None else None,
            payload=payload or {},
            event_metadata={**(metadata or {}), "emitted_at": utcnow().isoformat()},
        )
        try:
            async with self.session_maker() as db:
                db.add(event)
                await db.commit()
        except SQLAlchemyError:
            logger.exception("Failed to emit %s for %s %s", event_type, entity_type, entity_id)
