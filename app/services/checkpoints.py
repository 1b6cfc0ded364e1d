"""Per-(account, sync type) cursors and health counters.

The cursor only moves forward on a provider-acknowledged success and is
rewound only by an explicit :meth:`SyncCheckpointStore.reset`.
"""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import upsert
from app.models.mail import SyncCheckpoint
from app.models.states import SyncType
from app.models.types import utcnow

logger = logging.getLogger(__name__)


class SyncCheckpointStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self.session_maker = session_maker

    async def get(self, account_id: UUID, sync_type: SyncType) -> SyncCheckpoint | None:
        async with self.session_maker() as db:
            return (
                await db.execute(
                    select(SyncCheckpoint).where(
                        SyncCheckpoint.account_id == account_id,
                        SyncCheckpoint.sync_type == sync_type,
                    )
                )
            ).scalar_one_or_none()

    async def initialize(self, account_id: UUID) -> None:
        """Create the never-synced rows for every sync type (idempotent)."""
        async with self.session_maker() as db:
            stmt = upsert(db, SyncCheckpoint).values(
                [
                    {"account_id": account_id, "sync_type": sync_type, "error_count": 0}
                    for sync_type in SyncType
                ]
            )
            await db.execute(
                stmt.on_conflict_do_nothing(index_elements=["account_id", "sync_type"])
            )
            await db.commit()

    async def advance(
        self,
        db: AsyncSession,
        account_id: UUID,
        sync_type: SyncType,
        cursor: str | None,
    ) -> None:
        """Record a successful sync inside the caller's transaction.

        A ``None`` cursor marks the success without touching the stored one.
        """
        now = utcnow()
        values = {
            "account_id": account_id,
            "sync_type": sync_type,
            "cursor": cursor,
            "last_successful_at": now,
            "error_count": 0,
            "last_error": None,
            "updated_at": now,
        }
        set_ = {
            "last_successful_at": now,
            "error_count": 0,
            "last_error": None,
            "updated_at": now,
        }
        if cursor is not None:
            set_["cursor"] = cursor
        stmt = upsert(db, SyncCheckpoint).values(**values)
        await db.execute(
            stmt.on_conflict_do_update(
                index_elements=["account_id", "sync_type"], set_=set_
            )
        )

    async def record_failure(
        self, account_id: UUID, sync_type: SyncType, error: str
    ) -> int:
        """Increment the error count atomically and return the new value."""
        now = utcnow()
        async with self.session_maker() as db:
            stmt = upsert(db, SyncCheckpoint).values(
                account_id=account_id,
                sync_type=sync_type,
                error_count=1,
                last_error=error[:2000],
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["account_id", "sync_type"],
                set_={
                    "error_count": SyncCheckpoint.error_count + 1,
                    "last_error": error[:2000],
                    "updated_at": now,
                },
            ).returning(SyncCheckpoint.error_count)
            count = (await db.execute(stmt)).scalar_one()
            await db.commit()
        logger.warning(
            "Sync failure %d for account %s (%s): %s",
            count,
            account_id,
            sync_type.value,
            error,
        )
        return count

    async def reset(self, account_id: UUID, sync_type: SyncType) -> None:
        """Forget the cursor so the next sync starts from a new baseline."""
        async with self.session_maker() as db:
            await db.execute(
                update(SyncCheckpoint)
                .where(
                    SyncCheckpoint.account_id == account_id,
                    SyncCheckpoint.sync_type == sync_type,
                )
                .values(cursor=None, error_count=0, last_error=None, updated_at=utcnow())
            )
            await db.commit()
        logger.info("Reset %s checkpoint for account %s", sync_type.value, account_id)
