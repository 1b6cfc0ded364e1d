"""Encrypted OAuth credential storage.

One ``oauth_credentials`` row per account. Rows are replaced wholesale on
connect and on every refresh; a partially updated credential never
exists.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import upsert
from app.models.mail import EmailAccount, OAuthCredential
from app.models.types import utcnow
from app.services.crypto import TokenCipher
from app.services.mail.base import TokenSet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredCredential:
    """Decrypted view of an account's credential."""

    account_id: UUID
    access_token: str
    refresh_token: str
    expires_at: datetime
    scopes: list[str] | None = None

    def expires_within(self, margin: timedelta, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow()) + margin


class CredentialStore:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        cipher: TokenCipher,
    ) -> None:
        self.session_maker = session_maker
        self.cipher = cipher

    def decrypt_row(self, row: OAuthCredential) -> StoredCredential:
        return StoredCredential(
            account_id=row.account_id,
            access_token=self.cipher.decrypt(row.access_token_encrypted),
            refresh_token=self.cipher.decrypt(row.refresh_token_encrypted),
            expires_at=row.expires_at,
            scopes=row.scopes,
        )

    async def load(self, account_id: UUID) -> StoredCredential | None:
        async with self.session_maker() as db:
            row = (
                await db.execute(
                    select(OAuthCredential).where(OAuthCredential.account_id == account_id)
                )
            ).scalar_one_or_none()
        if not row:
            return None
        return self.decrypt_row(row)

    async def load_for_update(
        self, db: AsyncSession, account_id: UUID
    ) -> StoredCredential | None:
        """Load inside ``db``'s transaction, locking the row until commit."""
        row = (
            await db.execute(
                select(OAuthCredential)
                .where(OAuthCredential.account_id == account_id)
                .with_for_update()
            )
        ).scalar_one_or_none()
        if not row:
            return None
        return self.decrypt_row(row)

    async def write(
        self,
        db: AsyncSession,
        account_id: UUID,
        tokens: TokenSet,
        scopes: list[str] | None = None,
    ) -> None:
        """Upsert the encrypted row inside ``db``'s transaction."""
        values = {
            "account_id": account_id,
            "access_token_encrypted": self.cipher.encrypt(tokens.access_token),
            "refresh_token_encrypted": self.cipher.encrypt(tokens.refresh_token),
            "expires_at": tokens.expires_at,
            "updated_at": utcnow(),
        }
        if scopes is not None:
            values["scopes"] = scopes
        stmt = upsert(db, OAuthCredential).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["account_id"],
            set_={k: v for k, v in values.items() if k != "account_id"},
        )
        await db.execute(stmt)

    async def replace(
        self,
        account_id: UUID,
        tokens: TokenSet,
        scopes: list[str] | None = None,
    ) -> None:
        async with self.session_maker() as db:
            await self.write(db, account_id, tokens, scopes)
            await db.commit()
        logger.info("Stored credential for account %s", account_id)

    async def delete(self, account_id: UUID) -> None:
        async with self.session_maker() as db:
            await db.execute(
                delete(OAuthCredential).where(OAuthCredential.account_id == account_id)
            )
            await db.commit()
        logger.info("Deleted credential for account %s", account_id)

    async def list_expiring(self, within: timedelta) -> list[UUID]:
        """Accounts (not archived) whose access token expires inside ``within``."""
        cutoff = utcnow() + within
        async with self.session_maker() as db:
            result = await db.execute(
                select(OAuthCredential.account_id)
                .join(EmailAccount, EmailAccount.id == OAuthCredential.account_id)
                .where(
                    OAuthCredential.expires_at < cutoff,
                    EmailAccount.archived_at.is_(None),
                )
            )
            return list(result.scalars().all())
