"""Tests for credential storage and access-token refresh."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from app.core.errors import (
    CredentialError,
    ProviderRequestError,
    ProviderUnavailable,
    TokenExpired,
    TokenRevoked,
)
from app.models.mail import OAuthCredential
from app.services.crypto import TokenCipher


# ─── Cipher ──────────────────────────────────────────────────────────


class TestTokenCipher:
    def test_round_trip_with_derived_key(self):
        cipher = TokenCipher("not-a-fernet-key")
        encrypted = cipher.encrypt("ya29.secret")
        assert encrypted != "ya29.secret"
        assert cipher.decrypt(encrypted) == "ya29.secret"

    def test_other_key_cannot_decrypt(self):
        encrypted = TokenCipher("key-one").encrypt("secret")
        with pytest.raises(CredentialError):
            TokenCipher("key-two").decrypt(encrypted)

    def test_empty_key_rejected(self):
        with pytest.raises(ValueError):
            TokenCipher("")


# ─── Credential store ────────────────────────────────────────────────


class TestCredentialStore:
    @pytest.mark.asyncio
    async def test_tokens_are_encrypted_at_rest(self, container, make_account):
        account = await make_account()

        async with container.session_maker() as db:
            row = (
                await db.execute(
                    select(OAuthCredential).where(OAuthCredential.account_id == account.id)
                )
            ).scalar_one()
        assert "stored-access" not in row.access_token_encrypted
        assert "stored-refresh" not in row.refresh_token_encrypted

        cred = await container.credentials.load(account.id)
        assert cred.access_token == "stored-access"
        assert cred.refresh_token == "stored-refresh"

    @pytest.mark.asyncio
    async def test_list_expiring(self, container, make_account):
        soon = await make_account(email="soon@example.com", expires_in=timedelta(minutes=2))
        await make_account(email="later@example.com", expires_in=timedelta(hours=2))

        expiring = await container.credentials.list_expiring(timedelta(minutes=10))
        assert expiring == [soon.id]


# ─── Token manager ───────────────────────────────────────────────────


class TestTokenManager:
    @pytest.mark.asyncio
    async def test_fresh_token_returned_without_refresh(self, container, make_account, google):
        account = await make_account(expires_in=timedelta(hours=1))

        result = await container.tokens.get_valid_token(account.id)

        assert result.ok
        assert result.token == "stored-access"
        assert google.refresh_calls == 0

    @pytest.mark.asyncio
    async def test_expiring_token_is_refreshed_and_stored(
        self, container, make_account, google
    ):
        account = await make_account(expires_in=timedelta(minutes=5))

        result = await container.tokens.get_valid_token(account.id)

        assert result.token == "refreshed-1"
        stored = await container.credentials.load(account.id)
        assert stored.access_token == "refreshed-1"
        assert stored.refresh_token == "rotated-refresh"

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, container, make_account, google):
        account = await make_account(expires_in=timedelta(minutes=1))

        results = await asyncio.gather(
            *(container.tokens.get_valid_token(account.id) for _ in range(5))
        )

        assert google.refresh_calls == 1
        assert {r.token for r in results} == {"refreshed-1"}

    @pytest.mark.asyncio
    async def test_rejected_refresh_keeps_stored_credential(
        self, container, make_account, google
    ):
        account = await make_account(expires_in=timedelta(minutes=1))
        google.refresh_error = ProviderRequestError("invalid_client", 400)

        result = await container.tokens.get_valid_token(account.id)

        assert not result.ok
        assert isinstance(result.error, TokenExpired)
        with pytest.raises(TokenExpired):
            result.unwrap()
        stored = await container.credentials.load(account.id)
        assert stored.access_token == "stored-access"
        assert stored.refresh_token == "stored-refresh"

    @pytest.mark.asyncio
    async def test_transient_refresh_failure_is_reported(
        self, container, make_account, google
    ):
        account = await make_account(expires_in=timedelta(minutes=1))
        google.refresh_error = ProviderUnavailable("timeout")

        result = await container.tokens.get_valid_token(account.id)

        assert isinstance(result.error, ProviderUnavailable)

    @pytest.mark.asyncio
    async def test_missing_credential_is_revoked(self, container, make_account):
        account = await make_account()
        await container.credentials.delete(account.id)

        result = await container.tokens.get_valid_token(account.id)

        assert isinstance(result.error, TokenRevoked)
        assert str(result.error) == "Token not found"

    @pytest.mark.asyncio
    async def test_refresh_sweep_counts(self, container, make_account, google):
        await make_account(email="a@example.com", expires_in=timedelta(minutes=1))
        await make_account(email="b@example.com", expires_in=timedelta(minutes=3))
        await make_account(email="c@example.com", expires_in=timedelta(hours=3))

        sweep = await container.tokens.refresh_if_expiring_soon()

        assert sweep.total == 2
        assert sweep.refreshed == 2
        assert sweep.failed == 0
        assert google.refresh_calls == 2
