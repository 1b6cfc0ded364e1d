"""Tests for push notification verification and ingest."""

import base64
import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from app.core.errors import VerificationError
from app.models.states import Provider
from app.models.types import utcnow
from app.services.webhooks import (
    ArqSyncDispatcher,
    validate_microsoft_endpoint,
    verify_google,
    verify_microsoft,
)


# ─── Helpers ─────────────────────────────────────────────────────────


def google_envelope(data, *, urlsafe: bool = False, strip_padding: bool = False) -> dict:
    raw = json.dumps(data).encode() if not isinstance(data, bytes) else data
    encoded = (base64.urlsafe_b64encode if urlsafe else base64.b64encode)(raw).decode()
    if strip_padding:
        encoded = encoded.rstrip("=")
    return {"message": {"data": encoded, "messageId": "1"}, "subscription": "projects/x"}


def graph_notification(**overrides) -> dict:
    notification = {
        "subscriptionId": "sub-1",
        "clientState": "client-state-123",
        "changeType": "created",
        "resource": "me/mailFolders('Inbox')/messages('AAMk')",
        "subscriptionExpirationDateTime": "2099-01-01T00:00:00.0000000Z",
    }
    notification.update(overrides)
    return notification


# ─── Google verification ─────────────────────────────────────────────


class TestVerifyGoogle:
    def test_valid_envelope(self):
        result = verify_google(google_envelope({"emailAddress": "a@b.com", "historyId": "12345"}))
        assert result.email_address == "a@b.com"
        assert result.history_id == "12345"

    def test_numeric_history_id_and_urlsafe_alphabet(self):
        payload = google_envelope(
            {"emailAddress": "a@b.com", "historyId": 98765}, urlsafe=True, strip_padding=True
        )
        assert verify_google(payload).history_id == "98765"

    @pytest.mark.parametrize(
        "data",
        [
            {"emailAddress": "a@b.com", "historyId": "abc"},
            {"emailAddress": "a@b.com", "historyId": "12a"},
            {"emailAddress": "a@b.com", "historyId": True},
            {"emailAddress": "a@b.com"},
            {"historyId": "1"},
            ["not", "an", "object"],
        ],
    )
    def test_invalid_data_rejected(self, data):
        with pytest.raises(VerificationError):
            verify_google(google_envelope(data))

    def test_missing_data_rejected(self):
        with pytest.raises(VerificationError):
            verify_google({"message": {}})
        with pytest.raises(VerificationError):
            verify_google({})

    def test_garbage_base64_rejected(self):
        with pytest.raises(VerificationError):
            verify_google({"message": {"data": "%%%not-base64%%%"}})
        with pytest.raises(VerificationError):
            verify_google(google_envelope(b"\xff\xfe not json"))


# ─── Microsoft verification ──────────────────────────────────────────


class TestVerifyMicrosoft:
    def test_valid_notification(self):
        result = verify_microsoft(graph_notification(), "client-state-123")
        assert result.subscription_id == "sub-1"
        assert result.change_type == "created"

    def test_client_state_mismatch(self):
        with pytest.raises(VerificationError):
            verify_microsoft(graph_notification(clientState="wrong"), "client-state-123")
        with pytest.raises(VerificationError):
            verify_microsoft(graph_notification(clientState=None), "client-state-123")

    def test_unconfigured_client_state_rejects_everything(self):
        with pytest.raises(VerificationError):
            verify_microsoft(graph_notification(clientState=""), "")

    def test_missing_fields(self):
        for field in ("subscriptionId", "changeType", "resource"):
            with pytest.raises(VerificationError):
                verify_microsoft(graph_notification(**{field: ""}), "client-state-123")

    def test_expired_subscription(self):
        expired = (utcnow() - timedelta(hours=1)).isoformat().replace("+00:00", "Z")
        with pytest.raises(VerificationError):
            verify_microsoft(
                graph_notification(subscriptionExpirationDateTime=expired), "client-state-123"
            )

    def test_expiry_is_optional(self):
        notification = graph_notification()
        del notification["subscriptionExpirationDateTime"]
        assert verify_microsoft(notification, "client-state-123").subscription_id == "sub-1"

    def test_validation_token(self):
        assert validate_microsoft_endpoint("abc123") == "abc123"
        assert validate_microsoft_endpoint("") is None
        assert validate_microsoft_endpoint(None) is None


# ─── Ingest ──────────────────────────────────────────────────────────


class TestWebhookIngest:
    @pytest.mark.asyncio
    async def test_google_dispatches_delta_for_account(
        self, container, make_account, dispatcher
    ):
        account = await make_account(email="A@B.com")

        result = await container.webhooks.handle_google(
            google_envelope({"emailAddress": "a@b.com", "historyId": "777"})
        )

        assert result == account.id
        assert dispatcher.delta == [account.id]
        assert dispatcher.initial == []

    @pytest.mark.asyncio
    async def test_google_unknown_or_archived_mailbox(self, container, make_account, dispatcher):
        account = await make_account(email="gone@example.com")
        await container.accounts.disconnect(account.user_id, account.id)

        result = await container.webhooks.handle_google(
            google_envelope({"emailAddress": "gone@example.com", "historyId": "1"})
        )

        assert result is None
        assert dispatcher.delta == []

    @pytest.mark.asyncio
    async def test_google_invalid_payload_dispatches_nothing(self, container, dispatcher):
        with pytest.raises(VerificationError):
            await container.webhooks.handle_google(
                google_envelope({"emailAddress": "a@b.com", "historyId": "abc"})
            )
        assert dispatcher.delta == []

    @pytest.mark.asyncio
    async def test_microsoft_dedups_and_drops_invalid(
        self, container, make_account, dispatcher
    ):
        account = await make_account(
            provider=Provider.MICROSOFT, email="m@example.com", subscription_id="sub-1"
        )
        payload = {
            "value": [
                graph_notification(),
                graph_notification(changeType="updated"),
                graph_notification(subscriptionId="sub-unknown"),
                graph_notification(subscriptionId="sub-1", clientState="forged"),
            ]
        }

        dispatched = await container.webhooks.handle_microsoft(payload)

        assert dispatched == [account.id]
        assert dispatcher.delta == [account.id]

    @pytest.mark.asyncio
    async def test_microsoft_empty_payload(self, container, dispatcher):
        assert await container.webhooks.handle_microsoft({"value": []}) == []
        assert await container.webhooks.handle_microsoft({}) == []
        assert dispatcher.delta == []


# ─── Arq dispatcher ──────────────────────────────────────────────────


class TestArqSyncDispatcher:
    @pytest.mark.asyncio
    async def test_jobs_are_keyed_by_account(self):
        pool = MagicMock()
        pool.enqueue_job = AsyncMock(return_value=None)
        pool.aclose = AsyncMock()
        account_id = uuid4()

        with patch("app.services.webhooks.create_pool", AsyncMock(return_value=pool)) as create:
            dispatcher = ArqSyncDispatcher(MagicMock())
            await dispatcher.dispatch_delta_sync(account_id)
            await dispatcher.dispatch_initial_sync(account_id)
            await dispatcher.close()

        create.assert_awaited_once()
        pool.enqueue_job.assert_any_await(
            "delta_sync_account", str(account_id), _job_id=f"delta_sync_account:{account_id}"
        )
        pool.enqueue_job.assert_any_await(
            "initial_sync_account",
            str(account_id),
            _job_id=f"initial_sync_account:{account_id}",
        )
        pool.aclose.assert_awaited_once()
