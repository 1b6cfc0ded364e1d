"""Tests for the provider adapters: HTTP error mapping and payload parsing."""

import base64
import json

import httpx
import pytest

from app.core.errors import (
    ProviderRequestError,
    ProviderUnavailable,
    TokenExpired,
    TokenRevoked,
)
from app.models.states import FolderType
from app.services.mail.base import ChangeKind, SendParams
from app.services.mail.gmail import GmailProvider
from app.services.mail.http import ProviderHttp
from app.services.mail.microsoft import MicrosoftProvider
from app.services.mail.parse import (
    folder_type_from_name,
    gmail_folder_type,
    parse_gmail_label,
    parse_gmail_message,
    parse_graph_folder,
    parse_graph_message,
)


# ─── Helpers ─────────────────────────────────────────────────────────


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


def _http(handler) -> ProviderHttp:
    return ProviderHttp(timeout=5, transport=httpx.MockTransport(handler))


GMAIL_MESSAGE = {
    "id": "18c1",
    "threadId": "t-1",
    "labelIds": ["INBOX", "UNREAD", "STARRED"],
    "snippet": "Quick question",
    "payload": {
        "mimeType": "multipart/mixed",
        "headers": [
            {"name": "From", "value": "Alice Example <alice@example.com>"},
            {"name": "To", "value": "owner@example.com, Bob <bob@example.com>"},
            {"name": "Subject", "value": "Quick question"},
            {"name": "Date", "value": "Mon, 5 Jan 2026 09:30:00 +0100"},
            {"name": "Message-ID", "value": "<abc@mail.example.com>"},
            {"name": "In-Reply-To", "value": "<prev@mail.example.com>"},
        ],
        "parts": [
            {
                "mimeType": "multipart/alternative",
                "parts": [
                    {"mimeType": "text/plain", "body": {"data": _b64("plain body")}},
                    {"mimeType": "text/html", "body": {"data": _b64("<p>html body</p>")}},
                ],
            },
            {"mimeType": "application/pdf", "filename": "invoice.pdf", "body": {}},
        ],
    },
}


# ─── HTTP error mapping ──────────────────────────────────────────────


class TestProviderHttp:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, body, error",
        [
            (401, "unauthorized", TokenExpired),
            (400, '{"error": "invalid_grant"}', TokenRevoked),
            (429, "slow down", ProviderUnavailable),
            (503, "maintenance", ProviderUnavailable),
            (404, "not found", ProviderRequestError),
        ],
    )
    async def test_status_mapping(self, status, body, error):
        http = _http(lambda request: httpx.Response(status, text=body))
        with pytest.raises(error):
            await http.get("https://api.example.com/x", token="t")

    @pytest.mark.asyncio
    async def test_request_error_keeps_status(self):
        http = _http(lambda request: httpx.Response(403, text="forbidden"))
        with pytest.raises(ProviderRequestError) as exc:
            await http.get("https://api.example.com/x")
        assert exc.value.status_code == 403

    @pytest.mark.asyncio
    async def test_network_failure_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderUnavailable):
            await _http(handler).get("https://api.example.com/x")

    @pytest.mark.asyncio
    async def test_bearer_token_sent(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"ok": True})

        resp = await _http(handler).get("https://api.example.com/x", token="abc")
        assert resp.json() == {"ok": True}
        assert seen["auth"] == "Bearer abc"


# ─── Parsing ─────────────────────────────────────────────────────────


class TestGmailParsing:
    def test_full_message(self):
        message = parse_gmail_message(GMAIL_MESSAGE)

        assert message.provider_message_id == "18c1"
        assert message.sender == {"name": "Alice Example", "email": "alice@example.com"}
        assert [r["email"] for r in message.to_recipients] == [
            "owner@example.com",
            "bob@example.com",
        ]
        assert message.body_text == "plain body"
        assert message.body_html == "<p>html body</p>"
        assert message.folder_type == FolderType.INBOX
        assert message.is_read is False
        assert message.is_starred is True
        assert message.has_attachments is True
        assert message.raw_headers == {"In-Reply-To": "<prev@mail.example.com>"}
        assert message.date.utcoffset().total_seconds() == 3600

    def test_label_precedence(self):
        assert gmail_folder_type(["STARRED", "SENT"]) == FolderType.SENT
        assert gmail_folder_type(["Label_7"]) == FolderType.CUSTOM

    def test_labels(self):
        system = parse_gmail_label({"id": "TRASH", "name": "TRASH", "type": "system"})
        assert system.folder_type == FolderType.TRASH
        assert system.is_system_folder is True

        user = parse_gmail_label({"id": "Label_3", "name": "Archive", "type": "user"})
        assert user.folder_type == FolderType.ARCHIVE
        assert user.is_system_folder is False


class TestGraphParsing:
    def test_message(self):
        message = parse_graph_message(
            {
                "id": "AAMk1",
                "conversationId": "conv-1",
                "from": {"emailAddress": {"name": "Bob", "address": "bob@example.com"}},
                "toRecipients": [{"emailAddress": {"address": "owner@example.com"}}],
                "subject": "Status",
                "receivedDateTime": "2026-01-05T08:30:00Z",
                "body": {"contentType": "html", "content": "<b>hi</b>"},
                "parentFolderId": "folder-inbox",
                "isRead": True,
                "flag": {"flagStatus": "flagged"},
            }
        )

        assert message.sender == {"name": "Bob", "email": "bob@example.com"}
        assert message.body_html == "<b>hi</b>"
        assert message.body_text is None
        assert message.folder_id == "folder-inbox"
        assert message.folder_type is None
        assert message.is_read is True
        assert message.is_starred is True

    def test_folder_names(self):
        assert parse_graph_folder({"id": "f1", "displayName": "Deleted Items"}).folder_type == (
            FolderType.TRASH
        )
        assert folder_type_from_name(" Junk Email ") == FolderType.SPAM
        assert folder_type_from_name("Projects") == FolderType.CUSTOM


# ─── Adapters over a mock transport ──────────────────────────────────


class TestGmailProvider:
    @pytest.mark.asyncio
    async def test_history_delta(self):
        def handler(request):
            path = request.url.path
            if path.endswith("/history"):
                assert request.url.params["startHistoryId"] == "100"
                return httpx.Response(
                    200,
                    json={
                        "historyId": "150",
                        "history": [
                            {"messagesAdded": [{"message": {"id": "18c1"}}]},
                            {"messagesDeleted": [{"message": {"id": "old-1"}}]},
                        ],
                    },
                )
            if path.endswith("/messages/18c1"):
                return httpx.Response(200, json=GMAIL_MESSAGE)
            return httpx.Response(404, text="unexpected")

        provider = GmailProvider(_http(handler), "id", "secret")
        change_set = await provider.list_changes("token", "100")

        assert change_set.new_cursor == "150"
        assert [(c.kind, c.provider_message_id) for c in change_set.changes] == [
            (ChangeKind.CREATED, "18c1"),
            (ChangeKind.DELETED, "old-1"),
        ]

    @pytest.mark.asyncio
    async def test_expired_history_keeps_cursor(self):
        provider = GmailProvider(
            _http(lambda request: httpx.Response(404, text="history expired")), "id", "secret"
        )
        change_set = await provider.list_changes("token", "100")
        assert change_set.changes == []
        assert change_set.new_cursor == "100"

    @pytest.mark.asyncio
    async def test_send_builds_raw_mime(self):
        captured = {}

        def handler(request):
            captured.update(json.loads(request.content))
            return httpx.Response(200, json={"id": "out-1", "threadId": "t-9"})

        provider = GmailProvider(_http(handler), "id", "secret")
        result = await provider.send_message(
            "token",
            SendParams(
                to=[{"email": "bob@example.com", "name": "Bob"}],
                subject="Hello",
                body_text="Hi Bob",
            ),
        )

        assert result.message_id == "out-1"
        raw = base64.urlsafe_b64decode(captured["raw"]).decode()
        assert "To: Bob <bob@example.com>" in raw
        assert "Subject: Hello" in raw


class TestMicrosoftProvider:
    @pytest.mark.asyncio
    async def test_delta_follows_next_link(self):
        pages = {
            "/v1.0/me/mailFolders/inbox/messages/delta": {
                "value": [{"id": "a1", "subject": "New"}],
                "@odata.nextLink": "https://graph.microsoft.com/v1.0/me/next-page",
            },
            "/v1.0/me/next-page": {
                "value": [{"id": "a2", "@removed": {"reason": "deleted"}}],
                "@odata.deltaLink": "https://graph.microsoft.com/v1.0/me/delta?token=xyz",
            },
        }
        provider = MicrosoftProvider(
            _http(lambda request: httpx.Response(200, json=pages[request.url.path])),
            "id",
            "secret",
        )

        change_set = await provider.list_changes("token", None)

        assert change_set.new_cursor == "https://graph.microsoft.com/v1.0/me/delta?token=xyz"
        assert [(c.kind, c.provider_message_id) for c in change_set.changes] == [
            (ChangeKind.CREATED, "a1"),
            (ChangeKind.DELETED, "a2"),
        ]
        assert change_set.changes[0].message.folder_type == FolderType.INBOX

    @pytest.mark.asyncio
    async def test_refresh_keeps_old_refresh_token(self):
        provider = MicrosoftProvider(
            _http(
                lambda request: httpx.Response(
                    200, json={"access_token": "new-access", "expires_in": 3600}
                )
            ),
            "id",
            "secret",
        )

        tokens = await provider.refresh_token("old-refresh")

        assert tokens.access_token == "new-access"
        assert tokens.refresh_token == "old-refresh"
