"""Microsoft Graph mail provider."""

from __future__ import annotations

import logging
from urllib.parse import urlencode

from app.models.states import FolderType
from app.services.mail.base import (
    ChangeKind,
    ChangeSet,
    ContactInfo,
    Folder,
    MailProvider,
    MessagePage,
    SendParams,
    SendResult,
    SyncChange,
    TokenSet,
)
from app.services.mail.parse import (
    parse_graph_contact,
    parse_graph_folder,
    parse_graph_message,
)

logger = logging.getLogger(__name__)

GRAPH = "https://graph.microsoft.com/v1.0"
AUTH_BASE = "https://login.microsoftonline.com/common/oauth2/v2.0"

SCOPES = " ".join(
    [
        "openid",
        "profile",
        "email",
        "offline_access",
        "Mail.ReadWrite",
        "Mail.Send",
        "MailboxSettings.ReadWrite",
        "Contacts.Read",
        "User.Read",
    ]
)

_SELECT = (
    "id,conversationId,internetMessageId,subject,bodyPreview,"
    "body,from,toRecipients,ccRecipients,bccRecipients,parentFolderId,"
    "receivedDateTime,sentDateTime,isRead,isDraft,flag,hasAttachments,"
    "internetMessageHeaders"
)


def _recipients(recipients: list[dict]) -> list[dict]:
    return [
        {"emailAddress": {"name": r.get("name", ""), "address": r["email"]}}
        for r in recipients
    ]


class MicrosoftProvider(MailProvider):
    """Microsoft Graph implementation over bearer-token REST calls."""

    # ── OAuth ──

    def get_auth_url(self, redirect_uri: str, state: str, code_challenge: str) -> str:
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "response_mode": "query",
            "scope": SCOPES,
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return f"{AUTH_BASE}/authorize?{urlencode(params)}"

    async def exchange_code(
        self, code: str, redirect_uri: str, code_verifier: str
    ) -> TokenSet:
        resp = await self.http.post(
            f"{AUTH_BASE}/token",
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
                "code_verifier": code_verifier,
            },
        )
        return TokenSet.from_response(resp.json())

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        resp = await self.http.post(
            f"{AUTH_BASE}/token",
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
                "scope": SCOPES,
            },
        )
        # Graph usually rotates the refresh token, but not always
        return TokenSet.from_response(resp.json(), fallback_refresh_token=refresh_token)

    # ── Mailbox ──

    async def get_profile(self, token: str) -> dict:
        resp = await self.http.get(f"{GRAPH}/me", token=token)
        data = resp.json()
        return {"email_address": data.get("mail") or data.get("userPrincipalName", "")}

    async def list_folders(self, token: str) -> list[Folder]:
        folders: list[Folder] = []
        url: str | None = f"{GRAPH}/me/mailFolders"
        params: dict | None = {"$top": 100}
        while url:
            resp = await self.http.get(url, token=token, params=params)
            data = resp.json()
            folders.extend(parse_graph_folder(f) for f in data.get("value", []))
            # nextLink already carries the query string
            url = data.get("@odata.nextLink")
            params = None
        return folders

    async def list_messages(
        self,
        token: str,
        folder_id: str | None = None,
        cursor: str | None = None,
        limit: int = 50,
    ) -> MessagePage:
        if cursor:
            resp = await self.http.get(cursor, token=token)
        else:
            path = f"/me/mailFolders/{folder_id}/messages" if folder_id else "/me/messages"
            resp = await self.http.get(
                f"{GRAPH}{path}",
                token=token,
                params={
                    "$select": _SELECT,
                    "$orderby": "receivedDateTime desc",
                    "$top": limit,
                },
            )
        data = resp.json()
        return MessagePage(
            messages=[parse_graph_message(m) for m in data.get("value", [])],
            next_cursor=data.get("@odata.nextLink"),
        )

    async def list_changes(self, token: str, cursor: str | None) -> ChangeSet:
        """Inbox delta query; the cursor is the ``@odata.deltaLink``.

        With no cursor the full delta is walked to obtain the first
        deltaLink.
        """
        changes: list[SyncChange] = []
        url = cursor or f"{GRAPH}/me/mailFolders/inbox/messages/delta"
        params: dict | None = None if cursor else {"$select": _SELECT}
        delta_link: str | None = None

        while True:
            resp = await self.http.get(url, token=token, params=params)
            data = resp.json()

            for item in data.get("value", []):
                if "@removed" in item:
                    changes.append(SyncChange(ChangeKind.DELETED, item["id"]))
                    continue
                kind = ChangeKind.UPDATED if "isRead" in item else ChangeKind.CREATED
                changes.append(
                    SyncChange(
                        kind,
                        item["id"],
                        parse_graph_message(item, folder_type=FolderType.INBOX),
                    )
                )

            next_link = data.get("@odata.nextLink")
            if next_link:
                url, params = next_link, None
                continue
            delta_link = data.get("@odata.deltaLink")
            break

        logger.info("Graph delta: %d changes", len(changes))
        # A missing deltaLink keeps the stored cursor
        return ChangeSet(changes=changes, new_cursor=delta_link or cursor)

    async def list_contacts(self, token: str, limit: int = 100) -> list[ContactInfo]:
        resp = await self.http.get(
            f"{GRAPH}/me/contacts",
            token=token,
            params={"$top": limit, "$orderby": "displayName"},
        )
        contacts = [parse_graph_contact(c) for c in resp.json().get("value", [])]
        return [c for c in contacts if c]

    # ── Send ──

    @staticmethod
    def _build_send_body(params: SendParams) -> dict:
        """Build Graph API message body."""
        message: dict = {
            "subject": params.subject,
            "body": {
                "contentType": "HTML" if params.body_html else "Text",
                "content": params.body_html or params.body_text or "",
            },
            "toRecipients": _recipients(params.to),
        }
        if params.cc:
            message["ccRecipients"] = _recipients(params.cc)
        if params.bcc:
            message["bccRecipients"] = _recipients(params.bcc)
        return message

    async def send_message(self, token: str, params: SendParams) -> SendResult:
        # sendMail answers 202 with no body, so there is no message id to return
        await self.http.post(
            f"{GRAPH}/me/sendMail",
            token=token,
            json={"message": self._build_send_body(params), "saveToSentItems": True},
        )
        return SendResult(message_id="")
