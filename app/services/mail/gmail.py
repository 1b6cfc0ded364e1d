"""Gmail provider using the Gmail, People and Google OAuth REST APIs."""

from __future__ import annotations

import base64
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from urllib.parse import urlencode

from app.core.errors import ProviderRequestError
from app.services.mail.base import (
    ChangeKind,
    ChangeSet,
    ContactInfo,
    Folder,
    MailProvider,
    MessagePage,
    NormalizedMessage,
    SendParams,
    SendResult,
    SyncChange,
    TokenSet,
)
from app.services.mail.parse import (
    parse_gmail_label,
    parse_gmail_message,
    parse_google_contact,
)

logger = logging.getLogger(__name__)

_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"
_PEOPLE = "https://people.googleapis.com/v1/people/me/connections"
AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"

SCOPES = " ".join(
    [
        "openid",
        "profile",
        "email",
        "https://www.googleapis.com/auth/gmail.modify",
        "https://www.googleapis.com/auth/gmail.send",
        "https://www.googleapis.com/auth/contacts.readonly",
    ]
)


def _format_addresses(recipients: list[dict]) -> str:
    return ", ".join(
        f"{r.get('name', '')} <{r['email']}>" if r.get("name") else r["email"]
        for r in recipients
    )


class GmailProvider(MailProvider):
    """Gmail implementation over bearer-token REST calls."""

    # ── OAuth ──

    def get_auth_url(self, redirect_uri: str, state: str, code_challenge: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": SCOPES,
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return f"{AUTH_URL}?{urlencode(params)}"

    async def exchange_code(
        self, code: str, redirect_uri: str, code_verifier: str
    ) -> TokenSet:
        resp = await self.http.post(
            TOKEN_URL,
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
            TOKEN_URL,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        # Google does not rotate refresh tokens
        return TokenSet.from_response(resp.json(), fallback_refresh_token=refresh_token)

    # ── Mailbox ──

    async def get_profile(self, token: str) -> dict:
        resp = await self.http.get(f"{_BASE}/profile", token=token)
        data = resp.json()
        return {
            "email_address": data.get("emailAddress", ""),
            "history_id": str(data.get("historyId", "")),
        }

    async def list_folders(self, token: str) -> list[Folder]:
        resp = await self.http.get(f"{_BASE}/labels", token=token)
        return [parse_gmail_label(label) for label in resp.json().get("labels", [])]

    async def _get_message(self, token: str, msg_id: str) -> NormalizedMessage | None:
        """Fetch one full message; ``None`` if it vanished in the meantime."""
        try:
            resp = await self.http.get(
                f"{_BASE}/messages/{msg_id}",
                token=token,
                params={"format": "full"},
            )
        except ProviderRequestError as e:
            if e.status_code == 404:
                logger.warning("Gmail message %s no longer exists", msg_id)
                return None
            raise
        return parse_gmail_message(resp.json())

    async def list_messages(
        self,
        token: str,
        folder_id: str | None = None,
        cursor: str | None = None,
        limit: int = 50,
    ) -> MessagePage:
        params: dict = {"maxResults": limit}
        if folder_id:
            params["labelIds"] = folder_id
        if cursor:
            params["pageToken"] = cursor
        resp = await self.http.get(f"{_BASE}/messages", token=token, params=params)
        data = resp.json()

        messages: list[NormalizedMessage] = []
        for ref in data.get("messages", []):
            message = await self._get_message(token, ref["id"])
            if message:
                messages.append(message)

        return MessagePage(messages=messages, next_cursor=data.get("nextPageToken"))

    async def list_changes(self, token: str, cursor: str | None) -> ChangeSet:
        """History API delta. With no cursor, return the current ``historyId``."""
        if not cursor:
            resp = await self.http.get(f"{_BASE}/profile", token=token)
            return ChangeSet(changes=[], new_cursor=str(resp.json()["historyId"]))

        added_ids: list[str] = []
        label_changed_ids: list[str] = []
        deleted_ids: set[str] = set()
        new_history_id = cursor
        page_token: str | None = None

        while True:
            params: dict = {
                "startHistoryId": cursor,
                "historyTypes": "messageAdded,messageDeleted,labelAdded,labelRemoved",
                "maxResults": 100,
            }
            if page_token:
                params["pageToken"] = page_token
            try:
                resp = await self.http.get(f"{_BASE}/history", token=token, params=params)
            except ProviderRequestError as e:
                if e.status_code == 404:
                    # startHistoryId is too old; keep the cursor until a resync
                    logger.warning("Gmail history %s expired, cursor kept", cursor)
                    return ChangeSet(changes=[], new_cursor=cursor)
                raise
            data = resp.json()
            new_history_id = str(data.get("historyId", new_history_id))

            for record in data.get("history", []):
                for added in record.get("messagesAdded", []):
                    added_ids.append(added["message"]["id"])
                for deleted in record.get("messagesDeleted", []):
                    deleted_ids.add(deleted["message"]["id"])
                for key in ("labelsAdded", "labelsRemoved"):
                    for entry in record.get(key, []):
                        label_changed_ids.append(entry["message"]["id"])

            page_token = data.get("nextPageToken")
            if not page_token:
                break

        changes: list[SyncChange] = []
        seen: set[str] = set()
        for kind, ids in (
            (ChangeKind.CREATED, added_ids),
            (ChangeKind.UPDATED, label_changed_ids),
        ):
            for msg_id in ids:
                if msg_id in seen or msg_id in deleted_ids:
                    continue
                seen.add(msg_id)
                message = await self._get_message(token, msg_id)
                if message:
                    changes.append(SyncChange(kind, msg_id, message))
        for msg_id in sorted(deleted_ids):
            changes.append(SyncChange(ChangeKind.DELETED, msg_id))

        logger.info(
            "Gmail history %s -> %s: %d changes", cursor, new_history_id, len(changes)
        )
        return ChangeSet(changes=changes, new_cursor=new_history_id)

    async def list_contacts(self, token: str, limit: int = 100) -> list[ContactInfo]:
        resp = await self.http.get(
            _PEOPLE,
            token=token,
            params={
                "pageSize": limit,
                "personFields": "names,emailAddresses,phoneNumbers,organizations",
            },
        )
        contacts = [parse_google_contact(c) for c in resp.json().get("connections", [])]
        return [c for c in contacts if c]

    # ── Send ──

    def _build_mime(self, params: SendParams) -> str:
        """Build a MIME message and return base64url-encoded raw string."""
        msg = MIMEMultipart("alternative")
        msg["To"] = _format_addresses(params.to)
        msg["Subject"] = params.subject
        if params.cc:
            msg["Cc"] = _format_addresses(params.cc)
        if params.bcc:
            msg["Bcc"] = _format_addresses(params.bcc)
        if params.in_reply_to:
            msg["In-Reply-To"] = params.in_reply_to
        if params.references:
            msg["References"] = " ".join(params.references)

        if params.body_text:
            msg.attach(MIMEText(params.body_text, "plain", "utf-8"))
        if params.body_html:
            msg.attach(MIMEText(params.body_html, "html", "utf-8"))
        if not params.body_text and not params.body_html:
            msg.attach(MIMEText("", "plain", "utf-8"))

        return base64.urlsafe_b64encode(msg.as_bytes()).decode("ascii")

    async def send_message(self, token: str, params: SendParams) -> SendResult:
        resp = await self.http.post(
            f"{_BASE}/messages/send",
            token=token,
            json={"raw": self._build_mime(params)},
        )
        data = resp.json()
        return SendResult(message_id=data.get("id", ""), thread_id=data.get("threadId"))
