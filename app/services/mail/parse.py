"""Central parsing module for normalising Gmail and Graph payloads.

Providers return raw JSON; this module extracts bodies, recipients,
headers, flags and folder placement into the provider-agnostic
dataclasses of :mod:`app.services.mail.base`.
"""

from __future__ import annotations

import base64
import logging
from datetime import datetime, timezone
from email.utils import getaddresses, parsedate_to_datetime

from app.models.states import FolderType
from app.services.mail.base import ContactInfo, Folder, NormalizedMessage

logger = logging.getLogger(__name__)

# Gmail system labels, in the order that decides a message's folder
_GMAIL_LABEL_FOLDERS: list[tuple[str, FolderType]] = [
    ("INBOX", FolderType.INBOX),
    ("SENT", FolderType.SENT),
    ("DRAFT", FolderType.DRAFTS),
    ("TRASH", FolderType.TRASH),
    ("SPAM", FolderType.SPAM),
    ("STARRED", FolderType.STARRED),
    ("IMPORTANT", FolderType.IMPORTANT),
]

_FOLDER_NAMES: dict[str, FolderType] = {
    "inbox": FolderType.INBOX,
    "sent": FolderType.SENT,
    "sent items": FolderType.SENT,
    "drafts": FolderType.DRAFTS,
    "draft": FolderType.DRAFTS,
    "trash": FolderType.TRASH,
    "deleted items": FolderType.TRASH,
    "spam": FolderType.SPAM,
    "junk email": FolderType.SPAM,
    "archive": FolderType.ARCHIVE,
    "starred": FolderType.STARRED,
    "important": FolderType.IMPORTANT,
}


def folder_type_from_name(name: str) -> FolderType:
    """Best-effort folder type from a folder/label display name."""
    return _FOLDER_NAMES.get(name.strip().lower(), FolderType.CUSTOM)


def _parse_iso(raw: str | None) -> datetime:
    if not raw:
        return datetime.now(timezone.utc)
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable timestamp %r, using now", raw)
        return datetime.now(timezone.utc)


def _threading_headers(in_reply_to: str | None, references: str | None) -> dict | None:
    if not (in_reply_to or references):
        return None
    headers: dict = {}
    if in_reply_to:
        headers["In-Reply-To"] = in_reply_to
    if references:
        headers["References"] = references
    return headers


# ── Gmail helpers ──


def _gmail_get_header(headers: list[dict], name: str) -> str | None:
    """Get a header value from Gmail headers list (case-insensitive)."""
    name_lower = name.lower()
    for h in headers:
        if h.get("name", "").lower() == name_lower:
            return h.get("value")
    return None


def _gmail_parse_address_list(raw: str | None) -> list[dict]:
    """Parse a comma-separated header into [{"name", "email"}]."""
    if not raw:
        return []
    return [
        {"name": name, "email": email}
        for name, email in getaddresses([raw])
        if email
    ]


def _gmail_parse_address(raw: str | None) -> dict:
    parsed = _gmail_parse_address_list(raw)
    return parsed[0] if parsed else {"name": "", "email": ""}


def _gmail_extract_body(payload: dict) -> tuple[str | None, str | None]:
    """Recursively extract text/plain and text/html from Gmail payload."""
    text = None
    html = None

    mime_type = payload.get("mimeType", "")
    body_data = payload.get("body", {}).get("data")

    if body_data:
        decoded = base64.urlsafe_b64decode(body_data + "=" * (-len(body_data) % 4))
        content = decoded.decode("utf-8", errors="replace")
        if mime_type == "text/plain":
            text = content
        elif mime_type == "text/html":
            html = content

    for part in payload.get("parts", []):
        part_text, part_html = _gmail_extract_body(part)
        if part_text and not text:
            text = part_text
        if part_html and not html:
            html = part_html

    return text, html


def _gmail_has_attachments(payload: dict) -> bool:
    for part in payload.get("parts", []):
        if part.get("filename") or _gmail_has_attachments(part):
            return True
    return False


def gmail_folder_type(label_ids: list[str]) -> FolderType:
    labels = set(label_ids)
    for label, folder_type in _GMAIL_LABEL_FOLDERS:
        if label in labels:
            return folder_type
    return FolderType.CUSTOM


def parse_gmail_message(raw: dict) -> NormalizedMessage:
    """Parse a full Gmail API message object (``format=full``)."""
    payload = raw.get("payload", {})
    headers = payload.get("headers", [])
    label_ids = raw.get("labelIds", [])

    date_raw = _gmail_get_header(headers, "Date")
    try:
        date = parsedate_to_datetime(date_raw) if date_raw else None
    except (TypeError, ValueError):
        date = None
    if date is None:
        internal_date_ms = raw.get("internalDate")
        if internal_date_ms:
            date = datetime.fromtimestamp(int(internal_date_ms) / 1000, tz=timezone.utc)
        else:
            date = datetime.now(timezone.utc)
    elif date.tzinfo is None:
        date = date.replace(tzinfo=timezone.utc)

    body_text, body_html = _gmail_extract_body(payload)

    return NormalizedMessage(
        provider_message_id=raw["id"],
        provider_thread_id=raw.get("threadId"),
        internet_message_id=_gmail_get_header(headers, "Message-ID"),
        sender=_gmail_parse_address(_gmail_get_header(headers, "From")),
        to_recipients=_gmail_parse_address_list(_gmail_get_header(headers, "To")),
        cc_recipients=_gmail_parse_address_list(_gmail_get_header(headers, "Cc")) or None,
        bcc_recipients=_gmail_parse_address_list(_gmail_get_header(headers, "Bcc")) or None,
        subject=_gmail_get_header(headers, "Subject"),
        date=date,
        snippet=raw.get("snippet"),
        body_text=body_text,
        body_html=body_html,
        folder_id=label_ids[0] if label_ids else "INBOX",
        folder_type=gmail_folder_type(label_ids),
        is_read="UNREAD" not in label_ids,
        is_starred="STARRED" in label_ids,
        is_draft="DRAFT" in label_ids,
        has_attachments=_gmail_has_attachments(payload),
        raw_headers=_threading_headers(
            _gmail_get_header(headers, "In-Reply-To"),
            _gmail_get_header(headers, "References"),
        ),
    )


def parse_gmail_label(raw: dict) -> Folder:
    is_system = raw.get("type") == "system"
    if is_system:
        folder_type = gmail_folder_type([raw["id"]])
    else:
        folder_type = folder_type_from_name(raw.get("name") or raw["id"])
    return Folder(
        provider_folder_id=raw["id"],
        name=raw.get("name") or raw["id"],
        folder_type=folder_type,
        is_system_folder=is_system,
        unread_count=raw.get("messagesUnread", 0),
        total_count=raw.get("messagesTotal", 0),
    )


def parse_google_contact(raw: dict) -> ContactInfo | None:
    emails = raw.get("emailAddresses") or []
    if not emails or not emails[0].get("value"):
        return None
    names = raw.get("names") or []
    phones = raw.get("phoneNumbers") or []
    orgs = raw.get("organizations") or []
    return ContactInfo(
        email=emails[0]["value"],
        name=names[0].get("displayName") if names else None,
        phone=phones[0].get("value") if phones else None,
        company=orgs[0].get("name") if orgs else None,
        job_title=orgs[0].get("title") if orgs else None,
    )


# ── Microsoft Graph helpers ──


def _graph_parse_address(raw: dict | None) -> dict:
    """Parse Graph emailAddress object."""
    if not raw:
        return {"name": "", "email": ""}
    ea = raw.get("emailAddress", raw)
    return {"name": ea.get("name", ""), "email": ea.get("address", "")}


def _graph_parse_address_list(raw: list[dict] | None) -> list[dict]:
    if not raw:
        return []
    return [_graph_parse_address(r) for r in raw]


def parse_graph_message(raw: dict, folder_type: FolderType | None = None) -> NormalizedMessage:
    """Parse a Microsoft Graph message object.

    Graph only reports an opaque ``parentFolderId``; callers that know the
    folder pass ``folder_type``, otherwise it is resolved against the
    stored folder list during sync.
    """
    body = raw.get("body") or {}
    body_content = body.get("content")
    body_type = body.get("contentType", "text").lower()

    in_reply_to = None
    references = None
    for h in raw.get("internetMessageHeaders") or []:
        name_lower = h.get("name", "").lower()
        if name_lower == "in-reply-to":
            in_reply_to = h.get("value")
        elif name_lower == "references":
            references = h.get("value")

    return NormalizedMessage(
        provider_message_id=raw["id"],
        provider_thread_id=raw.get("conversationId"),
        internet_message_id=raw.get("internetMessageId"),
        sender=_graph_parse_address(raw.get("from")),
        to_recipients=_graph_parse_address_list(raw.get("toRecipients")),
        cc_recipients=_graph_parse_address_list(raw.get("ccRecipients")) or None,
        bcc_recipients=_graph_parse_address_list(raw.get("bccRecipients")) or None,
        subject=raw.get("subject"),
        date=_parse_iso(raw.get("receivedDateTime") or raw.get("sentDateTime")),
        snippet=raw.get("bodyPreview"),
        body_text=body_content if body_type == "text" else None,
        body_html=body_content if body_type == "html" else None,
        folder_id=raw.get("parentFolderId"),
        folder_type=folder_type,
        is_read=raw.get("isRead", False),
        is_starred=(raw.get("flag") or {}).get("flagStatus") == "flagged",
        is_draft=raw.get("isDraft", False),
        has_attachments=raw.get("hasAttachments", False),
        raw_headers=_threading_headers(in_reply_to, references),
    )


def parse_graph_folder(raw: dict) -> Folder:
    name = raw.get("displayName") or raw["id"]
    return Folder(
        provider_folder_id=raw["id"],
        name=name,
        folder_type=folder_type_from_name(name),
        is_system_folder=bool(raw.get("wellKnownName")) or raw.get("isDefaultFolder", False),
        unread_count=raw.get("unreadItemCount", 0),
        total_count=raw.get("totalItemCount", 0),
    )


def parse_graph_contact(raw: dict) -> ContactInfo | None:
    emails = raw.get("emailAddresses") or []
    if not emails or not emails[0].get("address"):
        return None
    phones = raw.get("businessPhones") or []
    return ContactInfo(
        email=emails[0]["address"],
        name=raw.get("displayName"),
        phone=raw.get("mobilePhone") or (phones[0] if phones else None),
        company=raw.get("companyName"),
        job_title=raw.get("jobTitle"),
    )
