"""SQLAlchemy models for connected mailboxes and their local mirror.

Tables:
- email_accounts: OAuth-connected mailboxes (Gmail, Microsoft) and their sync state
- oauth_credentials: encrypted token material, one row per account
- sync_checkpoints: provider cursors and health counters per (account, sync type)
- mail_folders: provider folders/labels
- mail_messages: synced messages with parsed content
- contacts: address book entries harvested on initial sync
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.states import FolderType, Provider, SyncStatus, SyncType
from app.models.types import JSONType, UTCDateTime, enum_column


class EmailAccount(Base):
    """A connected mailbox."""

    __tablename__ = "email_accounts"
    __table_args__ = (
        Index("ix_email_accounts_address_provider", "email_address", "provider"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    provider: Mapped[Provider] = mapped_column(
        enum_column(Provider), nullable=False, comment="GOOGLE | MICROSOFT"
    )
    email_address: Mapped[str] = mapped_column(String(255), nullable=False)
    sync_status: Mapped[SyncStatus] = mapped_column(
        enum_column(SyncStatus),
        nullable=False,
        default=SyncStatus.IDLE,
        comment="idle | syncing | error | paused",
    )
    sync_started_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="When the current sync claim was taken"
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    initial_synced_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Null until the initial sync completes"
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)
    webhook_subscription_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
        comment="Graph subscription id used to route push notifications",
    )
    archived_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Soft-archived on disconnect"
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    credential: Mapped["OAuthCredential | None"] = relationship(
        "OAuthCredential",
        back_populates="account",
        uselist=False,
        cascade="all, delete-orphan",
    )
    checkpoints: Mapped[list["SyncCheckpoint"]] = relationship(
        "SyncCheckpoint",
        back_populates="account",
        cascade="all, delete-orphan",
    )


class OAuthCredential(Base):
    """Encrypted OAuth token material for one account."""

    __tablename__ = "oauth_credentials"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("email_accounts.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    access_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    scopes: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now()
    )

    account: Mapped["EmailAccount"] = relationship(
        "EmailAccount", back_populates="credential"
    )


class SyncCheckpoint(Base):
    """Provider cursor and health counters for one (account, sync type)."""

    __tablename__ = "sync_checkpoints"
    __table_args__ = (
        UniqueConstraint("account_id", "sync_type", name="uq_checkpoint_account_type"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("email_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sync_type: Mapped[SyncType] = mapped_column(enum_column(SyncType), nullable=False)
    cursor: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Gmail historyId or Graph deltaLink; null = never synced"
    )
    last_successful_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now()
    )

    account: Mapped["EmailAccount"] = relationship(
        "EmailAccount", back_populates="checkpoints"
    )


class MailFolder(Base):
    """A provider folder (Graph) or label (Gmail)."""

    __tablename__ = "mail_folders"
    __table_args__ = (
        UniqueConstraint(
            "account_id", "provider_folder_id", name="uq_mail_folder_account_provider"
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("email_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider_folder_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    folder_type: Mapped[FolderType] = mapped_column(
        enum_column(FolderType), nullable=False, default=FolderType.CUSTOM
    )
    is_system_folder: Mapped[bool] = mapped_column(Boolean, default=False)
    unread_count: Mapped[int] = mapped_column(Integer, default=0)
    total_count: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now()
    )


class MailMessage(Base):
    """A synced email message."""

    __tablename__ = "mail_messages"
    __table_args__ = (
        UniqueConstraint(
            "account_id",
            "provider_message_id",
            name="uq_mail_msg_account_provider",
        ),
        Index("ix_mail_messages_thread", "account_id", "provider_thread_id"),
        Index("ix_mail_messages_folder", "account_id", "folder_type", "date"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    account_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("email_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider_message_id: Mapped[str] = mapped_column(
        String(255), nullable=False, comment="Gmail message ID or Graph message ID"
    )
    provider_thread_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, comment="Gmail threadId or Graph conversationId"
    )
    internet_message_id: Mapped[str | None] = mapped_column(
        String(500), nullable=True, comment="RFC 2822 Message-ID header"
    )
    sender: Mapped[dict] = mapped_column(
        JSONType, nullable=False, comment='{"name": "...", "email": "..."}'
    )
    to_recipients: Mapped[list] = mapped_column(JSONType, nullable=False)
    cc_recipients: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    bcc_recipients: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    subject: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    snippet: Mapped[str | None] = mapped_column(Text, nullable=True)
    body_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    body_html: Mapped[str | None] = mapped_column(Text, nullable=True)
    folder_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    folder_type: Mapped[FolderType] = mapped_column(
        enum_column(FolderType), nullable=False, default=FolderType.INBOX
    )
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    is_starred: Mapped[bool] = mapped_column(Boolean, default=False)
    is_draft: Mapped[bool] = mapped_column(Boolean, default=False)
    has_attachments: Mapped[bool] = mapped_column(Boolean, default=False)
    raw_headers: Mapped[dict | None] = mapped_column(
        JSONType, nullable=True, comment="References, In-Reply-To for threading"
    )
    archived_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Soft delete (provider-side deletion)"
    )
    synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now()
    )


class Contact(Base):
    """Address book entry harvested from the provider."""

    __tablename__ = "contacts"
    __table_args__ = (UniqueConstraint("user_id", "email", name="uq_contact_user_email"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(100), nullable=True)
    company: Mapped[str | None] = mapped_column(String(255), nullable=True)
    job_title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="auto")
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now()
    )
