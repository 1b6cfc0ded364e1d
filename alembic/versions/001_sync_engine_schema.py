"""Mailbox sync and delivery schema.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _account_fk(**kwargs) -> sa.Column:
    return sa.Column(
        "account_id",
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey("email_accounts.id", ondelete="CASCADE"),
        nullable=False,
        **kwargs,
    )


def _ts(name: str, nullable: bool = True, default: bool = False) -> sa.Column:
    kwargs = {"server_default": sa.text("now()")} if default else {}
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable, **kwargs)


def _draft_columns() -> list[sa.Column]:
    return [
        sa.Column("to_recipients", postgresql.JSONB(), nullable=False),
        sa.Column("cc_recipients", postgresql.JSONB(), nullable=True),
        sa.Column("bcc_recipients", postgresql.JSONB(), nullable=True),
        sa.Column("subject", sa.String(1000), nullable=False, server_default=""),
        sa.Column("body_text", sa.Text(), nullable=True),
        sa.Column("body_html", sa.Text(), nullable=True),
        sa.Column("in_reply_to", sa.String(500), nullable=True),
    ]


def upgrade() -> None:
    # ── email_accounts ──
    op.create_table(
        "email_accounts",
        _id(),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("email_address", sa.String(255), nullable=False),
        sa.Column("sync_status", sa.String(20), nullable=False, server_default="idle"),
        _ts("sync_started_at"),
        _ts("last_synced_at"),
        _ts("initial_synced_at"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("is_primary", sa.Boolean(), server_default=sa.text("false")),
        sa.Column("webhook_subscription_id", sa.String(255), nullable=True, unique=True),
        _ts("archived_at"),
        _ts("created_at", default=True),
        _ts("updated_at", default=True),
    )
    op.create_index("ix_email_accounts_user_id", "email_accounts", ["user_id"])
    op.create_index(
        "ix_email_accounts_address_provider",
        "email_accounts",
        ["email_address", "provider"],
    )

    # ── oauth_credentials ──
    op.create_table(
        "oauth_credentials",
        _id(),
        _account_fk(unique=True),
        sa.Column("access_token_encrypted", sa.Text(), nullable=False),
        sa.Column("refresh_token_encrypted", sa.Text(), nullable=False),
        _ts("expires_at", nullable=False),
        sa.Column("scopes", postgresql.JSONB(), nullable=True),
        _ts("updated_at", default=True),
    )
    op.create_index("ix_oauth_credentials_expires_at", "oauth_credentials", ["expires_at"])

    # ── sync_checkpoints ──
    op.create_table(
        "sync_checkpoints",
        _id(),
        _account_fk(),
        sa.Column("sync_type", sa.String(20), nullable=False),
        sa.Column("cursor", sa.Text(), nullable=True),
        _ts("last_successful_at"),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        _ts("updated_at", default=True),
        sa.UniqueConstraint("account_id", "sync_type", name="uq_checkpoint_account_type"),
    )
    op.create_index("ix_sync_checkpoints_account_id", "sync_checkpoints", ["account_id"])

    # ── mail_folders ──
    op.create_table(
        "mail_folders",
        _id(),
        _account_fk(),
        sa.Column("provider_folder_id", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("folder_type", sa.String(20), nullable=False, server_default="custom"),
        sa.Column("is_system_folder", sa.Boolean(), server_default=sa.text("false")),
        sa.Column("unread_count", sa.Integer(), server_default="0"),
        sa.Column("total_count", sa.Integer(), server_default="0"),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true")),
        _ts("updated_at", default=True),
        sa.UniqueConstraint(
            "account_id", "provider_folder_id", name="uq_mail_folder_account_provider"
        ),
    )
    op.create_index("ix_mail_folders_account_id", "mail_folders", ["account_id"])

    # ── mail_messages ──
    op.create_table(
        "mail_messages",
        _id(),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        _account_fk(),
        sa.Column("provider_message_id", sa.String(255), nullable=False),
        sa.Column("provider_thread_id", sa.String(255), nullable=True),
        sa.Column("internet_message_id", sa.String(500), nullable=True),
        sa.Column("sender", postgresql.JSONB(), nullable=False),
        sa.Column("to_recipients", postgresql.JSONB(), nullable=False),
        sa.Column("cc_recipients", postgresql.JSONB(), nullable=True),
        sa.Column("bcc_recipients", postgresql.JSONB(), nullable=True),
        sa.Column("subject", sa.String(1000), nullable=True),
        _ts("date", nullable=False),
        sa.Column("snippet", sa.Text(), nullable=True),
        sa.Column("body_text", sa.Text(), nullable=True),
        sa.Column("body_html", sa.Text(), nullable=True),
        sa.Column("folder_id", sa.String(255), nullable=True),
        sa.Column("folder_type", sa.String(20), nullable=False, server_default="inbox"),
        sa.Column("is_read", sa.Boolean(), server_default=sa.text("false")),
        sa.Column("is_starred", sa.Boolean(), server_default=sa.text("false")),
        sa.Column("is_draft", sa.Boolean(), server_default=sa.text("false")),
        sa.Column("has_attachments", sa.Boolean(), server_default=sa.text("false")),
        sa.Column("raw_headers", postgresql.JSONB(), nullable=True),
        _ts("archived_at"),
        _ts("synced_at"),
        _ts("created_at", default=True),
        _ts("updated_at", default=True),
        sa.UniqueConstraint(
            "account_id", "provider_message_id", name="uq_mail_msg_account_provider"
        ),
    )
    op.create_index("ix_mail_messages_user_id", "mail_messages", ["user_id"])
    op.create_index("ix_mail_messages_account_id", "mail_messages", ["account_id"])
    op.create_index(
        "ix_mail_messages_thread", "mail_messages", ["account_id", "provider_thread_id"]
    )
    op.create_index(
        "ix_mail_messages_folder", "mail_messages", ["account_id", "folder_type", "date"]
    )

    # ── contacts ──
    op.create_table(
        "contacts",
        _id(),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(100), nullable=True),
        sa.Column("company", sa.String(255), nullable=True),
        sa.Column("job_title", sa.String(255), nullable=True),
        sa.Column("source", sa.String(20), nullable=False, server_default="auto"),
        _ts("updated_at", default=True),
        sa.UniqueConstraint("user_id", "email", name="uq_contact_user_email"),
    )
    op.create_index("ix_contacts_user_id", "contacts", ["user_id"])

    # ── queued_sends ──
    op.create_table(
        "queued_sends",
        _id(),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        _account_fk(),
        *_draft_columns(),
        _ts("send_at", nullable=False),
        sa.Column("canceled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("sent", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("provider_message_id", sa.String(255), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        _ts("created_at", default=True),
        _ts("updated_at", default=True),
        sa.CheckConstraint("NOT (sent AND canceled)", name="ck_queued_sends_terminal"),
    )
    op.create_index("ix_queued_sends_user_id", "queued_sends", ["user_id"])
    op.create_index("ix_queued_sends_due", "queued_sends", ["sent", "canceled", "send_at"])

    # ── scheduled_emails ──
    op.create_table(
        "scheduled_emails",
        _id(),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        _account_fk(),
        *_draft_columns(),
        _ts("scheduled_for", nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="queued"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("provider_message_id", sa.String(255), nullable=True),
        _ts("sent_at"),
        _ts("created_at", default=True),
        _ts("updated_at", default=True),
    )
    op.create_index("ix_scheduled_emails_user_id", "scheduled_emails", ["user_id"])
    op.create_index(
        "ix_scheduled_emails_due", "scheduled_emails", ["status", "scheduled_for"]
    )

    # ── notifications ──
    op.create_table(
        "notifications",
        _id(),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("type", sa.String(20), nullable=False, server_default="info"),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("link", sa.String(500), nullable=True),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _ts("created_at", default=True),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])

    # ── vacation_responders / vacation_replies ──
    op.create_table(
        "vacation_responders",
        _id(),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        _account_fk(unique=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _ts("start_date"),
        _ts("end_date"),
        sa.Column("message", sa.Text(), nullable=False, server_default=""),
        _ts("created_at", default=True),
        _ts("updated_at", default=True),
    )
    op.create_index("ix_vacation_responders_user_id", "vacation_responders", ["user_id"])

    op.create_table(
        "vacation_replies",
        _id(),
        sa.Column(
            "responder_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("vacation_responders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sender_email", sa.String(255), nullable=False),
        _ts("replied_at", nullable=False),
        sa.UniqueConstraint("responder_id", "sender_email", name="uq_vacation_reply_sender"),
    )

    # ── snoozed_emails ──
    op.create_table(
        "snoozed_emails",
        _id(),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "message_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("mail_messages.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _ts("snooze_until", nullable=False),
        sa.Column(
            "original_folder_type", sa.String(20), nullable=False, server_default="inbox"
        ),
        sa.Column("unsnoozed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _ts("created_at", default=True),
    )
    op.create_index("ix_snoozed_emails_user_id", "snoozed_emails", ["user_id"])
    op.create_index("ix_snoozed_emails_due", "snoozed_emails", ["unsnoozed", "snooze_until"])

    # ── events ──
    op.create_table(
        "events",
        _id(),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(255), nullable=True),
        sa.Column("actor_id", sa.String(255), nullable=True),
        sa.Column("payload", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default="{}"),
        _ts("created_at", default=True),
    )
    op.create_index("ix_events_event_type", "events", ["event_type"])
    op.create_index("ix_events_entity", "events", ["entity_type", "entity_id"])


def downgrade() -> None:
    op.drop_table("events")
    op.drop_table("snoozed_emails")
    op.drop_table("vacation_replies")
    op.drop_table("vacation_responders")
    op.drop_table("notifications")
    op.drop_table("scheduled_emails")
    op.drop_table("queued_sends")
    op.drop_table("contacts")
    op.drop_table("mail_messages")
    op.drop_table("mail_folders")
    op.drop_table("sync_checkpoints")
    op.drop_table("oauth_credentials")
    op.drop_table("email_accounts")
