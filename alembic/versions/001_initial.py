"""Initial schema: outbox, WhatsApp connections/threads/messages, webhook log, rate limit counters.

Revision ID: 001
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "wa_connections",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("workspace_id", sa.String(64), nullable=False),
        sa.Column("phone_number_id", sa.String(64), nullable=False),
        sa.Column("waba_id", sa.String(64), nullable=True),
        sa.Column("display_phone_number", sa.String(32), nullable=True),
        sa.Column("access_token_encrypted", sa.Text(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("phone_number_id", name="uq_wa_connections_phone_number_id"),
    )
    op.create_index("ix_wa_connections_workspace_id", "wa_connections", ["workspace_id"])
    op.create_index("ix_wa_connections_waba_id", "wa_connections", ["waba_id"])

    op.create_table(
        "outbox_messages",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("workspace_id", sa.String(64), nullable=False),
        sa.Column("thread_id", sa.Integer(), nullable=True),
        sa.Column("connection_id", sa.Integer(), nullable=True),
        sa.Column("to_phone", sa.String(32), nullable=False),
        sa.Column("message_type", sa.String(16), nullable=False, server_default="text"),
        sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="queued"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_run_at", sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.Column("locked_at", sa.DateTime(), nullable=True),
        sa.Column("locked_by", sa.String(128), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(200), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("idempotency_key", name="uq_outbox_messages_idempotency_key"),
    )
    op.create_index("ix_outbox_messages_workspace_id", "outbox_messages", ["workspace_id"])
    op.create_index("ix_outbox_messages_thread_id", "outbox_messages", ["thread_id"])
    op.create_index("ix_outbox_messages_status_next_run", "outbox_messages", ["status", "next_run_at"])

    op.create_table(
        "wa_threads",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("workspace_id", sa.String(64), nullable=False),
        sa.Column("phone_number_id", sa.String(64), nullable=False),
        sa.Column("contact_wa_id", sa.String(64), nullable=False),
        sa.Column("contact_name", sa.String(256), nullable=True),
        sa.Column("connection_id", sa.Integer(), sa.ForeignKey("wa_connections.id"), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="open"),
        sa.Column("unread_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_message_at", sa.DateTime(), nullable=True),
        sa.Column("last_message_preview", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("workspace_id", "phone_number_id", "contact_wa_id", name="uq_wa_threads_key"),
    )
    op.create_index("ix_wa_threads_workspace_id", "wa_threads", ["workspace_id"])

    op.create_table(
        "wa_messages",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("workspace_id", sa.String(64), nullable=False),
        sa.Column("thread_id", sa.Integer(), sa.ForeignKey("wa_threads.id"), nullable=True),
        sa.Column("phone_number_id", sa.String(64), nullable=True),
        sa.Column("wa_message_id", sa.String(128), nullable=True),
        sa.Column("direction", sa.String(16), nullable=False),
        sa.Column("msg_type", sa.String(32), nullable=True),
        sa.Column("text_body", sa.Text(), nullable=True),
        sa.Column("media_id", sa.String(128), nullable=True),
        sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("status", sa.String(16), nullable=True),
        sa.Column("status_updated_at", sa.DateTime(), nullable=True),
        sa.Column("wa_timestamp", sa.DateTime(), nullable=True),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
        sa.Column("read_at", sa.DateTime(), nullable=True),
        sa.Column("failed_at", sa.DateTime(), nullable=True),
        sa.Column("error_code", sa.String(64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("workspace_id", "phone_number_id", "wa_message_id", name="uq_wa_messages_external"),
    )
    op.create_index("ix_wa_messages_workspace_id", "wa_messages", ["workspace_id"])
    op.create_index("ix_wa_messages_thread_id", "wa_messages", ["thread_id"])
    op.create_index("ix_wa_messages_wa_message_id", "wa_messages", ["wa_message_id"])

    op.create_table(
        "wa_message_status_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("workspace_id", sa.String(64), nullable=False),
        sa.Column("external_message_id", sa.String(128), nullable=False),
        sa.Column("status", sa.String(16), nullable=True),
        sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("applied", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reason", sa.String(32), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_wa_message_status_events_external_message_id", "wa_message_status_events", ["external_message_id"])
    op.create_index("ix_wa_status_events_ws_created", "wa_message_status_events", ["workspace_id", "created_at"])

    op.create_table(
        "wa_webhook_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("workspace_id", sa.String(64), nullable=True),
        sa.Column("channel", sa.String(16), nullable=False, server_default="whatsapp"),
        sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("received_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("error_text", sa.Text(), nullable=True),
    )
    op.create_index("ix_wa_webhook_events_workspace_id", "wa_webhook_events", ["workspace_id"])
    op.create_index("ix_wa_webhook_events_received", "wa_webhook_events", ["received_at"])

    op.create_table(
        "rate_limit_counters",
        sa.Column("workspace_id", sa.String(64), primary_key=True),
        sa.Column("window_start", sa.DateTime(), primary_key=True),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
    )


def downgrade() -> None:
    op.drop_table("rate_limit_counters")
    op.drop_index("ix_wa_webhook_events_received", table_name="wa_webhook_events")
    op.drop_index("ix_wa_webhook_events_workspace_id", table_name="wa_webhook_events")
    op.drop_table("wa_webhook_events")
    op.drop_index("ix_wa_status_events_ws_created", table_name="wa_message_status_events")
    op.drop_index("ix_wa_message_status_events_external_message_id", table_name="wa_message_status_events")
    op.drop_table("wa_message_status_events")
    op.drop_index("ix_wa_messages_wa_message_id", table_name="wa_messages")
    op.drop_index("ix_wa_messages_thread_id", table_name="wa_messages")
    op.drop_index("ix_wa_messages_workspace_id", table_name="wa_messages")
    op.drop_table("wa_messages")
    op.drop_index("ix_wa_threads_workspace_id", table_name="wa_threads")
    op.drop_table("wa_threads")
    op.drop_index("ix_outbox_messages_status_next_run", table_name="outbox_messages")
    op.drop_index("ix_outbox_messages_thread_id", table_name="outbox_messages")
    op.drop_index("ix_outbox_messages_workspace_id", table_name="outbox_messages")
    op.drop_table("outbox_messages")
    op.drop_index("ix_wa_connections_waba_id", table_name="wa_connections")
    op.drop_index("ix_wa_connections_workspace_id", table_name="wa_connections")
    op.drop_table("wa_connections")
