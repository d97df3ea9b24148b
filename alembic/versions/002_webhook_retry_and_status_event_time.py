"""Add wa_webhook_events.attempts/next_attempt_at and wa_message_status_events.event_at.

Revision ID: 002
Revises: 001
Create Date: 2026-10-17

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "wa_webhook_events",
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
    )
    op.add_column(
        "wa_webhook_events",
        sa.Column("next_attempt_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_wa_webhook_events_next_attempt", "wa_webhook_events", ["next_attempt_at"])

    op.add_column(
        "wa_message_status_events",
        sa.Column("event_at", sa.DateTime(), nullable=True),
    )
    op.create_index(
        "ix_wa_status_events_push",
        "wa_message_status_events",
        ["workspace_id", "external_message_id", "status", "event_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_wa_status_events_push", table_name="wa_message_status_events")
    op.drop_column("wa_message_status_events", "event_at")
    op.drop_index("ix_wa_webhook_events_next_attempt", table_name="wa_webhook_events")
    op.drop_column("wa_webhook_events", "next_attempt_at")
    op.drop_column("wa_webhook_events", "attempts")
