"""Dashboard tables and row_change NOTIFY trigger

Learn: One generic trigger function serves every dashboard table. It
sends pg_notify('row_change', {table, op, record, old}) after each
INSERT/UPDATE/DELETE, which the `switchboard-feed` listener turns into
ChangeFeed notifications. Writers that never go through the API (the
inbound-contact front end, the telephony bridge, psql) are seen this way.

NOTIFY payloads are capped at 8000 bytes, so:
- secure_records never carries its confidential columns
- an oversized record (a long message) is sent without `text`/`note`;
  trackers re-query anyway, the chat view fetches the message by id

Revision ID: 0001
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

WATCHED_TABLES = (
    "agents",
    "conversations",
    "messages",
    "secure_records",
    "deadline_tasks",
    "missed_calls",
)


def upgrade() -> None:
    op.create_table(
        "agents",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="agent"),
        sa.Column("status", sa.String(20), nullable=False, server_default="offline"),
        sa.Column("active_chat_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_active", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "conversations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("client_id", sa.Uuid(), nullable=False),
        sa.Column("client_name", sa.String(100), nullable=True),
        sa.Column("display_code", sa.String(16), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="queued"),
        sa.Column("assigned_to", sa.Uuid(), sa.ForeignKey("agents.id"), nullable=True),
        sa.Column("last_activity", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_conversations_client_id", "conversations", ["client_id"])
    op.create_index("ix_conversations_display_code", "conversations", ["display_code"])
    op.create_index("ix_conversations_status_activity", "conversations", ["status", "last_activity"])
    op.create_index("ix_conversations_assignee", "conversations", ["assigned_to", "status"])

    op.create_table(
        "messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("conversation_id", sa.Uuid(), sa.ForeignKey("conversations.id"), nullable=False),
        sa.Column("sender_id", sa.Uuid(), nullable=False),
        sa.Column("text", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_messages_conversation_created", "messages", ["conversation_id", "created_at"])

    op.create_table(
        "secure_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("client_id", sa.Uuid(), nullable=False, unique=True),
        sa.Column("passport_number", sa.String(64), nullable=False, server_default=""),
        sa.Column("application_id", sa.String(64), nullable=False, server_default=""),
        sa.Column("notes", sa.Text(), nullable=False, server_default=""),
        sa.Column("updated_by", sa.String(100), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "deadline_tasks",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("client_id", sa.Uuid(), nullable=False),
        sa.Column("note", sa.String(100), nullable=False, server_default=""),
        sa.Column("deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("created_by", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_deadline_tasks_status_deadline", "deadline_tasks", ["status", "deadline"])

    op.create_table(
        "missed_calls",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("client_id", sa.Uuid(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="unattended"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_missed_calls_status", "missed_calls", ["status"])

    # ─── row_change trigger ──────────────────────────────
    op.execute("""
        CREATE OR REPLACE FUNCTION notify_row_change()
        RETURNS TRIGGER AS $$
        DECLARE
            rec jsonb;
            old_rec jsonb;
            payload text;
        BEGIN
            IF TG_OP = 'DELETE' THEN
                rec := to_jsonb(OLD);
            ELSE
                rec := to_jsonb(NEW);
            END IF;
            IF TG_OP = 'UPDATE' THEN
                old_rec := to_jsonb(OLD);
            END IF;

            IF TG_TABLE_NAME = 'secure_records' THEN
                rec := rec - 'passport_number' - 'application_id' - 'notes';
                old_rec := old_rec - 'passport_number' - 'application_id' - 'notes';
            END IF;
            IF TG_TABLE_NAME = 'agents' THEN
                rec := rec - 'password_hash';
                old_rec := old_rec - 'password_hash';
            END IF;

            payload := json_build_object(
                'table', TG_TABLE_NAME,
                'op', TG_OP,
                'record', rec,
                'old', old_rec
            )::text;

            IF octet_length(payload) > 7900 THEN
                payload := json_build_object(
                    'table', TG_TABLE_NAME,
                    'op', TG_OP,
                    'record', rec - 'text' - 'note',
                    'old', NULL
                )::text;
            END IF;

            PERFORM pg_notify('row_change', payload);
            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql;
    """)

    for table in WATCHED_TABLES:
        op.execute(f"""
            CREATE TRIGGER {table}_row_change_notify
                AFTER INSERT OR UPDATE OR DELETE ON {table}
                FOR EACH ROW
                EXECUTE FUNCTION notify_row_change();
        """)


def downgrade() -> None:
    for table in WATCHED_TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS {table}_row_change_notify ON {table};")
    op.execute("DROP FUNCTION IF EXISTS notify_row_change;")

    op.drop_table("missed_calls")
    op.drop_table("deadline_tasks")
    op.drop_table("secure_records")
    op.drop_table("messages")
    op.drop_table("conversations")
    op.drop_table("agents")
