"""init
Revision ID: 0001_init
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _base_columns():
    return [
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    op.create_table(
        "users",
        *_base_columns(),
        sa.Column("role", sa.String(length=20), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("email", sa.String(length=200), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("lawyer_verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    )
    op.create_index("ix_users_role", "users", ["role"])

    op.create_table(
        "legal_cases",
        *_base_columns(),
        sa.Column("case_kind", sa.String(length=20), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("citizen_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("assigned_lawyer_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index("ix_legal_cases_case_kind", "legal_cases", ["case_kind"])
    op.create_index("ix_legal_cases_citizen_id", "legal_cases", ["citizen_id"])
    op.create_index("ix_legal_cases_assigned_lawyer_id", "legal_cases", ["assigned_lawyer_id"])
    op.create_index("ix_legal_cases_status", "legal_cases", ["status"])

    op.create_table(
        "case_proposals",
        *_base_columns(),
        sa.Column("case_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("kind", sa.String(length=20), nullable=False),
        sa.Column("citizen_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("lawyer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_case_proposals_case_id", "case_proposals", ["case_id"])
    op.create_index("ix_case_proposals_citizen_id", "case_proposals", ["citizen_id"])
    op.create_index("ix_case_proposals_lawyer_id", "case_proposals", ["lawyer_id"])
    op.create_index("ix_case_proposals_status", "case_proposals", ["status"])

    op.create_table(
        "case_status_history",
        *_base_columns(),
        sa.Column("case_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("from_status", sa.String(length=20), nullable=True),
        sa.Column("to_status", sa.String(length=20), nullable=False),
        sa.Column("changed_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("comment", sa.String(length=400), nullable=True),
    )
    op.create_index("ix_case_status_history_case_id", "case_status_history", ["case_id"])

    op.create_table(
        "direct_connections",
        *_base_columns(),
        sa.Column("citizen_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("lawyer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("request_message", sa.String(length=500), nullable=False),
        sa.Column("response_message", sa.String(length=500), nullable=True),
        sa.Column("connection_type", sa.String(length=40), nullable=False, server_default="general_consultation"),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("channel_id", sa.String(length=120), nullable=True, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.UniqueConstraint("citizen_id", "lawyer_id", name="uq_direct_connections_pair"),
    )
    op.create_index("ix_direct_connections_citizen_id", "direct_connections", ["citizen_id"])
    op.create_index("ix_direct_connections_lawyer_id", "direct_connections", ["lawyer_id"])
    op.create_index("ix_direct_connections_status", "direct_connections", ["status"])

    op.create_table(
        "channels",
        *_base_columns(),
        sa.Column("channel_id", sa.String(length=120), nullable=False),
        sa.Column("channel_type", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("case_kind", sa.String(length=20), nullable=True),
        sa.Column("case_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("direct_connection_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("last_seq", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_channels_channel_id", "channels", ["channel_id"], unique=True)
    op.create_index("ix_channels_case_id", "channels", ["case_id"])

    op.create_table(
        "channel_participants",
        *_base_columns(),
        sa.Column("channel_id", sa.String(length=120), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_read_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("channel_id", "user_id", name="uq_channel_participants_member"),
    )
    op.create_index("ix_channel_participants_channel_id", "channel_participants", ["channel_id"])
    op.create_index("ix_channel_participants_user_id", "channel_participants", ["user_id"])

    op.create_table(
        "channel_messages",
        *_base_columns(),
        sa.Column("channel_id", sa.String(length=120), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("sender_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("message_type", sa.String(length=20), nullable=False, server_default="text"),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("file_ref", sa.JSON(), nullable=True),
        sa.UniqueConstraint("channel_id", "seq", name="uq_channel_messages_seq"),
    )
    op.create_index("ix_channel_messages_channel_id", "channel_messages", ["channel_id"])
    op.create_index("ix_channel_messages_sender_id", "channel_messages", ["sender_id"])

    op.create_table(
        "channel_message_reads",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("message_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("channel_id", sa.String(length=120), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("message_id", "user_id", name="uq_channel_message_reads_reader"),
    )
    op.create_index("ix_channel_message_reads_message_id", "channel_message_reads", ["message_id"])
    op.create_index("ix_channel_message_reads_channel_id", "channel_message_reads", ["channel_id"])
    op.create_index("ix_channel_message_reads_user_id", "channel_message_reads", ["user_id"])


def downgrade():
    op.drop_table("channel_message_reads")
    op.drop_table("channel_messages")
    op.drop_table("channel_participants")
    op.drop_table("channels")
    op.drop_table("direct_connections")
    op.drop_table("case_status_history")
    op.drop_table("case_proposals")
    op.drop_table("legal_cases")
    op.drop_table("users")
