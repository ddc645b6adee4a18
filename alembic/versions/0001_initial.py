"""Initial tables for users, leads, call records and chunked upload sessions."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    call_outcome = sa.Enum("connected", "no_answer", "busy", "invalid_number", name="calloutcome")

    op.create_table(
        "users",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "auth_sessions",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("user_id", sa.String(length=32), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("token_hash", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_auth_sessions_user_id", "auth_sessions", ["user_id"], unique=False)
    op.create_index("ix_auth_sessions_token_hash", "auth_sessions", ["token_hash"], unique=True)
    op.create_index("ix_auth_sessions_expires_at", "auth_sessions", ["expires_at"], unique=False)

    op.create_table(
        "leads",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("telecaller_id", sa.String(length=32), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_leads_telecaller_id", "leads", ["telecaller_id"], unique=False)

    op.create_table(
        "call_records",
        sa.Column("id", sa.String(length=32), primary_key=True),
        sa.Column("lead_id", sa.String(length=32), sa.ForeignKey("leads.id", ondelete="CASCADE"), nullable=False),
        sa.Column("telecaller_id", sa.String(length=32), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("outcome", call_outcome, nullable=False),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        sa.Column("recording_path", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_call_records_lead_id", "call_records", ["lead_id"], unique=False)
    op.create_index("ix_call_records_telecaller_id", "call_records", ["telecaller_id"], unique=False)
    op.create_index("ix_call_records_recording_path", "call_records", ["recording_path"], unique=True)

    op.create_table(
        "upload_sessions",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column(
            "call_record_id",
            sa.String(length=32),
            sa.ForeignKey("call_records.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("expected_chunks", sa.Integer(), nullable=False),
        sa.Column("temp_dir", sa.String(length=500), nullable=False),
        sa.Column("finalized_location", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_upload_sessions_call_record_id", "upload_sessions", ["call_record_id"], unique=False)
    op.create_index("ix_upload_sessions_updated_at", "upload_sessions", ["updated_at"], unique=False)

    op.create_table(
        "upload_chunks",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "session_id",
            sa.String(length=64),
            sa.ForeignKey("upload_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("chunk_index", sa.Integer(), nullable=False),
        sa.Column("size", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("received_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("session_id", "chunk_index", name="uq_upload_chunks_session_index"),
    )
    op.create_index("ix_upload_chunks_session_id", "upload_chunks", ["session_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_upload_chunks_session_id", table_name="upload_chunks")
    op.drop_table("upload_chunks")
    op.drop_index("ix_upload_sessions_updated_at", table_name="upload_sessions")
    op.drop_index("ix_upload_sessions_call_record_id", table_name="upload_sessions")
    op.drop_table("upload_sessions")
    op.drop_index("ix_call_records_recording_path", table_name="call_records")
    op.drop_index("ix_call_records_telecaller_id", table_name="call_records")
    op.drop_index("ix_call_records_lead_id", table_name="call_records")
    op.drop_table("call_records")
    op.drop_index("ix_leads_telecaller_id", table_name="leads")
    op.drop_table("leads")
    op.drop_index("ix_auth_sessions_expires_at", table_name="auth_sessions")
    op.drop_index("ix_auth_sessions_token_hash", table_name="auth_sessions")
    op.drop_index("ix_auth_sessions_user_id", table_name="auth_sessions")
    op.drop_table("auth_sessions")
    op.drop_table("users")
    sa.Enum(name="calloutcome").drop(op.get_bind(), checkfirst=True)
