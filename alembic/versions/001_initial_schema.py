"""Initial QR check-in schema.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17

Creates the token, attendance and audit tables, and enforces audit
immutability on PostgreSQL with UPDATE/DELETE triggers on
qr_audit_entries.

SECURITY NOTE: The triggers are defense-in-depth. Production deployments
should also grant the application role INSERT/SELECT only on
qr_audit_entries.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial schema tables."""
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"

    # ==========================================================================
    # CREATE ENUMS
    # ==========================================================================

    session_kind_enum = postgresql.ENUM(
        "training", "match", "event", "identity", name="session_kind", create_type=False
    )
    token_state_enum = postgresql.ENUM(
        "active", "consumed", "expired", name="qr_token_state", create_type=False
    )
    attendance_status_enum = postgresql.ENUM(
        "present", "absent", "late", "excused", name="attendance_status", create_type=False
    )
    attendance_source_enum = postgresql.ENUM(
        "qr", "manual", name="attendance_source", create_type=False
    )
    audit_action_enum = postgresql.ENUM(
        "generate",
        "scan_success",
        "scan_malformed",
        "scan_expired",
        "scan_invalid_signature",
        "scan_session_mismatch",
        "scan_not_found",
        "scan_already_used",
        "scan_storage_timeout",
        "expire",
        "expire_not_found",
        "manual_attendance",
        name="qr_audit_action",
        create_type=False,
    )

    if is_postgres:
        for enum in (
            session_kind_enum,
            token_state_enum,
            attendance_status_enum,
            attendance_source_enum,
            audit_action_enum,
        ):
            enum.create(bind, checkfirst=True)
        json_type = postgresql.JSONB()
    else:
        session_kind_enum = sa.Enum("training", "match", "event", "identity", name="session_kind")
        token_state_enum = sa.Enum("active", "consumed", "expired", name="qr_token_state")
        attendance_status_enum = sa.Enum(
            "present", "absent", "late", "excused", name="attendance_status"
        )
        attendance_source_enum = sa.Enum("qr", "manual", name="attendance_source")
        audit_action_enum = sa.Enum(*audit_action_enum.enums, name="qr_audit_action")
        json_type = sa.JSON()

    # ==========================================================================
    # QR TOKENS
    # ==========================================================================

    op.create_table(
        "qr_tokens",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("participant_id", sa.String(64), nullable=False),
        sa.Column("session_id", sa.String(64), nullable=False),
        sa.Column("session_kind", session_kind_enum, nullable=False),
        sa.Column("signature", sa.String(64), nullable=False),
        sa.Column("key_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("issued_at_millis", sa.BigInteger(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("state", token_state_enum, nullable=False, server_default="active"),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consumed_by", sa.String(64), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_by", sa.String(64), nullable=True),
        sa.Column("created_by", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_qr_tokens_expires_at", "qr_tokens", ["expires_at"])
    op.create_index(
        "ix_qr_tokens_envelope",
        "qr_tokens",
        ["participant_id", "signature", "issued_at_millis"],
    )
    op.create_index("ix_qr_tokens_participant_state", "qr_tokens", ["participant_id", "state"])

    # ==========================================================================
    # ATTENDANCE RECORDS
    # ==========================================================================

    op.create_table(
        "attendance_records",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("participant_id", sa.String(64), nullable=False),
        sa.Column("session_id", sa.String(64), nullable=False),
        sa.Column("session_kind", session_kind_enum, nullable=False),
        sa.Column("status", attendance_status_enum, nullable=False),
        sa.Column("source", attendance_source_enum, nullable=False),
        sa.Column("check_in_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recorded_by", sa.String(64), nullable=True),
        sa.Column("location", sa.String(255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("token_id", sa.String(36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "participant_id", "session_id", "session_kind", name="uq_attendance_tuple"
        ),
    )
    op.create_index("ix_attendance_session", "attendance_records", ["session_id", "session_kind"])

    # ==========================================================================
    # AUDIT ENTRIES
    # ==========================================================================

    op.create_table(
        "qr_audit_entries",
        sa.Column(
            "seq",
            sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
            primary_key=True,
            autoincrement=True,
        ),
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("participant_id", sa.String(64), nullable=True),
        sa.Column("session_id", sa.String(64), nullable=True),
        sa.Column("session_kind", sa.String(20), nullable=True),
        sa.Column("token_id", sa.String(36), nullable=True),
        sa.Column("action", audit_action_enum, nullable=False),
        sa.Column("actor_id", sa.String(64), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("extra_data", json_type, nullable=True),
        sa.Column("integrity_hash", sa.String(64), nullable=True),
    )
    op.create_index("ix_qr_audit_entries_id", "qr_audit_entries", ["id"], unique=True)
    op.create_index("ix_qr_audit_entries_token_id", "qr_audit_entries", ["token_id"])
    op.create_index("ix_qr_audit_entries_action", "qr_audit_entries", ["action"])
    op.create_index(
        "ix_qr_audit_participant_timestamp", "qr_audit_entries", ["participant_id", "timestamp", "seq"]
    )
    op.create_index("ix_qr_audit_session", "qr_audit_entries", ["session_id", "session_kind"])

    if not is_postgres:
        return

    # ==========================================================================
    # AUDIT IMMUTABILITY (PostgreSQL only)
    # ==========================================================================

    op.execute("""
        CREATE OR REPLACE FUNCTION prevent_qr_audit_modification()
        RETURNS TRIGGER AS $$
        BEGIN
            IF TG_OP = 'UPDATE' THEN
                RAISE EXCEPTION 'UPDATE operations are not permitted on % table. Audit records are immutable.', TG_TABLE_NAME
                    USING ERRCODE = 'restrict_violation';
            ELSIF TG_OP = 'DELETE' THEN
                RAISE EXCEPTION 'DELETE operations are not permitted on % table. Audit records are immutable.', TG_TABLE_NAME
                    USING ERRCODE = 'restrict_violation';
            END IF;
            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql;
    """)

    op.execute("""
        CREATE TRIGGER qr_audit_entries_prevent_update
        BEFORE UPDATE ON qr_audit_entries
        FOR EACH ROW
        EXECUTE FUNCTION prevent_qr_audit_modification();
    """)

    op.execute("""
        CREATE TRIGGER qr_audit_entries_prevent_delete
        BEFORE DELETE ON qr_audit_entries
        FOR EACH ROW
        EXECUTE FUNCTION prevent_qr_audit_modification();
    """)

    op.create_index(
        "ix_qr_audit_entries_extra_data_gin",
        "qr_audit_entries",
        ["extra_data"],
        postgresql_using="gin",
        postgresql_ops={"extra_data": "jsonb_path_ops"},
    )


def downgrade() -> None:
    """Drop all tables."""
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"

    if is_postgres:
        op.drop_index("ix_qr_audit_entries_extra_data_gin", table_name="qr_audit_entries")
        op.execute("DROP TRIGGER IF EXISTS qr_audit_entries_prevent_delete ON qr_audit_entries")
        op.execute("DROP TRIGGER IF EXISTS qr_audit_entries_prevent_update ON qr_audit_entries")
        op.execute("DROP FUNCTION IF EXISTS prevent_qr_audit_modification()")

    op.drop_table("qr_audit_entries")
    op.drop_table("attendance_records")
    op.drop_table("qr_tokens")

    if is_postgres:
        op.execute("DROP TYPE IF EXISTS qr_audit_action")
        op.execute("DROP TYPE IF EXISTS attendance_source")
        op.execute("DROP TYPE IF EXISTS attendance_status")
        op.execute("DROP TYPE IF EXISTS qr_token_state")
        op.execute("DROP TYPE IF EXISTS session_kind")
