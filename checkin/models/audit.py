"""Audit log models."""

from datetime import datetime
from enum import Enum
from typing import Any
import hashlib
import json
from uuid import uuid4

from sqlalchemy import JSON, BigInteger, Enum as SQLEnum, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from checkin.db.session import Base
from checkin.models.base import UTCDateTime


class QRAuditAction(str, Enum):
    """
    Audit action types.

    Naming convention:
    - generate / expire / manual_attendance for operations that succeeded
    - scan_<outcome> for every redemption attempt, success or failure
    - _not_found suffix for administrative no-ops
    """

    GENERATE = "generate"

    # Redemption outcomes
    SCAN_SUCCESS = "scan_success"
    SCAN_MALFORMED = "scan_malformed"
    SCAN_EXPIRED = "scan_expired"
    SCAN_INVALID_SIGNATURE = "scan_invalid_signature"
    SCAN_SESSION_MISMATCH = "scan_session_mismatch"
    SCAN_NOT_FOUND = "scan_not_found"
    SCAN_ALREADY_USED = "scan_already_used"
    SCAN_STORAGE_TIMEOUT = "scan_storage_timeout"

    # Administrative expire
    EXPIRE = "expire"
    EXPIRE_NOT_FOUND = "expire_not_found"

    # Supervisor override
    MANUAL_ATTENDANCE = "manual_attendance"

    @property
    def is_scan_failure(self) -> bool:
        return self.value.startswith("scan_") and self is not QRAuditAction.SCAN_SUCCESS


class QRAuditEntry(Base):
    """
    Immutable audit entry for one token operation attempt.

    IMMUTABILITY ENFORCEMENT:
    - DB-level trigger blocks UPDATE and DELETE operations (see migration 001)
    - No updated_at column - entries are write-once

    seq is assigned by the database in insertion order and breaks ties
    between entries written at the same instant. id is the public
    identifier and is covered by the integrity hash.
    """

    __tablename__ = "qr_audit_entries"

    # SQLite only autoincrements an INTEGER PRIMARY KEY
    seq: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    id: Mapped[str] = mapped_column(
        String(36), unique=True, index=True, nullable=False, default=lambda: str(uuid4())
    )
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    # Subject - nullable because malformed payloads may not name a participant
    participant_id: Mapped[str | None] = mapped_column(String(64))
    session_id: Mapped[str | None] = mapped_column(String(64))
    session_kind: Mapped[str | None] = mapped_column(String(20))
    token_id: Mapped[str | None] = mapped_column(String(36), index=True)

    action: Mapped[QRAuditAction] = mapped_column(
        SQLEnum(QRAuditAction, name="qr_audit_action", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        index=True,
    )

    # Actor and request context
    actor_id: Mapped[str | None] = mapped_column(String(64))
    ip_address: Mapped[str | None] = mapped_column(String(45))  # IPv6 length
    user_agent: Mapped[str | None] = mapped_column(Text)

    # Typed metadata serialized from checkin.schemas.audit
    extra_data: Mapped[dict[str, Any] | None] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql")
    )

    # SHA256 over the critical fields, computed at insert time
    integrity_hash: Mapped[str | None] = mapped_column(String(64))

    def compute_integrity_hash(self) -> str:
        """Compute SHA256 hash of critical audit fields for tamper detection."""
        def serialize(v: Any) -> str:
            if v is None:
                return "null"
            if isinstance(v, datetime):
                return v.isoformat()
            if isinstance(v, dict):
                return json.dumps(v, sort_keys=True, default=str)
            if isinstance(v, Enum):
                return str(v.value)
            return str(v)

        # Order matters - must be consistent
        hash_input = "|".join([
            serialize(self.id),
            serialize(self.timestamp),
            serialize(self.participant_id),
            serialize(self.session_id),
            serialize(self.token_id),
            serialize(self.action),
            serialize(self.actor_id),
            serialize(self.extra_data),
        ])

        return hashlib.sha256(hash_input.encode("utf-8")).hexdigest()

    def verify_integrity(self) -> bool:
        """Return True if the stored hash matches the computed hash."""
        if not self.integrity_hash:
            return False
        return self.integrity_hash == self.compute_integrity_hash()

    __table_args__ = (
        Index("ix_qr_audit_participant_timestamp", "participant_id", "timestamp", "seq"),
        Index("ix_qr_audit_session", "session_id", "session_kind"),
    )
