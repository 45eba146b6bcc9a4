"""Audit logging service for the token lifecycle."""

from dataclasses import dataclass
import re
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from checkin.core.clock import Clock, get_clock
from checkin.core.config import settings
from checkin.models.audit import QRAuditAction, QRAuditEntry
from checkin.models.qr_token import SessionKind
from checkin.schemas.audit import AuditMetadata


# =============================================================================
# PII Redaction for free-text audit fields
# =============================================================================

# Keys inside metadata ``extra`` whose values are always redacted
PII_FIELDS = {
    "phone", "phone_number", "mobile", "telephone",
    "email", "email_address",
    "date_of_birth", "dob",
    "street_address", "address_line",
    "password", "secret_key", "api_key",
}

PII_PATTERNS = [
    (re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+"), "[EMAIL_REDACTED]"),
    (re.compile(r"\b\d{3}[-.\s]?\d{3}[-.\s]?\d{4}\b"), "[PHONE_REDACTED]"),
    (re.compile(r"\(\d{3}\)\s?\d{3}[-.\s]?\d{4}"), "[PHONE_REDACTED]"),
]

# Metadata fields that carry operator-entered text
FREE_TEXT_FIELDS = ("notes", "location")


def redact_pii_value(value: Any) -> Any:
    """Redact PII from a single value.

    Handles strings, dicts, and lists recursively.
    """
    if value is None:
        return None

    if isinstance(value, str):
        result = value
        for pattern, replacement in PII_PATTERNS:
            result = pattern.sub(replacement, result)
        return result

    if isinstance(value, dict):
        return redact_pii_dict(value)

    if isinstance(value, list):
        return [redact_pii_value(item) for item in value]

    return value


def redact_pii_dict(data: dict | None) -> dict | None:
    """Redact PII from a dictionary by key name and by value pattern."""
    if not data:
        return data

    result = {}
    for key, value in data.items():
        if key.lower() in PII_FIELDS:
            result[key] = "[REDACTED]" if value is not None else None
        else:
            result[key] = redact_pii_value(value)
    return result


def serialize_metadata(metadata: AuditMetadata | None) -> dict[str, Any] | None:
    """Dump typed metadata to JSON-safe form with free text redacted."""
    if metadata is None:
        return None
    data = metadata.model_dump(mode="json")
    for field in FREE_TEXT_FIELDS:
        if data.get(field):
            data[field] = redact_pii_value(data[field])
    data["extra"] = redact_pii_dict(data.get("extra")) or {}
    return data


def clamp_page_size(limit: int | None) -> int:
    """Default a missing page size and clamp it to [1, AUDIT_PAGE_SIZE_MAX]."""
    if limit is None:
        limit = settings.AUDIT_PAGE_SIZE_DEFAULT
    return max(1, min(limit, settings.AUDIT_PAGE_SIZE_MAX))


@dataclass(frozen=True)
class AuditContext:
    """Who performed an operation and from where."""

    actor_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


class QRAuditService:
    """
    Service for recording and querying token audit entries.

    Entries are write-once: id, timestamp and integrity_hash are fixed
    before the INSERT so no follow-up UPDATE is ever needed. Callers own
    the transaction; log() only stages and flushes.
    """

    def __init__(self, db: AsyncSession, clock: Clock | None = None):
        self.db = db
        self.clock = clock or get_clock()

    async def log(
        self,
        action: QRAuditAction,
        context: AuditContext | None = None,
        participant_id: str | None = None,
        session_id: str | None = None,
        session_kind: SessionKind | str | None = None,
        token_id: str | None = None,
        metadata: AuditMetadata | None = None,
    ) -> QRAuditEntry:
        """
        Create an immutable audit entry.

        Args:
            action: The operation outcome being recorded
            context: Actor and request details
            participant_id: Subject of the operation, when known
            session_id: Session named by the token or request
            session_kind: Kind of that session
            token_id: Token row involved, when one was found
            metadata: Typed per-action details

        Returns:
            The staged QRAuditEntry with integrity_hash set
        """
        context = context or AuditContext()
        if isinstance(session_kind, SessionKind):
            session_kind = session_kind.value

        entry = QRAuditEntry(
            id=str(uuid4()),
            timestamp=self.clock.now(),
            participant_id=participant_id,
            session_id=session_id,
            session_kind=session_kind,
            token_id=token_id,
            action=action,
            actor_id=context.actor_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            extra_data=serialize_metadata(metadata),
        )
        entry.integrity_hash = entry.compute_integrity_hash()

        self.db.add(entry)
        await self.db.flush()
        return entry

    async def get_participant_audit(
        self,
        participant_id: str,
        limit: int | None = None,
        offset: int = 0,
        action: QRAuditAction | None = None,
    ) -> tuple[list[QRAuditEntry], bool]:
        """
        Get audit history for a participant, newest first.

        limit is clamped to [1, AUDIT_PAGE_SIZE_MAX]; offset below zero is
        treated as zero.

        Returns:
            (entries, has_more)
        """
        limit = clamp_page_size(limit)
        offset = max(0, offset)

        query = select(QRAuditEntry).where(QRAuditEntry.participant_id == participant_id)
        if action is not None:
            query = query.where(QRAuditEntry.action == action)

        # Fetch one extra row to learn whether another page exists
        query = (
            query.order_by(QRAuditEntry.timestamp.desc(), QRAuditEntry.seq.desc())
            .offset(offset)
            .limit(limit + 1)
        )

        result = await self.db.execute(query)
        entries = list(result.scalars().all())
        has_more = len(entries) > limit
        return entries[:limit], has_more

    async def get_token_audit_trail(self, token_id: str) -> list[QRAuditEntry]:
        """Get every audit entry for a token in chronological order."""
        result = await self.db.execute(
            select(QRAuditEntry)
            .where(QRAuditEntry.token_id == token_id)
            .order_by(QRAuditEntry.timestamp.asc(), QRAuditEntry.seq.asc())
        )
        return list(result.scalars().all())
