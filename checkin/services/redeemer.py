"""
QR token redemption pipeline.

Steps run in order and stop at the first failure:

1. Format      payload parses and carries the required fields
2. Expiry      issued_at + TTL has not passed (time only, ignores state)
3. Signature   re-derived HMAC matches, current or prior key
4. Session     claimed session matches the embedded one (or token is identity)
5. Existence   a stored token matches the presented envelope
6. Consume     conditional UPDATE Active -> Consumed wins exactly once
7. Participant directory lookup; a miss is only a warning
8. Attendance  upsert for the token's tuple, audit scan_success

Every exit writes one audit entry. Failures come back as a
RedemptionResult; only programming errors propagate.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from checkin.audit.service import AuditContext, QRAuditService
from checkin.core.clock import Clock
from checkin.core.config import settings
from checkin.core.logging_config import format_security_event
from checkin.core.metrics import track_redemption
from checkin.integrations.interfaces.base import ParticipantDirectory, ParticipantInfo
from checkin.models.attendance import AttendanceRecord, AttendanceSource, AttendanceStatus
from checkin.models.audit import QRAuditAction
from checkin.models.qr_token import IDENTITY_SESSION_ID, QRToken, SessionKind, TokenState
from checkin.schemas.audit import ScanFailureMetadata, ScanSuccessMetadata
from checkin.schemas.qr import QRPayload
from checkin.services.attendance import AttendanceService
from checkin.services.errors import (
    CheckinError,
    QRAlreadyUsedError,
    QRExpiredError,
    QRFormatError,
    QRNotFoundError,
    QRSignatureInvalidError,
    QRTokenUnavailableError,
    SessionMismatchError,
    StorageTimeoutError,
)
from checkin.services.signer import QRSigner
from checkin.services.token_store import TokenStore

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security.checkin")

PARTICIPANT_MISSING_WARNING = "Participant not found in directory; attendance recorded by id"


@dataclass
class RedemptionResult:
    """Outcome of one redemption attempt."""

    success: bool
    action: QRAuditAction
    message: str
    error_code: str | None = None
    token_id: str | None = None
    attendance: AttendanceRecord | None = None
    participant: ParticipantInfo | None = None
    warnings: list[str] = field(default_factory=list)
    error: CheckinError | None = None


@dataclass
class _Attempt:
    """What the pipeline has learned so far, for the audit entry.

    Plain values only: ORM rows are expired by the rollback on failure.
    """

    claimed_session_id: str | None = None
    participant_id: str | None = None
    session_id: str | None = None
    session_kind: SessionKind | None = None
    token_id: str | None = None

    def note_payload(self, payload: QRPayload) -> None:
        self.participant_id = payload.participant_id
        self.session_id = payload.session_id
        self.session_kind = payload.session_kind

    def note_token(self, token: QRToken) -> None:
        self.token_id = token.id
        self.participant_id = token.participant_id
        self.session_id = token.session_id
        self.session_kind = token.session_kind


def decode_payload(raw: str | dict[str, Any]) -> dict[str, Any]:
    """Turn scanned QR data into a mapping, without validating fields."""
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise QRFormatError(reason="invalid_json") from exc
    else:
        data = raw

    if not isinstance(data, dict):
        raise QRFormatError(reason="not_an_object")
    return data


def validate_payload(data: dict[str, Any]) -> QRPayload:
    try:
        return QRPayload.model_validate(data)
    except ValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"]) or "payload" for err in exc.errors()})
        raise QRFormatError(reason=f"invalid_fields:{','.join(fields)}") from exc


def parse_payload(raw: str | dict[str, Any]) -> QRPayload:
    """
    Decode and validate the presented QR data.

    Raises:
        QRFormatError: not JSON, not an object, or fields missing/invalid
    """
    return validate_payload(decode_payload(raw))


class QRRedeemer:
    """Validates presented tokens and records attendance exactly once."""

    def __init__(
        self,
        db: AsyncSession,
        signer: QRSigner,
        participants: ParticipantDirectory,
        clock: Clock,
        storage_timeout_seconds: float | None = None,
    ):
        self.db = db
        self.signer = signer
        self.participants = participants
        self.clock = clock
        self.store = TokenStore(db, storage_timeout_seconds)
        self.attendance = AttendanceService(db, clock, storage_timeout_seconds)
        self.audit = QRAuditService(db, clock)

    async def redeem(
        self,
        raw_payload: str | dict[str, Any],
        claimed_session_id: str | None = None,
        location: str | None = None,
        context: AuditContext | None = None,
    ) -> RedemptionResult:
        """
        Run the full pipeline for one presented token.

        Args:
            raw_payload: QR data as scanned, JSON string or decoded object
            claimed_session_id: Session the scanner is checking in for
            location: Where the scan happened, stored on the attendance row
            context: Scanner identity and request details

        Returns:
            RedemptionResult; success or the typed failure
        """
        context = context or AuditContext()
        attempt = _Attempt(claimed_session_id=claimed_session_id)

        started = time.perf_counter()
        try:
            result = await self._run(raw_payload, attempt, location, context)
        except CheckinError as exc:
            result = await self._fail(exc, attempt, context)

        track_redemption(result.action.value, time.perf_counter() - started)
        return result

    async def _run(
        self,
        raw_payload: str | dict[str, Any],
        attempt: _Attempt,
        location: str | None,
        context: AuditContext,
    ) -> RedemptionResult:
        now_millis = self.clock.now_millis()

        # 1. Format
        data = decode_payload(raw_payload)
        hint = data.get("participantId")
        if isinstance(hint, (str, int)) and not isinstance(hint, bool):
            attempt.participant_id = str(hint)[:64]
        payload = validate_payload(data)
        attempt.note_payload(payload)
        skew_millis = settings.QR_MAX_CLOCK_SKEW_SECONDS * 1000
        if payload.issued_at_millis > now_millis + skew_millis:
            raise QRFormatError(reason="timestamp_in_future")

        # 2. Expiry
        if now_millis > payload.issued_at_millis + settings.qr_token_ttl_millis:
            raise QRExpiredError(reason="ttl_elapsed")

        # 3. Signature
        key_version = self.signer.verify(
            payload.participant_id,
            payload.session_id,
            payload.issued_at_millis,
            payload.signature,
        )
        if key_version is None:
            raise QRSignatureInvalidError(reason="mismatch")

        # 4. Session match
        if (
            attempt.claimed_session_id is not None
            and payload.session_id != IDENTITY_SESSION_ID
            and attempt.claimed_session_id != payload.session_id
        ):
            raise SessionMismatchError(reason="session_mismatch")

        # 5. Existence
        token = await self.store.find_by_envelope(
            payload.participant_id, payload.signature, payload.issued_at_millis
        )
        if token is None:
            raise QRNotFoundError(reason="no_matching_token")
        attempt.note_token(token)
        token_id = token.id
        participant_id = token.participant_id
        session_id = token.session_id
        session_kind = token.session_kind

        # 6. Atomic consumption
        now = self.clock.now()
        consumed = await self.store.consume(token_id, context.actor_id or "unknown", now)
        if not consumed:
            state = await self.store.get_state(token_id)
            if state == TokenState.EXPIRED:
                raise QRTokenUnavailableError(reason="revoked")
            raise QRAlreadyUsedError(reason="already_consumed")

        # 7. Participant resolution
        warnings: list[str] = []
        participant = await self.participants.resolve_participant(participant_id)
        if participant is None:
            warnings.append(PARTICIPANT_MISSING_WARNING)

        # 8. Attendance for the tuple the token was issued for
        record = await self.attendance.upsert(
            participant_id=participant_id,
            session_id=session_id,
            session_kind=session_kind,
            status=AttendanceStatus.PRESENT,
            source=AttendanceSource.QR,
            recorded_by=context.actor_id,
            check_in_time=now,
            location=location,
            token_id=token_id,
        )

        await self.audit.log(
            action=QRAuditAction.SCAN_SUCCESS,
            context=context,
            participant_id=participant_id,
            session_id=session_id,
            session_kind=session_kind,
            token_id=token_id,
            metadata=ScanSuccessMetadata(
                scanner_id=context.actor_id or "unknown",
                attendance_id=record.id,
                key_version=key_version,
                location=location,
                claimed_session_id=attempt.claimed_session_id,
                participant_missing=participant is None,
            ),
        )
        await self.db.commit()

        logger.info(
            "QR check-in succeeded",
            extra={
                "event_type": "checkin.scan.scan_success",
                "token_id": token_id,
                "participant_id": participant_id,
                "session_id": session_id,
                "session_kind": session_kind.value,
                "attendance_id": record.id,
                "actor_id": context.actor_id,
                "key_version": key_version,
            },
        )
        if participant is None:
            logger.warning(
                "Consumed token for participant missing from directory",
                extra={
                    "event_type": "checkin.scan.participant_missing",
                    "token_id": token_id,
                    "participant_id": participant_id,
                },
            )

        return RedemptionResult(
            success=True,
            action=QRAuditAction.SCAN_SUCCESS,
            message="Check-in recorded",
            token_id=token_id,
            attendance=record,
            participant=participant,
            warnings=warnings,
        )

    async def _fail(
        self,
        error: CheckinError,
        attempt: _Attempt,
        context: AuditContext,
    ) -> RedemptionResult:
        """Roll back whatever the attempt staged, then audit the failure."""
        action = error.audit_action or QRAuditAction.SCAN_MALFORMED
        await self.db.rollback()

        try:
            await asyncio.wait_for(
                self._audit_failure(action, error, attempt, context),
                timeout=self.store.timeout_seconds,
            )
        except asyncio.TimeoutError:
            await self.db.rollback()
            logger.error(
                "Could not write audit entry for failed redemption",
                extra={
                    "event_type": "checkin.audit.write_failed",
                    "action": action.value,
                    "token_id": attempt.token_id,
                    "participant_id": attempt.participant_id,
                },
            )

        log_extra = {
            "event_type": f"checkin.scan.{action.value}",
            "error_code": error.error_code,
            "reason": error.reason,
            "token_id": attempt.token_id,
            "participant_id": attempt.participant_id,
            "session_id": attempt.session_id,
            "claimed_session_id": attempt.claimed_session_id,
            "actor_id": context.actor_id,
        }
        if isinstance(error, QRSignatureInvalidError):
            security_logger.warning(
                "QR signature verification failed",
                extra=format_security_event(
                    event_type=f"checkin.scan.{action.value}",
                    severity="warning",
                    description="Presented signature did not match any signing key",
                    actor_id=context.actor_id,
                    ip_address=context.ip_address,
                    participant_id=attempt.participant_id,
                    session_id=attempt.session_id,
                ),
            )
        elif isinstance(error, StorageTimeoutError):
            logger.error("QR redemption storage timeout", extra=log_extra)
        else:
            logger.info("QR redemption rejected", extra=log_extra)

        return RedemptionResult(
            success=False,
            action=action,
            message=error.message,
            error_code=error.error_code,
            token_id=attempt.token_id,
            error=error,
        )

    async def _audit_failure(
        self,
        action: QRAuditAction,
        error: CheckinError,
        attempt: _Attempt,
        context: AuditContext,
    ) -> None:
        await self.audit.log(
            action=action,
            context=context,
            participant_id=attempt.participant_id,
            session_id=attempt.session_id,
            session_kind=attempt.session_kind,
            token_id=attempt.token_id,
            metadata=ScanFailureMetadata(
                scanner_id=context.actor_id or "unknown",
                error_code=error.error_code,
                reason=error.reason,
                claimed_session_id=attempt.claimed_session_id,
            ),
        )
        await self.db.commit()
