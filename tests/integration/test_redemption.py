"""
Integration tests for the QR redemption pipeline.

CRITICAL FOR: one-time use, tamper rejection and a complete audit trail.

Tests cover:
- Successful check-in and the expiry boundary
- Each failure outcome and its audit entry
- Identity tokens and key rotation
- Administrative expiry before redemption
- Storage timeouts and missing participants
"""

import asyncio
import json

import pytest
from sqlalchemy import select

from checkin.audit.service import QRAuditService
from checkin.core.secrets import SecretProvider
from checkin.integrations.adapters.static import StaticDirectoryAdapter
from checkin.models.attendance import AttendanceSource, AttendanceStatus
from checkin.models.audit import QRAuditAction, QRAuditEntry
from checkin.models.qr_token import IDENTITY_SESSION_ID, SessionKind, TokenState
from checkin.schemas.qr import QRPayload
from checkin.services.errors import (
    QRAlreadyUsedError,
    QRExpiredError,
    QRTokenUnavailableError,
    StorageTimeoutError,
)
from checkin.services.expiry import TokenExpirer
from checkin.services.redeemer import PARTICIPANT_MISSING_WARNING, QRRedeemer
from checkin.services.signer import QRSigner

ROTATED_KEY = "rotated-qr-signing-key-fedcba9876543210"


def _flip_signature_bit(qr_data: str) -> str:
    data = json.loads(qr_data)
    signature = data["signature"]
    data["signature"] = signature[:-1] + format(int(signature[-1], 16) ^ 1, "x")
    return json.dumps(data)


async def _latest_audit(db_session, clock, participant_id="42") -> QRAuditEntry:
    entries, _ = await QRAuditService(db_session, clock).get_participant_audit(participant_id, limit=1)
    return entries[0]


class TestSuccessfulRedemption:
    """Tests for the happy path."""

    @pytest.mark.asyncio
    async def test_check_in_recorded(self, issuer, redeemer, clock, coach_context, load_token):
        """Participant 42 checks in to training session 7 five minutes after issue."""
        issued = await issuer.issue("42", session_id="7", session_kind=SessionKind.TRAINING, context=coach_context)
        token_id = issued.token.id
        qr_data = issued.payload.to_qr_data()

        clock.advance(minutes=5)
        result = await redeemer.redeem(qr_data, claimed_session_id="7", location="Pitch 2", context=coach_context)

        assert result.success is True
        assert result.action == QRAuditAction.SCAN_SUCCESS
        assert result.token_id == token_id
        assert result.warnings == []
        assert result.participant.display_name == "Sam Okafor"

        attendance = result.attendance
        assert attendance.participant_id == "42"
        assert attendance.session_id == "7"
        assert attendance.session_kind == SessionKind.TRAINING
        assert attendance.status == AttendanceStatus.PRESENT
        assert attendance.source == AttendanceSource.QR
        assert attendance.check_in_time == clock.now()
        assert attendance.recorded_by == "coach-1"
        assert attendance.location == "Pitch 2"
        assert attendance.token_id == token_id

        token = await load_token(token_id)
        assert token.state == TokenState.CONSUMED
        assert token.consumed_by == "coach-1"
        assert token.consumed_at == clock.now()

    @pytest.mark.asyncio
    async def test_success_audited(self, issuer, redeemer, db_session, clock, coach_context):
        issued = await issuer.issue("42", session_id="7", context=coach_context)
        token_id = issued.token.id
        clock.advance(minutes=1)

        result = await redeemer.redeem(issued.payload.to_qr_data(), claimed_session_id="7", context=coach_context)

        entry = await _latest_audit(db_session, clock)
        assert entry.action == QRAuditAction.SCAN_SUCCESS
        assert entry.token_id == token_id
        assert entry.actor_id == "coach-1"
        assert entry.extra_data["attendance_id"] == result.attendance.id
        assert entry.extra_data["key_version"] == 1
        assert entry.extra_data["participant_missing"] is False

    @pytest.mark.asyncio
    async def test_valid_at_exact_ttl(self, issuer, redeemer, clock, coach_context):
        """A token is still valid at exactly issued_at + 30 minutes."""
        issued = await issuer.issue("42", session_id="7", context=coach_context)
        clock.advance(minutes=30)

        result = await redeemer.redeem(issued.payload.to_qr_data(), context=coach_context)
        assert result.success is True

    @pytest.mark.asyncio
    async def test_accepts_decoded_payload(self, issuer, redeemer, coach_context):
        issued = await issuer.issue("42", session_id="7", context=coach_context)
        raw = issued.payload.model_dump(by_alias=True, mode="json")

        result = await redeemer.redeem(raw, claimed_session_id="7", context=coach_context)
        assert result.success is True

    @pytest.mark.asyncio
    async def test_no_claimed_session_uses_token_session(self, issuer, redeemer, coach_context):
        issued = await issuer.issue("42", session_id="7", context=coach_context)

        result = await redeemer.redeem(issued.payload.to_qr_data(), context=coach_context)
        assert result.success is True
        assert result.attendance.session_id == "7"

    @pytest.mark.asyncio
    async def test_identity_token_skips_session_match(self, issuer, redeemer, player_context, coach_context):
        """Identity tokens are accepted for any claimed session; attendance keys off the token."""
        issued = await issuer.issue("42", context=player_context)

        result = await redeemer.redeem(issued.payload.to_qr_data(), claimed_session_id="7", context=coach_context)

        assert result.success is True
        assert result.attendance.session_id == IDENTITY_SESSION_ID
        assert result.attendance.session_kind == SessionKind.IDENTITY


class TestRejectedRedemption:
    """Tests for each failure outcome."""

    @pytest.mark.asyncio
    async def test_expired_after_ttl(self, issuer, redeemer, db_session, clock, coach_context, load_token):
        issued = await issuer.issue("42", session_id="7", context=coach_context)
        token_id = issued.token.id
        clock.advance(minutes=31)

        result = await redeemer.redeem(issued.payload.to_qr_data(), claimed_session_id="7", context=coach_context)

        assert result.success is False
        assert result.error_code == "QR_EXPIRED"
        assert result.action == QRAuditAction.SCAN_EXPIRED
        assert isinstance(result.error, QRExpiredError)
        assert not isinstance(result.error, QRTokenUnavailableError)
        assert result.error.reason == "ttl_elapsed"

        # Time-based expiry never touches the stored state
        token = await load_token(token_id)
        assert token.state == TokenState.ACTIVE

        entry = await _latest_audit(db_session, clock)
        assert entry.action == QRAuditAction.SCAN_EXPIRED
        assert entry.extra_data["error_code"] == "QR_EXPIRED"
        assert entry.extra_data["claimed_session_id"] == "7"

    @pytest.mark.asyncio
    async def test_single_bit_tamper(self, issuer, redeemer, db_session, clock, coach_context, load_token):
        issued = await issuer.issue("42", session_id="7", context=coach_context)
        token_id = issued.token.id

        clock.advance(seconds=1)
        result = await redeemer.redeem(_flip_signature_bit(issued.payload.to_qr_data()), context=coach_context)

        assert result.error_code == "QR_SIGNATURE_INVALID"
        assert (await load_token(token_id)).state == TokenState.ACTIVE
        entry = await _latest_audit(db_session, clock)
        assert entry.action == QRAuditAction.SCAN_INVALID_SIGNATURE

    @pytest.mark.asyncio
    async def test_participant_swap_rejected(self, issuer, redeemer, coach_context):
        """Presenting 42's signature under participant 43 fails signature verification."""
        issued = await issuer.issue("42", session_id="7", context=coach_context)
        data = json.loads(issued.payload.to_qr_data())
        data["participantId"] = "43"

        result = await redeemer.redeem(json.dumps(data), context=coach_context)
        assert result.error_code == "QR_SIGNATURE_INVALID"

    @pytest.mark.asyncio
    async def test_session_mismatch(self, issuer, redeemer, db_session, clock, coach_context, load_token):
        issued = await issuer.issue("42", session_id="7", context=coach_context)
        token_id = issued.token.id

        clock.advance(seconds=1)
        result = await redeemer.redeem(issued.payload.to_qr_data(), claimed_session_id="8", context=coach_context)

        assert result.error_code == "QR_SESSION_MISMATCH"
        assert (await load_token(token_id)).state == TokenState.ACTIVE
        entry = await _latest_audit(db_session, clock)
        assert entry.action == QRAuditAction.SCAN_SESSION_MISMATCH
        assert entry.extra_data["claimed_session_id"] == "8"

    @pytest.mark.asyncio
    async def test_validly_signed_but_never_issued(self, redeemer, signer, db_session, clock, coach_context):
        """A correctly signed payload with no stored token is not found."""
        issued_at = clock.now_millis()
        payload = QRPayload(
            participant_id="42",
            session_id="7",
            session_kind=SessionKind.TRAINING,
            issued_at_millis=issued_at,
            signature=signer.sign("42", "7", issued_at),
        )

        result = await redeemer.redeem(payload.to_qr_data(), context=coach_context)

        assert result.error_code == "QR_NOT_FOUND"
        entry = await _latest_audit(db_session, clock)
        assert entry.action == QRAuditAction.SCAN_NOT_FOUND
        assert entry.token_id is None

    @pytest.mark.asyncio
    async def test_second_redemption_already_used(self, issuer, redeemer, db_session, clock, coach_context):
        issued = await issuer.issue("42", session_id="7", context=coach_context)
        token_id = issued.token.id
        qr_data = issued.payload.to_qr_data()

        clock.advance(seconds=10)
        first = await redeemer.redeem(qr_data, claimed_session_id="7", context=coach_context)
        clock.advance(seconds=10)
        second = await redeemer.redeem(qr_data, claimed_session_id="7", context=coach_context)

        assert first.success is True
        assert second.success is False
        assert second.error_code == "QR_ALREADY_USED"
        assert isinstance(second.error, QRAlreadyUsedError)
        assert second.token_id == token_id

        trail = await QRAuditService(db_session, clock).get_token_audit_trail(token_id)
        assert [entry.action for entry in trail] == [
            QRAuditAction.GENERATE,
            QRAuditAction.SCAN_SUCCESS,
            QRAuditAction.SCAN_ALREADY_USED,
        ]

    @pytest.mark.asyncio
    async def test_future_timestamp_rejected(self, redeemer, signer, clock, coach_context):
        issued_at = clock.now_millis() + 5 * 60 * 1000
        payload = QRPayload(
            participant_id="42",
            session_id="7",
            session_kind=SessionKind.TRAINING,
            issued_at_millis=issued_at,
            signature=signer.sign("42", "7", issued_at),
        )

        result = await redeemer.redeem(payload.to_qr_data(), context=coach_context)

        assert result.error_code == "QR_FORMAT_INVALID"
        assert result.error.reason == "timestamp_in_future"

    @pytest.mark.asyncio
    async def test_malformed_payload_audited(self, redeemer, db_session, coach_context):
        result = await redeemer.redeem("definitely not a qr payload", context=coach_context)

        assert result.error_code == "QR_FORMAT_INVALID"
        assert result.action == QRAuditAction.SCAN_MALFORMED

        entries = (
            await db_session.execute(
                select(QRAuditEntry).where(QRAuditEntry.action == QRAuditAction.SCAN_MALFORMED)
            )
        ).scalars().all()
        assert len(entries) == 1
        assert entries[0].participant_id is None
        assert entries[0].extra_data["reason"] == "invalid_json"

    @pytest.mark.asyncio
    async def test_partial_payload_keeps_participant_hint(self, redeemer, db_session, clock, coach_context):
        """A payload missing fields is still attributed to the participant it names."""
        result = await redeemer.redeem(json.dumps({"participantId": "42"}), context=coach_context)

        assert result.error_code == "QR_FORMAT_INVALID"
        entry = await _latest_audit(db_session, clock)
        assert entry.action == QRAuditAction.SCAN_MALFORMED


class TestExpiredBeforeRedemption:
    """Administrative expiry followed by a scan."""

    @pytest.mark.asyncio
    async def test_revoked_token_reports_expired(self, issuer, redeemer, db_session, clock, coach_context, load_token):
        issued = await issuer.issue("42", session_id="7", context=coach_context)
        token_id = issued.token.id
        qr_data = issued.payload.to_qr_data()

        clock.advance(seconds=5)
        state = await TokenExpirer(db_session, clock).expire(token_id, coach_context)
        assert state == TokenState.EXPIRED

        clock.advance(seconds=5)
        result = await redeemer.redeem(qr_data, claimed_session_id="7", context=coach_context)

        assert result.error_code == "QR_EXPIRED"
        assert isinstance(result.error, QRTokenUnavailableError)
        assert result.error.reason == "revoked"
        assert (await load_token(token_id)).state == TokenState.EXPIRED

    @pytest.mark.asyncio
    async def test_revoked_token_past_window_reports_ttl(
        self, issuer, redeemer, db_session, clock, coach_context, load_token
    ):
        """Once the window has passed the scan is rejected on time alone."""
        issued = await issuer.issue("42", session_id="7", context=coach_context)
        token_id = issued.token.id
        qr_data = issued.payload.to_qr_data()

        clock.advance(seconds=5)
        await TokenExpirer(db_session, clock).expire(token_id, coach_context)

        clock.advance(minutes=31)
        result = await redeemer.redeem(qr_data, claimed_session_id="7", context=coach_context)

        assert result.success is False
        assert result.error_code == "QR_EXPIRED"
        assert result.action == QRAuditAction.SCAN_EXPIRED
        assert isinstance(result.error, QRExpiredError)
        assert not isinstance(result.error, QRTokenUnavailableError)
        assert result.error.reason == "ttl_elapsed"
        assert (await load_token(token_id)).state == TokenState.EXPIRED


class TestKeyRotation:
    """Tokens issued under the prior key during a rotation window."""

    @pytest.mark.asyncio
    async def test_prior_key_token_redeems(self, issuer, db_session, directory, clock, coach_context):
        issued = await issuer.issue("42", session_id="7", context=coach_context)
        qr_data = issued.payload.to_qr_data()

        rotated = QRSigner(
            SecretProvider(
                current=ROTATED_KEY,
                current_version=2,
                prior="test-qr-signing-key-0123456789abcdef",
                prior_version=1,
            )
        )
        redeemer = QRRedeemer(db_session, rotated, directory, clock)
        clock.advance(seconds=1)

        result = await redeemer.redeem(qr_data, context=coach_context)

        assert result.success is True
        entry = await _latest_audit(db_session, clock)
        assert entry.extra_data["key_version"] == 1

    @pytest.mark.asyncio
    async def test_prior_key_cleared(self, issuer, db_session, directory, clock, coach_context):
        issued = await issuer.issue("42", session_id="7", context=coach_context)

        rotated = QRSigner(SecretProvider(current=ROTATED_KEY, current_version=2, prior="", prior_version=0))
        redeemer = QRRedeemer(db_session, rotated, directory, clock)

        result = await redeemer.redeem(issued.payload.to_qr_data(), context=coach_context)
        assert result.error_code == "QR_SIGNATURE_INVALID"


class TestDegradedDependencies:
    """Storage timeouts and directory misses."""

    @pytest.mark.asyncio
    async def test_storage_timeout(self, issuer, db_session, signer, directory, clock, coach_context, load_token):
        """A consume that does not finish in time is a failure, and the token stays Active."""
        issued = await issuer.issue("42", session_id="7", context=coach_context)
        token_id = issued.token.id
        qr_data = issued.payload.to_qr_data()

        redeemer = QRRedeemer(db_session, signer, directory, clock, storage_timeout_seconds=0.5)

        async def stalled_consume(token_id, consumed_by, now):
            return await redeemer.store._bounded(asyncio.sleep(5))

        redeemer.store.consume = stalled_consume

        clock.advance(seconds=1)
        result = await redeemer.redeem(qr_data, context=coach_context)

        assert result.success is False
        assert result.error_code == "STORAGE_TIMEOUT"
        assert isinstance(result.error, StorageTimeoutError)
        assert (await load_token(token_id)).state == TokenState.ACTIVE

        entry = await _latest_audit(db_session, clock)
        assert entry.action == QRAuditAction.SCAN_STORAGE_TIMEOUT

    @pytest.mark.asyncio
    async def test_retry_after_timeout_succeeds(self, issuer, db_session, signer, directory, clock, coach_context):
        issued = await issuer.issue("42", session_id="7", context=coach_context)
        qr_data = issued.payload.to_qr_data()

        stalled = QRRedeemer(db_session, signer, directory, clock, storage_timeout_seconds=0.5)

        async def stalled_consume(token_id, consumed_by, now):
            return await stalled.store._bounded(asyncio.sleep(5))

        stalled.store.consume = stalled_consume
        assert (await stalled.redeem(qr_data, context=coach_context)).error_code == "STORAGE_TIMEOUT"

        retry = await QRRedeemer(db_session, signer, directory, clock).redeem(qr_data, context=coach_context)
        assert retry.success is True

    @pytest.mark.asyncio
    async def test_participant_missing_is_warning(self, issuer, db_session, signer, clock, coach_context):
        """Attendance is still recorded by id when the directory no longer knows the participant."""
        issued = await issuer.issue("42", session_id="7", context=coach_context)
        redeemer = QRRedeemer(db_session, signer, StaticDirectoryAdapter(), clock)
        clock.advance(seconds=1)

        result = await redeemer.redeem(issued.payload.to_qr_data(), context=coach_context)

        assert result.success is True
        assert result.participant is None
        assert result.warnings == [PARTICIPANT_MISSING_WARNING]
        assert result.attendance.participant_id == "42"

        entry = await _latest_audit(db_session, clock)
        assert entry.extra_data["participant_missing"] is True
