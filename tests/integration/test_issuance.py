"""
Integration tests for QR token issuance.

Tests cover:
- Stored token fields and expiry
- Session defaults and identity tokens
- Directory enrichment
- Generate audit entries
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from checkin.audit.service import QRAuditService
from checkin.models.audit import QRAuditAction
from checkin.models.qr_token import IDENTITY_SESSION_ID, QRToken, SessionKind, TokenState
from checkin.services.errors import ParticipantNotFoundError, SessionKindInvalidError


class TestIssue:
    """Tests for QRIssuer.issue."""

    @pytest.mark.asyncio
    async def test_issue_training_token(self, issuer, signer, clock, coach_context, load_token):
        """A token bound to session 7 is stored Active with a 30 minute expiry."""
        issued = await issuer.issue("42", session_id="7", session_kind=SessionKind.TRAINING, context=coach_context)
        token_id = issued.token.id
        payload = issued.payload

        token = await load_token(token_id)
        assert token.state == TokenState.ACTIVE
        assert token.participant_id == "42"
        assert token.session_id == "7"
        assert token.session_kind == SessionKind.TRAINING
        assert token.issued_at_millis == clock.now_millis()
        assert token.expires_at == clock.now() + timedelta(minutes=30)
        assert token.created_by == "coach-1"
        assert token.key_version == 1

        assert payload.signature == token.signature
        assert signer.verify("42", "7", payload.issued_at_millis, payload.signature) == 1

    @pytest.mark.asyncio
    async def test_session_without_kind_defaults_to_training(self, issuer, coach_context):
        issued = await issuer.issue("42", session_id="7", context=coach_context)
        assert issued.payload.session_kind == SessionKind.TRAINING

    @pytest.mark.asyncio
    async def test_identity_token(self, issuer, player_context):
        """No session means an identity token with the sentinel session id."""
        issued = await issuer.issue("42", context=player_context)

        assert issued.payload.session_id == IDENTITY_SESSION_ID
        assert issued.payload.session_kind == SessionKind.IDENTITY
        assert issued.session is None

    @pytest.mark.asyncio
    async def test_enrichment(self, issuer, coach_context):
        issued = await issuer.issue("42", session_id="7", context=coach_context)

        assert issued.participant.display_name == "Sam Okafor"
        assert issued.session.title == "Tuesday drills"

    @pytest.mark.asyncio
    async def test_unknown_session_still_issues(self, issuer, coach_context):
        """Session lookup is enrichment only."""
        issued = await issuer.issue("42", session_id="99", session_kind=SessionKind.MATCH, context=coach_context)

        assert issued.session is None
        assert issued.payload.session_id == "99"
        assert issued.payload.session_kind == SessionKind.MATCH

    @pytest.mark.asyncio
    async def test_unknown_participant_rejected(self, issuer, db_session, coach_context):
        with pytest.raises(ParticipantNotFoundError):
            await issuer.issue("999", session_id="7", context=coach_context)

        count = await db_session.scalar(select(func.count()).select_from(QRToken))
        assert count == 0

    @pytest.mark.asyncio
    async def test_identity_kind_with_session_rejected(self, issuer, coach_context):
        with pytest.raises(SessionKindInvalidError):
            await issuer.issue("42", session_id="7", session_kind=SessionKind.IDENTITY, context=coach_context)

    @pytest.mark.asyncio
    async def test_each_issue_creates_distinct_token(self, issuer, clock, coach_context):
        first = await issuer.issue("42", session_id="7", context=coach_context)
        first_id = first.token.id
        clock.advance(seconds=1)
        second = await issuer.issue("42", session_id="7", context=coach_context)

        assert second.token.id != first_id
        assert second.payload.signature != first.payload.signature

    @pytest.mark.asyncio
    async def test_generate_audited(self, issuer, db_session, clock, coach_context):
        issued = await issuer.issue("42", session_id="7", context=coach_context)
        token_id = issued.token.id

        trail = await QRAuditService(db_session, clock).get_token_audit_trail(token_id)

        assert [entry.action for entry in trail] == [QRAuditAction.GENERATE]
        entry = trail[0]
        assert entry.actor_id == "coach-1"
        assert entry.participant_id == "42"
        assert entry.session_kind == "training"
        assert entry.extra_data["kind"] == "generate"
        assert entry.extra_data["session_title"] == "Tuesday drills"
        assert entry.verify_integrity() is True
