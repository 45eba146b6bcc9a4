"""QR token issuance."""

from dataclasses import dataclass
from datetime import timedelta
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from checkin.audit.service import AuditContext, QRAuditService
from checkin.core.clock import Clock, from_millis
from checkin.core.config import settings
from checkin.core.metrics import track_token_issued
from checkin.integrations.interfaces.base import (
    ParticipantDirectory,
    ParticipantInfo,
    SessionDirectory,
    SessionInfo,
)
from checkin.models.audit import QRAuditAction
from checkin.models.qr_token import IDENTITY_SESSION_ID, QRToken, SessionKind, TokenState
from checkin.schemas.audit import GenerateMetadata
from checkin.schemas.qr import QRPayload
from checkin.services.errors import ParticipantNotFoundError, SessionKindInvalidError
from checkin.services.signer import QRSigner
from checkin.services.token_store import TokenStore

logger = logging.getLogger(__name__)

# Kind assumed when a session is named without one
DEFAULT_SESSION_KIND = SessionKind.TRAINING


@dataclass
class IssuedQRToken:
    """A stored token plus the payload to render and any enrichment."""

    token: QRToken
    payload: QRPayload
    participant: ParticipantInfo
    session: SessionInfo | None = None


def normalize_session(
    session_id: str | None,
    session_kind: SessionKind | None,
) -> tuple[str, SessionKind]:
    """Resolve the (session_id, kind) pair a token will be bound to.

    No session (or the sentinel) means an identity token. A real session
    without a kind defaults to training.
    """
    if session_id is None or session_id == "" or session_id == IDENTITY_SESSION_ID:
        if session_kind not in (None, SessionKind.IDENTITY):
            raise SessionKindInvalidError(
                f"Session kind '{session_kind.value}' requires a session id"
            )
        return IDENTITY_SESSION_ID, SessionKind.IDENTITY

    if session_kind == SessionKind.IDENTITY:
        raise SessionKindInvalidError()
    return session_id, session_kind or DEFAULT_SESSION_KIND


class QRIssuer:
    """Creates signed, stored, audited QR tokens."""

    def __init__(
        self,
        db: AsyncSession,
        signer: QRSigner,
        participants: ParticipantDirectory,
        sessions: SessionDirectory,
        clock: Clock,
    ):
        self.db = db
        self.signer = signer
        self.participants = participants
        self.sessions = sessions
        self.clock = clock
        self.store = TokenStore(db)
        self.audit = QRAuditService(db, clock)

    async def issue(
        self,
        participant_id: str,
        session_id: str | None = None,
        session_kind: SessionKind | None = None,
        context: AuditContext | None = None,
    ) -> IssuedQRToken:
        """
        Issue a new Active token for a participant.

        Args:
            participant_id: Participant the token identifies
            session_id: Session to bind to; omitted for an identity token
            session_kind: Kind of the session
            context: Requesting actor and request details

        Returns:
            IssuedQRToken with the stored row and the payload to render

        Raises:
            ParticipantNotFoundError: participant does not resolve
            SessionKindInvalidError: identity kind paired with a real session
        """
        context = context or AuditContext()
        session_id, session_kind = normalize_session(session_id, session_kind)

        participant = await self.participants.resolve_participant(participant_id)
        if participant is None:
            raise ParticipantNotFoundError(f"Participant {participant_id} not found")

        session = None
        if session_id != IDENTITY_SESSION_ID:
            # Enrichment only; an unknown session does not block issuance
            session = await self.sessions.resolve_session(session_id, session_kind)

        issued_at_millis = self.clock.now_millis()
        signature = self.signer.sign(participant_id, session_id, issued_at_millis)
        expires_at = from_millis(issued_at_millis) + timedelta(minutes=settings.QR_TOKEN_TTL_MINUTES)

        token = QRToken(
            participant_id=participant_id,
            session_id=session_id,
            session_kind=session_kind,
            signature=signature,
            key_version=self.signer.current_key_version,
            issued_at_millis=issued_at_millis,
            expires_at=expires_at,
            state=TokenState.ACTIVE,
            created_by=context.actor_id,
        )
        await self.store.insert(token)

        await self.audit.log(
            action=QRAuditAction.GENERATE,
            context=context,
            participant_id=participant_id,
            session_id=session_id,
            session_kind=session_kind,
            token_id=token.id,
            metadata=GenerateMetadata(
                key_version=token.key_version,
                expires_at=expires_at,
                session_title=session.title if session else None,
            ),
        )
        await self.db.commit()

        track_token_issued(session_kind.value)
        logger.info(
            "QR token issued",
            extra={
                "event_type": "checkin.token.generate",
                "token_id": token.id,
                "participant_id": participant_id,
                "session_id": session_id,
                "session_kind": session_kind.value,
                "actor_id": context.actor_id,
            },
        )

        payload = QRPayload(
            participant_id=participant_id,
            session_id=session_id,
            session_kind=session_kind,
            issued_at_millis=issued_at_millis,
            signature=signature,
        )
        return IssuedQRToken(token=token, payload=payload, participant=participant, session=session)
