"""QR check-in endpoints.

Issuance, redemption, administrative expiry, manual attendance and
the audit trail. Token lifecycle failures are raised as CheckinError and
rendered by the standardized error envelope handler.
"""

from fastapi import APIRouter, Query, Request

from checkin.api.deps import (
    ClockDep,
    CurrentActor,
    DBSession,
    Participants,
    RequestAudit,
    Sessions,
    SignerDep,
    SupervisorActor,
    ensure_self_or_supervisor,
)
from checkin.audit.service import QRAuditService, clamp_page_size
from checkin.core.config import settings
from checkin.core.rate_limit import RateLimits, limiter
from checkin.integrations.interfaces.base import ParticipantInfo, SessionInfo
from checkin.models.audit import QRAuditAction, QRAuditEntry
from checkin.models.qr_token import SessionKind
from checkin.schemas.audit import AuditEntryListResponse, AuditEntryResponse, parse_audit_metadata
from checkin.schemas.qr import (
    AttendanceRecordResponse,
    ExpireResponse,
    IssuedToken,
    IssueResponse,
    ManualAttendanceRequest,
    ParticipantResponse,
    ScanRequest,
    ScanResponse,
    SessionAttendanceResponse,
    SessionResponse,
)
from checkin.services.attendance import AttendanceService
from checkin.services.expiry import TokenExpirer
from checkin.services.issuer import QRIssuer
from checkin.services.redeemer import QRRedeemer

router = APIRouter()


def _participant_response(participant: ParticipantInfo | None) -> ParticipantResponse | None:
    if participant is None:
        return None
    return ParticipantResponse.model_validate(participant, from_attributes=True)


def _session_response(session: SessionInfo | None) -> SessionResponse | None:
    if session is None:
        return None
    return SessionResponse.model_validate(session, from_attributes=True)


def _audit_entry_response(entry: QRAuditEntry) -> AuditEntryResponse:
    return AuditEntryResponse(
        id=entry.id,
        timestamp=entry.timestamp,
        participant_id=entry.participant_id,
        session_id=entry.session_id,
        session_kind=entry.session_kind,
        token_id=entry.token_id,
        action=entry.action,
        actor_id=entry.actor_id,
        ip_address=entry.ip_address,
        user_agent=entry.user_agent,
        metadata=parse_audit_metadata(entry.extra_data),
    )


# =============================================================================
# Issuance
# =============================================================================


@router.get("/generate/{participant_id}", response_model=IssueResponse)
@limiter.limit(RateLimits.GENERATE)
async def generate_qr_token(
    request: Request,
    participant_id: str,
    db: DBSession,
    actor: CurrentActor,
    audit_context: RequestAudit,
    signer: SignerDep,
    participants: Participants,
    sessions: Sessions,
    clock: ClockDep,
    session_id: str | None = Query(None, max_length=64),
    session_kind: SessionKind | None = Query(None),
):
    """
    Issue a signed QR token for a participant.

    Players may request their own code; coaches and admins may request
    any participant's. Omit session_id for an identity code.
    """
    ensure_self_or_supervisor(actor, participant_id, request)

    issuer = QRIssuer(db, signer, participants, sessions, clock)
    issued = await issuer.issue(
        participant_id=participant_id,
        session_id=session_id,
        session_kind=session_kind,
        context=audit_context,
    )

    payload = issued.payload
    return IssueResponse(
        qr_code=IssuedToken(
            token_id=issued.token.id,
            data=payload.to_qr_data(),
            participant_id=payload.participant_id,
            session_id=payload.session_id,
            session_kind=payload.session_kind,
            timestamp=payload.issued_at_millis,
            signature=payload.signature,
            expires_at=issued.token.expires_at,
            version=payload.version,
        ),
        participant=_participant_response(issued.participant),
        session=_session_response(issued.session),
    )


# =============================================================================
# Redemption
# =============================================================================


@router.post("/scan", response_model=ScanResponse)
@limiter.limit(RateLimits.SCAN)
async def scan_qr_token(
    request: Request,
    data: ScanRequest,
    db: DBSession,
    actor: SupervisorActor,
    audit_context: RequestAudit,
    signer: SignerDep,
    participants: Participants,
    clock: ClockDep,
):
    """
    Redeem a presented QR token and record attendance.

    Exactly one scan of a token succeeds. Every attempt is audited.
    """
    redeemer = QRRedeemer(db, signer, participants, clock)
    result = await redeemer.redeem(
        data.qr_data,
        claimed_session_id=data.session_id,
        location=data.location,
        context=audit_context,
    )

    if not result.success:
        raise result.error

    return ScanResponse(
        success=True,
        message=result.message,
        token_id=result.token_id,
        attendance=AttendanceRecordResponse.model_validate(result.attendance),
        participant=_participant_response(result.participant),
        warnings=result.warnings,
    )


# =============================================================================
# Administrative expire
# =============================================================================


@router.post("/tokens/{token_id}/expire", response_model=ExpireResponse)
async def expire_qr_token(
    token_id: str,
    db: DBSession,
    actor: SupervisorActor,
    audit_context: RequestAudit,
    clock: ClockDep,
):
    """Expire an Active token before its natural expiry."""
    expirer = TokenExpirer(db, clock)
    state = await expirer.expire(token_id, audit_context)
    return ExpireResponse(token_id=token_id, state=state)


# =============================================================================
# Attendance
# =============================================================================


@router.post("/attendance/manual", response_model=AttendanceRecordResponse)
async def set_manual_attendance(
    data: ManualAttendanceRequest,
    db: DBSession,
    actor: SupervisorActor,
    audit_context: RequestAudit,
    clock: ClockDep,
):
    """Record or override a participant's attendance without a token."""
    service = AttendanceService(db, clock)
    record = await service.set_attendance(
        participant_id=data.participant_id,
        session_id=data.session_id,
        session_kind=data.session_kind,
        status=data.status,
        context=audit_context,
        notes=data.notes,
        location=data.location,
    )
    return AttendanceRecordResponse.model_validate(record)


@router.get("/attendance/{session_id}", response_model=SessionAttendanceResponse)
async def get_session_attendance(
    session_id: str,
    db: DBSession,
    actor: SupervisorActor,
    sessions: Sessions,
    clock: ClockDep,
    session_kind: SessionKind = Query(SessionKind.TRAINING),
):
    """List attendance for a session with a status summary."""
    service = AttendanceService(db, clock)
    records, summary = await service.get_session_attendance(session_id, session_kind)
    session = await sessions.resolve_session(session_id, session_kind)

    return SessionAttendanceResponse(
        session_id=session_id,
        session_kind=session_kind,
        session=_session_response(session),
        attendance=[AttendanceRecordResponse.model_validate(r) for r in records],
        summary=summary,
    )


# =============================================================================
# Audit
# =============================================================================


@router.get("/audit/{participant_id}", response_model=AuditEntryListResponse)
@limiter.limit(RateLimits.STANDARD)
async def get_participant_audit(
    request: Request,
    participant_id: str,
    db: DBSession,
    actor: CurrentActor,
    clock: ClockDep,
    limit: int | None = Query(None),
    offset: int = Query(0, le=settings.AUDIT_OFFSET_MAX),
    action: QRAuditAction | None = Query(None),
):
    """
    Audit history for a participant, newest first.

    limit is clamped to the configured page size range; a negative offset
    reads from the start and one above AUDIT_OFFSET_MAX is rejected.
    """
    ensure_self_or_supervisor(actor, participant_id, request)

    service = QRAuditService(db, clock)
    entries, has_more = await service.get_participant_audit(
        participant_id, limit=limit, offset=offset, action=action
    )

    return AuditEntryListResponse(
        participant_id=participant_id,
        items=[_audit_entry_response(e) for e in entries],
        limit=clamp_page_size(limit),
        offset=max(0, offset),
        has_more=has_more,
    )
