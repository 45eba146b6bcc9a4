"""API dependencies for dependency injection."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from checkin.audit.service import AuditContext
from checkin.core.clock import Clock, get_clock
from checkin.core.client_ip import get_client_ip
from checkin.core.errors import ErrorCode, ForbiddenError, UnauthorizedError
from checkin.core.secrets import SecretProvider, get_secret_provider
from checkin.core.security import decode_token
from checkin.db.session import get_db
from checkin.integrations.adapters.factory import get_participant_directory, get_session_directory
from checkin.integrations.interfaces.base import ParticipantDirectory, SessionDirectory
from checkin.services.signer import QRSigner

# Security audit logger - separate from general logging for SIEM integration
auth_logger = logging.getLogger("security.auth")

security = HTTPBearer(auto_error=False)


class Role(str, Enum):
    ADMIN = "admin"
    COACH = "coach"
    PLAYER = "player"


SUPERVISOR_ROLES = frozenset({Role.ADMIN, Role.COACH})


@dataclass(frozen=True)
class Actor:
    """Authenticated caller, taken from the bearer token claims."""

    id: str
    role: Role
    participant_id: str | None = None

    @property
    def is_supervisor(self) -> bool:
        return self.role in SUPERVISOR_ROLES

    def is_participant(self, participant_id: str) -> bool:
        return self.participant_id is not None and self.participant_id == participant_id


def _log_auth_failure(
    event_type: str,
    actor: Actor | None,
    resource: str,
    request: Request | None = None,
    extra: dict | None = None,
) -> None:
    """
    Log authentication or authorization failure for security audit.

    These logs should be:
    - Shipped to SIEM for monitoring
    - Alertable for anomaly detection
    """
    log_data = {
        "event": "authorization_failure",
        "event_type": f"security.auth.{event_type}",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "actor_id": actor.id if actor else None,
        "actor_role": actor.role.value if actor else None,
        "resource": resource,
    }

    if request:
        log_data["ip_address"] = get_client_ip(request)
        log_data["user_agent"] = request.headers.get("user-agent")
        log_data["path"] = request.url.path
        log_data["method"] = request.method

    if extra:
        log_data.update(extra)

    auth_logger.warning(
        f"AUTH_FAILURE: {event_type} - actor={log_data['actor_id']} resource={resource}",
        extra={"security_event": log_data, "event_type": log_data["event_type"]},
    )


async def get_current_actor(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> Actor:
    """Decode the bearer token into an Actor."""
    if credentials is None:
        _log_auth_failure("missing_credentials", None, request.url.path, request)
        raise UnauthorizedError()

    payload = decode_token(credentials.credentials)
    if payload is None or payload.get("type") != "access":
        _log_auth_failure("invalid_token", None, request.url.path, request)
        raise UnauthorizedError("Could not validate credentials", code=ErrorCode.TOKEN_INVALID)

    subject = payload.get("sub")
    try:
        role = Role(payload.get("role"))
    except ValueError:
        role = None
    if not subject or role is None:
        _log_auth_failure("invalid_claims", None, request.url.path, request)
        raise UnauthorizedError("Could not validate credentials", code=ErrorCode.TOKEN_INVALID)

    participant_id = payload.get("participant_id")
    actor = Actor(
        id=str(subject),
        role=role,
        participant_id=str(participant_id) if participant_id is not None else None,
    )
    # Read by the rate limiter key function
    request.state.actor = actor
    return actor


async def require_supervisor(
    request: Request,
    actor: Annotated[Actor, Depends(get_current_actor)],
) -> Actor:
    """Admins and coaches only."""
    if not actor.is_supervisor:
        _log_auth_failure("role_required", actor, request.url.path, request, {"required": "supervisor"})
        raise ForbiddenError("Supervisor role required", code=ErrorCode.INSUFFICIENT_ROLE)
    return actor


def ensure_self_or_supervisor(actor: Actor, participant_id: str, request: Request) -> None:
    """Allow supervisors, or a player acting on their own participant id."""
    if actor.is_supervisor or actor.is_participant(participant_id):
        return
    _log_auth_failure(
        "participant_mismatch", actor, request.url.path, request, {"participant_id": participant_id}
    )
    raise ForbiddenError("Not permitted for this participant")


def get_audit_context(
    request: Request,
    actor: Annotated[Actor, Depends(get_current_actor)],
) -> AuditContext:
    """Actor and request details recorded on audit entries."""
    user_agent = request.headers.get("user-agent")
    return AuditContext(
        actor_id=actor.id,
        ip_address=get_client_ip(request),
        user_agent=user_agent[:500] if user_agent else None,
    )


def get_signer(
    secrets: Annotated[SecretProvider, Depends(get_secret_provider)],
) -> QRSigner:
    return QRSigner(secrets)


# Type aliases for commonly used dependencies
DBSession = Annotated[AsyncSession, Depends(get_db)]
CurrentActor = Annotated[Actor, Depends(get_current_actor)]
SupervisorActor = Annotated[Actor, Depends(require_supervisor)]
RequestAudit = Annotated[AuditContext, Depends(get_audit_context)]
ClockDep = Annotated[Clock, Depends(get_clock)]
SignerDep = Annotated[QRSigner, Depends(get_signer)]
Participants = Annotated[ParticipantDirectory, Depends(get_participant_directory)]
Sessions = Annotated[SessionDirectory, Depends(get_session_directory)]
