"""QR token and attendance schemas."""

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator, model_validator

from checkin.models.attendance import AttendanceSource, AttendanceStatus
from checkin.models.qr_token import IDENTITY_SESSION_ID, SessionKind, TokenState
from checkin.schemas.common import BaseSchema

PAYLOAD_VERSION = "1.0"


def _coerce_identifier(v: Any) -> Any:
    """Accept numeric ids from scanners and normalize them to strings."""
    if isinstance(v, bool):
        return v
    if isinstance(v, int):
        return str(v)
    return v


# =============================================================================
# Wire payload
# =============================================================================


class QRPayload(BaseModel):
    """The signed trust envelope rendered into the QR code.

    Serialized with camelCase keys; this is the whole of what a scanner
    presents back at redemption time.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    participant_id: str = Field(alias="participantId", min_length=1, max_length=64)
    session_id: str = Field(default=IDENTITY_SESSION_ID, alias="sessionId", min_length=1, max_length=64)
    session_kind: SessionKind = Field(default=SessionKind.IDENTITY, alias="sessionKind")
    issued_at_millis: StrictInt = Field(alias="timestamp", ge=0)
    signature: str = Field(min_length=1, max_length=256)
    version: str = PAYLOAD_VERSION

    @field_validator("participant_id", "session_id", mode="before")
    @classmethod
    def coerce_ids(cls, v: Any) -> Any:
        return _coerce_identifier(v)

    @model_validator(mode="after")
    def check_identity_binding(self) -> "QRPayload":
        is_sentinel = self.session_id == IDENTITY_SESSION_ID
        if is_sentinel != (self.session_kind == SessionKind.IDENTITY):
            raise ValueError("sessionKind must be 'identity' exactly when sessionId is the identity sentinel")
        return self

    def to_qr_data(self) -> str:
        """Compact JSON string to render as the QR code."""
        return json.dumps(self.model_dump(by_alias=True, mode="json"), separators=(",", ":"))


# =============================================================================
# Directory enrichment
# =============================================================================


class ParticipantResponse(BaseModel):
    participant_id: str
    display_name: str
    group_affiliation: str | None = None


class SessionResponse(BaseModel):
    session_id: str
    session_kind: SessionKind
    title: str
    scheduled_at: datetime | None = None
    location: str | None = None


# =============================================================================
# Issuance
# =============================================================================


class IssuedToken(BaseModel):
    """Token details returned to the client for rendering."""

    token_id: str
    data: str  # compact JSON payload to encode in the QR image
    participant_id: str
    session_id: str
    session_kind: SessionKind
    timestamp: int
    signature: str
    expires_at: datetime
    version: str = PAYLOAD_VERSION


class IssueResponse(BaseModel):
    success: bool = True
    qr_code: IssuedToken
    participant: ParticipantResponse
    session: SessionResponse | None = None


# =============================================================================
# Redemption
# =============================================================================


class ScanRequest(BaseModel):
    """Scanner submission: raw QR data plus the session being checked in."""

    qr_data: str | dict[str, Any]
    session_id: str | None = Field(default=None, max_length=64)
    location: str | None = Field(default=None, max_length=255)

    @field_validator("session_id", mode="before")
    @classmethod
    def coerce_session_id(cls, v: Any) -> Any:
        # Scanners that have no session selected send an empty string
        if isinstance(v, str) and not v.strip():
            return None
        return _coerce_identifier(v)


class AttendanceRecordResponse(BaseSchema):
    id: str
    participant_id: str
    session_id: str
    session_kind: SessionKind
    status: AttendanceStatus
    source: AttendanceSource
    check_in_time: datetime | None = None
    recorded_by: str | None = None
    location: str | None = None
    notes: str | None = None


class ScanResponse(BaseModel):
    success: bool
    message: str
    token_id: str | None = None
    attendance: AttendanceRecordResponse | None = None
    participant: ParticipantResponse | None = None
    warnings: list[str] = Field(default_factory=list)


# =============================================================================
# Administrative expire
# =============================================================================


class ExpireResponse(BaseModel):
    success: bool = True
    token_id: str
    state: TokenState


# =============================================================================
# Manual attendance and session views
# =============================================================================


class ManualAttendanceRequest(BaseModel):
    participant_id: str = Field(min_length=1, max_length=64)
    session_id: str = Field(min_length=1, max_length=64)
    session_kind: SessionKind
    status: AttendanceStatus
    notes: str | None = Field(default=None, max_length=2000)
    location: str | None = Field(default=None, max_length=255)

    @field_validator("participant_id", "session_id", mode="before")
    @classmethod
    def coerce_ids(cls, v: Any) -> Any:
        return _coerce_identifier(v)


class AttendanceSummary(BaseModel):
    present: int = 0
    absent: int = 0
    late: int = 0
    excused: int = 0
    total: int = 0
    attendance_rate: int = 0  # percent of records that are present or late


class SessionAttendanceResponse(BaseModel):
    session_id: str
    session_kind: SessionKind
    session: SessionResponse | None = None
    attendance: list[AttendanceRecordResponse]
    summary: AttendanceSummary
