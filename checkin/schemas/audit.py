"""Audit schemas.

Audit metadata is a tagged union keyed on ``kind``: one shape per kind of
operation, each with an open ``extra`` mapping for forward-compatible
fields.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from checkin.models.audit import QRAuditAction
from checkin.schemas.common import BaseSchema


class _AuditMetadataBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    extra: dict[str, Any] = Field(default_factory=dict)


class GenerateMetadata(_AuditMetadataBase):
    kind: Literal["generate"] = "generate"
    key_version: int
    expires_at: datetime
    session_title: str | None = None


class ScanSuccessMetadata(_AuditMetadataBase):
    kind: Literal["scan_success"] = "scan_success"
    scanner_id: str
    attendance_id: str
    key_version: int
    location: str | None = None
    claimed_session_id: str | None = None
    # Directory lookup failed after the token was consumed
    participant_missing: bool = False


class ScanFailureMetadata(_AuditMetadataBase):
    kind: Literal["scan_failure"] = "scan_failure"
    scanner_id: str
    error_code: str
    reason: str | None = None
    claimed_session_id: str | None = None


class ExpireMetadata(_AuditMetadataBase):
    kind: Literal["expire"] = "expire"
    found: bool
    prior_state: str | None = None


class ManualAttendanceMetadata(_AuditMetadataBase):
    kind: Literal["manual_attendance"] = "manual_attendance"
    status: str
    attendance_id: str
    previous_status: str | None = None
    notes: str | None = None
    location: str | None = None


AuditMetadata = Annotated[
    Union[
        GenerateMetadata,
        ScanSuccessMetadata,
        ScanFailureMetadata,
        ExpireMetadata,
        ManualAttendanceMetadata,
    ],
    Field(discriminator="kind"),
]

audit_metadata_adapter: TypeAdapter = TypeAdapter(AuditMetadata)


def parse_audit_metadata(data: dict[str, Any] | None) -> AuditMetadata | None:
    """Load stored metadata back into its typed shape."""
    if not data:
        return None
    return audit_metadata_adapter.validate_python(data)


class AuditEntryResponse(BaseSchema):
    """Audit entry response schema."""

    id: str
    timestamp: datetime
    participant_id: str | None = None
    session_id: str | None = None
    session_kind: str | None = None
    token_id: str | None = None
    action: QRAuditAction
    actor_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    metadata: AuditMetadata | None = None


class AuditEntryListResponse(BaseModel):
    """Page of audit entries, newest first."""

    participant_id: str
    items: list[AuditEntryResponse]
    limit: int
    offset: int
    has_more: bool
