"""Pydantic schemas for API validation."""

from checkin.schemas.audit import (
    AuditEntryListResponse,
    AuditEntryResponse,
    AuditMetadata,
    ExpireMetadata,
    GenerateMetadata,
    ManualAttendanceMetadata,
    ScanFailureMetadata,
    ScanSuccessMetadata,
)
from checkin.schemas.common import HealthResponse
from checkin.schemas.qr import (
    AttendanceRecordResponse,
    AttendanceSummary,
    ExpireResponse,
    IssueResponse,
    ManualAttendanceRequest,
    QRPayload,
    ScanRequest,
    ScanResponse,
    SessionAttendanceResponse,
)

__all__ = [
    "QRPayload",
    "IssueResponse",
    "ScanRequest",
    "ScanResponse",
    "ExpireResponse",
    "ManualAttendanceRequest",
    "AttendanceRecordResponse",
    "AttendanceSummary",
    "SessionAttendanceResponse",
    "AuditMetadata",
    "GenerateMetadata",
    "ScanSuccessMetadata",
    "ScanFailureMetadata",
    "ExpireMetadata",
    "ManualAttendanceMetadata",
    "AuditEntryResponse",
    "AuditEntryListResponse",
    "HealthResponse",
]
