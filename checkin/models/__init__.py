"""Database models for the QR check-in service."""

from checkin.models.attendance import AttendanceRecord, AttendanceSource, AttendanceStatus
from checkin.models.audit import QRAuditAction, QRAuditEntry
from checkin.models.qr_token import IDENTITY_SESSION_ID, QRToken, SessionKind, TokenState

__all__ = [
    # Tokens
    "QRToken",
    "TokenState",
    "SessionKind",
    "IDENTITY_SESSION_ID",
    # Attendance
    "AttendanceRecord",
    "AttendanceStatus",
    "AttendanceSource",
    # Audit
    "QRAuditEntry",
    "QRAuditAction",
]
