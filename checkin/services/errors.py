"""Domain errors for the token lifecycle.

Every redemption failure maps to exactly one error class, one stable
error code and one audit action. The redeemer converts these into a
RedemptionResult; they never escape a request as unhandled exceptions.
"""

from checkin.models.audit import QRAuditAction


class CheckinError(Exception):
    """Base class for token lifecycle failures."""

    error_code: str = "CHECKIN_ERROR"
    audit_action: QRAuditAction | None = None
    default_message: str = "Check-in failed"

    def __init__(self, message: str | None = None, reason: str | None = None):
        self.message = message or self.default_message
        # Machine-readable detail recorded in audit metadata
        self.reason = reason
        super().__init__(self.message)


class QRFormatError(CheckinError):
    error_code = "QR_FORMAT_INVALID"
    audit_action = QRAuditAction.SCAN_MALFORMED
    default_message = "Invalid QR code format"


class QRExpiredError(CheckinError):
    error_code = "QR_EXPIRED"
    audit_action = QRAuditAction.SCAN_EXPIRED
    default_message = "QR code has expired. Please generate a new one."


class QRTokenUnavailableError(QRExpiredError):
    """Token was expired administratively before its natural expiry."""

    default_message = "QR code is no longer valid. Please generate a new one."


class QRSignatureInvalidError(CheckinError):
    error_code = "QR_SIGNATURE_INVALID"
    audit_action = QRAuditAction.SCAN_INVALID_SIGNATURE
    default_message = "Invalid QR code signature"


class SessionMismatchError(CheckinError):
    error_code = "QR_SESSION_MISMATCH"
    audit_action = QRAuditAction.SCAN_SESSION_MISMATCH
    default_message = "QR code is not valid for this session."


class QRNotFoundError(CheckinError):
    error_code = "QR_NOT_FOUND"
    audit_action = QRAuditAction.SCAN_NOT_FOUND
    default_message = "QR code not found"


class QRAlreadyUsedError(CheckinError):
    error_code = "QR_ALREADY_USED"
    audit_action = QRAuditAction.SCAN_ALREADY_USED
    default_message = "QR code has already been used"


class ParticipantNotFoundError(CheckinError):
    error_code = "PARTICIPANT_NOT_FOUND"
    default_message = "Participant not found"


class StorageTimeoutError(CheckinError):
    error_code = "STORAGE_TIMEOUT"
    audit_action = QRAuditAction.SCAN_STORAGE_TIMEOUT
    default_message = "Storage did not respond in time. Please retry."


class SessionKindInvalidError(CheckinError):
    """Identity kind paired with a real session, or the reverse."""

    error_code = "SESSION_KIND_INVALID"
    default_message = "Session kind 'identity' is only valid for tokens without a session"
