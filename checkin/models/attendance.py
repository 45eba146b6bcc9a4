"""Attendance ledger model."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Enum as SQLEnum, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from checkin.db.session import Base
from checkin.models.base import TimestampMixin, UTCDateTime, UUIDMixin
from checkin.models.qr_token import SessionKind


class AttendanceStatus(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"
    LATE = "late"
    EXCUSED = "excused"


class AttendanceSource(str, Enum):
    QR = "qr"
    MANUAL = "manual"


class AttendanceRecord(Base, UUIDMixin, TimestampMixin):
    """
    Check-in outcome for one (participant, session, kind) tuple.

    One row per tuple. QR redemptions and manual overrides both upsert
    into the same row; the latest write wins on status.
    """

    __tablename__ = "attendance_records"

    participant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False)
    session_kind: Mapped[SessionKind] = mapped_column(
        SQLEnum(SessionKind, name="session_kind", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )

    status: Mapped[AttendanceStatus] = mapped_column(
        SQLEnum(AttendanceStatus, name="attendance_status", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    source: Mapped[AttendanceSource] = mapped_column(
        SQLEnum(AttendanceSource, name="attendance_source", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    check_in_time: Mapped[datetime | None] = mapped_column(UTCDateTime())
    recorded_by: Mapped[str | None] = mapped_column(String(64))
    location: Mapped[str | None] = mapped_column(String(255))
    notes: Mapped[str | None] = mapped_column(Text)

    # Token behind the most recent QR write, if any
    token_id: Mapped[str | None] = mapped_column(String(36))

    __table_args__ = (
        UniqueConstraint("participant_id", "session_id", "session_kind", name="uq_attendance_tuple"),
        Index("ix_attendance_session", "session_id", "session_kind"),
    )
