"""
Attendance ledger and manual override.

QR redemptions and supervisor overrides both land in the same row per
(participant, session, kind) through the dialect's INSERT ... ON CONFLICT
DO UPDATE, so concurrent writers converge on one record and the latest
write wins on status.
"""

import asyncio
import logging
from collections.abc import Awaitable
from datetime import datetime
from typing import TypeVar
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from checkin.audit.service import AuditContext, QRAuditService
from checkin.core.clock import Clock
from checkin.core.config import settings
from checkin.core.metrics import track_manual_attendance
from checkin.models.attendance import AttendanceRecord, AttendanceSource, AttendanceStatus
from checkin.models.audit import QRAuditAction
from checkin.models.qr_token import IDENTITY_SESSION_ID, SessionKind
from checkin.schemas.audit import ManualAttendanceMetadata
from checkin.schemas.qr import AttendanceSummary
from checkin.services.errors import SessionKindInvalidError, StorageTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}

TUPLE_COLUMNS = ["participant_id", "session_id", "session_kind"]


def summarize(records: list[AttendanceRecord]) -> AttendanceSummary:
    """Count records by status; attendance_rate counts present and late."""
    counts = {status: 0 for status in AttendanceStatus}
    for record in records:
        counts[record.status] += 1

    total = len(records)
    attended = counts[AttendanceStatus.PRESENT] + counts[AttendanceStatus.LATE]
    return AttendanceSummary(
        present=counts[AttendanceStatus.PRESENT],
        absent=counts[AttendanceStatus.ABSENT],
        late=counts[AttendanceStatus.LATE],
        excused=counts[AttendanceStatus.EXCUSED],
        total=total,
        attendance_rate=round(attended * 100 / total) if total else 0,
    )


class AttendanceService:
    """Writes and reads the attendance ledger."""

    def __init__(self, db: AsyncSession, clock: Clock, timeout_seconds: float | None = None):
        self.db = db
        self.clock = clock
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.STORAGE_TIMEOUT_SECONDS
        )
        self.audit = QRAuditService(db, clock)

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise StorageTimeoutError(reason="timeout") from exc

    def _insert(self):
        dialect = self.db.get_bind().dialect.name
        try:
            return _INSERT_BY_DIALECT[dialect]
        except KeyError:
            raise RuntimeError(f"Attendance upsert is not supported on {dialect}") from None

    async def get_record(
        self,
        participant_id: str,
        session_id: str,
        session_kind: SessionKind,
    ) -> AttendanceRecord | None:
        result = await self._bounded(
            self.db.execute(
                select(AttendanceRecord)
                .where(
                    AttendanceRecord.participant_id == participant_id,
                    AttendanceRecord.session_id == session_id,
                    AttendanceRecord.session_kind == session_kind,
                )
                .execution_options(populate_existing=True)
            )
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        participant_id: str,
        session_id: str,
        session_kind: SessionKind,
        status: AttendanceStatus,
        source: AttendanceSource,
        recorded_by: str | None,
        check_in_time: datetime | None = None,
        location: str | None = None,
        notes: str | None = None,
        token_id: str | None = None,
    ) -> AttendanceRecord:
        """
        Insert or update the record for a tuple in one statement.

        Status, source, check-in time and recorder are overwritten; location,
        notes and token_id keep their previous value when the new write has
        none.
        """
        now = self.clock.now()
        insert = self._insert()

        stmt = insert(AttendanceRecord).values(
            id=str(uuid4()),
            participant_id=participant_id,
            session_id=session_id,
            session_kind=session_kind,
            status=status,
            source=source,
            check_in_time=check_in_time or now,
            recorded_by=recorded_by,
            location=location,
            notes=notes,
            token_id=token_id,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=TUPLE_COLUMNS,
            set_={
                "status": stmt.excluded.status,
                "source": stmt.excluded.source,
                "check_in_time": stmt.excluded.check_in_time,
                "recorded_by": stmt.excluded.recorded_by,
                "location": func.coalesce(stmt.excluded.location, AttendanceRecord.location),
                "notes": func.coalesce(stmt.excluded.notes, AttendanceRecord.notes),
                "token_id": func.coalesce(stmt.excluded.token_id, AttendanceRecord.token_id),
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self._bounded(self.db.execute(stmt))

        return await self.get_record(participant_id, session_id, session_kind)

    async def set_attendance(
        self,
        participant_id: str,
        session_id: str,
        session_kind: SessionKind,
        status: AttendanceStatus,
        context: AuditContext,
        notes: str | None = None,
        location: str | None = None,
    ) -> AttendanceRecord:
        """
        Supervisor override of a participant's attendance.

        Never touches the token store. Commits the record and its
        manual_attendance audit entry together.
        """
        if (session_id == IDENTITY_SESSION_ID) != (session_kind == SessionKind.IDENTITY):
            raise SessionKindInvalidError()

        previous = await self.get_record(participant_id, session_id, session_kind)
        previous_status = previous.status.value if previous else None

        record = await self.upsert(
            participant_id=participant_id,
            session_id=session_id,
            session_kind=session_kind,
            status=status,
            source=AttendanceSource.MANUAL,
            recorded_by=context.actor_id,
            location=location,
            notes=notes,
        )

        await self.audit.log(
            action=QRAuditAction.MANUAL_ATTENDANCE,
            context=context,
            participant_id=participant_id,
            session_id=session_id,
            session_kind=session_kind,
            metadata=ManualAttendanceMetadata(
                status=status.value,
                attendance_id=record.id,
                previous_status=previous_status,
                notes=notes,
                location=location,
            ),
        )
        await self.db.commit()

        track_manual_attendance(status.value)
        logger.info(
            "Manual attendance recorded",
            extra={
                "event_type": "checkin.attendance.manual",
                "attendance_id": record.id,
                "participant_id": participant_id,
                "session_id": session_id,
                "session_kind": session_kind.value,
                "status": status.value,
                "previous_status": previous_status,
                "actor_id": context.actor_id,
            },
        )
        return record

    async def get_session_attendance(
        self,
        session_id: str,
        session_kind: SessionKind,
    ) -> tuple[list[AttendanceRecord], AttendanceSummary]:
        """All records for a session, ordered by participant, with a status summary."""
        result = await self._bounded(
            self.db.execute(
                select(AttendanceRecord)
                .where(
                    AttendanceRecord.session_id == session_id,
                    AttendanceRecord.session_kind == session_kind,
                )
                .order_by(AttendanceRecord.participant_id.asc())
            )
        )
        records = list(result.scalars().all())
        return records, summarize(records)
