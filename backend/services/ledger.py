import logging
from typing import Protocol, Sequence

from backend.services.models import RosterEntry, RosterStudent
from database.db import LedgerRow, get_eligible_students, get_schedule, record_attendance

logger = logging.getLogger(__name__)


class RosterQuery(Protocol):
    def has_schedule(self, schedule_id: int) -> bool: ...

    def get_eligible_students(self, schedule_id: int, date: str) -> list[RosterStudent]: ...


class AttendanceLedger(Protocol):
    def record_attendance(
        self,
        schedule_id: int,
        date: str,
        entries: Sequence[RosterEntry],
        *,
        idempotency_key: str,
    ) -> bool: ...


class SqliteRoster:
    """Roster query backed by the `students`/`timetable` tables."""

    def has_schedule(self, schedule_id: int) -> bool:
        return get_schedule(schedule_id) is not None

    def get_eligible_students(self, schedule_id: int, date: str) -> list[RosterStudent]:
        return [
            RosterStudent(
                student_id=str(r[0]),
                name=r[1],
                roll_number=r[2],
                department_id=r[3],
                section_id=r[4],
            )
            for r in get_eligible_students(schedule_id)
        ]


class SqliteAttendanceLedger:
    def record_attendance(
        self,
        schedule_id: int,
        date: str,
        entries: Sequence[RosterEntry],
        *,
        idempotency_key: str,
    ) -> bool:
        rows: list[LedgerRow] = [
            {
                "student_id": e.student_id,
                "status": e.status,
                "verified_by_scan": e.verified_by_scan,
                "verified_by_photo": e.verified_by_photo,
                "scan_distance": e.scan_distance,
                "photo_distance": e.photo_distance,
                "manually_marked": e.manually_marked,
            }
            for e in entries
        ]
        written = record_attendance(idempotency_key, schedule_id, date, rows)
        if not written:
            logger.info("ledger already holds session %s; write skipped", idempotency_key)
        return written
