import numpy as np

from backend.services.models import RosterStudent

DIM = 128


class FakeClock:
    def __init__(self, start: float = 1_760_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRoster:
    def __init__(self, student_ids=(), schedules=None):
        self.students = [RosterStudent(student_id=sid, name=f"Student {sid}") for sid in student_ids]
        # None: every schedule exists
        self.schedules = schedules

    def has_schedule(self, schedule_id):
        return self.schedules is None or schedule_id in self.schedules

    def get_eligible_students(self, schedule_id, date):
        return list(self.students)


class FakeLedger:
    def __init__(self, fail: bool = False):
        self.writes = []
        self.fail = fail

    def record_attendance(self, schedule_id, date, entries, *, idempotency_key):
        if self.fail:
            raise RuntimeError("ledger unavailable")
        if any(w["key"] == idempotency_key for w in self.writes):
            return False
        self.writes.append(
            {"key": idempotency_key, "schedule_id": schedule_id, "date": date, "entries": list(entries)}
        )
        return True


def reference(index: int) -> np.ndarray:
    """Well-separated enrollment vector; different indexes are ~14 apart."""
    vec = np.zeros(DIM)
    vec[index] = 10.0
    return vec


def near(ref: np.ndarray, distance: float, axis: int = DIM - 1) -> np.ndarray:
    candidate = np.array(ref, dtype=np.float64)
    candidate[axis] += distance
    return candidate
