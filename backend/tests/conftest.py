import numpy as np
import pytest

import backend.config as config
import database.db as db
from backend.services.enrollment import EnrollmentStore
from backend.services.sessions import SessionRegistry
from backend.services.verification import VerificationEngine
from backend.tests.helpers import DIM, FakeClock, FakeLedger, FakeRoster, near, reference


@pytest.fixture()
def db_path(tmp_path, monkeypatch):
    test_db = tmp_path / "rollcall_test.db"
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)
    db.create_tables()
    return test_db


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def roster():
    return FakeRoster(["S1", "S7", "S42"])


@pytest.fixture()
def ledger():
    return FakeLedger()


@pytest.fixture()
def registry(roster, ledger, clock):
    return SessionRegistry(
        roster=roster,
        ledger=ledger,
        clock=clock,
        default_ttl_seconds=3600,
        grace_seconds=900,
    )


@pytest.fixture()
def enrollment(db_path):
    return EnrollmentStore(minimum=3, target=5)


@pytest.fixture()
def enroll(enrollment):
    """Register a student with three samples around `reference(index)`."""

    def _enroll(student_id: str, index: int, samples: int = 3) -> np.ndarray:
        ref = reference(index)
        if not db.get_student(student_id):
            db.add_student(student_id, f"Student {student_id}")
        for i in range(samples):
            # first sample is the exact reference; later ones drift on a spare axis
            enrollment.append(student_id, near(ref, 0.001 * i, axis=DIM - 8))
        return ref

    return _enroll


@pytest.fixture()
def engine(registry, enrollment):
    return VerificationEngine(registry, enrollment, threshold=0.6, capture_window_seconds=60)
