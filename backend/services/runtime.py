import threading
from dataclasses import dataclass
from typing import Any

from backend.services.enrollment import EnrollmentStore
from backend.services.ledger import SqliteAttendanceLedger, SqliteRoster
from backend.services.reconciliation import BulkReconciliationFlow
from backend.services.sessions import SessionRegistry
from backend.services.verification import VerificationEngine

# -----------------------------
# Process-wide service graph
# -----------------------------
_RUNTIME_LOCK = threading.Lock()
_RUNTIME: "Runtime | None" = None


@dataclass
class Runtime:
    registry: SessionRegistry
    enrollment: EnrollmentStore
    engine: VerificationEngine
    reconciliation: BulkReconciliationFlow
    face_model: Any


def build_runtime(*, face_model: Any = None, **registry_kwargs: Any) -> Runtime:
    if face_model is None:
        from backend.recognizer import HaarLbpFaceModel

        face_model = HaarLbpFaceModel()

    registry_kwargs.setdefault("roster", SqliteRoster())
    registry_kwargs.setdefault("ledger", SqliteAttendanceLedger())
    registry = SessionRegistry(**registry_kwargs)
    enrollment = EnrollmentStore()
    return Runtime(
        registry=registry,
        enrollment=enrollment,
        engine=VerificationEngine(registry, enrollment),
        reconciliation=BulkReconciliationFlow(registry, enrollment, face_model),
        face_model=face_model,
    )


def get_runtime() -> Runtime:
    global _RUNTIME
    with _RUNTIME_LOCK:
        if _RUNTIME is None:
            _RUNTIME = build_runtime()
        return _RUNTIME


def reset_runtime(**kwargs: Any) -> Runtime:
    """Replace the process-wide services (tests, admin reset)."""
    global _RUNTIME
    with _RUNTIME_LOCK:
        _RUNTIME = build_runtime(**kwargs)
        return _RUNTIME
