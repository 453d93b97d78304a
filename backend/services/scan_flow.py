"""
Interactive per-student attendance sequence.

    awaiting_token -> token_validated -> capturing_face -> verified
                                              |  ^
                                              v  |  (retry in place)
                                            rejected

Every protocol error moves the flow back to a safe state instead of raising:
token/time failures fall back to `awaiting_token` (re-scan), face/location
failures stay in `rejected` with the countdown still running (recapture), and
`not_enrolled` ends the flow with an instruction to enroll. The countdown is
advisory; the server re-checks the time window on every verify call.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Literal, Protocol, Sequence

from backend.config import CAPTURE_WINDOW_SECONDS
from backend.errors import (
    AttendanceError,
    FaceCaptureError,
    FaceMismatch,
    InvalidState,
    NotEnrolled,
    OutOfRange,
)
from backend.services.descriptors import FaceDescriptor
from backend.services.models import ProvisionalMark, Session

logger = logging.getLogger(__name__)

ScanState = Literal[
    "awaiting_token",
    "token_validated",
    "capturing_face",
    "verified",
    "rejected",
    "cancelled",
]

_TRANSITIONS: dict[ScanState, frozenset[ScanState]] = {
    "awaiting_token": frozenset({"token_validated", "cancelled"}),
    "token_validated": frozenset({"capturing_face", "awaiting_token", "cancelled"}),
    "capturing_face": frozenset({"verified", "rejected", "awaiting_token", "cancelled"}),
    "rejected": frozenset({"capturing_face", "awaiting_token", "cancelled"}),
    "verified": frozenset(),
    "cancelled": frozenset(),
}

_RECAPTURE_ERRORS = (FaceMismatch, OutOfRange, FaceCaptureError)


class ScanBackend(Protocol):
    def validate_token(self, token_value: str) -> Session: ...

    def verify_face(
        self,
        session_id: str,
        student_id: str,
        descriptor: FaceDescriptor | Sequence[float],
        lat: float | None = None,
        lng: float | None = None,
        *,
        token_value: str | None = None,
    ) -> ProvisionalMark: ...


class LocalScanBackend:
    """In-process backend: registry validates tokens, engine verifies faces."""

    def __init__(self, registry, engine) -> None:
        self.registry = registry
        self.engine = engine

    def validate_token(self, token_value: str) -> Session:
        return self.registry.validate_token(token_value)

    def verify_face(self, session_id, student_id, descriptor, lat=None, lng=None, *, token_value=None):
        return self.engine.verify_face(session_id, student_id, descriptor, lat, lng, token_value=token_value)


@dataclass(frozen=True)
class ScanOutcome:
    state: ScanState
    event: str
    ok: bool
    action: str | None = None
    reason: str | None = None
    message: str | None = None
    mark: ProvisionalMark | None = None


class IndividualScanFlow:
    def __init__(
        self,
        backend: ScanBackend,
        student_id: str,
        *,
        capture_window_seconds: float = CAPTURE_WINDOW_SECONDS,
        embed: Callable[[Any], FaceDescriptor] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend = backend
        self.student_id = student_id
        self.capture_window_seconds = capture_window_seconds
        self.embed = embed
        self.clock = clock

        self.state: ScanState = "awaiting_token"
        self.session_id: str | None = None
        self.token_value: str | None = None
        self.deadline: float | None = None
        self.mark: ProvisionalMark | None = None
        self.needs_enrollment = False
        self.capture_attempts = 0

    @property
    def is_terminal(self) -> bool:
        return self.state in ("verified", "cancelled") or (self.state == "rejected" and self.needs_enrollment)

    def _move(self, target: ScanState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidState(f"Scan flow cannot go from {self.state} to {target}.")
        self.state = target

    def _reset_to_token(self) -> None:
        self._move("awaiting_token")
        self.session_id = None
        self.token_value = None
        self.deadline = None

    def remaining_seconds(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self.clock())

    # -----------------------------
    # Steps
    # -----------------------------
    def submit_token(self, token_value: str) -> ScanOutcome:
        if self.state != "awaiting_token":
            raise InvalidState(f"Cannot accept a class token while {self.state}.")
        try:
            session = self.backend.validate_token(token_value)
        except AttendanceError as exc:
            return ScanOutcome(self.state, "token_rejected", False, exc.action, exc.code, exc.message)

        self._move("token_validated")
        self.session_id = session.session_id
        self.token_value = token_value
        return ScanOutcome(self.state, "token_validated", True)

    def begin_capture(self) -> ScanOutcome:
        if self.state != "token_validated":
            raise InvalidState(f"Cannot start capture while {self.state}.")
        self._move("capturing_face")
        self.deadline = self.clock() + self.capture_window_seconds
        return ScanOutcome(self.state, "capture_started", True)

    def check_timeout(self) -> ScanOutcome | None:
        """Fall back to `awaiting_token` once the countdown runs out."""
        if self.state not in ("token_validated", "capturing_face", "rejected") or self.needs_enrollment:
            return None
        if self.deadline is None or self.clock() < self.deadline:
            return None
        self._reset_to_token()
        logger.info("scan flow for student %s timed out; re-scan required", self.student_id)
        return ScanOutcome(self.state, "timeout", False, "rescan", "timeout", "Capture window elapsed.")

    def submit_capture(
        self,
        descriptor: FaceDescriptor | Sequence[float],
        lat: float | None = None,
        lng: float | None = None,
    ) -> ScanOutcome:
        if self.state not in ("capturing_face", "rejected") or self.needs_enrollment:
            raise InvalidState(f"Cannot submit a capture while {self.state}.")
        timed_out = self.check_timeout()
        if timed_out is not None:
            return timed_out

        if self.state == "rejected":
            self._move("capturing_face")
        self.capture_attempts += 1
        try:
            mark = self.backend.verify_face(
                self.session_id,
                self.student_id,
                descriptor,
                lat,
                lng,
                token_value=self.token_value,
            )
        except ValueError as exc:
            # malformed descriptor: treat like a bad capture
            self._move("rejected")
            return ScanOutcome(self.state, "rejected", False, "recapture", "invalid_descriptor", str(exc))
        except NotEnrolled as exc:
            self._move("rejected")
            self.needs_enrollment = True
            return ScanOutcome(self.state, "not_enrolled", False, "enroll", exc.code, exc.message)
        except _RECAPTURE_ERRORS as exc:
            self._move("rejected")
            return ScanOutcome(self.state, "rejected", False, "recapture", exc.code, exc.message)
        except AttendanceError as exc:
            self._reset_to_token()
            return ScanOutcome(self.state, "rescan_required", False, "rescan", exc.code, exc.message)

        self._move("verified")
        self.mark = mark
        self.deadline = None
        return ScanOutcome(self.state, "verified", True, mark=mark)

    def submit_image(self, image: Any, lat: float | None = None, lng: float | None = None) -> ScanOutcome:
        if self.embed is None:
            raise InvalidState("No embedding function configured for image captures.")
        if self.state not in ("capturing_face", "rejected") or self.needs_enrollment:
            raise InvalidState(f"Cannot submit a capture while {self.state}.")
        timed_out = self.check_timeout()
        if timed_out is not None:
            return timed_out
        try:
            descriptor = self.embed(image)
        except FaceCaptureError as exc:
            if self.state == "capturing_face":
                self._move("rejected")
            return ScanOutcome(self.state, "rejected", False, "recapture", exc.reason, exc.message)
        return self.submit_capture(descriptor, lat, lng)

    def cancel(self) -> ScanOutcome:
        if self.state == "verified":
            raise InvalidState("Attendance is already verified.")
        if self.state != "cancelled":
            self._move("cancelled")
            self.deadline = None
        return ScanOutcome(self.state, "cancelled", True)
