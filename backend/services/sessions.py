import logging
import threading
import time
import uuid
from datetime import datetime
from typing import Callable, Mapping, Sequence

from backend.config import (
    CAPTURE_WINDOW_SECONDS,
    SESSION_GRACE_SECONDS,
    SESSION_RETENTION_SECONDS,
    SESSION_TTL_SECONDS,
)
from backend.errors import (
    ConflictError,
    InvalidState,
    InvalidToken,
    NotFound,
    SessionNotActive,
    TokenExpired,
)
from backend.services.geo import Geofence
from backend.services.ledger import AttendanceLedger, RosterQuery
from backend.services.models import (
    AttendanceMark,
    ClassToken,
    FinalizeResult,
    PhotoMatchResult,
    ProvisionalMark,
    ScanAttempt,
    Session,
    SessionStatus,
)
from backend.services.reconciliation import merge_attendance, summarize
from backend.services.tokens import TokenIssuer

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    "open": frozenset({"awaiting_photo", "finalized", "expired"}),
    "awaiting_photo": frozenset({"finalized", "expired"}),
    "finalized": frozenset(),
    "expired": frozenset(),
}


def effective_status(session: Session, now: float) -> SessionStatus:
    """Status with TTL applied, without mutating the session."""
    if session.is_live and now >= session.expires_at:
        return "expired"
    return session.status


class SessionRegistry:
    """
    Process-wide authority over attendance sessions.

    All session state lives behind one lock: every mutation re-checks the
    session's status under that lock, so a mark can never land after
    finalize/expire, and a rotated token can never validate again.
    """

    def __init__(
        self,
        *,
        roster: RosterQuery,
        ledger: AttendanceLedger,
        issuer: TokenIssuer | None = None,
        clock: Callable[[], float] = time.time,
        default_ttl_seconds: int = SESSION_TTL_SECONDS,
        grace_seconds: int = SESSION_GRACE_SECONDS,
        capture_window_seconds: int = CAPTURE_WINDOW_SECONDS,
        retention_seconds: int = SESSION_RETENTION_SECONDS,
    ) -> None:
        self.roster = roster
        self.ledger = ledger
        self.issuer = issuer or TokenIssuer()
        self.clock = clock
        self.default_ttl_seconds = default_ttl_seconds
        self.grace_seconds = grace_seconds
        self.capture_window_seconds = capture_window_seconds
        self.retention_seconds = retention_seconds

        self._lock = threading.RLock()
        self._sessions: dict[str, Session] = {}
        self._live_by_schedule: dict[int, str] = {}
        # current token value -> session id; one entry per live session
        self._token_index: dict[str, str] = {}
        # session id -> {rotated-out token value: superseded_at}
        self._superseded: dict[str, dict[str, float]] = {}

    # -----------------------------
    # Internal helpers (lock held)
    # -----------------------------
    def _require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFound("Session not found.", session_id=session_id)
        return session

    def _transition(self, session: Session, target: SessionStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[session.status]:
            raise InvalidState(
                f"Session is {session.status}; cannot become {target}.",
                session_id=session.session_id,
                status=session.status,
            )
        previous = session.status
        session.status = target
        if not session.is_live:
            if self._live_by_schedule.get(session.schedule_id) == session.session_id:
                self._live_by_schedule.pop(session.schedule_id, None)
            self._token_index.pop(session.current_token.token_value, None)
            self._superseded.pop(session.session_id, None)
            session.ended_at = self.clock()
        logger.info("session %s: %s -> %s", session.session_id, previous, target)

    def _expire_if_due(self, session: Session, now: float) -> None:
        if session.is_live and effective_status(session, now) == "expired":
            self._transition(session, "expired")
            session.ended_at = session.expires_at

    def _prune(self, now: float) -> None:
        for session in list(self._sessions.values()):
            self._expire_if_due(session, now)
        stale = [
            sid
            for sid, s in self._sessions.items()
            if s.ended_at is not None and now - s.ended_at > self.retention_seconds
        ]
        for sid in stale:
            self._sessions.pop(sid, None)
        if stale:
            logger.info("dropped %d ended sessions from memory", len(stale))

    def _require_live(self, session_id: str, now: float) -> Session:
        session = self._require(session_id)
        self._expire_if_due(session, now)
        if not session.is_live:
            raise SessionNotActive(
                f"Session is {session.status}.",
                session_id=session_id,
                status=session.status,
            )
        return session

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def open_session(
        self,
        schedule_id: int,
        ttl_seconds: int | None = None,
        geofence: Geofence | None = None,
        *,
        force_new: bool = False,
        class_date: str | None = None,
    ) -> Session:
        ttl = int(ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds)
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive.")
        if not self.roster.has_schedule(schedule_id):
            raise NotFound("Schedule not found.", schedule_id=schedule_id)

        with self._lock:
            now = self.clock()
            self._prune(now)
            existing_id = self._live_by_schedule.get(schedule_id)
            if existing_id is not None:
                existing = self._sessions[existing_id]
                self._expire_if_due(existing, now)
                if existing.is_live:
                    if not force_new:
                        raise ConflictError(
                            "An open session already exists for this schedule.",
                            schedule_id=schedule_id,
                            session_id=existing_id,
                        )
                    self._transition(existing, "expired")

            session_id = str(uuid.uuid4())
            token = self.issuer.mint(session_id, now=now)
            session = Session(
                session_id=session_id,
                schedule_id=schedule_id,
                class_date=class_date or datetime.fromtimestamp(now).date().isoformat(),
                created_at=now,
                expires_at=now + ttl + self.grace_seconds,
                status="open",
                current_token=token,
                geofence=geofence,
            )
            self._sessions[session_id] = session
            self._live_by_schedule[schedule_id] = session_id
            self._token_index[token.token_value] = session_id
            logger.info("session %s opened for schedule %s", session_id, schedule_id)
            return session.snapshot()

    def rotate_token(self, session_id: str) -> ClassToken:
        with self._lock:
            now = self.clock()
            session = self._require_live(session_id, now)
            token = self.issuer.mint(session_id, now=now)
            # swap the single current-token pointer; the old value no longer validates
            old_value = session.current_token.token_value
            self._token_index.pop(old_value, None)
            self._token_index[token.token_value] = session_id
            superseded = self._superseded.setdefault(session_id, {})
            for value, at in list(superseded.items()):
                if now - at >= self.capture_window_seconds:
                    del superseded[value]
            superseded[old_value] = now
            session.current_token = token
            logger.info("session %s: class token rotated", session_id)
            return token

    def get_session(self, session_id: str, *, include_expired: bool = False) -> Session:
        with self._lock:
            session = self._require(session_id)
            if not include_expired and effective_status(session, self.clock()) == "expired":
                raise NotFound("Session has expired.", session_id=session_id)
            return session.snapshot()

    def expire(self, session_id: str) -> Session:
        with self._lock:
            session = self._require(session_id)
            if session.status == "expired":
                return session.snapshot()
            self._transition(session, "expired")
            return session.snapshot()

    def begin_photo_capture(self, session_id: str) -> Session:
        with self._lock:
            session = self._require_live(session_id, self.clock())
            if session.status == "open":
                self._transition(session, "awaiting_photo")
            return session.snapshot()

    # -----------------------------
    # Token validation (read-only)
    # -----------------------------
    def validate_token(self, token_value: str) -> Session:
        decoded = self.issuer.decode(token_value)
        if decoded is None:
            raise InvalidToken("Invalid class token.")

        with self._lock:
            session_id = decoded.session_id
            session = self._sessions.get(session_id)
            if session is None:
                raise InvalidToken("Class token is no longer valid.")
            now = self.clock()
            status = effective_status(session, now)
            if status == "expired":
                raise TokenExpired("Session has expired.", session_id=session_id)
            if status == "finalized":
                raise SessionNotActive("Attendance is already finalized.", session_id=session_id)
            if self._token_index.get(decoded.token_value) != session_id:
                raise InvalidToken("Class token is no longer valid.")
            if decoded.is_expired(now):
                raise TokenExpired(
                    "Class token has expired.",
                    session_id=session_id,
                    expired_at=decoded.expires_at,
                )
            return session.snapshot()

    def check_capture_token(self, session_id: str, token_value: str, window_seconds: float) -> ClassToken:
        """
        Token presented alongside a face capture. The current token, or one
        rotated out less than `window_seconds` ago, is honoured until its own
        expiry plus the capture window.
        """
        decoded = self.issuer.decode(token_value)
        if decoded is None or decoded.session_id != session_id:
            raise InvalidToken("Class token does not belong to this session.")

        with self._lock:
            now = self.clock()
            self._require_live(session_id, now)
            if self._token_index.get(decoded.token_value) != session_id:
                superseded_at = self._superseded.get(session_id, {}).get(decoded.token_value)
                if superseded_at is None or now - superseded_at >= window_seconds:
                    raise InvalidToken("Class token was rotated; scan the class code again.")
            if now >= decoded.expires_at + window_seconds:
                raise SessionNotActive("Capture window has elapsed; scan the class code again.")
            return decoded

    # -----------------------------
    # Marks and photo matches
    # -----------------------------
    def record_mark(self, session_id: str, mark: ProvisionalMark) -> ProvisionalMark:
        with self._lock:
            session = self._require_live(session_id, self.clock())
            # last successful verify wins; never more than one mark per student
            session.provisional_marks[mark.student_id] = mark
            session.attempts.append(
                ScanAttempt(
                    student_id=mark.student_id,
                    outcome="verified",
                    reason=None,
                    distance=mark.matched_descriptor_distance,
                    at=mark.verified_at,
                )
            )
            return mark

    def record_rejection(self, session_id: str, student_id: str, reason: str, distance: float | None) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or not session.is_live:
                return
            session.attempts.append(
                ScanAttempt(
                    student_id=student_id,
                    outcome="rejected",
                    reason=reason,
                    distance=distance,
                    at=self.clock(),
                )
            )

    def add_photo_matches(self, session_id: str, matches: Sequence[PhotoMatchResult]) -> None:
        with self._lock:
            session = self._require_live(session_id, self.clock())
            if session.status == "open":
                self._transition(session, "awaiting_photo")
            session.photo_captures.append(list(matches))

    # -----------------------------
    # Finalization
    # -----------------------------
    def finalize(
        self,
        session_id: str,
        photo_matches: Sequence[PhotoMatchResult] | None = None,
        *,
        overrides: Mapping[str, AttendanceMark] | None = None,
    ) -> FinalizeResult:
        with self._lock:
            now = self.clock()
            session = self._require(session_id)
            self._expire_if_due(session, now)
            if not session.is_live:
                raise InvalidState(
                    f"Session is {session.status}; attendance cannot be finalized.",
                    session_id=session_id,
                    status=session.status,
                )

            combined: list[PhotoMatchResult] = [m for capture in session.photo_captures for m in capture]
            combined.extend(photo_matches or [])

            eligible = self.roster.get_eligible_students(session.schedule_id, session.class_date)
            entries = merge_attendance(eligible, session.provisional_marks, combined, overrides)
            summary = summarize(entries)
            summary["photo_captures"] = len(session.photo_captures) + (1 if photo_matches else 0)
            summary["eligible"] = len(eligible)

            # a failed write leaves the session live so finalize can be retried
            self.ledger.record_attendance(
                session.schedule_id,
                session.class_date,
                entries,
                idempotency_key=session_id,
            )
            self._transition(session, "finalized")
            session.finalized_at = now
            # marks and photo matches do not outlive finalization
            session.provisional_marks.clear()
            session.photo_captures.clear()
            logger.info(
                "session %s finalized: %d present, %d absent",
                session_id,
                summary["present"],
                summary["absent"],
            )
            return FinalizeResult(session=session.snapshot(), entries=tuple(entries), summary=summary)

    # -----------------------------
    # Reporting
    # -----------------------------
    def describe(self, session_id: str) -> dict:
        with self._lock:
            session = self._require(session_id)
            now = self.clock()
            status = effective_status(session, now)
            eligible = self.roster.get_eligible_students(session.schedule_id, session.class_date)
            verified = [a for a in session.attempts if a.outcome == "verified"]
            rejected = [a for a in session.attempts if a.outcome == "rejected"]
            return {
                "session_id": session.session_id,
                "schedule_id": session.schedule_id,
                "class_date": session.class_date,
                "status": status,
                "is_expired": status == "expired",
                "created_at": session.created_at,
                "expires_at": session.expires_at,
                "token_expires_at": session.current_token.expires_at,
                "geofence": session.geofence.as_dict() if session.geofence else None,
                "eligible_students": [s.student_id for s in eligible],
                "scans": {
                    "total": len(session.attempts),
                    "verified": len(verified),
                    "rejected": len(rejected),
                    "rejections": [
                        {"student_id": a.student_id, "reason": a.reason, "at": a.at}
                        for a in rejected
                    ],
                },
                "provisional_marks": [
                    {
                        "student_id": m.student_id,
                        "confidence": m.confidence,
                        "distance": m.matched_descriptor_distance,
                        "verified_at": m.verified_at,
                    }
                    for m in session.provisional_marks.values()
                ],
                "class_photos": {
                    "total": len(session.photo_captures),
                    "detected_faces": sum(len(c) for c in session.photo_captures),
                    "matched_students": len(
                        {m.matched_student_id for c in session.photo_captures for m in c if m.matched_student_id}
                    ),
                },
            }
