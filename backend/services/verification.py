import logging
from typing import Sequence

from backend.config import CAPTURE_WINDOW_SECONDS, MATCH_THRESHOLD
from backend.errors import FaceMismatch, InvalidToken, NotEnrolled, OutOfRange, SessionNotActive
from backend.services.descriptors import FaceDescriptor, is_match, match_confidence, min_distance, to_descriptor
from backend.services.enrollment import EnrollmentStore
from backend.services.models import ProvisionalMark
from backend.services.sessions import SessionRegistry

logger = logging.getLogger(__name__)


class VerificationEngine:
    """
    Accept/reject one student's capture for a session.

    Check order: enrollment, face distance, geofence, session/time window.
    Matching runs outside the registry lock; only the final upsert is atomic
    with the session status.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        enrollment: EnrollmentStore,
        *,
        threshold: float = MATCH_THRESHOLD,
        capture_window_seconds: int = CAPTURE_WINDOW_SECONDS,
    ) -> None:
        self.registry = registry
        self.enrollment = enrollment
        self.threshold = threshold
        self.capture_window_seconds = capture_window_seconds

    def verify_face(
        self,
        session_id: str,
        student_id: str,
        descriptor: FaceDescriptor | Sequence[float],
        lat: float | None = None,
        lng: float | None = None,
        *,
        token_value: str | None = None,
    ) -> ProvisionalMark:
        candidate = to_descriptor(descriptor)

        record = self.enrollment.get(student_id)
        if not record.is_enrolled(self.enrollment.minimum):
            self.registry.record_rejection(session_id, student_id, "not_enrolled", None)
            raise NotEnrolled(
                "No registered faces found. Please register your face first.",
                registered=record.count,
                minimum=self.enrollment.minimum,
            )

        d = min_distance(candidate, record.descriptors)
        if d is None or not is_match(d, self.threshold):
            self.registry.record_rejection(session_id, student_id, "face_mismatch", d)
            logger.info("face mismatch for student %s in session %s", student_id, session_id)
            raise FaceMismatch(
                "Face verification failed. Face does not match registered face.",
                distance=d,
                threshold=self.threshold,
            )

        session = self.registry.get_session(session_id, include_expired=True)
        if session.geofence is not None:
            if lat is None or lng is None:
                self.registry.record_rejection(session_id, student_id, "location_missing", d)
                raise OutOfRange("Location is required for this class.", reason="location_missing")
            meters = session.geofence.distance_to(lat, lng)
            if meters > session.geofence.radius_meters:
                self.registry.record_rejection(session_id, student_id, "out_of_range", d)
                raise OutOfRange(
                    f"You are too far from the class location ({round(meters)}m away, "
                    f"must be within {round(session.geofence.radius_meters)}m).",
                    distance_meters=round(meters, 1),
                    radius_meters=session.geofence.radius_meters,
                )

        if token_value is not None:
            try:
                self.registry.check_capture_token(session_id, token_value, self.capture_window_seconds)
            except (InvalidToken, SessionNotActive) as exc:
                self.registry.record_rejection(session_id, student_id, exc.code, d)
                logger.info("token rejected for student %s in session %s: %s", student_id, session_id, exc.code)
                raise

        now = self.registry.clock()
        mark = ProvisionalMark(
            student_id=student_id,
            matched_descriptor_distance=d,
            location_lat=lat,
            location_lng=lng,
            verified_at=now,
            confidence=match_confidence(d, self.threshold),
        )
        # raises SessionNotActive if the session ended while we were matching
        self.registry.record_mark(session_id, mark)
        logger.info("student %s verified in session %s", student_id, session_id)
        return mark
