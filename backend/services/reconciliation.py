"""
Bulk class-photo reconciliation.

A teacher captures one photo of the whole class. Every detected face is
matched against the enrolled descriptors, duplicate claims on one student are
resolved in favour of the closest face, and the resulting match set is merged
with the individual-scan marks when the session is finalized.

Presence is a logical OR across the two channels: a student verified by
either the photo or an individual scan is present.
"""

import logging
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, Protocol, Sequence

import numpy as np

from backend.config import MATCH_THRESHOLD, PHOTO_CAPTURE_ATTEMPTS
from backend.errors import AttendanceError, PhotoProcessingError
from backend.services.descriptors import is_match
from backend.services.enrollment import EnrollmentStore
from backend.services.models import (
    AttendanceMark,
    DetectedFace,
    EnrollmentRecord,
    FinalizeResult,
    PhotoMatchResult,
    ProvisionalMark,
    RosterEntry,
    RosterStudent,
)

if TYPE_CHECKING:
    from backend.services.sessions import SessionRegistry

logger = logging.getLogger(__name__)


class FaceDetector(Protocol):
    def detect_faces(self, image: Any) -> list[DetectedFace]: ...


def nearest_student(
    descriptor: np.ndarray,
    records: Sequence[EnrollmentRecord],
) -> tuple[str | None, float | None]:
    best_id: str | None = None
    best_distance: float | None = None
    for record in records:
        if not record.descriptors:
            continue
        refs = np.vstack(record.descriptors)
        if refs.shape[1] != descriptor.shape[0]:
            continue
        d = float(np.min(np.linalg.norm(refs - descriptor, axis=1)))
        # strict < keeps the first record on ties
        if best_distance is None or d < best_distance:
            best_id, best_distance = record.student_id, d
    return best_id, best_distance


def deduplicate_matches(matches: Sequence[PhotoMatchResult]) -> list[PhotoMatchResult]:
    """
    Keep only the closest face per student; every other face claiming the
    same student reverts to unmatched.
    """
    winners: dict[str, int] = {}
    for idx, m in enumerate(matches):
        if m.matched_student_id is None or m.distance is None:
            continue
        current = winners.get(m.matched_student_id)
        if current is None or m.distance < matches[current].distance:
            winners[m.matched_student_id] = idx

    keep = set(winners.values())
    return [
        m if (m.matched_student_id is None or idx in keep)
        else PhotoMatchResult(detected_face_bbox=m.detected_face_bbox)
        for idx, m in enumerate(matches)
    ]


def match_detections(
    detections: Iterable[DetectedFace],
    records: Sequence[EnrollmentRecord],
    threshold: float = MATCH_THRESHOLD,
) -> list[PhotoMatchResult]:
    matches: list[PhotoMatchResult] = []
    for face in detections:
        student_id, distance = nearest_student(np.asarray(face.descriptor, dtype=np.float64), records)
        if student_id is not None and distance is not None and is_match(distance, threshold):
            matches.append(PhotoMatchResult(tuple(face.bbox), student_id, distance))
        else:
            matches.append(PhotoMatchResult(tuple(face.bbox)))
    return deduplicate_matches(matches)


def merge_attendance(
    eligible: Sequence[RosterStudent],
    marks: Mapping[str, ProvisionalMark],
    photo_matches: Sequence[PhotoMatchResult],
    overrides: Mapping[str, AttendanceMark] | None = None,
) -> list[RosterEntry]:
    photo_distance: dict[str, float] = {}
    for m in deduplicate_matches(photo_matches):
        if m.matched_student_id is not None and m.distance is not None:
            photo_distance[m.matched_student_id] = m.distance

    population = [s.student_id for s in eligible]
    if not population:
        # no roster for the slot: fall back to everyone who was seen
        population = sorted(set(marks) | set(photo_distance))
    else:
        outside = (set(marks) | set(photo_distance)) - set(population)
        if outside:
            logger.warning("%d verified students are not on the roster and were ignored", len(outside))

    overrides = overrides or {}
    entries: list[RosterEntry] = []
    for student_id in population:
        mark = marks.get(student_id)
        by_scan = mark is not None
        by_photo = student_id in photo_distance
        automatic: AttendanceMark = "present" if (by_scan or by_photo) else "absent"
        status = overrides.get(student_id, automatic)
        entries.append(
            RosterEntry(
                student_id=student_id,
                status=status,
                verified_by_scan=by_scan,
                verified_by_photo=by_photo,
                scan_distance=mark.matched_descriptor_distance if mark else None,
                photo_distance=photo_distance.get(student_id),
                manually_marked=status != automatic,
            )
        )
    return entries


def summarize(entries: Sequence[RosterEntry]) -> dict:
    present = sum(1 for e in entries if e.status == "present")
    return {
        "total_students": len(entries),
        "present": present,
        "absent": len(entries) - present,
        "scanned": sum(1 for e in entries if e.verified_by_scan),
        "detected_in_photo": sum(1 for e in entries if e.verified_by_photo),
        "verified_by_both": sum(1 for e in entries if e.verified_by_scan and e.verified_by_photo),
        "manually_marked": sum(1 for e in entries if e.manually_marked),
    }


class BulkReconciliationFlow:
    """Teacher-side sequence: photo -> detect -> match -> merge -> finalize."""

    def __init__(
        self,
        registry: "SessionRegistry",
        enrollment: EnrollmentStore,
        detector: FaceDetector,
        *,
        threshold: float = MATCH_THRESHOLD,
        capture_attempts: int = PHOTO_CAPTURE_ATTEMPTS,
    ) -> None:
        self.registry = registry
        self.enrollment = enrollment
        self.detector = detector
        self.threshold = threshold
        self.capture_attempts = max(1, capture_attempts)

    def process_photo(self, session_id: str, image: Any) -> list[PhotoMatchResult]:
        self.registry.begin_photo_capture(session_id)
        try:
            detections = self.detector.detect_faces(image)
        except AttendanceError as exc:
            raise PhotoProcessingError(f"Class photo could not be processed: {exc.message}") from exc
        except Exception as exc:
            raise PhotoProcessingError(f"Class photo could not be processed: {exc}") from exc
        return self.process_detections(session_id, detections)

    def process_detections(self, session_id: str, detections: Sequence[DetectedFace]) -> list[PhotoMatchResult]:
        self.registry.begin_photo_capture(session_id)
        matches = match_detections(detections, self.enrollment.enrolled_records(), self.threshold)
        self.registry.add_photo_matches(session_id, matches)
        matched = sum(1 for m in matches if m.matched_student_id is not None)
        logger.info(
            "class photo for session %s: %d faces detected, %d matched",
            session_id,
            len(matches),
            matched,
        )
        return matches

    def finalize(
        self,
        session_id: str,
        overrides: Mapping[str, AttendanceMark] | None = None,
    ) -> FinalizeResult:
        return self.registry.finalize(session_id, overrides=overrides)

    def capture_and_finalize(
        self,
        session_id: str,
        capture: Callable[[], Any],
        overrides: Mapping[str, AttendanceMark] | None = None,
    ) -> FinalizeResult:
        """
        Retry photo capture on detection failures, then finalize. A photo that
        never processes degrades to individual scans only.
        """
        for attempt in range(1, self.capture_attempts + 1):
            try:
                self.process_photo(session_id, capture())
                break
            except PhotoProcessingError as exc:
                logger.warning(
                    "class photo attempt %d/%d failed for session %s: %s",
                    attempt,
                    self.capture_attempts,
                    session_id,
                    exc.message,
                )
        else:
            logger.warning("finalizing session %s on individual scans only", session_id)
        return self.finalize(session_id, overrides=overrides)
