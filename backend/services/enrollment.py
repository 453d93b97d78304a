import json
import logging
from typing import Sequence

from backend.config import MIN_ENROLLMENT_DESCRIPTORS, TARGET_ENROLLMENT_DESCRIPTORS
from backend.errors import EnrollmentFull, NotFound
from backend.services.descriptors import FaceDescriptor, to_descriptor
from backend.services.models import EnrollmentRecord
from database.db import (
    add_face_descriptor,
    get_all_face_descriptors,
    get_face_descriptors,
    get_student,
)

logger = logging.getLogger(__name__)


def _decode(raw: str) -> FaceDescriptor:
    return to_descriptor(json.loads(raw))


class EnrollmentStore:
    """
    Reference face descriptors per student.

    Read-many / append-only: verification only ever reads; onboarding appends
    one descriptor per captured angle, up to `target` samples.
    """

    def __init__(
        self,
        *,
        minimum: int = MIN_ENROLLMENT_DESCRIPTORS,
        target: int = TARGET_ENROLLMENT_DESCRIPTORS,
    ) -> None:
        self.minimum = minimum
        self.target = max(minimum, target)

    def append(
        self,
        student_id: str,
        descriptor: FaceDescriptor | Sequence[float],
        *,
        image_path: str | None = None,
    ) -> EnrollmentRecord:
        if not get_student(student_id):
            raise NotFound("Student not found.", student_id=student_id)

        vec = to_descriptor(descriptor)
        face_id, total = add_face_descriptor(
            student_id,
            vec.tolist(),
            image_path=image_path,
            max_count=self.target,
        )
        if face_id is None:
            raise EnrollmentFull(
                f"Maximum {self.target} faces can be registered.",
                student_id=student_id,
                total=total,
            )
        logger.info("face sample %d/%d registered for student %s", total, self.target, student_id)
        return self.get(student_id)

    def get(self, student_id: str) -> EnrollmentRecord:
        rows = get_face_descriptors(student_id)
        return EnrollmentRecord(
            student_id=student_id,
            descriptors=tuple(_decode(r[1]) for r in rows),
            captured_at=str(rows[-1][3]) if rows else None,
        )

    def is_enrolled(self, student_id: str) -> bool:
        return self.get(student_id).is_enrolled(self.minimum)

    def list_faces(self, student_id: str) -> list[dict]:
        return [
            {"face_id": r[0], "image_path": r[2], "registered_at": r[3]}
            for r in get_face_descriptors(student_id)
        ]

    def enrolled_records(self) -> list[EnrollmentRecord]:
        """Snapshot of every student that meets the minimum sample count."""
        grouped: dict[str, list[FaceDescriptor]] = {}
        latest: dict[str, str] = {}
        for student_id, raw, registered_at in get_all_face_descriptors():
            sid = str(student_id)
            grouped.setdefault(sid, []).append(_decode(raw))
            latest[sid] = str(registered_at)
        return [
            EnrollmentRecord(student_id=sid, descriptors=tuple(descs), captured_at=latest[sid])
            for sid, descs in grouped.items()
            if len(descs) >= self.minimum
        ]

    def status(self, student_id: str) -> dict:
        record = self.get(student_id)
        return {
            "student_id": student_id,
            "registered": record.count,
            "minimum": self.minimum,
            "target": self.target,
            "enrolled": record.is_enrolled(self.minimum),
            "remaining": max(0, self.target - record.count),
        }
