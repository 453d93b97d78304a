"""Domain records for the attendance verification protocol."""

from dataclasses import dataclass, field, replace
from typing import Literal

from backend.services.descriptors import FaceDescriptor
from backend.services.geo import Geofence

SessionStatus = Literal["open", "awaiting_photo", "finalized", "expired"]
AttendanceMark = Literal["present", "absent"]
BBox = tuple[int, int, int, int]  # x, y, width, height

LIVE_STATUSES: frozenset[str] = frozenset({"open", "awaiting_photo"})


@dataclass(frozen=True)
class EnrollmentRecord:
    student_id: str
    descriptors: tuple[FaceDescriptor, ...]
    captured_at: str | None  # ISO timestamp of the latest appended sample

    @property
    def count(self) -> int:
        return len(self.descriptors)

    def is_enrolled(self, minimum: int) -> bool:
        return self.count >= minimum


@dataclass(frozen=True)
class ClassToken:
    token_value: str
    session_id: str
    issued_at: float
    ttl_seconds: int

    @property
    def expires_at(self) -> float:
        return self.issued_at + self.ttl_seconds

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class ProvisionalMark:
    student_id: str
    matched_descriptor_distance: float
    location_lat: float | None
    location_lng: float | None
    verified_at: float
    confidence: float


@dataclass(frozen=True)
class PhotoMatchResult:
    detected_face_bbox: BBox
    matched_student_id: str | None = None
    distance: float | None = None


@dataclass(frozen=True)
class ScanAttempt:
    student_id: str
    outcome: Literal["verified", "rejected"]
    reason: str | None
    distance: float | None
    at: float


@dataclass
class Session:
    session_id: str
    schedule_id: int
    class_date: str  # YYYY-MM-DD
    created_at: float
    expires_at: float
    status: SessionStatus
    current_token: ClassToken
    geofence: Geofence | None = None
    provisional_marks: dict[str, ProvisionalMark] = field(default_factory=dict)
    attempts: list[ScanAttempt] = field(default_factory=list)
    photo_captures: list[list[PhotoMatchResult]] = field(default_factory=list)
    finalized_at: float | None = None
    ended_at: float | None = None

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def snapshot(self) -> "Session":
        return replace(
            self,
            provisional_marks=dict(self.provisional_marks),
            attempts=list(self.attempts),
            photo_captures=[list(c) for c in self.photo_captures],
        )


@dataclass(frozen=True)
class RosterStudent:
    student_id: str
    name: str
    roll_number: str | None = None
    department_id: int | None = None
    section_id: int | None = None


@dataclass(frozen=True)
class RosterEntry:
    student_id: str
    status: AttendanceMark
    verified_by_scan: bool
    verified_by_photo: bool
    scan_distance: float | None = None
    photo_distance: float | None = None
    manually_marked: bool = False

    @property
    def verification(self) -> str:
        if self.manually_marked:
            return "manual"
        if self.verified_by_scan and self.verified_by_photo:
            return "both"
        if self.verified_by_scan:
            return "scan-only"
        if self.verified_by_photo:
            return "photo-only"
        return "none"


@dataclass(frozen=True)
class DetectedFace:
    bbox: BBox
    descriptor: FaceDescriptor


@dataclass(frozen=True)
class FinalizeResult:
    session: Session
    entries: tuple[RosterEntry, ...]
    summary: dict
