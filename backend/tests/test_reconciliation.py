import pytest

from backend.errors import FaceCaptureError, PhotoProcessingError
from backend.services.models import DetectedFace, PhotoMatchResult, ProvisionalMark, RosterStudent
from backend.services.reconciliation import (
    BulkReconciliationFlow,
    deduplicate_matches,
    merge_attendance,
    summarize,
)
from backend.tests.helpers import near, reference


class StubDetector:
    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    def detect_faces(self, image):
        self.calls += 1
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _face(x: int, descriptor) -> DetectedFace:
    return DetectedFace(bbox=(x, 10, 60, 60), descriptor=descriptor)


def _mark(student_id: str) -> ProvisionalMark:
    return ProvisionalMark(student_id, 0.25, None, None, 0.0, 0.58)


def _roster(*ids):
    return [RosterStudent(student_id=sid, name=sid) for sid in ids]


def test_photo_only_presence_and_absence(registry, enrollment, enroll):
    enroll("S42", 42)
    enroll("S1", 1)
    detector = StubDetector([_face(0, near(reference(42), 0.3))])
    flow = BulkReconciliationFlow(registry, enrollment, detector, threshold=0.6)
    session = registry.open_session(101)

    matches = flow.process_photo(session.session_id, image=object())
    assert [m.matched_student_id for m in matches] == ["S42"]
    assert registry.describe(session.session_id)["status"] == "awaiting_photo"

    result = flow.finalize(session.session_id)
    by_id = {e.student_id: e for e in result.entries}
    assert by_id["S42"].status == "present"
    assert by_id["S42"].verification == "photo-only"
    assert by_id["S1"].status == "absent"
    assert by_id["S1"].verification == "none"


def test_duplicate_faces_keep_the_closest(registry, enrollment, enroll):
    ref = enroll("S7", 7)
    detector = StubDetector([_face(0, near(ref, 0.45)), _face(100, near(ref, 0.2))])
    flow = BulkReconciliationFlow(registry, enrollment, detector, threshold=0.6)
    session = registry.open_session(101)

    matches = flow.process_photo(session.session_id, image=object())
    assert matches[0].matched_student_id is None
    assert matches[1].matched_student_id == "S7"
    assert matches[1].distance == pytest.approx(0.2)

    result = flow.finalize(session.session_id)
    s7 = next(e for e in result.entries if e.student_id == "S7")
    assert s7.photo_distance == pytest.approx(0.2)


def test_unknown_faces_stay_unmatched(registry, enrollment, enroll):
    enroll("S1", 1)
    detector = StubDetector([_face(0, reference(60))])
    flow = BulkReconciliationFlow(registry, enrollment, detector, threshold=0.6)
    session = registry.open_session(101)

    matches = flow.process_photo(session.session_id, image=object())
    assert matches == [PhotoMatchResult(detected_face_bbox=(0, 10, 60, 60))]


def test_zero_faces_is_a_valid_result(registry, enrollment, enroll, ledger):
    enroll("S1", 1)
    detector = StubDetector([])
    flow = BulkReconciliationFlow(registry, enrollment, detector)
    session = registry.open_session(101)
    registry.record_mark(session.session_id, _mark("S1"))

    assert flow.process_photo(session.session_id, image=object()) == []
    result = flow.finalize(session.session_id)
    assert result.summary["present"] == 1
    assert result.summary["detected_in_photo"] == 0
    assert len(ledger.writes) == 1


def test_presence_is_or_across_channels():
    entries = merge_attendance(
        _roster("A", "B", "C", "D"),
        {"A": _mark("A"), "B": _mark("B")},
        [
            PhotoMatchResult((0, 0, 1, 1), "B", 0.3),
            PhotoMatchResult((5, 0, 1, 1), "C", 0.4),
        ],
    )
    labels = {e.student_id: (e.status, e.verification) for e in entries}
    assert labels == {
        "A": ("present", "scan-only"),
        "B": ("present", "both"),
        "C": ("present", "photo-only"),
        "D": ("absent", "none"),
    }
    assert summarize(entries)["verified_by_both"] == 1


def test_overrides_are_recorded_as_manual():
    entries = merge_attendance(
        _roster("A", "B"),
        {"A": _mark("A")},
        [],
        overrides={"A": "absent", "B": "absent"},
    )
    by_id = {e.student_id: e for e in entries}
    assert by_id["A"].status == "absent"
    assert by_id["A"].manually_marked
    assert by_id["A"].verification == "manual"
    # matching the automatic result is not a manual change
    assert not by_id["B"].manually_marked


def test_empty_roster_falls_back_to_participants():
    entries = merge_attendance(
        [],
        {"Z": _mark("Z")},
        [PhotoMatchResult((0, 0, 1, 1), "Y", 0.1)],
    )
    assert [e.student_id for e in entries] == ["Y", "Z"]
    assert all(e.status == "present" for e in entries)


def test_off_roster_students_are_ignored():
    entries = merge_attendance(_roster("A"), {"X": _mark("X")}, [])
    assert [(e.student_id, e.status) for e in entries] == [("A", "absent")]


def test_dedup_across_multiple_photos(registry, enrollment, enroll):
    ref = enroll("S7", 7)
    detector = StubDetector([_face(0, near(ref, 0.5))], [_face(0, near(ref, 0.1))])
    flow = BulkReconciliationFlow(registry, enrollment, detector)
    session = registry.open_session(101)

    flow.process_photo(session.session_id, image=object())
    flow.process_photo(session.session_id, image=object())
    result = flow.finalize(session.session_id)

    s7 = next(e for e in result.entries if e.student_id == "S7")
    assert s7.photo_distance == pytest.approx(0.1)
    assert result.summary["photo_captures"] == 2


def test_deduplicate_ignores_unmatched():
    matches = [
        PhotoMatchResult((0, 0, 1, 1)),
        PhotoMatchResult((1, 0, 1, 1), "A", 0.5),
        PhotoMatchResult((2, 0, 1, 1), "A", 0.5),
    ]
    # ties keep the first face
    assert [m.matched_student_id for m in deduplicate_matches(matches)] == [None, "A", None]


def test_detector_failure_is_photo_processing_error(registry, enrollment):
    detector = StubDetector(FaceCaptureError("invalid_image"))
    flow = BulkReconciliationFlow(registry, enrollment, detector)
    session = registry.open_session(101)

    with pytest.raises(PhotoProcessingError) as exc:
        flow.process_photo(session.session_id, image=object())
    assert exc.value.action == "recapture_photo"


def test_capture_and_finalize_retries_then_succeeds(registry, enrollment, enroll):
    enroll("S42", 42)
    detector = StubDetector(RuntimeError("camera glitch"), [_face(0, reference(42))])
    flow = BulkReconciliationFlow(registry, enrollment, detector, capture_attempts=3)
    session = registry.open_session(101)

    result = flow.capture_and_finalize(session.session_id, capture=object)
    assert detector.calls == 2
    assert any(e.student_id == "S42" and e.verified_by_photo for e in result.entries)


def test_capture_and_finalize_degrades_to_scans(registry, enrollment, ledger):
    detector = StubDetector(RuntimeError("a"), RuntimeError("b"))
    flow = BulkReconciliationFlow(registry, enrollment, detector, capture_attempts=2)
    session = registry.open_session(101)
    registry.record_mark(session.session_id, _mark("S1"))

    result = flow.capture_and_finalize(session.session_id, capture=object)
    assert detector.calls == 2
    assert result.session.status == "finalized"
    assert result.summary["present"] == 1
    assert len(ledger.writes) == 1
