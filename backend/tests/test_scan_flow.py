import pytest

from backend.errors import FaceCaptureError, InvalidState
from backend.services.geo import Geofence
from backend.services.scan_flow import IndividualScanFlow, LocalScanBackend
from backend.tests.helpers import FakeClock, near, reference


@pytest.fixture()
def flow_clock():
    return FakeClock(start=0.0)


@pytest.fixture()
def make_flow(registry, engine, flow_clock):
    def _make(student_id: str = "S1", **kwargs) -> IndividualScanFlow:
        return IndividualScanFlow(
            LocalScanBackend(registry, engine),
            student_id,
            capture_window_seconds=60,
            clock=flow_clock,
            **kwargs,
        )

    return _make


def test_happy_path_reaches_verified(registry, enroll, make_flow):
    ref = enroll("S1", 1)
    session = registry.open_session(101)
    flow = make_flow()

    assert flow.submit_token(session.current_token.token_value).ok
    assert flow.state == "token_validated"
    flow.begin_capture()
    assert flow.remaining_seconds() == 60

    outcome = flow.submit_capture(near(ref, 0.2))
    assert outcome.ok
    assert outcome.state == "verified"
    assert flow.is_terminal
    assert outcome.mark.student_id == "S1"


def test_bad_token_stays_awaiting_token(make_flow):
    flow = make_flow()
    outcome = flow.submit_token("garbage")
    assert not outcome.ok
    assert outcome.action == "rescan"
    assert flow.state == "awaiting_token"


def test_mismatch_allows_retry_in_place(registry, enroll, make_flow, flow_clock):
    ref = enroll("S1", 1)
    session = registry.open_session(101)
    flow = make_flow()
    flow.submit_token(session.current_token.token_value)
    flow.begin_capture()

    outcome = flow.submit_capture(reference(9))
    assert outcome.state == "rejected"
    assert outcome.action == "recapture"
    assert outcome.reason == "face_mismatch"
    assert not flow.is_terminal

    flow_clock.advance(20)
    outcome = flow.submit_capture(ref)
    assert outcome.state == "verified"
    assert flow.capture_attempts == 2


def test_out_of_range_allows_retry(registry, enroll, make_flow):
    ref = enroll("S1", 1)
    session = registry.open_session(101, geofence=Geofence(12.9716, 77.5946, 100))
    flow = make_flow()
    flow.submit_token(session.current_token.token_value)
    flow.begin_capture()

    outcome = flow.submit_capture(ref, 12.9800, 77.5946)
    assert outcome.state == "rejected"
    assert outcome.reason == "out_of_range"

    assert flow.submit_capture(ref, 12.9716, 77.5946).state == "verified"


def test_capture_window_timeout_returns_to_awaiting_token(registry, enroll, make_flow, flow_clock):
    ref = enroll("S1", 1)
    session = registry.open_session(101)
    flow = make_flow()
    flow.submit_token(session.current_token.token_value)
    flow.begin_capture()

    flow_clock.advance(59)
    assert flow.check_timeout() is None
    flow_clock.advance(1)

    outcome = flow.submit_capture(ref)
    assert outcome.event == "timeout"
    assert outcome.action == "rescan"
    assert flow.state == "awaiting_token"
    assert flow.remaining_seconds() is None
    assert registry.describe(session.session_id)["provisional_marks"] == []


def test_not_enrolled_ends_flow(registry, enroll, make_flow):
    enroll("S1", 1, samples=1)
    session = registry.open_session(101)
    flow = make_flow()
    flow.submit_token(session.current_token.token_value)
    flow.begin_capture()

    outcome = flow.submit_capture(reference(1))
    assert outcome.event == "not_enrolled"
    assert outcome.action == "enroll"
    assert flow.is_terminal
    with pytest.raises(InvalidState):
        flow.submit_capture(reference(1))


def test_finalized_session_sends_student_back_to_scan(registry, enroll, make_flow):
    ref = enroll("S1", 1)
    session = registry.open_session(101)
    flow = make_flow()
    flow.submit_token(session.current_token.token_value)
    flow.begin_capture()
    registry.finalize(session.session_id)

    outcome = flow.submit_capture(ref)
    assert outcome.event == "rescan_required"
    assert flow.state == "awaiting_token"


def test_cancel(registry, enroll, make_flow):
    ref = enroll("S1", 1)
    session = registry.open_session(101)

    flow = make_flow()
    flow.submit_token(session.current_token.token_value)
    assert flow.cancel().state == "cancelled"
    assert flow.cancel().state == "cancelled"

    done = make_flow()
    done.submit_token(session.current_token.token_value)
    done.begin_capture()
    done.submit_capture(ref)
    with pytest.raises(InvalidState):
        done.cancel()


def test_submit_image_maps_quality_failures(registry, enroll, make_flow):
    ref = enroll("S1", 1)
    session = registry.open_session(101)
    frames = {"blurry": None, "sharp": ref}

    def embed(frame_key):
        if frames[frame_key] is None:
            raise FaceCaptureError("too_blurry")
        return frames[frame_key]

    flow = make_flow(embed=embed)
    flow.submit_token(session.current_token.token_value)
    flow.begin_capture()

    outcome = flow.submit_image("blurry")
    assert outcome.state == "rejected"
    assert outcome.reason == "too_blurry"

    assert flow.submit_image("sharp").state == "verified"


def test_steps_out_of_order_raise(make_flow):
    flow = make_flow()
    with pytest.raises(InvalidState):
        flow.begin_capture()
    with pytest.raises(InvalidState):
        flow.submit_capture(reference(1))


def test_malformed_descriptor_asks_for_recapture(registry, enroll, make_flow):
    ref = enroll("S1", 1)
    session = registry.open_session(101)
    flow = make_flow()
    flow.submit_token(session.current_token.token_value)
    flow.begin_capture()

    outcome = flow.submit_capture([0.1, 0.2, 0.3])
    assert not outcome.ok
    assert outcome.state == "rejected"
    assert outcome.action == "recapture"
    assert outcome.reason == "invalid_descriptor"

    assert flow.submit_capture(ref).state == "verified"
