import cv2
import numpy as np
import pytest

from backend.errors import FaceCaptureError
from backend.recognizer import DESCRIPTOR_SIZE, HaarLbpFaceModel, decode_image, lbp_descriptor


def test_lbp_descriptor_is_unit_length():
    rng = np.random.default_rng(7)
    face = rng.integers(0, 256, size=(120, 110), dtype=np.uint8)
    vec = lbp_descriptor(face)
    assert vec.shape == (DESCRIPTOR_SIZE,)
    assert np.linalg.norm(vec) == pytest.approx(1.0)


def test_lbp_descriptor_is_deterministic():
    face = np.tile(np.arange(100, dtype=np.uint8), (100, 1))
    assert np.array_equal(lbp_descriptor(face), lbp_descriptor(face))


def test_blank_frame_has_no_face():
    frame = np.full((240, 320, 3), 128, dtype=np.uint8)
    model = HaarLbpFaceModel()
    with pytest.raises(FaceCaptureError) as exc:
        model.embed(frame)
    assert exc.value.reason == "no_face"
    assert model.detect_faces(frame) == []


def test_decode_image():
    ok, encoded = cv2.imencode(".png", np.zeros((8, 8, 3), dtype=np.uint8))
    assert ok
    assert decode_image(encoded.tobytes()).shape == (8, 8, 3)
    with pytest.raises(FaceCaptureError):
        decode_image(b"garbage")
