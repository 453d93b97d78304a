from pathlib import Path

import cv2  # type: ignore
import numpy as np  # type: ignore

from backend.config import (
    BLUR_THRESHOLD,
    BRIGHTNESS_MAX,
    BRIGHTNESS_MIN,
    BULK_MIN_FACE_SIZE,
    MAX_FACES,
    MIN_FACE_SIZE,
)
from backend.errors import FaceCaptureError
from backend.services.descriptors import FaceDescriptor, to_descriptor
from backend.services.models import DetectedFace

# Use Haar cascade for face detection (simple + offline)
CASCADE_PATH = Path(cv2.data.haarcascades) / "haarcascade_frontalface_default.xml"
FACE_CASCADE = cv2.CascadeClassifier(str(CASCADE_PATH))

FACE_SIZE = 96
LBP_GRID = 4
LBP_BINS = 8
DESCRIPTOR_SIZE = LBP_GRID * LBP_GRID * LBP_BINS  # 128

_NEIGHBOURS = ((-1, -1), (-1, 0), (-1, 1), (0, 1), (1, 1), (1, 0), (1, -1), (0, -1))


def decode_image(data: bytes):
    img_array = np.frombuffer(data, np.uint8)
    frame = cv2.imdecode(img_array, cv2.IMREAD_COLOR)
    if frame is None:
        raise FaceCaptureError("invalid_image", "Invalid image data.")
    return frame


def lbp_descriptor(face_gray) -> FaceDescriptor:
    """
    Spatial LBP histogram: 8-neighbour local binary codes, pooled into a
    4x4 grid of 8-bin histograms and L2-normalised.
    """
    face = cv2.resize(face_gray, (FACE_SIZE, FACE_SIZE))
    face = cv2.equalizeHist(face).astype(np.int16)
    h, w = face.shape
    center = face[1:-1, 1:-1]
    codes = np.zeros(center.shape, dtype=np.uint8)
    for bit, (dy, dx) in enumerate(_NEIGHBOURS):
        neighbour = face[1 + dy : h - 1 + dy, 1 + dx : w - 1 + dx]
        codes |= (neighbour >= center).astype(np.uint8) << np.uint8(bit)

    cell_h = codes.shape[0] // LBP_GRID
    cell_w = codes.shape[1] // LBP_GRID
    hists = []
    for gy in range(LBP_GRID):
        for gx in range(LBP_GRID):
            cell = codes[gy * cell_h : (gy + 1) * cell_h, gx * cell_w : (gx + 1) * cell_w]
            hist, _ = np.histogram(cell, bins=LBP_BINS, range=(0, 256))
            hists.append(hist)

    vec = np.concatenate(hists).astype(np.float64)
    norm = float(np.linalg.norm(vec))
    if norm > 0:
        vec = vec / norm
    return to_descriptor(vec)


def _detect(gray, min_size: int):
    return FACE_CASCADE.detectMultiScale(
        gray,
        scaleFactor=1.2,
        minNeighbors=5,
        minSize=(min_size, min_size),
    )


class HaarLbpFaceModel:
    """
    Default embedding + detection functions. Any object exposing
    `embed(image)` and `detect_faces(image)` can replace it.
    """

    def embed(self, frame_bgr) -> FaceDescriptor:
        """Single-face capture with quality gates; raises FaceCaptureError."""
        gray = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2GRAY)
        faces = _detect(gray, min_size=BULK_MIN_FACE_SIZE)

        if len(faces) == 0:
            raise FaceCaptureError("no_face")
        if MAX_FACES > 0 and len(faces) > MAX_FACES:
            raise FaceCaptureError("multiple_faces")

        # take largest face
        x, y, w, h = sorted(faces, key=lambda r: r[2] * r[3], reverse=True)[0]
        if w < MIN_FACE_SIZE or h < MIN_FACE_SIZE:
            raise FaceCaptureError("face_too_small")

        face = gray[y : y + h, x : x + w]
        mean_brightness = float(face.mean())
        if mean_brightness < BRIGHTNESS_MIN:
            raise FaceCaptureError("too_dark")
        if mean_brightness > BRIGHTNESS_MAX:
            raise FaceCaptureError("too_bright")

        blur_score = float(cv2.Laplacian(cv2.resize(face, (200, 200)), cv2.CV_64F).var())
        if blur_score < BLUR_THRESHOLD:
            raise FaceCaptureError("too_blurry")

        return lbp_descriptor(face)

    def detect_faces(self, frame_bgr) -> list[DetectedFace]:
        gray = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2GRAY)
        detections = []
        for x, y, w, h in _detect(gray, min_size=BULK_MIN_FACE_SIZE):
            face = gray[y : y + h, x : x + w]
            detections.append(
                DetectedFace(
                    bbox=(int(x), int(y), int(w), int(h)),
                    descriptor=lbp_descriptor(face),
                )
            )
        return detections
