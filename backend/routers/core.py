from fastapi import APIRouter

from backend.config import (
    BLUR_THRESHOLD,
    BRIGHTNESS_MAX,
    BRIGHTNESS_MIN,
    CAPTURE_WINDOW_SECONDS,
    CLASS_TOKEN_TTL_SECONDS,
    DESCRIPTOR_LENGTH,
    GEOFENCE_RADIUS_METERS,
    MATCH_THRESHOLD,
    MAX_FACES,
    MIN_ENROLLMENT_DESCRIPTORS,
    MIN_FACE_SIZE,
    PHOTO_CAPTURE_ATTEMPTS,
    SESSION_GRACE_SECONDS,
    SESSION_TTL_SECONDS,
    TARGET_ENROLLMENT_DESCRIPTORS,
)

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/verification")
def verification_config():
    return {
        "match_threshold": MATCH_THRESHOLD,
        "descriptor_length": DESCRIPTOR_LENGTH,
        "min_enrollment_descriptors": MIN_ENROLLMENT_DESCRIPTORS,
        "target_enrollment_descriptors": TARGET_ENROLLMENT_DESCRIPTORS,
        "class_token_ttl_seconds": CLASS_TOKEN_TTL_SECONDS,
        "session_ttl_seconds": SESSION_TTL_SECONDS,
        "session_grace_seconds": SESSION_GRACE_SECONDS,
        "capture_window_seconds": CAPTURE_WINDOW_SECONDS,
        "geofence_radius_meters": GEOFENCE_RADIUS_METERS,
        "photo_capture_attempts": PHOTO_CAPTURE_ATTEMPTS,
        "max_faces": MAX_FACES,
        "min_face_size": MIN_FACE_SIZE,
        "blur_threshold": BLUR_THRESHOLD,
        "brightness_min": BRIGHTNESS_MIN,
        "brightness_max": BRIGHTNESS_MAX,
    }
