import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

ASSETS_DIR = Path(os.getenv("ROLLCALL_ASSETS_DIR", BASE_DIR / "assets"))
FACES_DIR = ASSETS_DIR / "faces"
DB_PATH = Path(os.getenv("ROLLCALL_DB_PATH", BASE_DIR / "database" / "rollcall.db"))
STAFF_USERNAME = os.getenv("ROLLCALL_STAFF_USERNAME", "teacher").strip() or "teacher"
STAFF_PASSWORD = os.getenv("ROLLCALL_STAFF_PASSWORD", "rollcall123").strip() or "rollcall123"
SIGNING_KEY = os.getenv("ROLLCALL_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("ROLLCALL_AUTH_TOKEN_TTL_SECONDS", "43200"))
# role carried by staff bearer tokens; student routes are bound by class tokens instead
STAFF_ROLE = "teacher"
LOG_LEVEL = os.getenv("ROLLCALL_LOG_LEVEL", "INFO").strip().upper() or "INFO"


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_float(value: str | None, fallback: float) -> float:
    if not value:
        return fallback
    try:
        return float(value)
    except ValueError:
        return fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_ORIGINS"),
    ["http://localhost:3000", "http://127.0.0.1:3000"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("ROLLCALL_CORS_ALLOW_CREDENTIALS"), True)

# Face matching policy
MATCH_THRESHOLD = _parse_float(os.getenv("ROLLCALL_MATCH_THRESHOLD"), 0.6)
DESCRIPTOR_LENGTH = int(os.getenv("ROLLCALL_DESCRIPTOR_LENGTH", "128"))
MIN_ENROLLMENT_DESCRIPTORS = max(1, int(os.getenv("ROLLCALL_MIN_ENROLLMENT_DESCRIPTORS", "3")))
TARGET_ENROLLMENT_DESCRIPTORS = max(
    MIN_ENROLLMENT_DESCRIPTORS,
    int(os.getenv("ROLLCALL_TARGET_ENROLLMENT_DESCRIPTORS", "5")),
)

# Session / token lifetimes (seconds)
CLASS_TOKEN_TTL_SECONDS = max(1, int(os.getenv("ROLLCALL_CLASS_TOKEN_TTL_SECONDS", "300")))
SESSION_TTL_SECONDS = max(1, int(os.getenv("ROLLCALL_SESSION_TTL_SECONDS", "3600")))
SESSION_GRACE_SECONDS = max(0, int(os.getenv("ROLLCALL_SESSION_GRACE_SECONDS", "900")))
CAPTURE_WINDOW_SECONDS = max(1, int(os.getenv("ROLLCALL_CAPTURE_WINDOW_SECONDS", "60")))
# ended sessions stay queryable this long before they are dropped from memory
SESSION_RETENTION_SECONDS = max(0, int(os.getenv("ROLLCALL_SESSION_RETENTION_SECONDS", "86400")))

GEOFENCE_RADIUS_METERS = _parse_float(os.getenv("ROLLCALL_GEOFENCE_RADIUS_METERS"), 100.0)
PHOTO_CAPTURE_ATTEMPTS = max(1, int(os.getenv("ROLLCALL_PHOTO_CAPTURE_ATTEMPTS", "3")))

# Capture quality gates (reduce false positives on single-face captures)
MAX_FACES = int(os.getenv("ROLLCALL_MAX_FACES", "1"))
MIN_FACE_SIZE = int(os.getenv("ROLLCALL_MIN_FACE_SIZE", "80"))
BULK_MIN_FACE_SIZE = int(os.getenv("ROLLCALL_BULK_MIN_FACE_SIZE", "40"))
BLUR_THRESHOLD = _parse_float(os.getenv("ROLLCALL_BLUR_THRESHOLD"), 40.0)
BRIGHTNESS_MIN = _parse_float(os.getenv("ROLLCALL_BRIGHTNESS_MIN"), 40.0)
BRIGHTNESS_MAX = _parse_float(os.getenv("ROLLCALL_BRIGHTNESS_MAX"), 200.0)
