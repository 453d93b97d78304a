from typing import Any


class AttendanceError(Exception):
    """
    Base class for verification-protocol failures.

    Every failure is terminal to the attempt but never fatal to a flow:
    `action` tells the caller what to do next (rescan, recapture, enroll...).
    """

    code = "attendance_error"
    status_code = 400
    action = "retry"

    def __init__(self, message: str | None = None, **extra: Any) -> None:
        self.message = message or self.__class__.__doc__ or self.code
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "detail": self.message,
            "code": self.code,
            "action": self.action,
            **self.extra,
        }


class InvalidToken(AttendanceError):
    """Class token is unknown or has been rotated away."""

    code = "invalid_token"
    status_code = 401
    action = "rescan"


class TokenExpired(AttendanceError):
    """Class token has expired."""

    code = "expired"
    status_code = 410
    action = "rescan"


class ConflictError(AttendanceError):
    """An open session already exists for this schedule."""

    code = "conflict"
    status_code = 409
    action = "none"


class NotEnrolled(AttendanceError):
    """Student has not registered enough face samples."""

    code = "not_enrolled"
    status_code = 422
    action = "enroll"


class FaceMismatch(AttendanceError):
    """Face does not match the registered face."""

    code = "face_mismatch"
    status_code = 403
    action = "recapture"


class OutOfRange(AttendanceError):
    """Device location is outside the class geofence."""

    code = "out_of_range"
    status_code = 403
    action = "recapture"


class SessionNotActive(AttendanceError):
    """Session is not accepting attendance."""

    code = "session_not_active"
    status_code = 409
    action = "rescan"


class InvalidState(AttendanceError):
    """Session cannot make this transition."""

    code = "invalid_state"
    status_code = 409
    action = "none"


class NotFound(AttendanceError):
    """Session not found."""

    code = "not_found"
    status_code = 404
    action = "none"


class EnrollmentFull(AttendanceError):
    """Maximum number of faces already registered."""

    code = "enrollment_full"
    status_code = 400
    action = "none"


class FaceCaptureError(AttendanceError):
    """Face could not be extracted from the image."""

    code = "face_capture_failed"
    status_code = 422
    action = "recapture"

    def __init__(self, reason: str, message: str | None = None) -> None:
        super().__init__(message or f"Face capture failed: {reason}", reason=reason)
        self.reason = reason


class PhotoProcessingError(AttendanceError):
    """Class photo could not be processed."""

    code = "photo_processing_failed"
    status_code = 422
    action = "recapture_photo"
