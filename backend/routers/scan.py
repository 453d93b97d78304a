from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from backend.config import CAPTURE_WINDOW_SECONDS, DESCRIPTOR_LENGTH
from backend.errors import InvalidToken
from backend.services.descriptors import to_descriptor
from backend.services.runtime import Runtime, get_runtime

# Student-side: bound by the class token, not by staff auth.
router = APIRouter()


class TokenIn(BaseModel):
    token: str


class VerifyIn(BaseModel):
    token: str
    student_id: str
    descriptor: list[float]
    lat: float | None = Field(default=None, ge=-90, le=90)
    lng: float | None = Field(default=None, ge=-180, le=180)


@router.post("/scan/validate")
def validate_class_token(payload: TokenIn, runtime: Runtime = Depends(get_runtime)):
    session = runtime.registry.validate_token(payload.token.strip())
    return {
        "valid": True,
        "session_id": session.session_id,
        "schedule_id": session.schedule_id,
        "class_date": session.class_date,
        "status": session.status,
        "token_expires_at": session.current_token.expires_at,
        "capture_window_seconds": CAPTURE_WINDOW_SECONDS,
        "location_required": session.geofence is not None,
    }


@router.post("/scan/verify")
def verify_student(payload: VerifyIn, runtime: Runtime = Depends(get_runtime)):
    student_id = payload.student_id.strip()
    if not student_id:
        raise HTTPException(status_code=400, detail="student_id is required.")
    try:
        descriptor = to_descriptor(payload.descriptor, length=DESCRIPTOR_LENGTH)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    token_value = payload.token.strip()
    token = runtime.registry.issuer.decode(token_value)
    if token is None:
        raise InvalidToken("Invalid class token.")

    mark = runtime.engine.verify_face(
        token.session_id,
        student_id,
        descriptor,
        payload.lat,
        payload.lng,
        token_value=token_value,
    )
    return {
        "verified": True,
        "session_id": token.session_id,
        "student_id": mark.student_id,
        "distance": mark.matched_descriptor_distance,
        "confidence": mark.confidence,
        "verified_at": mark.verified_at,
        "location": (
            {"lat": mark.location_lat, "lng": mark.location_lng}
            if mark.location_lat is not None and mark.location_lng is not None
            else None
        ),
    }
