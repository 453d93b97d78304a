import io
from typing import Literal

import qrcode
from fastapi import APIRouter, Depends, File, HTTPException, Response, UploadFile
from pydantic import BaseModel, Field

from backend.config import DESCRIPTOR_LENGTH, GEOFENCE_RADIUS_METERS
from backend.errors import FaceCaptureError
from backend.recognizer import decode_image
from backend.security import require_session
from backend.services.descriptors import to_descriptor
from backend.services.geo import Geofence
from backend.services.models import ClassToken, DetectedFace, PhotoMatchResult, Session
from backend.services.runtime import Runtime, get_runtime

router = APIRouter(dependencies=[Depends(require_session)])


class GeofenceIn(BaseModel):
    lat: float
    lng: float
    radius_meters: float | None = None


class SessionOpen(BaseModel):
    schedule_id: int
    ttl_seconds: int | None = Field(default=None, gt=0)
    geofence: GeofenceIn | None = None
    force_new: bool = False
    class_date: str | None = None


class DetectionIn(BaseModel):
    bbox: tuple[int, int, int, int]
    descriptor: list[float]


class DetectionsIn(BaseModel):
    detections: list[DetectionIn]


class FinalizeIn(BaseModel):
    overrides: dict[str, Literal["present", "absent"]] = Field(default_factory=dict)


def _token_payload(token: ClassToken) -> dict:
    return {
        "value": token.token_value,
        "issued_at": token.issued_at,
        "expires_at": token.expires_at,
        "ttl_seconds": token.ttl_seconds,
    }


def _session_payload(session: Session) -> dict:
    return {
        "session_id": session.session_id,
        "schedule_id": session.schedule_id,
        "class_date": session.class_date,
        "status": session.status,
        "created_at": session.created_at,
        "expires_at": session.expires_at,
        "geofence": session.geofence.as_dict() if session.geofence else None,
        "token": _token_payload(session.current_token),
    }


def _match_payload(match: PhotoMatchResult) -> dict:
    return {
        "bbox": list(match.detected_face_bbox),
        "student_id": match.matched_student_id,
        "distance": match.distance,
    }


def _matches_response(session_id: str, matches: list[PhotoMatchResult]) -> dict:
    return {
        "session_id": session_id,
        "detected_faces": len(matches),
        "matched": sum(1 for m in matches if m.matched_student_id is not None),
        "matches": [_match_payload(m) for m in matches],
    }


@router.post("/sessions")
def open_session(payload: SessionOpen, runtime: Runtime = Depends(get_runtime)):
    geofence = None
    if payload.geofence is not None:
        try:
            geofence = Geofence(
                lat=payload.geofence.lat,
                lng=payload.geofence.lng,
                radius_meters=payload.geofence.radius_meters or GEOFENCE_RADIUS_METERS,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))

    session = runtime.registry.open_session(
        payload.schedule_id,
        payload.ttl_seconds,
        geofence,
        force_new=payload.force_new,
        class_date=payload.class_date,
    )
    return _session_payload(session)


@router.get("/sessions/{session_id}")
def session_detail(session_id: str, runtime: Runtime = Depends(get_runtime)):
    return _session_payload(runtime.registry.get_session(session_id))


@router.get("/sessions/{session_id}/status")
def session_status(session_id: str, runtime: Runtime = Depends(get_runtime)):
    return runtime.registry.describe(session_id)


@router.post("/sessions/{session_id}/rotate")
def rotate_token(session_id: str, runtime: Runtime = Depends(get_runtime)):
    token = runtime.registry.rotate_token(session_id)
    return {"session_id": session_id, "token": _token_payload(token)}


@router.post("/sessions/{session_id}/expire")
def expire_session(session_id: str, runtime: Runtime = Depends(get_runtime)):
    return _session_payload(runtime.registry.expire(session_id))


@router.get("/sessions/{session_id}/qr")
def session_qr(session_id: str, runtime: Runtime = Depends(get_runtime)):
    session = runtime.registry.get_session(session_id)
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(session.current_token.token_value)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buf = io.BytesIO()
    img.save(buf)
    return Response(
        content=buf.getvalue(),
        media_type="image/png",
        headers={"Cache-Control": "no-store"},
    )


@router.post("/sessions/{session_id}/photo")
async def upload_class_photo(
    session_id: str,
    file: UploadFile = File(...),
    runtime: Runtime = Depends(get_runtime),
):
    if file.content_type not in ("image/jpeg", "image/png"):
        raise HTTPException(status_code=400, detail="Upload JPG/PNG only.")

    data = await file.read()
    try:
        frame = decode_image(data)
    except FaceCaptureError:
        raise HTTPException(status_code=400, detail="Invalid image data.")

    matches = runtime.reconciliation.process_photo(session_id, frame)
    return _matches_response(session_id, matches)


@router.post("/sessions/{session_id}/photo/detections")
def submit_detections(
    session_id: str,
    payload: DetectionsIn,
    runtime: Runtime = Depends(get_runtime),
):
    detections = []
    for idx, item in enumerate(payload.detections):
        try:
            descriptor = to_descriptor(item.descriptor, length=DESCRIPTOR_LENGTH)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Detection {idx}: {exc}")
        detections.append(DetectedFace(bbox=item.bbox, descriptor=descriptor))

    matches = runtime.reconciliation.process_detections(session_id, detections)
    return _matches_response(session_id, matches)


@router.post("/sessions/{session_id}/finalize")
def finalize_session(
    session_id: str,
    payload: FinalizeIn | None = None,
    runtime: Runtime = Depends(get_runtime),
):
    overrides = payload.overrides if payload else None
    result = runtime.reconciliation.finalize(session_id, overrides=overrides)
    return {
        "session": _session_payload(result.session),
        "summary": result.summary,
        "roster": [
            {
                "student_id": e.student_id,
                "status": e.status,
                "verification": e.verification,
                "verified_by_scan": e.verified_by_scan,
                "verified_by_photo": e.verified_by_photo,
                "scan_distance": e.scan_distance,
                "photo_distance": e.photo_distance,
                "manually_marked": e.manually_marked,
            }
            for e in result.entries
        ],
    }
