import sqlite3
import uuid

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel

from backend.config import DESCRIPTOR_LENGTH, FACES_DIR
from backend.errors import AttendanceError, FaceCaptureError
from backend.recognizer import decode_image
from backend.security import require_session
from backend.services.descriptors import to_descriptor
from backend.services.runtime import Runtime, get_runtime
from database.db import add_schedule, add_student, get_student

router = APIRouter(dependencies=[Depends(require_session)])


class StudentCreate(BaseModel):
    student_id: str
    name: str
    roll_number: str | None = None
    department_id: int | None = None
    section_id: int | None = None


class ScheduleCreate(BaseModel):
    schedule_id: int
    course_code: str | None = None
    department_id: int | None = None
    section_id: int | None = None


class FaceIn(BaseModel):
    descriptor: list[float]


@router.post("/students")
def create_student(payload: StudentCreate):
    student_id = payload.student_id.strip()
    name = payload.name.strip()
    if not student_id or not name:
        raise HTTPException(status_code=400, detail="student_id and name are required.")

    try:
        add_student(student_id, name, payload.roll_number, payload.department_id, payload.section_id)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Student ID already exists.")
    return {
        "student_id": student_id,
        "name": name,
        "roll_number": payload.roll_number,
        "department_id": payload.department_id,
        "section_id": payload.section_id,
    }


@router.post("/schedules")
def create_schedule(payload: ScheduleCreate):
    try:
        add_schedule(payload.schedule_id, payload.course_code, payload.department_id, payload.section_id)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Schedule already exists.")
    return payload.model_dump()


@router.post("/students/{student_id}/faces")
def register_face(student_id: str, payload: FaceIn, runtime: Runtime = Depends(get_runtime)):
    try:
        descriptor = to_descriptor(payload.descriptor, length=DESCRIPTOR_LENGTH)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    runtime.enrollment.append(student_id, descriptor)
    return runtime.enrollment.status(student_id)


# Save uploaded face images to assets/faces/<student_id>/
@router.post("/students/{student_id}/faces/image")
async def register_face_image(
    student_id: str,
    file: UploadFile = File(...),
    runtime: Runtime = Depends(get_runtime),
):
    if file.content_type not in ("image/jpeg", "image/png"):
        raise HTTPException(status_code=400, detail="Upload JPG/PNG only.")
    if not get_student(student_id):
        raise HTTPException(status_code=404, detail="Student not found.")

    data = await file.read()
    try:
        frame = decode_image(data)
    except FaceCaptureError:
        raise HTTPException(status_code=400, detail="Invalid image data.")

    # quality gates raise FaceCaptureError with the specific reason
    descriptor = runtime.face_model.embed(frame)

    save_dir = FACES_DIR / student_id
    save_dir.mkdir(parents=True, exist_ok=True)
    ext = ".jpg" if file.content_type == "image/jpeg" else ".png"
    out_path = save_dir / f"face_{uuid.uuid4().hex[:12]}{ext}"
    out_path.write_bytes(data)

    try:
        runtime.enrollment.append(student_id, descriptor, image_path=str(out_path))
    except AttendanceError:
        out_path.unlink(missing_ok=True)
        raise
    return {**runtime.enrollment.status(student_id), "image_path": str(out_path)}


@router.get("/students/{student_id}/faces")
def list_faces(student_id: str, runtime: Runtime = Depends(get_runtime)):
    if not get_student(student_id):
        raise HTTPException(status_code=404, detail="Student not found.")
    faces = runtime.enrollment.list_faces(student_id)
    return {"student_id": student_id, "total": len(faces), "faces": faces}


@router.get("/students/{student_id}/enrollment")
def enrollment_status(student_id: str, runtime: Runtime = Depends(get_runtime)):
    if not get_student(student_id):
        raise HTTPException(status_code=404, detail="Student not found.")
    return runtime.enrollment.status(student_id)
