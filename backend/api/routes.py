"""REST API routes for AeroCheck."""

import logging

from fastapi import APIRouter, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel, ValidationError

from attendance.export import records_to_csv
from errors import AcquisitionError, LinkError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_identity = None
_ledger = None
_teacher = None
_student = None


def init_routes(identity, ledger, teacher, student) -> None:
    """Inject service dependencies into the routes module."""
    global _identity, _ledger, _teacher, _student
    _identity = identity
    _ledger = ledger
    _teacher = teacher
    _student = student


@router.get("/identity")
async def get_identity():
    return {"device_id": _identity.get_or_create()}


# --- Teacher ---

class TeacherSessionBody(BaseModel):
    room_code: str


@router.post("/teacher/session")
async def start_teacher_session(body: TeacherSessionBody):
    """Host the room and start broadcasting the beacon."""
    if not body.room_code.strip():
        raise HTTPException(status_code=400, detail="Room code is required")
    try:
        await _teacher.start(body.room_code)
    except (AcquisitionError, LinkError) as e:
        logger.warning(f"Could not start session for room {body.room_code}: {e}")
        raise HTTPException(status_code=503, detail=str(e))
    return _teacher.status()


@router.get("/teacher/session")
async def get_teacher_session():
    return _teacher.status()


@router.delete("/teacher/session")
async def stop_teacher_session():
    await _teacher.stop()
    return _teacher.status()


@router.post("/teacher/beacon/start")
async def start_beacon():
    try:
        await _teacher.transmitter.start()
    except AcquisitionError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"transmitting": _teacher.transmitter.is_transmitting}


@router.post("/teacher/beacon/stop")
async def stop_beacon():
    await _teacher.transmitter.stop()
    return {"transmitting": _teacher.transmitter.is_transmitting}


# --- Attendance ---

@router.get("/attendance/{room_code}")
async def list_attendance(room_code: str):
    records = _ledger.get_records(room_code)
    return {"records": [r.model_dump(by_alias=True) for r in records]}


@router.get("/attendance/{room_code}/export")
async def export_attendance(room_code: str):
    csv_text = records_to_csv(_ledger.get_records(room_code))
    filename = f"attendance_{room_code.strip().lower()}.csv"
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.delete("/attendance/{room_code}")
async def reset_attendance(room_code: str):
    await _ledger.reset(room_code)
    return {"status": "reset"}


# --- Student ---

class StudentSessionBody(BaseModel):
    name: str
    roll_number: str
    room_code: str


@router.post("/student/session")
async def join_student_session(body: StudentSessionBody):
    """Connect to the room's host and start listening for the beacon."""
    if not body.room_code.strip():
        raise HTTPException(status_code=400, detail="Room code is required")
    try:
        await _student.join(body.name, body.roll_number, body.room_code)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Name and roll number are required")
    return _student.status()


@router.get("/student/session")
async def get_student_session():
    return _student.status()


@router.post("/student/rearm")
async def rearm_detection():
    await _student.rearm()
    return _student.status()


@router.delete("/student/session")
async def leave_student_session():
    await _student.leave()
    return _student.status()
