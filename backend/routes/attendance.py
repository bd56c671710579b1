"""
Routes Attendance - pointages GPS
"""

from fastapi import APIRouter, Depends, HTTPException

from models import AttendanceRequest, AttendanceRecord, AttendanceType
from routes.auth import get_current_user
from services.attendance import record_attendance, AttendanceValidationError

router = APIRouter(prefix="/attendance", tags=["Attendance"])


async def _record(user: dict, attendance_type: str, data: AttendanceRequest) -> dict:
    try:
        record = await record_attendance(user["id"], attendance_type, data.model_dump())
    except AttendanceValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "success": True,
        "accepted": record["accepted"],
        "rejection_reasons": record["rejection_reasons"],
        "attendance": AttendanceRecord(**record).model_dump(mode="json"),
    }


@router.post("/check-in")
async def check_in(data: AttendanceRequest, user: dict = Depends(get_current_user)):
    return await _record(user, AttendanceType.CHECK_IN.value, data)


@router.post("/check-out")
async def check_out(data: AttendanceRequest, user: dict = Depends(get_current_user)):
    return await _record(user, AttendanceType.CHECK_OUT.value, data)
