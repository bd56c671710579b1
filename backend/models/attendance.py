"""
ARTIS SALES - Modèle Attendance (check-in / check-out GPS)

Un pointage rejeté n'est JAMAIS perdu: il est stocké avec suspect=true,
les raisons du rejet et le snapshot brut du device.
"""

from typing import Optional, List
from pydantic import BaseModel
from enum import Enum


class AttendanceType(str, Enum):
    CHECK_IN = "check_in"
    CHECK_OUT = "check_out"


class DeviceInfo(BaseModel):
    is_mocked: bool = False
    battery: Optional[float] = None
    timezone: Optional[str] = None


class AttendanceRequest(BaseModel):
    lat: float
    lon: float
    accuracy_m: float
    device_info: Optional[DeviceInfo] = None
    request_id: Optional[str] = None


class AttendanceRecord(BaseModel):
    id: str
    user_id: str
    type: AttendanceType
    timestamp: str
    # Check-out automatique de fin de journée: pas de GPS, method="auto"
    lat: Optional[float] = None
    lon: Optional[float] = None
    accuracy_m: Optional[float] = None
    device_info: dict = {}
    accepted: bool = True
    suspect: bool = False
    rejection_reasons: List[str] = []
    request_id: Optional[str] = None
    method: str = "gps"
    triggered_by: Optional[str] = None
