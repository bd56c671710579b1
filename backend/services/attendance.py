"""
ARTIS SALES - Validation GPS des pointages (check-in / check-out)

Un pointage est ACCEPTÉ si:
- 0 < accuracy_m <= GPS_MAX_ACCURACY_M
- le device ne signale pas de position simulée (is_mocked)
- aucune heuristique de mock (précision sub-métrique, Null Island)

Un pointage rejeté est quand même stocké (suspect=true + raisons + snapshot device).
Le compilateur DSR l'exclut du check-in/out et le liste pour audit.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List

from pymongo.errors import DuplicateKeyError

import config
from config import db, to_iso, parse_iso, utc_now
from models.attendance import AttendanceType
from models.outbox import EventType
from services.outbox import append_event, transactional

logger = logging.getLogger("attendance")

# Aucune puce GPS grand public ne descend sous 1 m
MIN_PLAUSIBLE_ACCURACY_M = 1.0

ATTENDANCE_EVENTS = {
    AttendanceType.CHECK_IN.value: EventType.ATTENDANCE_CHECKED_IN,
    AttendanceType.CHECK_OUT.value: EventType.ATTENDANCE_CHECKED_OUT,
}


class AttendanceValidationError(Exception):
    """Coordonnées inexploitables: rien n'est stocké"""
    pass


def validate_attendance(
    lat: float,
    lon: float,
    accuracy_m: float,
    device_info: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Returns: {"accepted": bool, "reasons": [...]}
    Raises: AttendanceValidationError si lat/lon hors bornes
    """
    if lat is None or lon is None or not (-90 <= lat <= 90) or not (-180 <= lon <= 180):
        raise AttendanceValidationError(f"Coordinates out of range: lat={lat}, lon={lon}")

    device_info = device_info or {}
    reasons: List[str] = []

    if accuracy_m is None or accuracy_m <= 0:
        reasons.append("invalid_accuracy")
    elif accuracy_m > config.GPS_MAX_ACCURACY_M:
        reasons.append("low_accuracy")
    elif accuracy_m < MIN_PLAUSIBLE_ACCURACY_M:
        reasons.append("implausible_accuracy")

    if device_info.get("is_mocked"):
        reasons.append("mock_location")

    if lat == 0 and lon == 0:
        reasons.append("null_island")

    return {"accepted": not reasons, "reasons": reasons}


async def record_attendance(
    user_id: str,
    attendance_type: str,
    payload: Dict[str, Any],
    now: Optional[datetime] = None,
) -> Dict:
    """
    Stocke un pointage + event AttendanceChecked{In,Out} (même unité de travail).
    Idempotent sur request_id (retry réseau du mobile).
    """
    now = now or utc_now()
    if attendance_type not in ATTENDANCE_EVENTS:
        raise AttendanceValidationError(f"Invalid attendance type: {attendance_type}")

    request_id = payload.get("request_id")
    if request_id:
        existing = await db.attendance.find_one(
            {"user_id": user_id, "request_id": request_id}, {"_id": 0}
        )
        if existing:
            logger.info(f"Attendance request {request_id} already recorded for {user_id}")
            return existing

    device_info = payload.get("device_info") or {}
    verdict = validate_attendance(
        payload.get("lat"), payload.get("lon"), payload.get("accuracy_m"), device_info
    )

    record = {
        "id": str(uuid.uuid4()),
        "user_id": user_id,
        "type": attendance_type,
        "timestamp": to_iso(now),
        "lat": payload["lat"],
        "lon": payload["lon"],
        "accuracy_m": payload.get("accuracy_m"),
        "device_info": dict(device_info),
        "accepted": verdict["accepted"],
        "suspect": not verdict["accepted"],
        "rejection_reasons": verdict["reasons"],
        "request_id": request_id,
        "method": "gps",
    }

    try:
        async with transactional() as session:
            await db.attendance.insert_one(record, session=session)
            record.pop("_id", None)
            await append_event(
                ATTENDANCE_EVENTS[attendance_type],
                {
                    "attendance_id": record["id"],
                    "user_id": user_id,
                    "timestamp": record["timestamp"],
                    "accepted": record["accepted"],
                },
                session=session,
                now=now,
            )
    except DuplicateKeyError:
        # Même request_id inséré en parallèle
        existing = await db.attendance.find_one(
            {"user_id": user_id, "request_id": request_id}, {"_id": 0}
        )
        if existing:
            return existing
        raise

    if record["suspect"]:
        logger.warning(
            f"Suspect {attendance_type} for user {user_id}: {verdict['reasons']} "
            f"(accuracy={record['accuracy_m']}, device={record['device_info']})"
        )
    else:
        logger.info(f"{attendance_type} recorded for user {user_id}")
    return record


# ════════════════════════════════════════════════════════════════════════
# CHECK-OUT AUTOMATIQUE (fin de journée, avant la compilation DSR)
# ════════════════════════════════════════════════════════════════════════

def auto_checkout_request_id(date: str) -> str:
    """Un seul check-out auto par (rep, jour): l'index unique (user_id, request_id) le garantit"""
    return f"auto_checkout_{date}"


async def auto_checkout_user(user_id: str, date: str, timestamp: datetime, now: datetime) -> bool:
    """
    Écrit le check-out auto d'un rep.
    Returns: False si déjà présent (run précédent ou concurrent)
    """
    request_id = auto_checkout_request_id(date)
    record = {
        "id": str(uuid.uuid4()),
        "user_id": user_id,
        "type": AttendanceType.CHECK_OUT.value,
        "timestamp": to_iso(timestamp),
        "lat": None,
        "lon": None,
        "accuracy_m": None,
        "device_info": {},
        "accepted": True,
        "suspect": False,
        "rejection_reasons": [],
        "request_id": request_id,
        "method": "auto",
        "triggered_by": "end_of_day",
    }

    try:
        async with transactional() as session:
            await db.attendance.insert_one(record, session=session)
            await append_event(
                EventType.ATTENDANCE_CHECKED_OUT,
                {
                    "attendance_id": record["id"],
                    "user_id": user_id,
                    "timestamp": record["timestamp"],
                    "accepted": True,
                    "method": "auto",
                },
                session=session,
                now=now,
            )
    except DuplicateKeyError:
        return False
    return True


async def run_auto_checkout(date: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Check-out automatique des reps qui ont pointé leur arrivée (pointage accepté)
    sans pointer leur départ sur le jour local `date`.

    Returns: {"date", "checked_in", "auto_checked_out", "already_checked_out", "failed"}
    """
    from services.dsr_compiler import local_date_of, local_day_bounds, validate_report_date

    now = now or utc_now()
    date = validate_report_date(date) if date else local_date_of(now)
    start, end = local_day_bounds(date)
    window = {"$gte": start, "$lt": end}
    # Rejoué pour un jour passé: le check-out reste dans le jour local
    timestamp = min(now, parse_iso(end) - timedelta(seconds=1))

    checked_in = set()
    async for record in db.attendance.find(
        {"type": AttendanceType.CHECK_IN.value, "suspect": False, "timestamp": window},
        {"_id": 0, "user_id": 1},
    ):
        checked_in.add(record["user_id"])

    results = {
        "date": date,
        "checked_in": len(checked_in),
        "auto_checked_out": 0,
        "already_checked_out": 0,
        "failed": 0,
    }

    for user_id in sorted(checked_in):
        try:
            checked_out = await db.attendance.find_one(
                {
                    "user_id": user_id,
                    "type": AttendanceType.CHECK_OUT.value,
                    "suspect": False,
                    "timestamp": window,
                },
                {"_id": 0, "id": 1},
            )
            if checked_out or not await auto_checkout_user(user_id, date, timestamp, now):
                results["already_checked_out"] += 1
                continue
            results["auto_checked_out"] += 1
            logger.info(f"Auto check-out recorded for user {user_id} on {date}")
        except Exception as e:
            logger.error(f"Auto check-out failed for user {user_id} on {date}: {type(e).__name__}: {e}")
            results["failed"] += 1

    logger.info(f"Auto check-out completed: {results}")
    return results
