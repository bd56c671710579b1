"""
Artis Sales — Attendance Validator Tests
Tests: verdict GPS, stockage des pointages suspects, idempotence request_id, event émis,
check-out automatique de fin de journée.
Run: cd backend && pytest tests/test_attendance.py -v
"""

import asyncio
from datetime import datetime, timezone, timedelta

import pytest

import config
from services.attendance import (
    validate_attendance,
    record_attendance,
    run_auto_checkout,
    AttendanceValidationError,
)
from config import to_iso

NOW = datetime(2025, 2, 10, 4, 0, tzinfo=timezone.utc)
PUNE = {"lat": 18.5204, "lon": 73.8567}


def _db_op(coro):
    """Run async DB operation in a fresh event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


# ═══════════════════════════════════════════════════════════════
# 1. VERDICT
# ═══════════════════════════════════════════════════════════════

class TestVerdict:
    def test_accurate_fix_accepted(self):
        verdict = validate_attendance(PUNE["lat"], PUNE["lon"], 12.5, {"is_mocked": False})
        assert verdict == {"accepted": True, "reasons": []}

    def test_threshold_is_inclusive(self):
        assert validate_attendance(PUNE["lat"], PUNE["lon"], config.GPS_MAX_ACCURACY_M)["accepted"] is True

    def test_low_accuracy_rejected(self):
        verdict = validate_attendance(PUNE["lat"], PUNE["lon"], config.GPS_MAX_ACCURACY_M + 1)
        assert verdict["accepted"] is False
        assert verdict["reasons"] == ["low_accuracy"]

    def test_mocked_location_rejected(self):
        verdict = validate_attendance(PUNE["lat"], PUNE["lon"], 10, {"is_mocked": True})
        assert verdict["reasons"] == ["mock_location"]

    def test_sub_metre_accuracy_suspicious(self):
        verdict = validate_attendance(PUNE["lat"], PUNE["lon"], 0.3)
        assert verdict["reasons"] == ["implausible_accuracy"]

    def test_zero_accuracy_invalid(self):
        assert validate_attendance(PUNE["lat"], PUNE["lon"], 0)["reasons"] == ["invalid_accuracy"]

    def test_null_island(self):
        verdict = validate_attendance(0, 0, 10)
        assert verdict["reasons"] == ["null_island"]

    @pytest.mark.parametrize("lat,lon", [(91, 10), (-91, 10), (10, 181), (10, -181)])
    def test_out_of_range_coordinates(self, lat, lon):
        with pytest.raises(AttendanceValidationError):
            validate_attendance(lat, lon, 10)


# ═══════════════════════════════════════════════════════════════
# 2. ENREGISTREMENT
# ═══════════════════════════════════════════════════════════════

class TestRecord:
    def test_accepted_check_in_with_event(self, mock_db):
        record = _db_op(record_attendance("rep_a", "check_in", {**PUNE, "accuracy_m": 8}, now=NOW))
        assert record["accepted"] is True
        assert record["suspect"] is False

        event = _db_op(mock_db.outbox_events.find_one({}, {"_id": 0}))
        assert event["event_type"] == "AttendanceCheckedIn"
        assert event["payload"]["attendance_id"] == record["id"]

    def test_rejected_fix_stored_as_suspect(self, mock_db):
        device = {"is_mocked": True, "battery": 0.42, "timezone": "Asia/Kolkata"}
        record = _db_op(record_attendance(
            "rep_a", "check_out", {**PUNE, "accuracy_m": 250, "device_info": device}, now=NOW
        ))
        stored = _db_op(mock_db.attendance.find_one({"id": record["id"]}, {"_id": 0}))
        assert stored["suspect"] is True
        assert stored["accepted"] is False
        assert set(stored["rejection_reasons"]) == {"low_accuracy", "mock_location"}
        assert stored["device_info"] == device

        event = _db_op(mock_db.outbox_events.find_one({}, {"_id": 0}))
        assert event["event_type"] == "AttendanceCheckedOut"
        assert event["payload"]["accepted"] is False

    def test_invalid_coordinates_store_nothing(self, mock_db):
        with pytest.raises(AttendanceValidationError):
            _db_op(record_attendance("rep_a", "check_in", {"lat": 120, "lon": 10, "accuracy_m": 5}, now=NOW))
        assert _db_op(mock_db.attendance.count_documents({})) == 0
        assert _db_op(mock_db.outbox_events.count_documents({})) == 0

    def test_same_request_id_recorded_once(self, mock_db):
        payload = {**PUNE, "accuracy_m": 8, "request_id": "req-1"}
        first = _db_op(record_attendance("rep_a", "check_in", payload, now=NOW))
        second = _db_op(record_attendance("rep_a", "check_in", payload, now=NOW))
        assert first["id"] == second["id"]
        assert _db_op(mock_db.attendance.count_documents({})) == 1
        assert _db_op(mock_db.outbox_events.count_documents({})) == 1

    def test_unknown_type(self, mock_db):
        with pytest.raises(AttendanceValidationError):
            _db_op(record_attendance("rep_a", "lunch", {**PUNE, "accuracy_m": 8}, now=NOW))


# ═══════════════════════════════════════════════════════════════
# 3. CHECK-OUT AUTOMATIQUE
# ═══════════════════════════════════════════════════════════════

DAY = "2025-02-10"
# 22h55 IST
END_OF_DAY = datetime(2025, 2, 10, 17, 25, tzinfo=timezone.utc)


def _checkouts(db, user_id):
    return _db_op(db.attendance.find(
        {"user_id": user_id, "type": "check_out"}, {"_id": 0}
    ).to_list(None))


class TestAutoCheckout:
    def test_forgetful_rep_checked_out(self, mock_db):
        _db_op(record_attendance("rep_a", "check_in", {**PUNE, "accuracy_m": 8}, now=NOW))
        results = _db_op(run_auto_checkout(now=END_OF_DAY))

        assert results["date"] == DAY
        assert results["checked_in"] == 1
        assert results["auto_checked_out"] == 1

        checkouts = _checkouts(mock_db, "rep_a")
        assert len(checkouts) == 1
        assert checkouts[0]["method"] == "auto"
        assert checkouts[0]["triggered_by"] == "end_of_day"
        assert checkouts[0]["accepted"] is True
        assert checkouts[0]["suspect"] is False
        assert checkouts[0]["lat"] is None
        assert checkouts[0]["timestamp"] == to_iso(END_OF_DAY)

        event = _db_op(mock_db.outbox_events.find_one({"event_type": "AttendanceCheckedOut"}, {"_id": 0}))
        assert event["payload"]["attendance_id"] == checkouts[0]["id"]
        assert event["payload"]["method"] == "auto"

    def test_rerun_is_idempotent(self, mock_db):
        _db_op(record_attendance("rep_a", "check_in", {**PUNE, "accuracy_m": 8}, now=NOW))
        _db_op(run_auto_checkout(now=END_OF_DAY))
        results = _db_op(run_auto_checkout(now=END_OF_DAY + timedelta(minutes=3)))

        assert results["auto_checked_out"] == 0
        assert results["already_checked_out"] == 1
        assert len(_checkouts(mock_db, "rep_a")) == 1
        assert _db_op(mock_db.outbox_events.count_documents({"event_type": "AttendanceCheckedOut"})) == 1

    def test_rep_who_checked_out_is_left_alone(self, mock_db):
        _db_op(record_attendance("rep_a", "check_in", {**PUNE, "accuracy_m": 8}, now=NOW))
        _db_op(record_attendance("rep_a", "check_out", {**PUNE, "accuracy_m": 8}, now=NOW + timedelta(hours=9)))
        results = _db_op(run_auto_checkout(now=END_OF_DAY))

        assert results["already_checked_out"] == 1
        assert [c["method"] for c in _checkouts(mock_db, "rep_a")] == ["gps"]

    def test_suspect_check_in_ignored(self, mock_db):
        device = {"is_mocked": True}
        _db_op(record_attendance("rep_a", "check_in", {**PUNE, "accuracy_m": 8, "device_info": device}, now=NOW))
        results = _db_op(run_auto_checkout(now=END_OF_DAY))

        assert results["checked_in"] == 0
        assert _checkouts(mock_db, "rep_a") == []

    def test_yesterday_check_in_not_closed_today(self, mock_db):
        _db_op(record_attendance("rep_a", "check_in", {**PUNE, "accuracy_m": 8}, now=NOW - timedelta(days=1)))
        results = _db_op(run_auto_checkout(now=END_OF_DAY))
        assert results["checked_in"] == 0

    def test_replay_for_past_day_stays_in_that_day(self, mock_db):
        _db_op(record_attendance("rep_a", "check_in", {**PUNE, "accuracy_m": 8}, now=NOW))
        _db_op(run_auto_checkout(date=DAY, now=END_OF_DAY + timedelta(days=2)))

        checkout = _checkouts(mock_db, "rep_a")[0]
        # 23h59m59s IST
        assert checkout["timestamp"] == to_iso(datetime(2025, 2, 10, 18, 29, 59, tzinfo=timezone.utc))

    def test_invalid_date(self, mock_db):
        with pytest.raises(ValueError):
            _db_op(run_auto_checkout(date="2025/02/10"))
