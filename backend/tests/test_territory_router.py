"""
Artis Sales — Territory Router Tests
Tests: validation intake, résolution owner (primary/backup/fallback), non routé, doublon.
Run: cd backend && pytest tests/test_territory_router.py -v
"""

import asyncio
from datetime import datetime, timezone, timedelta

import pytest

import config
from config import to_iso
from services.territory_router import (
    intake_lead,
    validate_lead_intake,
    resolve_owner,
    upsert_route,
    LeadValidationError,
    RouteConfigError,
)

T0 = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)


def _db_op(coro):
    """Run async DB operation in a fresh event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _payload(**overrides):
    payload = {
        "source": "website",
        "name": "Ravi Kumar",
        "phone": "98765 43210",
        "email": "Ravi@Example.com",
        "city": "Pune",
        "state": "Maharashtra",
        "pincode": "411001",
        "message": "Need a quote",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def routed_db(mock_db):
    _db_op(mock_db.users.insert_many([
        {"id": "rep_a", "name": "Rep A", "role": "rep", "is_active": True},
        {"id": "rep_b", "name": "Rep B", "role": "rep", "is_active": True},
        {"id": "rep_off", "name": "Rep Off", "role": "rep", "is_active": False},
        {"id": "rep_fallback", "name": "Fallback", "role": "rep", "is_active": True},
    ]))
    _db_op(mock_db.pincode_routes.insert_one({
        "pincode": "411001",
        "rep_user_id": "rep_a",
        "backup_rep_user_id": "rep_b",
        "territory": "Pune West",
        "updated_at": to_iso(T0),
    }))
    return mock_db


# ═══════════════════════════════════════════════════════════════
# 1. VALIDATION
# ═══════════════════════════════════════════════════════════════

class TestIntakeValidation:
    def test_normalizes_fields(self):
        cleaned = validate_lead_intake(_payload(name="  Ravi   Kumar "))
        assert cleaned["phone"] == "+919876543210"
        assert cleaned["name"] == "Ravi Kumar"
        assert cleaned["email"] == "ravi@example.com"

    def test_missing_fields(self):
        with pytest.raises(LeadValidationError) as exc:
            validate_lead_intake(_payload(name="", city=None))
        assert exc.value.code == "VALIDATION_ERROR"
        assert set(exc.value.details["missing"]) == {"name", "city"}

    def test_invalid_phone(self):
        with pytest.raises(LeadValidationError) as exc:
            validate_lead_intake(_payload(phone="12345"))
        assert exc.value.code == "INVALID_PHONE"

    def test_landline_style_number_rejected(self):
        with pytest.raises(LeadValidationError) as exc:
            validate_lead_intake(_payload(phone="5876543210"))
        assert exc.value.code == "INVALID_PHONE"

    @pytest.mark.parametrize("pincode", ["011001", "41100", "4110011", "41100A"])
    def test_invalid_pincode(self, pincode):
        with pytest.raises(LeadValidationError) as exc:
            validate_lead_intake(_payload(pincode=pincode))
        assert exc.value.code == "INVALID_PINCODE"

    def test_invalid_email(self):
        with pytest.raises(LeadValidationError) as exc:
            validate_lead_intake(_payload(email="not-an-email"))
        assert exc.value.code == "INVALID_EMAIL"

    def test_invalid_source(self):
        with pytest.raises(LeadValidationError) as exc:
            validate_lead_intake(_payload(source="billboard"))
        assert exc.value.code == "INVALID_SOURCE"

    def test_rejected_payload_writes_nothing(self, routed_db):
        with pytest.raises(LeadValidationError):
            _db_op(intake_lead(_payload(phone="000"), now=T0))
        assert _db_op(routed_db.leads.count_documents({})) == 0
        assert _db_op(routed_db.outbox_events.count_documents({})) == 0


# ═══════════════════════════════════════════════════════════════
# 2. ROUTING
# ═══════════════════════════════════════════════════════════════

class TestRouting:
    def test_routed_to_primary_with_sla(self, routed_db):
        result = _db_op(intake_lead(_payload(), now=T0))
        assert result.outcome == "routed"
        assert result.owner_user_id == "rep_a"

        lead = _db_op(routed_db.leads.find_one({"id": result.lead_id}, {"_id": 0}))
        assert lead["owner_user_id"] == "rep_a"
        assert lead["routing_mode"] == "primary"
        assert lead["territory"] == "Pune West"
        assert lead["status"] == "new"
        assert lead["sla_breached"] is False
        assert lead["first_touch_at"] is None
        assert lead["version"] == 1
        assert config.parse_iso(lead["sla_due_at"]) - config.parse_iso(lead["created_at"]) == timedelta(hours=4)
        assert lead["assignment_history"] == [
            {"user_id": "rep_a", "assigned_at": to_iso(T0), "reason": "initial"}
        ]

    def test_emits_created_and_assigned_events(self, routed_db):
        result = _db_op(intake_lead(_payload(), now=T0))
        events = _db_op(routed_db.outbox_events.find({}, {"_id": 0}).sort("created_at", 1).to_list(10))
        assert sorted(e["event_type"] for e in events) == ["LeadAssigned", "LeadCreated"]
        for event in events:
            assert event["payload"]["lead_id"] == result.lead_id
            assert event["state"] == "pending"
            assert event["retry_count"] == 0
            assert event["processed_at"] is None

    def test_inactive_primary_uses_backup(self, routed_db):
        _db_op(routed_db.users.update_one({"id": "rep_a"}, {"$set": {"is_active": False}}))
        result = _db_op(intake_lead(_payload(), now=T0))
        assert result.owner_user_id == "rep_b"
        assert result.routing_mode == "backup"

    def test_unrouted_pincode(self, routed_db):
        result = _db_op(intake_lead(_payload(pincode="999999"), now=T0))
        assert result.outcome == "unrouted"
        assert result.lead_id is None
        assert result.to_dict()["ok"] is False

        assert _db_op(routed_db.leads.count_documents({})) == 0
        assert _db_op(routed_db.outbox_events.count_documents({})) == 0
        unrouted = _db_op(routed_db.unrouted_leads.find_one({"id": result.unrouted_id}, {"_id": 0}))
        assert unrouted["pincode"] == "999999"
        assert unrouted["resolved_lead_id"] is None
        assert unrouted["payload"]["phone"] == "+919876543210"

    def test_fallback_rep(self, routed_db, monkeypatch):
        monkeypatch.setattr(config, "FALLBACK_REP_USER_ID", "rep_fallback")
        result = _db_op(intake_lead(_payload(pincode="999999"), now=T0))
        assert result.outcome == "routed"
        assert result.owner_user_id == "rep_fallback"
        assert result.routing_mode == "fallback"

    def test_inactive_fallback_is_unrouted(self, routed_db, monkeypatch):
        monkeypatch.setattr(config, "FALLBACK_REP_USER_ID", "rep_off")
        result = _db_op(intake_lead(_payload(pincode="999999"), now=T0))
        assert result.outcome == "unrouted"

    def test_resolution_is_deterministic(self, routed_db):
        first = _db_op(resolve_owner("411001"))
        second = _db_op(resolve_owner("411001"))
        assert first == second == {
            "owner_user_id": "rep_a",
            "routing_mode": "primary",
            "territory": "Pune West",
        }


# ═══════════════════════════════════════════════════════════════
# 3. DOUBLONS
# ═══════════════════════════════════════════════════════════════

class TestDuplicates:
    def test_open_lead_same_phone_is_duplicate(self, routed_db):
        first = _db_op(intake_lead(_payload(), now=T0))
        second = _db_op(intake_lead(_payload(phone="+91 98765 43210"), now=T0 + timedelta(minutes=5)))
        assert second.outcome == "duplicate"
        assert second.lead_id == first.lead_id
        assert _db_op(routed_db.leads.count_documents({})) == 1
        assert _db_op(routed_db.outbox_events.count_documents({})) == 2

    def test_closed_lead_allows_new_intake(self, routed_db):
        first = _db_op(intake_lead(_payload(), now=T0))
        _db_op(routed_db.leads.update_one({"id": first.lead_id}, {"$set": {"status": "lost"}}))
        second = _db_op(intake_lead(_payload(), now=T0 + timedelta(days=1)))
        assert second.outcome == "routed"
        assert second.lead_id != first.lead_id


# ═══════════════════════════════════════════════════════════════
# 4. ADMINISTRATION DES ROUTES
# ═══════════════════════════════════════════════════════════════

class TestRouteAdmin:
    def test_upsert_route(self, routed_db):
        route = _db_op(upsert_route("560001", "rep_b", "rep_a", " Bangalore  Central ", now=T0))
        assert route["territory"] == "Bangalore Central"
        stored = _db_op(routed_db.pincode_routes.find_one({"pincode": "560001"}, {"_id": 0}))
        assert stored["rep_user_id"] == "rep_b"
        assert stored["backup_rep_user_id"] == "rep_a"

    def test_backup_must_differ_from_primary(self, routed_db):
        with pytest.raises(RouteConfigError):
            _db_op(upsert_route("560001", "rep_a", "rep_a"))

    def test_primary_must_be_active(self, routed_db):
        with pytest.raises(RouteConfigError):
            _db_op(upsert_route("560001", "rep_off"))

    def test_invalid_pincode(self, routed_db):
        with pytest.raises(RouteConfigError):
            _db_op(upsert_route("056001", "rep_a"))
