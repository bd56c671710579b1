"""
Artis Sales — API Routes Tests (FastAPI TestClient, base en mémoire)
Tests: webhook intake, first-touch, revue DSR, remédiation outbox, routing admin, pointages, jobs.
Run: cd backend && pytest tests/test_api_routes.py -v
"""

import asyncio
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from config import to_iso


def _db_op(coro):
    """Run async DB operation in a fresh event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def auth_h(user_id):
    return {"X-User-Id": user_id}


LEAD = {
    "source": "website",
    "name": "Ravi Kumar",
    "phone": "9876543210",
    "city": "Pune",
    "state": "Maharashtra",
    "pincode": "411001",
}


@pytest.fixture
def api(mock_db):
    _db_op(mock_db.users.insert_many([
        {"id": "rep_a", "name": "Rep A", "role": "rep", "is_active": True, "reports_to_user_id": "mgr_1"},
        {"id": "rep_b", "name": "Rep B", "role": "rep", "is_active": True, "reports_to_user_id": "mgr_1"},
        {"id": "mgr_1", "name": "Manager", "role": "area_manager", "is_active": True},
        {"id": "admin_1", "name": "Admin", "role": "admin", "is_active": True},
        {"id": "gone", "name": "Gone", "role": "rep", "is_active": False},
    ]))
    _db_op(mock_db.pincode_routes.insert_one({
        "pincode": "411001", "rep_user_id": "rep_a", "backup_rep_user_id": "rep_b",
        "territory": "Pune West", "updated_at": to_iso(datetime(2025, 1, 1, tzinfo=timezone.utc)),
    }))
    from server import app
    return TestClient(app)


# ═══════════════════════════════════════════════════════════════
# 1. LEADS
# ═══════════════════════════════════════════════════════════════

class TestLeadRoutes:
    def test_webhook_routes_lead(self, api):
        r = api.post("/api/webhooks/lead", json=LEAD)
        assert r.status_code == 200
        data = r.json()
        assert data["outcome"] == "routed"
        assert data["owner_user_id"] == "rep_a"
        assert data["lead_id"]
        assert data["sla_due_at"]

    def test_webhook_rejects_bad_pincode(self, api, mock_db):
        r = api.post("/api/webhooks/lead", json={**LEAD, "pincode": "01234"})
        assert r.status_code == 400
        assert r.json()["detail"]["code"] == "INVALID_PINCODE"
        assert _db_op(mock_db.leads.count_documents({})) == 0

    def test_webhook_unrouted(self, api):
        r = api.post("/api/webhooks/lead", json={**LEAD, "pincode": "999999"})
        assert r.status_code == 202
        assert r.json()["outcome"] == "unrouted"

        r = api.get("/api/leads/unrouted", headers=auth_h("mgr_1"))
        assert r.status_code == 200
        assert r.json()["count"] == 1

    def test_assign_unrouted(self, api):
        unrouted_id = api.post("/api/webhooks/lead", json={**LEAD, "pincode": "999999"}).json()["unrouted_id"]
        r = api.post(f"/api/leads/unrouted/{unrouted_id}/assign", json={"user_id": "rep_b"}, headers=auth_h("mgr_1"))
        assert r.status_code == 200
        assert r.json()["lead"]["owner_user_id"] == "rep_b"
        assert api.get("/api/leads/unrouted", headers=auth_h("mgr_1")).json()["count"] == 0

    def test_first_touch_requires_identity(self, api):
        lead_id = api.post("/api/webhooks/lead", json=LEAD).json()["lead_id"]
        assert api.post(f"/api/leads/{lead_id}/first-touch").status_code == 401
        assert api.post(f"/api/leads/{lead_id}/first-touch", headers=auth_h("gone")).status_code == 403

    def test_first_touch_by_owner(self, api):
        lead_id = api.post("/api/webhooks/lead", json=LEAD).json()["lead_id"]
        assert api.post(f"/api/leads/{lead_id}/first-touch", headers=auth_h("rep_b")).status_code == 403

        r = api.post(f"/api/leads/{lead_id}/first-touch", headers=auth_h("rep_a"))
        assert r.status_code == 200
        assert r.json()["lead"]["status"] == "contacted"

    def test_lead_visibility(self, api):
        lead_id = api.post("/api/webhooks/lead", json=LEAD).json()["lead_id"]
        assert api.get(f"/api/leads/{lead_id}", headers=auth_h("rep_a")).status_code == 200
        assert api.get(f"/api/leads/{lead_id}", headers=auth_h("rep_b")).status_code == 403
        assert api.get(f"/api/leads/{lead_id}", headers=auth_h("mgr_1")).status_code == 200
        assert api.get("/api/leads/unknown", headers=auth_h("mgr_1")).status_code == 404

    def test_reassign_requires_manager(self, api):
        lead_id = api.post("/api/webhooks/lead", json=LEAD).json()["lead_id"]
        assert api.post(f"/api/leads/{lead_id}/reassign", json={"user_id": "rep_b"},
                        headers=auth_h("rep_a")).status_code == 403
        r = api.post(f"/api/leads/{lead_id}/reassign", json={"user_id": "rep_b"}, headers=auth_h("mgr_1"))
        assert r.status_code == 200
        assert r.json()["lead"]["owner_user_id"] == "rep_b"

    def test_invalid_status_transition(self, api):
        lead_id = api.post("/api/webhooks/lead", json=LEAD).json()["lead_id"]
        r = api.patch(f"/api/leads/{lead_id}/status", json={"status": "won"}, headers=auth_h("rep_a"))
        assert r.status_code == 400
        r = api.patch(f"/api/leads/{lead_id}/status", json={"status": "contacted"}, headers=auth_h("rep_a"))
        assert r.status_code == 200


# ═══════════════════════════════════════════════════════════════
# 2. ROUTING ADMIN
# ═══════════════════════════════════════════════════════════════

class TestPincodeRoutes:
    def test_put_and_get(self, api):
        r = api.put("/api/pincode-routes/560001", json={"rep_user_id": "rep_b", "territory": "Blr"},
                    headers=auth_h("admin_1"))
        assert r.status_code == 200
        r = api.get("/api/pincode-routes/560001", headers=auth_h("mgr_1"))
        assert r.json()["rep_user_id"] == "rep_b"
        assert api.get("/api/pincode-routes", headers=auth_h("mgr_1")).json()["count"] == 2

    def test_backup_equal_primary_rejected(self, api):
        r = api.put("/api/pincode-routes/560001", json={"rep_user_id": "rep_a", "backup_rep_user_id": "rep_a"},
                    headers=auth_h("admin_1"))
        assert r.status_code == 400

    def test_admin_only(self, api):
        r = api.put("/api/pincode-routes/560001", json={"rep_user_id": "rep_b"}, headers=auth_h("mgr_1"))
        assert r.status_code == 403


# ═══════════════════════════════════════════════════════════════
# 3. OUTBOX & JOBS
# ═══════════════════════════════════════════════════════════════

class TestOutboxRoutes:
    def test_list_and_process(self, api):
        api.post("/api/webhooks/lead", json=LEAD)
        r = api.get("/api/outbox/events", params={"state": "pending"}, headers=auth_h("admin_1"))
        assert r.json()["total"] == 2

        r = api.post("/api/jobs/outbox", headers=auth_h("admin_1"))
        assert r.status_code == 200
        assert r.json()["results"]["processed"] == 2
        assert api.get("/api/outbox/events", params={"state": "processed"},
                       headers=auth_h("admin_1")).json()["total"] == 2

    def test_failed_view_and_requeue(self, api, mock_db):
        _db_op(mock_db.outbox_events.insert_one({
            "id": "evt_failed", "event_type": "LeadAssigned", "payload": {"lead_id": "x"},
            "created_at": to_iso(datetime(2025, 1, 1, tzinfo=timezone.utc)), "state": "failed",
            "retry_count": 5, "max_retries": 5, "error": "boom", "next_attempt_at": "",
            "lease_owner": None, "lease_until": None, "failed_at": to_iso(datetime(2025, 1, 2, tzinfo=timezone.utc)),
        }))
        r = api.get("/api/outbox/failed", headers=auth_h("admin_1"))
        assert [e["id"] for e in r.json()["events"]] == ["evt_failed"]

        r = api.post("/api/outbox/events/evt_failed/requeue", headers=auth_h("admin_1"))
        assert r.status_code == 200
        assert r.json()["event"]["state"] == "pending"
        assert r.json()["event"]["retry_count"] == 5

        assert api.post("/api/outbox/events/evt_failed/requeue", headers=auth_h("admin_1")).status_code == 400
        assert api.post("/api/outbox/events/nope/requeue", headers=auth_h("admin_1")).status_code == 404

    def test_outbox_admin_only(self, api):
        assert api.get("/api/outbox/events", headers=auth_h("rep_a")).status_code == 403

    def test_sla_sweep_job(self, api):
        r = api.post("/api/jobs/sla-sweep", headers=auth_h("admin_1"))
        assert r.status_code == 200
        assert r.json()["results"]["scanned"] == 0

    def test_dsr_job_rejects_bad_date(self, api):
        r = api.post("/api/jobs/dsr-compile", params={"date": "2025/02/10"}, headers=auth_h("admin_1"))
        assert r.status_code == 400

    def test_auto_checkout_job(self, api, mock_db):
        api.post("/api/attendance/check-in", json={"lat": 18.52, "lon": 73.85, "accuracy_m": 15},
                 headers=auth_h("rep_a"))
        r = api.post("/api/jobs/auto-checkout", headers=auth_h("admin_1"))
        assert r.status_code == 200
        assert r.json()["results"]["auto_checked_out"] == 1
        assert _db_op(mock_db.attendance.count_documents({"type": "check_out", "method": "auto"})) == 1

        assert api.post("/api/jobs/auto-checkout", headers=auth_h("rep_a")).status_code == 403
        r = api.post("/api/jobs/auto-checkout", params={"date": "10-02-2025"}, headers=auth_h("admin_1"))
        assert r.status_code == 400


# ═══════════════════════════════════════════════════════════════
# 4. DSR
# ═══════════════════════════════════════════════════════════════

class TestDSRRoutes:
    @pytest.fixture
    def compiled(self, api):
        r = api.post("/api/jobs/dsr-compile", params={"date": "2025-02-10"}, headers=auth_h("admin_1"))
        assert r.json()["results"]["compiled"] == 2
        return api

    def test_rep_sees_own_reports_only(self, compiled):
        r = compiled.get("/api/dsr", headers=auth_h("rep_a"))
        assert [rep["user_id"] for rep in r.json()["reports"]] == ["rep_a"]
        assert compiled.get("/api/dsr/rep_b_2025-02-10", headers=auth_h("rep_a")).status_code == 403
        assert compiled.get("/api/dsr", headers=auth_h("mgr_1")).json()["total"] == 2

    def test_review_flow(self, compiled):
        assert compiled.post("/api/dsr/rep_a_2025-02-10/review", json={"status": "approved"},
                             headers=auth_h("rep_a")).status_code == 403

        r = compiled.post("/api/dsr/rep_a_2025-02-10/review",
                          json={"status": "approved", "comments": "Good day"}, headers=auth_h("mgr_1"))
        assert r.status_code == 200
        assert r.json()["report"]["reviewed_by"] == "mgr_1"

        r = compiled.post("/api/dsr/rep_a_2025-02-10/review",
                          json={"status": "needs_revision"}, headers=auth_h("mgr_1"))
        assert r.status_code == 400
        assert r.json()["detail"]["code"] == "ALREADY_APPROVED"

    def test_review_unknown_report(self, compiled):
        r = compiled.post("/api/dsr/nobody_2025-02-10/review", json={"status": "approved"}, headers=auth_h("mgr_1"))
        assert r.status_code == 404

    def test_resubmit_flow(self, compiled):
        r = compiled.post("/api/dsr/rep_a_2025-02-10/resubmit", headers=auth_h("rep_a"))
        assert r.status_code == 400
        assert r.json()["detail"]["code"] == "INVALID_STATUS"

        compiled.post("/api/dsr/rep_a_2025-02-10/review",
                      json={"status": "needs_revision", "comments": "Add receipts"}, headers=auth_h("mgr_1"))

        r = compiled.post("/api/dsr/rep_a_2025-02-10/resubmit", headers=auth_h("rep_b"))
        assert r.status_code == 403
        assert r.json()["detail"]["code"] == "INSUFFICIENT_PERMISSIONS"

        r = compiled.post("/api/dsr/rep_a_2025-02-10/resubmit", headers=auth_h("rep_a"))
        assert r.status_code == 200
        assert r.json()["report"]["status"] == "pending"
        assert r.json()["report"]["resubmitted_at"]

    def test_resubmit_unknown_report(self, compiled):
        r = compiled.post("/api/dsr/rep_a_2024-01-01/resubmit", headers=auth_h("rep_a"))
        assert r.status_code == 404


# ═══════════════════════════════════════════════════════════════
# 5. ATTENDANCE
# ═══════════════════════════════════════════════════════════════

class TestAttendanceRoutes:
    def test_check_in_accepted(self, api):
        r = api.post("/api/attendance/check-in", json={"lat": 18.52, "lon": 73.85, "accuracy_m": 15},
                     headers=auth_h("rep_a"))
        assert r.status_code == 200
        assert r.json()["accepted"] is True

    def test_mocked_check_out_stored_as_suspect(self, api, mock_db):
        r = api.post("/api/attendance/check-out",
                     json={"lat": 18.52, "lon": 73.85, "accuracy_m": 15, "device_info": {"is_mocked": True}},
                     headers=auth_h("rep_a"))
        assert r.status_code == 200
        assert r.json()["accepted"] is False
        assert r.json()["rejection_reasons"] == ["mock_location"]
        assert _db_op(mock_db.attendance.count_documents({"suspect": True})) == 1

    def test_out_of_range(self, api):
        r = api.post("/api/attendance/check-in", json={"lat": 95, "lon": 73.85, "accuracy_m": 15},
                     headers=auth_h("rep_a"))
        assert r.status_code == 400
