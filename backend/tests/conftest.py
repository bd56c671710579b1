"""
Artis Sales — fixtures partagées.
Base MongoDB en mémoire (mongomock-motor) injectée dans chaque module qui
importe `db` depuis config.
"""

import importlib
import sys
from pathlib import Path

import pytest
from mongomock_motor import AsyncMongoMockClient

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

DB_MODULES = [
    "config",
    "services.outbox",
    "services.territory_router",
    "services.lead_lifecycle",
    "services.notifier",
    "services.event_handlers",
    "services.event_dispatcher",
    "services.sla_sweeper",
    "services.dsr_compiler",
    "services.attendance",
    "routes.auth",
    "routes.leads",
    "routes.pincode_routes",
    "routes.outbox",
    "routes.dsr",
]


@pytest.fixture
def mock_db(monkeypatch):
    import config
    from email_service import email_service

    database = AsyncMongoMockClient()["artis_sales_test"]
    for name in DB_MODULES:
        monkeypatch.setattr(importlib.import_module(name), "db", database)

    monkeypatch.setattr(config, "MONGO_TRANSACTIONS", False)
    monkeypatch.setattr(config, "APP_TIMEZONE", "Asia/Kolkata")
    monkeypatch.setattr(config, "FALLBACK_REP_USER_ID", "")
    monkeypatch.setattr(config, "PUSH_GATEWAY_URL", "")
    monkeypatch.setattr(config, "JOB_MAX_RUNTIME_SECONDS", 240)
    monkeypatch.setattr(email_service, "api_key", "")
    return database


@pytest.fixture
def sent_alerts(monkeypatch):
    """Capture les alertes critiques au lieu de les envoyer"""
    from email_service import email_service

    alerts = []

    def capture(alert_type, message, details=None):
        alerts.append({"type": alert_type, "message": message, "details": details or {}})
        return True

    monkeypatch.setattr(email_service, "send_critical_alert", capture)
    return alerts
