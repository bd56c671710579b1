"""
Artis Sales - API Backend
Routing territorial des leads, SLA, outbox d'events, DSR quotidiens

Démarre avec:
    uvicorn server:app --host 0.0.0.0 --port 8001 --reload
"""

import os
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import config

# Configuration logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("artis_sales")

# Créer l'app
app = FastAPI(
    title="Artis Sales Core",
    description="Lead routing, SLA escalation, event outbox and daily sales reports",
    version="1.0.0"
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ==================== IMPORT DES ROUTES ====================

from routes import leads, pincode_routes, outbox, dsr, attendance, jobs  # noqa: E402

# Routes avec préfixe /api
app.include_router(leads.router, prefix="/api")
app.include_router(pincode_routes.router, prefix="/api")
app.include_router(outbox.router, prefix="/api")
app.include_router(dsr.router, prefix="/api")
app.include_router(attendance.router, prefix="/api")
app.include_router(jobs.router, prefix="/api")


# ==================== ROUTE RACINE ====================

@app.get("/")
async def root():
    return {
        "name": "Artis Sales Core API",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs"
    }


@app.get("/api/health")
async def health():
    await config.db.command("ping")
    return {"status": "ok", "timezone": config.APP_TIMEZONE}


# ==================== STARTUP ====================

async def ensure_indexes(db):
    await db.users.create_index("id", unique=True)
    await db.users.create_index([("role", 1), ("is_active", 1)])

    # Lead: création single-writer
    await db.leads.create_index("id", unique=True)
    await db.leads.create_index("phone")
    await db.leads.create_index([("sla_breached", 1), ("first_touch_at", 1), ("sla_due_at", 1)])
    await db.leads.create_index([("owner_user_id", 1), ("first_touch_at", 1)])
    await db.unrouted_leads.create_index("id", unique=True)
    await db.unrouted_leads.create_index("resolved_lead_id")

    await db.pincode_routes.create_index("pincode", unique=True)

    await db.outbox_events.create_index("id", unique=True)
    await db.outbox_events.create_index([("state", 1), ("next_attempt_at", 1), ("created_at", 1)])
    await db.notifications.create_index("id", unique=True)
    await db.lead_search_index.create_index("id", unique=True)

    await db.dsr_reports.create_index("id", unique=True)
    await db.dsr_reports.create_index([("date", 1), ("status", 1)])

    await db.attendance.create_index([("user_id", 1), ("timestamp", 1)])
    await db.attendance.create_index(
        [("user_id", 1), ("request_id", 1)],
        unique=True,
        partialFilterExpression={"request_id": {"$type": "string"}},
    )
    await db.visits.create_index([("user_id", 1), ("timestamp", 1)])
    await db.sheets_sales.create_index([("user_id", 1), ("date", 1)])
    await db.expenses.create_index([("user_id", 1), ("date", 1)])


@app.on_event("startup")
async def startup():
    logger.info("🚀 Artis Sales Core démarré")

    await ensure_indexes(config.db)
    logger.info("✅ Index MongoDB créés")

    if config.SCHEDULER_ENABLED:
        from scheduler_service import task_scheduler
        task_scheduler.start()


@app.on_event("shutdown")
async def shutdown():
    from scheduler_service import task_scheduler
    task_scheduler.stop()
    config.client.close()
    logger.info("Artis Sales Core arrêté")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
