"""
Routes Outbox - vue opérationnelle des events (audit + remédiation)
"""

from fastapi import APIRouter, Depends, HTTPException
from typing import Optional

from config import db
from models import EventState, OutboxEvent
from routes.auth import require_admin
from services.event_dispatcher import requeue_event, EventStateError

router = APIRouter(prefix="/outbox", tags=["Outbox"])


@router.get("/events")
async def list_events(
    state: Optional[str] = None,
    event_type: Optional[str] = None,
    lead_id: Optional[str] = None,
    since: Optional[str] = None,
    limit: int = 100,
    skip: int = 0,
    user: dict = Depends(require_admin)
):
    """Liste les events avec filtres"""
    query = {}
    if state:
        query["state"] = state
    if event_type:
        query["event_type"] = event_type
    if lead_id:
        query["payload.lead_id"] = lead_id
    if since:
        query["created_at"] = {"$gte": since}

    events = await db.outbox_events.find(
        query, {"_id": 0}
    ).sort("created_at", -1).skip(skip).limit(limit).to_list(limit)

    total = await db.outbox_events.count_documents(query)

    return {"events": events, "count": len(events), "total": total}


@router.get("/failed")
async def list_failed_events(limit: int = 100, user: dict = Depends(require_admin)):
    """Events épuisés, en attente de remédiation manuelle"""
    query = {"state": EventState.FAILED.value}
    events = await db.outbox_events.find(
        query, {"_id": 0}
    ).sort("failed_at", -1).limit(limit).to_list(limit)
    total = await db.outbox_events.count_documents(query)
    return {"events": events, "count": len(events), "total": total}


@router.get("/events/{event_id}", response_model=OutboxEvent)
async def get_event(event_id: str, user: dict = Depends(require_admin)):
    """Détail d'un event"""
    event = await db.outbox_events.find_one({"id": event_id}, {"_id": 0})
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return event


@router.post("/events/{event_id}/requeue")
async def requeue(event_id: str, user: dict = Depends(require_admin)):
    try:
        event = await requeue_event(event_id, requeued_by=user["id"])
    except EventStateError as e:
        status = 404 if "not found" in str(e) else 400
        raise HTTPException(status_code=status, detail=str(e))
    return {"success": True, "event": event}
