"""
Routes pour les Leads
"""

from fastapi import APIRouter, HTTPException, Depends
from fastapi.responses import JSONResponse

from models import LeadIntake, LeadStatusUpdate, LeadReassign, UnroutedAssign, LeadDocument
from config import db
from routes.auth import get_current_user, require_manager, MANAGER_ROLES
from services.territory_router import intake_lead, LeadValidationError
from services.lead_lifecycle import (
    get_lead,
    record_first_touch,
    reassign_lead,
    update_lead_status,
    resolve_unrouted_lead,
    LeadNotFoundError,
    LeadPermissionError,
    InvalidTransitionError,
    ConcurrentModificationError,
)

router = APIRouter(tags=["Leads"])


def _lifecycle_http_error(e: Exception) -> HTTPException:
    if isinstance(e, LeadNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, LeadPermissionError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, ConcurrentModificationError):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


LIFECYCLE_ERRORS = (
    LeadNotFoundError,
    LeadPermissionError,
    InvalidTransitionError,
    ConcurrentModificationError,
)


# ==================== INTAKE (webhook public) ====================

@router.post("/webhooks/lead")
async def submit_lead(data: LeadIntake):
    """
    Intake d'un lead (site web, salons, referrals).

    - routed    → 200 {lead_id, owner_user_id, sla_due_at}
    - duplicate → 200, lead ouvert existant
    - unrouted  → 202 {unrouted_id}, visible dans /leads/unrouted
    - invalide  → 400 {code, error}
    """
    try:
        result = await intake_lead(data.model_dump())
    except LeadValidationError as e:
        raise HTTPException(status_code=400, detail=e.to_dict())

    if result.outcome == "unrouted":
        return JSONResponse(status_code=202, content=result.to_dict())
    return result.to_dict()


# ==================== FILE NON ROUTÉE ====================

@router.get("/leads/unrouted")
async def list_unrouted_leads(
    include_resolved: bool = False,
    limit: int = 100,
    user: dict = Depends(require_manager)
):
    query = {} if include_resolved else {"resolved_lead_id": None}
    items = await db.unrouted_leads.find(
        query, {"_id": 0}
    ).sort("created_at", 1).limit(limit).to_list(limit)
    total = await db.unrouted_leads.count_documents(query)
    return {"unrouted": items, "count": len(items), "total": total}


@router.post("/leads/unrouted/{unrouted_id}/assign")
async def assign_unrouted_lead(
    unrouted_id: str,
    data: UnroutedAssign,
    user: dict = Depends(require_manager)
):
    try:
        lead = await resolve_unrouted_lead(unrouted_id, data.user_id)
    except LIFECYCLE_ERRORS as e:
        raise _lifecycle_http_error(e)
    return {"success": True, "lead": lead}


# ==================== LEAD ====================

@router.get("/leads/{lead_id}", response_model=LeadDocument)
async def get_lead_detail(lead_id: str, user: dict = Depends(get_current_user)):
    lead = await db.leads.find_one({"id": lead_id}, {"_id": 0})
    if not lead:
        raise HTTPException(status_code=404, detail="Lead not found")
    if user.get("role") not in MANAGER_ROLES and lead.get("owner_user_id") != user["id"]:
        raise HTTPException(status_code=403, detail="Not the owner of this lead")
    return lead


@router.post("/leads/{lead_id}/first-touch")
async def first_touch(lead_id: str, user: dict = Depends(get_current_user)):
    """Le rep propriétaire signale son premier contact (arrête le SLA)"""
    try:
        lead = await record_first_touch(lead_id, user["id"])
    except LIFECYCLE_ERRORS as e:
        raise _lifecycle_http_error(e)
    return {"success": True, "lead": lead}


@router.post("/leads/{lead_id}/reassign")
async def reassign(
    lead_id: str,
    data: LeadReassign,
    user: dict = Depends(require_manager)
):
    try:
        lead = await reassign_lead(lead_id, data.user_id, user["id"])
    except LIFECYCLE_ERRORS as e:
        raise _lifecycle_http_error(e)
    return {"success": True, "lead": lead}


@router.patch("/leads/{lead_id}/status")
async def change_status(
    lead_id: str,
    data: LeadStatusUpdate,
    user: dict = Depends(get_current_user)
):
    try:
        lead = await get_lead(lead_id)
        if user.get("role") not in MANAGER_ROLES and lead.get("owner_user_id") != user["id"]:
            raise LeadPermissionError("Not the owner of this lead")
        lead = await update_lead_status(lead_id, data.status.value)
    except LIFECYCLE_ERRORS as e:
        raise _lifecycle_http_error(e)
    return {"success": True, "lead": lead}
