"""
Routes DSR - lecture et revue manager
"""

from fastapi import APIRouter, Depends, HTTPException
from typing import Optional

from config import db
from models import DSRReport, DSRReview
from routes.auth import get_current_user, require_manager, MANAGER_ROLES
from services.dsr_compiler import review_dsr, resubmit_dsr, ReviewError

router = APIRouter(prefix="/dsr", tags=["DSR"])


@router.get("")
async def list_reports(
    user_id: Optional[str] = None,
    date: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    status: Optional[str] = None,
    reconciliation_required: Optional[bool] = None,
    limit: int = 100,
    skip: int = 0,
    user: dict = Depends(get_current_user)
):
    query = {}
    # Un rep ne voit que ses propres rapports
    if user.get("role") not in MANAGER_ROLES:
        query["user_id"] = user["id"]
    elif user_id:
        query["user_id"] = user_id

    if date:
        query["date"] = date
    elif date_from or date_to:
        query["date"] = {}
        if date_from:
            query["date"]["$gte"] = date_from
        if date_to:
            query["date"]["$lte"] = date_to
    if status:
        query["status"] = status
    if reconciliation_required is not None:
        query["reconciliation_required"] = reconciliation_required

    reports = await db.dsr_reports.find(
        query, {"_id": 0}
    ).sort([("date", -1), ("user_id", 1)]).skip(skip).limit(limit).to_list(limit)
    total = await db.dsr_reports.count_documents(query)

    return {"reports": reports, "count": len(reports), "total": total}


@router.get("/{report_id}", response_model=DSRReport)
async def get_report(report_id: str, user: dict = Depends(get_current_user)):
    report = await db.dsr_reports.find_one({"id": report_id}, {"_id": 0})
    if not report:
        raise HTTPException(status_code=404, detail="DSR report not found")
    if user.get("role") not in MANAGER_ROLES and report.get("user_id") != user["id"]:
        raise HTTPException(status_code=403, detail="Not your report")
    return report


@router.post("/{report_id}/review")
async def review_report(
    report_id: str,
    data: DSRReview,
    user: dict = Depends(require_manager)
):
    try:
        report = await review_dsr(report_id, user["id"], data.status.value, data.comments)
    except ReviewError as e:
        raise HTTPException(status_code=e.status_code, detail={"code": e.code, "error": e.message})
    return {"success": True, "report": report}


@router.post("/{report_id}/resubmit")
async def resubmit_report(report_id: str, user: dict = Depends(get_current_user)):
    """Le rep renvoie un rapport needs_revision en revue"""
    try:
        report = await resubmit_dsr(report_id, user["id"])
    except ReviewError as e:
        raise HTTPException(status_code=e.status_code, detail={"code": e.code, "error": e.message})
    return {"success": True, "report": report}
