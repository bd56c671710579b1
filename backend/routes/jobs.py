"""
Routes Jobs - déclenchement manuel des batchs (équivalent cron)
"""

from fastapi import APIRouter, Depends, HTTPException
from typing import Optional

from routes.auth import require_admin
from services.event_dispatcher import run_dispatcher
from services.sla_sweeper import run_sla_sweep
from services.dsr_compiler import compile_daily_reports
from services.attendance import run_auto_checkout

router = APIRouter(prefix="/jobs", tags=["Jobs"])


@router.post("/sla-sweep")
async def trigger_sla_sweep(user: dict = Depends(require_admin)):
    results = await run_sla_sweep()
    return {"success": True, "results": results}


@router.post("/outbox")
async def trigger_outbox(user: dict = Depends(require_admin)):
    results = await run_dispatcher()
    return {"success": True, "results": results}


@router.post("/dsr-compile")
async def trigger_dsr_compile(date: Optional[str] = None, user: dict = Depends(require_admin)):
    try:
        results = await compile_daily_reports(date=date)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "results": results}


@router.post("/auto-checkout")
async def trigger_auto_checkout(date: Optional[str] = None, user: dict = Depends(require_admin)):
    try:
        results = await run_auto_checkout(date=date)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "results": results}
