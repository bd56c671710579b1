"""
Routes administration de la table de routing territorial
"""

from fastapi import APIRouter, HTTPException, Depends
from typing import Optional

from models import PincodeRoute, PincodeRouteUpsert
from config import db
from routes.auth import require_admin, require_manager
from services.territory_router import upsert_route, RouteConfigError

router = APIRouter(prefix="/pincode-routes", tags=["Routing"])


@router.get("")
async def list_routes(
    territory: Optional[str] = None,
    rep_user_id: Optional[str] = None,
    limit: int = 500,
    user: dict = Depends(require_manager)
):
    query = {}
    if territory:
        query["territory"] = territory
    if rep_user_id:
        query["$or"] = [{"rep_user_id": rep_user_id}, {"backup_rep_user_id": rep_user_id}]

    routes = await db.pincode_routes.find(
        query, {"_id": 0}
    ).sort("pincode", 1).limit(limit).to_list(limit)
    return {"routes": routes, "count": len(routes)}


@router.get("/{pincode}", response_model=PincodeRoute)
async def get_route_detail(pincode: str, user: dict = Depends(require_manager)):
    route = await db.pincode_routes.find_one({"pincode": pincode}, {"_id": 0})
    if not route:
        raise HTTPException(status_code=404, detail="No route for this pincode")
    return route


@router.put("/{pincode}")
async def put_route(
    pincode: str,
    data: PincodeRouteUpsert,
    user: dict = Depends(require_admin)
):
    try:
        route = await upsert_route(
            pincode, data.rep_user_id, data.backup_rep_user_id, data.territory
        )
    except RouteConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "route": route}
