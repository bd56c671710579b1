"""
ARTIS SALES - Identité de l'appelant

L'authentification est faite en amont (gateway / app mobile):
l'utilisateur arrive dans le header X-User-Id, ses rôles sont lus dans `users`.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException

from config import db

MANAGER_ROLES = ("area_manager", "zonal_head", "national_head", "admin")
ADMIN_ROLES = ("admin",)


# ==================== HELPERS ====================

async def get_current_user(x_user_id: Optional[str] = Header(None)):
    """Récupère l'utilisateur appelant depuis X-User-Id."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")

    user = await db.users.find_one({"id": x_user_id}, {"_id": 0})
    if not user:
        raise HTTPException(status_code=401, detail="Unknown user")

    if not user.get("is_active", False):
        raise HTTPException(status_code=403, detail="User is inactive")

    return user


async def require_manager(user: dict = Depends(get_current_user)):
    """Manager (tout niveau) ou admin."""
    if user.get("role") not in MANAGER_ROLES:
        raise HTTPException(status_code=403, detail="Manager access required")
    return user


async def require_admin(user: dict = Depends(get_current_user)):
    if user.get("role") not in ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
