"""
ARTIS SALES - Modèle PincodeRoute (table de routing territorial)

Une ligne par pincode: rep principal + rep backup optionnel.
Lecture seule pour le router et le sweeper SLA.
"""

from typing import Optional
from pydantic import BaseModel


class PincodeRoute(BaseModel):
    pincode: str
    rep_user_id: str
    backup_rep_user_id: Optional[str] = None
    territory: str = ""
    updated_at: str = ""


class PincodeRouteUpsert(BaseModel):
    rep_user_id: str
    backup_rep_user_id: Optional[str] = None
    territory: str = ""
