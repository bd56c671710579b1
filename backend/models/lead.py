"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  ARTIS SALES - Modèle Lead                                                   ║
║                                                                              ║
║  RÈGLES FONDAMENTALES:                                                       ║
║  1. assignment_history contient TOUJOURS au moins une entrée                 ║
║  2. owner_user_id == assignment_history[-1].user_id                          ║
║  3. sla_breached passe false -> true UNE seule fois                          ║
║  4. Toute mutation d'assignation = compare-and-swap sur `version`            ║
║  5. Un lead n'est jamais supprimé                                            ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from typing import Optional, List, Dict, Any
from pydantic import BaseModel
from enum import Enum


class LeadSource(str, Enum):
    WEBSITE = "website"
    REFERRAL = "referral"
    COLD_CALL = "cold_call"
    EXHIBITION = "exhibition"
    OTHER = "other"


VALID_LEAD_SOURCES = [s.value for s in LeadSource]


class LeadStatus(str, Enum):
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    QUOTED = "quoted"
    WON = "won"
    LOST = "lost"


VALID_LEAD_TRANSITIONS = {
    "new": ["contacted", "lost"],
    "contacted": ["qualified", "lost"],
    "qualified": ["quoted", "lost"],
    "quoted": ["won", "lost"],
    "won": [],  # TERMINAL
    "lost": [],  # TERMINAL
}

OPEN_LEAD_STATUSES = ["new", "contacted", "qualified", "quoted"]


class AssignmentReason(str, Enum):
    INITIAL = "initial"
    SLA_EXPIRED = "sla_expired"
    MANUAL = "manual"


class RoutingMode(str, Enum):
    PRIMARY = "primary"
    BACKUP = "backup"          # primary inactive at intake
    FALLBACK = "fallback"      # no route, configured fallback rep
    MANUAL = "manual"          # resolved from the unrouted queue


class LeadIntake(BaseModel):
    """
    Payload webhook (site web, salons, etc.)
    Tous les champs sont optionnels ici: la validation métier
    (codes d'erreur explicites) est faite par validate_lead_intake.
    """
    source: Optional[str] = ""
    name: Optional[str] = ""
    phone: Optional[str] = ""
    email: Optional[str] = ""
    company: Optional[str] = ""
    city: Optional[str] = ""
    state: Optional[str] = ""
    pincode: Optional[str] = ""
    message: Optional[str] = ""


class AssignmentEntry(BaseModel):
    user_id: str
    assigned_at: str
    reason: AssignmentReason


class LeadDocument(BaseModel):
    """Structure complète d'un lead en base"""
    id: str
    source: LeadSource

    # Contact
    name: str
    phone: str
    email: str = ""
    company: str = ""
    city: str
    state: str
    pincode: str
    message: str = ""

    # Routing & statut
    status: LeadStatus = LeadStatus.NEW
    owner_user_id: str
    assignment_history: List[AssignmentEntry]
    routing_mode: RoutingMode = RoutingMode.PRIMARY
    territory: str = ""

    # SLA
    created_at: str
    sla_due_at: str
    first_touch_at: Optional[str] = None
    sla_breached: bool = False
    sla_breached_at: Optional[str] = None

    # Concurrence optimiste
    version: int = 1
    updated_at: str = ""

    extra: Dict[str, Any] = {}


class LeadStatusUpdate(BaseModel):
    status: LeadStatus


class LeadReassign(BaseModel):
    user_id: str


class UnroutedAssign(BaseModel):
    user_id: str
