"""
ARTIS SALES - Territory Router

ORDRE DE RÉSOLUTION DU PROPRIÉTAIRE:
1. PincodeRoute.rep_user_id          si rep actif          → routing_mode=primary
2. PincodeRoute.backup_rep_user_id   si rep actif          → routing_mode=backup
3. FALLBACK_REP_USER_ID (config)     si rep actif          → routing_mode=fallback
4. Aucun                                                    → lead NON ROUTÉ

Un lead non routé n'est jamais assigné à null: il part dans unrouted_leads
et reste visible des opérateurs jusqu'à assignation manuelle.

Lead + LeadCreated + LeadAssigned sont écrits dans la même unité de travail.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional, Dict, Any

import config
from config import (
    db,
    to_iso,
    utc_now,
    sla_due_at,
    validate_phone_in,
    validate_pincode,
    validate_email,
    sanitize_string,
)
from models.lead import (
    VALID_LEAD_SOURCES,
    OPEN_LEAD_STATUSES,
    AssignmentReason,
    LeadStatus,
    RoutingMode,
)
from models.outbox import EventType
from services.outbox import append_event, transactional

logger = logging.getLogger("territory_router")

REQUIRED_INTAKE_FIELDS = ["source", "name", "phone", "city", "state", "pincode"]
OPTIONAL_INTAKE_FIELDS = ["email", "company", "message"]


class LeadValidationError(Exception):
    """Malformed intake payload, rejected before any write"""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"ok": False, "code": self.code, "error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class RoutingResult:
    """Resultat de l'intake d'un lead"""

    def __init__(
        self,
        outcome: str,
        lead_id: Optional[str] = None,
        owner_user_id: Optional[str] = None,
        sla_due_at: Optional[str] = None,
        routing_mode: Optional[str] = None,
        unrouted_id: Optional[str] = None,
        reason: str = "",
    ):
        self.outcome = outcome  # "routed" | "duplicate" | "unrouted"
        self.lead_id = lead_id
        self.owner_user_id = owner_user_id
        self.sla_due_at = sla_due_at
        self.routing_mode = routing_mode
        self.unrouted_id = unrouted_id
        self.reason = reason

    @property
    def routed(self) -> bool:
        return self.outcome == "routed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.outcome != "unrouted",
            "outcome": self.outcome,
            "lead_id": self.lead_id,
            "owner_user_id": self.owner_user_id,
            "sla_due_at": self.sla_due_at,
            "routing_mode": self.routing_mode,
            "unrouted_id": self.unrouted_id,
            "reason": self.reason,
        }


# ════════════════════════════════════════════════════════════════════════════
# VALIDATION (aucune écriture avant que tout soit valide)
# ════════════════════════════════════════════════════════════════════════════

def validate_lead_intake(payload: Dict[str, Any]) -> Dict[str, str]:
    """
    Valide et normalise un payload d'intake.

    Returns: dict nettoyé (phone normalisé +91XXXXXXXXXX)
    Raises: LeadValidationError
    """
    cleaned = {}
    for field in REQUIRED_INTAKE_FIELDS + OPTIONAL_INTAKE_FIELDS:
        value = payload.get(field)
        cleaned[field] = sanitize_string(value) if isinstance(value, str) else ""

    missing = [f for f in REQUIRED_INTAKE_FIELDS if not cleaned[f]]
    if missing:
        raise LeadValidationError(
            "VALIDATION_ERROR", "Missing required fields", {"missing": missing}
        )

    cleaned["source"] = cleaned["source"].lower()
    if cleaned["source"] not in VALID_LEAD_SOURCES:
        raise LeadValidationError(
            "INVALID_SOURCE",
            f"Invalid source: {cleaned['source']}",
            {"allowed": VALID_LEAD_SOURCES},
        )

    is_valid, phone = validate_phone_in(cleaned["phone"])
    if not is_valid:
        raise LeadValidationError("INVALID_PHONE", "Invalid phone number")
    cleaned["phone"] = phone

    if not validate_pincode(cleaned["pincode"]):
        raise LeadValidationError("INVALID_PINCODE", "Invalid pincode")

    if cleaned["email"]:
        if not validate_email(cleaned["email"]):
            raise LeadValidationError("INVALID_EMAIL", "Invalid email")
        cleaned["email"] = cleaned["email"].lower()

    return cleaned


# ════════════════════════════════════════════════════════════════════════════
# RÉSOLUTION DU PROPRIÉTAIRE
# ════════════════════════════════════════════════════════════════════════════

async def get_route(pincode: str) -> Optional[Dict]:
    return await db.pincode_routes.find_one({"pincode": pincode}, {"_id": 0})


async def is_rep_active(user_id: Optional[str]) -> bool:
    if not user_id:
        return False
    user = await db.users.find_one({"id": user_id}, {"_id": 0, "is_active": 1})
    return bool(user and user.get("is_active", False))


async def resolve_owner(pincode: str) -> Dict[str, Any]:
    """
    Déterministe pour un même snapshot de la table de routing.

    Returns: {"owner_user_id", "routing_mode", "territory"}
             owner_user_id=None si non routable
    """
    route = await get_route(pincode)
    territory = route.get("territory", "") if route else ""

    if route:
        if await is_rep_active(route.get("rep_user_id")):
            return {
                "owner_user_id": route["rep_user_id"],
                "routing_mode": RoutingMode.PRIMARY.value,
                "territory": territory,
            }
        backup = route.get("backup_rep_user_id")
        if await is_rep_active(backup):
            logger.warning(
                f"Primary rep {route.get('rep_user_id')} inactive for pincode {pincode}, using backup {backup}"
            )
            return {
                "owner_user_id": backup,
                "routing_mode": RoutingMode.BACKUP.value,
                "territory": territory,
            }

    fallback = config.FALLBACK_REP_USER_ID
    if fallback and await is_rep_active(fallback):
        logger.warning(f"No usable route for pincode {pincode}, using fallback rep {fallback}")
        return {
            "owner_user_id": fallback,
            "routing_mode": RoutingMode.FALLBACK.value,
            "territory": territory,
        }

    return {"owner_user_id": None, "routing_mode": None, "territory": territory}


# ════════════════════════════════════════════════════════════════════════════
# INTAKE
# ════════════════════════════════════════════════════════════════════════════

def build_lead_document(
    cleaned: Dict[str, str],
    owner_user_id: str,
    routing_mode: str,
    territory: str,
    now: datetime,
    reason: str = AssignmentReason.INITIAL.value,
) -> Dict[str, Any]:
    created = to_iso(now)
    return {
        "id": str(uuid.uuid4()),
        "source": cleaned["source"],
        "name": cleaned["name"],
        "phone": cleaned["phone"],
        "email": cleaned.get("email", ""),
        "company": cleaned.get("company", ""),
        "city": cleaned["city"],
        "state": cleaned["state"],
        "pincode": cleaned["pincode"],
        "message": cleaned.get("message", ""),
        "status": LeadStatus.NEW.value,
        "owner_user_id": owner_user_id,
        "assignment_history": [
            {"user_id": owner_user_id, "assigned_at": created, "reason": reason}
        ],
        "routing_mode": routing_mode,
        "territory": territory,
        "created_at": created,
        "sla_due_at": to_iso(sla_due_at(now)),
        "first_touch_at": None,
        "sla_breached": False,
        "sla_breached_at": None,
        "version": 1,
        "updated_at": created,
        "extra": {},
    }


async def create_lead_with_events(lead_doc: Dict[str, Any], now: datetime) -> None:
    """Lead + LeadCreated + LeadAssigned: tout ou rien"""
    async with transactional() as session:
        await db.leads.insert_one(lead_doc, session=session)
        lead_doc.pop("_id", None)
        await append_event(
            EventType.LEAD_CREATED,
            {
                "lead_id": lead_doc["id"],
                "owner_user_id": lead_doc["owner_user_id"],
                "source": lead_doc["source"],
                "city": lead_doc["city"],
                "pincode": lead_doc["pincode"],
            },
            session=session,
            now=now,
        )
        await append_event(
            EventType.LEAD_ASSIGNED,
            {
                "lead_id": lead_doc["id"],
                "owner_user_id": lead_doc["owner_user_id"],
                "previous_owner_user_id": None,
                "reason": lead_doc["assignment_history"][-1]["reason"],
            },
            session=session,
            now=now,
        )


async def find_open_duplicate(phone: str) -> Optional[Dict]:
    return await db.leads.find_one(
        {"phone": phone, "status": {"$in": OPEN_LEAD_STATUSES}},
        {"_id": 0, "id": 1, "owner_user_id": 1, "sla_due_at": 1, "routing_mode": 1},
    )


async def intake_lead(payload: Dict[str, Any], now: Optional[datetime] = None) -> RoutingResult:
    """
    Point d'entrée unique pour un nouveau lead.

    1. Validation (LeadValidationError → rien n'est écrit)
    2. Doublon ouvert même téléphone → outcome=duplicate
    3. Résolution propriétaire → lead + events
    4. Non routable → unrouted_leads, outcome=unrouted
    """
    now = now or utc_now()
    cleaned = validate_lead_intake(payload)

    existing = await find_open_duplicate(cleaned["phone"])
    if existing:
        logger.info(f"Duplicate open lead for phone {cleaned['phone']}: {existing['id']}")
        return RoutingResult(
            outcome="duplicate",
            lead_id=existing["id"],
            owner_user_id=existing.get("owner_user_id"),
            sla_due_at=existing.get("sla_due_at"),
            routing_mode=existing.get("routing_mode"),
            reason="open lead with same phone",
        )

    resolved = await resolve_owner(cleaned["pincode"])

    if not resolved["owner_user_id"]:
        unrouted = {
            "id": str(uuid.uuid4()),
            "payload": cleaned,
            "pincode": cleaned["pincode"],
            "reason": "no_route",
            "created_at": to_iso(now),
            "resolved_lead_id": None,
            "resolved_at": None,
        }
        await db.unrouted_leads.insert_one(unrouted)
        logger.warning(
            f"UNROUTED lead for pincode {cleaned['pincode']} (no route, no fallback) id={unrouted['id']}"
        )
        return RoutingResult(
            outcome="unrouted",
            unrouted_id=unrouted["id"],
            reason=f"No route for pincode {cleaned['pincode']}",
        )

    lead_doc = build_lead_document(
        cleaned,
        resolved["owner_user_id"],
        resolved["routing_mode"],
        resolved["territory"],
        now,
    )
    await create_lead_with_events(lead_doc, now)

    logger.info(
        f"Lead {lead_doc['id']} routed to {lead_doc['owner_user_id']} "
        f"({lead_doc['routing_mode']}), SLA due {lead_doc['sla_due_at']}"
    )
    return RoutingResult(
        outcome="routed",
        lead_id=lead_doc["id"],
        owner_user_id=lead_doc["owner_user_id"],
        sla_due_at=lead_doc["sla_due_at"],
        routing_mode=lead_doc["routing_mode"],
    )


# ════════════════════════════════════════════════════════════════════════════
# ADMINISTRATION DE LA TABLE DE ROUTING
# ════════════════════════════════════════════════════════════════════════════

class RouteConfigError(Exception):
    """PincodeRoute violating its invariants (primary active, backup != primary)"""
    pass


async def upsert_route(
    pincode: str,
    rep_user_id: str,
    backup_rep_user_id: Optional[str] = None,
    territory: str = "",
    now: Optional[datetime] = None,
) -> Dict:
    """Création / mise à jour d'une ligne de routing (outillage admin uniquement)"""
    now = now or utc_now()
    pincode = (pincode or "").strip()
    backup_rep_user_id = backup_rep_user_id or None

    if not validate_pincode(pincode):
        raise RouteConfigError(f"Invalid pincode: {pincode}")
    if not await is_rep_active(rep_user_id):
        raise RouteConfigError(f"Primary rep {rep_user_id} is not an active user")
    if backup_rep_user_id and backup_rep_user_id == rep_user_id:
        raise RouteConfigError("Backup rep must differ from primary rep")

    route = {
        "pincode": pincode,
        "rep_user_id": rep_user_id,
        "backup_rep_user_id": backup_rep_user_id,
        "territory": sanitize_string(territory),
        "updated_at": to_iso(now),
    }
    await db.pincode_routes.update_one({"pincode": pincode}, {"$set": route}, upsert=True)
    logger.info(f"Route {pincode} -> {rep_user_id} (backup {backup_rep_user_id}) saved")
    return route
