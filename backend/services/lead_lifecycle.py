"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  ARTIS SALES - Cycle de vie Lead                                             ║
║                                                                              ║
║  Toute mutation des champs d'assignation passe par cas_update_lead():        ║
║  update conditionnel sur (id, version). Si la version a bougé → le lead      ║
║  a été modifié en parallèle → ConcurrentModificationError.                   ║
║                                                                              ║
║  Écrivains autorisés des champs d'assignation:                               ║
║  - territory_router (création)                                               ║
║  - sla_sweeper (escalade)                                                    ║
║  - reassign_lead (manuel)                                                    ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from datetime import datetime
from typing import Optional, Dict, Any

from config import db, to_iso, utc_now
from models.lead import (
    VALID_LEAD_TRANSITIONS,
    AssignmentReason,
    LeadStatus,
    RoutingMode,
)
from models.outbox import EventType
from services.outbox import append_event, transactional

logger = logging.getLogger("lead_lifecycle")


class LeadNotFoundError(Exception):
    pass


class ConcurrentModificationError(Exception):
    """Lead version changed between read and conditional write"""
    pass


class InvalidTransitionError(Exception):
    pass


class LeadPermissionError(Exception):
    pass


async def get_lead(lead_id: str) -> Dict:
    lead = await db.leads.find_one({"id": lead_id}, {"_id": 0})
    if not lead:
        raise LeadNotFoundError(f"Lead {lead_id} not found")
    return lead


async def cas_update_lead(
    lead: Dict,
    update: Dict[str, Any],
    extra_filter: Optional[Dict[str, Any]] = None,
    session=None,
) -> Dict:
    """
    Update conditionnel sur la version lue.
    `update` est un document d'update Mongo; $inc version est ajouté ici.

    Returns: le lead après update
    Raises: ConcurrentModificationError
    """
    query = {"id": lead["id"], "version": lead.get("version", 1)}
    if extra_filter:
        query.update(extra_filter)

    update = dict(update)
    update["$inc"] = {**update.get("$inc", {}), "version": 1}

    result = await db.leads.update_one(query, update, session=session)
    if result.matched_count == 0:
        raise ConcurrentModificationError(
            f"Lead {lead['id']} modified concurrently (expected version {lead.get('version', 1)})"
        )
    return await db.leads.find_one({"id": lead["id"]}, {"_id": 0}, session=session)


# ════════════════════════════════════════════════════════════════════════════
# FIRST TOUCH
# ════════════════════════════════════════════════════════════════════════════

async def record_first_touch(lead_id: str, user_id: str, now: Optional[datetime] = None) -> Dict:
    """
    Premier contact du rep propriétaire.
    Idempotent: un second appel renvoie le lead sans le modifier.
    """
    now = now or utc_now()
    lead = await get_lead(lead_id)

    if lead.get("owner_user_id") != user_id:
        raise LeadPermissionError(f"User {user_id} is not the owner of lead {lead_id}")

    if lead.get("first_touch_at"):
        return lead

    touched_at = to_iso(now)
    fields = {"first_touch_at": touched_at, "updated_at": touched_at}
    if lead.get("status") == LeadStatus.NEW.value:
        fields["status"] = LeadStatus.CONTACTED.value

    updated = await cas_update_lead(
        lead,
        {"$set": fields},
        extra_filter={"first_touch_at": None},
    )
    logger.info(f"First touch on lead {lead_id} by {user_id} at {touched_at}")
    return updated


# ════════════════════════════════════════════════════════════════════════════
# RÉASSIGNATION MANUELLE
# ════════════════════════════════════════════════════════════════════════════

async def reassign_lead(
    lead_id: str,
    new_owner_id: str,
    actor_id: str,
    now: Optional[datetime] = None,
) -> Dict:
    now = now or utc_now()
    lead = await get_lead(lead_id)

    if lead.get("status") in ("won", "lost"):
        raise InvalidTransitionError(f"Lead {lead_id} is closed ({lead['status']})")

    target = await db.users.find_one({"id": new_owner_id}, {"_id": 0, "is_active": 1})
    if not target or not target.get("is_active"):
        raise LeadPermissionError(f"Target rep {new_owner_id} is not an active user")

    if lead.get("owner_user_id") == new_owner_id:
        return lead

    assigned_at = to_iso(now)
    async with transactional() as session:
        updated = await cas_update_lead(
            lead,
            {
                "$set": {"owner_user_id": new_owner_id, "updated_at": assigned_at},
                "$push": {
                    "assignment_history": {
                        "user_id": new_owner_id,
                        "assigned_at": assigned_at,
                        "reason": AssignmentReason.MANUAL.value,
                    }
                },
            },
            session=session,
        )
        await append_event(
            EventType.LEAD_ASSIGNED,
            {
                "lead_id": lead_id,
                "owner_user_id": new_owner_id,
                "previous_owner_user_id": lead.get("owner_user_id"),
                "reason": AssignmentReason.MANUAL.value,
                "actor_user_id": actor_id,
            },
            session=session,
            now=now,
        )

    logger.info(f"Lead {lead_id} manually reassigned {lead.get('owner_user_id')} -> {new_owner_id} by {actor_id}")
    return updated


# ════════════════════════════════════════════════════════════════════════════
# STATUT
# ════════════════════════════════════════════════════════════════════════════

async def update_lead_status(lead_id: str, status: str, now: Optional[datetime] = None) -> Dict:
    now = now or utc_now()
    lead = await get_lead(lead_id)
    current = lead.get("status", LeadStatus.NEW.value)

    if status == current:
        return lead

    valid_next = VALID_LEAD_TRANSITIONS.get(current, [])
    if status not in valid_next:
        raise InvalidTransitionError(
            f"INVALID TRANSITION: lead {lead_id} cannot go from '{current}' to '{status}'. "
            f"Valid transitions from '{current}': {valid_next}"
        )

    updated_at = to_iso(now)
    fields = {"status": status, "updated_at": updated_at}
    # Sortir de "new" vaut premier contact
    if not lead.get("first_touch_at"):
        fields["first_touch_at"] = updated_at

    return await cas_update_lead(lead, {"$set": fields})


# ════════════════════════════════════════════════════════════════════════════
# LEADS NON ROUTÉS
# ════════════════════════════════════════════════════════════════════════════

async def resolve_unrouted_lead(unrouted_id: str, user_id: str, now: Optional[datetime] = None) -> Dict:
    """
    Assignation manuelle d'un lead non routé: crée le vrai lead
    (historique reason=manual) + LeadCreated + LeadAssigned.
    """
    from services.territory_router import build_lead_document, create_lead_with_events

    now = now or utc_now()
    unrouted = await db.unrouted_leads.find_one({"id": unrouted_id}, {"_id": 0})
    if not unrouted:
        raise LeadNotFoundError(f"Unrouted lead {unrouted_id} not found")
    if unrouted.get("resolved_lead_id"):
        return await get_lead(unrouted["resolved_lead_id"])

    target = await db.users.find_one({"id": user_id}, {"_id": 0, "is_active": 1})
    if not target or not target.get("is_active"):
        raise LeadPermissionError(f"Target rep {user_id} is not an active user")

    lead_doc = build_lead_document(
        unrouted["payload"],
        user_id,
        RoutingMode.MANUAL.value,
        "",
        now,
        reason=AssignmentReason.MANUAL.value,
    )

    claimed = await db.unrouted_leads.update_one(
        {"id": unrouted_id, "resolved_lead_id": None},
        {"$set": {"resolved_lead_id": lead_doc["id"], "resolved_at": to_iso(now)}},
    )
    if claimed.modified_count == 0:
        raise ConcurrentModificationError(f"Unrouted lead {unrouted_id} resolved concurrently")

    try:
        await create_lead_with_events(lead_doc, now)
    except Exception:
        # Libère la réservation: le lead reste visible dans la file non routée
        await db.unrouted_leads.update_one(
            {"id": unrouted_id, "resolved_lead_id": lead_doc["id"]},
            {"$set": {"resolved_lead_id": None, "resolved_at": None}},
        )
        raise

    logger.info(f"Unrouted lead {unrouted_id} resolved as lead {lead_doc['id']} for {user_id}")
    return lead_doc
