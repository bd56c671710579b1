"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  ARTIS SALES - SLA Escalation Sweeper                                        ║
║                                                                              ║
║  CRON: toutes les 5 minutes                                                  ║
║                                                                              ║
║  LEAD EN RETARD = first_touch_at null AND sla_breached=false                 ║
║                   AND sla_due_at <= now                                      ║
║                                                                              ║
║  1. Backup actif ≠ owner → réassignation (reason=sla_expired)                ║
║     + LeadSLAExpired + LeadAssigned                                          ║
║  2. Sinon → sla_breached=true + LeadSLAExpired (escalade notification)       ║
║                                                                              ║
║  Reprise sûre: le filtre sla_breached=false exclut les leads déjà traités,   ║
║  une seconde passe ne ré-escalade jamais.                                    ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
import time
from datetime import datetime
from typing import Optional, Dict, Any

import config
from config import db, to_iso, utc_now
from models.lead import AssignmentReason
from models.outbox import EventType
from services.lead_lifecycle import cas_update_lead, ConcurrentModificationError
from services.outbox import append_event, transactional
from services.store_retry import with_store_retry
from services.territory_router import get_route, is_rep_active

logger = logging.getLogger("sla_sweeper")

MAX_CAS_ATTEMPTS = 3


def overdue_filter(now: datetime) -> Dict[str, Any]:
    """Filtre d'éligibilité, réutilisé comme garde de l'update conditionnel"""
    return {
        "first_touch_at": None,
        "sla_breached": False,
        "sla_due_at": {"$lte": to_iso(now)},
    }


async def find_backup_owner(lead: Dict) -> Optional[str]:
    route = await get_route(lead.get("pincode", ""))
    if not route:
        return None
    backup = route.get("backup_rep_user_id")
    if not backup or backup == lead.get("owner_user_id"):
        return None
    if not await is_rep_active(backup):
        logger.warning(f"Backup rep {backup} for pincode {lead.get('pincode')} is inactive")
        return None
    return backup


async def escalate_lead(lead: Dict, now: datetime) -> str:
    """
    Escalade UN lead (CAS sur version).
    Returns: "reassigned" | "notified_only" | "skipped"
    """
    for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
        backup = await find_backup_owner(lead)
        breached_at = to_iso(now)
        previous_owner = lead.get("owner_user_id")

        update: Dict[str, Any] = {
            "$set": {
                "sla_breached": True,
                "sla_breached_at": breached_at,
                "updated_at": breached_at,
            }
        }
        if backup:
            update["$set"]["owner_user_id"] = backup
            update["$push"] = {
                "assignment_history": {
                    "user_id": backup,
                    "assigned_at": breached_at,
                    "reason": AssignmentReason.SLA_EXPIRED.value,
                }
            }

        try:
            async with transactional() as session:
                await cas_update_lead(lead, update, extra_filter=overdue_filter(now), session=session)
                await append_event(
                    EventType.LEAD_SLA_EXPIRED,
                    {
                        "lead_id": lead["id"],
                        "breached_owner_user_id": previous_owner,
                        "new_owner_user_id": backup,
                        "sla_due_at": lead.get("sla_due_at"),
                    },
                    session=session,
                    now=now,
                )
                if backup:
                    await append_event(
                        EventType.LEAD_ASSIGNED,
                        {
                            "lead_id": lead["id"],
                            "owner_user_id": backup,
                            "previous_owner_user_id": previous_owner,
                            "reason": AssignmentReason.SLA_EXPIRED.value,
                        },
                        session=session,
                        now=now,
                    )
        except ConcurrentModificationError:
            # Relire: touché / déjà escaladé → plus éligible
            fresh = await db.leads.find_one({"id": lead["id"], **overdue_filter(now)}, {"_id": 0})
            if not fresh:
                logger.info(f"Lead {lead['id']} no longer overdue after concurrent update, skipping")
                return "skipped"
            logger.info(f"Lead {lead['id']} modified concurrently, retry {attempt}/{MAX_CAS_ATTEMPTS}")
            lead = fresh
            continue

        if backup:
            logger.info(f"Lead {lead['id']} SLA expired: reassigned {previous_owner} -> {backup}")
            return "reassigned"
        logger.info(f"Lead {lead['id']} SLA expired: no backup, escalation by notification")
        return "notified_only"

    raise ConcurrentModificationError(f"Lead {lead['id']} kept changing during escalation")


async def run_sla_sweep(now: Optional[datetime] = None, limit: Optional[int] = None) -> Dict[str, int]:
    """
    Une passe du sweeper. Fonction pure de (données, now).

    Per-lead: erreurs isolées (logguées, comptées).
    Requête de sélection en échec (store down) → exception, run suivant reprend.
    """
    now = now or utc_now()
    limit = limit or config.SLA_SWEEP_LIMIT
    started = time.monotonic()

    overdue = await with_store_retry(
        lambda: db.leads.find(overdue_filter(now), {"_id": 0})
        .sort("sla_due_at", 1)
        .limit(limit)
        .to_list(limit),
        "sla_sweep.select",
    )

    results = {
        "scanned": len(overdue),
        "escalated": 0,
        "reassigned": 0,
        "notified_only": 0,
        "skipped": 0,
        "failed": 0,
        "deferred": 0,
    }

    for lead in overdue:
        if time.monotonic() - started > config.JOB_MAX_RUNTIME_SECONDS:
            results["deferred"] = results["scanned"] - (
                results["escalated"] + results["skipped"] + results["failed"]
            )
            logger.warning(f"SLA sweep hit its time budget, {results['deferred']} leads deferred to next run")
            break

        try:
            outcome = await with_store_retry(
                lambda lead=lead: escalate_lead(lead, now),
                f"sla_sweep.lead.{lead['id']}",
            )
        except Exception as e:
            results["failed"] += 1
            logger.error(f"SLA escalation failed for lead {lead.get('id')} (owner {lead.get('owner_user_id')}): {e}")
            continue

        if outcome == "skipped":
            results["skipped"] += 1
        else:
            results["escalated"] += 1
            results[outcome] += 1

    logger.info(f"SLA sweep done: {results}")
    return results
