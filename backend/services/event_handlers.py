"""
ARTIS SALES - Handlers des events outbox

Livraison at-least-once: chaque handler DOIT être idempotent.
- upserts clés par id déterministe
- marqueurs d'activité en $max (rejouer un vieil event ne recule jamais)
- notifications clés {event_id}:{user_id}

Un handler signale un échec en levant une exception: le dispatcher
incrémente retry_count et replanifie.
"""

import logging
from typing import Dict, Any, Callable, Awaitable

from config import db, now_iso
from email_service import email_service
from models.outbox import EventType
from services.notifier import send_push

logger = logging.getLogger("event_handlers")

Handler = Callable[[Dict[str, Any]], Awaitable[None]]


class HandlerInputError(Exception):
    """Event payload references data that does not exist"""
    pass


class EmailDeliveryError(Exception):
    pass


async def _get_user(user_id: str) -> Dict:
    if not user_id:
        raise HandlerInputError("Missing user id in payload")
    user = await db.users.find_one({"id": user_id}, {"_id": 0})
    if not user:
        raise HandlerInputError(f"User {user_id} not found")
    return user


async def _get_lead(lead_id: str) -> Dict:
    lead = await db.leads.find_one({"id": lead_id}, {"_id": 0})
    if not lead:
        raise HandlerInputError(f"Lead {lead_id} not found")
    return lead


# ==================== LEADS ====================

async def handle_lead_created(event: Dict[str, Any]) -> None:
    """Indexation recherche (upsert par lead id)"""
    lead = await _get_lead(event["payload"].get("lead_id"))
    await db.lead_search_index.update_one(
        {"id": lead["id"]},
        {"$set": {
            "id": lead["id"],
            "name": lead.get("name", ""),
            "phone": lead.get("phone", ""),
            "company": lead.get("company", ""),
            "city": lead.get("city", ""),
            "pincode": lead.get("pincode", ""),
            "source": lead.get("source", ""),
            "indexed_at": now_iso(),
        }},
        upsert=True,
    )


async def handle_lead_assigned(event: Dict[str, Any]) -> None:
    """Push au nouveau propriétaire"""
    payload = event["payload"]
    lead = await _get_lead(payload.get("lead_id"))
    owner = await _get_user(payload.get("owner_user_id"))

    if payload.get("reason") == "sla_expired":
        title = "Escalated Lead Assigned"
    else:
        title = "New Lead Assigned"

    await send_push(
        event["id"],
        owner,
        title,
        f"{lead.get('name', '')} from {lead.get('city', '')}",
        {"lead_id": lead["id"], "type": "new_lead"},
    )


async def handle_lead_sla_expired(event: Dict[str, Any]) -> None:
    """
    Escalade manager: push + email.
    Le manager est celui du rep qui a laissé passer le SLA.
    """
    payload = event["payload"]
    lead = await _get_lead(payload.get("lead_id"))
    rep = await _get_user(payload.get("breached_owner_user_id"))

    manager_id = rep.get("reports_to_user_id")
    if not manager_id:
        logger.warning(f"Rep {rep['id']} has no manager, SLA breach on lead {lead['id']} logged only")
        return

    manager = await _get_user(manager_id)
    await send_push(
        event["id"],
        manager,
        "SLA Breach Alert",
        f"Lead from {lead.get('name', '')} missed the response SLA",
        {"lead_id": lead["id"], "rep_user_id": rep["id"], "type": "sla_breach"},
    )

    if manager.get("email"):
        # Marqué envoyé seulement après succès SendGrid: un échec repasse par les retries outbox
        alert_key = f"{event['id']}:email"
        already_sent = await db.notifications.find_one(
            {"id": alert_key, "sent_at": {"$ne": None}}, {"_id": 0, "id": 1}
        )
        if already_sent:
            return

        sent = email_service.send_sla_breach_alert(
            manager["email"],
            lead,
            rep.get("name", rep["id"]),
            payload.get("new_owner_user_id"),
        )
        if not sent and email_service.api_key:
            raise EmailDeliveryError(f"SLA breach email to {manager['email']} failed for lead {lead['id']}")

        await db.notifications.update_one(
            {"id": alert_key},
            {
                "$set": {"channel": "email", "sent_at": now_iso() if sent else None},
                "$setOnInsert": {"event_id": event["id"], "created_at": now_iso()},
            },
            upsert=True,
        )


# ==================== VISITES ====================

async def handle_visit_started(event: Dict[str, Any]) -> None:
    payload = event["payload"]
    await db.users.update_one(
        {"id": payload.get("user_id")},
        {"$max": {"last_active_at": payload.get("timestamp") or event["created_at"]}},
    )


async def handle_visit_ended(event: Dict[str, Any]) -> None:
    payload = event["payload"]
    at = payload.get("timestamp") or event["created_at"]
    if payload.get("account_id"):
        await db.accounts.update_one(
            {"id": payload["account_id"]},
            {"$max": {"last_visit_at": at}},
        )
    await db.users.update_one(
        {"id": payload.get("user_id")},
        {"$max": {"last_active_at": at}},
    )


# ==================== ATTENDANCE ====================

async def handle_attendance_checked_in(event: Dict[str, Any]) -> None:
    payload = event["payload"]
    at = payload.get("timestamp") or event["created_at"]
    await db.users.update_one(
        {"id": payload.get("user_id")},
        {"$max": {"last_active_at": at, "last_check_in_at": at}},
    )


async def handle_attendance_checked_out(event: Dict[str, Any]) -> None:
    payload = event["payload"]
    at = payload.get("timestamp") or event["created_at"]
    await db.users.update_one(
        {"id": payload.get("user_id")},
        {"$max": {"last_active_at": at, "last_check_out_at": at}},
    )


HANDLERS: Dict[str, Handler] = {
    EventType.LEAD_CREATED.value: handle_lead_created,
    EventType.LEAD_ASSIGNED.value: handle_lead_assigned,
    EventType.LEAD_SLA_EXPIRED.value: handle_lead_sla_expired,
    EventType.VISIT_STARTED.value: handle_visit_started,
    EventType.VISIT_ENDED.value: handle_visit_ended,
    EventType.ATTENDANCE_CHECKED_IN.value: handle_attendance_checked_in,
    EventType.ATTENDANCE_CHECKED_OUT.value: handle_attendance_checked_out,
}


def get_handler(event_type: str) -> Handler:
    handler = HANDLERS.get(event_type)
    if handler is None:
        raise HandlerInputError(f"No handler registered for event type {event_type}")
    return handler
