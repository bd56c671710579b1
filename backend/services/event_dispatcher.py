"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  ARTIS SALES - Event Dispatcher                                              ║
║                                                                              ║
║  CRON: toutes les minutes (+ déclenchement manuel /api/jobs/outbox)          ║
║                                                                              ║
║  1. Sélection: state=pending AND next_attempt_at <= now, tri created_at      ║
║  2. Claim: lease conditionnel (lease_owner / lease_until)                    ║
║  3. Handler OK    → processed (processed_at, processed_by, error=null)       ║
║     Handler KO    → retry_count+1, error, backoff                            ║
║     retry épuisés → failed + alerte (remédiation manuelle, requeue)          ║
║                                                                              ║
║  Sémantique: AT-LEAST-ONCE. Ordre = indicatif (created_at), pas garanti.     ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
import socket
import uuid
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

import config
from config import db, to_iso, utc_now, OUTBOX_MAX_RETRIES
from email_service import email_service
from models.outbox import EventState, VALID_EVENT_TRANSITIONS
from services.event_handlers import get_handler

logger = logging.getLogger("event_dispatcher")

RETRY_DELAYS = [60, 300, 900, 3600, 7200]  # 1min, 5min, 15min, 1h, 2h


class EventStateError(Exception):
    pass


def default_worker_id() -> str:
    return f"dispatcher@{socket.gethostname()}:{uuid.uuid4().hex[:8]}"


def get_next_attempt_time(retry_count: int, now: datetime) -> datetime:
    """Backoff basé sur le nombre d'échecs déjà subis"""
    delay_index = min(max(retry_count - 1, 0), len(RETRY_DELAYS) - 1)
    return now + timedelta(seconds=RETRY_DELAYS[delay_index])


async def claim_event(event: Dict, worker_id: str, now: datetime) -> Optional[Dict]:
    """
    Pose un lease sur l'event. None si déjà traité ou tenu par un autre worker.
    Un lease expiré (worker crashé) est repris.
    """
    now_str = to_iso(now)
    lease_until = to_iso(now + timedelta(seconds=config.OUTBOX_LEASE_SECONDS))
    result = await db.outbox_events.update_one(
        {
            "id": event["id"],
            "state": EventState.PENDING.value,
            "$or": [
                {"lease_until": None},
                {"lease_until": {"$lte": now_str}},
            ],
        },
        {"$set": {"lease_owner": worker_id, "lease_until": lease_until}},
    )
    if result.matched_count == 0:
        return None
    return await db.outbox_events.find_one(
        {"id": event["id"], "lease_owner": worker_id}, {"_id": 0}
    )


async def mark_event_processed(event: Dict, worker_id: str, now: datetime) -> bool:
    """pending → processed. Terminal: plus jamais modifié ensuite."""
    result = await db.outbox_events.update_one(
        {"id": event["id"], "state": EventState.PENDING.value, "lease_owner": worker_id},
        {"$set": {
            "state": EventState.PROCESSED.value,
            "processed_at": to_iso(now),
            "processed_by": worker_id,
            "error": None,
            "lease_owner": None,
            "lease_until": None,
        }},
    )
    return result.modified_count == 1


async def mark_event_failed_attempt(event: Dict, worker_id: str, error: str, now: datetime) -> str:
    """
    Enregistre un échec. Returns le nouvel état ("pending" ou "failed"),
    ou "lost_lease" si le lease a été repris par un autre worker (rien n'est écrit).
    """
    retry_count = event.get("retry_count", 0) + 1
    max_retries = event.get("max_retries", OUTBOX_MAX_RETRIES)

    if retry_count >= max_retries:
        new_state = EventState.FAILED.value
        update = {
            "state": new_state,
            "retry_count": retry_count,
            "error": error,
            "failed_at": to_iso(now),
            "lease_owner": None,
            "lease_until": None,
        }
    else:
        new_state = EventState.PENDING.value
        update = {
            "retry_count": retry_count,
            "error": error,
            "next_attempt_at": to_iso(get_next_attempt_time(retry_count, now)),
            "lease_owner": None,
            "lease_until": None,
        }

    result = await db.outbox_events.update_one(
        {"id": event["id"], "state": EventState.PENDING.value, "lease_owner": worker_id},
        {"$set": update},
    )
    if result.matched_count == 0:
        return "lost_lease"
    return new_state


def report_exhausted_event(event: Dict, error: str) -> None:
    logger.error(
        f"Event {event['id']} ({event['event_type']}) EXHAUSTED after "
        f"{event.get('retry_count', 0) + 1} attempts: {error}"
    )
    email_service.send_critical_alert(
        "OUTBOX_EXHAUSTED",
        f"Event {event['event_type']} épuisé, remédiation manuelle requise",
        {
            "event_id": event["id"],
            "event_type": event["event_type"],
            "created_at": event.get("created_at"),
            "error": error,
        },
    )


async def dispatch_event(event: Dict, worker_id: str, now: datetime) -> str:
    """
    Traite UN event déjà claimé.
    Returns: "processed" | "retry" | "failed" | "lost_lease"
    """
    try:
        handler = get_handler(event["event_type"])
        await handler(event)
    except Exception as e:
        error = f"{type(e).__name__}: {e}"
        logger.warning(f"Handler failed for event {event['id']} ({event['event_type']}): {error}")
        new_state = await mark_event_failed_attempt(event, worker_id, error, now)
        if new_state == "lost_lease":
            logger.warning(f"Lost lease on event {event['id']} before recording the failure")
            return "lost_lease"
        if new_state == EventState.FAILED.value:
            report_exhausted_event(event, error)
            return "failed"
        return "retry"

    if not await mark_event_processed(event, worker_id, now):
        # Lease expiré et repris ailleurs: l'autre worker finira (handlers idempotents)
        logger.warning(f"Lost lease on event {event['id']} before marking it processed")
        return "lost_lease"
    return "processed"


async def run_dispatcher(
    now: Optional[datetime] = None,
    worker_id: Optional[str] = None,
    limit: Optional[int] = None,
) -> Dict[str, int]:
    """
    Une passe du dispatcher. Sans état entre deux passes.
    """
    now = now or utc_now()
    worker_id = worker_id or default_worker_id()
    limit = limit or config.OUTBOX_BATCH_SIZE

    due = await db.outbox_events.find(
        {
            "state": EventState.PENDING.value,
            "next_attempt_at": {"$lte": to_iso(now)},
        },
        {"_id": 0},
    ).sort("created_at", 1).limit(limit).to_list(limit)

    results = {"selected": len(due), "processed": 0, "retried": 0, "failed": 0, "skipped": 0}
    if not due:
        return results

    for event in due:
        try:
            claimed = await claim_event(event, worker_id, now)
            if not claimed:
                results["skipped"] += 1
                continue

            outcome = await dispatch_event(claimed, worker_id, now)
        except Exception as e:
            # Erreur store sur cet event: isolé, l'event reste pending (lease expirera)
            logger.error(f"Dispatcher error on event {event.get('id')}: {e}")
            results["skipped"] += 1
            continue

        if outcome == "processed":
            results["processed"] += 1
        elif outcome == "retry":
            results["retried"] += 1
        elif outcome == "failed":
            results["failed"] += 1
        else:
            results["skipped"] += 1

    if results["retried"] or results["failed"]:
        logger.info(f"Outbox pass: {results}")
    return results


# ════════════════════════════════════════════════════════════════════════════
# REMÉDIATION MANUELLE
# ════════════════════════════════════════════════════════════════════════════

async def requeue_event(event_id: str, requeued_by: str = "system", now: Optional[datetime] = None) -> Dict:
    """
    failed → pending avec un nouveau budget de retries.
    retry_count n'est PAS remis à zéro (monotone), max_retries est étendu.
    """
    now = now or utc_now()
    event = await db.outbox_events.find_one({"id": event_id}, {"_id": 0})
    if not event:
        raise EventStateError(f"Event {event_id} not found")

    current = event.get("state")
    if EventState.PENDING.value not in VALID_EVENT_TRANSITIONS.get(current, []):
        raise EventStateError(
            f"INVALID TRANSITION: event {event_id} cannot go from '{current}' to 'pending'"
        )

    result = await db.outbox_events.update_one(
        {"id": event_id, "state": EventState.FAILED.value},
        {"$set": {
            "state": EventState.PENDING.value,
            "max_retries": event.get("retry_count", 0) + OUTBOX_MAX_RETRIES,
            "next_attempt_at": to_iso(now),
            "failed_at": None,
            "requeued_at": to_iso(now),
            "requeued_by": requeued_by,
        }},
    )
    if result.matched_count == 0:
        raise EventStateError(f"Event {event_id} changed state concurrently")
    updated = await db.outbox_events.find_one({"id": event_id}, {"_id": 0})

    logger.info(f"Event {event_id} requeued by {requeued_by}")
    return updated
