"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  ARTIS SALES - Event Outbox                                                  ║
║                                                                              ║
║  Ledger append-only des événements métier.                                   ║
║  Une mutation d'état et son event sont écrits dans la MÊME unité de          ║
║  travail (transaction Mongo si MONGO_TRANSACTIONS=true).                     ║
║                                                                              ║
║  SEUL le dispatcher modifie les champs de traitement d'un event.             ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, Dict, Any

import config
from config import db, to_iso, utc_now, OUTBOX_MAX_RETRIES
from models.outbox import EventType, EventState, VALID_EVENT_TYPES

logger = logging.getLogger("outbox")


class UnknownEventTypeError(ValueError):
    """Event type outside the closed enumeration"""
    pass


@asynccontextmanager
async def transactional():
    """
    Unité de travail: yield une session Mongo en transaction, ou None.

    Sans replica set (dev, tests) les écritures partent sans session;
    les appelants passent toujours `session=session` à motor.
    """
    if not config.MONGO_TRANSACTIONS:
        yield None
        return

    async with await config.client.start_session() as session:
        async with session.start_transaction():
            yield session


def build_event(
    event_type: str,
    payload: Dict[str, Any],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Construit le document event (sans l'écrire)"""
    if isinstance(event_type, EventType):
        event_type = event_type.value
    if event_type not in VALID_EVENT_TYPES:
        raise UnknownEventTypeError(f"Unknown event type: {event_type}")

    created = to_iso(now or utc_now())
    return {
        "id": str(uuid.uuid4()),
        "event_type": event_type,
        "payload": payload or {},
        "created_at": created,
        "state": EventState.PENDING.value,
        "processed_at": None,
        "processed_by": None,
        "retry_count": 0,
        "max_retries": OUTBOX_MAX_RETRIES,
        "error": None,
        "next_attempt_at": created,
        "lease_owner": None,
        "lease_until": None,
        "failed_at": None,
    }


async def append_event(
    event_type: str,
    payload: Dict[str, Any],
    session=None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Ajoute un event à l'outbox.

    Args:
        event_type: valeur de EventType (enumération fermée)
        payload: données libres (ids des entités concernées, etc.)
        session: session de la transaction englobante (ou None)
        now: horloge injectée (jobs batch, tests)
    """
    event = build_event(event_type, payload, now)
    await db.outbox_events.insert_one(event, session=session)
    event.pop("_id", None)
    logger.info(f"Event appended: {event['event_type']} id={event['id']}")
    return event
