"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  ARTIS SALES - Modèle Event (outbox)                                         ║
║                                                                              ║
║  LIFECYCLE:                                                                  ║
║  pending → processed   (TERMINAL, jamais re-muté)                            ║
║  pending → failed      (retries épuisés, remédiation manuelle)               ║
║  failed  → pending     (requeue manuel uniquement)                           ║
║                                                                              ║
║  INVARIANTS:                                                                 ║
║  - state=processed IMPLIQUE processed_at non null ET error null              ║
║  - retry_count n'augmente que sur échec de traitement                        ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from typing import Optional, Dict, Any
from pydantic import BaseModel
from enum import Enum


class EventType(str, Enum):
    LEAD_CREATED = "LeadCreated"
    LEAD_ASSIGNED = "LeadAssigned"
    LEAD_SLA_EXPIRED = "LeadSLAExpired"
    VISIT_STARTED = "VisitStarted"
    VISIT_ENDED = "VisitEnded"
    ATTENDANCE_CHECKED_IN = "AttendanceCheckedIn"
    ATTENDANCE_CHECKED_OUT = "AttendanceCheckedOut"


VALID_EVENT_TYPES = [e.value for e in EventType]


class EventState(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


VALID_EVENT_TRANSITIONS = {
    "pending": ["processed", "failed"],
    "processed": [],  # TERMINAL
    "failed": ["pending"],  # requeue manuel
}


class OutboxEvent(BaseModel):
    id: str
    event_type: EventType
    payload: Dict[str, Any] = {}
    created_at: str
    state: EventState = EventState.PENDING
    processed_at: Optional[str] = None
    processed_by: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 5
    error: Optional[str] = None
    next_attempt_at: str = ""
    lease_owner: Optional[str] = None
    lease_until: Optional[str] = None
    failed_at: Optional[str] = None
