"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  ARTIS SALES - Models Package                                                ║
║                                                                              ║
║  Exports tous les modèles pour import facile                                 ║
║  from models import LeadStatus, EventType, DSRStatus, etc.                   ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

# Lead
from .lead import (
    LeadSource,
    VALID_LEAD_SOURCES,
    LeadStatus,
    VALID_LEAD_TRANSITIONS,
    OPEN_LEAD_STATUSES,
    AssignmentReason,
    RoutingMode,
    LeadIntake,
    AssignmentEntry,
    LeadDocument,
    LeadStatusUpdate,
    LeadReassign,
    UnroutedAssign,
)

# Routing territorial
from .routing import (
    PincodeRoute,
    PincodeRouteUpsert,
)

# Outbox
from .outbox import (
    EventType,
    VALID_EVENT_TYPES,
    EventState,
    VALID_EVENT_TRANSITIONS,
    OutboxEvent,
)

# DSR
from .dsr import (
    DSRStatus,
    REVIEW_STATUSES,
    DERIVED_TOTAL_FIELDS,
    SheetsSalesSummary,
    ExpenseSummary,
    DSRReport,
    DSRReview,
)

# Attendance
from .attendance import (
    AttendanceType,
    DeviceInfo,
    AttendanceRequest,
    AttendanceRecord,
)

__all__ = [
    # Lead
    "LeadSource",
    "VALID_LEAD_SOURCES",
    "LeadStatus",
    "VALID_LEAD_TRANSITIONS",
    "OPEN_LEAD_STATUSES",
    "AssignmentReason",
    "RoutingMode",
    "LeadIntake",
    "AssignmentEntry",
    "LeadDocument",
    "LeadStatusUpdate",
    "LeadReassign",
    "UnroutedAssign",
    # Routing
    "PincodeRoute",
    "PincodeRouteUpsert",
    # Outbox
    "EventType",
    "VALID_EVENT_TYPES",
    "EventState",
    "VALID_EVENT_TRANSITIONS",
    "OutboxEvent",
    # DSR
    "DSRStatus",
    "REVIEW_STATUSES",
    "DERIVED_TOTAL_FIELDS",
    "SheetsSalesSummary",
    "ExpenseSummary",
    "DSRReport",
    "DSRReview",
    # Attendance
    "AttendanceType",
    "DeviceInfo",
    "AttendanceRequest",
    "AttendanceRecord",
]
