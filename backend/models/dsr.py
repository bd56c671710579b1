"""
ARTIS SALES - Modèle DSR (Daily Sales Report)

id = {user_id}_{YYYY-MM-DD} -> recompilation = upsert, jamais de doublon.
Les champs de revue (status, reviewed_by, reviewed_at, manager_comments)
appartiennent au manager: le compilateur ne les écrit qu'à la création.
"""

from typing import Optional, List, Dict
from pydantic import BaseModel
from enum import Enum


class DSRStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    NEEDS_REVISION = "needs_revision"


REVIEW_STATUSES = [DSRStatus.APPROVED.value, DSRStatus.NEEDS_REVISION.value]

# Champs dérivés comparés pour la réconciliation post-revue
DERIVED_TOTAL_FIELDS = (
    "total_visits",
    "total_sheets_sold",
    "total_expenses",
    "leads_contacted",
)


class SheetsSalesSummary(BaseModel):
    catalog: str
    total_sheets: int


class ExpenseSummary(BaseModel):
    category: str
    total_amount: float


class DSRReport(BaseModel):
    id: str
    user_id: str
    date: str

    # Auto-compilé
    check_in_at: Optional[str] = None
    check_out_at: Optional[str] = None
    total_visits: int = 0
    visit_ids: List[str] = []
    sheets_sales: List[SheetsSalesSummary] = []
    total_sheets_sold: int = 0
    expenses: List[ExpenseSummary] = []
    total_expenses: float = 0
    leads_contacted: int = 0
    lead_ids: List[str] = []
    suspect_attendance_ids: List[str] = []
    was_active: bool = False
    activity_count: int = 0
    compiled_at: str = ""

    # Revue manager
    status: DSRStatus = DSRStatus.PENDING
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[str] = None
    manager_comments: Optional[str] = None
    resubmitted_at: Optional[str] = None

    # Réconciliation (totaux modifiés après revue)
    reconciliation_required: bool = False
    previous_totals: Optional[Dict[str, float]] = None


class DSRReview(BaseModel):
    status: DSRStatus
    comments: Optional[str] = ""
