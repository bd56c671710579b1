"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  ARTIS SALES - Compilateur DSR (Daily Sales Report)                          ║
║                                                                              ║
║  CRON: tous les jours à 23h00 Asia/Kolkata                                   ║
║                                                                              ║
║  ════════════════════════════════════════════════════════════════════════    ║
║                    RÈGLES                                                    ║
║  ════════════════════════════════════════════════════════════════════════    ║
║                                                                              ║
║  1. UN rapport par rep actif par jour, id = {user_id}_{YYYY-MM-DD}           ║
║     → upsert, recompiler ne duplique jamais                                  ║
║                                                                              ║
║  2. Rep sans activité → rapport à zéro (jamais de rapport manquant)          ║
║                                                                              ║
║  3. Champs de revue (status, reviewed_by, reviewed_at, manager_comments)     ║
║     écrits UNIQUEMENT à la création (status=pending)                         ║
║     → recompiler après revue ne réinitialise JAMAIS la revue                 ║
║     → totaux modifiés après revue: reconciliation_required=true              ║
║                                                                              ║
║  4. Pointages suspects: exclus du check-in/out, listés pour audit            ║
║                                                                              ║
║  5. Reps traités par groupes bornés (DSR_COMPILE_CONCURRENCY),               ║
║     échec d'un rep loggué et ignoré                                          ║
║                                                                              ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import asyncio
import logging
import re
import time
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import pytz

import config
from config import db, to_iso, utc_now
from models.dsr import DSRStatus, REVIEW_STATUSES, DERIVED_TOTAL_FIELDS
from services.store_retry import with_store_retry

logger = logging.getLogger("dsr_compiler")

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class ReviewError(Exception):
    def __init__(self, code: str, message: str, status_code: int = 400):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


# ════════════════════════════════════════════════════════════════════════
# DATES (jour local → bornes UTC)
# ════════════════════════════════════════════════════════════════════════

def validate_report_date(date: str) -> str:
    if not date or not DATE_PATTERN.match(date):
        raise ValueError(f"Invalid date format: {date!r}. Expected YYYY-MM-DD")
    datetime.strptime(date, "%Y-%m-%d")
    return date


def local_date_of(now: datetime) -> str:
    return now.astimezone(pytz.timezone(config.APP_TIMEZONE)).strftime("%Y-%m-%d")


def local_day_bounds(date: str) -> Tuple[str, str]:
    """
    Returns (start_iso, next_day_start_iso) en UTC pour le jour local.
    Borne haute exclusive.
    """
    tz = pytz.timezone(config.APP_TIMEZONE)
    day = datetime.strptime(date, "%Y-%m-%d")
    start = tz.localize(day)
    end = tz.localize(day + timedelta(days=1))
    return to_iso(start), to_iso(end)


def report_id_for(user_id: str, date: str) -> str:
    return f"{user_id}_{date}"


# ════════════════════════════════════════════════════════════════════════
# COLLECTE
# ════════════════════════════════════════════════════════════════════════

async def get_active_reps() -> List[Dict]:
    return await db.users.find(
        {"role": "rep", "is_active": True},
        {"_id": 0, "id": 1, "name": 1},
    ).sort("id", 1).to_list(None)


def _expense_lines(expense: Dict) -> List[Tuple[str, float]]:
    """Une dépense = soit items[], soit un montant unique"""
    items = expense.get("items")
    if isinstance(items, list) and items:
        return [
            (item.get("category") or "other", float(item.get("amount") or 0))
            for item in items
        ]
    return [(expense.get("category") or "other", float(expense.get("amount") or 0))]


async def collect_daily_activity(user_id: str, date: str) -> Dict:
    """
    Lit toute l'activité d'un rep pour un jour local.
    Aucune écriture ici: le rapport est écrit en une seule fois ensuite.
    """
    start, end = local_day_bounds(date)
    window = {"$gte": start, "$lt": end}

    summary = {
        "user_id": user_id,
        "date": date,
        "check_in_at": None,
        "check_out_at": None,
        "visit_ids": [],
        "suspect_attendance_ids": [],
        "sheets_sales": {},
        "expenses": {},
        "lead_ids": [],
    }

    # Attendance (ordre chronologique)
    attendance = await db.attendance.find(
        {"user_id": user_id, "timestamp": window}, {"_id": 0}
    ).sort("timestamp", 1).to_list(None)

    for record in attendance:
        if record.get("suspect"):
            summary["suspect_attendance_ids"].append(record["id"])
            continue
        if record.get("type") == "check_in" and not summary["check_in_at"]:
            summary["check_in_at"] = record["timestamp"]
        elif record.get("type") == "check_out":
            summary["check_out_at"] = record["timestamp"]

    # Visites
    visits = await db.visits.find(
        {"user_id": user_id, "timestamp": window}, {"_id": 0, "id": 1}
    ).sort("timestamp", 1).to_list(None)
    summary["visit_ids"] = [v["id"] for v in visits]

    # Ventes de feuilles (par catalogue)
    sheets = defaultdict(int)
    async for sale in db.sheets_sales.find({"user_id": user_id, "date": date}, {"_id": 0}):
        sheets[sale.get("catalog") or "unknown"] += int(sale.get("sheets_count") or 0)
    summary["sheets_sales"] = dict(sheets)

    # Dépenses (par catégorie, hors rejetées)
    expenses = defaultdict(float)
    async for expense in db.expenses.find(
        {"user_id": user_id, "date": date, "status": {"$ne": "rejected"}}, {"_id": 0}
    ):
        for category, amount in _expense_lines(expense):
            expenses[category] += amount
    summary["expenses"] = dict(expenses)

    # Leads contactés ce jour et toujours détenus par le rep
    leads = await db.leads.find(
        {"owner_user_id": user_id, "first_touch_at": window}, {"_id": 0, "id": 1}
    ).sort("first_touch_at", 1).to_list(None)
    summary["lead_ids"] = [lead["id"] for lead in leads]

    return summary


def build_report_fields(summary: Dict) -> Dict:
    """Champs dérivés du rapport (tout sauf revue et identité)"""
    sheets_sales = [
        {"catalog": catalog, "total_sheets": total}
        for catalog, total in sorted(summary["sheets_sales"].items())
    ]
    expenses = [
        {"category": category, "total_amount": round(total, 2)}
        for category, total in sorted(summary["expenses"].items())
    ]
    total_sheets_sold = sum(item["total_sheets"] for item in sheets_sales)
    total_expenses = round(sum(item["total_amount"] for item in expenses), 2)
    total_visits = len(summary["visit_ids"])
    leads_contacted = len(summary["lead_ids"])

    return {
        "check_in_at": summary["check_in_at"],
        "check_out_at": summary["check_out_at"],
        "total_visits": total_visits,
        "visit_ids": summary["visit_ids"],
        "sheets_sales": sheets_sales,
        "total_sheets_sold": total_sheets_sold,
        "expenses": expenses,
        "total_expenses": total_expenses,
        "leads_contacted": leads_contacted,
        "lead_ids": summary["lead_ids"],
        "suspect_attendance_ids": summary["suspect_attendance_ids"],
        "was_active": total_visits > 0 or total_sheets_sold > 0 or total_expenses > 0 or leads_contacted > 0,
        "activity_count": total_visits + len(sheets_sales) + len(expenses) + leads_contacted,
    }


def totals_of(doc: Dict) -> Dict[str, float]:
    return {field: doc.get(field, 0) for field in DERIVED_TOTAL_FIELDS}


# ════════════════════════════════════════════════════════════════════════
# ÉCRITURE (upsert, revue préservée)
# ════════════════════════════════════════════════════════════════════════

async def save_dsr_report(summary: Dict, now: Optional[datetime] = None) -> Dict:
    """
    Upsert du rapport {user_id}_{date}.

    Returns: {"id", "created", "reconciliation_required"}
    """
    now = now or utc_now()
    report_id = report_id_for(summary["user_id"], summary["date"])
    fields = build_report_fields(summary)
    fields["compiled_at"] = to_iso(now)

    for _ in range(2):
        existing = await db.dsr_reports.find_one({"id": report_id}, {"_id": 0})
        query = {"id": report_id}
        update_fields = dict(fields)
        flagged = False

        if existing:
            query["status"] = existing.get("status")
            if existing.get("status") in REVIEW_STATUSES:
                # Référence = totaux vus par le manager, figés au premier écart
                reviewed = existing.get("previous_totals") or totals_of(existing)
                if reviewed != totals_of(fields):
                    flagged = True
                    update_fields["reconciliation_required"] = True
                    update_fields["previous_totals"] = reviewed
                    if not existing.get("reconciliation_required"):
                        logger.warning(
                            f"DSR {report_id} totals changed after review ({existing.get('status')}): "
                            f"{reviewed} -> {totals_of(fields)}, flagged for reconciliation"
                        )
                else:
                    update_fields["reconciliation_required"] = False
                    update_fields["previous_totals"] = None
            else:
                update_fields["reconciliation_required"] = False
                update_fields["previous_totals"] = None
        else:
            update_fields["reconciliation_required"] = False
            update_fields["previous_totals"] = None

        result = await db.dsr_reports.update_one(
            query,
            {
                "$set": update_fields,
                "$setOnInsert": {
                    "user_id": summary["user_id"],
                    "date": summary["date"],
                    "status": DSRStatus.PENDING.value,
                    "reviewed_by": None,
                    "reviewed_at": None,
                    "manager_comments": None,
                },
            },
            upsert=not existing,
        )
        if result.matched_count or result.upserted_id is not None:
            return {
                "id": report_id,
                "created": existing is None,
                "reconciliation_required": flagged,
            }
        # Revue intervenue entre lecture et écriture: on relit une fois
        logger.info(f"DSR {report_id} reviewed during compilation, re-reading")

    raise RuntimeError(f"DSR {report_id} kept changing during compilation")


async def compile_rep_report(user_id: str, date: str, now: Optional[datetime] = None) -> Dict:
    summary = await with_store_retry(
        lambda: collect_daily_activity(user_id, date),
        f"dsr.collect.{user_id}",
    )
    return await with_store_retry(
        lambda: save_dsr_report(summary, now),
        f"dsr.save.{user_id}",
    )


async def compile_daily_reports(date: Optional[str] = None, now: Optional[datetime] = None) -> Dict:
    """
    Compile les DSR de tous les reps actifs pour `date` (jour local de `now` par défaut).

    Returns: {"date", "reps", "compiled", "created", "failed",
              "reconciliation_flagged", "deferred"}
    """
    now = now or utc_now()
    date = validate_report_date(date) if date else local_date_of(now)
    started = time.monotonic()

    logger.info(f"DSR compiler started for {date}")
    reps = await with_store_retry(get_active_reps, "dsr.active_reps")

    results = {
        "date": date,
        "reps": len(reps),
        "compiled": 0,
        "created": 0,
        "failed": 0,
        "reconciliation_flagged": 0,
        "deferred": 0,
    }

    async def compile_one(rep: Dict) -> Optional[Dict]:
        try:
            return await compile_rep_report(rep["id"], date, now)
        except Exception as e:
            logger.error(f"Failed to compile DSR for user {rep['id']} on {date}: {type(e).__name__}: {e}")
            return None

    group_size = max(1, config.DSR_COMPILE_CONCURRENCY)
    for offset in range(0, len(reps), group_size):
        if time.monotonic() - started > config.JOB_MAX_RUNTIME_SECONDS:
            results["deferred"] = len(reps) - offset
            logger.warning(f"DSR compiler hit its time budget, {results['deferred']} reps deferred")
            break

        group = reps[offset:offset + group_size]
        outcomes = await asyncio.gather(*(compile_one(rep) for rep in group))
        for outcome in outcomes:
            if outcome is None:
                results["failed"] += 1
                continue
            results["compiled"] += 1
            if outcome["created"]:
                results["created"] += 1
            if outcome["reconciliation_required"]:
                results["reconciliation_flagged"] += 1

    logger.info(f"DSR compiler completed: {results}")
    return results


# ════════════════════════════════════════════════════════════════════════
# REVUE MANAGER
# ════════════════════════════════════════════════════════════════════════

async def review_dsr(
    report_id: str,
    reviewer_id: str,
    status: str,
    comments: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict:
    """
    Écrit UNIQUEMENT le sous-ensemble revue.
    Un rapport approuvé est définitif.
    """
    now = now or utc_now()
    if status not in REVIEW_STATUSES:
        raise ReviewError("INVALID_STATUS", "Status must be 'approved' or 'needs_revision'")

    report = await db.dsr_reports.find_one({"id": report_id}, {"_id": 0})
    if not report:
        raise ReviewError("REPORT_NOT_FOUND", "DSR report not found", status_code=404)
    if report.get("status") == DSRStatus.APPROVED.value:
        raise ReviewError("ALREADY_APPROVED", "This DSR has already been approved")

    result = await db.dsr_reports.update_one(
        {"id": report_id, "status": {"$ne": DSRStatus.APPROVED.value}},
        {"$set": {
            "status": status,
            "reviewed_by": reviewer_id,
            "reviewed_at": to_iso(now),
            "manager_comments": comments or "",
            "reconciliation_required": False,
            "previous_totals": None,
        }},
    )
    if result.modified_count == 0:
        raise ReviewError("ALREADY_APPROVED", "This DSR has already been approved")

    logger.info(f"DSR {report_id} reviewed by {reviewer_id}: {status}")
    return await db.dsr_reports.find_one({"id": report_id}, {"_id": 0})


async def resubmit_dsr(report_id: str, user_id: str, now: Optional[datetime] = None) -> Dict:
    """
    Le rep propriétaire renvoie un rapport needs_revision en revue (→ pending).
    La revue précédente (reviewed_by, manager_comments) reste visible.
    """
    now = now or utc_now()
    report = await db.dsr_reports.find_one({"id": report_id}, {"_id": 0})
    if not report:
        raise ReviewError("REPORT_NOT_FOUND", "DSR report not found", status_code=404)
    if report.get("user_id") != user_id:
        raise ReviewError("INSUFFICIENT_PERMISSIONS", "You can only resubmit your own DSRs", status_code=403)

    current = report.get("status")
    if current != DSRStatus.NEEDS_REVISION.value:
        raise ReviewError(
            "INVALID_STATUS",
            f"Cannot resubmit DSR with status: {current}. Only DSRs with 'needs_revision' status can be resubmitted.",
        )

    result = await db.dsr_reports.update_one(
        {"id": report_id, "status": DSRStatus.NEEDS_REVISION.value},
        {"$set": {
            "status": DSRStatus.PENDING.value,
            "resubmitted_at": to_iso(now),
            "reconciliation_required": False,
            "previous_totals": None,
        }},
    )
    if result.modified_count == 0:
        raise ReviewError("INVALID_STATUS", "DSR status changed concurrently, reload and retry")

    logger.info(f"DSR {report_id} resubmitted by {user_id}")
    return await db.dsr_reports.find_one({"id": report_id}, {"_id": 0})
