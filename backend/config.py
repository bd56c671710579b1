"""
Configuration et utilitaires partagés
"""

import os
import re
from datetime import datetime, timezone, timedelta
from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
from pathlib import Path

# Charger .env
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# MongoDB
MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
DB_NAME = os.environ.get('DB_NAME', 'artis_sales')
# Transactions need a replica set; standalone dev instances run without them
MONGO_TRANSACTIONS = _env_bool('MONGO_TRANSACTIONS', False)

client = AsyncIOMotorClient(MONGO_URL)
db = client[DB_NAME]

# Business clock
APP_TIMEZONE = os.environ.get('APP_TIMEZONE', 'Asia/Kolkata')

# Routing / SLA
SLA_WINDOW_HOURS = int(os.environ.get('SLA_WINDOW_HOURS', '4'))
FALLBACK_REP_USER_ID = os.environ.get('FALLBACK_REP_USER_ID', '')
SLA_SWEEP_LIMIT = int(os.environ.get('SLA_SWEEP_LIMIT', '100'))

# Outbox
OUTBOX_MAX_RETRIES = int(os.environ.get('OUTBOX_MAX_RETRIES', '5'))
OUTBOX_BATCH_SIZE = int(os.environ.get('OUTBOX_BATCH_SIZE', '50'))
OUTBOX_LEASE_SECONDS = int(os.environ.get('OUTBOX_LEASE_SECONDS', '120'))

# DSR
DSR_COMPILE_CONCURRENCY = int(os.environ.get('DSR_COMPILE_CONCURRENCY', '10'))
DSR_COMPILE_HOUR = int(os.environ.get('DSR_COMPILE_HOUR', '23'))

# Attendance
GPS_MAX_ACCURACY_M = float(os.environ.get('GPS_MAX_ACCURACY_M', '100'))
# Check-out auto avant la compilation DSR (heure locale)
AUTO_CHECKOUT_HOUR = int(os.environ.get('AUTO_CHECKOUT_HOUR', '22'))
AUTO_CHECKOUT_MINUTE = int(os.environ.get('AUTO_CHECKOUT_MINUTE', '55'))

# Batch jobs
JOB_MAX_RUNTIME_SECONDS = int(os.environ.get('JOB_MAX_RUNTIME_SECONDS', '240'))
STORE_RETRY_ATTEMPTS = int(os.environ.get('STORE_RETRY_ATTEMPTS', '3'))
STORE_RETRY_BASE_DELAY = float(os.environ.get('STORE_RETRY_BASE_DELAY', '0.5'))
SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED', True)

# Push gateway (notifications mobiles)
PUSH_GATEWAY_URL = os.environ.get('PUSH_GATEWAY_URL', '')
PUSH_GATEWAY_KEY = os.environ.get('PUSH_GATEWAY_KEY', '')


# ==================== HELPERS ====================

def to_iso(dt: datetime) -> str:
    """
    Serialise un datetime en ISO UTC a largeur fixe.
    Largeur fixe (microsecondes) => ordre lexical == ordre chronologique en base.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str) -> datetime:
    """Parse une date ISO (accepte le suffixe Z), assume UTC si naive"""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    """Retourne la date/heure actuelle en ISO"""
    return to_iso(utc_now())


def sla_due_at(created_at: datetime) -> datetime:
    return created_at + timedelta(hours=SLA_WINDOW_HOURS)


# ==================== VALIDATION ====================

PHONE_IN_PATTERN = re.compile(r"^\+91[6-9]\d{9}$")
PINCODE_PATTERN = re.compile(r"^[1-9]\d{5}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def normalize_phone_in(phone: str) -> str:
    """
    Normalise un numéro indien au format E.164.
      9876543210      -> +919876543210
      +91 98765 43210 -> +919876543210
      919876543210    -> +919876543210
      09876543210     -> +919876543210
    Formats inconnus: retournés préfixés par '+', la validation tranche.
    """
    digits = ''.join(filter(str.isdigit, phone or ""))

    if len(digits) == 10:
        return f"+91{digits}"
    if len(digits) == 12 and digits.startswith("91"):
        return f"+{digits}"
    if len(digits) == 11 and digits.startswith("0"):
        return f"+91{digits[1:]}"

    return phone if phone.startswith("+") else f"+{digits}"


def validate_phone_in(phone: str) -> tuple[bool, str]:
    """
    Returns: (is_valid, normalized_phone_or_error)
    """
    if not phone or not phone.strip():
        return False, "Phone number is empty"

    normalized = normalize_phone_in(phone.strip())
    if not PHONE_IN_PATTERN.match(normalized):
        return False, f"Invalid Indian mobile number: {phone}"
    return True, normalized


def validate_pincode(pincode: str) -> bool:
    """Pincode indien: 6 chiffres, ne commence pas par 0"""
    return bool(pincode) and bool(PINCODE_PATTERN.match(pincode.strip()))


def validate_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email))


def sanitize_string(value: str) -> str:
    """Trim + espaces multiples réduits"""
    return re.sub(r"\s+", " ", (value or "").strip())
