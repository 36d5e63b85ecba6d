"""
Centralized configuration for CareLine.
Environment-driven constants for the alerting pipeline and its channels.
"""

import os
from dotenv import load_dotenv

load_dotenv()


def _int_list(raw: str) -> list[int]:
    return [int(part) for part in raw.split(",") if part.strip()]


def _float_list(raw: str) -> list[float]:
    return [float(part) for part in raw.split(",") if part.strip()]


# --- Server ---
PORT = int(os.getenv("PORT", "8080"))

# --- Escalation ---
# Offsets (minutes after case creation) paired with the level each one fires.
ESCALATION_OFFSETS_MINUTES = _float_list(
    os.getenv("ESCALATION_OFFSETS_MINUTES", "5,15,30,60")
)
ESCALATION_TARGET_LEVELS = _int_list(
    os.getenv("ESCALATION_TARGET_LEVELS", "2,3,4,5")
)

# --- Trend analysis ---
TREND_WINDOW_HOURS = int(os.getenv("TREND_WINDOW_HOURS", "24"))
TREND_WINDOW_LIMIT = int(os.getenv("TREND_WINDOW_LIMIT", "10"))

# --- Per-patient queue ---
PATIENT_QUEUE_IDLE_TIMEOUT = int(os.getenv("PATIENT_QUEUE_IDLE_TIMEOUT", "1800"))

# --- Notifications ---
NOTIFICATION_MAX_ATTEMPTS = int(os.getenv("NOTIFICATION_MAX_ATTEMPTS", "3"))
NOTIFICATION_RETRY_DELAY = float(os.getenv("NOTIFICATION_RETRY_DELAY", "0.5"))
# Channel every responder and role is paged on; sms/email are added when
# the recipient has contact details and the channel is registered.
NOTIFICATION_DEFAULT_CHANNEL = os.getenv("NOTIFICATION_DEFAULT_CHANNEL", "websocket")
BACKUP_RESPONDER_COUNT = int(os.getenv("BACKUP_RESPONDER_COUNT", "3"))
# Ledger kept for closed cases: newest entries per case, and how many
# closed cases are remembered before the oldest is forgotten.
CLOSED_CASE_LEDGER_LIMIT = int(os.getenv("CLOSED_CASE_LEDGER_LIMIT", "50"))
CLOSED_CASE_RETENTION = int(os.getenv("CLOSED_CASE_RETENTION", "1000"))

# --- Storage ---
CASE_STORE = os.getenv("CASE_STORE", "memory")  # "memory" or "gcs"
GCS_BUCKET_NAME = os.getenv("GCS_BUCKET_NAME", "careline_dev")
RESPONDERS_FILE = os.getenv("RESPONDERS_FILE", "")
PATIENTS_FILE = os.getenv("PATIENTS_FILE", "")
