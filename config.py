import os
from datetime import datetime, timezone
from decimal import Decimal

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

ENV = os.getenv("ENV", "TEST").upper()

DEFAULTS = {
    "TEST": {
        "GATEWAY_API_URL": "https://api.razorpay.com/v1",
        "CARRIER_API_URL": "",
        "PUSH_API_URL": "",
    },
    "LIVE": {
        "GATEWAY_API_URL": "https://api.razorpay.com/v1",
        "CARRIER_API_URL": "",
        "PUSH_API_URL": "",
    }
}

cfg = DEFAULTS["LIVE"] if ENV == "LIVE" else DEFAULTS["TEST"]

# ---------------- Payment gateway ----------------
GATEWAY_API_URL = os.getenv("GATEWAY_API_URL", cfg["GATEWAY_API_URL"]).rstrip("/")
GATEWAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID", "")
GATEWAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET", "")
PAYMENT_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET", "")
CURRENCY = os.getenv("CURRENCY", "INR")
REFUND_SPEED = os.getenv("REFUND_SPEED", "normal")

# ---------------- Delivery carrier ----------------
# Empty URL = carrier integration not wired yet; dispatch raises and the
# outbox row is marked FAILED.
CARRIER_API_URL = os.getenv("CARRIER_API_URL", cfg["CARRIER_API_URL"]).rstrip("/")
CARRIER_API_KEY = os.getenv("CARRIER_API_KEY", "")
# Empty secret = carrier webhooks are accepted unsigned (logged on every call).
DELIVERY_WEBHOOK_SECRET = os.getenv("DELIVERY_WEBHOOK_SECRET", "")

# ---------------- Push notifications ----------------
PUSH_API_URL = os.getenv("PUSH_API_URL", cfg["PUSH_API_URL"]).rstrip("/")
PUSH_API_KEY = os.getenv("PUSH_API_KEY", "")

# ---------------- Pricing ----------------
# Defaults only; the settings table wins when it has a value.
DEFAULT_PLATFORM_FEE_PERCENT = Decimal(os.getenv("DEFAULT_PLATFORM_FEE_PERCENTAGE", "10"))
DEFAULT_VENDOR_FEE_PERCENT = Decimal(os.getenv("DEFAULT_VENDOR_FEE_PERCENTAGE", "15"))
DEFAULT_DELIVERY_CHARGE_PER_LEG = Decimal(os.getenv("DEFAULT_DELIVERY_CHARGE_PER_LEG", "50"))

# ---------------- Workflow behavior ----------------
MAX_ACTIVE_VENDOR_SLOTS = int(os.getenv("MAX_ACTIVE_VENDOR_SLOTS", "10"))
VENDOR_RESPONSE_WINDOW_HOURS = int(os.getenv("VENDOR_RESPONSE_WINDOW_HOURS", "24"))
QUOTE_PAYMENT_WINDOW_HOURS = int(os.getenv("QUOTE_PAYMENT_WINDOW_HOURS", "24"))

OUTBOX_POLL_SECONDS = int(os.getenv("OUTBOX_POLL_SECONDS", "30"))
OUTBOX_BATCH_SIZE = int(os.getenv("OUTBOX_BATCH_SIZE", "10"))
EXPIRY_RUN_MINUTES = int(os.getenv("EXPIRY_RUN_MINUTES", "30"))

# Job-level retry for scheduler ticks (not outbox rows)
JOB_ATTEMPTS = int(os.getenv("JOB_ATTEMPTS", "3"))
JOB_BACKOFF_SECONDS = float(os.getenv("JOB_BACKOFF_SECONDS", "3"))

# ---------------- HTTP server ----------------
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "5050"))

# Email recipients for operational alerts (failed refunds, failed outbox rows)
OPS_EMAILS = [e.strip() for e in os.getenv(
    "OPS_EMAILS",
    "ops@example.com"
).split(",") if e.strip()]

EMAIL_CONFIG = {
    "smtp_server": os.getenv("SMTP_SERVER", "smtp.office365.com"),
    "smtp_port": int(os.getenv("SMTP_PORT", 587)),
    "smtp_username": os.getenv("SMTP_USERNAME", ""),
    "smtp_password": os.getenv("SMTP_PASSWORD", ""),  # set via ENV
    "from_addr": os.getenv("FROM_EMAIL", "noreply@example.com"),
}
EMAIL_ENABLED = os.getenv("EMAIL_ENABLED", "1") == "1"

# ---------------- Paths (stable, absolute) ----------------
BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# Logging
LOG_DIR = os.getenv("LOG_DIR", os.path.join(BASE_DIR, "logs"))
LOG_FILE = os.getenv("LOG_FILE", "marketplace_workflow.log")

# Marketplace store (SQLite)
STATE_DB_PATH = os.getenv("STATE_DB_PATH", os.path.join(BASE_DIR, "marketplace.db"))


# -------------- HTTP Session --------------
SESSION = requests.Session()
retries = Retry(
    total=3,
    backoff_factor=2.0,
    status_forcelist=[502, 503, 504],
    allowed_methods=["GET", "POST"],
)
SESSION.mount("http://", HTTPAdapter(max_retries=retries))
SESSION.mount("https://", HTTPAdapter(max_retries=retries))

def utc_now() -> datetime:
    return datetime.now(timezone.utc)
