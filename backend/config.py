import os
from pathlib import Path

# Base directory is the directory containing this file (backend/)
BASE_DIR = Path(__file__).resolve().parent

# Database Paths
DB_PATH = Path(os.getenv("DB_PATH", str(BASE_DIR / "dispatch.db")))

# Environment
APP_ENV = os.getenv("APP_ENV", "development").strip().lower()
IS_DEV_ENV = APP_ENV in {"dev", "development", "local", "test"}
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()

# Auth / JWT configuration
DEFAULT_SECRET_KEY = "dev-secret-change-me-in-production-please-use-a-strong-random-key"
SECRET_KEY = os.getenv(
    "SECRET_KEY",
    DEFAULT_SECRET_KEY,
)
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "720"))

# Cookie configuration
ACCESS_COOKIE_NAME = os.getenv("ACCESS_COOKIE_NAME", "access_token")
COOKIE_SAMESITE = os.getenv("COOKIE_SAMESITE", "lax")
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "false").strip().lower() == "true"


def _parse_list(raw: str) -> list[str]:
    values = [value.strip() for value in raw.split(",")]
    return [value for value in values if value]


FRONTEND_ORIGINS = _parse_list(
    os.getenv(
        "FRONTEND_ORIGINS",
        "http://localhost:5173,http://127.0.0.1:5173,http://localhost:3000,http://127.0.0.1:3000",
    )
)

# Accounts registered with these e-mails get the admin role.
ADMIN_EMAILS = {email.lower() for email in _parse_list(os.getenv("ADMIN_EMAILS", ""))}

if not IS_DEV_ENV and SECRET_KEY == DEFAULT_SECRET_KEY:
    raise RuntimeError("Insecure configuration: set SECRET_KEY for non-development environments.")

if not IS_DEV_ENV and not COOKIE_SECURE:
    raise RuntimeError("Insecure configuration: COOKIE_SECURE must be true outside development.")

if "*" in FRONTEND_ORIGINS:
    raise RuntimeError("Insecure CORS configuration: wildcard origins are not allowed.")

# Dispatch
BROADCAST_CANDIDATE_LIMIT = max(1, int(os.getenv("BROADCAST_CANDIDATE_LIMIT", "20")))
DEFAULT_BROADCAST_RADIUS_KM = float(os.getenv("DEFAULT_BROADCAST_RADIUS_KM", "10"))
MECHANIC_TASK_RADIUS_KM = float(os.getenv("MECHANIC_TASK_RADIUS_KM", "50"))

# Quotation estimator
QUOTATION_BACKEND = os.getenv("QUOTATION_BACKEND", "rules").strip().lower()
if QUOTATION_BACKEND not in {"rules", "remote"}:
    raise RuntimeError("Invalid QUOTATION_BACKEND. Supported values: rules, remote.")
QUOTATION_SERVICE_URL = os.getenv("QUOTATION_SERVICE_URL", "").strip()
QUOTATION_TIMEOUT_SECONDS = float(os.getenv("QUOTATION_TIMEOUT_SECONDS", "3.0"))

# Notifications
NOTIFIER_BACKEND = os.getenv("NOTIFIER_BACKEND", "log").strip().lower()
if NOTIFIER_BACKEND not in {"log", "webhook"}:
    raise RuntimeError("Invalid NOTIFIER_BACKEND. Supported values: log, webhook.")
NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL", "").strip()
NOTIFY_TIMEOUT_SECONDS = float(os.getenv("NOTIFY_TIMEOUT_SECONDS", "5.0"))

if NOTIFIER_BACKEND == "webhook" and not NOTIFY_WEBHOOK_URL:
    raise RuntimeError("NOTIFIER_BACKEND=webhook requires NOTIFY_WEBHOOK_URL.")

if QUOTATION_BACKEND == "remote" and not QUOTATION_SERVICE_URL:
    raise RuntimeError("QUOTATION_BACKEND=remote requires QUOTATION_SERVICE_URL.")

# Real-time fan-out
PRESENCE_TTL_SECONDS = int(os.getenv("PRESENCE_TTL_SECONDS", "90"))
EVENT_QUEUE_MAXSIZE = max(1, int(os.getenv("EVENT_QUEUE_MAXSIZE", "100")))
