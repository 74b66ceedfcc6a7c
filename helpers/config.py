# helpers/config.py
import logging
import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "y", "yes", "on")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return default


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
    return logger


def public_base_url() -> Optional[str]:
    base = (os.getenv("PUBLIC_BASE_URL") or "").strip()
    return base.rstrip("/") or None


# ─────────────────────────────────────────────────────────────────────────────
# Provider
# ─────────────────────────────────────────────────────────────────────────────
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_API_BASE_URL = os.getenv("TWILIO_API_BASE_URL", "https://api.twilio.com")
TWILIO_VALIDATE_SIGNATURE = _env_bool("TWILIO_VALIDATE_SIGNATURE", False)
# softphone access tokens; API key falls back to the account credentials
TWILIO_API_KEY = os.getenv("TWILIO_API_KEY")
TWILIO_API_SECRET = os.getenv("TWILIO_API_SECRET")
TWILIO_TWIML_APP_SID = os.getenv("TWILIO_TWIML_APP_SID")
VOICE_TOKEN_TTL_SECONDS = _env_int("VOICE_TOKEN_TTL_SECONDS", 3600)

PROVIDER_TIMEOUT_SECONDS = _env_float("PROVIDER_TIMEOUT_SECONDS", 15.0)
CALL_RING_TIMEOUT_SECONDS = _env_int("CALL_RING_TIMEOUT_SECONDS", 60)
DEFAULT_PHONE_REGION = os.getenv("DEFAULT_PHONE_REGION", "US")

SMTP_SERVER = os.getenv("SMTP_SERVER")
SMTP_PORT = _env_int("SMTP_PORT", 465)
SMTP_USERNAME = os.getenv("SMTP_USERNAME") or os.getenv("EMAIL_ADDRESS")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD") or os.getenv("EMAIL_PASSWORD")
SMTP_USE_TLS = _env_bool("SMTP_USE_TLS", False) or SMTP_PORT == 587

# ─────────────────────────────────────────────────────────────────────────────
# AI oracle
# ─────────────────────────────────────────────────────────────────────────────
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_TRANSCRIBE_MODEL = os.getenv("OPENAI_TRANSCRIBE_MODEL", "whisper-1")
ORACLE_TIMEOUT_SECONDS = _env_float("ORACLE_TIMEOUT_SECONDS", 120.0)

# ─────────────────────────────────────────────────────────────────────────────
# Queue / scheduler / sweeper
# ─────────────────────────────────────────────────────────────────────────────
SCHED_ENABLED = _env_bool("COMM_SCHED_ENABLED", True)
SCHEDULER_PAGE_SIZE = _env_int("SCHEDULER_PAGE_SIZE", 50)

STALE_MESSAGE_MINUTES = _env_int("STALE_MESSAGE_MINUTES", 5)
SWEEP_BATCH_LIMIT = _env_int("SWEEP_BATCH_LIMIT", 10)
MAX_SWEEP_ATTEMPTS = max(1, _env_int("MAX_SWEEP_ATTEMPTS", 1))
SWEEP_MIN_INTERVAL_SECONDS = _env_int("SWEEP_MIN_INTERVAL_SECONDS", 30)

JOB_WORKERS = max(1, _env_int("PIPELINE_JOB_WORKERS", 2))
JOB_STALE_MINUTES = _env_int("PIPELINE_JOB_STALE_MINUTES", 30)
JOB_RECOVERY_BATCH = _env_int("PIPELINE_JOB_RECOVERY_BATCH", 50)

CRON_SECRET = os.getenv("CRON_SECRET")
APS_TIMEZONE = os.getenv("APS_TIMEZONE", "UTC")
