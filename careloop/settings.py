"""
Centralized configuration for CareLoop.
Env-based constants, loaded once from the process environment and .env.
"""

import json
import os
from dotenv import load_dotenv

load_dotenv()


def _env_list(name: str, default: str = "") -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


# --- Server ---
PORT = int(os.getenv("PORT", "8080"))

# --- Patients ---
DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "Asia/Almaty")

# --- Reasoning provider (Gemini) ---
GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY", "")
AI_ENABLED = os.getenv("AI_ENABLED", "true").lower() in ("1", "true", "yes")
AI_MODEL = os.getenv("AI_MODEL", "gemini-2.0-flash")
AI_TEMPERATURE = _env_float("AI_TEMPERATURE", 0.2)
AI_MAX_OUTPUT_TOKENS = int(os.getenv("AI_MAX_OUTPUT_TOKENS", "1024"))
AI_TIMEOUT_SECONDS = _env_float("AI_TIMEOUT_SECONDS", 30.0)
AI_MESSAGE_BUFFER_SECONDS = _env_float("AI_MESSAGE_BUFFER_SECONDS", 10.0)
AI_MAX_SENTENCES = int(os.getenv("AI_MAX_SENTENCES", "6"))
AI_MAX_CHARS = int(os.getenv("AI_MAX_CHARS", "1200"))
AI_HANDOFF_TRIGGERS = _env_list("AI_HANDOFF_TRIGGERS")
AI_FORBIDDEN_PHRASES = _env_list("AI_FORBIDDEN_PHRASES")
# "substring" (default) or "word"
AI_PHRASE_MATCH_MODE = os.getenv("AI_PHRASE_MATCH_MODE", "substring")
AI_SYSTEM_PROMPT = os.getenv("AI_SYSTEM_PROMPT", "")
AI_COMMAND_PREFIX = os.getenv("AI_COMMAND_PREFIX", "#ai")

# --- Conversation summary ---
SUMMARY_THRESHOLD = int(os.getenv("SUMMARY_THRESHOLD", "30"))
SUMMARY_MIN_MESSAGES = int(os.getenv("SUMMARY_MIN_MESSAGES", "10"))
SUMMARY_WINDOW = int(os.getenv("SUMMARY_WINDOW", "50"))

# --- Messaging transport (Twilio) ---
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID", "")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN", "")
TWILIO_FROM_NUMBER = os.getenv("TWILIO_FROM_NUMBER", "")
DEFAULT_CHANNEL = os.getenv("DEFAULT_CHANNEL", "sms")
SEND_MAX_ATTEMPTS = int(os.getenv("SEND_MAX_ATTEMPTS", "3"))
SEND_BACKOFF_BASE = _env_float("SEND_BACKOFF_BASE", 3.0)

# --- CRM ---
CRM_BASE_URL = os.getenv("CRM_BASE_URL", "")
CRM_ACCESS_TOKEN = os.getenv("CRM_ACCESS_TOKEN", "")
# JSON object: {"PROGRAM_STARTED": {"pipeline_id": 1, "status_id": 2}, ...}
CRM_STATUS_MAPPINGS = json.loads(os.getenv("CRM_STATUS_MAPPINGS", "{}") or "{}")

# --- Background sweeps (seconds) ---
SWEEP_TICK_SECONDS = int(os.getenv("SWEEP_TICK_SECONDS", "60"))
REMINDER_INTERVAL_SECONDS = int(os.getenv("REMINDER_INTERVAL_SECONDS", "300"))
ESCALATION_INTERVAL_SECONDS = int(os.getenv("ESCALATION_INTERVAL_SECONDS", "900"))
PROGRAM_UPDATE_INTERVAL_SECONDS = int(os.getenv("PROGRAM_UPDATE_INTERVAL_SECONDS", "3600"))

# --- Seed data ---
SEED_FILE = os.getenv("SEED_FILE", "")
