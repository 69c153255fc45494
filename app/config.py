"""
Learner Chat — Configuration
All environment variables and constants. Single source of truth.
No other file reads os.environ directly.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# ─── Paths ───────────────────────────────────────────────────────────────────
BASE_DIR = Path(__file__).resolve().parent.parent

# Load .env file if present (real environment wins)
load_dotenv(BASE_DIR / ".env", override=False)

# ─── API Keys ────────────────────────────────────────────────────────────────
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")

# ─── Database ────────────────────────────────────────────────────────────────
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"sqlite:///{BASE_DIR / 'learner.db'}"
)
# Hosted Postgres often hands out postgres://, SQLAlchemy wants postgresql://
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

RESET_DATABASE = os.getenv("RESET_DATABASE", "false").lower() == "true"

# ─── LLM Settings ────────────────────────────────────────────────────────────
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "openai")
# Options: openai (only option for now)
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4.1-mini")
LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "400"))
LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.4"))
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))

# ─── Conversation Limits ─────────────────────────────────────────────────────
PUBLIC_SESSION_MESSAGE_DAILY_LIMIT = int(os.getenv("PUBLIC_SESSION_MESSAGE_DAILY_LIMIT", "50"))
PUBLIC_IP_MESSAGE_DAILY_LIMIT = int(os.getenv("PUBLIC_IP_MESSAGE_DAILY_LIMIT", "200"))
RATE_WINDOW_HOURS = 24
MESSAGE_MIN_LENGTH = 3
MESSAGE_MAX_LENGTH = 256
HISTORY_LIMIT = 100  # rows returned for transcripts, topics and moments

# ─── Learner ─────────────────────────────────────────────────────────────────
DEFAULT_LEARNER_AGE = int(os.getenv("DEFAULT_LEARNER_AGE", "8"))
MIN_LEARNER_AGE = 3
MAX_LEARNER_AGE = 18

# ─── Knowledge Model ─────────────────────────────────────────────────────────
MASTERED_PROFICIENCY = 100
FALLBACK_TOPIC_NAME = "General Knowledge"

# ─── AI Turns ────────────────────────────────────────────────────────────────
# Off by default: the busy flag is advisory and concurrent turns may race.
# Turn on to run turns for the same session one after another in-process.
SERIALIZE_AI_TURNS = os.getenv("SERIALIZE_AI_TURNS", "false").lower() == "true"

# ─── JWT / Realtime Channel ──────────────────────────────────────────────────
JWT_SECRET = os.getenv("JWT_SECRET", "learner-dev-secret-change-in-production")
JWT_ALGORITHM = "HS256"
CHANNEL_TOKEN_EXPIRY_HOURS = int(os.getenv("CHANNEL_TOKEN_EXPIRY_HOURS", "24"))

# ─── CORS ────────────────────────────────────────────────────────────────────
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

# ─── Logging ─────────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
