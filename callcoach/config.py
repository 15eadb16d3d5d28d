"""Environment-driven settings for the coaching backend."""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

# Shared secret the browser extension passes as ?apiKey=... (empty disables auth)
BACKEND_API_KEY = os.getenv("BACKEND_API_KEY", "")

CORS_ORIGIN = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGIN", "http://localhost:5173").split(",")
    if origin.strip()
]

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8080"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# ---------------------------------------------------------------------------
# Coaching cadence (seconds)
# ---------------------------------------------------------------------------

WARMUP_SECONDS = float(os.getenv("WARMUP_SECONDS", "180"))
AUTO_TIP_INTERVAL_SECONDS = float(os.getenv("AUTO_TIP_INTERVAL_SECONDS", "30"))

# Agent silence that ends the response capture window
RESPONSE_SILENCE_SECONDS = float(os.getenv("RESPONSE_SILENCE_SECONDS", "3"))
# Customer silence after they started replying
REACTION_SILENCE_SECONDS = float(os.getenv("REACTION_SILENCE_SECONDS", "3"))
# Customer never replied at all
REACTION_FALLBACK_SECONDS = float(os.getenv("REACTION_FALLBACK_SECONDS", "30"))

# Ended conversations stay readable this long before eviction
CONVERSATION_RETENTION_SECONDS = float(os.getenv("CONVERSATION_RETENTION_SECONDS", "300"))

# ---------------------------------------------------------------------------
# Memory bounds
# ---------------------------------------------------------------------------

TRANSCRIPT_HISTORY_LIMIT = 50
RECOMMENDATION_LIMIT = 100
REQUEST_HISTORY_WINDOW = 20


@dataclass(frozen=True)
class CoachingTimings:
    """Timer durations used by one orchestrator."""

    warmup: float = WARMUP_SECONDS
    auto_tip_interval: float = AUTO_TIP_INTERVAL_SECONDS
    response_silence: float = RESPONSE_SILENCE_SECONDS
    reaction_silence: float = REACTION_SILENCE_SECONDS
    reaction_fallback: float = REACTION_FALLBACK_SECONDS
    retention: float = CONVERSATION_RETENTION_SECONDS
