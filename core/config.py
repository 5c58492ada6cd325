from __future__ import annotations
"""
Pumpsheet — Service Configuration
==================================
Shared settings for the calculation engine, the recommendation cache and the
datasheet backend client. Values come from the environment, with a .env file
at the repo root loaded first.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).parent.parent  # core/config.py → repo root

load_dotenv(PROJECT_ROOT / ".env")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Datasheet backend (persistence + recommendation API)
# ---------------------------------------------------------------------------
API_BASE_URL = os.getenv("PUMPSHEET_API_BASE_URL", "http://localhost:8000/api/process-datasheet").rstrip("/")
API_TOKEN = os.getenv("PUMPSHEET_API_TOKEN", "")
API_TIMEOUT = float(os.getenv("PUMPSHEET_API_TIMEOUT", "30"))  # seconds
HTTP_RETRY_ATTEMPTS = int(os.getenv("HTTP_RETRY_ATTEMPTS", "3"))

PUMP_CALCULATIONS_PATH = "/pump-calculations/"
RECOMMENDATIONS_PATH = "/pump-calculations/field_recommendations/"

# ---------------------------------------------------------------------------
# Recommendations
# ---------------------------------------------------------------------------
RECOMMENDATION_TTL_SECONDS = float(os.getenv("RECOMMENDATION_TTL_SECONDS", "300"))  # 5 minutes
RECOMMENDATION_LIMIT = int(os.getenv("RECOMMENDATION_LIMIT", "5"))
RECOMMENDATION_WORKERS = int(os.getenv("RECOMMENDATION_WORKERS", "2"))
MAX_TEXT_SUGGESTIONS = 10
TAG_PREFIX_LENGTH = 3

# ---------------------------------------------------------------------------
# Calculation engine
# ---------------------------------------------------------------------------
# When on, bar↔metre conversions use the record's density instead of water.
DENSITY_CORRECTION = _env_bool("DENSITY_CORRECTION", True)

# ---------------------------------------------------------------------------
# UI-facing status flags
# ---------------------------------------------------------------------------
STATUS_CLEAR_SECONDS = float(os.getenv("STATUS_CLEAR_SECONDS", "5"))

# ---------------------------------------------------------------------------
# HTTP service
# ---------------------------------------------------------------------------
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",")
