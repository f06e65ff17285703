"""
Runtime configuration.
Values come from the environment (optionally a backend/.env file).
"""

import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

HUBSPOT_API_BASE = os.environ.get("HUBSPOT_API_BASE", "https://api.hubapi.com").rstrip("/")
HUBSPOT_TIMEOUT = float(os.environ.get("HUBSPOT_TIMEOUT", "30"))

# Cache revalidation intervals (seconds)
DEALS_CACHE_TTL = int(os.environ.get("DEALS_CACHE_TTL", "300"))
PIPELINES_CACHE_TTL = int(os.environ.get("PIPELINES_CACHE_TTL", "300"))
STAGES_CACHE_TTL = int(os.environ.get("STAGES_CACHE_TTL", "3600"))
OWNERS_CACHE_TTL = int(os.environ.get("OWNERS_CACHE_TTL", "3600"))

# Export polling
EXPORT_TIMEOUT_SECONDS = float(os.environ.get("EXPORT_TIMEOUT_SECONDS", "300"))
EXPORT_INITIAL_DELAY = float(os.environ.get("EXPORT_INITIAL_DELAY", "2"))
EXPORT_POLL_INTERVAL = float(os.environ.get("EXPORT_POLL_INTERVAL", "3"))

CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*").split(",")


def get_hubspot_access_token() -> str:
    """Return the HubSpot private-app token, preferring the live key over the test key."""
    token = os.environ.get("HUBSPOT_API_KEY") or os.environ.get("HUBSPOT_TEST_API_KEY")
    if not token:
        raise RuntimeError(
            "HUBSPOT_API_KEY is required (or HUBSPOT_TEST_API_KEY for automated tests)."
        )
    return token


def get_target_pipeline_ids() -> List[str]:
    raw = os.environ.get("HUBSPOT_TARGET_PIPELINE_IDS", "default")
    return [p.strip() for p in raw.split(",") if p.strip()]


def is_e2e_test_mode() -> bool:
    return os.environ.get("E2E_TEST_MODE", "").lower() == "true"


def get_session_secret() -> str:
    return (os.environ.get("SESSION_JWT_SECRET") or "").strip()
