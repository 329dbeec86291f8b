"""Runtime settings read from the environment."""

from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y"}


DATABASE_PATH = os.getenv("DATABASE_PATH", ":memory:")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(20 * 1024 * 1024)))  # 20MB

DEFAULT_PAGE_SIZE = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
MAX_PAGE_SIZE = int(os.getenv("MAX_PAGE_SIZE", "1000"))

# Analysis runs on the first N rows only, so its stats are sample estimates.
ANALYSIS_SAMPLE_SIZE = int(os.getenv("ANALYSIS_SAMPLE_SIZE", "100"))

FILTER_CASE_SENSITIVE = _env_bool("FILTER_CASE_SENSITIVE", False)
SORT_MODE = os.getenv("SORT_MODE", "auto")

INVITATION_TTL_HOURS = int(os.getenv("INVITATION_TTL_HOURS", "24"))
MAX_ACTIVE_INVITATIONS_PER_EMAIL = int(os.getenv("MAX_ACTIVE_INVITATIONS_PER_EMAIL", "5"))
# Invitation links point at the registration page of the web client.
APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:3000")
