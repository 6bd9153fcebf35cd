"""
therasync — Configuration.
Shared settings for the cache, background refresh and persistence layers.

Every value is read from the environment with a default. ``reload()``
re-reads the environment (the test-suite calls it between tests).
"""

import os
from pathlib import Path

# Base Paths
THERASYNC_DIR = Path.home() / ".therasync"
DEFAULT_DB_PATH = THERASYNC_DIR / "cache.db"


def reload() -> None:
    """Re-read every setting from the environment."""
    global MAX_CACHE_MB, MAX_CACHE_BYTES, CLEANUP_THRESHOLD, CLEANUP_INTERVAL
    global READ_RETRIES, RETRY_BASE_DELAY, RETRY_MAX_DELAY, RETRY_JITTER
    global API_URL, API_KEY, HTTP_TIMEOUT
    global DB_PATH, PERSIST_MAX_AGE_DAYS, CACHE_BUSTER, PERSIST_INTERVAL

    # ─── Cache Size Management ───────────────────────────────────────
    MAX_CACHE_MB = float(os.environ.get("THERASYNC_MAX_CACHE_MB", "50"))
    MAX_CACHE_BYTES = int(MAX_CACHE_MB * 1024 * 1024)
    CLEANUP_THRESHOLD = float(os.environ.get("THERASYNC_CLEANUP_THRESHOLD", "0.8"))
    CLEANUP_INTERVAL = float(os.environ.get("THERASYNC_CLEANUP_INTERVAL", "300"))  # 5 minutes

    # ─── Read Retries ────────────────────────────────────────────────
    READ_RETRIES = int(os.environ.get("THERASYNC_READ_RETRIES", "2"))
    RETRY_BASE_DELAY = float(os.environ.get("THERASYNC_RETRY_BASE_DELAY", "1.0"))
    RETRY_MAX_DELAY = float(os.environ.get("THERASYNC_RETRY_MAX_DELAY", "30.0"))
    RETRY_JITTER = float(os.environ.get("THERASYNC_RETRY_JITTER", "1.0"))

    # ─── HTTP Transport ──────────────────────────────────────────────
    API_URL = os.environ.get("THERASYNC_API_URL", "http://localhost:3001/api/v1")
    API_KEY = os.environ.get("THERASYNC_API_KEY", "")
    HTTP_TIMEOUT = float(os.environ.get("THERASYNC_HTTP_TIMEOUT", "30.0"))

    # ─── Snapshot Persistence ────────────────────────────────────────
    DB_PATH = os.environ.get("THERASYNC_DB", str(DEFAULT_DB_PATH))
    PERSIST_MAX_AGE_DAYS = float(os.environ.get("THERASYNC_PERSIST_MAX_AGE_DAYS", "7"))
    CACHE_BUSTER = os.environ.get("THERASYNC_CACHE_BUSTER", "smart-therapy-v2")
    PERSIST_INTERVAL = float(os.environ.get("THERASYNC_PERSIST_INTERVAL", "2"))


reload()
