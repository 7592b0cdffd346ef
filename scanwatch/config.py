"""
Application Configuration
=========================
Central config loaded from environment variables.
All durations are milliseconds.
"""

import os


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Liveness
OFFLINE_TIMEOUT_MS = int(os.getenv("OFFLINE_TIMEOUT_MS", "30000"))
# Device listings that have no sweep behind them use a looser window.
# Display only, never written back as status.
SUMMARY_OFFLINE_TIMEOUT_MS = int(os.getenv("SUMMARY_OFFLINE_TIMEOUT_MS", "120000"))

# Scan deduplication
DUPLICATE_WINDOW_MS = int(os.getenv("DUPLICATE_WINDOW_MS", "15000"))
DEBOUNCE_WINDOW_MS = int(os.getenv("DEBOUNCE_WINDOW_MS", "3000"))
FRESHNESS_WINDOW_MS = int(os.getenv("FRESHNESS_WINDOW_MS", "15000"))
DEDUP_SWEEP_INTERVAL_MS = int(os.getenv("DEDUP_SWEEP_INTERVAL_MS", str(DUPLICATE_WINDOW_MS // 2)))
DEDUP_MAX_ENTRIES = int(os.getenv("DEDUP_MAX_ENTRIES", "10000"))
PROCESSING_SETTLE_MS = int(os.getenv("PROCESSING_SETTLE_MS", "3000"))
# Scans kept by the in-memory store; older ones fall off the log
MEMORY_SCAN_RETENTION = int(os.getenv("MEMORY_SCAN_RETENTION", "10000"))

# Scan processing
SCAN_MODE = os.getenv("SCAN_MODE", "attendance")
MIN_ATTENDANCE_PAYLOAD_LENGTH = int(os.getenv("MIN_ATTENDANCE_PAYLOAD_LENGTH", "8"))
BUSINESS_TIMEZONE = os.getenv("BUSINESS_TIMEZONE", "UTC")
MAX_CLOCK_SKEW_MS = int(os.getenv("MAX_CLOCK_SKEW_MS", str(24 * 60 * 60 * 1000)))

# Store
STORE_BACKEND = os.getenv("STORE_BACKEND", "memory").lower()
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./scanwatch.db")
STORE_TIMEOUT_MS = int(os.getenv("STORE_TIMEOUT_MS", "5000"))
SCAN_POLL_INTERVAL_MS = int(os.getenv("SCAN_POLL_INTERVAL_MS", "500"))

# Handle Railway's postgres:// vs postgresql://
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

# Adaptive poller
POLL_INTERVAL_MS = int(os.getenv("POLL_INTERVAL_MS", "7000"))
POLL_TIMEOUT_MS = int(os.getenv("POLL_TIMEOUT_MS", "5000"))
POLL_GRACE_MS = int(os.getenv("POLL_GRACE_MS", "15000"))
BACKOFF_BASE_MS = int(os.getenv("BACKOFF_BASE_MS", "2000"))
BACKOFF_FACTOR = float(os.getenv("BACKOFF_FACTOR", "1.5"))
BACKOFF_CAP_MS = int(os.getenv("BACKOFF_CAP_MS", "8000"))
MAX_CONSECUTIVE_FAILURES = int(os.getenv("MAX_CONSECUTIVE_FAILURES", "3"))
COOLDOWN_MS = int(os.getenv("COOLDOWN_MS", "30000"))
ONLINE_DEBOUNCE_MS = int(os.getenv("ONLINE_DEBOUNCE_MS", "1000"))
OFFLINE_DEBOUNCE_MS = int(os.getenv("OFFLINE_DEBOUNCE_MS", "500"))

# Background tasks started by the app lifespan
POLLER_ENABLED = _flag("POLLER_ENABLED", "true")
SCAN_CONSUMER_ENABLED = _flag("SCAN_CONSUMER_ENABLED", "true")

# Authentication for the sweep endpoint (empty secret = open, dev only)
CRON_SECRET = os.getenv("CRON_SECRET", "")
TRUST_INTERNAL_HEADER = _flag("TRUST_INTERNAL_HEADER", "true")
INTERNAL_CALL_HEADER = "X-Internal-Call"

# CORS origins (comma-separated in env, or * for dev)
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:8000").split(",")

# Device ingest rate limit (slowapi syntax)
INGEST_RATE_LIMIT = os.getenv("INGEST_RATE_LIMIT", "600/minute")
