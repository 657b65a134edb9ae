"""
Configuration constants and environment readers for foundry-bridge.
"""

import os
from typing import Optional


# ─────────────────────────────────────────────────────────────────────
# SERVICE DEFAULTS
# ─────────────────────────────────────────────────────────────────────

DEFAULT_SERVICE_URL: str = "http://localhost:5273"
DEFAULT_TIMEOUT_SECONDS: float = 120.0
DEFAULT_PROBE_TIMEOUT_SECONDS: float = 5.0

# Oldest service release whose streaming dialect we have verified.
# Older versions are allowed but logged.
MIN_SUPPORTED_VERSION: str = "0.5.0"

SERVICE_START_COMMAND: str = "foundry service start"
MODEL_LIST_COMMAND: str = "foundry model list"
DISCOVERY_COMMAND: list[str] = ["foundry", "service", "status"]
DISCOVERY_TIMEOUT_SECONDS: float = 5.0
START_TIMEOUT_SECONDS: float = 60.0

# How long a loaded model stays resident after the last request
MODEL_LOAD_TTL_SECONDS: int = 600


# ─────────────────────────────────────────────────────────────────────
# CAPABILITY DEFAULTS - Used when metadata is missing
# ─────────────────────────────────────────────────────────────────────

DEFAULT_CONTEXT_WINDOW: int = 4096
MAX_OUTPUT_TOKENS_CEILING: int = 2048


# ─────────────────────────────────────────────────────────────────────
# ENVIRONMENT LOADING
# ─────────────────────────────────────────────────────────────────────

def _float_from_env(key: str, default: float) -> float:
    try:
        return float(os.environ.get(key, str(default)))
    except ValueError:
        return default


def _int_from_env(key: str, default: int) -> int:
    try:
        return int(os.environ.get(key, str(default)))
    except ValueError:
        return default


def get_service_url() -> Optional[str]:
    """
    Get an explicitly configured service URL.

    Set FOUNDRY_LOCAL_URL in .env to skip auto-discovery.
    Returns None when unset or blank.
    """
    value = os.environ.get("FOUNDRY_LOCAL_URL", "").strip()
    return value or None


def get_timeout_seconds() -> float:
    """HTTP timeout for chat requests (FOUNDRY_TIMEOUT_SECONDS, default: 120)."""
    return _float_from_env("FOUNDRY_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)


def get_probe_timeout_seconds() -> float:
    """HTTP timeout for health probes (FOUNDRY_PROBE_TIMEOUT_SECONDS, default: 5)."""
    return _float_from_env("FOUNDRY_PROBE_TIMEOUT_SECONDS", DEFAULT_PROBE_TIMEOUT_SECONDS)


def get_auto_start() -> bool:
    """
    Whether to start the local service when it is unreachable.

    Set FOUNDRY_AUTO_START=1 (or true/yes) in .env. Default: off.
    """
    return os.environ.get("FOUNDRY_AUTO_START", "").strip().lower() in ("1", "true", "yes", "on")


# ─────────────────────────────────────────────────────────────────────
# RETRY CONFIGURATION - For model loading failures
# ─────────────────────────────────────────────────────────────────────

def get_load_retry_attempts() -> int:
    """
    Get max model load attempts from environment or default.

    Set FOUNDRY_LOAD_RETRY_ATTEMPTS in .env (default: 3).
    """
    return max(1, _int_from_env("FOUNDRY_LOAD_RETRY_ATTEMPTS", 3))


def get_load_retry_min_wait() -> int:
    """Minimum wait between load retries in seconds (FOUNDRY_LOAD_RETRY_MIN_WAIT, default: 1)."""
    return _int_from_env("FOUNDRY_LOAD_RETRY_MIN_WAIT", 1)


def get_load_retry_max_wait() -> int:
    """Maximum wait between load retries in seconds (FOUNDRY_LOAD_RETRY_MAX_WAIT, default: 8)."""
    return _int_from_env("FOUNDRY_LOAD_RETRY_MAX_WAIT", 8)
