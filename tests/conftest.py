"""Shared test fixtures for foundry-bridge tests."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from foundry_bridge.capabilities import CapabilityCache, clear_capability_cache
from foundry_bridge.schema import ServiceEndpoint


# ─────────────────────────────────────────────────────────────────────
# MOCK DATA
# ─────────────────────────────────────────────────────────────────────

MOCK_BASE_URL = "http://127.0.0.1:5273"

MOCK_MODEL = "phi-4-mini"

# Rows shaped like the service's /foundry/list output
MOCK_CATALOG = [
    {
        "name": "Phi-4-mini-instruct-generic-cpu",
        "alias": "phi-4-mini",
        "displayName": "Phi-4-mini-instruct-generic-cpu",
        "task": "chat-completion",
        "maxOutputTokens": 2048,
        "supportsToolCalling": True,
        "version": "1",
    },
    {
        "name": "Phi-3.5-vision-instruct-generic-gpu",
        "alias": "phi-3.5-vision",
        "task": "multimodal",
        "maxOutputTokens": 1024,
        "supportsToolCalling": False,
    },
    {
        "name": "deepseek-r1-distill-qwen-7b-generic-gpu",
        "alias": "deepseek-r1-7b",
        "task": "chat-completion",
    },
]


# ─────────────────────────────────────────────────────────────────────
# FIXTURES
# ─────────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def reset_shared_cache():
    """The process-wide capability cache must not leak between tests."""
    clear_capability_cache()
    yield
    clear_capability_cache()


@pytest.fixture
def base_url():
    return MOCK_BASE_URL


@pytest.fixture
def endpoint():
    return ServiceEndpoint(base_url=MOCK_BASE_URL)


@pytest.fixture
def cache():
    return CapabilityCache()


@pytest.fixture
def catalog_rows():
    """Fresh copy of the mock catalog."""
    return [dict(row) for row in MOCK_CATALOG]


@pytest.fixture
def mock_backend():
    """ServiceBackend double with a healthy service and an empty catalog."""
    backend = MagicMock()
    backend.discover_endpoint = AsyncMock(return_value=None)
    backend.fetch_status = AsyncMock(return_value={"status": "ok"})
    backend.fetch_loaded_models = AsyncMock(return_value=[])
    backend.fetch_catalog = AsyncMock(return_value=[])
    backend.fetch_model_info = AsyncMock(return_value=None)
    backend.load_model = AsyncMock(return_value=None)
    backend.start_service = AsyncMock(return_value=None)
    return backend
