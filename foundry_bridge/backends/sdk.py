"""
SdkBackend - ServiceBackend over a local-service SDK manager.

The SDK manager is synchronous, so every call runs in a worker thread.
Any object exposing the manager surface works (is_service_running,
start_service, list_catalog_models, list_loaded_models, get_model_info,
load_model or init, service_uri or endpoint).
"""

import asyncio
import logging
from typing import Any, Optional

from foundry_bridge.errors import ServiceUnavailable
from foundry_bridge.schema import ServiceEndpoint

logger = logging.getLogger(__name__)


def _to_record(info: Any) -> dict:
    """SDK model info (pydantic model, dataclass, dict) -> plain dict."""
    if isinstance(info, dict):
        return info
    if hasattr(info, "model_dump"):
        return info.model_dump()
    if hasattr(info, "__dict__"):
        return dict(vars(info))
    return {"id": str(info)}


class SdkBackend:
    """
    ServiceBackend implementation delegating to an SDK manager.

    The endpoint argument of each method is ignored: the manager tracks
    its own service address.
    """

    def __init__(self, manager: Any):
        self._manager = manager

    @classmethod
    def from_sdk(cls) -> "SdkBackend":
        """Build a backend around foundry-local-sdk's manager (install the `sdk` extra)."""
        from foundry_local import FoundryLocalManager

        return cls(FoundryLocalManager(bootstrap=False))

    async def discover_endpoint(self) -> Optional[str]:
        def read_uri():
            return getattr(self._manager, "service_uri", None) or getattr(self._manager, "endpoint", None)

        try:
            uri = await asyncio.to_thread(read_uri)
        except Exception as e:
            logger.debug(f"SDK discovery failed: {e!r}")
            return None
        if not isinstance(uri, str) or not uri:
            return None
        uri = uri.rstrip("/")
        # The SDK's endpoint property points at the OpenAI route prefix
        if uri.endswith("/v1"):
            uri = uri[:-3]
        return uri

    async def start_service(self) -> None:
        await asyncio.to_thread(self._manager.start_service)

    async def fetch_status(self, endpoint: ServiceEndpoint) -> dict:
        running = await asyncio.to_thread(self._manager.is_service_running)
        if not running:
            raise ServiceUnavailable("SDK reports the local service is not running.", endpoint=endpoint.base_url)
        return {"status": "ok"}

    async def fetch_loaded_models(self, endpoint: ServiceEndpoint) -> list[dict]:
        models = await asyncio.to_thread(self._manager.list_loaded_models)
        return [_to_record(m) for m in models or []]

    async def fetch_catalog(self, endpoint: ServiceEndpoint) -> object:
        models = await asyncio.to_thread(self._manager.list_catalog_models)
        if not isinstance(models, (list, tuple)):
            return models
        return [_to_record(m) for m in models]

    async def fetch_model_info(self, endpoint: ServiceEndpoint, model_id: str) -> Optional[dict]:
        info = await asyncio.to_thread(self._manager.get_model_info, model_id)
        if info is None:
            return None
        return _to_record(info)

    async def load_model(self, endpoint: ServiceEndpoint, model_id: str) -> None:
        loader = getattr(self._manager, "load_model", None) or getattr(self._manager, "init", None)
        if loader is None:
            logger.debug("SDK manager has no load step; relying on lazy loading")
            return
        await asyncio.to_thread(loader, model_id)
