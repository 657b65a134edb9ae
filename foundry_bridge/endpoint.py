"""
Endpoint Resolver - where is the local service listening?

Order: explicit URL, then the backend's auto-discovery, then the
well-known default address. Resolution never fails; an unreachable
address is the health prober's problem.
"""

import logging
from typing import Optional

from foundry_bridge.backends.base import ServiceBackend
from foundry_bridge.config import DEFAULT_SERVICE_URL
from foundry_bridge.schema import DiscoverySource, ServiceEndpoint

logger = logging.getLogger(__name__)


class EndpointResolver:

    def __init__(self, backend: ServiceBackend, default_url: str = DEFAULT_SERVICE_URL):
        self._backend = backend
        self._default_url = default_url

    async def resolve(self, explicit_url: Optional[str] = None) -> ServiceEndpoint:
        if explicit_url and explicit_url.strip():
            return ServiceEndpoint(base_url=explicit_url, source=DiscoverySource.EXPLICIT)

        try:
            discovered = await self._backend.discover_endpoint()
        except Exception as e:
            logger.warning(f"Service discovery failed, using {self._default_url}: {e!r}")
            discovered = None

        if discovered:
            try:
                return ServiceEndpoint(base_url=discovered, source=DiscoverySource.AUTO_DISCOVERED)
            except ValueError as e:
                logger.warning(f"Discovered address {discovered!r} is unusable: {e}")

        logger.debug(f"No service discovered, using default {self._default_url}")
        return ServiceEndpoint(base_url=self._default_url, source=DiscoverySource.DEFAULT)
