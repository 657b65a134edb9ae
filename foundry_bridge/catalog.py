"""
Catalog Lister - every model the service knows, as ModelCapabilities.

One bad row never fails the listing: it is logged and skipped. Only an
unreachable service or a catalog that is not a list is fatal.
"""

import logging

import httpx

from foundry_bridge.backends.base import ServiceBackend
from foundry_bridge.capabilities import CapabilityResolver
from foundry_bridge.errors import MalformedCatalog, ServiceUnavailable, hydrate_response_error
from foundry_bridge.health import HealthProber
from foundry_bridge.schema import CatalogEntry, ModelCapabilities, ServiceEndpoint

logger = logging.getLogger(__name__)


class CatalogLister:

    def __init__(self, backend: ServiceBackend, prober: HealthProber, resolver: CapabilityResolver):
        self._backend = backend
        self._prober = prober
        self._resolver = resolver

    async def _fetch_raw(self, endpoint: ServiceEndpoint) -> object:
        try:
            return await self._backend.fetch_catalog(endpoint)
        except httpx.HTTPStatusError as e:
            raise hydrate_response_error(e.response, "catalog", endpoint.base_url) from e
        except httpx.HTTPError as e:
            raise ServiceUnavailable(f"Could not fetch the model catalog: {e!r}.", endpoint=endpoint.base_url) from e
        except ValueError as e:
            raise MalformedCatalog(f"Model catalog is not valid JSON: {e}.", endpoint=endpoint.base_url) from e

    async def list_models(self, endpoint: ServiceEndpoint) -> dict[str, ModelCapabilities]:
        """
        Raises:
            ServiceUnavailable: service not reachable
            MalformedCatalog: catalog is not a list
        """
        await self._prober.ensure_healthy(endpoint)
        raw = await self._fetch_raw(endpoint)

        if not isinstance(raw, list):
            raise MalformedCatalog(
                f"Model catalog is not a list (got {type(raw).__name__}).",
                endpoint=endpoint.base_url,
            )
        if not raw:
            logger.warning("No models found in Foundry Local catalog")
            return {}

        models: dict[str, ModelCapabilities] = {}
        for index, row in enumerate(raw):
            try:
                entry = CatalogEntry.from_raw(row)
            except ValueError as e:
                logger.warning(f"Skipping catalog entry {index}: {e}")
                continue
            try:
                models[entry.id] = self._resolver.capabilities_from_entry(entry)
            except Exception as e:
                logger.warning(f"Skipping catalog entry {entry.id}: could not resolve capabilities: {e}")

        if not models:
            logger.warning(f"No valid models found in Foundry Local catalog ({len(raw)} entries skipped)")
        return models
