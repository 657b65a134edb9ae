"""
ServiceBackend Protocol - the metadata and lifecycle surface of the local
service.

This is the WHAT (interface), not the HOW. rest.py talks to the service's
HTTP control endpoints directly; sdk.py wraps a local-service SDK manager.
The resolver, prober and lister only ever see this protocol.
"""

from typing import Optional, Protocol

from foundry_bridge.schema import ServiceEndpoint


class ServiceBackend(Protocol):
    """
    Contract for reaching the local service's control surface.

    Implementations raise on transport failure; interpretation of the
    failure (fallback, default, fatal) belongs to the caller.
    """

    async def discover_endpoint(self) -> Optional[str]:
        """
        Ask the service's control surface where it is listening.

        Returns:
            Base URL, or None when discovery finds nothing. Must not raise.
        """
        ...

    async def fetch_status(self, endpoint: ServiceEndpoint) -> dict:
        """Primary health probe. Returns the status document."""
        ...

    async def fetch_loaded_models(self, endpoint: ServiceEndpoint) -> list[dict]:
        """Secondary probe: the OpenAI-style model list."""
        ...

    async def fetch_catalog(self, endpoint: ServiceEndpoint) -> object:
        """
        Raw model catalog.

        Returned unvalidated; the caller rejects anything that is not a list.
        """
        ...

    async def fetch_model_info(self, endpoint: ServiceEndpoint, model_id: str) -> Optional[dict]:
        """
        Metadata for one model.

        Returns:
            Raw record, or None when the service states the model does not exist.

        Raises:
            Any exception when the metadata could not be fetched at all.
        """
        ...

    async def load_model(self, endpoint: ServiceEndpoint, model_id: str) -> None:
        """Ask the service to load/initialize a model before first use."""
        ...

    async def start_service(self) -> None:
        """Start the local service."""
        ...
