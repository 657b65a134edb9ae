"""
RestBackend - ServiceBackend over the local service's HTTP control
endpoints, with `foundry service status` for auto-discovery.
"""

import asyncio
import logging
import re
from typing import Optional, Sequence

import httpx

from foundry_bridge.config import (
    DISCOVERY_COMMAND,
    DISCOVERY_TIMEOUT_SECONDS,
    MODEL_LOAD_TTL_SECONDS,
    SERVICE_START_COMMAND,
    START_TIMEOUT_SECONDS,
    get_probe_timeout_seconds,
    get_timeout_seconds,
)
from foundry_bridge.errors import MalformedCatalog, ServiceUnavailable
from foundry_bridge.schema import CatalogEntry, ServiceEndpoint

logger = logging.getLogger(__name__)

# scheme://host[:port] - any path after it is dropped
URL_PATTERN = re.compile(r"https?://[^\s/\"'<>]+")


async def run_command(argv: Sequence[str], timeout: float) -> tuple[int, str]:
    """
    Run a command, returning (exit code, combined output).

    Raises:
        OSError: executable not found
        TimeoutError: command did not finish in time (the process is killed)
    """
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise
    return process.returncode, stdout.decode("utf-8", errors="replace")


def parse_service_url(output: str) -> Optional[str]:
    """Extract the first http(s)://host:port from CLI output."""
    match = URL_PATTERN.search(output)
    return match.group(0) if match else None


def _find_record(records: list, model_id: str) -> Optional[dict]:
    for raw in records:
        try:
            entry = CatalogEntry.from_raw(raw)
        except ValueError:
            continue
        if entry.matches(model_id):
            return raw
    return None


class RestBackend:
    """
    ServiceBackend implementation using plain HTTP.

    Endpoints (relative to the service base URL):
        GET /openai/status          primary health probe
        GET /v1/models              loaded models (secondary probe)
        GET /foundry/list           full model catalog
        GET /openai/load/{model}    load a model
    """

    STATUS_PATH = "/openai/status"
    MODELS_PATH = "/v1/models"
    CATALOG_PATH = "/foundry/list"
    LOAD_PATH = "/openai/load/{model_id}"

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        api_key: Optional[str] = None,
        probe_timeout: Optional[float] = None,
        discovery_command: Optional[Sequence[str]] = None,
        discovery_timeout: float = DISCOVERY_TIMEOUT_SECONDS,
    ):
        self._client = client or httpx.AsyncClient(timeout=get_timeout_seconds())
        self._owns_client = client is None
        self._api_key = api_key
        self._probe_timeout = probe_timeout if probe_timeout is not None else get_probe_timeout_seconds()
        self._discovery_command = list(discovery_command or DISCOVERY_COMMAND)
        self._discovery_timeout = discovery_timeout

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def _get_json(self, url: str, timeout: Optional[float] = None, params: Optional[dict] = None):
        kwargs = {"headers": self._headers()}
        if timeout is not None:
            kwargs["timeout"] = timeout
        if params:
            kwargs["params"] = params
        response = await self._client.get(url, **kwargs)
        response.raise_for_status()
        return response.json()

    # ─────────────────────────────────────────────────────────────────
    # DISCOVERY / LIFECYCLE
    # ─────────────────────────────────────────────────────────────────

    async def discover_endpoint(self) -> Optional[str]:
        try:
            code, output = await run_command(self._discovery_command, self._discovery_timeout)
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"Service discovery via {' '.join(self._discovery_command)} failed: {e!r}")
            return None
        if code != 0:
            logger.debug(f"Service discovery exited with {code}: {output[:200]}")
        url = parse_service_url(output)
        if url:
            logger.debug(f"Discovered local service at {url}")
        return url

    async def start_service(self) -> None:
        argv = SERVICE_START_COMMAND.split()
        logger.info(f"Starting local service: {SERVICE_START_COMMAND}")
        try:
            code, output = await run_command(argv, START_TIMEOUT_SECONDS)
        except (OSError, asyncio.TimeoutError) as e:
            raise ServiceUnavailable(f"Could not run `{SERVICE_START_COMMAND}`: {e!r}.") from e
        if code != 0:
            raise ServiceUnavailable(
                f"`{SERVICE_START_COMMAND}` exited with code {code}: {output.strip()[:200]}"
            )

    # ─────────────────────────────────────────────────────────────────
    # PROBES AND METADATA
    # ─────────────────────────────────────────────────────────────────

    async def fetch_status(self, endpoint: ServiceEndpoint) -> dict:
        data = await self._get_json(endpoint.url(self.STATUS_PATH), timeout=self._probe_timeout)
        return data if isinstance(data, dict) else {"raw": data}

    async def fetch_loaded_models(self, endpoint: ServiceEndpoint) -> list[dict]:
        data = await self._get_json(endpoint.url(self.MODELS_PATH), timeout=self._probe_timeout)
        # OpenAI-compatible servers return {"data": [{"id": "model-name", ...}, ...]}
        items = data.get("data") if isinstance(data, dict) else data
        if not isinstance(items, list):
            raise MalformedCatalog("Model list response is not a list.", endpoint=endpoint.base_url)
        return [item for item in items if isinstance(item, dict)]

    async def fetch_catalog(self, endpoint: ServiceEndpoint) -> object:
        data = await self._get_json(endpoint.url(self.CATALOG_PATH))
        # Some service versions wrap the list
        if isinstance(data, dict):
            for key in ("data", "models"):
                if isinstance(data.get(key), list):
                    return data[key]
        return data

    async def fetch_model_info(self, endpoint: ServiceEndpoint, model_id: str) -> Optional[dict]:
        """
        Look the model up in the catalog, then in the loaded-model list.

        Only an authoritative catalog that lacks the model yields None;
        if the catalog itself could not be read the error propagates.
        """
        catalog = None
        error: Optional[Exception] = None
        try:
            catalog = await self.fetch_catalog(endpoint)
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Catalog lookup for {model_id} failed: {e!r}")
            error = e

        if isinstance(catalog, list):
            found = _find_record(catalog, model_id)
            if found is not None:
                return found

        try:
            loaded = await self.fetch_loaded_models(endpoint)
        except (httpx.HTTPError, ValueError, MalformedCatalog) as e:
            logger.debug(f"Loaded-model lookup for {model_id} failed: {e!r}")
            loaded = None
            error = error or e

        if loaded:
            found = _find_record(loaded, model_id)
            if found is not None:
                return found

        if isinstance(catalog, list):
            return None
        if error is not None:
            raise error
        raise MalformedCatalog("Catalog response is not a list.", endpoint=endpoint.base_url)

    async def load_model(self, endpoint: ServiceEndpoint, model_id: str) -> None:
        url = endpoint.url(self.LOAD_PATH.format(model_id=model_id))
        response = await self._client.get(
            url,
            headers=self._headers(),
            params={"ttl": MODEL_LOAD_TTL_SECONDS},
        )
        response.raise_for_status()
        logger.info(f"Loaded model {model_id} on {endpoint.base_url}")
