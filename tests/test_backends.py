"""Tests for the REST and SDK backends.

RestBackend is mocked at the httpx boundary (respx) and at the subprocess
seam (run_command). SdkBackend wraps a MagicMock manager.
"""

import asyncio
import sys
from types import SimpleNamespace

import httpx
import pytest
import respx
from pydantic import BaseModel
from unittest.mock import AsyncMock, MagicMock, patch

from foundry_bridge.backends import RestBackend, SdkBackend
from foundry_bridge.backends.rest import parse_service_url, run_command
from foundry_bridge.errors import MalformedCatalog, ServiceUnavailable


# ─────────────────────────────────────────────────────────────────────
# DISCOVERY
# ─────────────────────────────────────────────────────────────────────

class TestServiceUrlParsing:

    @pytest.mark.parametrize("output, expected", [
        ("🟢 Model management service is running on http://127.0.0.1:5273/openai/status",
         "http://127.0.0.1:5273"),
        ("Service is Started on http://localhost:61234/, PID 1234!", "http://localhost:61234"),
        ("running at https://[::1]:8443/v1", "https://[::1]:8443"),
        ("🔴 Model management service is not running!", None),
        ("", None),
    ])
    def test_first_url(self, output, expected):
        assert parse_service_url(output) == expected


class TestRunCommand:

    @pytest.mark.asyncio
    async def test_captures_output(self):
        code, output = await run_command([sys.executable, "-c", "print('http://127.0.0.1:5273')"], timeout=30)

        assert code == 0
        assert "http://127.0.0.1:5273" in output

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self):
        with pytest.raises(asyncio.TimeoutError):
            await run_command([sys.executable, "-c", "import time; time.sleep(30)"], timeout=0.2)

    @pytest.mark.asyncio
    async def test_missing_executable(self):
        with pytest.raises(OSError):
            await run_command(["definitely-not-a-real-binary-xyz"], timeout=5)


class TestRestDiscovery:

    @pytest.mark.asyncio
    async def test_discovers_from_status_output(self):
        backend = RestBackend(client=httpx.AsyncClient())
        with patch(
            "foundry_bridge.backends.rest.run_command",
            AsyncMock(return_value=(0, "Model management service is running on http://127.0.0.1:5273/openai/status")),
        ) as run:
            url = await backend.discover_endpoint()

        assert url == "http://127.0.0.1:5273"
        assert run.await_args.args[0] == ["foundry", "service", "status"]

    @pytest.mark.parametrize("failure", [FileNotFoundError("foundry"), asyncio.TimeoutError()])
    @pytest.mark.asyncio
    async def test_discovery_failure_returns_none(self, failure):
        backend = RestBackend(client=httpx.AsyncClient())
        with patch("foundry_bridge.backends.rest.run_command", AsyncMock(side_effect=failure)):
            assert await backend.discover_endpoint() is None

    @pytest.mark.asyncio
    async def test_not_running_returns_none(self):
        backend = RestBackend(client=httpx.AsyncClient())
        with patch(
            "foundry_bridge.backends.rest.run_command",
            AsyncMock(return_value=(1, "Model management service is not running!")),
        ):
            assert await backend.discover_endpoint() is None


class TestRestStartService:

    @pytest.mark.asyncio
    async def test_start_success(self):
        backend = RestBackend(client=httpx.AsyncClient())
        with patch("foundry_bridge.backends.rest.run_command", AsyncMock(return_value=(0, "started"))) as run:
            await backend.start_service()

        assert run.await_args.args[0] == ["foundry", "service", "start"]

    @pytest.mark.asyncio
    async def test_start_nonzero_exit(self):
        backend = RestBackend(client=httpx.AsyncClient())
        with patch("foundry_bridge.backends.rest.run_command", AsyncMock(return_value=(2, "port in use"))):
            with pytest.raises(ServiceUnavailable, match="port in use"):
                await backend.start_service()

    @pytest.mark.asyncio
    async def test_cli_missing(self):
        backend = RestBackend(client=httpx.AsyncClient())
        with patch("foundry_bridge.backends.rest.run_command", AsyncMock(side_effect=FileNotFoundError("foundry"))):
            with pytest.raises(ServiceUnavailable):
                await backend.start_service()


# ─────────────────────────────────────────────────────────────────────
# REST METADATA
# ─────────────────────────────────────────────────────────────────────

class TestRestMetadata:

    @pytest.mark.asyncio
    @respx.mock
    async def test_loaded_models_unwrapped(self, endpoint):
        respx.get(f"{endpoint.base_url}/v1/models").mock(
            return_value=httpx.Response(200, json={"object": "list", "data": [{"id": "a"}, "junk", {"id": "b"}]})
        )

        async with httpx.AsyncClient() as client:
            models = await RestBackend(client=client).fetch_loaded_models(endpoint)

        assert models == [{"id": "a"}, {"id": "b"}]

    @pytest.mark.asyncio
    @respx.mock
    async def test_loaded_models_not_a_list(self, endpoint):
        respx.get(f"{endpoint.base_url}/v1/models").mock(
            return_value=httpx.Response(200, json={"data": "nope"})
        )

        async with httpx.AsyncClient() as client:
            with pytest.raises(MalformedCatalog):
                await RestBackend(client=client).fetch_loaded_models(endpoint)

    @pytest.mark.asyncio
    @respx.mock
    async def test_status_non_object_wrapped(self, endpoint):
        respx.get(f"{endpoint.base_url}/openai/status").mock(
            return_value=httpx.Response(200, json=["up"])
        )

        async with httpx.AsyncClient() as client:
            document = await RestBackend(client=client).fetch_status(endpoint)

        assert document == {"raw": ["up"]}

    @pytest.mark.asyncio
    @respx.mock
    async def test_api_key_sent(self, endpoint):
        route = respx.get(f"{endpoint.base_url}/openai/status").mock(
            return_value=httpx.Response(200, json={"status": "ok"})
        )

        async with httpx.AsyncClient() as client:
            await RestBackend(client=client, api_key="secret").fetch_status(endpoint)

        assert route.calls.last.request.headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    @respx.mock
    async def test_load_model_passes_ttl(self, endpoint):
        route = respx.route(method="GET", path="/openai/load/phi-4-mini").mock(
            return_value=httpx.Response(200)
        )

        async with httpx.AsyncClient() as client:
            await RestBackend(client=client).load_model(endpoint, "phi-4-mini")

        assert route.calls.last.request.url.params["ttl"] == "600"

    @pytest.mark.asyncio
    @respx.mock
    async def test_load_model_error_raises(self, endpoint):
        respx.route(method="GET", path="/openai/load/phi-4-mini").mock(
            return_value=httpx.Response(500)
        )

        async with httpx.AsyncClient() as client:
            with pytest.raises(httpx.HTTPStatusError):
                await RestBackend(client=client).load_model(endpoint, "phi-4-mini")


class TestRestModelInfo:

    @pytest.mark.asyncio
    @respx.mock
    async def test_found_in_catalog_by_alias(self, endpoint, catalog_rows):
        respx.get(f"{endpoint.base_url}/foundry/list").mock(
            return_value=httpx.Response(200, json=catalog_rows)
        )

        async with httpx.AsyncClient() as client:
            record = await RestBackend(client=client).fetch_model_info(endpoint, "phi-3.5-vision")

        assert record["name"] == "Phi-3.5-vision-instruct-generic-gpu"

    @pytest.mark.asyncio
    @respx.mock
    async def test_found_in_loaded_models(self, endpoint):
        respx.get(f"{endpoint.base_url}/foundry/list").mock(
            return_value=httpx.Response(200, json=[{"id": "other"}])
        )
        respx.get(f"{endpoint.base_url}/v1/models").mock(
            return_value=httpx.Response(200, json={"data": [{"id": "custom-gguf"}]})
        )

        async with httpx.AsyncClient() as client:
            record = await RestBackend(client=client).fetch_model_info(endpoint, "custom-gguf")

        assert record == {"id": "custom-gguf"}

    @pytest.mark.asyncio
    @respx.mock
    async def test_absent_everywhere_returns_none(self, endpoint):
        respx.get(f"{endpoint.base_url}/foundry/list").mock(
            return_value=httpx.Response(200, json=[{"id": "other"}])
        )
        respx.get(f"{endpoint.base_url}/v1/models").mock(
            return_value=httpx.Response(200, json={"data": []})
        )

        async with httpx.AsyncClient() as client:
            assert await RestBackend(client=client).fetch_model_info(endpoint, "ghost") is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_unreadable_catalog_raises(self, endpoint):
        """Without a readable catalog, absence is unknown rather than confirmed."""
        respx.get(f"{endpoint.base_url}/foundry/list").mock(return_value=httpx.Response(500))
        respx.get(f"{endpoint.base_url}/v1/models").mock(
            return_value=httpx.Response(200, json={"data": []})
        )

        async with httpx.AsyncClient() as client:
            with pytest.raises(httpx.HTTPStatusError):
                await RestBackend(client=client).fetch_model_info(endpoint, "ghost")

    @pytest.mark.asyncio
    @respx.mock
    async def test_unreadable_catalog_loaded_model_found(self, endpoint):
        respx.get(f"{endpoint.base_url}/foundry/list").mock(side_effect=httpx.ConnectError("refused"))
        respx.get(f"{endpoint.base_url}/v1/models").mock(
            return_value=httpx.Response(200, json={"data": [{"id": "phi-4-mini"}]})
        )

        async with httpx.AsyncClient() as client:
            record = await RestBackend(client=client).fetch_model_info(endpoint, "phi-4-mini")

        assert record == {"id": "phi-4-mini"}


# ─────────────────────────────────────────────────────────────────────
# SDK BACKEND
# ─────────────────────────────────────────────────────────────────────

class SdkModelInfo(BaseModel):
    id: str
    alias: str
    task: str = "chat-completion"


@pytest.fixture
def manager():
    manager = MagicMock()
    manager.service_uri = "http://127.0.0.1:5273"
    manager.is_service_running.return_value = True
    manager.list_catalog_models.return_value = []
    manager.list_loaded_models.return_value = []
    manager.get_model_info.return_value = None
    return manager


class TestSdkBackend:

    @pytest.mark.asyncio
    async def test_discovery_reads_service_uri(self, manager):
        assert await SdkBackend(manager).discover_endpoint() == "http://127.0.0.1:5273"

    @pytest.mark.asyncio
    async def test_discovery_strips_openai_prefix(self):
        manager = MagicMock(spec=["endpoint"])
        manager.endpoint = "http://127.0.0.1:5273/v1/"

        assert await SdkBackend(manager).discover_endpoint() == "http://127.0.0.1:5273"

    @pytest.mark.asyncio
    async def test_discovery_nothing(self):
        manager = MagicMock(spec=[])
        assert await SdkBackend(manager).discover_endpoint() is None

    @pytest.mark.asyncio
    async def test_status_running(self, manager, endpoint):
        assert await SdkBackend(manager).fetch_status(endpoint) == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_status_not_running(self, manager, endpoint):
        manager.is_service_running.return_value = False

        with pytest.raises(ServiceUnavailable) as exc_info:
            await SdkBackend(manager).fetch_status(endpoint)

        assert endpoint.base_url in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_catalog_records_converted(self, manager, endpoint):
        manager.list_catalog_models.return_value = [
            SdkModelInfo(id="Phi-4-mini-instruct-generic-cpu", alias="phi-4-mini"),
            SimpleNamespace(id="qwen2.5-0.5b", alias="qwen-small"),
            {"id": "plain"},
        ]

        records = await SdkBackend(manager).fetch_catalog(endpoint)

        assert records[0] == {"id": "Phi-4-mini-instruct-generic-cpu", "alias": "phi-4-mini", "task": "chat-completion"}
        assert records[1] == {"id": "qwen2.5-0.5b", "alias": "qwen-small"}
        assert records[2] == {"id": "plain"}

    @pytest.mark.asyncio
    async def test_catalog_non_list_returned_as_is(self, manager, endpoint):
        manager.list_catalog_models.return_value = "broken"
        assert await SdkBackend(manager).fetch_catalog(endpoint) == "broken"

    @pytest.mark.asyncio
    async def test_model_info(self, manager, endpoint):
        manager.get_model_info.return_value = SdkModelInfo(id="m", alias="mm")

        record = await SdkBackend(manager).fetch_model_info(endpoint, "mm")

        assert record["id"] == "m"
        manager.get_model_info.assert_called_once_with("mm")

    @pytest.mark.asyncio
    async def test_model_info_missing(self, manager, endpoint):
        assert await SdkBackend(manager).fetch_model_info(endpoint, "ghost") is None

    @pytest.mark.asyncio
    async def test_load_prefers_load_model(self, manager, endpoint):
        await SdkBackend(manager).load_model(endpoint, "phi-4-mini")
        manager.load_model.assert_called_once_with("phi-4-mini")

    @pytest.mark.asyncio
    async def test_load_falls_back_to_init(self, endpoint):
        manager = MagicMock(spec=["init"])

        await SdkBackend(manager).load_model(endpoint, "phi-4-mini")

        manager.init.assert_called_once_with("phi-4-mini")

    @pytest.mark.asyncio
    async def test_start_service(self, manager):
        await SdkBackend(manager).start_service()
        manager.start_service.assert_called_once()
