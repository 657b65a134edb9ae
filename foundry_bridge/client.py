"""
FoundryLocalClient - chat request orchestrator.

    resolve endpoint -> ensure healthy -> resolve capabilities
    -> best-effort model load -> POST /v1/chat/completions
    -> normalize SSE -> on_event per token, then one "done" event

Configuration (URL, API key, backend, HTTP client) is fixed at
construction. The endpoint is resolved lazily on first use and can be
refreshed with resolve_endpoint(refresh=True).
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
    before_sleep_log,
)

from foundry_bridge.backends.base import ServiceBackend
from foundry_bridge.backends.rest import RestBackend
from foundry_bridge.cancellation import CancellationToken, RequestCancelled, run_cancellable
from foundry_bridge.capabilities import CapabilityCache, CapabilityResolver
from foundry_bridge.catalog import CatalogLister
from foundry_bridge.config import (
    get_auto_start,
    get_load_retry_attempts,
    get_load_retry_max_wait,
    get_load_retry_min_wait,
    get_service_url,
    get_timeout_seconds,
)
from foundry_bridge.endpoint import EndpointResolver
from foundry_bridge.errors import ServiceUnavailable, UpstreamHttpError, hydrate_response_error
from foundry_bridge.health import HealthProber
from foundry_bridge.schema import (
    CapabilityOverrides,
    ChatMessage,
    ChatResult,
    DiscoverySource,
    HealthReport,
    ModelCapabilities,
    ServiceEndpoint,
    StreamEvent,
)
from foundry_bridge.stream import EventKind, NormalizedEvent, StreamNormalizer, normalize_stream

logger = logging.getLogger(__name__)

CHAT_PATH = "/v1/chat/completions"

EventCallback = Callable[[StreamEvent], Union[None, Awaitable[None]]]
MessageLike = Union[ChatMessage, dict]


# ─────────────────────────────────────────────────────────────────────
# REQUEST SHAPING
# ─────────────────────────────────────────────────────────────────────

WIRE_ROLES = ("system", "user", "assistant", "tool")
ROLE_ALIASES = {"developer": "system", "function": "tool"}


def _flatten_content(content: Any) -> str:
    """String content as-is; a list of text parts joined; other parts dropped."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "\n".join(parts)
    return str(content)


def shape_messages(messages: Sequence[MessageLike]) -> list[dict]:
    """
    Convert caller messages to the service's role/content shape.

    Raises:
        ValueError: a message has a role the service does not accept
    """
    shaped = []
    for message in messages:
        if isinstance(message, ChatMessage):
            shaped.append(message.to_wire())
            continue

        role = ROLE_ALIASES.get(message.get("role"), message.get("role"))
        if role not in WIRE_ROLES:
            raise ValueError(f"Unsupported message role: {message.get('role')!r}")

        wire = {"role": role, "content": _flatten_content(message.get("content"))}
        for key in ("name", "tool_call_id", "tool_calls"):
            if message.get(key):
                wire[key] = message[key]
        shaped.append(wire)
    return shaped


def normalize_tools(tools: list[dict]) -> list[dict]:
    """Wrap flat tool definitions in the OpenAI {"type": "function"} envelope."""
    normalized = []
    for tool in tools:
        if tool.get("type") == "function" and "function" in tool:
            normalized.append(tool)
        else:
            normalized.append({"type": "function", "function": tool})
    return normalized


def build_request_body(
    model_id: str,
    messages: Sequence[MessageLike],
    capabilities: ModelCapabilities,
    stream: bool = True,
    **options,
) -> dict:
    """
    Chat completion body for one request.

    Reasoning models take max_completion_tokens and reject temperature;
    token limits are clamped to the model's output budget.
    """
    options = dict(options)
    body: dict = {"model": model_id, "messages": shape_messages(messages), "stream": stream}

    tools = options.pop("tools", None)
    tool_choice = options.pop("tool_choice", None)
    if tools:
        if capabilities.supports_tool_calls:
            body["tools"] = normalize_tools(tools)
            if tool_choice is not None:
                body["tool_choice"] = tool_choice
        else:
            logger.warning(f"{model_id} does not support tool calling; dropping {len(tools)} tools")

    max_tokens = options.pop("max_tokens", None)
    max_completion_tokens = options.pop("max_completion_tokens", None)
    limit = max_completion_tokens if max_completion_tokens is not None else max_tokens
    if limit is not None:
        limit = min(int(limit), capabilities.max_output_tokens)
    temperature = options.pop("temperature", None)

    body.update({k: v for k, v in options.items() if v is not None})

    if capabilities.supports_reasoning:
        if limit is not None:
            body["max_completion_tokens"] = limit
    else:
        if limit is not None:
            body["max_tokens"] = limit
        if temperature is not None:
            body["temperature"] = temperature

    if stream:
        body["stream_options"] = {"include_usage": True}
    return body


# ─────────────────────────────────────────────────────────────────────
# EVENT ROUTING
# ─────────────────────────────────────────────────────────────────────

class _EventRouter:
    """Turns normalized payloads into StreamEvents and accumulates the ChatResult."""

    def __init__(self, on_event: Optional[EventCallback], cancel: Optional[CancellationToken], result: ChatResult):
        self._on_event = on_event
        self._cancel = cancel
        self._result = result
        self._tool_calls: dict[int, dict] = {}
        self.saw_done = False
        self._finished = False

    def _check_cancelled(self) -> None:
        if self._cancel is not None and self._cancel.is_cancelled:
            raise RequestCancelled(self._cancel.reason)

    async def emit(self, event: StreamEvent) -> None:
        # No callbacks once cancelled, even for events already parsed
        self._check_cancelled()
        if self._on_event is None:
            return
        outcome = self._on_event(event)
        if inspect.isawaitable(outcome):
            await outcome

    def _merge_tool_call(self, fragment: dict) -> None:
        index = fragment.get("index", len(self._tool_calls))
        call = self._tool_calls.setdefault(
            index, {"id": "", "type": "function", "function": {"name": "", "arguments": ""}}
        )
        if fragment.get("id"):
            call["id"] = fragment["id"]
        function = fragment.get("function") or {}
        if function.get("name"):
            call["function"]["name"] = function["name"]
        if isinstance(function.get("arguments"), str):
            call["function"]["arguments"] += function["arguments"]

    async def _route_fields(self, fields: dict, index: int) -> None:
        # Result holds only what was emitted
        reasoning = fields.get("reasoning_content") or fields.get("reasoning")
        if isinstance(reasoning, str) and reasoning:
            await self.emit(StreamEvent(type="reasoning", text=reasoning, index=index))
            self._result.reasoning += reasoning

        content = fields.get("content")
        if isinstance(content, str) and content:
            await self.emit(StreamEvent(type="delta", text=content, index=index))
            self._result.content += content

        tool_calls = fields.get("tool_calls")
        if isinstance(tool_calls, list) and tool_calls:
            await self.emit(StreamEvent(type="tool_call", index=index, tool_calls=tool_calls))
            for fragment in tool_calls:
                if isinstance(fragment, dict):
                    self._merge_tool_call(fragment)

    async def _route_usage(self, payload: dict) -> None:
        usage = payload.get("usage")
        if isinstance(usage, dict) and usage:
            await self.emit(StreamEvent(type="usage", usage=usage))
            self._result.usage = usage

    async def handle(self, event: NormalizedEvent) -> None:
        self._check_cancelled()
        if event.kind == EventKind.DONE:
            self.saw_done = True
            return
        if event.kind != EventKind.DATA:
            return

        for choice in event.payload["choices"]:
            if not isinstance(choice, dict):
                continue
            index = choice.get("index", 0)
            delta = choice.get("delta")
            if isinstance(delta, dict):
                await self._route_fields(delta, index)
            elif isinstance(choice.get("message"), dict):
                # No delta on this choice, so message is the only content
                await self._route_fields(choice["message"], index)
            if choice.get("finish_reason"):
                self._result.finish_reason = choice["finish_reason"]
        await self._route_usage(event.payload)

    async def handle_completion(self, payload: dict) -> None:
        """Non-streamed completion: each choice's message becomes one set of events."""
        self._check_cancelled()
        if not isinstance(payload, dict):
            logger.warning(f"Unexpected completion body: {str(payload)[:200]}")
            return
        for choice in payload.get("choices") or []:
            if not isinstance(choice, dict):
                continue
            message = choice.get("message")
            if isinstance(message, dict):
                await self._route_fields(message, choice.get("index", 0))
            if choice.get("finish_reason"):
                self._result.finish_reason = choice["finish_reason"]
        await self._route_usage(payload)

    async def finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        self._result.tool_calls = [self._tool_calls[i] for i in sorted(self._tool_calls)]
        await self.emit(StreamEvent(
            type="done",
            finish_reason=self._result.finish_reason,
            usage=self._result.usage,
        ))


def _completion_json(response: httpx.Response, model_id: str, endpoint: ServiceEndpoint) -> Any:
    """
    Raises:
        UpstreamHttpError: body labelled JSON does not parse
    """
    try:
        return response.json()
    except ValueError as e:
        raise UpstreamHttpError(
            response.status_code,
            f"Local service returned an invalid JSON completion for '{model_id}': {e}",
            endpoint=endpoint.base_url,
            body=response.text,
        ) from e


def _is_retryable_load_error(exception: BaseException) -> bool:
    """Transport failures and 5xx answers are worth another load attempt."""
    if isinstance(exception, httpx.TransportError):
        return True
    if isinstance(exception, httpx.HTTPStatusError):
        return exception.response.status_code >= 500
    return False


# ─────────────────────────────────────────────────────────────────────
# CLIENT
# ─────────────────────────────────────────────────────────────────────

class FoundryLocalClient:
    """
    Chat, capability and catalog access for one local service.

    Usage:
        async with FoundryLocalClient() as client:
            result = await client.stream_chat(
                "phi-4-mini",
                [{"role": "user", "content": "Hello"}],
                on_event=lambda event: print(event.text, end=""),
            )
    """

    def __init__(
        self,
        service_url: Optional[str] = None,
        api_key: Optional[str] = None,
        backend: Optional[ServiceBackend] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        cache: Optional[CapabilityCache] = None,
        timeout_seconds: Optional[float] = None,
        auto_start: Optional[bool] = None,
        load_models: bool = True,
    ):
        self._service_url = service_url if service_url is not None else get_service_url()
        self._api_key = api_key
        timeout = timeout_seconds if timeout_seconds is not None else get_timeout_seconds()
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._backend = backend or RestBackend(client=self._http, api_key=api_key)
        self._auto_start = get_auto_start() if auto_start is None else auto_start
        self._load_models = load_models

        self._resolver = EndpointResolver(self._backend)
        self._prober = HealthProber(self._backend)
        self._capabilities = CapabilityResolver(self._backend, cache)
        self._catalog = CatalogLister(self._backend, self._prober, self._capabilities)

        self._endpoint: Optional[ServiceEndpoint] = None
        self._loaded: set[str] = set()

    @property
    def service_url(self) -> Optional[str]:
        return self._service_url

    @property
    def api_key(self) -> Optional[str]:
        return self._api_key

    async def __aenter__(self) -> "FoundryLocalClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "text/event-stream, application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    # ─────────────────────────────────────────────────────────────────
    # ENDPOINT / HEALTH
    # ─────────────────────────────────────────────────────────────────

    async def resolve_endpoint(
        self,
        cancel: Optional[CancellationToken] = None,
        refresh: bool = False,
    ) -> ServiceEndpoint:
        if self._endpoint is None or refresh:
            self._endpoint = await run_cancellable(self._resolver.resolve(self._service_url), cancel)
            logger.debug(f"Using local service at {self._endpoint.base_url} ({self._endpoint.source.value})")
        return self._endpoint

    async def health(self, cancel: Optional[CancellationToken] = None) -> HealthReport:
        endpoint = await self.resolve_endpoint(cancel)
        return await run_cancellable(self._prober.probe(endpoint), cancel)

    async def _ensure_service(self, endpoint: ServiceEndpoint) -> ServiceEndpoint:
        """Ensure the service is healthy, starting it once if auto-start is on."""
        try:
            await self._prober.ensure_healthy(endpoint)
            return endpoint
        except ServiceUnavailable:
            if not self._auto_start:
                raise

        logger.info(f"Local service unreachable at {endpoint.base_url}, starting it")
        await self._backend.start_service()
        # A freshly started service may listen on a new port
        if endpoint.source != DiscoverySource.EXPLICIT:
            endpoint = await self.resolve_endpoint(refresh=True)
        await self._prober.ensure_healthy(endpoint)
        return endpoint

    # ─────────────────────────────────────────────────────────────────
    # CAPABILITIES / CATALOG
    # ─────────────────────────────────────────────────────────────────

    async def get_capabilities(
        self,
        model_id: str,
        overrides: Optional[CapabilityOverrides] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> ModelCapabilities:
        endpoint = await self.resolve_endpoint(cancel)
        return await run_cancellable(
            self._capabilities.get_capabilities(endpoint, model_id, overrides), cancel
        )

    async def list_models(self, cancel: Optional[CancellationToken] = None) -> dict[str, ModelCapabilities]:
        endpoint = await self.resolve_endpoint(cancel)
        return await run_cancellable(self._catalog.list_models(endpoint), cancel)

    async def _load_model(self, endpoint: ServiceEndpoint, model_id: str) -> None:
        """Best-effort: the service may load lazily on the first request."""
        if not self._load_models or model_id in self._loaded:
            return

        @retry(
            stop=stop_after_attempt(get_load_retry_attempts()),
            wait=wait_exponential(multiplier=1, min=get_load_retry_min_wait(), max=get_load_retry_max_wait()),
            retry=retry_if_exception(_is_retryable_load_error),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async def load_with_retry() -> None:
            await self._backend.load_model(endpoint, model_id)

        try:
            await load_with_retry()
        except Exception as e:
            logger.warning(f"Could not load {model_id} on {endpoint.base_url}, continuing: {e!r}")
            return
        self._loaded.add(model_id)

    async def _prepare(
        self,
        model_id: str,
        overrides: Optional[CapabilityOverrides],
    ) -> tuple[ServiceEndpoint, ModelCapabilities]:
        endpoint = await self.resolve_endpoint()
        endpoint = await self._ensure_service(endpoint)
        capabilities = await self._capabilities.get_capabilities(endpoint, model_id, overrides)
        await self._load_model(endpoint, model_id)
        return endpoint, capabilities

    # ─────────────────────────────────────────────────────────────────
    # CHAT
    # ─────────────────────────────────────────────────────────────────

    async def stream_chat(
        self,
        model_id: str,
        messages: Sequence[MessageLike],
        on_event: Optional[EventCallback] = None,
        cancel: Optional[CancellationToken] = None,
        overrides: Optional[CapabilityOverrides] = None,
        **options,
    ) -> ChatResult:
        """
        Stream a chat completion, calling on_event per token in arrival order.

        on_event may be a plain function or a coroutine function. The last
        event is always type "done" unless the request was cancelled; a
        cancelled request aborts the HTTP call and returns with
        cancelled=True.

        Raises:
            ServiceUnavailable: service unreachable or connection dropped
            ModelNotFound: catalog reports the model does not exist
            UpstreamHttpError: service answered with a non-2xx status
        """
        result = ChatResult(model_id=model_id)
        router = _EventRouter(on_event, cancel, result)
        try:
            await run_cancellable(self._stream_chat(model_id, messages, router, overrides, options), cancel)
        except RequestCancelled:
            result.cancelled = True
            logger.info(f"Chat request for {model_id} cancelled: {cancel.reason if cancel else ''}")
        return result

    async def _stream_chat(
        self,
        model_id: str,
        messages: Sequence[MessageLike],
        router: _EventRouter,
        overrides: Optional[CapabilityOverrides],
        options: dict,
    ) -> None:
        endpoint, capabilities = await self._prepare(model_id, overrides)
        body = build_request_body(model_id, messages, capabilities, stream=True, **options)

        try:
            async with self._http.stream("POST", endpoint.url(CHAT_PATH), json=body, headers=self._headers()) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise hydrate_response_error(response, model_id, endpoint.base_url)

                content_type = response.headers.get("content-type", "")
                if "application/json" in content_type:
                    # Service ignored stream=true
                    await response.aread()
                    await router.handle_completion(_completion_json(response, model_id, endpoint))
                else:
                    events = normalize_stream(response.aiter_bytes())
                    try:
                        async for event in events:
                            await router.handle(event)
                            if router.saw_done:
                                break
                    finally:
                        await events.aclose()
        except httpx.TransportError as e:
            raise ServiceUnavailable(f"Chat request for {model_id} failed: {e!r}.", endpoint=endpoint.base_url) from e

        await router.finish()

    async def complete(
        self,
        model_id: str,
        messages: Sequence[MessageLike],
        cancel: Optional[CancellationToken] = None,
        overrides: Optional[CapabilityOverrides] = None,
        **options,
    ) -> ChatResult:
        """Non-streaming chat completion. Same errors as stream_chat."""
        result = ChatResult(model_id=model_id)
        router = _EventRouter(None, cancel, result)
        try:
            await run_cancellable(self._complete(model_id, messages, router, overrides, options), cancel)
        except RequestCancelled:
            result.cancelled = True
        return result

    async def _complete(
        self,
        model_id: str,
        messages: Sequence[MessageLike],
        router: _EventRouter,
        overrides: Optional[CapabilityOverrides],
        options: dict,
    ) -> None:
        endpoint, capabilities = await self._prepare(model_id, overrides)
        body = build_request_body(model_id, messages, capabilities, stream=False, **options)

        try:
            response = await self._http.post(endpoint.url(CHAT_PATH), json=body, headers=self._headers())
        except httpx.TransportError as e:
            raise ServiceUnavailable(f"Chat request for {model_id} failed: {e!r}.", endpoint=endpoint.base_url) from e
        if response.status_code >= 400:
            raise hydrate_response_error(response, model_id, endpoint.base_url)

        if "text/event-stream" in response.headers.get("content-type", ""):
            # Service streamed anyway: normalize the buffered body
            normalizer = StreamNormalizer()
            for event in normalizer.feed(response.content) + normalizer.flush():
                await router.handle(event)
        else:
            await router.handle_completion(_completion_json(response, model_id, endpoint))
        await router.finish()
