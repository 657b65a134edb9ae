"""
Capability Resolver + Cache.

Turns whatever metadata the service returns for a model (often partial)
into a complete ModelCapabilities, and memoizes it by model id for the
life of the process.

Inference rules when a field is missing:
    context window   source value, else 4096
    max output       source value (clamped to the context window),
                     else min(context // 2, 2048)
    vision           vision tag, vision-like name, or multimodal task
    tool calls       explicit flag, else tool tag in a capability list,
                     else True
    reasoning        reasoning-like id or alias
"""

import logging
from typing import Optional

from foundry_bridge.backends.base import ServiceBackend
from foundry_bridge.config import DEFAULT_CONTEXT_WINDOW, MAX_OUTPUT_TOKENS_CEILING
from foundry_bridge.errors import ModelNotFound
from foundry_bridge.schema import CapabilityOverrides, CatalogEntry, ModelCapabilities, ServiceEndpoint

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────
# NAME / TAG HEURISTICS
# ─────────────────────────────────────────────────────────────────────

VISION_MARKERS = ("vision", "-vl", "llava", "pixtral", "multimodal", "omni")
VISION_TAGS = ("vision", "image", "multimodal")
VISION_TASKS = ("multimodal", "vision", "image-text-to-text", "image-to-text")
TOOL_MARKERS = (
    "tool", "tools", "tool_calls", "tool-calling", "tool_calling",
    "function", "function_calling", "function-calling",
)
REASONING_MARKERS = ("reasoning", "reasoner", "thinking", "think", "-r1", "qwq")


def default_max_output(context_window: int) -> int:
    return max(1, min(context_window // 2, MAX_OUTPUT_TOKENS_CEILING))


def _names(entry: CatalogEntry) -> str:
    return " ".join(filter(None, [entry.id, entry.alias])).lower()


def _supports_vision(entry: CatalogEntry) -> bool:
    if any(marker in tag for tag in entry.capabilities for marker in VISION_TAGS):
        return True
    if any(marker in _names(entry) for marker in VISION_MARKERS):
        return True
    return entry.task in VISION_TASKS


def _supports_tools(entry: CatalogEntry) -> bool:
    if entry.supports_tool_calling is not None:
        return entry.supports_tool_calling
    if entry.capabilities:
        return any(tag in TOOL_MARKERS for tag in entry.capabilities)
    return True


def _supports_reasoning(entry: CatalogEntry) -> bool:
    return any(marker in _names(entry) for marker in REASONING_MARKERS)


def infer_capabilities(entry: CatalogEntry, model_id: Optional[str] = None) -> ModelCapabilities:
    """
    Build capabilities from a (possibly sparse) catalog entry.

    model_id, when given, replaces the entry's id (callers that looked the
    model up by alias keep their own key).
    """
    context = entry.context_length or DEFAULT_CONTEXT_WINDOW
    if entry.max_output_tokens:
        max_output = min(entry.max_output_tokens, context)
    else:
        max_output = default_max_output(context)

    return ModelCapabilities(
        id=model_id or entry.id,
        name=entry.alias or entry.id,
        context_window=context,
        max_output_tokens=max_output,
        supports_vision=_supports_vision(entry),
        supports_tool_calls=_supports_tools(entry),
        supports_reasoning=_supports_reasoning(entry),
    )


def default_capabilities(model_id: str) -> ModelCapabilities:
    """Defaults for a model nothing is known about. Name heuristics still apply."""
    return infer_capabilities(CatalogEntry(id=model_id))


def capabilities_from_overrides(model_id: str, overrides: CapabilityOverrides) -> ModelCapabilities:
    """Caller-supplied capabilities; unset fields come from the defaults."""
    base = default_capabilities(model_id)

    context = overrides.context_window
    if context is None and overrides.max_input_tokens is not None and overrides.max_output_tokens is not None:
        context = overrides.max_input_tokens + overrides.max_output_tokens
    context = context or DEFAULT_CONTEXT_WINDOW

    if overrides.max_output_tokens is not None:
        max_output = min(overrides.max_output_tokens, context)
    elif overrides.max_input_tokens is not None and overrides.max_input_tokens < context:
        max_output = context - overrides.max_input_tokens
    else:
        max_output = default_max_output(context)

    return ModelCapabilities(
        id=model_id,
        name=overrides.name or base.name,
        context_window=context,
        max_output_tokens=max_output,
        supports_vision=base.supports_vision if overrides.vision is None else overrides.vision,
        supports_tool_calls=base.supports_tool_calls if overrides.tool_calls is None else overrides.tool_calls,
        supports_reasoning=base.supports_reasoning if overrides.thinking is None else overrides.thinking,
    )


# ─────────────────────────────────────────────────────────────────────
# CACHE
# ─────────────────────────────────────────────────────────────────────

class CapabilityCache:
    """
    Unbounded model id -> ModelCapabilities map. No TTL.

    Concurrent misses for the same id may both resolve; last write wins.
    """

    def __init__(self):
        self._entries: dict[str, ModelCapabilities] = {}

    def get(self, model_id: str) -> Optional[ModelCapabilities]:
        return self._entries.get(model_id)

    def put(self, capabilities: ModelCapabilities, key: Optional[str] = None) -> None:
        self._entries[key or capabilities.id] = capabilities

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, model_id: str) -> bool:
        return model_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


_shared_cache = CapabilityCache()


def get_shared_cache() -> CapabilityCache:
    """The process-wide cache used when none is injected."""
    return _shared_cache


def clear_capability_cache() -> None:
    """Clear the process-wide cache (for testing)."""
    _shared_cache.clear()


# ─────────────────────────────────────────────────────────────────────
# RESOLVER
# ─────────────────────────────────────────────────────────────────────

class CapabilityResolver:

    def __init__(self, backend: ServiceBackend, cache: Optional[CapabilityCache] = None):
        self._backend = backend
        self._cache = cache if cache is not None else get_shared_cache()

    @property
    def cache(self) -> CapabilityCache:
        return self._cache

    async def get_capabilities(
        self,
        endpoint: ServiceEndpoint,
        model_id: str,
        overrides: Optional[CapabilityOverrides] = None,
    ) -> ModelCapabilities:
        """
        Resolve capabilities for one model.

        Raises:
            ModelNotFound: the metadata source states the model does not exist
        """
        if overrides is not None:
            capabilities = capabilities_from_overrides(model_id, overrides)
            self._cache.put(capabilities, key=model_id)
            return capabilities

        cached = self._cache.get(model_id)
        if cached is not None:
            return cached

        try:
            raw = await self._backend.fetch_model_info(endpoint, model_id)
        except ModelNotFound:
            raise
        except Exception as e:
            logger.warning(f"Could not fetch metadata for {model_id} from {endpoint.base_url}, using defaults: {e!r}")
            capabilities = default_capabilities(model_id)
        else:
            if raw is None:
                raise ModelNotFound(model_id, endpoint=endpoint.base_url)
            capabilities = infer_capabilities(self._entry_for(raw, model_id), model_id=model_id)

        self._cache.put(capabilities, key=model_id)
        logger.debug(f"Resolved capabilities for {model_id}: {capabilities}")
        return capabilities

    def capabilities_from_entry(self, entry: CatalogEntry) -> ModelCapabilities:
        """Capabilities for a row the caller already fetched; a cached entry wins."""
        cached = self._cache.get(entry.id)
        if cached is not None:
            return cached
        capabilities = infer_capabilities(entry)
        self._cache.put(capabilities)
        return capabilities

    @staticmethod
    def _entry_for(raw: object, model_id: str) -> CatalogEntry:
        try:
            return CatalogEntry.from_raw(raw)
        except ValueError:
            # Per-model records do not always repeat the id
            if isinstance(raw, dict):
                return CatalogEntry.from_raw({**raw, "id": model_id})
            return CatalogEntry(id=model_id)
