"""
Data model for the local service adapter.

Pydantic models for everything that crosses a component boundary
(endpoint, capabilities, catalog rows, health), plain dataclasses for
the per-request stream events handed to callers.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator


# ─────────────────────────────────────────────────────────────────────
# ENDPOINT
# ─────────────────────────────────────────────────────────────────────

class DiscoverySource(str, Enum):
    """How a ServiceEndpoint was obtained."""
    EXPLICIT = "explicit"
    AUTO_DISCOVERED = "auto-discovered"
    DEFAULT = "default"  # discovery found nothing, well-known address used


class ServiceEndpoint(BaseModel):
    """Resolved base address of the local service. Immutable for one request."""
    model_config = ConfigDict(frozen=True)

    base_url: str
    source: DiscoverySource = DiscoverySource.EXPLICIT
    resolved_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value:
            raise ValueError("base_url must not be empty")
        return value

    def url(self, path: str) -> str:
        """Join a service path onto the base URL."""
        return f"{self.base_url}/{path.lstrip('/')}"


# ─────────────────────────────────────────────────────────────────────
# CAPABILITIES
# ─────────────────────────────────────────────────────────────────────

class ModelCapabilities(BaseModel):
    """
    Normalized description of one model.

    max_input_tokens is derived, so input + output always equals the
    context window.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    context_window: int = Field(gt=0)
    max_output_tokens: int = Field(gt=0)
    supports_vision: bool = False
    supports_tool_calls: bool = True
    supports_reasoning: bool = False

    @model_validator(mode="after")
    def _output_fits_context(self) -> "ModelCapabilities":
        if self.max_output_tokens > self.context_window:
            raise ValueError(
                f"max_output_tokens ({self.max_output_tokens}) exceeds "
                f"context_window ({self.context_window})"
            )
        return self

    @computed_field
    @property
    def max_input_tokens(self) -> int:
        return self.context_window - self.max_output_tokens


class CapabilityOverrides(BaseModel):
    """Caller-supplied capabilities. Missing fields fall back to defaults."""
    name: Optional[str] = None
    context_window: Optional[int] = Field(default=None, gt=0)
    max_input_tokens: Optional[int] = Field(default=None, ge=0)
    max_output_tokens: Optional[int] = Field(default=None, gt=0)
    vision: Optional[bool] = None
    tool_calls: Optional[bool] = None
    thinking: Optional[bool] = None


# ─────────────────────────────────────────────────────────────────────
# CATALOG
# ─────────────────────────────────────────────────────────────────────

# Field spellings seen across service versions and SDK records
_ID_KEYS = ("id", "name", "model_id", "modelId")
_ALIAS_KEYS = ("alias", "displayName", "display_name")
_CONTEXT_KEYS = (
    "context_length", "contextLength", "context_window", "contextWindow",
    "max_context_length", "maxContextLength", "max_model_len", "n_ctx",
)
_OUTPUT_KEYS = ("max_output_tokens", "maxOutputTokens", "max_completion_tokens")
_TOOL_FLAG_KEYS = ("supports_tool_calling", "supportsToolCalling", "tool_calling", "toolCalling")


def _positive_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None


def _first(raw: dict, keys: tuple[str, ...]) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def _capability_tags(value: Any) -> tuple[str, ...]:
    if isinstance(value, dict):
        return tuple(str(k).lower() for k, enabled in value.items() if enabled)
    if isinstance(value, (list, tuple)):
        return tuple(str(v).lower() for v in value if isinstance(v, str))
    return ()


class CatalogEntry(BaseModel):
    """One row from the service's model listing."""
    model_config = ConfigDict(frozen=True)

    id: str
    alias: Optional[str] = None
    task: Optional[str] = None
    context_length: Optional[int] = None
    max_output_tokens: Optional[int] = None
    capabilities: tuple[str, ...] = ()
    supports_tool_calling: Optional[bool] = None
    version: Optional[str] = None
    raw: dict = Field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Any) -> "CatalogEntry":
        """
        Build an entry from a catalog row or SDK record.

        Accepts camelCase service rows and snake_case SDK records.

        Raises:
            ValueError: row is not an object or has no non-empty string id
        """
        if not isinstance(raw, dict):
            raise ValueError(f"catalog entry is not an object: {raw!r}")

        # The first id-like key present wins, even when empty
        ident = next((raw[k] for k in _ID_KEYS if k in raw), None)
        if not isinstance(ident, str) or not ident.strip():
            raise ValueError(f"catalog entry has no string identifier: {raw!r}")

        alias = _first(raw, _ALIAS_KEYS)
        task = raw.get("task")
        tool_flag = _first(raw, _TOOL_FLAG_KEYS)
        version = raw.get("version")

        return cls(
            id=ident.strip(),
            alias=alias if isinstance(alias, str) and alias else None,
            task=task.lower() if isinstance(task, str) and task else None,
            context_length=_positive_int(_first(raw, _CONTEXT_KEYS)),
            max_output_tokens=_positive_int(_first(raw, _OUTPUT_KEYS)),
            capabilities=_capability_tags(raw.get("capabilities")),
            supports_tool_calling=tool_flag if isinstance(tool_flag, bool) else None,
            version=str(version) if version is not None else None,
            raw=raw,
        )

    def matches(self, model_id: str) -> bool:
        """True if model_id names this entry by id or alias (case-insensitive)."""
        wanted = model_id.lower()
        return self.id.lower() == wanted or (self.alias or "").lower() == wanted


# ─────────────────────────────────────────────────────────────────────
# HEALTH
# ─────────────────────────────────────────────────────────────────────

class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # answered, but never confirmed healthy
    UNREACHABLE = "unreachable"


class HealthReport(BaseModel):
    """Outcome of one probe run."""
    status: HealthStatus
    endpoint: str
    version: Optional[str] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == HealthStatus.HEALTHY


# ─────────────────────────────────────────────────────────────────────
# CHAT
# ─────────────────────────────────────────────────────────────────────

class ChatMessage(BaseModel):
    """A single message in the service's role/content shape."""
    role: Literal["system", "user", "assistant", "tool"]
    content: str
    name: Optional[str] = None
    tool_call_id: Optional[str] = None

    def to_wire(self) -> dict:
        return self.model_dump(exclude_none=True)


@dataclass
class StreamEvent:
    """One consumer-facing event from a chat stream."""
    type: Literal["delta", "reasoning", "tool_call", "usage", "done"]
    text: str = ""
    index: int = 0
    tool_calls: list[dict] = field(default_factory=list)
    usage: Optional[dict] = None
    finish_reason: Optional[str] = None


@dataclass
class ChatResult:
    """Accumulated outcome of one chat request."""
    model_id: str
    content: str = ""
    reasoning: str = ""
    finish_reason: Optional[str] = None
    usage: Optional[dict] = None
    tool_calls: list[dict] = field(default_factory=list)
    cancelled: bool = False
