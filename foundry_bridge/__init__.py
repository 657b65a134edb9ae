"""
foundry-bridge: adapter for a locally running Foundry Local service.

Discovers the service, checks its health, resolves model capabilities,
and normalizes its chat-completion stream.
"""

from foundry_bridge.cancellation import CancellationToken
from foundry_bridge.client import FoundryLocalClient
from foundry_bridge.errors import (
    FoundryBridgeError,
    MalformedCatalog,
    ModelNotFound,
    ServiceUnavailable,
    StreamTransformFailure,
    UpstreamHttpError,
)
from foundry_bridge.schema import (
    CapabilityOverrides,
    ChatMessage,
    ChatResult,
    ModelCapabilities,
    ServiceEndpoint,
    StreamEvent,
)

__version__ = "0.1.0"

__all__ = [
    "CancellationToken",
    "CapabilityOverrides",
    "ChatMessage",
    "ChatResult",
    "FoundryBridgeError",
    "FoundryLocalClient",
    "MalformedCatalog",
    "ModelCapabilities",
    "ModelNotFound",
    "ServiceEndpoint",
    "ServiceUnavailable",
    "StreamEvent",
    "StreamTransformFailure",
    "UpstreamHttpError",
]
