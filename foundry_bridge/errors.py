"""
Error taxonomy for foundry-bridge.

Every fatal error carries the endpoint it was talking to and a remediation
hint, so the message alone tells the user what to run next.
"""

import json
from typing import Optional

import httpx

from foundry_bridge.config import MODEL_LIST_COMMAND, SERVICE_START_COMMAND


class FoundryBridgeError(Exception):
    """Base class for user-actionable adapter errors."""

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        hint: Optional[str] = None,
    ):
        self.message = message
        self.endpoint = endpoint
        self.hint = hint
        super().__init__(self._render())

    def _render(self) -> str:
        parts = [self.message]
        if self.endpoint:
            parts.append(f"Endpoint: {self.endpoint}")
        if self.hint:
            parts.append(self.hint)
        return " ".join(parts)


class ServiceUnavailable(FoundryBridgeError):
    """Neither the health probe nor the fallback probe succeeded."""

    def __init__(self, message: str, endpoint: Optional[str] = None, hint: Optional[str] = None):
        super().__init__(
            message,
            endpoint=endpoint,
            hint=hint or f"Start the local service with `{SERVICE_START_COMMAND}`.",
        )


class ModelNotFound(FoundryBridgeError):
    """The catalog explicitly reports that the model does not exist."""

    def __init__(self, model_id: str, endpoint: Optional[str] = None):
        self.model_id = model_id
        super().__init__(
            f'Unable to get information for model "{model_id}". '
            "Please ensure the model exists in the local catalog.",
            endpoint=endpoint,
            hint=(
                f"You can list available models with `{MODEL_LIST_COMMAND}`; "
                f"the service is started with `{SERVICE_START_COMMAND}`."
            ),
        )


class MalformedCatalog(FoundryBridgeError):
    """The model listing is not a well-formed array."""


class StreamTransformFailure(FoundryBridgeError):
    """Unexpected failure while rewriting an otherwise well-formed stream line."""


class UpstreamHttpError(FoundryBridgeError):
    """The local service answered with a non-2xx status."""

    def __init__(
        self,
        status_code: int,
        message: str,
        endpoint: Optional[str] = None,
        body: str = "",
    ):
        self.status_code = status_code
        self.body = body
        super().__init__(
            message,
            endpoint=endpoint,
            hint=f"If the service is not running, start it with `{SERVICE_START_COMMAND}`.",
        )


# ─────────────────────────────────────────────────────────────────────
# ERROR HYDRATION
# ─────────────────────────────────────────────────────────────────────

def parse_error_body(status_code: int, body: str) -> str:
    """Extract a user-friendly error message from a service error body."""
    try:
        data = json.loads(body)
    except (ValueError, TypeError):
        return f"HTTP {status_code}: {body[:200]}"
    # OpenAI-style services return {"error": {"message": "..."}}
    if isinstance(data, dict):
        error = data.get("error", {})
        if isinstance(error, dict):
            message = error.get("message", "")
            if message:
                return message
        elif isinstance(error, str) and error:
            return error
        if isinstance(data.get("message"), str) and data["message"]:
            return data["message"]
    return f"HTTP {status_code}: {body[:200]}"


def hydrate_http_error(
    status_code: int,
    body: str,
    model_id: str,
    endpoint: Optional[str] = None,
) -> UpstreamHttpError:
    """Build an UpstreamHttpError with a readable reason for a failed chat request."""
    if status_code == 429:
        reason = "Rate limit exceeded"
        try:
            error_json = json.loads(body)
        except (ValueError, TypeError):
            error_json = None
        if error_json:
            reason += "\n\n" + json.dumps(error_json)
    else:
        reason = parse_error_body(status_code, body)
    return UpstreamHttpError(
        status_code,
        f"Local service error for '{model_id}': {reason}",
        endpoint=endpoint,
        body=body,
    )


def hydrate_response_error(response: httpx.Response, model_id: str, endpoint: Optional[str] = None) -> UpstreamHttpError:
    """Same as hydrate_http_error, for a response whose body has been read."""
    return hydrate_http_error(response.status_code, response.text, model_id, endpoint)
