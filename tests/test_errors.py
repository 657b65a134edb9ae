"""Tests for the error taxonomy and error-body hydration."""

import json
import pytest

from foundry_bridge.errors import (
    FoundryBridgeError,
    MalformedCatalog,
    ModelNotFound,
    ServiceUnavailable,
    UpstreamHttpError,
    hydrate_http_error,
    parse_error_body,
)


class TestParseErrorBody:

    @pytest.mark.parametrize("body, expected", [
        ('{"error": {"message": "context length exceeded"}}', "context length exceeded"),
        ('{"error": "model not loaded"}', "model not loaded"),
        ('{"message": "bad request"}', "bad request"),
        ('{"error": {"code": 1}}', 'HTTP 400: {"error": {"code": 1}}'),
        ("plain text failure", "HTTP 400: plain text failure"),
        ("[1, 2]", "HTTP 400: [1, 2]"),
    ])
    def test_extracts_message(self, body, expected):
        assert parse_error_body(400, body) == expected

    def test_long_body_truncated(self):
        assert parse_error_body(502, "x" * 1000) == "HTTP 502: " + "x" * 200


class TestHydrateHttpError:

    def test_rate_limit_includes_error_json(self):
        body = json.dumps({"error": {"message": "too many requests"}})
        error = hydrate_http_error(429, body, "phi-4-mini", "http://127.0.0.1:5273")

        assert isinstance(error, UpstreamHttpError)
        assert error.status_code == 429
        assert error.body == body
        assert error.message == (
            "Local service error for 'phi-4-mini': Rate limit exceeded\n\n"
            '{"error": {"message": "too many requests"}}'
        )

    def test_rate_limit_without_json(self):
        error = hydrate_http_error(429, "slow down", "m")
        assert error.message == "Local service error for 'm': Rate limit exceeded"

    def test_other_status_uses_parsed_message(self):
        error = hydrate_http_error(500, '{"error": {"message": "engine crashed"}}', "m", "http://h:1")

        assert error.message == "Local service error for 'm': engine crashed"
        assert "Endpoint: http://h:1" in str(error)
        assert "foundry service start" in str(error)


class TestTaxonomy:

    def test_all_errors_share_base(self):
        for cls in (ServiceUnavailable, MalformedCatalog, UpstreamHttpError):
            assert issubclass(cls, FoundryBridgeError)
        assert isinstance(ModelNotFound("m"), FoundryBridgeError)

    def test_service_unavailable_default_hint(self):
        error = ServiceUnavailable("Local service is unreachable.", endpoint="http://localhost:5273")

        assert str(error) == (
            "Local service is unreachable. Endpoint: http://localhost:5273 "
            "Start the local service with `foundry service start`."
        )

    def test_model_not_found_remediation(self):
        error = ModelNotFound("phi-9", endpoint="http://localhost:5273")

        assert error.model_id == "phi-9"
        assert 'Unable to get information for model "phi-9"' in str(error)
        assert "`foundry model list`" in str(error)
        assert "http://localhost:5273" in str(error)

    def test_message_without_endpoint(self):
        error = MalformedCatalog("Model catalog is not a list.")
        assert str(error) == "Model catalog is not a list."
