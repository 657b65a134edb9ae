"""
Health Prober - is the service reachable and recent enough?

Primary probe: the status document. Fallback probe: the model list, for
service builds without a usable status endpoint. One fallback, then give
up; there is no retry loop.
"""

import logging
import re
from typing import Optional

from foundry_bridge.backends.base import ServiceBackend
from foundry_bridge.config import MIN_SUPPORTED_VERSION
from foundry_bridge.errors import ServiceUnavailable
from foundry_bridge.schema import HealthReport, HealthStatus, ServiceEndpoint

logger = logging.getLogger(__name__)

POSITIVE_STATUSES = ("ok", "healthy", "running", "ready")

_LEADING_DIGITS = re.compile(r"\d+")


# ─────────────────────────────────────────────────────────────────────
# VERSION COMPARISON
# ─────────────────────────────────────────────────────────────────────

def parse_version(version: str) -> tuple[int, ...]:
    """
    "1.2.0" -> (1, 2, 0). Non-numeric components count as 0;
    a leading "v" and suffixes like "-rc1" are ignored.
    """
    parts = []
    for piece in version.strip().lstrip("vV").split("."):
        match = _LEADING_DIGITS.match(piece.strip())
        parts.append(int(match.group()) if match else 0)
    return tuple(parts)


def is_version_supported(version: str, minimum: str) -> bool:
    """Component-wise numeric comparison; missing components are 0."""
    current, required = parse_version(version), parse_version(minimum)
    width = max(len(current), len(required))
    current += (0,) * (width - len(current))
    required += (0,) * (width - len(required))
    return current >= required


def _is_positive(document: dict) -> bool:
    status = document.get("status")
    if status is True:
        return True
    return isinstance(status, str) and status.strip().lower() in POSITIVE_STATUSES


def _reported_version(document: dict) -> Optional[str]:
    for key in ("version", "Version"):
        value = document.get(key)
        if isinstance(value, (str, int, float)) and not isinstance(value, bool) and str(value).strip():
            return str(value).strip()
    return None


# ─────────────────────────────────────────────────────────────────────
# PROBER
# ─────────────────────────────────────────────────────────────────────

class HealthProber:

    def __init__(self, backend: ServiceBackend, min_version: str = MIN_SUPPORTED_VERSION):
        self._backend = backend
        self._min_version = min_version

    def _check_version(self, version: Optional[str]) -> None:
        if version and not is_version_supported(version, self._min_version):
            logger.warning(
                f"Local service version {version} is older than {self._min_version}; "
                f"streaming may not behave as expected"
            )

    async def probe(self, endpoint: ServiceEndpoint) -> HealthReport:
        version = None
        primary_answered = False
        detail = None

        try:
            document = await self._backend.fetch_status(endpoint)
        except Exception as e:
            logger.debug(f"Status probe on {endpoint.base_url} failed: {e!r}")
            detail = f"status probe failed: {e!r}"
        else:
            primary_answered = True
            version = _reported_version(document)
            if _is_positive(document):
                self._check_version(version)
                return HealthReport(status=HealthStatus.HEALTHY, endpoint=endpoint.base_url, version=version)
            detail = "status probe did not report a healthy status"

        try:
            await self._backend.fetch_loaded_models(endpoint)
        except Exception as e:
            logger.debug(f"Model-list probe on {endpoint.base_url} failed: {e!r}")
            return HealthReport(
                status=HealthStatus.DEGRADED if primary_answered else HealthStatus.UNREACHABLE,
                endpoint=endpoint.base_url,
                version=version,
                detail=f"{detail}; model-list probe failed: {e!r}",
            )

        self._check_version(version)
        return HealthReport(status=HealthStatus.HEALTHY, endpoint=endpoint.base_url, version=version)

    async def ensure_healthy(self, endpoint: ServiceEndpoint) -> HealthReport:
        """
        Raises:
            ServiceUnavailable: probe did not report healthy
        """
        report = await self.probe(endpoint)
        if not report.ok:
            raise ServiceUnavailable(
                f"Local service is {report.status.value}: {report.detail}.",
                endpoint=endpoint.base_url,
            )
        return report
