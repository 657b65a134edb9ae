"""
Backends for the local service's control surface.

Protocol defines WHAT, implementations define HOW.
"""

from .base import ServiceBackend
from .rest import RestBackend
from .sdk import SdkBackend

__all__ = ["ServiceBackend", "RestBackend", "SdkBackend"]
