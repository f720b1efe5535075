"""Core services.

The capability model lives in logview.auth.permissions; everything that
turns provider records into permission-checked results lives here and is
driven by the fetch orchestrator.
"""

from logview.services.fetch import FetchOrchestrator, PrefetchScope
from logview.services.provider import PageCache, Provider, ProviderError, TwilioProvider

__all__ = [
    "FetchOrchestrator",
    "PageCache",
    "PrefetchScope",
    "Provider",
    "ProviderError",
    "TwilioProvider",
]
