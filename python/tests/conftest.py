"""Pytest configuration and fixtures for logview tests.

No test touches the network: the provider is either a FakeProvider or a
TwilioProvider over a respx-mocked httpx client.
"""

import os
import sys
from pathlib import Path

# Add repo root to sys.path for importing top-level packages (e.g., apps)
_repo_root = Path(__file__).parent.parent.parent
if str(_repo_root) not in sys.path:
    sys.path.insert(0, str(_repo_root))

os.environ.setdefault("LOGVIEW_ENV", "test")

import pytest
from fastapi.testclient import TestClient

from logview.app import add_request_id_middleware, create_app
from logview.config import Settings, clear_settings_cache
from tests.helpers import NOW, FakeProvider, make_settings


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def app(settings, provider):
    """App over the FakeProvider with a fixed clock and request-id middleware."""
    app = create_app(settings=settings, provider=provider, clock=lambda: NOW)
    add_request_id_middleware(app, log_requests=False)
    return app


@pytest.fixture
def client(app):
    """TestClient with the lifespan running (orchestrator available)."""
    with TestClient(app) as client:
        yield client
