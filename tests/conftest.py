"""Pytest fixtures for chargebee_sync tests."""

import json
import os
import sys
import tempfile
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from chargebee_sync.client import SubscriptionClient
from chargebee_sync.config import Config
from chargebee_sync.messages import MessageLog
from chargebee_sync.store import MemberDatabase

ENDPOINT = "https://cb.example.com/api/v2/subscriptions"


def subscription_entry(customer_id, **fields):
    """A list entry as returned by the subscriptions endpoint."""
    return {"subscription": {"customer_id": customer_id, **fields}}


def page(entries, next_offset=None):
    body = {"list": entries}
    if next_offset:
        body["next_offset"] = next_offset
    return body


class FakeChargebee:
    """Scripted responses for ``httpx.MockTransport``.

    Each queued item is either a JSON-serialisable body (HTTP 200), an
    ``(status_code, body)`` tuple, or an exception to raise.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            raise AssertionError(f"Unexpected request: {request.url}")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        status, body = item if isinstance(item, tuple) else (200, item)
        return httpx.Response(status, content=json.dumps(body).encode())

    @property
    def params(self):
        return [dict(r.url.params) for r in self.requests]


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_config(temp_dir):
    """Create a sample Config instance for testing."""
    return Config(
        api_key="test_api_key_123",
        portal_url="https://cb.example.com/portal/",
        chunk_size=50,
        page_size=100,
        max_retries=4,
        backoff_base=5,
        single_fetch_retries=3,
        single_fetch_delay=2,
        log_level="DEBUG",
        output_dir=temp_dir,
    )


@pytest.fixture
def messages():
    return MessageLog()


@pytest.fixture
def sleeps():
    """Records requested sleep durations instead of sleeping."""
    return []


@pytest.fixture
def make_client(sample_config, messages, sleeps):
    """Build a SubscriptionClient backed by a FakeChargebee."""
    clients = []

    def _make(fake: FakeChargebee, config: Config | None = None) -> SubscriptionClient:
        http = httpx.Client(transport=httpx.MockTransport(fake))
        client = SubscriptionClient(config or sample_config, messages, http_client=http, sleep=sleeps.append)
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.close()


@pytest.fixture
def member_db(temp_dir):
    """An opened MemberDatabase with the default schema."""
    db = MemberDatabase(temp_dir / "members.db")
    db.open()
    yield db
    db.close()


@pytest.fixture
def mock_env_vars():
    """Mock environment variables for config loading tests."""
    env_vars = {
        "CHARGEBEE_API_KEY": "test_key_abc",
        "CHARGEBEE_PORTAL_URL": "https://acme.chargebee.com/portal",
        "CHARGEBEE_CHUNK_SIZE": "25",
        "CHARGEBEE_PAGE_SIZE": "75",
        "CHARGEBEE_MAX_RETRIES": "6",
        "CHARGEBEE_BACKOFF_BASE": "1.5",
        "CHARGEBEE_MEMBER_ROLE": "subscriber",
        "CHARGEBEE_LOG_LEVEL": "warning",
        "CHARGEBEE_OUTPUT_DIR": "/tmp/chargebee_output",
    }
    with patch.dict(os.environ, env_vars, clear=False):
        yield env_vars
