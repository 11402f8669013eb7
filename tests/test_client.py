"""Unit tests for chargebee_sync.client module."""

import base64
from dataclasses import replace

import httpx
import pytest

from chargebee_sync.client import ApiError, ApiErrorKind

from conftest import FakeChargebee, page, subscription_entry


class TestApiError:
    """Tests for ApiError."""

    def test_str_with_status(self):
        err = ApiError(ApiErrorKind.REQUEST_FAILED, 500, "boom")
        assert str(err) == "HTTP 500: boom"
        assert err.is_rate_limited is False

    def test_str_without_status(self):
        err = ApiError(ApiErrorKind.REQUEST_FAILED, None, "connection refused")
        assert str(err) == "connection refused"

    def test_rate_limited(self):
        assert ApiError(ApiErrorKind.RATE_LIMITED, 429, "slow down").is_rate_limited


class TestFetchPage:
    """Tests for bulk page fetching."""

    def test_returns_entries_and_next_offset(self, make_client):
        """Test a successful page returns its entries and cursor."""
        fake = FakeChargebee(page([subscription_entry("cust_1")], next_offset="off_2"))
        client = make_client(fake)

        entries, next_offset = client.fetch_page({"limit": 100})

        assert entries == [subscription_entry("cust_1")]
        assert next_offset == "off_2"
        assert client.total_api_calls == 1

    def test_last_page_has_no_offset(self, make_client):
        client = make_client(FakeChargebee(page([])))
        entries, next_offset = client.fetch_page({"limit": 100})
        assert entries == []
        assert next_offset is None

    def test_request_uses_basic_auth_and_endpoint(self, make_client):
        """Test the API key is sent as basic-auth username with empty password."""
        fake = FakeChargebee(page([]))
        make_client(fake).fetch_page({"limit": 100})

        request = fake.requests[0]
        assert str(request.url).startswith("https://cb.example.com/api/v2/subscriptions?")
        expected = "Basic " + base64.b64encode(b"test_api_key_123:").decode()
        assert request.headers["Authorization"] == expected

    def test_offset_is_sent(self, make_client):
        fake = FakeChargebee(page([]))
        make_client(fake).fetch_page({"limit": 100}, offset="off_2")
        assert fake.params[0] == {"limit": "100", "offset": "off_2"}

    def test_rate_limit_retries_with_exponential_backoff(self, make_client, messages, sleeps):
        """Test 429 responses are retried with 5, 10, 20 second delays."""
        fake = FakeChargebee(
            (429, {"message": "too many"}),
            (429, {"message": "too many"}),
            (429, {"message": "too many"}),
            page([subscription_entry("cust_1")]),
        )
        client = make_client(fake)

        entries, _ = client.fetch_page({"limit": 100})

        assert len(entries) == 1
        assert sleeps == [5, 10, 20]
        assert len(messages.warnings) == 3
        assert messages.errors == []

    def test_rate_limit_exhausted(self, make_client, messages, sleeps):
        """Test that exceeding the attempt bound raises a rate-limited error."""
        fake = FakeChargebee(*[(429, {"message": "too many"})] * 4)
        client = make_client(fake)

        with pytest.raises(ApiError) as exc_info:
            client.fetch_page({"limit": 100})

        assert exc_info.value.kind == ApiErrorKind.RATE_LIMITED
        assert exc_info.value.status_code == 429
        assert len(fake.requests) == 4
        assert sleeps == [5, 10, 20]
        assert len(messages.errors) == 1

    def test_zero_retries_makes_one_attempt(self, make_client, sample_config, messages, sleeps):
        """Test a non-positive attempt bound still issues the request once."""
        fake = FakeChargebee((429, {}))
        client = make_client(fake, replace(sample_config, max_retries=0))

        with pytest.raises(ApiError) as exc_info:
            client.fetch_page({"limit": 100})

        assert exc_info.value.kind == ApiErrorKind.RATE_LIMITED
        assert len(fake.requests) == 1
        assert sleeps == []
        assert len(messages.errors) == 1

    def test_server_error_not_retried(self, make_client, messages, sleeps):
        """Test non-429 errors fail immediately with one error message."""
        fake = FakeChargebee((500, {"message": "boom"}))
        client = make_client(fake)

        with pytest.raises(ApiError) as exc_info:
            client.fetch_page({"limit": 100})

        assert exc_info.value.kind == ApiErrorKind.REQUEST_FAILED
        assert exc_info.value.status_code == 500
        assert exc_info.value.message == "boom"
        assert len(fake.requests) == 1
        assert sleeps == []
        assert len(messages.errors) == 1
        assert "HTTP 500: boom" in messages.errors[0]

    def test_transport_error(self, make_client, messages):
        """Test connection failures become request-failed errors."""
        fake = FakeChargebee(httpx.ConnectError("connection refused"))
        client = make_client(fake)

        with pytest.raises(ApiError) as exc_info:
            client.fetch_page({"limit": 100})

        assert exc_info.value.kind == ApiErrorKind.REQUEST_FAILED
        assert exc_info.value.status_code is None
        assert len(messages.errors) == 1

    def test_invalid_json_body(self, make_client, messages):
        """Test an undecodable body is reported as a failed request."""

        def handler(request):
            return httpx.Response(200, content=b"<html>")

        client = make_client(handler)
        with pytest.raises(ApiError) as exc_info:
            client.fetch_page({"limit": 100})
        assert exc_info.value.kind == ApiErrorKind.REQUEST_FAILED
        assert len(messages.errors) == 1


class TestFetchCustomerSubscription:
    """Tests for the single-customer lookup."""

    def test_returns_first_entry(self, make_client):
        fake = FakeChargebee(page([subscription_entry("cust_1", plan_id="gold")]))
        client = make_client(fake)

        entry = client.fetch_customer_subscription("cust_1")

        assert entry["subscription"]["plan_id"] == "gold"
        assert fake.params[0] == {
            "customer_id[is]": "cust_1",
            "limit": "1",
            "status[is]": "active",
        }

    def test_no_subscription(self, make_client, messages):
        client = make_client(FakeChargebee(page([])))
        assert client.fetch_customer_subscription("cust_1") is None
        assert messages.warnings == ["No subscription data returned for customer cust_1."]

    def test_rate_limit_uses_fixed_delay(self, make_client, sleeps):
        """Test the single lookup waits a fixed 2 seconds between attempts."""
        fake = FakeChargebee(
            (429, {}),
            (429, {}),
            page([subscription_entry("cust_1")]),
        )
        entry = make_client(fake).fetch_customer_subscription("cust_1")
        assert entry is not None
        assert sleeps == [2, 2]

    def test_rate_limit_exhausted_returns_none(self, make_client, messages, sleeps):
        fake = FakeChargebee((429, {}), (429, {}), (429, {}))
        assert make_client(fake).fetch_customer_subscription("cust_1") is None
        assert len(fake.requests) == 3
        assert sleeps == [2, 2]
        assert len(messages.errors) == 1

    def test_request_failure_returns_none(self, make_client, messages):
        fake = FakeChargebee((404, {"message": "not found"}))
        assert make_client(fake).fetch_customer_subscription("cust_1") is None
        assert len(messages.errors) == 1
