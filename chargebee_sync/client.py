"""Chargebee subscription list client with rate-limit retries and logging."""

import logging
import time
from typing import Any, Callable

import httpx

from .config import Config
from .messages import MessageSink

logger = logging.getLogger("chargebee_sync.client")


class ApiErrorKind:
    RATE_LIMITED = "rate_limited"
    REQUEST_FAILED = "request_failed"


class ApiError(Exception):
    """A subscription list request that could not be completed."""

    def __init__(self, kind: str, status_code: int | None, message: str):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.message = message

    @property
    def is_rate_limited(self) -> bool:
        return self.kind == ApiErrorKind.RATE_LIMITED

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"HTTP {self.status_code}: {self.message}"
        return self.message


class SubscriptionClient:
    """Blocking client for the Chargebee ``/subscriptions`` list endpoint.

    Only 429 responses are retried. Bulk page fetches back off
    exponentially (``backoff_base * 2**attempt``); the single-customer
    lookup waits a fixed delay between attempts. Every retry emits a
    warning and every terminal failure an error through ``messages``.
    """

    def __init__(
        self,
        config: Config,
        messages: MessageSink,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.messages = messages
        self.endpoint = config.subscriptions_endpoint
        self._http = http_client or httpx.Client(timeout=config.timeout)
        self._sleep = sleep
        self._api_calls = 0

        logger.info(
            "Chargebee client initialized: endpoint=%s, max_retries=%d, backoff_base=%.1fs",
            self.endpoint, config.max_retries, config.backoff_base,
        )

    @property
    def total_api_calls(self) -> int:
        return self._api_calls

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "SubscriptionClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _compute_backoff(self, attempt: int) -> float:
        return self.config.backoff_base * (2 ** attempt)

    def _get(
        self,
        params: dict[str, Any],
        max_attempts: int,
        delay_for: Callable[[int], float],
        label: str,
    ) -> dict[str, Any]:
        """Issue one GET, retrying on 429 up to ``max_attempts`` times.

        At least one attempt is always made.
        """
        max_attempts = max(max_attempts, 1)
        for attempt in range(max_attempts):
            self._api_calls += 1
            logger.debug("%s: API call, params=%s, attempt=%d", label, params, attempt + 1)
            try:
                response = self._http.get(
                    self.endpoint,
                    params=params,
                    auth=(self.config.api_key, ""),
                )
            except httpx.HTTPError as e:
                self.messages.error(f"Chargebee API request failed for {label}: {e}")
                raise ApiError(ApiErrorKind.REQUEST_FAILED, None, str(e)) from e

            if response.status_code == 429:
                if attempt + 1 < max_attempts:
                    delay = delay_for(attempt)
                    self.messages.warning(
                        f"Rate limit reached for {label}, retrying in {delay:g} seconds "
                        f"(attempt {attempt + 1}/{max_attempts})..."
                    )
                    self._sleep(delay)
                    continue
                self.messages.error(
                    f"Rate limit retries exhausted for {label} after {max_attempts} attempts."
                )
                raise ApiError(ApiErrorKind.RATE_LIMITED, 429, "rate limit retries exhausted")

            if response.is_error:
                message = _error_message(response)
                self.messages.error(
                    f"Chargebee API request failed for {label}: HTTP {response.status_code}: {message}"
                )
                raise ApiError(ApiErrorKind.REQUEST_FAILED, response.status_code, message)

            try:
                data = response.json()
            except ValueError as e:
                self.messages.error(f"Chargebee API returned an invalid body for {label}: {e}")
                raise ApiError(ApiErrorKind.REQUEST_FAILED, response.status_code, "invalid JSON body") from e
            if not isinstance(data, dict):
                self.messages.error(f"Chargebee API returned an unexpected body for {label}.")
                raise ApiError(ApiErrorKind.REQUEST_FAILED, response.status_code, "unexpected body")
            return data

        self.messages.error(f"Chargebee API request for {label} was not attempted.")
        raise ApiError(ApiErrorKind.REQUEST_FAILED, None, "no request attempted")

    def fetch_page(
        self,
        params: dict[str, Any],
        offset: str | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """Fetch one page of subscriptions.

        Returns (entries, next_offset); next_offset is None on the last page.
        Raises ApiError when the page cannot be fetched.
        """
        query = dict(params)
        if offset:
            query["offset"] = offset
        data = self._get(
            query,
            max_attempts=self.config.max_retries,
            delay_for=self._compute_backoff,
            label="subscription batch",
        )
        entries = data.get("list") or []
        next_offset = data.get("next_offset") or None
        logger.debug("Page fetched: %d entries, next_offset=%s", len(entries), next_offset)
        return entries, next_offset

    def fetch_customer_subscription(self, customer_id: str) -> dict[str, Any] | None:
        """Fetch the active subscription entry for one customer, or None."""
        params = {
            "customer_id[is]": customer_id,
            "limit": 1,
            "status[is]": "active",
        }
        try:
            data = self._get(
                params,
                max_attempts=self.config.single_fetch_retries,
                delay_for=lambda attempt: self.config.single_fetch_delay,
                label=f"customer {customer_id}",
            )
        except ApiError:
            return None

        entries = data.get("list") or []
        if entries and isinstance(entries[0], dict) and entries[0].get("subscription"):
            return entries[0]
        self.messages.warning(f"No subscription data returned for customer {customer_id}.")
        return None


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.text or response.reason_phrase
