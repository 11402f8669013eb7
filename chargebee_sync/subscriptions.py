"""Subscription records and the per-customer subscription map.

Chargebee returns subscriptions wrapped in list entries::

    {"list": [{"subscription": {"customer_id": ..., "status": ...}}],
     "next_offset": "..."}

Only the fields the reconciler needs are kept on ``SubscriptionRecord``;
records are rebuilt on every run and never stored as-is.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable

from .client import ApiError, SubscriptionClient
from .messages import MessageSink

logger = logging.getLogger("chargebee_sync.subscriptions")

_WAS_PREFIX = re.compile(r"^was(\s+|$)", re.IGNORECASE)


class SubscriptionStatus:
    ACTIVE = "active"
    IN_TRIAL = "in_trial"
    FUTURE = "future"
    NON_RENEWING = "non_renewing"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"
    OTHER = "other"

    ACTIVE_LIKE = frozenset({ACTIVE, IN_TRIAL, FUTURE, NON_RENEWING})
    KNOWN = ACTIVE_LIKE | {CANCELLED}

    @classmethod
    def parse(cls, value: Any) -> str:
        if not value:
            return cls.UNKNOWN
        value = str(value).strip().lower()
        return value if value in cls.KNOWN else cls.OTHER


@dataclass(frozen=True)
class SubscriptionRecord:
    customer_id: str
    status: str = SubscriptionStatus.UNKNOWN
    plan_id: str | None = None
    plan_amount_cents: int | None = None
    currency_code: str | None = None
    cancelled_at: int | None = None
    updated_at: int | None = None

    @property
    def is_active_like(self) -> bool:
        return self.status in SubscriptionStatus.ACTIVE_LIKE

    @property
    def has_amount(self) -> bool:
        """True when both a plan id and a plan amount were returned."""
        return bool(self.plan_id) and self.plan_amount_cents is not None

    @classmethod
    def from_entry(cls, entry: dict[str, Any]) -> "SubscriptionRecord | None":
        """Build a record from a list entry; None if it carries no customer id."""
        sub = entry.get("subscription") if isinstance(entry, dict) else None
        if not isinstance(sub, dict):
            return None
        customer_id = sub.get("customer_id")
        if not customer_id:
            return None
        return cls(
            customer_id=str(customer_id),
            status=SubscriptionStatus.parse(sub.get("status")),
            plan_id=sub.get("plan_id") or None,
            plan_amount_cents=_as_int(sub.get("plan_amount")),
            currency_code=sub.get("currency_code") or None,
            cancelled_at=_as_int(sub.get("cancelled_at")),
            updated_at=_as_int(sub.get("updated_at")),
        )


SubscriptionMap = dict[str, SubscriptionRecord]


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def normalize_customer_id(value: str | None) -> str | None:
    """Strip the "was " marker and any " --" annotation from a stored id.

    >>> normalize_customer_id("was cust_123 -- moved to new account")
    'cust_123'
    """
    if value is None:
        return None
    value = _WAS_PREFIX.sub("", str(value).strip())
    value = value.split(" --", 1)[0].strip()
    return value or None


def build_customer_filter(customer_ids: Iterable[str]) -> str:
    """Render ids as a JSON array so each one is quoted and escaped."""
    return json.dumps(sorted(set(customer_ids)), ensure_ascii=False)


class SubscriptionMapBuilder:
    """Builds a most-recent-subscription-per-customer map for a chunk.

    Pages are requested sorted by ``updated_at`` descending, so the first
    record seen for a customer is its latest one; later pages never
    replace an existing entry.
    """

    def __init__(self, client: SubscriptionClient, messages: MessageSink, page_size: int = 100):
        self.client = client
        self.messages = messages
        self.page_size = page_size

    def build_map(self, customer_ids: Iterable[str]) -> SubscriptionMap:
        ids = {cid for cid in customer_ids if cid}
        result: SubscriptionMap = {}
        if not ids:
            logger.debug("No customer ids in chunk, skipping subscription fetch")
            return result

        params = {
            "customer_id[in]": build_customer_filter(ids),
            "limit": self.page_size,
            "sort_by[desc]": "updated_at",
        }
        offset: str | None = None
        pages = 0

        while True:
            try:
                entries, next_offset = self.client.fetch_page(params, offset)
            except ApiError as e:
                # Already reported by the client; keep what was merged so far.
                logger.error(
                    "Pagination halted after %d pages (%d customers mapped): %s",
                    pages, len(result), e,
                )
                break
            pages += 1

            for entry in entries:
                record = SubscriptionRecord.from_entry(entry)
                if record is None:
                    continue
                if record.customer_id not in result:
                    result[record.customer_id] = record

            if not next_offset:
                break
            if next_offset == offset:
                self.messages.warning(
                    f"Chargebee returned the same next_offset twice ({next_offset}); "
                    f"stopping pagination after {pages} pages."
                )
                break
            offset = next_offset

        logger.info(
            "Subscription map built: %d of %d customers matched in %d pages",
            len(result), len(ids), pages,
        )
        return result
