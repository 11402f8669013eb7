import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterator, Sequence, TypeVar

logger = logging.getLogger("chargebee_sync.utils")

T = TypeVar("T")

_CENT = Decimal("0.01")


def parse_timestamp(ts: int | None) -> datetime | None:
    """Convert Unix timestamp to UTC datetime."""
    if ts is None:
        return None
    try:
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    except (ValueError, OSError, OverflowError):
        return None


def epoch_to_date(ts: int | None) -> str | None:
    """Unix timestamp to a ``YYYY-MM-DD`` date string in UTC."""
    dt = parse_timestamp(ts)
    return dt.strftime("%Y-%m-%d") if dt else None


def cents_to_amount(cents: int) -> Decimal:
    """Chargebee stores amounts in cents."""
    return (Decimal(cents) / 100).quantize(_CENT)


def same_amount(current: Any, target: Decimal) -> bool:
    """Compare a stored amount (any representation) with a target amount."""
    if current is None or current == "":
        return False
    try:
        return Decimal(str(current)) == target
    except InvalidOperation:
        logger.debug("Unparseable stored amount: %r", current)
        return False


def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    """Split a sequence into consecutive lists of at most ``size`` items."""
    for start in range(0, len(items), size):
        yield list(items[start:start + size])
