"""Time source used by every component; injected so tests can move time."""

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current instant as a naive UTC datetime (the storage representation)."""
    return datetime.now(UTC).replace(tzinfo=None)
