"""Time utilities for consistent timestamp handling."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def from_epoch(value: float) -> datetime:
    """Gateway epoch (seconds, or milliseconds when > 1e12) to aware UTC."""
    if value > 1e12:
        value = value / 1000.0
    return datetime.fromtimestamp(value, tz=timezone.utc)


def parse_iso(value: str) -> datetime | None:
    """Parse an ISO-8601 string ('Z' suffix allowed). Naive values are UTC."""
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def epoch_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)
