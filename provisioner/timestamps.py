"""Timezone-aware UTC timestamp helpers.

Every timestamp written to the ledger goes through these helpers so the
persisted values always carry a +00:00 offset and survive a round trip.
"""

from datetime import datetime, timezone


def now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def isonow() -> str:
    """Return the current UTC time as an ISO 8601 string with +00:00 offset."""
    return now().isoformat()


def parse_timestamp(iso_str: str) -> datetime:
    """Parse an ISO timestamp, assuming UTC if no timezone info.

    Ledgers written by hand or by older releases may carry naive values.
    """
    dt = datetime.fromisoformat(iso_str)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_local(iso_str: str) -> str:
    """Render a stored timestamp in the operator's local timezone."""
    try:
        return parse_timestamp(iso_str).astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")
    except (TypeError, ValueError):
        return iso_str or "unknown"
