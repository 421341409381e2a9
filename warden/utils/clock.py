"""Wall-clock helpers shared by records and the ledger."""

from datetime import datetime, timezone


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string with a Z suffix."""
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')
