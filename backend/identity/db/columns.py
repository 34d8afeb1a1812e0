"""Column encoding shared by the SQLite repositories."""

from datetime import UTC, datetime


def encode_datetime(value: datetime | None) -> str | None:
    """Store timestamps as fixed-width UTC ISO-8601 so text order matches time order."""
    if value is None:
        return None
    return value.astimezone(UTC).isoformat(timespec="microseconds")
