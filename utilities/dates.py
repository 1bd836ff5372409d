from datetime import UTC, date, datetime
from typing import Optional


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 date or datetime into a naive UTC datetime.

    - "2024-01-01" becomes midnight of that day.
    - A trailing "Z" or an explicit offset is converted to UTC.
    - Raises ValueError for anything else.
    """
    if value is None:
        return None
    raw = value.strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"

    if len(raw) == 10:
        parsed_date = date.fromisoformat(raw)
        return datetime(parsed_date.year, parsed_date.month, parsed_date.day)

    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC).replace(tzinfo=None)
    return parsed
