from datetime import datetime, timezone
from typing import Optional

def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def from_epoch(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)

def parse_upstream_time(value: Optional[str]) -> Optional[datetime]:
    """Parse the time formats returned by NOAA and the weather providers.

    Handles 'YYYY-MM-DD HH:MM' (CO-OPS, GMT) as well as ISO 8601 strings.
    """
    if not value:
        return None
    value = value.strip()
    for fmt in ("%Y-%m-%d %H:%M", "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None

def coops_timestamp(value: datetime) -> str:
    """Format a datetime the way the CO-OPS datagetter expects begin/end dates."""
    return ensure_utc(value).strftime("%Y%m%d %H:%M")
