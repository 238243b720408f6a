"""
Time helpers.

Timestamps are persisted as naive UTC; vendor timestamps arrive as ISO-8601
strings with offsets and are normalized here.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

# Amazon closes its seller-central day on Pacific time
SELLER_TZ = ZoneInfo("America/Los_Angeles")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a vendor ISO-8601 timestamp (``Z`` or offset) into naive UTC."""
    if not value:
        return None
    text = value.strip().strip('"')
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return to_naive_utc(datetime.fromisoformat(text))
    except ValueError:
        pass
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d", "%m/%d/%Y"):
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def isoformat_z(value: datetime) -> str:
    """Vendor-style UTC timestamp, e.g. ``2024-01-15T00:00:00Z``."""
    return to_naive_utc(value).replace(microsecond=0).isoformat() + "Z"


def seller_date(value: datetime) -> date:
    """Calendar date of a naive-UTC timestamp in the seller's timezone."""
    return value.replace(tzinfo=timezone.utc).astimezone(SELLER_TZ).date()


def days_ago(days: float, now: Optional[datetime] = None) -> datetime:
    return (now or utcnow()) - timedelta(days=days)
