"""
Timestamp helpers. All timestamps are timezone-aware UTC and stored as ISO strings.
"""
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional, Union

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value))
    except ValueError:
        return None


def parse_loose_date(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Parse an ISO-8601 or RFC 822 date as found in feeds.
    Returns None when the value cannot be parsed.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)

    text = str(value).strip()
    if not text:
        return None

    try:
        return ensure_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass

    try:
        return ensure_utc(parsedate_to_datetime(text))
    except (TypeError, ValueError, IndexError):
        return None


def validated_publish_date(
    value: Union[str, datetime, None],
    *,
    now: Optional[datetime] = None,
    title: str = "",
) -> datetime:
    """
    Publication date of an incoming item. Unparseable or future dates fall
    back to `now`; this never raises.
    """
    now = now or utc_now()
    parsed = parse_loose_date(value)

    if parsed is None:
        if value:
            logger.warning(f"Invalid publication date for '{title[:80]}' ({value!r}) - using current date")
        return now

    if parsed > now:
        logger.warning(f"Future publication date for '{title[:80]}' ({value!r}) - using current date")
        return now

    return parsed
