from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.logging_config import get_logger

logger = get_logger("business_hours")

DEFAULT_TIMEZONE = "Asia/Taipei"
DAY_KEYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


def _resolve_zone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown business hours timezone, using default", extra={"context": {"timezone": name}})
        return ZoneInfo(DEFAULT_TIMEZONE)


def local_now(config: Optional[dict[str, Any]], now: Optional[datetime] = None) -> datetime:
    zone = _resolve_zone((config or {}).get("timezone"))
    if now is None:
        now = datetime.now(timezone.utc)
    if now.tzinfo is None:
        # Naive timestamps are wall-clock time in the merchant zone.
        return now.replace(tzinfo=zone)
    return now.astimezone(zone)


def is_within_business_hours(config: Optional[dict[str, Any]], now: Optional[datetime] = None) -> bool:
    """True when `now` falls inside today's configured window.

    No schedule configured means always open. A missing or disabled day is
    closed. Bounds are inclusive "HH:MM" strings.
    """
    schedule = (config or {}).get("schedule")
    if not isinstance(schedule, dict) or not schedule:
        return True

    current = local_now(config, now)
    day = schedule.get(DAY_KEYS[current.weekday()])
    if not isinstance(day, dict) or not day.get("enabled"):
        return False

    start, end = day.get("start"), day.get("end")
    if not start or not end:
        return False

    hhmm = current.strftime("%H:%M")
    return str(start) <= hhmm <= str(end)
