from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from visibility_tracker.models import DateRange, QueryFilters

DEFAULT_LOOKBACK_DAYS = 30
ALL_PLATFORMS = "all"
GLOBAL_REGION = "GLOBAL"


def _now(now: datetime | None) -> datetime:
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    return current


def default_date_range(now: datetime | None = None, days: int = DEFAULT_LOOKBACK_DAYS) -> DateRange:
    end = _now(now)
    return DateRange(start=end - timedelta(days=days), end=end)


def current_week_range(now: datetime | None = None, tz: str = "UTC") -> DateRange:
    try:
        zone = ZoneInfo(tz)
    except Exception:
        zone = timezone.utc
    local_now = _now(now).astimezone(zone)
    monday = local_now.date() - timedelta(days=local_now.weekday())
    return DateRange(
        start=datetime.combine(monday, time.min, tzinfo=zone),
        end=datetime.combine(local_now.date(), time.max, tzinfo=zone),
    )


def previous_period(date_range: DateRange) -> DateRange:
    return DateRange(start=date_range.start - date_range.duration, end=date_range.start)


def resolve_date_range(filters: QueryFilters, now: datetime | None = None) -> DateRange:
    return filters.date_range or default_date_range(now)


def platform_filter(platform: str | None) -> str | None:
    if not platform:
        return None
    value = platform.strip().lower()
    if not value or value == ALL_PLATFORMS:
        return None
    return value


def region_filter(region: str | None) -> str | None:
    if not region:
        return None
    value = region.strip().upper()
    if not value or value == GLOBAL_REGION:
        return None
    return value


def competitor_in_region(competitor_region: str | None, region: str | None) -> bool:
    if region is None:
        return True
    return (competitor_region or GLOBAL_REGION).upper() in {region, GLOBAL_REGION}


def build_filters(
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    platform: str | None = None,
    region: str | None = None,
    topic_id: str | None = None,
    now: datetime | None = None,
) -> QueryFilters:
    date_range = None
    if start is not None or end is not None:
        resolved_end = _now(end or now)
        resolved_start = start or resolved_end - timedelta(days=DEFAULT_LOOKBACK_DAYS)
        if resolved_start.tzinfo is None:
            resolved_start = resolved_start.replace(tzinfo=timezone.utc)
        date_range = DateRange(start=resolved_start, end=resolved_end)
    return QueryFilters(
        date_range=date_range,
        platform=platform_filter(platform),
        region=region_filter(region),
        topic_id=topic_id or None,
    )
