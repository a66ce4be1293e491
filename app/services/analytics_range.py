"""Window resolution and daily bucketing for the analytics dashboard."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterable, List, Literal, Optional

from app.config.analytics_settings import ANALYTICS_DEFAULT_RANGE, SUPPORTED_RANGES

AnalyticsRange = Literal["7d", "30d", "90d", "all"]

RANGE_DAYS: Dict[AnalyticsRange, int] = {"7d": 7, "30d": 30, "90d": 90, "all": 0}


@dataclass(frozen=True)
class PreviousWindow:
    """The contiguous window of identical length right before ``since``."""

    start: datetime
    end: datetime


@dataclass(frozen=True)
class RangeWindow:
    range: AnalyticsRange
    since: Optional[datetime]
    window_days: int
    now: datetime
    previous: Optional[PreviousWindow] = None

    @property
    def today(self) -> date:
        return self.now.date()

    @property
    def bounded(self) -> bool:
        return self.window_days > 0

    def contains(self, moment: datetime) -> bool:
        """True when ``moment`` falls between ``since`` (if any) and ``now``."""

        if moment > self.now:
            return False
        return self.since is None or moment >= self.since


def normalize_range(value: Optional[str]) -> AnalyticsRange:
    """Return ``value`` if it is a supported range, else the configured default."""

    if isinstance(value, str):
        candidate = value.strip().lower()
        if candidate in SUPPORTED_RANGES:
            return candidate
    return ANALYTICS_DEFAULT_RANGE


def resolve_range(value: Optional[str], now: datetime) -> RangeWindow:
    """Compute the inclusive UTC window for a range selector.

    ``since`` is UTC midnight ``window_days - 1`` days before today so that
    "7d" covers today plus the six previous calendar days.
    """

    range_value = normalize_range(value)
    now = _utc(now)
    today = now.date()
    window_days = RANGE_DAYS[range_value]
    if not window_days:
        return RangeWindow(range=range_value, since=None, window_days=0, now=now)

    start_day = today - timedelta(days=window_days - 1)
    since = datetime.combine(start_day, time.min, tzinfo=timezone.utc)
    previous = PreviousWindow(
        start=since - timedelta(days=window_days),
        end=since - timedelta(milliseconds=1),
    )
    return RangeWindow(
        range=range_value,
        since=since,
        window_days=window_days,
        now=now,
        previous=previous,
    )


def build_series(timestamps: Iterable[datetime], window: RangeWindow) -> List[Dict[str, object]]:
    """Bucket timestamps by UTC day.

    Bounded windows are gap-filled so charts get one point per day; the
    unbounded window only lists days that actually have events.
    """

    buckets: Counter[date] = Counter()
    for moment in timestamps:
        buckets[_utc(moment).date()] += 1

    if not window.bounded:
        return [
            {"date": day.isoformat(), "count": count}
            for day, count in sorted(buckets.items())
        ]

    start_day = window.today - timedelta(days=window.window_days - 1)
    series: List[Dict[str, object]] = []
    cursor = start_day
    while cursor <= window.today:
        series.append({"date": cursor.isoformat(), "count": buckets.get(cursor, 0)})
        cursor += timedelta(days=1)
    return series


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


__all__ = [
    "AnalyticsRange",
    "PreviousWindow",
    "RANGE_DAYS",
    "RangeWindow",
    "build_series",
    "normalize_range",
    "resolve_range",
]
