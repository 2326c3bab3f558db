"""
Aggregation keys and date bucketing.

Pure functions turning a date interval and a granularity into an ordered
sequence of time buckets, and partitioning work items into those buckets by a
date field. All arithmetic is calendar-aware: a month is a calendar month, not
30 days, and wall-clock time is preserved across DST changes because durations
are applied with ``dateutil.relativedelta`` on zone-aware datetimes.

Truncation rules:
    day:     midnight
    week:    Monday midnight (ISO week)
    month:   first day of the month
    quarter: first day of January, April, July or October
    year:    January 1st
"""

import math
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Sequence, TypeVar, Union

from dateutil.relativedelta import relativedelta

from flowmetrics.models.enums import AggregationKey
from flowmetrics.models.intervals import Interval
from flowmetrics.models.work_items import WorkItem

AGGREGATIONS: list[str] = [a.value for a in AggregationKey]

MILESTONE_FIELDS = ("arrival_date_time", "commitment_date_time", "departure_date_time")

_ONE_MICROSECOND = timedelta(microseconds=1)

ItemT = TypeVar("ItemT")


def is_aggregation_valid(value: Any) -> bool:
    return isinstance(value, str) and value in AGGREGATIONS


def parse_aggregation(value: Any) -> AggregationKey:
    """
    Parse an aggregation parameter, defaulting to day.

    Args:
        value: Raw parameter value

    Returns:
        The matching AggregationKey, or DAY for anything that is not exactly
        one of day, week, month, quarter or year
    """
    if isinstance(value, AggregationKey):
        return value
    if not is_aggregation_valid(value):
        return AggregationKey.DAY
    return AggregationKey(value)


def parse_filter_aggregation_option(value: Any) -> AggregationKey:
    """Parse the plural UI form ("Weeks", "months") into an AggregationKey."""
    if not isinstance(value, str) or not value:
        return AggregationKey.DAY
    return parse_aggregation(value.lower()[:-1])


def is_datetime_valid(value: Any) -> bool:
    return isinstance(value, datetime) and value.tzinfo is not None


def get_time_duration(count: int, aggregation: AggregationKey) -> relativedelta:
    """
    Calendar-aware duration of ``count`` aggregation units.

    Args:
        count: Number of units
        aggregation: Unit

    Returns:
        relativedelta suitable for adding to zone-aware datetimes
    """
    aggregation = parse_aggregation(aggregation)
    if aggregation == AggregationKey.YEAR:
        return relativedelta(years=count)
    if aggregation == AggregationKey.QUARTER:
        return relativedelta(months=3 * count)
    if aggregation == AggregationKey.MONTH:
        return relativedelta(months=count)
    if aggregation == AggregationKey.WEEK:
        return relativedelta(weeks=count)
    return relativedelta(days=count)


def start_of(value: datetime, aggregation: AggregationKey) -> datetime:
    """Truncate ``value`` to the start of its aggregation unit."""
    aggregation = parse_aggregation(aggregation)
    day = value.replace(hour=0, minute=0, second=0, microsecond=0)
    if aggregation == AggregationKey.WEEK:
        return day - timedelta(days=day.weekday())
    if aggregation == AggregationKey.MONTH:
        return day.replace(day=1)
    if aggregation == AggregationKey.QUARTER:
        return day.replace(month=((day.month - 1) // 3) * 3 + 1, day=1)
    if aggregation == AggregationKey.YEAR:
        return day.replace(month=1, day=1)
    return day


def end_of(value: datetime, aggregation: AggregationKey) -> datetime:
    """Last representable instant of ``value``'s aggregation unit."""
    return start_of(value, aggregation) + get_time_duration(1, aggregation) - _ONE_MICROSECOND


def interval_length(interval: Interval, aggregation: AggregationKey) -> float:
    """
    Length of ``interval`` in (fractional) aggregation units.

    Whole units are counted on the calendar from the interval start; the
    remainder is the elapsed share of the next unit.
    """
    whole = 0
    while interval.start + get_time_duration(whole + 1, aggregation) <= interval.end:
        whole += 1

    anchor = interval.start + get_time_duration(whole, aggregation)
    next_anchor = interval.start + get_time_duration(whole + 1, aggregation)
    fraction = (interval.end - anchor) / (next_anchor - anchor)
    return whole + fraction


def diff_in_months(start: datetime, end: datetime) -> float:
    """Signed, fractional number of calendar months from ``start`` to ``end``."""
    if end < start:
        return -diff_in_months(end, start)
    return interval_length(Interval(start=start, end=end), AggregationKey.MONTH)


def generate_date_array(interval: Interval, aggregation: AggregationKey) -> list[datetime]:
    """
    Ordered bucket start times covering ``interval``.

    The first bucket starts at the start of the aggregation unit containing
    ``interval.start`` and buckets continue until the unit containing
    ``interval.end``. A trailing bucket starting after ``interval.end`` is
    dropped, so a non-empty interval always yields at least one bucket.

    Args:
        interval: Date range to cover
        aggregation: Bucket granularity

    Returns:
        Bucket start datetimes, chronological

    Example:
        >>> generate_date_array(Interval(start=jan_3, end=feb_20), AggregationKey.MONTH)
        [2024-01-01T00:00, 2024-02-01T00:00]
    """
    aggregation = parse_aggregation(aggregation)
    start = start_of(interval.start, aggregation)
    end = end_of(interval.end, aggregation)

    periods = math.ceil(interval_length(Interval(start=start, end=end), aggregation))
    dates = [start + get_time_duration(index, aggregation) for index in range(periods)]

    if len(dates) > 1 and dates[-1] > interval.end:
        dates.pop()

    return dates


def _field_value(item: Any, field: str) -> Any:
    if isinstance(item, dict):
        return item.get(field)
    return getattr(item, field, None)


def separate_work_items_in_interval_buckets(
    items: Sequence[ItemT],
    interval: Interval,
    aggregation: AggregationKey,
    date_field: str,
) -> list[dict]:
    """
    Partition items into the buckets of ``generate_date_array``.

    Membership is open at the bucket start and closed at the bucket end:
    ``date_start < value <= date_end``, where ``date_end`` is the start of the
    following unit. Consecutive buckets therefore share a boundary instant
    and every item after the first bucket start lands in exactly one bucket.

    Args:
        items: Work items (models or mappings)
        interval: Date range to bucket
        aggregation: Bucket granularity
        date_field: Name of the datetime attribute to bucket by

    Returns:
        List of {"date_start", "date_end", "work_item_list"} dicts

    Raises:
        TypeError: If an item holds an unparsed string in ``date_field``
    """
    buckets = []
    for date_start in generate_date_array(interval, aggregation):
        date_end = date_start + get_time_duration(1, aggregation)
        members = []
        for item in items:
            value = _field_value(item, date_field)
            if isinstance(value, str):
                raise TypeError(
                    f"Field '{date_field}' holds a string; bucketing requires parsed datetimes"
                )
            if isinstance(value, datetime) and date_start < value <= date_end:
                members.append(item)
        buckets.append({"date_start": date_start, "date_end": date_end, "work_item_list": members})
    return buckets


WorkItemT = TypeVar("WorkItemT", bound=WorkItem)


def get_work_item_date_adjuster(
    aggregation: AggregationKey,
    custom_key: Optional[str] = None,
) -> Callable[[WorkItemT], WorkItemT]:
    """
    Build a transform snapping an item's milestones to their aggregation unit.

    Arrival, commitment and departure (plus ``custom_key`` when it names a
    datetime attribute) are truncated with ``start_of``. Missing or invalid
    values are left untouched. The input item is not modified.

    Args:
        aggregation: Unit to truncate to
        custom_key: Optional extra datetime attribute to truncate

    Returns:
        Function mapping an item to an adjusted copy
    """
    fields = list(MILESTONE_FIELDS)
    if custom_key and custom_key not in fields:
        fields.append(custom_key)

    def adjust(item: WorkItemT) -> WorkItemT:
        update = {}
        for field in fields:
            value = getattr(item, field, None)
            if is_datetime_valid(value):
                update[field] = start_of(value, aggregation)
        return item.model_copy(update=update)

    return adjust


def format_date_by_aggregation(value: datetime, aggregation: Union[AggregationKey, str]) -> str:
    """Label a bucket start for display."""
    aggregation = parse_aggregation(aggregation)
    if aggregation == AggregationKey.MONTH:
        return value.strftime("%b %Y")
    if aggregation == AggregationKey.QUARTER:
        return f"Q{(value.month - 1) // 3 + 1} {value.year}"
    if aggregation == AggregationKey.YEAR:
        return value.strftime("%Y")
    return value.strftime("%b-%d %Y")
