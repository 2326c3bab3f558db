"""
Helpers shared by the per-widget calculation engines.

Covers the boundary validation of collaborator rows, the historical grouping
used by the distribution widgets, weekly throughput and a few small
reductions that several engines need.
"""

from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Iterable, NamedTuple, Optional, Sequence, Type, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from flowmetrics.engine.aggregation import end_of, generate_date_array
from flowmetrics.engine.statistics import round_half_up
from flowmetrics.models.enums import AggregationKey
from flowmetrics.models.intervals import Interval
from flowmetrics.models.work_items import ExtendedWorkItem, WorkItem

logger = structlog.get_logger()

ModelT = TypeVar("ModelT", bound=WorkItem)
RowT = TypeVar("RowT", bound=BaseModel)

SECONDS_IN_DAY = 86400
SECONDS_IN_HOUR = 3600


def to_work_items(
    rows: Iterable[Any],
    model: Type[ModelT] = ExtendedWorkItem,
    source: str = "",
) -> list[ModelT]:
    """
    Validate collaborator rows into work item models.

    Rows that are already instances of ``model`` are kept as they are; other
    models are re-validated through their field dump and mappings are
    validated directly. Items whose state category contradicts their
    milestones are skipped with a warning.

    Args:
        rows: Models or mappings returned by a collaborator
        model: Target model class
        source: Retrieval name used in log events

    Returns:
        Validated, consistent work items in input order

    Raises:
        pydantic.ValidationError: If a row cannot be validated at all
    """
    items: list[ModelT] = []
    for row in rows:
        if isinstance(row, model):
            item = row
        elif isinstance(row, BaseModel):
            item = model.model_validate(row.model_dump())
        else:
            item = model.model_validate(row)

        if not item.is_consistent():
            logger.warning(
                "work_item_inconsistent_skipped",
                work_item_id=item.work_item_id,
                state_category=item.state_category.value if item.state_category else None,
                source=source,
            )
            continue
        items.append(item)
    return items


def to_rows(rows: Iterable[Any], model: Type[RowT]) -> list[RowT]:
    """Validate snapshot or time rows at the boundary."""
    return [row if isinstance(row, model) else model.model_validate(row) for row in rows]


def safe_to_rows(rows: Iterable[Any], model: Type[RowT], event: str) -> list[RowT]:
    """Like ``to_rows`` but drops rows that fail validation, logging each one."""
    validated = []
    for row in rows:
        try:
            validated.append(row if isinstance(row, model) else model.model_validate(row))
        except ValidationError as e:
            logger.warning(event, error=str(e))
    return validated


def work_item_ids(items: Iterable[WorkItem]) -> list[str]:
    return [item.work_item_id for item in items]


def unique_by_id(*lists: Iterable[WorkItem]) -> list:
    """Concatenate lists keeping the first occurrence of each work item id."""
    seen = set()
    unique = []
    for items in lists:
        for item in items:
            if item.work_item_id in seen:
                continue
            seen.add(item.work_item_id)
            unique.append(item)
    return unique


def dump_items(items: Iterable[WorkItem]) -> list[dict]:
    """JSON-ready camelCase rendering of work items."""
    return [item.model_dump(by_alias=True, mode="json") for item in items]


def count_by(values: Iterable[Optional[str]]) -> dict[str, int]:
    """Occurrences per value, in first-seen order; None counts as "None"."""
    return dict(Counter("None" if v is None else v for v in values))


def days_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / SECONDS_IN_DAY


def whole_days_between(start: datetime, end: datetime) -> int:
    return int(days_between(start, end))


# ============================================================================
# Historical grouping
# ============================================================================


class DatedWorkItem(NamedTuple):
    """
    Work item reduced to what the historical grouping needs.

    For upcoming work ``date_time`` is the arrival and ``date_time_to_exclude``
    the commitment; for work in process they are commitment and departure.
    """

    work_item_id: str
    date_time: datetime
    normalised_display_name: Optional[str]
    date_time_to_exclude: Optional[datetime] = None


def to_dated_work_items(
    items: Iterable[WorkItem],
    date_field: str,
    exclusion_field: Optional[str] = None,
    label_field: str = "normalised_display_name",
) -> list[DatedWorkItem]:
    """
    Project work items onto ``DatedWorkItem``.

    Items without ``date_field`` are dropped with a warning; a missing label
    becomes the empty string.
    """
    dated = []
    for item in items:
        date_time = getattr(item, date_field)
        if date_time is None:
            logger.warning(
                "work_item_missing_date", work_item_id=item.work_item_id, field=date_field
            )
            continue
        dated.append(
            DatedWorkItem(
                work_item_id=item.work_item_id,
                date_time=date_time,
                normalised_display_name=getattr(item, label_field) or "",
                date_time_to_exclude=getattr(item, exclusion_field) if exclusion_field else None,
            )
        )
    return dated


def group_work_item_list_by_aggregation(
    work_item_list: Sequence[DatedWorkItem],
    aggregation: AggregationKey,
    is_became_scenario: bool,
    interval: Optional[Interval],
    include_work_items_in_result: bool = False,
) -> list[dict]:
    """
    Count items per label for each aggregation bucket of ``interval``.

    "Became" membership is the half-open bucket ``[start, end of unit)``.
    "Was" membership holds every item that started on or before the end of
    the bucket and, when it has an exclusion date, had not left before the
    bucket started.

    Args:
        work_item_list: Items to group
        aggregation: Bucket granularity
        is_became_scenario: Use became rather than was membership
        interval: Date range to cover
        include_work_items_in_result: Attach the member items to each bucket

    Returns:
        List of {dateStart, dateEnd, weekNumber, values[, workItems]} dicts
        with ISO-formatted bounds

    Raises:
        ValueError: If ``interval`` is missing
    """
    if interval is None:
        raise ValueError("Missing or invalid interval")

    result = []
    for date_start in generate_date_array(interval, aggregation):
        date_end = end_of(date_start, aggregation)
        bucket = Interval(start=date_start, end=date_end)

        members = []
        for work_item in work_item_list:
            if is_became_scenario:
                is_member = bucket.contains(work_item.date_time)
            elif work_item.date_time_to_exclude is not None:
                is_member = (
                    work_item.date_time <= date_end
                    and work_item.date_time_to_exclude >= date_start
                )
            else:
                is_member = work_item.date_time <= date_end
            if is_member:
                members.append(work_item)

        entry = {
            "dateStart": date_start.isoformat(),
            "dateEnd": date_end.isoformat(),
            "weekNumber": date_start.isocalendar()[1],
            "values": count_by(w.normalised_display_name for w in members),
        }
        if include_work_items_in_result:
            entry["workItems"] = [w._asdict() for w in members]
        result.append(entry)
    return result


# ============================================================================
# Throughput
# ============================================================================


def last_completed_week_end(period_end: datetime) -> datetime:
    """``period_end`` when it falls on a Sunday, else the end of the previous week."""
    if period_end.weekday() == 6:
        return period_end
    return end_of(period_end - timedelta(weeks=1), AggregationKey.WEEK)


def weekly_throughput(completed: Sequence[WorkItem], interval: Interval) -> list[int]:
    """
    Completed item count per calendar week of ``interval``.

    Only whole weeks count: the interval is cut at the end of the last
    completed week and items departing after that are ignored.
    """
    effective_end = last_completed_week_end(interval.end)
    if effective_end < interval.start:
        return []

    departures = [
        item.departure_date_time
        for item in completed
        if item.departure_date_time is not None and item.departure_date_time < effective_end
    ]
    counts = []
    weeks = generate_date_array(Interval(start=interval.start, end=effective_end), AggregationKey.WEEK)
    for week_start in weeks:
        week_end = end_of(week_start, AggregationKey.WEEK)
        counts.append(sum(1 for d in departures if week_start < d < week_end))
    return counts


def get_average_throughput(completed: Sequence[WorkItem], interval: Interval) -> int:
    """Mean weekly throughput over the whole weeks of ``interval``, rounded."""
    counts = weekly_throughput(completed, interval)
    if not counts:
        return 0
    return round_half_up(sum(counts) / len(counts))
