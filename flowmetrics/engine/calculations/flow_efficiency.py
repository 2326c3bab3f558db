"""
Flow analysis: flow efficiency and time in stage.

Flow efficiency is the share of active time in the total (active + waiting)
time of work items. It is computed for the four combinations of perspective
(in progress, completed) and arrival point (include, exclude), each as a
donut total and as a series over the aggregation buckets of the date period.

The series issues a single bucket-tagged union query: every bucket asks for
the same items over its own date range, rows come back tagged with the
bucket id and are redistributed to their bucket. One round trip replaces one
query per bucket.
"""

import asyncio
from collections import defaultdict
from datetime import timedelta
from typing import Optional

from flowmetrics.engine.aggregation import end_of, generate_date_array
from flowmetrics.engine.calculations.base import BaseCalculations
from flowmetrics.engine.calculations.common import (
    SECONDS_IN_DAY,
    SECONDS_IN_HOUR,
    to_rows,
    work_item_ids,
)
from flowmetrics.engine.statistics import get_percentile, round_to_decimal_places
from flowmetrics.models.enums import AggregationKey, StateCategory, WidgetType
from flowmetrics.models.snapshots import ActiveQueueTimeRow, BucketQuery, TimeInStageRow

ARRIVAL_POINTS = ("include", "exclude")
FLOW_EFFICIENCY_PERSPECTIVES = (StateCategory.INPROGRESS, StateCategory.COMPLETED)
TIME_IN_STAGE_PERSPECTIVES = (
    StateCategory.INPROGRESS,
    StateCategory.COMPLETED,
    StateCategory.PROPOSED,
)
STEP_TYPES = ("queue", "active")


def format_hours(total_seconds: float) -> str:
    """
    Format a duration as H:MM:SS.

    Example:
        >>> format_hours(36000)
        '10:00:00'
    """
    seconds = int(total_seconds)
    hours, remainder = divmod(seconds, SECONDS_IN_HOUR)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours}:{minutes:02d}:{seconds:02d}"


def summarise_active_queue_rows(rows: list[ActiveQueueTimeRow]) -> dict:
    """
    Donut totals of active and waiting time.

    A row contributes to a side only when both its hour count and its exact
    seconds are non-zero.
    """
    active_time = waiting_time = 0.0
    active_seconds = waiting_seconds = 0.0
    for row in rows:
        if row.active_time and row.active_time_in_seconds:
            active_time += row.active_time
            active_seconds += row.active_time_in_seconds
        if row.waiting_time and row.waiting_time_in_seconds:
            waiting_time += row.waiting_time
            waiting_seconds += row.waiting_time_in_seconds

    return {
        "activeTime": round_to_decimal_places(active_time, 2),
        "waitingTime": round_to_decimal_places(waiting_time, 2),
        "activeTimeInHours": format_hours(active_seconds),
        "waitingTimeInHours": format_hours(waiting_seconds),
    }


def empty_donut() -> dict:
    return {"activeTime": 0, "waitingTime": 0, "activeTimeInHours": "", "waitingTimeInHours": ""}


def aggregate_time_in_stage(rows: list[TimeInStageRow]) -> list[dict]:
    """Group per-item time in state into per-state days, item count and p85."""
    days_by_state: dict[str, list[float]] = defaultdict(list)
    for row in rows:
        if not row.state:
            continue
        days_by_state[row.state].append(int(row.time_in_state_seconds) / SECONDS_IN_DAY)

    return [
        {
            "state": state,
            "timeInStateDays": sum(days),
            "workItemCount": len(days),
            "percentile85": get_percentile(85, days),
        }
        for state, days in days_by_state.items()
    ]


class FlowEfficiencyCalculations(BaseCalculations):
    """Flow efficiency donut, flow efficiency over time and time in stage."""

    async def get_flow_analysis_response(self) -> dict:
        flow_efficiency, time_in_stage, flow_efficiency_info, time_in_stage_info = (
            await asyncio.gather(
                self.get_flow_efficiency(self.filters.aggregation),
                self.get_time_in_stage(),
                self.get_widget_information(WidgetType.FLOW_ANALYSIS_FLOW_EFFICIENCY),
                self.get_widget_information(WidgetType.TIME_IN_STAGE),
            )
        )
        return {
            "flowEfficiency": flow_efficiency,
            "timeInStage": time_in_stage,
            "flowEfficiencyWidgetInfo": flow_efficiency_info,
            "timeInStageWidgetInfo": time_in_stage_info,
        }

    async def get_flow_efficiency(self, aggregation: AggregationKey) -> list[dict]:
        """One option per arrival point and perspective, computed concurrently."""
        options = [
            self.get_flow_efficiency_with_parameters(perspective, include_arrival, aggregation)
            for include_arrival in ARRIVAL_POINTS
            for perspective in FLOW_EFFICIENCY_PERSPECTIVES
        ]
        return list(await asyncio.gather(*options))

    async def get_flow_efficiency_with_parameters(
        self,
        perspective: StateCategory,
        include_arrival: str,
        aggregation: AggregationKey,
    ) -> dict:
        totals, aggregated = await asyncio.gather(
            self.get_flow_efficiency_donut_data(include_arrival, perspective),
            self.calculate_flow_efficiency_over_time(include_arrival, perspective, aggregation),
        )
        return {
            "perspective": perspective.value,
            "includeArrival": include_arrival,
            "totals": totals,
            "aggregated": aggregated,
        }

    async def get_flow_efficiency_donut_data(
        self,
        include_arrival: str,
        perspective: StateCategory,
    ) -> dict:
        """
        Total active and waiting time of the perspective's items.

        Args:
            include_arrival: "include" counts time before commitment as well
            perspective: In progress or completed items

        Returns:
            {activeTime, waitingTime, activeTimeInHours, waitingTimeInHours};
            hour fields are H:MM:SS, empty when there are no items
        """
        items = await self.category_work_items(perspective)
        if not items:
            return empty_donut()

        snapshots = self._require_snapshot_service()
        interval = await self.filters.date_period()
        exclude_weekends = await self.filters.get_exclude_weekends_setting()

        raw_rows = await snapshots.get_active_and_queue_time(
            self.org_id,
            work_item_ids(items),
            include_arrival == "include",
            interval.start,
            interval.end,
            self.filters.client_timezone,
            exclude_weekends,
        )
        return summarise_active_queue_rows(to_rows(raw_rows, ActiveQueueTimeRow))

    async def calculate_flow_efficiency_over_time(
        self,
        include_arrival: str,
        perspective: StateCategory,
        aggregation: AggregationKey,
    ) -> list[dict]:
        """
        Active and waiting time per aggregation bucket.

        The last bucket is cut at the end of the date period; every other
        bucket ends where the next one starts.
        """
        items = await self.category_work_items(perspective)
        if not items:
            return []

        snapshots = self._require_snapshot_service()
        interval = await self.filters.date_period()
        exclude_weekends = await self.filters.get_exclude_weekends_setting()

        buckets = []
        for bucket_id, start in enumerate(generate_date_array(interval, aggregation)):
            end = end_of(start, aggregation)
            query_end = interval.end if end > interval.end else end + timedelta(microseconds=1)
            buckets.append(
                {"query": BucketQuery(bucket_id=bucket_id, start=start, end=query_end), "end": end}
            )

        raw_rows = await snapshots.get_active_and_queue_time_by_buckets(
            self.org_id,
            work_item_ids(items),
            include_arrival == "include",
            [b["query"] for b in buckets],
            self.filters.client_timezone,
            exclude_weekends,
        )

        rows_by_bucket: dict[Optional[int], list[ActiveQueueTimeRow]] = defaultdict(list)
        for row in to_rows(raw_rows, ActiveQueueTimeRow):
            rows_by_bucket[row.bucket_id].append(row)

        result = []
        for bucket in buckets:
            query: BucketQuery = bucket["query"]
            rows = rows_by_bucket.get(query.bucket_id, [])
            active_seconds = sum(r.active_time_in_seconds or 0 for r in rows)
            waiting_seconds = sum(r.waiting_time_in_seconds or 0 for r in rows)
            result.append(
                {
                    "startDate": query.start.date().isoformat(),
                    "endDate": bucket["end"].date().isoformat(),
                    "workItemIdList": [r.work_item_id for r in rows],
                    "activeCount": sum(r.active_time or 0 for r in rows),
                    "waitingCount": sum(r.waiting_time or 0 for r in rows),
                    "count": len(rows),
                    "activeTimeInHours": format_hours(active_seconds),
                    "waitingTimeInHours": format_hours(waiting_seconds),
                }
            )
        return result

    async def get_time_in_stage(self) -> list[dict]:
        """Time in stage for every perspective, step type and step category."""
        options = [
            self.get_time_in_stage_with_parameters(perspective, step_type, step_category)
            for perspective in TIME_IN_STAGE_PERSPECTIVES
            for step_type in STEP_TYPES
            for step_category in TIME_IN_STAGE_PERSPECTIVES
        ]
        return list(await asyncio.gather(*options))

    async def get_time_in_stage_with_parameters(
        self,
        perspective: StateCategory,
        step_type: str,
        step_category: StateCategory,
    ) -> dict:
        items = await self.category_work_items(perspective)
        option = {
            "perspective": perspective.value,
            "stepType": step_type,
            "stepCategory": step_category.value,
            "workItemCount": len(items),
            "stages": [],
        }
        if not items:
            return option

        snapshots = self._require_snapshot_service()
        interval = await self.filters.date_period()
        raw_rows = await snapshots.get_time_in_stage(
            self.org_id,
            work_item_ids(items),
            step_type,
            step_category.value,
            interval,
            self.filters.client_timezone,
        )
        option["stages"] = aggregate_time_in_stage(to_rows(raw_rows, TimeInStageRow))
        return option
