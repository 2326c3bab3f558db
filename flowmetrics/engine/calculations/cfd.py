"""
Cumulative Flow Diagram.

Turns the per-state, per-day counts of the snapshot store into one ordered
daily series per state, plus a per-state summary table (arrival rate,
departure rate, daily average, average cycle time).

The snapshot store omits the "completed" rows of days on which nothing
changed, so that state alone is forward-filled from the previous day.
"""

import asyncio
import math
from datetime import timedelta
from numbers import Number
from typing import Optional

import pandas as pd

from flowmetrics.engine.aggregation import start_of
from flowmetrics.engine.calculations.base import BaseCalculations
from flowmetrics.engine.calculations.common import safe_to_rows
from flowmetrics.models.enums import AggregationKey, StateCategory, WidgetType
from flowmetrics.models.intervals import Interval
from flowmetrics.models.snapshots import CfdRow

FORWARD_FILLED_STATE = "completed"

STEP_CATEGORY_NAMES = {
    "inprogress": "In Progress",
    "completed": "Completed",
    "preceding": "Preceding",
    "proposed": "Proposed",
}


class DuplicateCfdEntryError(ValueError):
    """Two series ended up under the same state name."""

    pass


def transform_step_category_to_state(state: str) -> str:
    return STEP_CATEGORY_NAMES.get(state, state)


def period_days(period: Interval) -> list[str]:
    """ISO dates of every day touched by ``period``."""
    first = start_of(period.start, AggregationKey.DAY).date()
    last = start_of(period.end, AggregationKey.DAY).date()
    days = (last - first).days + 1
    return [(first + timedelta(days=offset)).isoformat() for offset in range(days)]


def _is_valid_count(value: object) -> bool:
    if isinstance(value, bool) or not isinstance(value, Number):
        return False
    return not math.isnan(value)


def build_cfd_series(
    rows: list[CfdRow],
    dates: list[str],
    rename_step_categories: bool,
    logger,
) -> dict[str, dict]:
    """
    Assemble ordered daily series per state.

    Malformed counts and days outside ``dates`` are skipped with a warning.
    "completed" days with no positive count take the previous day's value.

    Args:
        rows: Raw CFD rows
        dates: Ordered ISO days of the period
        rename_step_categories: Display step categories as state names
        logger: Bound logger for skipped rows

    Returns:
        Mapping of state name to {stateName, cumulativeFlowData}

    Raises:
        DuplicateCfdEntryError: If two states map to the same display name
    """
    valid = []
    for row in rows:
        if not _is_valid_count(row.cumulative_flow_count):
            logger.warning(
                "cfd_entry_skipped",
                reason="invalid_count",
                state=row.state,
                value=repr(row.cumulative_flow_count),
            )
            continue
        valid.append(
            {
                "state": row.state,
                "date": row.flomatika_snapshot_date[:10],
                "items": float(row.cumulative_flow_count),
            }
        )

    states = list(dict.fromkeys(row.state for row in rows))
    if valid:
        frame = pd.DataFrame(valid)
        counts = frame.pivot_table(
            index="date", columns="state", values="items", aggfunc="sum", fill_value=0
        )
        outside = sorted(set(counts.index) - set(dates))
        if outside:
            logger.warning("cfd_entry_skipped", reason="outside_period", dates=outside)
        counts = counts.reindex(index=dates, columns=states, fill_value=0)
    else:
        counts = pd.DataFrame(0, index=dates, columns=states)

    cfd_data: dict[str, dict] = {}
    for state in states:
        series = counts[state].astype(float)
        if state == FORWARD_FILLED_STATE:
            series = series.where(series > 0).ffill().fillna(0)

        state_name = transform_step_category_to_state(state) if rename_step_categories else state
        if state_name in cfd_data:
            raise DuplicateCfdEntryError(f'Duplicate CFD entry for state "{state_name}"')
        cfd_data[state_name] = {
            "stateName": state_name,
            "cumulativeFlowData": {day: _as_number(v) for day, v in series.items()},
        }
    return cfd_data


def _as_number(value: float):
    return int(value) if float(value).is_integer() else float(value)


class CfdCalculations(BaseCalculations):
    """Cumulative flow diagram and its summary table."""

    async def get_cumulative_flow_response(
        self,
        selected_work_item_types: Optional[list[str]],
        include_completed: bool,
    ) -> Optional[dict]:
        """
        Build the CFD widget response.

        Without selected work item types the diagram is drawn per step
        category and no summary is computed.

        Returns:
            {cfdData, summaryData, widgetInfo}, or None when no item matches
        """
        state = self._require_state_service()
        work_item_ids = await state.get_work_item_ids(self.org_id, self.filters)
        if not work_item_ids:
            return None

        is_step_category_cfd = not selected_work_item_types
        cfd_data = await self.get_cfd_data(
            work_item_ids, selected_work_item_types or [], include_completed, is_step_category_cfd
        )

        summary_data = {}
        if not is_step_category_cfd:
            summary_data = await self.get_cfd_summary_data(work_item_ids, cfd_data)

        return {
            "cfdData": cfd_data,
            "summaryData": summary_data,
            "widgetInfo": await self.get_widget_information(WidgetType.CUMULATIVE_FLOW_DIAGRAM),
        }

    async def get_cfd_data(
        self,
        work_item_ids: list[str],
        work_item_types: list[str],
        include_completed: bool,
        rename_step_categories: bool,
    ) -> dict[str, dict]:
        snapshots = self._require_snapshot_service()
        period = await self.filters.date_period()

        categories = [StateCategory.INPROGRESS.value]
        if include_completed:
            categories.append(StateCategory.COMPLETED.value)

        raw_rows = await snapshots.get_cumulative_flow_rows(
            self.org_id,
            period,
            categories,
            self.filters.client_timezone,
            work_item_types,
            work_item_ids,
        )
        rows = safe_to_rows(raw_rows, CfdRow, "cfd_entry_skipped")
        return build_cfd_series(rows, period_days(period), rename_step_categories, self.logger)

    async def get_cfd_summary_data(
        self,
        work_item_ids: list[str],
        cfd_data: dict[str, dict],
    ) -> dict[str, dict]:
        """
        Per-state arrival rate, departure rate, daily average and cycle time.

        Rates and averages are per day of the date period; the completed
        state has no row.
        """
        state = self._require_state_service()
        period = await self.filters.date_period()

        arrivals, departures, average_cycles = await asyncio.gather(
            state.get_arrivals_by_state(self.org_id, self.filters, work_item_ids),
            state.get_departures_by_state(self.org_id, self.filters, work_item_ids),
            state.get_average_cycle_time(self.org_id, self.filters, work_item_ids),
        )

        number_of_days = len(period_days(period))

        summary = {s: {} for s in cfd_data if s != FORWARD_FILLED_STATE}

        for state_name, count in arrivals.items():
            if state_name in summary:
                summary[state_name]["arrivalRate"] = count / number_of_days
        for state_name, count in departures.items():
            if state_name in summary:
                summary[state_name]["departureRate"] = count / number_of_days
        for state_name, entry in cfd_data.items():
            if state_name in summary:
                total = sum(entry["cumulativeFlowData"].values())
                summary[state_name]["dailyAverage"] = total / number_of_days
        for state_name, cycle_time in average_cycles.items():
            if state_name in summary:
                summary[state_name]["averageCycleTime"] = cycle_time

        return summary
