"""
Flow of demands.

Two views over the same counts:

    - Continuous improvement: demand vs capacity and inflow vs outflow, as
      totals and per aggregation bucket.
    - Delivery governance: the same totals reduced to traffic lights, plus
      inventory size, commitment rate, time to commit, WIP count, average
      WIP age and throughput.

Definitions:
    demand   = items with an arrival date
    capacity = items with a departure date (outflow is the same count)
    inflow   = items with a commitment date
"""

import asyncio
import copy
from typing import Iterable, Optional

import numpy as np

from flowmetrics.engine.aggregation import end_of, generate_date_array, separate_work_items_in_interval_buckets
from flowmetrics.engine.cache import CacheKey, MemoCache
from flowmetrics.engine.calculations.base import BaseCalculations
from flowmetrics.engine.calculations.common import (
    dump_items,
    get_average_throughput,
    to_work_items,
    unique_by_id,
)
from flowmetrics.engine.statistics import get_percentile, round_half_up
from flowmetrics.models.enums import (
    AggregationKey,
    DateAnalysisOption,
    RetrievalScenario,
    StateCategory,
    TrafficLight,
    WidgetType,
)
from flowmetrics.models.intervals import Interval
from flowmetrics.models.work_items import ExtendedWorkItem, WorkItem

# Ratio thresholds for demand/capacity and inflow/outflow
ACCUMULATION_GOOD_BELOW = 1
ACCUMULATION_AVERAGE_BELOW = 4

# Commitment rate thresholds (percent)
COMMITMENT_RATE_BAD_AT_MOST = 64
COMMITMENT_RATE_AVERAGE_AT_MOST = 84

# Multiples of the mean lead time for time to commit and WIP age
LEAD_TIME_MULTIPLE_GOOD = 3
LEAD_TIME_MULTIPLE_AVERAGE = 5


def calculate_demand(items: Iterable[WorkItem]) -> int:
    return sum(1 for item in items if item.arrival_date_time)


def calculate_capacity(items: Iterable[WorkItem]) -> int:
    return sum(1 for item in items if item.departure_date_time)


def calculate_inflow(items: Iterable[WorkItem]) -> int:
    return sum(1 for item in items if item.commitment_date_time)


def get_demand_over_capacity_percent(demand: int, capacity: int) -> int:
    """
    How much demand exceeds capacity, in percent.

    Example:
        >>> get_demand_over_capacity_percent(120, 100)
        20
    """
    if capacity == 0:
        return 0
    return round_half_up((demand / capacity - 1) * 100)


def get_inflow_over_outflow_percent(inflow: int, outflow: int) -> int:
    if outflow == 0:
        return 0
    return round_half_up((inflow / outflow - 1) * 100)


def accumulation_pattern(incoming: int, outgoing: int) -> TrafficLight:
    """Traffic light of an incoming/outgoing ratio (0 when nothing goes out)."""
    ratio = 0 if outgoing == 0 else incoming / outgoing
    if ratio < ACCUMULATION_GOOD_BELOW:
        return TrafficLight.GOOD
    if ratio < ACCUMULATION_AVERAGE_BELOW:
        return TrafficLight.AVERAGE
    return TrafficLight.BAD


def commitment_rate_pattern(commitment_rate_percent: int) -> TrafficLight:
    if commitment_rate_percent <= COMMITMENT_RATE_BAD_AT_MOST:
        return TrafficLight.BAD
    if commitment_rate_percent <= COMMITMENT_RATE_AVERAGE_AT_MOST:
        return TrafficLight.AVERAGE
    return TrafficLight.GOOD


def lead_time_multiple_pattern(value: float, average_lead_time: float) -> TrafficLight:
    """Good up to 3x the mean lead time, average up to 5x, bad beyond."""
    if value <= LEAD_TIME_MULTIPLE_GOOD * average_lead_time:
        return TrafficLight.GOOD
    if value <= LEAD_TIME_MULTIPLE_AVERAGE * average_lead_time:
        return TrafficLight.AVERAGE
    return TrafficLight.BAD


def wip_age_pattern(average_age: float, average_lead_time: float) -> TrafficLight:
    """
    Average WIP age against the mean lead time.

    Good only strictly below 3x; exactly 3x (an empty completed set included)
    is neutral.
    """
    if average_age > LEAD_TIME_MULTIPLE_AVERAGE * average_lead_time:
        return TrafficLight.BAD
    if average_age > LEAD_TIME_MULTIPLE_GOOD * average_lead_time:
        return TrafficLight.AVERAGE
    if average_age < LEAD_TIME_MULTIPLE_GOOD * average_lead_time:
        return TrafficLight.GOOD
    return TrafficLight.NEUTRAL


def average_lead_time(completed: Iterable[WorkItem]) -> float:
    lead_times = [i.lead_time_in_whole_days for i in completed if i.lead_time_in_whole_days is not None]
    return float(np.mean(lead_times)) if lead_times else 0.0


class FlowOfDemandsCalculations(BaseCalculations):
    """
    Demand vs capacity and inflow vs outflow.

    Construction widens the filter aggregation for long date ranges, since
    the over-time series issue one query per bucket.
    """

    def __init__(self, filters, state_service=None, widget_information_service=None, settings=None):
        super().__init__(
            filters,
            state_service=state_service,
            widget_information_service=widget_information_service,
            settings=settings,
        )
        self.filters.set_safe_aggregation()

    async def work_items_by_category(self, state_category: StateCategory) -> list[WorkItem]:
        """Proposed items are the ones that became inventory in the period."""
        if state_category == StateCategory.PROPOSED:
            return await self.scenario_work_items([RetrievalScenario.BECAME_INVENTORY_BETWEEN_DATES])
        return await self.category_work_items(state_category)

    async def get_demand_vs_capacity_widget_data(self) -> dict:
        aggregation = self.filters.aggregation
        interval = await self.filters.date_period()

        total_demand, total_capacity, demand_over_time, capacity_over_time = await asyncio.gather(
            self.get_totals_for_demand(),
            self.get_totals_for_capacity(),
            self.get_demand_over_time(interval, aggregation),
            self.get_capacity_over_time(interval, aggregation),
        )

        return {
            "totalDemand": total_demand,
            "totalCapacity": total_capacity,
            "demandOverCapacityPercent": get_demand_over_capacity_percent(
                total_demand, total_capacity
            ),
            "inventoryGrowth": total_demand - total_capacity,
            "demandOverTime": demand_over_time,
            "capacityOverTime": capacity_over_time,
        }

    async def get_inflow_vs_outflow_widget_data(self) -> dict:
        aggregation = self.filters.aggregation
        interval = await self.filters.date_period()

        total_inflow, total_outflow, inflow_over_time, outflow_over_time = await asyncio.gather(
            self.get_totals_for_inflow(),
            self.get_totals_for_outflow(),
            self.get_inflow_over_time(interval, aggregation),
            self.get_outflow_over_time(interval, aggregation),
        )

        return {
            "totalInflow": total_inflow,
            "totalOutflow": total_outflow,
            "inflowOverOutflowPercent": get_inflow_over_outflow_percent(
                total_inflow, total_outflow
            ),
            "wipGrowth": total_inflow - total_outflow,
            "inflowOverTime": inflow_over_time,
            "outflowOverTime": outflow_over_time,
        }

    async def get_totals_for_demand(self) -> int:
        proposed, inprogress, completed = await asyncio.gather(
            self.work_items_by_category(StateCategory.PROPOSED),
            self.work_items_by_category(StateCategory.INPROGRESS),
            self.work_items_by_category(StateCategory.COMPLETED),
        )
        return calculate_demand(unique_by_id(proposed, inprogress, completed))

    async def get_totals_for_capacity(self) -> int:
        completed = await self.work_items_by_category(StateCategory.COMPLETED)
        return calculate_capacity(completed)

    async def get_totals_for_inflow(self) -> int:
        inprogress, completed = await asyncio.gather(
            self.work_items_by_category(StateCategory.INPROGRESS),
            self.work_items_by_category(StateCategory.COMPLETED),
        )
        return calculate_inflow(unique_by_id(inprogress, completed))

    async def get_totals_for_outflow(self) -> int:
        return await self.get_totals_for_capacity()

    async def get_demand_over_time(
        self, interval: Interval, aggregation: AggregationKey
    ) -> list[dict]:
        """Demand of each bucket, re-querying with the bucket as date period."""
        state = self._require_state_service()

        async def process_bucket(date_start):
            bucket_filters = self.filters.copy_with_boundaries(
                date_start, end_of(date_start, aggregation)
            )
            proposed, inprogress, completed = await asyncio.gather(
                state.get_extended_work_items_with_scenarios(
                    self.org_id,
                    [RetrievalScenario.BECAME_INVENTORY_BETWEEN_DATES],
                    bucket_filters,
                ),
                state.get_work_items(self.org_id, StateCategory.INPROGRESS, bucket_filters),
                state.get_work_items(self.org_id, StateCategory.COMPLETED, bucket_filters),
            )
            items = unique_by_id(
                to_work_items(proposed, WorkItem, source="bucket_inventory"),
                to_work_items(inprogress, WorkItem, source="bucket_inprogress"),
                to_work_items(completed, WorkItem, source="bucket_completed"),
            )
            return {"date": date_start.isoformat(), "demand": calculate_demand(items)}

        return list(
            await asyncio.gather(
                *(process_bucket(d) for d in generate_date_array(interval, aggregation))
            )
        )

    async def get_capacity_over_time(
        self, interval: Interval, aggregation: AggregationKey
    ) -> list[dict]:
        state = self._require_state_service()

        async def process_bucket(date_start):
            bucket_filters = self.filters.copy_with_boundaries(
                date_start, end_of(date_start, aggregation)
            )
            completed = await state.get_work_items(
                self.org_id, StateCategory.COMPLETED, bucket_filters
            )
            items = unique_by_id(to_work_items(completed, WorkItem, source="bucket_completed"))
            return {"date": date_start.isoformat(), "capacity": calculate_capacity(items)}

        return list(
            await asyncio.gather(
                *(process_bucket(d) for d in generate_date_array(interval, aggregation))
            )
        )

    async def get_inflow_over_time(
        self, interval: Interval, aggregation: AggregationKey
    ) -> list[dict]:
        """Inflow per bucket, bucketing the period's items by commitment date."""
        inprogress, completed = await asyncio.gather(
            self.work_items_by_category(StateCategory.INPROGRESS),
            self.work_items_by_category(StateCategory.COMPLETED),
        )
        buckets = separate_work_items_in_interval_buckets(
            unique_by_id(inprogress, completed), interval, aggregation, "commitment_date_time"
        )
        return [
            {
                "date": bucket["date_start"].isoformat(),
                "inflow": calculate_inflow(bucket["work_item_list"]),
            }
            for bucket in buckets
        ]

    async def get_outflow_over_time(
        self, interval: Interval, aggregation: AggregationKey
    ) -> list[dict]:
        capacity_over_time = await self.get_capacity_over_time(interval, aggregation)
        return [{"date": c["date"], "outflow": c["capacity"]} for c in capacity_over_time]


class FlowOfDemandsGovernanceCalculations(BaseCalculations):
    """
    Delivery governance traffic lights built on the flow of demands counts.

    Completed items are retrieved with "became" date analysis, every other
    category with "all".
    """

    def __init__(
        self,
        filters,
        flow_of_demands: FlowOfDemandsCalculations,
        state_service=None,
        widget_information_service=None,
        settings=None,
    ):
        super().__init__(
            filters,
            state_service=state_service,
            widget_information_service=widget_information_service,
            settings=settings,
        )
        self.flow_of_demands = flow_of_demands
        self._governance_cache: MemoCache[list[ExtendedWorkItem]] = MemoCache(
            "governance_work_items"
        )

    async def governance_work_items(self, state_category: StateCategory) -> list[ExtendedWorkItem]:
        state = self._require_state_service()
        category_filters = copy.copy(self.filters)
        category_filters.date_analysis_option = (
            DateAnalysisOption.BECAME
            if state_category == StateCategory.COMPLETED
            else DateAnalysisOption.ALL
        )
        key = CacheKey(
            org_id=self.org_id,
            selector=state_category.value,
            filter_digest=category_filters.fingerprint(),
        )

        async def fetch():
            rows = await state.get_extended_work_items(
                self.org_id, [state_category], category_filters, disable_delayed=True
            )
            return to_work_items(rows, ExtendedWorkItem, source=f"governance_{state_category.value}")

        return await self._governance_cache.get_or_create(key, fetch)

    async def get_demand_vs_capacity(self) -> dict:
        demand, capacity = await asyncio.gather(
            self.flow_of_demands.get_totals_for_demand(),
            self.flow_of_demands.get_totals_for_capacity(),
        )
        return {
            "demand": demand,
            "capacity": capacity,
            "demandOverCapacityPercent": get_demand_over_capacity_percent(demand, capacity),
            "inventoryGrowth": demand - capacity,
            "pattern": accumulation_pattern(demand, capacity).value,
        }

    async def get_inflow_vs_outflow(self) -> dict:
        inflow, outflow = await asyncio.gather(
            self.flow_of_demands.get_totals_for_inflow(),
            self.flow_of_demands.get_totals_for_outflow(),
        )
        return {
            "inflow": inflow,
            "outflow": outflow,
            "inflowOverOutflowPercent": get_inflow_over_outflow_percent(inflow, outflow),
            "wipGrowth": inflow - outflow,
            "pattern": accumulation_pattern(inflow, outflow).value,
        }

    async def get_inventory_size(self) -> dict:
        """Current inventory and how many weeks of average throughput it holds."""
        inventory, completed = await asyncio.gather(
            self.scenario_work_items([RetrievalScenario.CURRENT_INVENTORY_ONLY]),
            self.governance_work_items(StateCategory.COMPLETED),
        )
        if not inventory and not completed:
            return {
                "inventoryCount": None,
                "weeksWorthCount": None,
                "pattern": TrafficLight.AVERAGE.value,
            }

        interval = await self.filters.date_period()
        average_throughput = get_average_throughput(completed, interval)
        weeks_worth = (
            round_half_up(len(inventory) / average_throughput) if average_throughput else None
        )
        return {
            "inventoryCount": len(inventory),
            "weeksWorthCount": weeks_worth,
            "items": dump_items(inventory),
        }

    async def get_commitment_rate(self) -> dict:
        proposed, inprogress, completed = await asyncio.gather(
            self.governance_work_items(StateCategory.PROPOSED),
            self.governance_work_items(StateCategory.INPROGRESS),
            self.governance_work_items(StateCategory.COMPLETED),
        )
        unique_items = unique_by_id(proposed, inprogress, completed)
        if not unique_items:
            return {"commitmentRatePercent": None, "pattern": TrafficLight.NEUTRAL.value}

        committed = sum(1 for item in unique_items if item.commitment_date_time)
        commitment_rate_percent = round_half_up(100 * committed / len(unique_items))
        return {
            "commitmentRatePercent": commitment_rate_percent,
            "pattern": commitment_rate_pattern(commitment_rate_percent).value,
        }

    async def get_time_to_commit(self) -> dict:
        """
        85th percentile of calendar days from arrival to commitment.

        Days are counted on the client's calendar, both ends inclusive.
        """
        inprogress, completed = await asyncio.gather(
            self.governance_work_items(StateCategory.INPROGRESS),
            self.governance_work_items(StateCategory.COMPLETED),
        )
        zone = self.filters.zone

        time_to_commit_list = []
        for item in unique_by_id(inprogress, completed):
            if not item.arrival_date_time or not item.commitment_date_time:
                continue
            arrival_day = item.arrival_date_time.astimezone(zone).date()
            commitment_day = item.commitment_date_time.astimezone(zone).date()
            time_to_commit_list.append((commitment_day - arrival_day).days + 1)

        time_to_commit = round_half_up(get_percentile(85, time_to_commit_list))
        return {
            "timeToCommit": time_to_commit,
            "pattern": lead_time_multiple_pattern(time_to_commit, average_lead_time(completed)).value,
        }

    async def get_wip_count(self) -> dict:
        inprogress = await self.scenario_work_items([RetrievalScenario.CURRENT_WIP_ONLY])

        assignees = {item.assigned_to for item in inprogress if item.assigned_to is not None}
        unassigned = sum(1 for item in inprogress if item.assigned_to is None)
        return {
            "count": len(inprogress),
            "assigneesCount": len(assignees),
            "unassignedItems": unassigned,
            "avgWipCount": round_half_up(len(inprogress) / len(assignees)) if assignees else None,
            "items": dump_items(inprogress),
        }

    async def get_avg_wip_age(self) -> dict:
        inprogress, completed, avg_wip_ages_between_dates = await asyncio.gather(
            self.scenario_work_items([RetrievalScenario.CURRENT_WIP_ONLY]),
            self.governance_work_items(StateCategory.COMPLETED),
            self.get_avg_wip_age_by_scenario(RetrievalScenario.WAS_WIP_BETWEEN_DATES),
        )

        wip_ages = [i.wip_age_in_whole_days for i in inprogress if i.wip_age_in_whole_days is not None]
        average_age: Optional[int] = round_half_up(float(np.mean(wip_ages))) if wip_ages else None

        pattern = TrafficLight.NEUTRAL
        if average_age is not None:
            pattern = wip_age_pattern(average_age, average_lead_time(completed))

        return {
            "averageAge": average_age,
            "avgWipAgesBetweenDates": avg_wip_ages_between_dates,
            "pattern": pattern.value,
        }

    async def get_avg_wip_age_by_scenario(self, scenario: RetrievalScenario) -> Optional[int]:
        """
        85th percentile WIP age of a scenario's items.

        Items that departed before the end of the period contribute their
        lead time instead of their WIP age.
        """
        items = await self.scenario_work_items([scenario])
        period_end = (await self.filters.date_period()).end

        ages = []
        for item in items:
            if item.departure_date_time and item.departure_date_time < period_end:
                age = item.lead_time_in_whole_days
            else:
                age = item.wip_age_in_whole_days
            if age is not None:
                ages.append(age)

        return round_half_up(get_percentile(85, ages)) if ages else None

    async def get_throughput(self) -> dict:
        completed = await self.governance_work_items(StateCategory.COMPLETED)
        interval = await self.filters.date_period()
        return {
            "count": len(completed),
            "avgThroughput": get_average_throughput(completed, interval),
            "items": dump_items(completed),
        }

    async def get_widget_information_by_widget(self) -> dict:
        keys = {
            "demandVsCapacity": WidgetType.DEMAND_VS_CAPACITY,
            "inFlowVsOutFlow": WidgetType.WORK_STARTED_COMPLETED,
            "inventorySize": WidgetType.TOTAL_UPCOMING_WORK,
            "commitmentRate": WidgetType.COMMITTED_WORK_RATE,
            "timeToCommit": WidgetType.TIME_TO_START,
            "wipCount": WidgetType.WIP_COUNT,
            "avgWipAge": WidgetType.WIP_AGE,
            "throughput": WidgetType.TOTAL_WORK_COMPLETED,
        }
        information = await asyncio.gather(*(self.get_widget_information(w) for w in keys.values()))
        return dict(zip(keys, information))

    async def get_flow_of_demands_summary(self) -> dict:
        """Every governance widget of the flow of demands, computed concurrently."""
        names = [
            "demandVsCapacity",
            "inFlowVsOutFlow",
            "inventorySize",
            "commitmentRate",
            "timeToCommit",
            "wipCount",
            "avgWipAge",
            "throughput",
            "widgetInformation",
        ]
        results = await asyncio.gather(
            self.get_demand_vs_capacity(),
            self.get_inflow_vs_outflow(),
            self.get_inventory_size(),
            self.get_commitment_rate(),
            self.get_time_to_commit(),
            self.get_wip_count(),
            self.get_avg_wip_age(),
            self.get_throughput(),
            self.get_widget_information_by_widget(),
        )
        return dict(zip(names, results))
