"""
Performance checkpoint and fitness criteria.

KPIs over the completed work of the period:

    - Speed: lead time percentile, median, average and tail per work item
      type level, with historical percentile charts
    - Service level: share of completed items delivered within their type's
      SLE, as a per-type average (target met) and overall with a grade
    - Predictability: lead time and weekly throughput variability
    - Productivity: weekly completed counts classified in standard deviation
      bands around the median
    - Customer value: share of completed work normalised as "Value Demand"
    - Flow efficiency: active time over active plus waiting time
"""

import asyncio
import math
from datetime import datetime, timedelta
from enum import Enum
from typing import NamedTuple, Optional, Sequence
from zoneinfo import ZoneInfo

import numpy as np

from flowmetrics.engine.aggregation import end_of, format_date_by_aggregation, generate_date_array, start_of
from flowmetrics.engine.cache import CacheKey, MemoCache
from flowmetrics.engine.calculations.base import BaseCalculations
from flowmetrics.engine.calculations.common import to_rows, unique_by_id, weekly_throughput, work_item_ids
from flowmetrics.engine.calculations.flow_efficiency import FlowEfficiencyCalculations
from flowmetrics.engine.statistics import (
    get_percentile,
    get_throughput_variability,
    is_variability_high,
    round_half_up,
    round_to_decimal_places,
    sample_standard_deviation,
)
from flowmetrics.engine.trend_analysis import (
    DEFAULT_COLOURS,
    empty_trend_analysis,
    get_trend_analysis_content,
)
from flowmetrics.models.enums import (
    AggregationKey,
    PredefinedFilterTag,
    StateCategory,
    WidgetType,
    WorkItemTypeLevel,
)
from flowmetrics.models.intervals import Interval
from flowmetrics.models.work_items import WorkItem, WorkItemTypeConfig
from flowmetrics.services.base import WorkItemTypeService

VALUE_DEMAND = "Value Demand"

# (lowest score, grade), best first
SERVICE_LEVEL_GRADES = [
    (90, "A +"),
    (85, "A"),
    (80, "A -"),
    (77, "B +"),
    (73, "B"),
    (70, "B -"),
    (65, "C +"),
    (60, "C"),
    (55, "C -"),
    (50, "D"),
]
FAILING_GRADE = "F"

SPEED_LEVELS = {
    "portfolio": WorkItemTypeLevel.PORTFOLIO,
    "team": WorkItemTypeLevel.TEAM,
    "individualContributor": WorkItemTypeLevel.INDIVIDUAL_CONTRIBUTOR,
}


class ProductivityBand(str, Enum):
    """Standard deviation band of a week's completed count."""

    BAD = "Bad"
    POOR = "Poor"
    SLIGHTLY_UNDER = "Slightly Under"
    MEDIAN = "Median"
    GOOD = "Good"
    GREAT = "Great"
    EXCELLENT = "Excellent Performance"


UNKNOWN_PRODUCTIVITY = "Unknown"
NO_PRODUCTIVITY_LABEL = "-"

PRODUCTIVITY_COLOURS = {
    ProductivityBand.BAD: DEFAULT_COLOURS.down_colour,
    ProductivityBand.POOR: DEFAULT_COLOURS.down_colour,
    ProductivityBand.SLIGHTLY_UNDER: DEFAULT_COLOURS.stable_colour,
    ProductivityBand.MEDIAN: DEFAULT_COLOURS.stable_colour,
    ProductivityBand.GOOD: DEFAULT_COLOURS.stable_colour,
    ProductivityBand.GREAT: DEFAULT_COLOURS.up_colour,
    ProductivityBand.EXCELLENT: DEFAULT_COLOURS.up_colour,
}
NEUTRAL_COLOUR = "gray"


class CompletedWeek(NamedTuple):
    """Items completed in one calendar week."""

    week_start: datetime
    week_end: datetime
    work_item_ids: list[str]

    @property
    def throughput(self) -> int:
        return len(self.work_item_ids)


# ============================================================================
# Pure helpers
# ============================================================================


def lead_times(items: Sequence[WorkItem]) -> list[int]:
    return [i.lead_time_in_whole_days for i in items if i.lead_time_in_whole_days is not None]


def items_of_level(items: Sequence[WorkItem], level: WorkItemTypeLevel) -> list[WorkItem]:
    return [i for i in items if i.flomatika_work_item_type_level == level.value]


def get_speed_values(items: Sequence[WorkItem], percentile: float = 85) -> dict:
    """Lead time percentile, median, average and p98 tail, rounded; zeros when empty."""
    values = lead_times(items)
    if not values:
        return {"percentile85th": 0, "median": 0, "average": 0, "tail": 0}
    return {
        "percentile85th": round_half_up(get_percentile(percentile, values)),
        "median": round_half_up(float(np.median(values))),
        "average": round_half_up(float(np.mean(values))),
        "tail": round_half_up(get_percentile(98, values)),
    }


def get_grade(service_level: int) -> str:
    for lowest, grade in SERVICE_LEVEL_GRADES:
        if service_level >= lowest:
            return grade
    return FAILING_GRADE


def service_level_by_work_item_type(
    completed: Sequence[WorkItem],
    sle_configs: Sequence[WorkItemTypeConfig],
    work_item_types: Optional[Sequence[str]] = None,
) -> list[dict]:
    """
    Completed items meeting their type's SLE, per configured work item type.

    Types without an SLE are skipped. With ``work_item_types`` only those
    types are considered.
    """
    result = []
    for config in sle_configs:
        if config.service_level_expectation_in_days is None:
            continue
        if work_item_types and config.id not in work_item_types:
            continue
        type_lead_times = lead_times(
            [i for i in completed if i.flomatika_work_item_type_id == config.id]
        )
        met = sum(1 for days in type_lead_times if days <= config.service_level_expectation_in_days)
        result.append(
            {
                "itemTypeId": config.id,
                "itemTypeName": config.display_name,
                "serviceLevelExpectationDays": config.service_level_expectation_in_days,
                "completedCount": len(type_lead_times),
                "serviceLevelMetCount": met,
                "serviceLevelPercent": (
                    round_to_decimal_places(met / len(type_lead_times), 2) if type_lead_times else 0
                ),
            }
        )
    return result


def get_percent_of_value_demand(items: Sequence[WorkItem], total: int) -> Optional[float]:
    """Percentage of ``total`` normalised as value demand; None when total is 0."""
    if not total:
        return None
    value_demand = sum(1 for i in items if i.normalised_display_name == VALUE_DEMAND)
    return round_to_decimal_places(value_demand / total * 100, 2)


def bucket_by_departure(
    items: Sequence[WorkItem],
    interval: Interval,
    aggregation: AggregationKey,
    zone: ZoneInfo,
) -> list[tuple[datetime, list[WorkItem]]]:
    """Items per aggregation bucket of ``interval``, by zone-local departure."""
    by_start: dict[datetime, list[WorkItem]] = {}
    for item in items:
        if item.departure_date_time is None:
            continue
        bucket = start_of(item.departure_date_time.astimezone(zone), aggregation)
        by_start.setdefault(bucket, []).append(item)
    return [(start, by_start.get(start, [])) for start in generate_date_array(interval, aggregation)]


def get_completed_items_by_week(
    completed: Sequence[WorkItem], interval: Interval, zone: ZoneInfo
) -> list[CompletedWeek]:
    """
    Completed items grouped by calendar week, leaving out empty weeks.

    When the interval does not end on the last day of a week the trailing
    partial week is dropped.
    """
    local = interval.with_zone(zone)
    end = local.end
    if end_of(end, AggregationKey.WEEK).date() != end.date():
        end = end_of(end - timedelta(days=7), AggregationKey.WEEK)
    if end < local.start:
        return []

    weeks = []
    for week_start in generate_date_array(Interval(start=local.start, end=end), AggregationKey.WEEK):
        week_end = end_of(week_start, AggregationKey.WEEK)
        ids = [
            i.work_item_id
            for i in completed
            if i.departure_date_time is not None
            and week_start <= i.departure_date_time.astimezone(zone) <= week_end
        ]
        if ids:
            weeks.append(CompletedWeek(week_start=week_start, week_end=week_end, work_item_ids=ids))
    return weeks


def classify_productivity(value: float, median: float, standard_deviation: float) -> str:
    """
    Band of ``value`` among median +/- 1, 2 and 3 standard deviations.

    A value equal to the median is labelled Median rather than falling into
    the band on either side. Band limits are rounded. Values beyond three
    deviations stay in the outermost band.
    """
    if value == median:
        return ProductivityBand.MEDIAN.value

    def limit(sections: int) -> int:
        return round_half_up(median + standard_deviation * sections)

    if value > median:
        if value <= limit(1):
            return ProductivityBand.GOOD.value
        if value <= limit(2):
            return ProductivityBand.GREAT.value
        return ProductivityBand.EXCELLENT.value

    if value >= limit(-1):
        return ProductivityBand.SLIGHTLY_UNDER.value
    if value >= limit(-2):
        return ProductivityBand.POOR.value
    return ProductivityBand.BAD.value


def get_productivity_colour(label: str) -> str:
    try:
        return PRODUCTIVITY_COLOURS[ProductivityBand(label)]
    except ValueError:
        return NEUTRAL_COLOUR


def calculate_productivity(weeks: Sequence[CompletedWeek], now: datetime) -> dict:
    """
    Productivity of the last completed week.

    The last week of ``weeks`` counts as completed only when ``now`` is past
    it; otherwise the week before it is used for the current value, the
    trend and the band.
    """
    if not weeks:
        return {
            "productivityLabel": UNKNOWN_PRODUCTIVITY,
            "productivityColour": NEUTRAL_COLOUR,
            "median": 0,
            "current": 0,
            "trendAnalysis": empty_trend_analysis(),
        }

    counts = [w.throughput for w in weeks]
    is_last_week_completed = weeks[-1].week_end < now
    last = len(counts) - 1 if is_last_week_completed else len(counts) - 2

    def count_at(index: int) -> int:
        return counts[index] if index >= 0 else 0

    median = float(np.median(counts))
    standard_deviation = math.ceil(sample_standard_deviation(counts))
    label = (
        classify_productivity(counts[last], median, standard_deviation)
        if last >= 0
        else NO_PRODUCTIVITY_LABEL
    )
    return {
        "productivityLabel": label,
        "productivityColour": get_productivity_colour(label),
        "median": round_half_up(median),
        "current": count_at(last),
        "trendAnalysis": get_trend_analysis_content(count_at(last - 1), count_at(last), "week"),
    }


# ============================================================================
# Engine
# ============================================================================


class PerformanceCheckpointCalculations(BaseCalculations):
    """KPIs of the performance checkpoint and fitness criteria widgets."""

    def __init__(
        self,
        filters,
        flow_efficiency: FlowEfficiencyCalculations,
        work_item_type_service: Optional[WorkItemTypeService] = None,
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
        self.flow_efficiency = flow_efficiency
        self.work_item_type_service = work_item_type_service
        self._sle_cache: MemoCache[list[WorkItemTypeConfig]] = MemoCache("work_item_types")
        self.filters.set_safe_aggregation()

    @property
    def percentile(self) -> int:
        return self.settings.percentile_target

    async def completed_work_items(self) -> list[WorkItem]:
        return await self.category_work_items(StateCategory.COMPLETED)

    async def value_demand_work_items(self) -> list[WorkItem]:
        items = await self.category_work_items(StateCategory.COMPLETED, PredefinedFilterTag.QUALITY)
        return unique_by_id(items)

    async def get_sle_configs(self) -> list[WorkItemTypeConfig]:
        if self.work_item_type_service is None:
            return []
        key = CacheKey(org_id=self.org_id, selector="work_item_types")

        async def fetch():
            rows = await self.work_item_type_service.get_types(self.org_id)
            return to_rows(rows, WorkItemTypeConfig)

        return await self._sle_cache.get_or_create(key, fetch)

    async def buckets(self, items: Sequence[WorkItem], aggregation: AggregationKey):
        interval = await self.filters.date_period()
        return bucket_by_departure(items, interval, aggregation, self.filters.zone)

    # -----------------------------------------------------------------------
    # Speed
    # -----------------------------------------------------------------------

    async def get_lead_time_percentile(self, level: Optional[WorkItemTypeLevel] = None) -> int:
        completed = await self.completed_work_items()
        if level is not None:
            completed = items_of_level(completed, level)
        values = lead_times(completed)
        return round_half_up(get_percentile(self.percentile, values)) if values else 0

    async def get_percentile_by_aggregation(
        self, items: Sequence[WorkItem], aggregation: AggregationKey
    ) -> list[list]:
        return [
            [start.date().isoformat(), round_half_up(get_percentile(self.percentile, lead_times(members)))]
            for start, members in await self.buckets(items, aggregation)
        ]

    async def get_speed(self) -> dict:
        completed = await self.completed_work_items()
        aggregation = self.filters.aggregation

        result = {}
        for key, level in SPEED_LEVELS.items():
            level_items = items_of_level(completed, level)
            result[key] = get_speed_values(level_items, self.percentile)
            result[f"{key}Percentile85thChart"] = await self.get_percentile_by_aggregation(
                level_items, aggregation
            )
        return result

    # -----------------------------------------------------------------------
    # Service level
    # -----------------------------------------------------------------------

    async def get_service_level_by_work_item_type(self, completed: Sequence[WorkItem]) -> list[dict]:
        return service_level_by_work_item_type(
            completed, await self.get_sle_configs(), self.filters.work_item_types
        )

    async def get_target_met(self) -> int:
        """Average SLE attainment of the work item types present in completed work."""
        completed = await self.completed_work_items()
        by_type = await self.get_service_level_by_work_item_type(completed)
        type_count = len({i.flomatika_work_item_type_id for i in completed})
        total = sum(t["serviceLevelPercent"] for t in by_type)
        if not total or not type_count:
            return 0
        return round_half_up(total * 100 / type_count)

    async def get_target_met_by_aggregation(
        self, completed: Sequence[WorkItem], aggregation: AggregationKey
    ) -> list[list]:
        """Percentage of each bucket's completed items within SLE; None for empty buckets."""
        chart = []
        for start, members in await self.buckets(completed, aggregation):
            by_type = await self.get_service_level_by_work_item_type(members)
            met = sum(t["serviceLevelMetCount"] for t in by_type)
            value = round_half_up(met * 100 / len(members)) if members else None
            chart.append([start.date().isoformat(), value])
        return chart

    async def get_service_level_expectation(self) -> Optional[dict]:
        """Overall SLE attainment with its grade, or None without completed work."""
        completed = await self.completed_work_items()
        if not completed:
            return None

        by_type = await self.get_service_level_by_work_item_type(completed)
        met = sum(t["serviceLevelMetCount"] for t in by_type)
        service_level = round_half_up(met * 100 / len(completed))
        return {
            "serviceLevelExpectation": service_level,
            "grade": get_grade(service_level),
            "byWorkItemType": by_type,
            "historical": await self.get_target_met_by_aggregation(
                completed, self.filters.aggregation
            ),
        }

    # -----------------------------------------------------------------------
    # Throughput and predictability
    # -----------------------------------------------------------------------

    async def get_weekly_throughput_data(self) -> list[int]:
        completed = await self.completed_work_items()
        interval = await self.filters.date_period()
        return weekly_throughput(completed, interval)

    async def get_throughput_variability(self) -> str:
        return get_throughput_variability(await self.get_weekly_throughput_data())

    async def get_predictability(self) -> dict:
        completed = await self.completed_work_items()
        aggregation = self.filters.aggregation

        def lead_time_predictability(items: Sequence[WorkItem]) -> Optional[str]:
            values = lead_times(items)
            if not values:
                return None
            # High p98/p50 variability means low predictability
            variable = is_variability_high(get_percentile(50, values), get_percentile(98, values))
            return "Low" if variable else "High"

        buckets = await self.buckets(completed, aggregation)
        return {
            "leadtime": lead_time_predictability(completed) or "High",
            "throughput": await self.get_throughput_variability(),
            "leadTimeHistorical": [
                [start.date().isoformat(), lead_time_predictability(members)]
                for start, members in buckets
            ],
            "throughputHistorical": [
                [start.date().isoformat(), len(members)] for start, members in buckets
            ],
        }

    # -----------------------------------------------------------------------
    # Productivity
    # -----------------------------------------------------------------------

    async def get_completed_work_items_by_week(self) -> list[CompletedWeek]:
        completed = await self.completed_work_items()
        interval = await self.filters.date_period()
        return get_completed_items_by_week(completed, interval, self.filters.zone)

    async def get_productivity(self) -> dict:
        weeks = await self.get_completed_work_items_by_week()
        productivity = calculate_productivity(weeks, self.filters.now())

        counts = [w.throughput for w in weeks]
        median = float(np.median(counts)) if counts else 0.0
        standard_deviation = math.ceil(sample_standard_deviation(counts))
        productivity["historical"] = [
            [
                format_date_by_aggregation(w.week_start, AggregationKey.WEEK),
                w.throughput,
                classify_productivity(w.throughput, median, standard_deviation),
            ]
            for w in weeks
        ]
        self.logger.debug(
            "productivity_classified",
            weeks=len(weeks),
            label=productivity["productivityLabel"],
        )
        return productivity

    # -----------------------------------------------------------------------
    # Customer value
    # -----------------------------------------------------------------------

    async def get_value_demand(self) -> int:
        """Rounded percentage of completed work normalised as value demand."""
        completed, normalised = await asyncio.gather(
            self.completed_work_items(), self.value_demand_work_items()
        )
        percent = get_percent_of_value_demand(normalised, len(set(work_item_ids(completed))))
        return round_half_up(percent) if percent else 0

    async def get_value_demand_by_aggregation(self, aggregation: AggregationKey) -> list[list]:
        """Value demand percentage per bucket; None where nothing was completed."""
        completed, normalised = await asyncio.gather(
            self.completed_work_items(), self.value_demand_work_items()
        )
        normalised_buckets = dict(await self.buckets(normalised, aggregation))
        return [
            [
                start.date().isoformat(),
                get_percent_of_value_demand(normalised_buckets.get(start, []), len(members)),
            ]
            for start, members in await self.buckets(completed, aggregation)
        ]

    async def get_customer_value(self) -> dict:
        completed, normalised = await asyncio.gather(
            self.completed_work_items(), self.value_demand_work_items()
        )
        if not completed:
            return {"customerValueWorkPercentage": None, "historical": []}
        return {
            "customerValueWorkPercentage": get_percent_of_value_demand(
                normalised, len(set(work_item_ids(completed)))
            ),
            "historical": await self.get_value_demand_by_aggregation(self.filters.aggregation),
        }

    # -----------------------------------------------------------------------
    # Flow efficiency
    # -----------------------------------------------------------------------

    async def get_flow_efficiency(self) -> dict:
        """Flow efficiency of completed work, excluding time before commitment."""
        donut, over_time = await asyncio.gather(
            self.flow_efficiency.get_flow_efficiency_donut_data("exclude", StateCategory.COMPLETED),
            self.flow_efficiency.calculate_flow_efficiency_over_time(
                "exclude", StateCategory.COMPLETED, self.filters.aggregation
            ),
        )
        active = donut.get("activeTime") or 0
        waiting = donut.get("waitingTime") or 0
        total = active + waiting
        kpi = round_half_up(round_to_decimal_places(active / total * 100, 1)) if total else 0

        historical = []
        for bucket in over_time:
            bucket_total = bucket["activeCount"] + bucket["waitingCount"]
            historical.append(
                [
                    bucket["startDate"],
                    round_half_up(bucket["activeCount"] / bucket_total * 100) if bucket_total else None,
                ]
            )
        return {"flowEfficiency": kpi, "historical": historical}

    # -----------------------------------------------------------------------
    # Summaries
    # -----------------------------------------------------------------------

    async def get_performance_checkpoint(self) -> dict:
        """KPI values of the performance checkpoint comparison."""
        completed = await self.completed_work_items()
        (
            lead_time,
            lead_time_team,
            lead_time_portfolio,
            target_met,
            weekly,
            value_demand,
            productivity,
            flow_efficiency,
        ) = await asyncio.gather(
            self.get_lead_time_percentile(),
            self.get_lead_time_percentile(WorkItemTypeLevel.TEAM),
            self.get_lead_time_percentile(WorkItemTypeLevel.PORTFOLIO),
            self.get_target_met(),
            self.get_weekly_throughput_data(),
            self.get_value_demand(),
            self.get_productivity(),
            self.get_flow_efficiency(),
        )
        return {
            "leadTimePortfolio85th": lead_time_portfolio,
            "leadTime85th": lead_time,
            "leadTimeTeam85th": lead_time_team,
            "targetMet": target_met,
            "totalThroughput": len(completed),
            "weeklyThroughput": weekly,
            "throughputVariability": get_throughput_variability(weekly),
            "valueDemand": value_demand,
            "productivity": productivity,
            "flowEfficiency": flow_efficiency["flowEfficiency"],
        }

    async def get_widget_information_by_widget(self) -> dict:
        keys = {
            "speed": WidgetType.LEAD_TIME,
            "serviceLevelExpectation": WidgetType.SERVICE_LEVEL,
            "predictability": WidgetType.PREDICTABILITY,
            "productivity": WidgetType.DELIVERY_RATE,
            "customerValue": WidgetType.VALUE_DELIVERED,
            "flowEfficiency": WidgetType.FLOW_EFFICIENCY,
        }
        information = await asyncio.gather(*(self.get_widget_information(w) for w in keys.values()))
        return dict(zip(keys, information))

    async def get_fitness_criteria(self) -> dict:
        """Every fitness criteria widget, computed concurrently."""
        names = [
            "speed",
            "serviceLevelExpectation",
            "predictability",
            "productivity",
            "customerValue",
            "flowEfficiency",
            "widgetInformation",
        ]
        results = await asyncio.gather(
            self.get_speed(),
            self.get_service_level_expectation(),
            self.get_predictability(),
            self.get_productivity(),
            self.get_customer_value(),
            self.get_flow_efficiency(),
            self.get_widget_information_by_widget(),
        )
        return dict(zip(names, results))
