"""
Sources of delay and waste.

Delivery governance widgets that point at where flow is lost:

    - WIP excess: current WIP against the average weekly throughput
    - Stale work: in-progress items unchanged for longer than their level's
      threshold
    - Blockers: blocked in-progress items, by blocked reason
    - Discarded before / after start, with the active days thrown away
    - Flow debt: p85 WIP age over p85 lead time (Team level)
    - Delayed items
    - Top wait steps: queue states of the in-progress step category that
      held items the longest during the date period

Durations come from the treated snapshot history: every event lasts until
the next event of the same item, or until the end of the date period for
the last one.
"""

import asyncio
import math
from collections import defaultdict
from datetime import datetime
from typing import NamedTuple, Optional, Sequence

from flowmetrics.engine.cache import CacheKey, MemoCache
from flowmetrics.engine.calculations.base import BaseCalculations
from flowmetrics.engine.calculations.common import (
    SECONDS_IN_DAY,
    dump_items,
    get_average_throughput,
    to_rows,
    to_work_items,
    unique_by_id,
    work_item_ids,
)
from flowmetrics.engine.statistics import get_percentile, round_half_up, round_to_decimal_places
from flowmetrics.models.enums import (
    Perspective,
    PredefinedFilterTag,
    RetrievalScenario,
    StateCategory,
    TrafficLight,
    WidgetType,
    WorkItemTypeLevel,
)
from flowmetrics.models.snapshots import SnapshotEvent
from flowmetrics.models.work_items import CustomFieldConfig, ExtendedWorkItem, WorkItem
from flowmetrics.services.base import CustomFieldService

BLOCKED_REASON_TAG = "blockedReason"
DISCARDED_REASON_TAG = "discardedReason"
NO_REASON_SPECIFIED = "No reason specified."

# Percent of stale WIP, and count of blocked items
GOOD_BELOW = 20
AVERAGE_AT_MOST = 40

# Flow debt multiples
FLOW_DEBT_GOOD_BELOW = 1
FLOW_DEBT_AVERAGE_AT_MOST = 20


class SnapshotContractError(ValueError):
    """Snapshot aggregates do not hold what the snapshot contract promises."""

    pass


class EventWithDuration(NamedTuple):
    """A snapshot event and the instant the item left it."""

    work_item_id: str
    previous_date: datetime
    next_date: datetime
    previous_state: Optional[str]
    previous_state_type: Optional[str]
    previous_step_category: Optional[str]
    work_item_type_level: Optional[str]

    @property
    def seconds(self) -> float:
        return (self.next_date - self.previous_date).total_seconds()


class SeparatedDiscardedItems(NamedTuple):
    before: list[ExtendedWorkItem]
    after: list[ExtendedWorkItem]
    active_time: float


# ============================================================================
# Pure helpers
# ============================================================================


def events_with_duration(events: Sequence[SnapshotEvent], end: datetime) -> list[EventWithDuration]:
    """
    Pair every event with the next event of the same item.

    The last event of an item is closed at ``end``.
    """
    ordered = sorted(events, key=lambda e: (e.work_item_id, e.flomatika_snapshot_date))
    paired = []
    for i, event in enumerate(ordered):
        following = ordered[i + 1] if i + 1 < len(ordered) else None
        if following is not None and following.work_item_id == event.work_item_id:
            next_date = following.flomatika_snapshot_date
        else:
            next_date = end
        paired.append(
            EventWithDuration(
                work_item_id=event.work_item_id,
                previous_date=event.flomatika_snapshot_date,
                next_date=next_date,
                previous_state=event.state,
                previous_state_type=event.state_type,
                previous_step_category=event.step_category,
                work_item_type_level=event.flomatika_work_item_type_level,
            )
        )
    return paired


def separate_discarded(
    discarded_items: Sequence[ExtendedWorkItem],
    events: Sequence[SnapshotEvent],
    end: datetime,
) -> SeparatedDiscardedItems:
    """
    Split discarded items into discarded before start and after start.

    An item was discarded after start when it spent any time in the
    in-progress step category. Active time is the time Team level items
    spent in active states; it is recorded on each after-start item in days
    and totalled in seconds.
    """
    is_after: dict[str, bool] = defaultdict(bool)
    active_seconds: dict[str, float] = defaultdict(float)
    for event in events_with_duration(events, end):
        seconds = event.seconds
        if event.previous_step_category == StateCategory.INPROGRESS.value and seconds > 0:
            is_after[event.work_item_id] = True
        if (
            event.previous_state_type == "active"
            and event.work_item_type_level == WorkItemTypeLevel.TEAM.value
        ):
            active_seconds[event.work_item_id] += seconds

    before, after = [], []
    total_active = 0.0
    seen_ids = {event.work_item_id for event in events}
    for item in discarded_items:
        if item.work_item_id not in seen_ids:
            continue
        if is_after[item.work_item_id]:
            seconds = active_seconds[item.work_item_id]
            after.append(item.model_copy(update={"active_time": seconds / SECONDS_IN_DAY}))
            total_active += seconds
        else:
            before.append(item)
    return SeparatedDiscardedItems(before=before, after=after, active_time=total_active)


def wip_excess_pattern(wip_excess: float, average_throughput: float) -> TrafficLight:
    """
    Traffic light of excess WIP relative to throughput.

    The ratio excess / throughput is compared against a quarter and a third
    of the throughput.
    """
    if average_throughput == 0:
        return TrafficLight.BAD if wip_excess > 0 else TrafficLight.NEUTRAL
    ratio = max(0, wip_excess) / average_throughput
    if ratio < average_throughput / 4:
        return TrafficLight.GOOD
    if ratio <= average_throughput / 3:
        return TrafficLight.AVERAGE
    return TrafficLight.BAD


def low_is_good_pattern(value: float) -> TrafficLight:
    if value < GOOD_BELOW:
        return TrafficLight.GOOD
    if value <= AVERAGE_AT_MOST:
        return TrafficLight.AVERAGE
    return TrafficLight.BAD


def flow_debt_pattern(flow_debt: float) -> TrafficLight:
    if flow_debt < FLOW_DEBT_GOOD_BELOW:
        return TrafficLight.GOOD
    if flow_debt <= FLOW_DEBT_AVERAGE_AT_MOST:
        return TrafficLight.AVERAGE
    return TrafficLight.BAD


def is_item_stale(end_date: datetime, changed_date: datetime, stale_item_days: int) -> bool:
    diff_in_days = round_half_up((end_date - changed_date).total_seconds() / SECONDS_IN_DAY)
    return diff_in_days > stale_item_days


def get_custom_field_distribution(
    items: Sequence[WorkItem], custom_field_name: str
) -> list[dict]:
    """Count items per value of one custom field, in first-seen order."""
    counts: dict[str, int] = {}
    for item in items:
        values = item.custom_field_values([custom_field_name])
        group_name = values[0] if values and values[0] else NO_REASON_SPECIFIED
        counts[group_name] = counts.get(group_name, 0) + 1
    return [{"groupName": name, "count": count} for name, count in counts.items()]


def percentile_or_single(values: list[float], percentile: float = 85) -> float:
    """Percentile rounded to two places; the value itself when there is only one."""
    if len(values) == 1:
        return values[0]
    return round_to_decimal_places(get_percentile(percentile, values), 2)


def to_widget_items(items: Sequence[ExtendedWorkItem], perspective: Perspective) -> list[dict]:
    """
    Item list attached to a widget.

    From the present perspective "above SLE" means above SLE by WIP age.
    """
    if perspective == Perspective.PRESENT:
        items = [i.model_copy(update={"is_above_sle": i.is_above_sle_by_wip_age}) for i in items]
    return dump_items(items)


def top_wait_steps(
    events: Sequence[EventWithDuration], start: datetime, end: datetime
) -> list[dict]:
    """
    Queue time per in-progress queue state, clipped to ``[start, end]``.

    Raises:
        SnapshotContractError: If a state total is not a finite number or a
            state has no involved items
    """
    elapsed_by_state: dict[str, float] = {}
    involved: dict[str, set[str]] = {}

    for event in events:
        if not event.previous_state:
            continue
        if event.previous_state_type != "queue":
            continue
        if event.previous_step_category != StateCategory.INPROGRESS.value:
            continue
        if event.next_date < start or event.previous_date >= end:
            continue
        seconds = (min(event.next_date, end) - max(event.previous_date, start)).total_seconds()
        involved.setdefault(event.previous_state, set()).add(event.work_item_id)
        elapsed_by_state[event.previous_state] = (
            elapsed_by_state.get(event.previous_state, 0.0) + max(seconds, 0.0)
        )

    elapsed_in_state = 0.0
    for state, elapsed in elapsed_by_state.items():
        if not isinstance(elapsed, (int, float)) or not math.isfinite(elapsed):
            raise SnapshotContractError(f'Unexpected invalid numeric value on state "{state}"')
        elapsed_in_state += elapsed

    key_sources_of_delay = []
    for state, elapsed in elapsed_by_state.items():
        if state not in involved:
            raise SnapshotContractError(
                f'Unexpected missing work item involved record on state "{state}"'
            )
        if not involved[state]:
            raise SnapshotContractError(f'Work item involved on state "{state}" has invalid size')
        count = len(involved[state])
        key_sources_of_delay.append(
            {
                "state": state,
                "countOfDelays": elapsed / SECONDS_IN_DAY,
                "count": count,
                "averageOfDays": elapsed / count / SECONDS_IN_DAY,
                "percentage": elapsed / elapsed_in_state * 100 if elapsed_in_state else 0.0,
            }
        )
    return key_sources_of_delay


# ============================================================================
# Engine
# ============================================================================


class SourcesOfDelayCalculations(BaseCalculations):
    """Sources of delay and waste widgets."""

    def __init__(
        self,
        filters,
        state_service=None,
        snapshot_service=None,
        widget_information_service=None,
        custom_field_service: Optional[CustomFieldService] = None,
        settings=None,
    ):
        super().__init__(
            filters,
            state_service=state_service,
            snapshot_service=snapshot_service,
            widget_information_service=widget_information_service,
            settings=settings,
        )
        self.custom_field_service = custom_field_service
        self._delay_cache: MemoCache = MemoCache("sources_of_delay")

    # -----------------------------------------------------------------------
    # Cached inputs
    # -----------------------------------------------------------------------

    async def category_items_ignoring_delayed(self, state_category: StateCategory) -> list[WorkItem]:
        """Items of a category, ignoring the delayed re-categorisation."""
        state = self._require_state_service()
        key = CacheKey(
            org_id=self.org_id,
            selector=f"{state_category.value}|disable_delayed",
            filter_digest=self.filters.fingerprint(),
        )

        async def fetch():
            rows = await state.get_work_items(
                self.org_id, state_category, self.filters, disable_delayed=True
            )
            return to_work_items(rows, WorkItem, source=f"{state_category.value}_ignoring_delayed")

        return await self._delay_cache.get_or_create(key, fetch)

    async def completed_work_items(self) -> list[WorkItem]:
        return await self.category_items_ignoring_delayed(StateCategory.COMPLETED)

    async def custom_field_configs(self) -> list[CustomFieldConfig]:
        if self.custom_field_service is None:
            return []
        key = CacheKey(org_id=self.org_id, selector="custom_field_configs")

        async def fetch():
            rows = await self.custom_field_service.get_custom_field_configs(self.org_id)
            return to_rows(rows, CustomFieldConfig)

        return await self._delay_cache.get_or_create(key, fetch)

    async def custom_field_name_by_tag(self, tag: str) -> Optional[str]:
        for config in await self.custom_field_configs():
            if config.has_tag(tag):
                return config.datasource_field_name
        return None

    async def snapshot_events(self, ids: list[str]) -> list[SnapshotEvent]:
        if not ids:
            return []
        snapshots = self._require_snapshot_service()
        rows = await snapshots.get_treated_snapshots(self.org_id, ids)
        return to_rows(rows, SnapshotEvent)

    # -----------------------------------------------------------------------
    # WIP excess
    # -----------------------------------------------------------------------

    async def get_target_wip(self) -> dict:
        in_progress, completed = await asyncio.gather(
            self.scenario_work_items([RetrievalScenario.CURRENT_WIP_ONLY]),
            self.completed_work_items(),
        )
        if not in_progress and not completed:
            return {
                "wipExcessValue": None,
                "wipExcessTitle": "",
                "currentWip": None,
                "targetWip": None,
                "pattern": TrafficLight.NEUTRAL.value,
            }

        interval = await self.filters.date_period()
        average_throughput = get_average_throughput(completed, interval)
        wip_count = len(in_progress)
        wip_excess = wip_count - average_throughput

        return {
            "wipExcessValue": wip_excess if wip_excess > 0 else None,
            "wipExcessTitle": (
                "Value Stream with WIP excess of" if wip_excess > 0 else "WIP under control"
            ),
            "currentWip": wip_count,
            "targetWip": average_throughput,
            "pattern": wip_excess_pattern(wip_excess, average_throughput).value,
        }

    async def get_average_weekly_throughput(self) -> int:
        completed = await self.completed_work_items()
        return get_average_throughput(completed, await self.filters.date_period())

    # -----------------------------------------------------------------------
    # Stale work
    # -----------------------------------------------------------------------

    async def get_stale_thresholds(self) -> dict[str, int]:
        """
        Stale thresholds per type level.

        Organisation settings win when set to a non-zero value; otherwise the
        engine settings apply.
        """
        thresholds = dict(self.settings.stale_thresholds)
        org_settings = await self.filters.org_settings_service.get_settings(self.org_id)
        if org_settings is None:
            return thresholds

        overrides = {
            WorkItemTypeLevel.PORTFOLIO.value: org_settings.staled_item_portfolio_level_number_of_days,
            WorkItemTypeLevel.TEAM.value: org_settings.staled_item_team_level_number_of_days,
            WorkItemTypeLevel.INDIVIDUAL_CONTRIBUTOR.value: (
                org_settings.staled_item_individual_contributor_number_of_days
            ),
        }
        for level, days in overrides.items():
            if days:
                thresholds[level] = days
        return thresholds

    async def get_stale_work(self) -> dict:
        in_progress, thresholds = await asyncio.gather(
            self.scenario_work_items([RetrievalScenario.CURRENT_WIP_ONLY]),
            self.get_stale_thresholds(),
        )

        if self.filters.filter_by_date:
            end_date = (await self.filters.date_period()).end
        else:
            end_date = self.filters.now()

        stale_items = [
            item
            for item in in_progress
            if item.flomatika_work_item_type_level in thresholds
            and item.changed_date is not None
            and is_item_stale(
                end_date, item.changed_date, thresholds[item.flomatika_work_item_type_level]
            )
        ]
        stale_count = len(stale_items)
        stale_percent = (
            round_half_up(stale_count / len(in_progress) * 100) if stale_count and in_progress else 0
        )

        self.logger.debug(
            "stale_work_classified", in_progress=len(in_progress), stale=stale_count
        )
        return {
            "stalePercent": stale_percent,
            "staleCount": stale_count,
            "pattern": low_is_good_pattern(stale_percent).value,
            "items": to_widget_items(stale_items, Perspective.PRESENT),
        }

    # -----------------------------------------------------------------------
    # Blockers
    # -----------------------------------------------------------------------

    async def get_blockers(self) -> dict:
        blocked, blocked_reason_field = await asyncio.gather(
            self.scenario_work_items(
                [RetrievalScenario.CURRENT_WIP_ONLY], tag=PredefinedFilterTag.BLOCKERS
            ),
            self.custom_field_name_by_tag(BLOCKED_REASON_TAG),
        )
        blocked = unique_by_id(blocked)

        distribution = None
        if blocked_reason_field:
            distribution = get_custom_field_distribution(blocked, blocked_reason_field)

        return {
            "count": len(blocked),
            "pattern": low_is_good_pattern(len(blocked)).value,
            "distribution": distribution,
            "items": to_widget_items(blocked, Perspective.PRESENT),
        }

    # -----------------------------------------------------------------------
    # Discarded items
    # -----------------------------------------------------------------------

    async def separate_discarded_before_and_after(
        self, discarded_items: Sequence[ExtendedWorkItem]
    ) -> SeparatedDiscardedItems:
        period = await self.filters.date_period()
        events = await self.snapshot_events(work_item_ids(discarded_items))
        return separate_discarded(discarded_items, events, period.end)

    async def get_separated_discarded_work_items(self) -> SeparatedDiscardedItems:
        key = CacheKey(
            org_id=self.org_id,
            selector="separated_discarded",
            tag=PredefinedFilterTag.DISCARDED.value,
            filter_digest=self.filters.fingerprint(),
        )

        async def separate():
            discarded = await self.scenario_work_items(
                [RetrievalScenario.BECAME_COMPLETED_BETWEEN_DATES],
                tag=PredefinedFilterTag.DISCARDED,
            )
            return await self.separate_discarded_before_and_after(unique_by_id(discarded))

        return await self._delay_cache.get_or_create(key, separate)

    async def _discarded_reason_distribution(self, items: list[ExtendedWorkItem]) -> Optional[list]:
        field_name = await self.custom_field_name_by_tag(DISCARDED_REASON_TAG)
        if not field_name:
            return None
        return get_custom_field_distribution(items, field_name)

    async def get_discarded_before_start(self) -> dict:
        separated = await self.get_separated_discarded_work_items()
        return {
            "discardedCount": len(separated.before),
            "distribution": await self._discarded_reason_distribution(separated.before),
            "items": to_widget_items(separated.before, Perspective.PAST),
        }

    async def get_discarded_after_start(self) -> dict:
        separated = await self.get_separated_discarded_work_items()
        return {
            "discardedCount": len(separated.after),
            "activeDaysSpent": math.ceil(separated.active_time / SECONDS_IN_DAY),
            "distribution": await self._discarded_reason_distribution(separated.after),
            "items": to_widget_items(separated.after, Perspective.PAST),
        }

    # -----------------------------------------------------------------------
    # Flow debt and delayed items
    # -----------------------------------------------------------------------

    async def get_flow_debt(self) -> dict:
        """
        Flow debt of Team level work.

        Ratio of the p85 WIP age of current WIP to the p85 lead time of
        completed items, to one decimal place.
        """
        completed, in_progress = await asyncio.gather(
            self.category_work_items(StateCategory.COMPLETED),
            self.scenario_work_items([RetrievalScenario.CURRENT_WIP_ONLY]),
        )
        team = WorkItemTypeLevel.TEAM.value
        lead_times = [
            i.lead_time_in_whole_days
            for i in completed
            if i.flomatika_work_item_type_level == team and i.lead_time_in_whole_days is not None
        ]
        wip_ages = [
            i.wip_age_in_whole_days
            for i in in_progress
            if i.flomatika_work_item_type_level == team and i.wip_age_in_whole_days is not None
        ]
        target = self.settings.percentile_target
        lead_time_percentile = percentile_or_single(lead_times, target)
        wip_age_percentile = percentile_or_single(wip_ages, target)

        flow_debt = round_to_decimal_places(
            wip_age_percentile / lead_time_percentile if lead_time_percentile else 0, 1
        )
        return {
            "value": flow_debt,
            "leadtimePercentile85th": round_half_up(lead_time_percentile),
            "wipAgePercentile85th": round_half_up(wip_age_percentile),
            "pattern": flow_debt_pattern(flow_debt).value,
        }

    async def get_delayed_items(self) -> dict:
        current_wip = await self.scenario_work_items(
            [RetrievalScenario.CURRENT_WIP_ONLY], force_delayed=True
        )
        delayed = [
            item
            for item in current_wip
            if item.state_category != StateCategory.COMPLETED and item.is_delayed
        ]
        return {"count": len(delayed), "items": to_widget_items(delayed, Perspective.PRESENT)}

    # -----------------------------------------------------------------------
    # Top wait steps
    # -----------------------------------------------------------------------

    async def get_top_wait_steps(self) -> dict:
        proposed, in_progress, completed = await asyncio.gather(
            self.category_items_ignoring_delayed(StateCategory.PROPOSED),
            self.category_items_ignoring_delayed(StateCategory.INPROGRESS),
            self.completed_work_items(),
        )
        unique_items = unique_by_id(proposed, in_progress, completed)
        period = await self.filters.date_period()

        events = await self.snapshot_events(work_item_ids(unique_items))
        paired = events_with_duration(events, period.end)
        return {"keySourcesOfDelay": top_wait_steps(paired, period.start, period.end)}

    # -----------------------------------------------------------------------
    # Widget information
    # -----------------------------------------------------------------------

    async def get_widget_information_by_widget(self) -> dict:
        keys = {
            "wipExcess": WidgetType.WIP_EXCESS,
            "staleWork": WidgetType.STALE_WORK,
            "blockers": WidgetType.IMPEDIMENTS,
            "discardedBeforeStart": WidgetType.RETURNED_TO_WORK,
            "discardedAfterStart": WidgetType.ABORTED_ITEMS,
            "flowDebt": WidgetType.PRODUCTIVITY_DEBT,
            "delayedItems": WidgetType.DELAYED_ITEMS,
            "keySourcesOfDelay": WidgetType.TOP_WAIT_STEPS,
        }
        information = await asyncio.gather(*(self.get_widget_information(w) for w in keys.values()))
        return dict(zip(keys, information))

