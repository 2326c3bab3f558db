"""
Shared pytest fixtures and factory functions for the flow metrics test suite.

Provides:
- Factory functions for work items, snapshot events and request filters
- In-memory fakes of every collaborator interface (no database, no network)
- Pytest fixtures wiring the fakes together

Fakes are deterministic: they return exactly what the test configured and
record every call so tests can assert on the arguments the engine passed.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from uuid import uuid4

import pytest

from flowmetrics.config import Settings
from flowmetrics.engine.filters import QueryFilters
from flowmetrics.models.enums import StateCategory, WidgetType
from flowmetrics.models.organisation import OrgSettings, SecurityContext, WidgetInformation
from flowmetrics.models.snapshots import ActiveQueueTimeRow, SnapshotEvent
from flowmetrics.models.work_items import ExtendedWorkItem
from flowmetrics.services.base import (
    ContextVisibilityService,
    CustomFieldService,
    OrgSettingsService,
    SnapshotQueryService,
    StateQueryService,
    WidgetInformationService,
    WorkItemTypeService,
)

# Wednesday; every engine reads "now" through the filters' clock
FIXED_NOW = datetime(2024, 3, 20, 12, 0, tzinfo=timezone.utc)
BASE_DATE = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)

TWO_WEEKS = {
    "departureDateLowerBoundary": "2024-03-04",
    "departureDateUpperBoundary": "2024-03-17",
}


def run(coroutine):
    """Drive an engine coroutine to completion."""
    return asyncio.run(coroutine)


# ---------------------------------------------------------------------------
# Factory functions
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:
    """Engine settings isolated from any .env file."""
    return Settings(_env_file=None, **overrides)


def make_security(organisation: str = "org-test", **overrides) -> SecurityContext:
    defaults = dict(organisation=organisation, roles=["user"])
    defaults.update(overrides)
    return SecurityContext(**defaults)


def make_work_item(
    work_item_id: Optional[str] = None,
    state_category: StateCategory = StateCategory.COMPLETED,
    model=ExtendedWorkItem,
    **overrides,
):
    """
    Factory for work items with milestones consistent with their category.

    Proposed items only arrived, in-progress items are committed a day after
    arrival and completed items depart four days after commitment.
    """
    defaults: dict[str, Any] = dict(
        work_item_id=work_item_id or f"item-{uuid4().hex[:8]}",
        title="Test work item",
        state_category=state_category,
        work_item_type="Story",
        flomatika_work_item_type_id="story",
        flomatika_work_item_type_name="Story",
        flomatika_work_item_type_level="Team",
        arrival_date_time=BASE_DATE,
    )
    if state_category in (StateCategory.INPROGRESS, StateCategory.COMPLETED):
        defaults["commitment_date_time"] = BASE_DATE + timedelta(days=1)
        defaults["state"] = "In Progress"
    if state_category == StateCategory.COMPLETED:
        defaults["departure_date_time"] = BASE_DATE + timedelta(days=5)
        defaults["lead_time_in_whole_days"] = 4
        defaults["state"] = "Done"
    defaults.update(overrides)
    return model(**defaults)


def make_snapshot_event(
    work_item_id: str,
    flomatika_snapshot_date: datetime,
    state: str = "In Progress",
    state_type: str = "active",
    step_category: str = "inprogress",
    **overrides,
) -> SnapshotEvent:
    defaults = dict(
        work_item_id=work_item_id,
        flomatika_snapshot_date=flomatika_snapshot_date,
        state=state,
        state_type=state_type,
        step_category=step_category,
        flomatika_work_item_type_level="Team",
    )
    defaults.update(overrides)
    return SnapshotEvent(**defaults)


def make_active_queue_row(work_item_id: str, **overrides) -> ActiveQueueTimeRow:
    """Row of one active hour and half a waiting hour."""
    defaults = dict(
        work_item_id=work_item_id,
        active_time=1.0,
        waiting_time=0.5,
        active_time_in_seconds=3600,
        waiting_time_in_seconds=1800,
    )
    defaults.update(overrides)
    return ActiveQueueTimeRow(**defaults)


def make_filters(
    query_parameters: Optional[dict] = None,
    org_settings: Optional[OrgSettings] = None,
    context_service: Optional[ContextVisibilityService] = None,
    security: Optional[SecurityContext] = None,
    now: datetime = FIXED_NOW,
    settings: Optional[Settings] = None,
    org_settings_service: Optional[OrgSettingsService] = None,
) -> QueryFilters:
    """Request filters with a frozen clock."""
    return QueryFilters(
        query_parameters or {},
        security or make_security(),
        org_settings_service or FakeOrgSettingsService(org_settings),
        context_service=context_service,
        settings=settings or make_settings(),
        clock=lambda zone: now.astimezone(zone),
    )


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------

Scope = Callable[[list, QueryFilters, Any], list]


class FakeStateQueryService(StateQueryService):
    """
    In-memory StateQueryService.

    Items are configured per state category, per retrieval scenario and per
    (tag, category or scenario) for the normalised queries. An optional
    ``scope`` narrows results using the filters of the call, which lets tests
    emulate per-bucket date filtering.
    """

    def __init__(
        self,
        by_category: Optional[dict] = None,
        by_scenario: Optional[dict] = None,
        normalised: Optional[dict] = None,
        work_item_ids: Optional[list[str]] = None,
        discarded_ids: Optional[list[str]] = None,
        arrivals: Optional[dict] = None,
        departures: Optional[dict] = None,
        cycle_times: Optional[dict] = None,
        scope: Optional[Scope] = None,
    ):
        self.by_category = by_category or {}
        self.by_scenario = by_scenario or {}
        self.normalised = normalised or {}
        self.work_item_ids = work_item_ids
        self.discarded_ids = discarded_ids or []
        self.arrivals = arrivals or {}
        self.departures = departures or {}
        self.cycle_times = cycle_times or {}
        self.scope = scope
        self.calls: list[tuple[str, dict]] = []

    def calls_to(self, method: str) -> list[dict]:
        return [arguments for name, arguments in self.calls if name == method]

    def _scoped(self, items, filters, selector) -> list:
        items = list(items)
        if self.scope is not None and filters is not None:
            return self.scope(items, filters, selector)
        return items

    async def get_work_items(
        self,
        org_id,
        state_category,
        filters=None,
        fql_filter=None,
        columns=None,
        is_delayed=None,
        disable_delayed=None,
        disable_discarded=None,
    ):
        self.calls.append(
            (
                "get_work_items",
                dict(
                    org_id=org_id,
                    state_category=state_category,
                    filters=filters,
                    disable_delayed=disable_delayed,
                ),
            )
        )
        return self._scoped(self.by_category.get(state_category, []), filters, state_category)

    async def get_extended_work_items(
        self,
        org_id,
        state_categories,
        filters=None,
        fql_filter=None,
        columns=None,
        is_delayed=None,
        disable_delayed=None,
    ):
        self.calls.append(
            (
                "get_extended_work_items",
                dict(
                    org_id=org_id,
                    state_categories=state_categories,
                    filters=filters,
                    disable_delayed=disable_delayed,
                ),
            )
        )
        items = []
        for state_category in state_categories:
            items.extend(self.by_category.get(state_category, []))
        return self._scoped(items, filters, state_categories)

    async def get_extended_work_items_with_scenarios(
        self,
        org_id,
        scenarios,
        filters=None,
        fql_filter=None,
        columns=None,
        force_delayed=None,
        ignore_discarded=None,
    ):
        self.calls.append(
            (
                "get_extended_work_items_with_scenarios",
                dict(
                    org_id=org_id,
                    scenarios=scenarios,
                    filters=filters,
                    columns=columns,
                    force_delayed=force_delayed,
                    ignore_discarded=ignore_discarded,
                ),
            )
        )
        items = []
        for scenario in scenarios:
            items.extend(self.by_scenario.get(scenario, []))
        return self._scoped(items, filters, scenarios)

    async def get_normalised_work_items(self, org_id, state_category, filters, tag):
        self.calls.append(
            ("get_normalised_work_items", dict(state_category=state_category, tag=tag))
        )
        return list(self.normalised.get((tag, state_category), []))

    async def get_normalised_extended_work_items_with_scenarios(
        self, org_id, scenarios, filters, tag, force_delayed=None
    ):
        self.calls.append(
            (
                "get_normalised_extended_work_items_with_scenarios",
                dict(scenarios=scenarios, tag=tag, force_delayed=force_delayed),
            )
        )
        items = []
        for scenario in scenarios:
            items.extend(self.normalised.get((tag, scenario), []))
        return items

    async def get_work_item_ids(self, org_id, filters):
        self.calls.append(("get_work_item_ids", dict(org_id=org_id)))
        if self.work_item_ids is not None:
            return list(self.work_item_ids)
        return [item.work_item_id for items in self.by_category.values() for item in items]

    async def get_arrivals_by_state(self, org_id, filters, work_item_ids):
        return dict(self.arrivals)

    async def get_departures_by_state(self, org_id, filters, work_item_ids):
        return dict(self.departures)

    async def get_average_cycle_time(self, org_id, filters, work_item_ids):
        return dict(self.cycle_times)

    async def get_discarded_from_list(self, org_id, work_item_ids):
        self.calls.append(("get_discarded_from_list", dict(work_item_ids=work_item_ids)))
        return [i for i in work_item_ids if i in self.discarded_ids]


class FakeSnapshotQueryService(SnapshotQueryService):
    """
    In-memory SnapshotQueryService.

    Bucketed active/queue rows are configured per bucket id and come back
    tagged with it, as the union query would return them.
    """

    def __init__(
        self,
        cfd_rows: Optional[list] = None,
        snapshots: Optional[list[SnapshotEvent]] = None,
        active_queue_rows: Optional[list] = None,
        bucket_rows: Optional[dict[int, list]] = None,
        time_in_stage_rows: Optional[dict] = None,
    ):
        self.cfd_rows = cfd_rows or []
        self.snapshots = snapshots or []
        self.active_queue_rows = active_queue_rows or []
        self.bucket_rows = bucket_rows or {}
        self.time_in_stage_rows = time_in_stage_rows or {}
        self.calls: list[tuple[str, dict]] = []

    def calls_to(self, method: str) -> list[dict]:
        return [arguments for name, arguments in self.calls if name == method]

    async def get_cumulative_flow_rows(
        self, org_id, interval, include_state_categories, timezone, work_item_types, work_item_ids
    ):
        self.calls.append(
            (
                "get_cumulative_flow_rows",
                dict(
                    interval=interval,
                    include_state_categories=include_state_categories,
                    timezone=timezone,
                    work_item_types=work_item_types,
                ),
            )
        )
        return list(self.cfd_rows)

    async def get_treated_snapshots(self, org_id, work_item_ids):
        self.calls.append(("get_treated_snapshots", dict(work_item_ids=work_item_ids)))
        return [event for event in self.snapshots if event.work_item_id in work_item_ids]

    async def get_active_and_queue_time(
        self, org_id, work_item_ids, include_arrival, start, end, timezone, exclude_weekends
    ):
        self.calls.append(
            (
                "get_active_and_queue_time",
                dict(
                    work_item_ids=work_item_ids,
                    include_arrival=include_arrival,
                    exclude_weekends=exclude_weekends,
                ),
            )
        )
        return [row for row in self.active_queue_rows if row.work_item_id in work_item_ids]

    async def get_active_and_queue_time_by_buckets(
        self, org_id, work_item_ids, include_arrival, buckets, timezone, exclude_weekends
    ):
        self.calls.append(
            (
                "get_active_and_queue_time_by_buckets",
                dict(buckets=buckets, include_arrival=include_arrival),
            )
        )
        rows = []
        for bucket in buckets:
            for row in self.bucket_rows.get(bucket.bucket_id, []):
                rows.append(row.model_copy(update={"bucket_id": bucket.bucket_id}))
        return rows

    async def get_time_in_stage(
        self, org_id, work_item_ids, state_type, step_category, interval, timezone
    ):
        return list(self.time_in_stage_rows.get((state_type, step_category), []))


class FakeOrgSettingsService(OrgSettingsService):
    def __init__(self, settings: Optional[OrgSettings] = None, error: Optional[Exception] = None):
        self.settings = settings
        self.error = error

    async def get_settings(self, org_id):
        if self.error is not None:
            raise self.error
        return self.settings


class FakeContextVisibilityService(ContextVisibilityService):
    def __init__(self, contexts: Optional[dict] = None, error: Optional[Exception] = None):
        self.contexts = contexts or {}
        self.error = error

    async def get_if_visible(self, context_id):
        if self.error is not None:
            raise self.error
        return self.contexts.get(context_id)


class FakeWidgetInformationService(WidgetInformationService):
    def __init__(self, information: Optional[dict] = None, error: Optional[Exception] = None):
        self.information = information or {}
        self.error = error

    async def get_widget_information(self, widget_type):
        if self.error is not None:
            raise self.error
        return list(self.information.get(widget_type, []))


class FakeWorkItemTypeService(WorkItemTypeService):
    def __init__(self, types: Optional[list] = None):
        self.types = types or []
        self.call_count = 0

    async def get_types(self, org_id):
        self.call_count += 1
        return list(self.types)


class FakeCustomFieldService(CustomFieldService):
    def __init__(self, configs: Optional[list] = None):
        self.configs = configs or []

    async def get_custom_field_configs(self, org_id):
        return list(self.configs)


# ---------------------------------------------------------------------------
# Pytest fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    """Engine settings with defaults only."""
    return make_settings()


@pytest.fixture
def filters():
    """Filters of a fixed two week period (Monday 4th to Sunday 17th of March)."""
    return make_filters(TWO_WEEKS)


@pytest.fixture
def widget_information_service():
    """Widget information service knowing one widget description."""
    return FakeWidgetInformationService(
        {
            WidgetType.CUMULATIVE_FLOW_DIAGRAM: [
                WidgetInformation(name="CFD", description="Items per state and day")
            ]
        }
    )


@pytest.fixture
def sample_completed_items():
    """Completed items spread over the two week period."""
    return [
        make_work_item("done-1", departure_date_time=BASE_DATE + timedelta(days=1, hours=2), lead_time_in_whole_days=2),
        make_work_item("done-2", departure_date_time=BASE_DATE + timedelta(days=3), lead_time_in_whole_days=5),
        make_work_item("done-3", departure_date_time=BASE_DATE + timedelta(days=8), lead_time_in_whole_days=8),
        make_work_item("done-4", departure_date_time=BASE_DATE + timedelta(days=9), lead_time_in_whole_days=3),
    ]
