"""
Abstract collaborator interfaces for the flow metrics engine.

The engine never talks to a database, an HTTP API or a CMS itself. Everything
it reads comes through the narrow contracts defined here, so the relational
query layer, the settings store and the widget information lookup can be
swapped without touching calculation code. All methods are coroutines: every
call into a collaborator is a suspension point of the request.

Contracts common to every collaborator:
- Read-only and idempotent for a fixed set of arguments
- Return an empty list (never None) when nothing matches, unless the method
  documents Optional
- Raise on infrastructure failure; the engine decides per call site whether a
  failure is fatal or a fallback applies
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any, Mapping, Optional, Union

from flowmetrics.models.enums import PredefinedFilterTag, RetrievalScenario, StateCategory, WidgetType
from flowmetrics.models.intervals import Interval
from flowmetrics.models.organisation import OrgSettings, WidgetInformation
from flowmetrics.models.snapshots import (
    ActiveQueueTimeRow,
    BucketQuery,
    CfdRow,
    SnapshotEvent,
    TimeInStageRow,
)
from flowmetrics.models.work_items import (
    CustomFieldConfig,
    ExtendedWorkItem,
    WorkItem,
    WorkItemTypeConfig,
)

if TYPE_CHECKING:
    from flowmetrics.engine.filters import QueryFilters

# Rows may come back as validated models or as raw mappings; the engine
# validates mappings at the boundary.
WorkItemRow = Union[ExtendedWorkItem, WorkItem, Mapping[str, Any]]


class StateQueryService(ABC):
    """
    Scenario-shaped access to the current and historical state of work items.

    Implementations translate a state category or a list of retrieval
    scenarios plus the request's ``QueryFilters`` into a query over the
    organisation's work items. Which items match a scenario (current vs was
    vs became between dates) is entirely the implementation's concern.
    """

    @abstractmethod
    async def get_work_items(
        self,
        org_id: str,
        state_category: StateCategory,
        filters: Optional["QueryFilters"] = None,
        fql_filter: Optional[str] = None,
        columns: Optional[list[str]] = None,
        is_delayed: Optional[bool] = None,
        disable_delayed: Optional[bool] = None,
        disable_discarded: Optional[bool] = None,
    ) -> list[WorkItemRow]:
        """
        Fetch work items currently or historically in a state category.

        Args:
            org_id: Organisation to query
            state_category: Lifecycle bucket to select
            filters: Request filters (date period, types, custom fields, ...)
            fql_filter: Optional additional filter expression
            columns: Optional projection of columns to return
            is_delayed: Restrict to delayed (True) or not delayed (False) items
            disable_delayed: Ignore the delayed-item re-categorisation
            disable_discarded: Keep discarded items in the result

        Returns:
            Matching work item rows
        """
        pass

    @abstractmethod
    async def get_extended_work_items(
        self,
        org_id: str,
        state_categories: list[StateCategory],
        filters: Optional["QueryFilters"] = None,
        fql_filter: Optional[str] = None,
        columns: Optional[list[str]] = None,
        is_delayed: Optional[bool] = None,
        disable_delayed: Optional[bool] = None,
    ) -> list[WorkItemRow]:
        """
        Fetch work items with classification flags for several categories.

        Args:
            org_id: Organisation to query
            state_categories: Lifecycle buckets to select
            filters: Request filters
            fql_filter: Optional additional filter expression
            columns: Optional projection of columns to return
            is_delayed: Restrict to delayed or not delayed items
            disable_delayed: Ignore the delayed-item re-categorisation

        Returns:
            Matching extended work item rows
        """
        pass

    @abstractmethod
    async def get_extended_work_items_with_scenarios(
        self,
        org_id: str,
        scenarios: list[RetrievalScenario],
        filters: Optional["QueryFilters"] = None,
        fql_filter: Optional[str] = None,
        columns: Optional[list[str]] = None,
        force_delayed: Optional[bool] = None,
        ignore_discarded: Optional[bool] = None,
    ) -> list[WorkItemRow]:
        """
        Fetch work items matching any of the given retrieval scenarios.

        Args:
            org_id: Organisation to query
            scenarios: Temporal retrieval modes to union
            filters: Request filters
            fql_filter: Optional additional filter expression
            columns: Optional projection of columns to return
            force_delayed: Treat delayed items as part of the inventory
            ignore_discarded: Drop discarded items

        Returns:
            Matching extended work item rows
        """
        pass

    @abstractmethod
    async def get_normalised_work_items(
        self,
        org_id: str,
        state_category: StateCategory,
        filters: Optional["QueryFilters"],
        tag: PredefinedFilterTag,
    ) -> list[WorkItemRow]:
        """
        Fetch work items of a category joined with a normalisation tag.

        Every returned row carries ``normalisedDisplayName``. An item matching
        several normalisation categories is returned once per category.

        Args:
            org_id: Organisation to query
            state_category: Lifecycle bucket to select
            filters: Request filters
            tag: Normalisation tag to join on

        Returns:
            Normalised work item rows
        """
        pass

    @abstractmethod
    async def get_normalised_extended_work_items_with_scenarios(
        self,
        org_id: str,
        scenarios: list[RetrievalScenario],
        filters: Optional["QueryFilters"],
        tag: PredefinedFilterTag,
        force_delayed: Optional[bool] = None,
    ) -> list[WorkItemRow]:
        """
        Fetch scenario-matched work items joined with a normalisation tag.

        Args:
            org_id: Organisation to query
            scenarios: Temporal retrieval modes to union
            filters: Request filters
            tag: Normalisation tag to join on
            force_delayed: Treat delayed items as part of the inventory

        Returns:
            Normalised extended work item rows
        """
        pass

    @abstractmethod
    async def get_work_item_ids(
        self,
        org_id: str,
        filters: Optional["QueryFilters"],
    ) -> list[str]:
        """Ids of every item matching the request filters, regardless of state."""
        pass

    @abstractmethod
    async def get_arrivals_by_state(
        self,
        org_id: str,
        filters: Optional["QueryFilters"],
        work_item_ids: list[str],
    ) -> dict[str, int]:
        """Count of items that entered each state during the date period."""
        pass

    @abstractmethod
    async def get_departures_by_state(
        self,
        org_id: str,
        filters: Optional["QueryFilters"],
        work_item_ids: list[str],
    ) -> dict[str, int]:
        """Count of items that left each state during the date period."""
        pass

    @abstractmethod
    async def get_average_cycle_time(
        self,
        org_id: str,
        filters: Optional["QueryFilters"],
        work_item_ids: list[str],
    ) -> dict[str, float]:
        """Average days spent in each state by items of the date period."""
        pass

    @abstractmethod
    async def get_discarded_from_list(
        self,
        org_id: str,
        work_item_ids: list[str],
    ) -> list[str]:
        """Subset of ``work_item_ids`` that were discarded rather than completed."""
        pass


class SnapshotQueryService(ABC):
    """
    Access to the per-event snapshot history of work items.

    Snapshot queries are the expensive part of a request. Callers pass explicit
    work item id lists and date ranges so implementations can bound the scan.
    """

    @abstractmethod
    async def get_cumulative_flow_rows(
        self,
        org_id: str,
        interval: Interval,
        include_state_categories: list[str],
        timezone: str,
        work_item_types: list[str],
        work_item_ids: list[str],
    ) -> list[CfdRow]:
        """
        Daily item counts per state for the cumulative flow diagram.

        When ``work_item_types`` is empty the rows are grouped by step
        category instead of by workflow state.

        Args:
            org_id: Organisation to query
            interval: Days to cover
            include_state_categories: State categories to include
            timezone: IANA zone the day boundaries are computed in
            work_item_types: Selected work item type ids
            work_item_ids: Items to count

        Returns:
            One row per state and day that has data
        """
        pass

    @abstractmethod
    async def get_treated_snapshots(
        self,
        org_id: str,
        work_item_ids: list[str],
    ) -> list[SnapshotEvent]:
        """
        Full state-change history of the given items, ordered by item and date.

        Args:
            org_id: Organisation to query
            work_item_ids: Items whose history is needed

        Returns:
            Snapshot events
        """
        pass

    @abstractmethod
    async def get_active_and_queue_time(
        self,
        org_id: str,
        work_item_ids: list[str],
        include_arrival: bool,
        start: datetime,
        end: datetime,
        timezone: str,
        exclude_weekends: bool,
    ) -> list[ActiveQueueTimeRow]:
        """
        Active and waiting time per item inside ``[start, end)``.

        Args:
            org_id: Organisation to query
            work_item_ids: Items to measure
            include_arrival: Count time spent before commitment
            start: Range start
            end: Range end
            timezone: IANA zone of the request
            exclude_weekends: Skip Saturdays and Sundays

        Returns:
            One row per item
        """
        pass

    @abstractmethod
    async def get_active_and_queue_time_by_buckets(
        self,
        org_id: str,
        work_item_ids: list[str],
        include_arrival: bool,
        buckets: list[BucketQuery],
        timezone: str,
        exclude_weekends: bool,
    ) -> list[ActiveQueueTimeRow]:
        """
        Active and waiting time for several ranges in one round trip.

        Implementations run one query per bucket as a single union and copy
        each bucket's ``bucket_id`` onto the rows it produced.

        Args:
            org_id: Organisation to query
            work_item_ids: Items to measure
            include_arrival: Count time spent before commitment
            buckets: Tagged ranges
            timezone: IANA zone of the request
            exclude_weekends: Skip Saturdays and Sundays

        Returns:
            Rows of every bucket, tagged with ``bucket_id``
        """
        pass

    @abstractmethod
    async def get_time_in_stage(
        self,
        org_id: str,
        work_item_ids: list[str],
        state_type: str,
        step_category: str,
        interval: Interval,
        timezone: str,
    ) -> list[TimeInStageRow]:
        """Seconds each item spent per state of the given type and step category."""
        pass


class OrgSettingsService(ABC):
    """Organisation settings store."""

    @abstractmethod
    async def get_settings(self, org_id: str) -> Optional[OrgSettings]:
        """
        Load settings for an organisation.

        Args:
            org_id: Organisation id

        Returns:
            Settings, or None when the organisation has none stored
        """
        pass


class ContextVisibilityService(ABC):
    """Lookup of contexts (boards, teams, portfolios) visible to the caller."""

    @abstractmethod
    async def get_if_visible(self, context_id: str) -> Optional[dict[str, Any]]:
        """
        Load a context if the caller may see it.

        Args:
            context_id: Context identifier

        Returns:
            Context attributes (e.g. ``rollingWindowPeriodInDays``), or None
        """
        pass


class WidgetInformationService(ABC):
    """Descriptive widget text (CMS content)."""

    @abstractmethod
    async def get_widget_information(self, widget_type: WidgetType) -> list[WidgetInformation]:
        """Widget descriptions for ``widget_type``."""
        pass


class WorkItemTypeService(ABC):
    """Work item type configuration, including service level expectations."""

    @abstractmethod
    async def get_types(self, org_id: str) -> list[WorkItemTypeConfig]:
        """All work item types configured for the organisation."""
        pass


class CustomFieldService(ABC):
    """Custom field configuration."""

    @abstractmethod
    async def get_custom_field_configs(self, org_id: str) -> list[CustomFieldConfig]:
        """All custom fields configured for the organisation."""
        pass
