"""
Kanban board.

Lays current work out in three sorted columns (Upcoming Work, Work in
Process, Completed Work) and applies the board's item selection options:
flag toggles combined with OR (default) or AND.

Column membership depends on the delayed items selection. With "inventory"
delayed in-progress items show as upcoming work; with "wip" they stay in
process.
"""

import asyncio
import copy
from typing import Callable, Optional, Sequence

from pydantic import Field

from flowmetrics.engine.cache import CacheKey, MemoCache
from flowmetrics.engine.calculations.base import BaseCalculations
from flowmetrics.engine.calculations.common import (
    dump_items,
    to_work_items,
    unique_by_id,
    work_item_ids,
)
from flowmetrics.engine.calculations.sources_of_delay import SourcesOfDelayCalculations
from flowmetrics.models.enums import DateAnalysisOption, RetrievalScenario, StateCategory, WidgetType
from flowmetrics.models.work_items import CamelModel, ExtendedWorkItem

INVENTORY_SELECTION = "inventory"
WIP_SELECTION = "wip"

AND_OPERATOR = "and"
OR_OPERATOR = "or"

REQUESTED_COLUMNS = [
    "workItemId",
    "title",
    "state",
    "stateCategory",
    "workItemType",
    "arrivalDate",
    "commitmentDate",
    "departureDate",
    "changedDate",
    "flomatikaWorkItemTypeServiceLevelExpectationInDays",
    "assignedTo",
    "isUnassigned",
    "isStale",
    "isDelayed",
    "isAboveSle",
    "isAboveSleByWipAge",
    "flagged",
]

# Selection option -> item flag it selects on
SELECTION_CRITERIA = {
    "include_blocked": "is_blocked",
    "include_stale": "is_stale",
    "include_above_sle": "is_above_sle",
    "include_expedited": "is_expedited",
    "include_unassigned": "is_unassigned",
    "include_delayed": "is_delayed",
    "include_discarded_after": "is_discarded_after",
    "include_discarded_before": "is_discarded_before",
}

ItemSelector = Callable[[ExtendedWorkItem], bool]


class ItemSelectionOptions(CamelModel):
    """Flag toggles of the board's item selection."""

    include_blocked: bool = Field(default=False, description="Blocked items")
    include_stale: bool = Field(default=False, description="Stale items")
    include_above_sle: bool = Field(default=False, description="Items above SLE")
    include_expedited: bool = Field(default=False, description="Expedited items")
    include_unassigned: bool = Field(default=False, description="Unassigned items")
    include_delayed: bool = Field(default=False, description="Delayed items")
    include_discarded_after: bool = Field(default=False, description="Discarded after start")
    include_discarded_before: bool = Field(default=False, description="Discarded before start")

    def enabled(self, excluded: Sequence[str] = ()) -> list[str]:
        """Names of toggled options, leaving out ``excluded``."""
        return [
            name for name in SELECTION_CRITERIA if getattr(self, name) and name not in excluded
        ]


# ============================================================================
# Column membership
# ============================================================================


def get_inventory_items_filter(delayed_items_selection: str) -> ItemSelector:
    def is_inventory(item: ExtendedWorkItem) -> bool:
        if delayed_items_selection == INVENTORY_SELECTION:
            if item.state_category == StateCategory.PROPOSED:
                return True
            return item.state_category == StateCategory.INPROGRESS and item.is_delayed
        # Only items never started nor completed
        return (
            item.state_category == StateCategory.PROPOSED
            and item.commitment_date_time is None
            and item.departure_date_time is None
        )

    return is_inventory


def get_in_progress_items_filter(delayed_items_selection: str) -> ItemSelector:
    def is_in_progress(item: ExtendedWorkItem) -> bool:
        if item.state_category != StateCategory.INPROGRESS:
            return False
        return delayed_items_selection == WIP_SELECTION or not item.is_delayed

    return is_in_progress


def group_items_by_category(
    work_items: Sequence[ExtendedWorkItem], delayed_items_selection: str
) -> tuple[list[ExtendedWorkItem], list[ExtendedWorkItem], list[ExtendedWorkItem]]:
    """Split items into (proposed, in progress, completed) columns."""
    is_inventory = get_inventory_items_filter(delayed_items_selection)
    is_in_progress = get_in_progress_items_filter(delayed_items_selection)
    return (
        [i for i in work_items if is_inventory(i)],
        [i for i in work_items if is_in_progress(i)],
        [i for i in work_items if i.state_category == StateCategory.COMPLETED],
    )


# ============================================================================
# Selection options
# ============================================================================


def get_item_selector(enabled: Sequence[str], selection_operator: str = OR_OPERATOR) -> ItemSelector:
    def pick_item(item: ExtendedWorkItem) -> bool:
        conditions = [getattr(item, SELECTION_CRITERIA[name]) is True for name in enabled]
        if selection_operator == AND_OPERATOR:
            return all(conditions)
        return any(conditions)

    return pick_item


def contains_active_restricted_flags(
    selection_options: ItemSelectionOptions, restricted_flags: Sequence[str]
) -> bool:
    return bool(set(selection_options.enabled()) & set(restricted_flags))


def apply_selection_options(
    work_items: Sequence[ExtendedWorkItem],
    selection_options: ItemSelectionOptions,
    selection_operator: str,
    restricted_flags: Sequence[str] = (),
) -> list[ExtendedWorkItem]:
    """
    Keep items matching the toggled options, ignoring restricted flags.

    Nothing matches when every toggled option is restricted, or when AND is
    requested together with a restricted flag.
    """
    enabled = selection_options.enabled(excluded=restricted_flags)
    is_necessarily_empty = selection_operator == AND_OPERATOR and contains_active_restricted_flags(
        selection_options, restricted_flags
    )
    if not enabled or is_necessarily_empty:
        return []

    pick_item = get_item_selector(enabled, selection_operator)
    return [item for item in work_items if pick_item(item)]


def filter_items(
    work_items: Sequence[ExtendedWorkItem],
    selection_options: Optional[ItemSelectionOptions] = None,
    selection_operator: Optional[str] = None,
    restricted_flags: Sequence[str] = (),
) -> list[ExtendedWorkItem]:
    """De-duplicate by id, then apply selection options when any is toggled."""
    unique_items = unique_by_id(work_items)

    if selection_operator is not None and selection_options and selection_options.enabled():
        return apply_selection_options(
            unique_items, selection_options, selection_operator, restricted_flags
        )
    return unique_items


def _sort_desc(items: Sequence[ExtendedWorkItem], field: str) -> list[ExtendedWorkItem]:
    """Newest first; items without the date go last."""
    dated = [i for i in items if getattr(i, field) is not None]
    undated = [i for i in items if getattr(i, field) is None]
    return sorted(dated, key=lambda i: getattr(i, field), reverse=True) + undated


def format_kanban_data(
    proposed_items: Sequence[ExtendedWorkItem],
    in_progress_items: Sequence[ExtendedWorkItem],
    completed_items: Sequence[ExtendedWorkItem],
) -> dict:
    return {
        "proposed": [
            {
                "groupName": "Upcoming Work",
                "workItems": dump_items(_sort_desc(proposed_items, "arrival_date_time")),
            }
        ],
        "inProgress": [
            {
                "groupName": "Work in Process",
                "workItems": dump_items(_sort_desc(in_progress_items, "commitment_date_time")),
            }
        ],
        "completed": [
            {
                "groupName": "Completed Work",
                "workItems": dump_items(_sort_desc(completed_items, "departure_date_time")),
            }
        ],
    }


# ============================================================================
# Engine
# ============================================================================


class KanbanCalculations(BaseCalculations):
    """Kanban board of current work, not restricted to the date period."""

    SCENARIOS = {
        StateCategory.PROPOSED: (RetrievalScenario.CURRENT_INVENTORY_ONLY, DateAnalysisOption.ALL),
        StateCategory.INPROGRESS: (RetrievalScenario.CURRENT_WIP_ONLY, DateAnalysisOption.ALL),
        StateCategory.COMPLETED: (
            RetrievalScenario.BECAME_COMPLETED_BETWEEN_DATES,
            DateAnalysisOption.BECAME,
        ),
    }

    def __init__(
        self,
        filters,
        sources_of_delay: SourcesOfDelayCalculations,
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
        self.sources_of_delay = sources_of_delay
        self._board_cache: MemoCache[list[ExtendedWorkItem]] = MemoCache("kanban_work_items")

    async def get_items_by_scenario(
        self, state_category: StateCategory, ignore_discarded: Optional[bool] = None
    ) -> list[ExtendedWorkItem]:
        state = self._require_state_service()
        scenario, date_analysis_option = self.SCENARIOS[state_category]

        category_filters = copy.copy(self.filters)
        category_filters.filter_by_date = False
        category_filters.date_analysis_option = date_analysis_option

        key = CacheKey(
            org_id=self.org_id,
            selector=f"{state_category.value}|ignore_discarded={ignore_discarded}",
            filter_digest=category_filters.fingerprint(),
        )

        async def fetch():
            rows = await state.get_extended_work_items_with_scenarios(
                self.org_id,
                [scenario],
                category_filters,
                columns=REQUESTED_COLUMNS,
                ignore_discarded=ignore_discarded,
            )
            return to_work_items(rows, ExtendedWorkItem, source=f"kanban_{state_category.value}")

        return await self._board_cache.get_or_create(key, fetch)

    async def retrieve_work_items(self, include_discarded_items: bool) -> list[ExtendedWorkItem]:
        """
        Every board item, with the discarded before/after flags set.

        The flags are only computed when a discarded option is selected;
        otherwise they are all False.
        """
        ignore_discarded = False if include_discarded_items else None
        proposed, in_progress, completed = await asyncio.gather(
            self.get_items_by_scenario(StateCategory.PROPOSED, ignore_discarded),
            self.get_items_by_scenario(StateCategory.INPROGRESS, ignore_discarded),
            self.get_items_by_scenario(StateCategory.COMPLETED, ignore_discarded),
        )
        all_items = [
            item.model_copy(update={"is_discarded_before": False, "is_discarded_after": False})
            for item in [*in_progress, *proposed, *completed]
        ]
        if not include_discarded_items:
            return all_items

        state = self._require_state_service()
        discarded_ids = set(await state.get_discarded_from_list(self.org_id, work_item_ids(all_items)))
        discarded = [item for item in all_items if item.work_item_id in discarded_ids]
        separated = await self.sources_of_delay.separate_discarded_before_and_after(discarded)

        before_ids = set(work_item_ids(separated.before))
        after_ids = set(work_item_ids(separated.after))
        return [
            item.model_copy(
                update={
                    "is_discarded_before": item.work_item_id in before_ids,
                    "is_discarded_after": item.work_item_id in after_ids,
                }
            )
            for item in all_items
        ]

    async def get_work_item_per_state(
        self,
        selection_options: Optional[ItemSelectionOptions] = None,
        selection_operator: Optional[str] = None,
    ) -> dict:
        """
        Board columns after applying the selection options.

        Stale is never a selectable flag on the upcoming and completed
        columns. Above SLE and the discarded flags are ignored there too
        unless explicitly selected.
        """
        include_discarded_items = bool(
            selection_options
            and (selection_options.include_discarded_before or selection_options.include_discarded_after)
        )
        work_items = await self.retrieve_work_items(include_discarded_items)

        delayed_items_selection = self.filters.delayed_items_selection or INVENTORY_SELECTION
        proposed, in_progress, completed = group_items_by_category(
            work_items, delayed_items_selection
        )

        restricted_flags = ["include_stale"]
        for name in ("include_above_sle", "include_discarded_before", "include_discarded_after"):
            if not (selection_options and getattr(selection_options, name)):
                restricted_flags.append(name)

        return format_kanban_data(
            filter_items(proposed, selection_options, selection_operator, restricted_flags),
            filter_items(in_progress, selection_options, selection_operator),
            filter_items(completed, selection_options, selection_operator, restricted_flags),
        )

    async def get_board_widget_information(self) -> list[dict]:
        return await self.get_widget_information(WidgetType.SMARTBOARD)
