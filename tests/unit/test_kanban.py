"""
Unit tests for the kanban board engine.
"""

from datetime import datetime, timezone

import pytest

from flowmetrics.engine.calculations.kanban import (
    AND_OPERATOR,
    OR_OPERATOR,
    REQUESTED_COLUMNS,
    ItemSelectionOptions,
    KanbanCalculations,
    apply_selection_options,
    filter_items,
    group_items_by_category,
)
from flowmetrics.engine.calculations.sources_of_delay import SourcesOfDelayCalculations
from flowmetrics.models.enums import DateAnalysisOption, RetrievalScenario, StateCategory, WidgetType
from flowmetrics.models.organisation import WidgetInformation
from tests.conftest import (
    TWO_WEEKS,
    FakeSnapshotQueryService,
    FakeStateQueryService,
    FakeWidgetInformationService,
    make_filters,
    make_snapshot_event,
    make_work_item,
    run,
)

UTC = timezone.utc


def march(day: int) -> datetime:
    return datetime(2024, 3, day, 9, tzinfo=UTC)


def column_ids(board: dict, column: str) -> list[str]:
    return [item["workItemId"] for item in board[column][0]["workItems"]]


@pytest.fixture
def board_items():
    return {
        RetrievalScenario.CURRENT_INVENTORY_ONLY: [
            make_work_item("p1", StateCategory.PROPOSED, arrival_date_time=march(5)),
            make_work_item("p2", StateCategory.PROPOSED, arrival_date_time=march(8)),
            make_work_item("p3", StateCategory.PROPOSED, arrival_date_time=None),
        ],
        RetrievalScenario.CURRENT_WIP_ONLY: [
            make_work_item("w1", StateCategory.INPROGRESS, commitment_date_time=march(6), is_stale=True),
            make_work_item("w2", StateCategory.INPROGRESS, is_delayed=True),
            make_work_item("w3", StateCategory.INPROGRESS, commitment_date_time=march(7), is_blocked=True),
        ],
        RetrievalScenario.BECAME_COMPLETED_BETWEEN_DATES: [
            make_work_item("c1", departure_date_time=march(9)),
            make_work_item("c2", departure_date_time=march(12), is_stale=True),
        ],
    }


def make_kanban(board_items, query_parameters=None, discarded_ids=None, snapshots=None, widgets=None):
    filters = make_filters({**TWO_WEEKS, **(query_parameters or {})})
    state = FakeStateQueryService(by_scenario=board_items, discarded_ids=discarded_ids)
    sources_of_delay = SourcesOfDelayCalculations(
        filters, state_service=state, snapshot_service=snapshots or FakeSnapshotQueryService()
    )
    kanban = KanbanCalculations(
        filters, sources_of_delay, state_service=state, widget_information_service=widgets
    )
    return kanban, state


# =============================================================================
# Pure helpers
# =============================================================================


class TestColumnMembership:
    """Test which column an item lands in."""

    def test_delayed_as_inventory(self, board_items):
        """Test delayed WIP shows as upcoming work by default."""
        items = [i for items in board_items.values() for i in items]
        proposed, in_progress, completed = group_items_by_category(items, "inventory")
        assert {i.work_item_id for i in proposed} == {"p1", "p2", "p3", "w2"}
        assert {i.work_item_id for i in in_progress} == {"w1", "w3"}
        assert {i.work_item_id for i in completed} == {"c1", "c2"}

    def test_delayed_as_wip(self, board_items):
        """Test delayed WIP stays in process with the wip selection."""
        items = [i for items in board_items.values() for i in items]
        proposed, in_progress, _ = group_items_by_category(items, "wip")
        assert {i.work_item_id for i in proposed} == {"p1", "p2", "p3"}
        assert {i.work_item_id for i in in_progress} == {"w1", "w2", "w3"}


class TestSelectionOptions:
    """Test the board's item selection."""

    def test_enabled(self):
        """Test toggled options in declaration order."""
        options = ItemSelectionOptions(include_stale=True, include_blocked=True)
        assert options.enabled() == ["include_blocked", "include_stale"]
        assert options.enabled(excluded=["include_stale"]) == ["include_blocked"]

    def test_or_and(self):
        """Test OR keeps any match and AND needs every flag."""
        items = [
            make_work_item("a", StateCategory.INPROGRESS, is_blocked=True, is_stale=True),
            make_work_item("b", StateCategory.INPROGRESS, is_blocked=True),
            make_work_item("c", StateCategory.INPROGRESS),
        ]
        options = ItemSelectionOptions(include_blocked=True, include_stale=True)
        assert [i.work_item_id for i in apply_selection_options(items, options, OR_OPERATOR)] == ["a", "b"]
        assert [i.work_item_id for i in apply_selection_options(items, options, AND_OPERATOR)] == ["a"]

    def test_restricted_flags(self):
        """Test restricted flags are ignored, and make AND necessarily empty."""
        items = [make_work_item("a", StateCategory.PROPOSED, is_blocked=True, is_stale=True)]
        options = ItemSelectionOptions(include_blocked=True, include_stale=True)
        assert len(apply_selection_options(items, options, OR_OPERATOR, ["include_stale"])) == 1
        assert apply_selection_options(items, options, AND_OPERATOR, ["include_stale"]) == []
        only_stale = ItemSelectionOptions(include_stale=True)
        assert apply_selection_options(items, only_stale, OR_OPERATOR, ["include_stale"]) == []

    def test_filter_items_dedupes(self):
        """Test duplicates are removed and no toggles keep everything."""
        item = make_work_item("a")
        assert filter_items([item, item]) == [item]
        assert filter_items([item], ItemSelectionOptions(), OR_OPERATOR) == [item]


# =============================================================================
# Engine
# =============================================================================


class TestKanbanBoard:
    """Test the board response."""

    def test_default_board(self, board_items):
        """Test columns are sorted newest first with undated items last."""
        kanban, state = make_kanban(board_items)

        board = run(kanban.get_work_item_per_state())

        assert column_ids(board, "proposed") == ["p2", "p1", "w2", "p3"]
        assert column_ids(board, "inProgress") == ["w3", "w1"]
        assert column_ids(board, "completed") == ["c2", "c1"]
        assert board["proposed"][0]["groupName"] == "Upcoming Work"

        calls = state.calls_to("get_extended_work_items_with_scenarios")
        assert len(calls) == 3
        assert all(c["filters"].filter_by_date is False for c in calls)
        assert all(c["columns"] == REQUESTED_COLUMNS for c in calls)
        assert all(c["ignore_discarded"] is None for c in calls)
        options = {c["scenarios"][0]: c["filters"].date_analysis_option for c in calls}
        assert options[RetrievalScenario.BECAME_COMPLETED_BETWEEN_DATES] == DateAnalysisOption.BECAME
        assert options[RetrievalScenario.CURRENT_WIP_ONLY] == DateAnalysisOption.ALL
        assert state.calls_to("get_discarded_from_list") == []

    def test_wip_selection(self, board_items):
        """Test the delayed items selection parameter."""
        kanban, _ = make_kanban(board_items, {"delayedItemsSelection": "wip"})
        board = run(kanban.get_work_item_per_state())
        assert column_ids(board, "inProgress") == ["w3", "w1", "w2"]

    def test_stale_only_in_process(self, board_items):
        """Test stale selection never applies to upcoming or completed work."""
        kanban, _ = make_kanban(board_items)

        board = run(kanban.get_work_item_per_state(ItemSelectionOptions(include_stale=True), OR_OPERATOR))

        assert column_ids(board, "proposed") == []
        assert column_ids(board, "inProgress") == ["w1"]
        assert column_ids(board, "completed") == []

    def test_and_selection(self, board_items):
        """Test AND across blocked and stale."""
        kanban, _ = make_kanban(board_items)
        options = ItemSelectionOptions(include_stale=True, include_blocked=True)
        board = run(kanban.get_work_item_per_state(options, AND_OPERATOR))
        assert column_ids(board, "inProgress") == []

    def test_discarded_after_start(self, board_items):
        """Test discarded flags are computed when a discarded option is selected."""
        snapshots = FakeSnapshotQueryService(
            snapshots=[
                make_snapshot_event("c1", march(4)),
                make_snapshot_event("c1", march(6), state="Discarded", state_type="queue", step_category="completed"),
            ]
        )
        kanban, state = make_kanban(board_items, discarded_ids=["c1"], snapshots=snapshots)

        board = run(
            kanban.get_work_item_per_state(ItemSelectionOptions(include_discarded_after=True), OR_OPERATOR)
        )

        assert column_ids(board, "completed") == ["c1"]
        assert board["completed"][0]["workItems"][0]["isDiscardedAfter"] is True
        assert column_ids(board, "proposed") == []
        calls = state.calls_to("get_extended_work_items_with_scenarios")
        assert all(c["ignore_discarded"] is False for c in calls)
        assert len(state.calls_to("get_discarded_from_list")) == 1

    def test_widget_information(self, board_items):
        """Test the board's widget information."""
        widgets = FakeWidgetInformationService({WidgetType.SMARTBOARD: [WidgetInformation(name="Board")]})
        kanban, _ = make_kanban(board_items, widgets=widgets)
        assert run(kanban.get_board_widget_information())[0]["name"] == "Board"
