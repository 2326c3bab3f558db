"""
Unit tests for the cumulative flow diagram engine.
"""

import pytest
import structlog

from flowmetrics.engine.calculations.cfd import (
    CfdCalculations,
    DuplicateCfdEntryError,
    build_cfd_series,
    period_days,
    transform_step_category_to_state,
)
from flowmetrics.models.enums import StateCategory
from flowmetrics.models.snapshots import CfdRow
from tests.conftest import (
    TWO_WEEKS,
    FakeSnapshotQueryService,
    FakeStateQueryService,
    make_filters,
    make_work_item,
    run,
)

logger = structlog.get_logger()


def cfd_row(state: str, day: str, count) -> dict:
    return {"state": state, "flomatikaSnapshotDate": day, "cumulativeFlowCount": count}


def build_series(rows: list[dict], dates: list[str], rename: bool = False) -> dict:
    return build_cfd_series([CfdRow.model_validate(r) for r in rows], dates, rename, logger)


# =============================================================================
# Series assembly
# =============================================================================


class TestBuildCfdSeries:
    """Test assembly of the daily series."""

    def test_completed_forward_filled(self):
        """Test completed days without a count carry the previous value."""
        rows = [cfd_row("completed", "2024-03-04", 2), cfd_row("completed", "2024-03-05", 3)]
        series = build_series(rows, ["2024-03-04", "2024-03-05", "2024-03-06"])
        assert series["completed"]["cumulativeFlowData"] == {
            "2024-03-04": 2,
            "2024-03-05": 3,
            "2024-03-06": 3,
        }

    def test_other_states_zero_filled(self):
        """Test only the completed state is forward filled."""
        rows = [cfd_row("Doing", "2024-03-04", 4)]
        series = build_series(rows, ["2024-03-04", "2024-03-05"])
        assert series["Doing"]["cumulativeFlowData"] == {"2024-03-04": 4, "2024-03-05": 0}

    def test_invalid_counts_skipped(self):
        """Test malformed counts are ignored without failing the series."""
        rows = [
            cfd_row("Doing", "2024-03-04", "many"),
            cfd_row("Doing", "2024-03-05", float("nan")),
            cfd_row("Doing", "2024-03-05", True),
            cfd_row("Doing", "2024-03-06", 2),
        ]
        series = build_series(rows, ["2024-03-04", "2024-03-05", "2024-03-06"])
        assert series["Doing"]["cumulativeFlowData"] == {
            "2024-03-04": 0,
            "2024-03-05": 0,
            "2024-03-06": 2,
        }

    def test_days_outside_period_dropped(self):
        """Test rows outside the period do not add days."""
        rows = [cfd_row("Doing", "2024-03-04", 1), cfd_row("Doing", "2024-04-01", 9)]
        series = build_series(rows, ["2024-03-04"])
        assert series["Doing"]["cumulativeFlowData"] == {"2024-03-04": 1}

    def test_step_categories_renamed(self):
        """Test step category series take display names."""
        rows = [cfd_row("inprogress", "2024-03-04", 1)]
        series = build_series(rows, ["2024-03-04"], rename=True)
        assert list(series) == ["In Progress"]
        assert series["In Progress"]["stateName"] == "In Progress"

    def test_duplicate_state_names(self):
        """Test two states mapping to one name are rejected."""
        rows = [cfd_row("inprogress", "2024-03-04", 1), cfd_row("In Progress", "2024-03-04", 1)]
        with pytest.raises(DuplicateCfdEntryError):
            build_series(rows, ["2024-03-04"], rename=True)

    def test_unknown_step_category_kept(self):
        """Test unknown names pass through."""
        assert transform_step_category_to_state("Review") == "Review"

    def test_period_days(self, filters):
        """Test every day of the period is listed."""
        days = period_days(run(filters.date_period()))
        assert len(days) == 14
        assert (days[0], days[-1]) == ("2024-03-04", "2024-03-17")


# =============================================================================
# Response
# =============================================================================


class TestCfdResponse:
    """Test the widget response."""

    def _engine(self, cfd_rows, widget_information_service=None, **state_kwargs):
        state = FakeStateQueryService(
            by_category={StateCategory.INPROGRESS: [make_work_item("W", StateCategory.INPROGRESS)]},
            **state_kwargs,
        )
        snapshots = FakeSnapshotQueryService(cfd_rows=cfd_rows)
        engine = CfdCalculations(
            make_filters(TWO_WEEKS),
            state_service=state,
            snapshot_service=snapshots,
            widget_information_service=widget_information_service,
        )
        return engine, snapshots

    def test_no_items(self):
        """Test no matching items gives no diagram."""
        engine = CfdCalculations(
            make_filters(TWO_WEEKS),
            state_service=FakeStateQueryService(),
            snapshot_service=FakeSnapshotQueryService(),
        )
        assert run(engine.get_cumulative_flow_response(["story"], True)) is None

    def test_summary_per_state(self, widget_information_service):
        """Test rates and averages are per day of the period."""
        rows = [cfd_row("Doing", day, 1) for day in period_days(run(make_filters(TWO_WEEKS).date_period()))]
        rows.append(cfd_row("completed", "2024-03-04", 5))
        engine, snapshots = self._engine(
            rows,
            widget_information_service,
            arrivals={"Doing": 28, "completed": 3},
            departures={"Doing": 14},
            cycle_times={"Doing": 3.5},
        )

        response = run(engine.get_cumulative_flow_response(["story"], True))

        assert set(response["cfdData"]) == {"Doing", "completed"}
        assert response["summaryData"] == {
            "Doing": {
                "arrivalRate": 2.0,
                "departureRate": 1.0,
                "dailyAverage": 1.0,
                "averageCycleTime": 3.5,
            }
        }
        assert response["widgetInfo"][0]["name"] == "CFD"
        call = snapshots.calls_to("get_cumulative_flow_rows")[0]
        assert call["include_state_categories"] == ["inprogress", "completed"]
        assert call["work_item_types"] == ["story"]

    def test_step_category_diagram(self):
        """Test without selected types the diagram uses step categories and has no summary."""
        engine, snapshots = self._engine([cfd_row("inprogress", "2024-03-04", 2)])

        response = run(engine.get_cumulative_flow_response(None, False))

        assert list(response["cfdData"]) == ["In Progress"]
        assert response["summaryData"] == {}
        assert response["widgetInfo"] == []
        assert snapshots.calls_to("get_cumulative_flow_rows")[0]["include_state_categories"] == [
            "inprogress"
        ]
