"""
Unit tests for the pydantic models, engine settings and logging setup.
"""

from datetime import datetime, timedelta, timezone

import pytest
import structlog
from pydantic import ValidationError

from flowmetrics.config import get_settings
from flowmetrics.models.enums import AggregationKey, RetrievalScenario, StateCategory
from flowmetrics.models.intervals import Interval
from flowmetrics.models.snapshots import SnapshotEvent
from flowmetrics.models.work_items import (
    CustomFieldConfig,
    CustomFieldValue,
    ExtendedWorkItem,
    WorkItem,
    WorkItemTypeConfig,
)
from flowmetrics.utils.logging import add_severity, configure_logging, get_engine_logger, render_flow_values
from tests.conftest import make_security, make_settings, make_work_item

UTC = timezone.utc


# =============================================================================
# Work items
# =============================================================================


class TestWorkItem:
    """Test work item validation at the boundary."""

    def test_camel_case_rows(self):
        """Test upstream camelCase rows validate into snake_case attributes."""
        item = WorkItem.model_validate(
            {
                "workItemId": "W-1",
                "stateCategory": "completed",
                "departureDateTime": "2024-03-05T10:00:00Z",
                "leadTimeInWholeDays": 3,
                "unknownColumn": "ignored",
            }
        )
        assert item.work_item_id == "W-1"
        assert item.state_category == StateCategory.COMPLETED
        assert item.lead_time_in_whole_days == 3

    def test_naive_timestamps_are_utc(self):
        """Test naive milestones are read as UTC."""
        item = WorkItem(work_item_id="W-1", arrival_date_time=datetime(2024, 3, 4, 9))
        assert item.arrival_date_time.tzinfo == UTC

    def test_consistency(self):
        """Test milestones are checked against the category."""
        assert make_work_item().is_consistent()
        assert not make_work_item(departure_date_time=None).is_consistent()
        assert not make_work_item(
            state_category=StateCategory.PROPOSED, commitment_date_time=datetime(2024, 3, 5, tzinfo=UTC)
        ).is_consistent()
        assert make_work_item(state_category=StateCategory.INPROGRESS).is_consistent()

    def test_custom_field_values(self):
        """Test values of named custom fields in field order."""
        item = make_work_item(
            custom_fields=[
                CustomFieldValue(datasource_field_name="cf_1", value="a"),
                CustomFieldValue(datasource_field_name="cf_2", value="b"),
            ]
        )
        assert item.custom_field_values(["cf_2"]) == ["b"]
        assert item.custom_field_values(["cf_missing"]) == []

    def test_null_flags_are_false(self):
        """Test null classification flags become False."""
        item = ExtendedWorkItem.model_validate({"workItemId": "W-1", "isBlocked": None, "flagged": None})
        assert item.is_blocked is False
        assert item.flagged is False

    def test_dump_is_camel_case(self):
        """Test JSON rendering uses the upstream names."""
        dumped = make_work_item("W-1").model_dump(by_alias=True, mode="json")
        assert dumped["workItemId"] == "W-1"
        assert "isAboveSle" in dumped


class TestConfigs:
    """Test configuration models."""

    def test_custom_field_tags(self):
        """Test tag lookup on a comma separated list."""
        config = CustomFieldConfig(datasource_field_name="cf", tags="blockedReason, other")
        assert config.has_tag("blockedReason")
        assert config.has_tag("other")
        assert not config.has_tag("discardedReason")

    def test_negative_sle_rejected(self):
        """Test service level expectations cannot be negative."""
        with pytest.raises(ValidationError):
            WorkItemTypeConfig(id="story", service_level_expectation_in_days=-1)


class TestIntervalAndSnapshots:
    """Test intervals and snapshot events."""

    def test_contains_half_open(self):
        """Test the start is included and the end excluded."""
        start = datetime(2024, 3, 4, tzinfo=UTC)
        interval = Interval(start=start, end=start + timedelta(days=1))
        assert interval.contains(start)
        assert not interval.contains(start + timedelta(days=1))

    def test_invalid_intervals(self):
        """Test naive and inverted bounds are rejected."""
        with pytest.raises(ValidationError):
            Interval(start=datetime(2024, 3, 4), end=datetime(2024, 3, 5))
        with pytest.raises(ValidationError):
            Interval(start=datetime(2024, 3, 5, tzinfo=UTC), end=datetime(2024, 3, 4, tzinfo=UTC))

    def test_snapshot_naive_date(self):
        """Test naive snapshot dates are UTC."""
        event = SnapshotEvent(workItemId="W-1", flomatikaSnapshotDate=datetime(2024, 3, 4))
        assert event.flomatika_snapshot_date.tzinfo == UTC


class TestSecurityContext:
    """Test role checks."""

    def test_roles(self):
        """Test admins are power users."""
        assert make_security(roles=["admin"]).is_power_user()
        assert make_security(roles=["powerUser"]).is_power_user()
        assert not make_security().is_power_user()


# =============================================================================
# Settings and logging
# =============================================================================


class TestSettings:
    """Test engine settings."""

    def test_defaults(self):
        """Test default values and stale thresholds by level."""
        settings = make_settings()
        assert settings.default_rolling_window_days == 30
        assert settings.percentile_target == 85
        assert settings.stale_thresholds == {"Portfolio": 30, "Team": 7, "Individual Contributor": 3}

    def test_aggregation_normalised(self):
        """Test the configured aggregation is lower-cased."""
        assert make_settings(default_aggregation=" Month ").default_aggregation == "month"
        assert AggregationKey(make_settings(default_aggregation="YEAR").default_aggregation) == AggregationKey.YEAR

    def test_percentile_bounds(self):
        """Test the percentile target must be within 1..100."""
        with pytest.raises(ValidationError):
            make_settings(percentile_target=101)

    def test_get_settings_cached(self):
        """Test the settings accessor returns a singleton."""
        assert get_settings() is get_settings()


class TestLogging:
    """Test structlog configuration."""

    def test_add_severity(self):
        """Test the severity field mirrors the method name."""
        assert add_severity(None, "warning", {"event": "x"})["severity"] == "WARNING"

    def test_render_flow_values(self):
        """Test enums, datetimes and intervals are rendered as strings."""
        start = datetime(2024, 3, 4, tzinfo=UTC)
        event = render_flow_values(
            None,
            "info",
            {
                "event": "scenario_loaded",
                "scenario": RetrievalScenario.BECAME_COMPLETED_BETWEEN_DATES,
                "at": start,
                "period": Interval(start=start, end=start + timedelta(days=1)),
                "aggregations": [AggregationKey.WEEK, AggregationKey.MONTH],
                "count": 3,
            },
        )
        assert event["scenario"] == "became_completed_between_dates"
        assert event["at"] == "2024-03-04T00:00:00+00:00"
        assert event["period"] == "2024-03-04T00:00:00+00:00/2024-03-05T00:00:00+00:00"
        assert event["aggregations"] == ["week", "month"]
        assert event["count"] == 3

    def test_configure_logging(self):
        """Test configuration installs structlog processors."""
        try:
            configure_logging(make_settings(log_format="json", dev_mode=False))
            assert structlog.is_configured()
        finally:
            structlog.reset_defaults()

    def test_engine_logger_binding(self):
        """Test engine loggers carry the engine and organisation."""
        with structlog.testing.capture_logs() as logs:
            get_engine_logger("KanbanCalculations", "org-1").info("board_built")
            get_engine_logger("CfdCalculations").info("cfd_built")
        assert logs[0]["engine"] == "KanbanCalculations"
        assert logs[0]["org_id"] == "org-1"
        assert "org_id" not in logs[1]
