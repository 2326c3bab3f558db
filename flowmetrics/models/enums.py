"""
Enumeration types for the flow metrics engine.

This module defines all enum types used across the engine for type safety
and consistent validation. All enums inherit from str to ensure JSON
serialization compatibility.
"""

from enum import Enum


class AggregationKey(str, Enum):
    """
    Time-bucketing granularity for historical series.

    Members are declared from finest to coarsest; ``rank`` exposes that order.
    """

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"

    @property
    def rank(self) -> int:
        return list(AggregationKey).index(self)


class StateCategory(str, Enum):
    """Coarse lifecycle bucket of a work item."""

    PROPOSED = "proposed"
    INPROGRESS = "inprogress"
    COMPLETED = "completed"


class RetrievalScenario(str, Enum):
    """
    Temporal retrieval mode for scenario-shaped work item queries.

    CURRENT_* selects items by their state right now, WAS_* selects items that
    were in the category at any point of the date period, BECAME_* selects
    items that entered the category during the date period.
    """

    CURRENT_COMPLETED_ONLY = "current_completed_only"
    WAS_COMPLETED_BETWEEN_DATES = "was_completed_between_dates"
    BECAME_COMPLETED_BETWEEN_DATES = "became_completed_between_dates"
    CURRENT_WIP_ONLY = "current_wip_only"
    WAS_WIP_BETWEEN_DATES = "was_wip_between_dates"
    BECAME_WIP_BETWEEN_DATES = "became_wip_between_dates"
    CURRENT_INVENTORY_ONLY = "current_inventory_only"
    WAS_INVENTORY_BETWEEN_DATES = "was_inventory_between_dates"
    BECAME_INVENTORY_BETWEEN_DATES = "became_inventory_between_dates"


class DateAnalysisOption(str, Enum):
    """How the date period is applied when fetching by state category."""

    WAS = "was"
    BECAME = "became"
    ALL = "all"


class PredefinedFilterTag(str, Enum):
    """Classification tags that trigger normalisation joins upstream."""

    NORMALISATION = "normalisation"
    REMOVED = "removed"
    DEMAND = "demand"
    VALUE_AREA = "value-area"
    QUALITY = "quality"
    PLANNED_UNPLANNED = "planned-unplanned"
    CLASS_OF_SERVICE = "class-of-service"
    BLOCKERS = "blockers"
    DISCARDED = "discarded"


class Perspective(str, Enum):
    """Point of view used to anchor snapshot based calculations."""

    PAST = "past"
    PRESENT = "present"
    FUTURE = "future"


class TrafficLight(str, Enum):
    """Traffic light pattern attached to governance widgets."""

    GOOD = "good"
    AVERAGE = "average"
    BAD = "bad"
    NEUTRAL = "neutral"


class WorkItemTypeLevel(str, Enum):
    """Hierarchy level of a work item type."""

    PORTFOLIO = "Portfolio"
    TEAM = "Team"
    INDIVIDUAL_CONTRIBUTOR = "Individual Contributor"


class WidgetType(str, Enum):
    """
    Widget keys used to fetch descriptive widget information.

    One lookup table serves both the continuous improvement and the delivery
    governance areas. The two areas key flow efficiency differently, so it has
    two members.
    """

    # Continuous improvements
    FLOW_ANALYSIS_FLOW_EFFICIENCY = "flow-analysis-flow-efficiency"
    TIME_IN_STAGE = "time-in-stage"
    CUMULATIVE_FLOW_DIAGRAM = "cumulative-flow-diagram"
    OPERATING_IN_A_STATE_OF_URGENCY = "operating-in-a-state-of-urgency"
    TEAM_BURN_OUT = "team-burn-out"
    BURNING_CUSTOMERS_TRUST = "burning-customers-trust"
    FLOW_PROBLEM = "flow-problem"
    PREMATURE_COMMITMENT = "premature-commitment"
    HIGH_WASTE = "high-waste"
    STALLED_TEAM = "stalled-team"

    # Delivery governance
    LEAD_TIME = "lead-time"
    SERVICE_LEVEL = "service-level"
    PREDICTABILITY = "predictability"
    DELIVERY_RATE = "delivery-rate"
    VALUE_DELIVERED = "value-delivered"
    FLOW_EFFICIENCY = "flow-efficiency"
    DEMAND_VS_CAPACITY = "demand-vs-capacity"
    WORK_STARTED_COMPLETED = "work-started-completed"
    TOTAL_UPCOMING_WORK = "total-upcoming-work"
    COMMITTED_WORK_RATE = "committed-work-rate"
    TIME_TO_START = "time-to-start"
    WIP_COUNT = "wip-count"
    WIP_AGE = "wip-age"
    TOTAL_WORK_COMPLETED = "total-work-completed"
    DEMAND_DISTRIBUTION_UPCOMING_WORK = "demand-distribution-upcoming-work"
    DEMAND_DISTRIBUTION_WORK_IN_PROCESS = "demand-distribution-work-in-process"
    DEMAND_DISTRIBUTION_COMPLETED_WORK = "demand-distribution-completed-work"
    RETURNED_TO_WORK = "returned-to-work"
    CANCELLED_WORK = "cancelled-work"
    STALE_WORK = "stale-work"
    IMPEDIMENTS = "impediments"
    ABORTED_ITEMS = "aborted-items"
    PRODUCTIVITY_DEBT = "productivity-debt"
    TOP_WAIT_STEPS = "top-wait-steps"
    WIP_EXCESS = "wip-excess"
    DELAYED_ITEMS = "delayed-items"
    CLASS_OF_SERVICE_UPCOMING_WORK = "class-of-service-upcoming-work"
    CLASS_OF_SERVICE_WORK_IN_PROCESS = "class-of-service-work-in-process"
    CLASS_OF_SERVICE_COMPLETED_WORK = "class-of-service-completed-work"
    PERFORMANCE_COMPARISON_BY_TIME = "performance-comparison-by-time"

    # Delivery management
    SMARTBOARD = "smartboard"
