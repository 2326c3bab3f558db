"""
Flow metrics data models.

This package contains all pydantic models and enums used across the engine:
the work item records returned by the state query collaborator, snapshot and
time-accounting rows, organisation settings and security context, and the
shared enum lookup tables.
"""

from .enums import (
    AggregationKey,
    DateAnalysisOption,
    Perspective,
    PredefinedFilterTag,
    RetrievalScenario,
    StateCategory,
    TrafficLight,
    WidgetType,
    WorkItemTypeLevel,
)
from .intervals import Interval
from .organisation import OrgSettings, SecurityContext, WidgetInformation
from .snapshots import (
    ActiveQueueTimeRow,
    BucketQuery,
    CfdRow,
    SnapshotEvent,
    TimeInStageRow,
)
from .work_items import (
    CamelModel,
    CustomFieldConfig,
    CustomFieldValue,
    ExtendedWorkItem,
    WorkItem,
    WorkItemTypeConfig,
)

__all__ = [
    # Enums
    "AggregationKey",
    "DateAnalysisOption",
    "Perspective",
    "PredefinedFilterTag",
    "RetrievalScenario",
    "StateCategory",
    "TrafficLight",
    "WidgetType",
    "WorkItemTypeLevel",
    # Work items
    "CamelModel",
    "CustomFieldConfig",
    "CustomFieldValue",
    "ExtendedWorkItem",
    "WorkItem",
    "WorkItemTypeConfig",
    # Snapshots
    "ActiveQueueTimeRow",
    "BucketQuery",
    "CfdRow",
    "SnapshotEvent",
    "TimeInStageRow",
    # Organisation
    "Interval",
    "OrgSettings",
    "SecurityContext",
    "WidgetInformation",
]
