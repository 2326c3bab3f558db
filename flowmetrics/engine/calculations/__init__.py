"""Per-widget calculation engines."""

from .base import BaseCalculations
from .cfd import CfdCalculations
from .class_of_service import ClassOfServiceCalculations
from .demand_distribution import DemandDistributionCalculations
from .flow_efficiency import FlowEfficiencyCalculations
from .flow_of_demands import FlowOfDemandsCalculations, FlowOfDemandsGovernanceCalculations
from .kanban import ItemSelectionOptions, KanbanCalculations
from .performance_checkpoint import PerformanceCheckpointCalculations
from .sources_of_delay import SourcesOfDelayCalculations

__all__ = [
    "BaseCalculations",
    "CfdCalculations",
    "ClassOfServiceCalculations",
    "DemandDistributionCalculations",
    "FlowEfficiencyCalculations",
    "FlowOfDemandsCalculations",
    "FlowOfDemandsGovernanceCalculations",
    "ItemSelectionOptions",
    "KanbanCalculations",
    "PerformanceCheckpointCalculations",
    "SourcesOfDelayCalculations",
]
