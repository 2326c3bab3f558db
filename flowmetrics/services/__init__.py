"""
Collaborator contracts consumed by the flow metrics engine.

Implementations (SQL, HTTP, CMS) live outside this package.
"""

from .base import (
    ContextVisibilityService,
    CustomFieldService,
    OrgSettingsService,
    SnapshotQueryService,
    StateQueryService,
    WidgetInformationService,
    WorkItemRow,
    WorkItemTypeService,
)

__all__ = [
    "ContextVisibilityService",
    "CustomFieldService",
    "OrgSettingsService",
    "SnapshotQueryService",
    "StateQueryService",
    "WidgetInformationService",
    "WorkItemRow",
    "WorkItemTypeService",
]
