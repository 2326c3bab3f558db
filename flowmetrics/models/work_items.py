"""
Work item models for the flow metrics engine.

Work items arrive from the state query collaborator as loosely shaped rows.
They are validated here, at the boundary, into closed pydantic models so the
calculation engines never handle untyped records. Field aliases follow the
camelCase names used by the upstream rows while the Python attributes are
snake_case.

Milestone timestamps are always timezone-aware; naive values are assumed to
be UTC.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .enums import StateCategory


class CamelModel(BaseModel):
    """Base model accepting both camelCase aliases and snake_case names."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class CustomFieldValue(CamelModel):
    """
    One name/value pair from a work item's custom fields.

    Attributes:
        datasource_field_name: Field identifier in the source system
        display_name: Human readable field name
        value: Raw field value (None when unset)
        tags: Classification tags configured for the field (e.g. blockedReason)
    """

    datasource_field_name: str = Field(description="Field identifier in the source system")
    display_name: Optional[str] = Field(default=None, description="Human readable field name")
    value: Optional[str] = Field(default=None, description="Raw field value")
    tags: Optional[str] = Field(default=None, description="Comma separated field tags")


class CustomFieldConfig(CamelModel):
    """Organisation level configuration of one custom field."""

    datasource_field_name: str = Field(description="Field identifier in the source system")
    display_name: Optional[str] = Field(default=None, description="Human readable field name")
    tags: str = Field(default="", description="Comma separated field tags")

    def has_tag(self, tag: str) -> bool:
        return tag in [t.strip() for t in self.tags.split(",") if t.strip()]


class WorkItemTypeConfig(CamelModel):
    """Service level expectation configured for one work item type."""

    id: str = Field(description="Work item type id")
    display_name: Optional[str] = Field(default=None, description="Work item type name")
    service_level_expectation_in_days: Optional[int] = Field(
        default=None, ge=0, description="Target lead time in days"
    )


class WorkItem(CamelModel):
    """
    A unit of delivery work as it exists in the tracking system.

    Attributes:
        work_item_id: Identity of the item, unique per organisation
        state_category: Current lifecycle bucket
        arrival_date_time: Entry into the backlog
        commitment_date_time: Start of active work
        departure_date_time: Completion
        lead_time_in_whole_days: Days between start and completion
        normalised_display_name: Tag driven classification label
        custom_fields: Ordered custom field values
    """

    work_item_id: str = Field(description="Work item identifier")
    title: Optional[str] = Field(default=None, description="Work item title")
    state: Optional[str] = Field(default=None, description="Workflow state name")
    state_category: Optional[StateCategory] = Field(
        default=None, description="Current lifecycle bucket"
    )
    state_type: Optional[str] = Field(default=None, description="active or queue")
    state_order: Optional[int] = Field(default=None, description="Workflow state order")
    work_item_type: Optional[str] = Field(default=None, description="Source type name")
    flomatika_work_item_type_id: Optional[str] = Field(
        default=None, description="Normalised work item type id"
    )
    flomatika_work_item_type_name: Optional[str] = Field(
        default=None, description="Normalised work item type name"
    )
    flomatika_work_item_type_level: Optional[str] = Field(
        default=None, description="Portfolio, Team or Individual Contributor"
    )
    flomatika_work_item_type_service_level_expectation_in_days: Optional[int] = Field(
        default=None, description="SLE configured for the item's type"
    )
    assigned_to: Optional[str] = Field(default=None, description="Assignee")
    changed_date: Optional[datetime] = Field(default=None, description="Last change")
    arrival_date_time: Optional[datetime] = Field(default=None, description="Backlog entry")
    commitment_date_time: Optional[datetime] = Field(default=None, description="Work started")
    departure_date_time: Optional[datetime] = Field(default=None, description="Work completed")
    lead_time_in_whole_days: Optional[int] = Field(default=None, description="Lead time")
    wip_age_in_whole_days: Optional[int] = Field(default=None, description="WIP age")
    inventory_age_in_whole_days: Optional[int] = Field(default=None, description="Inventory age")
    class_of_service_id: Optional[str] = Field(default=None, description="Class of service")
    normalised_display_name: Optional[str] = Field(
        default=None, description="Normalisation label resolved upstream"
    )
    custom_fields: list[CustomFieldValue] = Field(
        default_factory=list, description="Ordered custom field values"
    )

    @field_validator(
        "changed_date",
        "arrival_date_time",
        "commitment_date_time",
        "departure_date_time",
    )
    @classmethod
    def ensure_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Treat naive timestamps as UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def is_consistent(self) -> bool:
        """
        Check the state category against the populated milestones.

        Completed items always have a departure date and proposed items never
        have a commitment date.
        """
        if self.state_category == StateCategory.COMPLETED:
            return self.departure_date_time is not None
        if self.state_category == StateCategory.PROPOSED:
            return self.commitment_date_time is None
        return True

    def custom_field_values(self, field_names: list[str]) -> list[Optional[str]]:
        """Values of the custom fields whose name is in ``field_names``."""
        return [
            f.value for f in self.custom_fields if f.datasource_field_name in field_names
        ]


class ExtendedWorkItem(WorkItem):
    """
    Work item enriched with the engine's classification flags.

    The flags are computed (upstream or by the engines) rather than stored.
    """

    is_blocked: bool = Field(default=False, description="Item is blocked")
    is_stale: bool = Field(default=False, description="No change within threshold")
    is_delayed: bool = Field(default=False, description="Committed but not started")
    is_above_sle: bool = Field(default=False, description="Lead time above SLE")
    is_above_sle_by_wip_age: bool = Field(default=False, description="WIP age above SLE")
    is_expedited: bool = Field(default=False, description="Expedite class of service")
    is_unassigned: bool = Field(default=False, description="No assignee")
    is_discarded_before: bool = Field(default=False, description="Discarded before start")
    is_discarded_after: bool = Field(default=False, description="Discarded after start")
    flagged: bool = Field(default=False, description="Flagged in the source system")
    step_category: Optional[str] = Field(default=None, description="Workflow step category")
    active_time: Optional[float] = Field(default=None, description="Active time in days")
    waiting_time: Optional[float] = Field(default=None, description="Waiting time in days")

    @field_validator(
        "is_blocked",
        "is_stale",
        "is_delayed",
        "is_above_sle",
        "is_above_sle_by_wip_age",
        "is_expedited",
        "is_unassigned",
        "is_discarded_before",
        "is_discarded_after",
        "flagged",
        mode="before",
    )
    @classmethod
    def null_flag_is_false(cls, v):
        """Upstream rows send null for unset flags."""
        return False if v is None else v
