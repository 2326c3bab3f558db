"""
Snapshot and time-accounting rows returned by the snapshot query collaborator.

Snapshots are the per-event history of a work item. The engine derives
durations from consecutive events itself, so only the raw event fields are
modelled here, plus the pre-aggregated rows of the CFD and active/queue time
queries.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import Field, field_validator

from .work_items import CamelModel


class SnapshotEvent(CamelModel):
    """
    One state-change event from a work item's snapshot history.

    Attributes:
        work_item_id: Item the event belongs to
        flomatika_snapshot_date: When the item entered ``state``
        state: Workflow state entered
        state_type: active or queue
        state_category: proposed, inprogress or completed
        step_category: Workflow step category of the entered state
        previous_state_type: State type left by this event
        previous_step_category: Step category left by this event
        flomatika_work_item_type_level: Level of the item's type
    """

    work_item_id: str = Field(description="Work item identifier")
    flomatika_snapshot_date: datetime = Field(description="Event timestamp")
    state: Optional[str] = Field(default=None, description="State entered")
    state_type: Optional[str] = Field(default=None, description="active or queue")
    state_category: Optional[str] = Field(default=None, description="Lifecycle bucket entered")
    step_category: Optional[str] = Field(default=None, description="Step category entered")
    previous_state_type: Optional[str] = Field(default=None, description="State type left")
    previous_step_category: Optional[str] = Field(default=None, description="Step category left")
    flomatika_work_item_type_level: Optional[str] = Field(default=None, description="Type level")

    @field_validator("flomatika_snapshot_date")
    @classmethod
    def ensure_timezone(cls, v: datetime) -> datetime:
        """Treat naive timestamps as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class CfdRow(CamelModel):
    """Count of items in a state on one day, as stored for the CFD."""

    state: str = Field(description="State or step category name")
    flomatika_snapshot_date: str = Field(description="ISO day (YYYY-MM-DD)")
    cumulative_flow_count: object = Field(default=0, description="Item count, possibly malformed")


class ActiveQueueTimeRow(CamelModel):
    """
    Active and waiting time of one work item inside a date range.

    ``active_time`` and ``waiting_time`` are hour counts, the ``*_in_seconds``
    variants are the exact durations. Union queries tag each row with the
    bucket that requested it.
    """

    work_item_id: Optional[str] = Field(default=None, description="Work item identifier")
    active_time: Optional[float] = Field(default=None, description="Active hours")
    waiting_time: Optional[float] = Field(default=None, description="Waiting hours")
    active_time_in_seconds: Optional[float] = Field(default=None, description="Active seconds")
    waiting_time_in_seconds: Optional[float] = Field(default=None, description="Waiting seconds")
    bucket_id: Optional[int] = Field(default=None, description="Requesting bucket tag")


class TimeInStageRow(CamelModel):
    """Seconds one work item spent in one workflow state."""

    work_item_id: str = Field(description="Work item identifier")
    state: str = Field(description="Workflow state")
    time_in_state_seconds: float = Field(ge=0, description="Seconds spent in the state")


class BucketQuery(CamelModel):
    """One bucket of a tagged union query."""

    bucket_id: int = Field(ge=0, description="Tag copied onto every returned row")
    start: datetime = Field(description="Bucket start (inclusive)")
    end: datetime = Field(description="Bucket end (exclusive)")
