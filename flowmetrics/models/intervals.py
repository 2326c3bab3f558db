"""Immutable timezone-aware date range."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Interval(BaseModel):
    """
    A [start, end] date range.

    ``contains`` is half-open (start inclusive, end exclusive); bucket
    membership rules that differ are documented where they are applied.

    Attributes:
        start: Range start (timezone-aware)
        end: Range end (timezone-aware, never before start)
    """

    model_config = ConfigDict(frozen=True)

    start: datetime = Field(description="Range start")
    end: datetime = Field(description="Range end")

    @model_validator(mode="after")
    def check_order(self) -> "Interval":
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("Interval bounds must be timezone-aware")
        if self.end < self.start:
            raise ValueError("Interval end is before its start")
        return self

    def contains(self, value: datetime) -> bool:
        return self.start <= value < self.end

    def with_zone(self, zone) -> "Interval":
        """Same instants expressed in ``zone``."""
        return Interval(start=self.start.astimezone(zone), end=self.end.astimezone(zone))
