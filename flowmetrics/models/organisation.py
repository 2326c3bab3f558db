"""
Organisation level models consumed by the engine.

These describe what the engine receives from the settings, security and
widget information collaborators. None of them are persisted by the engine.
"""

from typing import Optional

from pydantic import Field

from .work_items import CamelModel


class OrgSettings(CamelModel):
    """
    Organisation settings relevant to flow metric calculations.

    Values are kept loosely typed where the upstream store is known to hold
    strings or garbage; the engine validates them at the point of use.

    Attributes:
        rolling_window_period_in_days: Default lookback when no date range is given
        exclude_weekends: Whether active/queue time skips weekends
        staled_item_portfolio_level_number_of_days: Stale threshold for Portfolio items
        staled_item_team_level_number_of_days: Stale threshold for Team items
        staled_item_individual_contributor_number_of_days: Stale threshold for IC items
    """

    rolling_window_period_in_days: Optional[object] = Field(
        default=None, description="Rolling window in days (may be malformed)"
    )
    exclude_weekends: Optional[bool] = Field(default=None, description="Skip weekends")
    staled_item_portfolio_level_number_of_days: Optional[int] = Field(
        default=None, ge=0, description="Portfolio stale threshold"
    )
    staled_item_team_level_number_of_days: Optional[int] = Field(
        default=None, ge=0, description="Team stale threshold"
    )
    staled_item_individual_contributor_number_of_days: Optional[int] = Field(
        default=None, ge=0, description="Individual Contributor stale threshold"
    )


class SecurityContext(CamelModel):
    """
    Caller identity supplied by the (external) authentication layer.

    Attributes:
        organisation: Organisation id every query is scoped to
        roles: Roles granted to the caller
        allowed_context_ids: Contexts the caller may see when access control is on
        context_access_control_enabled: Organisation enforces context access control
    """

    organisation: str = Field(description="Organisation id")
    roles: list[str] = Field(default_factory=list, description="Caller roles")
    allowed_context_ids: list[str] = Field(
        default_factory=list, description="Contexts the caller may see"
    )
    context_access_control_enabled: bool = Field(
        default=False, description="Organisation enforces context access control"
    )

    def is_power_user(self) -> bool:
        return "powerUser" in self.roles or self.is_admin_user()

    def is_admin_user(self) -> bool:
        return "admin" in self.roles

    def is_context_access_control_enabled(self) -> bool:
        return self.context_access_control_enabled


class WidgetInformation(CamelModel):
    """Descriptive widget text, attached to responses unmodified."""

    name: Optional[str] = Field(default=None, description="Widget name")
    description: Optional[str] = Field(default=None, description="What the widget shows")
    how_to_read: Optional[str] = Field(default=None, description="Reading guidance")
    why_is_it_important: Optional[str] = Field(default=None, description="Motivation")
    reference_guide: Optional[str] = Field(default=None, description="Reference link")
