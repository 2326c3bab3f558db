"""
Shared shape of the normalisation-tag distribution widgets.

Class of service and demand distribution both split upcoming work, work in
process and completed work by a normalisation label. Each widget reports the
current distribution (label -> count) and a historical series of the same
counts per aggregation bucket.
"""

from typing import Optional

from flowmetrics.engine.calculations.base import BaseCalculations
from flowmetrics.engine.calculations.common import (
    DatedWorkItem,
    count_by,
    group_work_item_list_by_aggregation,
    to_dated_work_items,
)
from flowmetrics.models.enums import (
    DateAnalysisOption,
    PredefinedFilterTag,
    RetrievalScenario,
    WidgetType,
)

# Date that places an item in a bucket, and the date after which it left
UPCOMING_DATES = ("arrival_date_time", "commitment_date_time")
WORK_IN_PROCESS_DATES = ("commitment_date_time", "departure_date_time")
COMPLETED_DATES = ("departure_date_time", None)


class DistributionCalculations(BaseCalculations):
    """
    Distribution and historical counts per normalisation label.

    Subclasses set ``tag`` and the three widget types, and may force delayed
    items into a retrieval or pin the bucket membership of a widget.
    """

    tag: PredefinedFilterTag
    upcoming_widget: WidgetType
    work_in_process_widget: WidgetType
    completed_widget: WidgetType

    @property
    def is_became_scenario(self) -> bool:
        return self.filters.date_analysis_option == DateAnalysisOption.BECAME

    async def normalised_items(
        self,
        scenario: RetrievalScenario,
        dates: tuple[str, Optional[str]],
        force_delayed: Optional[bool] = None,
    ) -> list[DatedWorkItem]:
        items = await self.scenario_work_items([scenario], tag=self.tag, force_delayed=force_delayed)
        date_field, exclusion_field = dates
        return to_dated_work_items(items, date_field, exclusion_field)

    async def build_widget(
        self,
        distribution_items: list[DatedWorkItem],
        historical_items: list[DatedWorkItem],
        is_became_scenario: bool,
        widget_type: WidgetType,
    ) -> dict:
        interval = await self.filters.date_period()
        historical = group_work_item_list_by_aggregation(
            historical_items, self.filters.aggregation, is_became_scenario, interval
        )
        return {
            "distribution": count_by(w.normalised_display_name for w in distribution_items),
            "historical": historical,
            "widgetInfo": await self.get_widget_information(widget_type),
        }

    async def get_upcoming_work(self, force_delayed: Optional[bool] = None) -> dict:
        """Current inventory by label; historical counts of what was inventory."""
        distribution_items = await self.normalised_items(
            RetrievalScenario.CURRENT_INVENTORY_ONLY, UPCOMING_DATES
        )
        historical_items = await self.normalised_items(
            RetrievalScenario.WAS_INVENTORY_BETWEEN_DATES, UPCOMING_DATES, force_delayed
        )
        return await self.build_widget(
            distribution_items,
            historical_items,
            self.upcoming_is_became_scenario(),
            self.upcoming_widget,
        )

    async def get_work_in_process(self) -> dict:
        distribution_items = await self.normalised_items(
            RetrievalScenario.CURRENT_WIP_ONLY, WORK_IN_PROCESS_DATES
        )
        historical_items = await self.normalised_items(
            RetrievalScenario.WAS_WIP_BETWEEN_DATES, WORK_IN_PROCESS_DATES
        )
        return await self.build_widget(
            distribution_items,
            historical_items,
            self.work_in_process_is_became_scenario(),
            self.work_in_process_widget,
        )

    async def get_completed_work(self, force_delayed: Optional[bool] = None) -> dict:
        """Items completed in the period, distributed and bucketed by departure."""
        completed_items = await self.normalised_items(
            RetrievalScenario.BECAME_COMPLETED_BETWEEN_DATES, COMPLETED_DATES, force_delayed
        )
        return await self.build_widget(
            completed_items,
            completed_items,
            self.completed_is_became_scenario(),
            self.completed_widget,
        )

    def upcoming_is_became_scenario(self) -> bool:
        return self.is_became_scenario

    def work_in_process_is_became_scenario(self) -> bool:
        return self.is_became_scenario

    def completed_is_became_scenario(self) -> bool:
        return self.is_became_scenario
