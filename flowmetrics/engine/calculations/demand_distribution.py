"""
Demand distribution of upcoming, in-process and completed work.

Unlike class of service, bucket membership is fixed per widget: upcoming
work and work in process count what *was* in the category during a bucket,
completed work counts what *became* completed in it. Delayed items are
forced into the upcoming historical and completed retrievals.
"""

from flowmetrics.engine.calculations.distribution import DistributionCalculations
from flowmetrics.models.enums import PredefinedFilterTag, WidgetType


class DemandDistributionCalculations(DistributionCalculations):
    """Work split by demand type."""

    tag = PredefinedFilterTag.DEMAND
    upcoming_widget = WidgetType.DEMAND_DISTRIBUTION_UPCOMING_WORK
    work_in_process_widget = WidgetType.DEMAND_DISTRIBUTION_WORK_IN_PROCESS
    completed_widget = WidgetType.DEMAND_DISTRIBUTION_COMPLETED_WORK

    def upcoming_is_became_scenario(self) -> bool:
        return False

    def work_in_process_is_became_scenario(self) -> bool:
        return False

    def completed_is_became_scenario(self) -> bool:
        return True

    async def get_upcoming_work_demand_distribution(self) -> dict:
        return await self.get_upcoming_work(force_delayed=True)

    async def get_work_in_process_demand_distribution(self) -> dict:
        return await self.get_work_in_process()

    async def get_completed_work_demand_distribution(self) -> dict:
        return await self.get_completed_work(force_delayed=True)
