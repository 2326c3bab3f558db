"""Class of service distribution of upcoming, in-process and completed work."""

from flowmetrics.engine.calculations.distribution import DistributionCalculations
from flowmetrics.models.enums import PredefinedFilterTag, WidgetType


class ClassOfServiceCalculations(DistributionCalculations):
    """
    Work split by class of service.

    Historical buckets use "was" membership unless the request asks for
    "became" date analysis.
    """

    tag = PredefinedFilterTag.CLASS_OF_SERVICE
    upcoming_widget = WidgetType.CLASS_OF_SERVICE_UPCOMING_WORK
    work_in_process_widget = WidgetType.CLASS_OF_SERVICE_WORK_IN_PROCESS
    completed_widget = WidgetType.CLASS_OF_SERVICE_COMPLETED_WORK

    async def get_upcoming_work_classes_of_service(self) -> dict:
        return await self.get_upcoming_work()

    async def get_work_in_process_classes_of_service(self) -> dict:
        return await self.get_work_in_process()

    async def get_completed_work_classes_of_service(self) -> dict:
        return await self.get_completed_work()
