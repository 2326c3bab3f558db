"""
Base class of the per-widget calculation engines.

A calculation instance lives for exactly one request. It holds the request's
``QueryFilters``, the collaborators it reads from and the request-scoped
memo caches that make repeated retrievals of the same dataset free.
"""

from typing import Optional, Sequence

from flowmetrics.config import Settings, get_settings
from flowmetrics.engine.cache import CacheKey, MemoCache
from flowmetrics.engine.calculations.common import to_work_items
from flowmetrics.engine.filters import QueryFilters
from flowmetrics.models.enums import PredefinedFilterTag, RetrievalScenario, StateCategory, WidgetType
from flowmetrics.models.work_items import ExtendedWorkItem, WorkItem
from flowmetrics.services.base import (
    SnapshotQueryService,
    StateQueryService,
    WidgetInformationService,
)
from flowmetrics.utils.logging import get_engine_logger


class BaseCalculations:
    """
    Shared plumbing for calculation engines.

    Subclasses call ``scenario_work_items`` / ``category_work_items`` instead
    of the state collaborator directly so that every dataset is fetched at
    most once per request, including when several coroutines ask for it
    concurrently.
    """

    def __init__(
        self,
        filters: QueryFilters,
        state_service: Optional[StateQueryService] = None,
        snapshot_service: Optional[SnapshotQueryService] = None,
        widget_information_service: Optional[WidgetInformationService] = None,
        settings: Optional[Settings] = None,
    ):
        self.filters = filters
        self.org_id = filters.org_id
        self.state_service = state_service
        self.snapshot_service = snapshot_service
        self.widget_information_service = widget_information_service
        self.settings = settings or filters.settings or get_settings()
        self.logger = get_engine_logger(type(self).__name__, self.org_id)

        self._scenario_cache: MemoCache[list[ExtendedWorkItem]] = MemoCache("scenario_work_items")
        self._normalised_cache: MemoCache[list[ExtendedWorkItem]] = MemoCache(
            "normalised_work_items"
        )
        self._category_cache: MemoCache[list[WorkItem]] = MemoCache("category_work_items")

    def _require_state_service(self) -> StateQueryService:
        if self.state_service is None:
            raise RuntimeError(f"{type(self).__name__} requires a state query service")
        return self.state_service

    def _require_snapshot_service(self) -> SnapshotQueryService:
        if self.snapshot_service is None:
            raise RuntimeError(f"{type(self).__name__} requires a snapshot query service")
        return self.snapshot_service

    async def scenario_work_items(
        self,
        scenarios: Sequence[RetrievalScenario],
        tag: Optional[PredefinedFilterTag] = None,
        force_delayed: Optional[bool] = None,
    ) -> list[ExtendedWorkItem]:
        """
        Extended work items for a set of retrieval scenarios, memoized.

        With a ``tag`` the normalised variant of the query is used and results
        are cached separately from the plain scenario query.
        """
        state = self._require_state_service()
        selector = ",".join(s.value for s in scenarios)
        if force_delayed is not None:
            selector += f"|delayed={force_delayed}"
        key = CacheKey(
            org_id=self.org_id,
            selector=selector,
            tag=tag.value if tag else "",
            filter_digest=self.filters.fingerprint(),
        )

        if tag is None:

            async def fetch():
                rows = await state.get_extended_work_items_with_scenarios(
                    self.org_id, list(scenarios), self.filters, force_delayed=force_delayed
                )
                return to_work_items(rows, ExtendedWorkItem, source=selector)

            return await self._scenario_cache.get_or_create(key, fetch)

        async def fetch_normalised():
            rows = await state.get_normalised_extended_work_items_with_scenarios(
                self.org_id, list(scenarios), self.filters, tag, force_delayed=force_delayed
            )
            return to_work_items(rows, ExtendedWorkItem, source=f"{selector}#{tag.value}")

        return await self._normalised_cache.get_or_create(key, fetch_normalised)

    async def category_work_items(
        self,
        state_category: StateCategory,
        tag: Optional[PredefinedFilterTag] = None,
    ) -> list[WorkItem]:
        """Work items of one state category (optionally normalised), memoized."""
        state = self._require_state_service()
        key = CacheKey(
            org_id=self.org_id,
            selector=state_category.value,
            tag=tag.value if tag else "",
            filter_digest=self.filters.fingerprint(),
        )

        async def fetch():
            if tag is None:
                rows = await state.get_work_items(self.org_id, state_category, self.filters)
            else:
                rows = await state.get_normalised_work_items(
                    self.org_id, state_category, self.filters, tag
                )
            return to_work_items(rows, WorkItem, source=state_category.value)

        return await self._category_cache.get_or_create(key, fetch)

    async def get_widget_information(self, widget_type: WidgetType) -> list[dict]:
        """
        Descriptive widget text, or an empty list when unavailable.

        Widget information is optional enrichment; a failing lookup never
        aborts the calculation.
        """
        if self.widget_information_service is None:
            return []
        try:
            information = await self.widget_information_service.get_widget_information(
                widget_type
            )
        except Exception as e:
            self.logger.warning(
                "widget_information_unavailable", widget_type=widget_type.value, error=str(e)
            )
            return []
        return [
            dict(i) if isinstance(i, dict) else i.model_dump(by_alias=True) for i in information
        ]
