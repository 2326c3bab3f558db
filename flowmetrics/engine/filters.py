"""
Per-request query filter context.

``QueryFilters`` turns the raw query-string parameters of one request into
the canonical filter state every calculation engine reads: the date period
(with the rolling window fallback), the aggregation, the work item type /
level / step / class-of-service selections, custom field and normalisation
selections, and the context visibility rule.

Two error paths are kept apart on purpose:
    - Parse helpers (parse_*) never raise; bad input degrades to a default.
    - Date period resolution raises InvalidDatePeriodError when no period
      can be derived at all.
"""

import copy
import hashlib
import json
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from dateutil.parser import isoparse
from dateutil.relativedelta import relativedelta

from flowmetrics.config import Settings, get_settings
from flowmetrics.engine.aggregation import diff_in_months, end_of, is_aggregation_valid, start_of
from flowmetrics.models.enums import AggregationKey, DateAnalysisOption
from flowmetrics.models.intervals import Interval
from flowmetrics.models.organisation import SecurityContext
from flowmetrics.services.base import ContextVisibilityService, OrgSettingsService

logger = structlog.get_logger()

WORK_ITEM_TYPES_PARAM = "workItemTypes"
WORK_ITEM_LEVELS_PARAM = "workItemLevels"
WORKFLOW_STEPS_PARAM = "workflowSteps"
CLASSES_OF_SERVICE_PARAM = "classesOfService"
DEPARTURE_DATE_LOWER_PARAM = "departureDateLowerBoundary"
DEPARTURE_DATE_UPPER_PARAM = "departureDateUpperBoundary"
CONTEXT_ID_PARAM = "contextId"
DELAYED_ITEMS_SELECTION_PARAM = "delayedItemsSelection"
DATE_ANALYSIS_OPTION_PARAM = "dateAnalysisOption"
CUSTOM_FIELDS_PARAM = "customFields"
NORMALIZATION_PARAM = "normalization"
RESOLUTION_PARAM = "resolution"
ASSIGNED_TO_PARAM = "assignedTo"
FLAGGED_PARAM = "flagged"
AGGREGATION_PARAM = "currentDataAggregation"

EMPTY_FIELD = "EMPTY_FIELD"

_PLURAL_AGGREGATIONS = {
    "days": AggregationKey.DAY,
    "weeks": AggregationKey.WEEK,
    "months": AggregationKey.MONTH,
    "quarters": AggregationKey.QUARTER,
    "years": AggregationKey.YEAR,
}

RollingWindowLookup = Callable[[], Awaitable[Optional[int]]]


class InvalidDatePeriodError(ValueError):
    """No date period could be derived from the request."""

    pass


class InvalidAggregationError(ValueError):
    """The aggregation parameter does not name an aggregation."""

    pass


class RollingWindowUnresolvedError(RuntimeError):
    """Every link of the rolling window chain returned nothing."""

    pass


# ---------------------------------------------------------------------------
# Lenient parse helpers
# ---------------------------------------------------------------------------


def parse_list(value: Any) -> Optional[list[str]]:
    """Split a comma separated parameter; None when absent."""
    if not isinstance(value, str) or value == "":
        return None
    return value.split(",")


def parse_custom_field_parameters(value: Any) -> dict[str, list[str]]:
    """
    Parse ``field#value`` pairs into a multi-valued map.

    Example:
        >>> parse_custom_field_parameters("labels#Refined,labels#stability,priority#Minor")
        {'labels': ['Refined', 'stability'], 'priority': ['Minor']}

    Pairs without a ``#`` separator are ignored; anything that is not a
    string yields an empty map.
    """
    if not isinstance(value, str) or not value:
        return {}

    fields: dict[str, list[str]] = {}
    for pair in value.split(","):
        key, separator, field_value = pair.partition("#")
        if not separator or not key:
            continue
        fields.setdefault(key, []).append(field_value)
    return fields


def parse_normalization_parameters(value: Any) -> Optional[dict[str, list[str]]]:
    """Parse ``category#id`` pairs, accumulating ids per category."""
    if not isinstance(value, str) or not value:
        return None

    normalization: dict[str, list[str]] = {}
    for pair in value.split(","):
        category, separator, normalisation_id = pair.partition("#")
        if not separator or not category:
            continue
        normalization[category] = normalization.get(category, []) + [normalisation_id]
    return normalization


def parse_flagged(value: Any) -> Optional[bool]:
    """
    Tri-state flagged selection.

    Only "Yes" and "No" are considered. Exactly one selected gives the
    matching boolean; both or neither mean no filter (None).
    """
    selected = {v for v in (parse_list(value) or []) if v in ("Yes", "No")}
    if selected == {"Yes"}:
        return True
    if selected == {"No"}:
        return False
    return None


def parse_date_analysis_option(value: Any) -> DateAnalysisOption:
    if value == DateAnalysisOption.WAS.value:
        return DateAnalysisOption.WAS
    if value == DateAnalysisOption.BECAME.value:
        return DateAnalysisOption.BECAME
    return DateAnalysisOption.ALL


def parse_data_aggregation(value: Any) -> AggregationKey:
    """Plural UI aggregation ("Weeks") to a key; week when unrecognised."""
    if not isinstance(value, str):
        return AggregationKey.WEEK
    return _PLURAL_AGGREGATIONS.get(value.lower(), AggregationKey.WEEK)


def parse_timezone(value: Any, default: str = "UTC") -> str:
    """Return ``value`` when it names an IANA zone, else ``default``."""
    if isinstance(value, str) and value:
        try:
            ZoneInfo(value)
            return value
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("invalid_timezone_parameter", timezone=value, fallback=default)
    return default


def parse_date_in_zone(value: Any, zone: ZoneInfo) -> Optional[datetime]:
    """
    Parse an ISO date(time) parameter into ``zone``.

    Naive values are read as wall-clock time in ``zone``; values carrying an
    offset are converted to it. Unparseable input gives None.
    """
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = isoparse(value)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=zone)
    return parsed.astimezone(zone)


def as_day_count(value: Any) -> Optional[int]:
    """Numeric day count from a loosely typed setting, None when not numeric."""
    if value is None or isinstance(value, bool):
        return None
    try:
        days = float(value)
    except (OverflowError, TypeError, ValueError):
        return None
    if days != days or days in (float("inf"), float("-inf")):
        return None
    return int(days)


async def resolve_rolling_window(lookups: Sequence[tuple[str, RollingWindowLookup]]) -> int:
    """
    Try rolling window lookups in order and return the first value found.

    A lookup that raises is logged and skipped.

    Raises:
        RollingWindowUnresolvedError: If no lookup produced a value
    """
    for source, lookup in lookups:
        try:
            days = await lookup()
        except Exception as e:
            logger.error("rolling_window_lookup_failed", source=source, error=str(e))
            continue
        if days is not None:
            return days
    raise RollingWindowUnresolvedError("No rolling window value resolved from any source")


class QueryFilters:
    """
    Canonical filter state of one request.

    Constructed once per request from query-string parameters. The only
    mutations after construction are ``set_safe_aggregation()`` and the
    ``filter_by_date`` / ``filter_by_state_category`` / ``date_analysis_option``
    switches engines flip before a specific query.
    """

    def __init__(
        self,
        query_parameters: Optional[Mapping[str, Any]],
        security: SecurityContext,
        org_settings_service: OrgSettingsService,
        context_service: Optional[ContextVisibilityService] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[ZoneInfo], datetime]] = None,
    ):
        """
        Parse the request parameters.

        Args:
            query_parameters: Raw query-string parameters (None when absent)
            security: Caller identity and access rules
            org_settings_service: Source of organisation settings
            context_service: Source of context level settings
            settings: Engine settings (defaults to the cached settings)
            clock: Returns "now" in a zone; injectable for tests
        """
        self.settings = settings or get_settings()
        self.security = security
        self.org_settings_service = org_settings_service
        self.context_service = context_service
        self._clock = clock or (lambda zone: datetime.now(zone))
        self.logger = logger.bind(org_id=security.organisation)

        self.query_parameters: dict[str, Any] = dict(query_parameters or {})
        params = self.query_parameters

        self.client_timezone = parse_timezone(
            params.get("timezone") or params.get("tz"), self.settings.default_timezone
        )
        self.client_language: Optional[str] = params.get("lang")

        self._context_id: Optional[str] = params.get(CONTEXT_ID_PARAM)
        self.work_item_types = parse_list(params.get(WORK_ITEM_TYPES_PARAM))
        self.work_item_levels = parse_list(params.get(WORK_ITEM_LEVELS_PARAM))
        self.workflow_steps = parse_list(params.get(WORKFLOW_STEPS_PARAM))
        self.classes_of_service = parse_list(params.get(CLASSES_OF_SERVICE_PARAM))
        self.resolution = parse_list(params.get(RESOLUTION_PARAM))
        self.assigned_to = parse_list(params.get(ASSIGNED_TO_PARAM))
        self.delayed_items_selection: Optional[str] = params.get(DELAYED_ITEMS_SELECTION_PARAM)
        self.date_analysis_option = parse_date_analysis_option(
            params.get(DATE_ANALYSIS_OPTION_PARAM)
        )
        self.custom_fields = parse_custom_field_parameters(params.get(CUSTOM_FIELDS_PARAM))
        self.normalization = parse_normalization_parameters(params.get(NORMALIZATION_PARAM))
        self.flagged = parse_flagged(params.get(FLAGGED_PARAM))

        if AGGREGATION_PARAM in params:
            self._aggregation = parse_data_aggregation(params.get(AGGREGATION_PARAM))
        else:
            self._aggregation = parse_data_aggregation(self.settings.default_aggregation + "s")

        self.filter_by_date = True
        self.filter_by_state_category = True

    @property
    def org_id(self) -> str:
        return self.security.organisation

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.client_timezone)

    @property
    def aggregation(self) -> AggregationKey:
        return self._aggregation

    @aggregation.setter
    def aggregation(self, value: AggregationKey) -> None:
        self._aggregation = AggregationKey(value)

    def now(self) -> datetime:
        """Current time in the client timezone."""
        return self._clock(self.zone)

    def get_context_id(self) -> Optional[str]:
        """
        Requested context id, subject to the visibility gate.

        Non power users in an organisation with context access control only
        get the context back when it is in their allow-list.
        """
        if not self._context_id:
            return None
        if not self.security.is_power_user():
            if (
                self.security.is_context_access_control_enabled()
                and self._context_id not in self.security.allowed_context_ids
            ):
                return None
        return self._context_id

    async def get_exclude_weekends_setting(self) -> bool:
        org_settings = await self.org_settings_service.get_settings(self.org_id)
        return bool(org_settings and org_settings.exclude_weekends is True)

    # -----------------------------------------------------------------------
    # Rolling window
    # -----------------------------------------------------------------------

    def rolling_window_lookups(self) -> list[tuple[str, RollingWindowLookup]]:
        """Context setting, then organisation setting, then the engine default."""

        async def from_context() -> Optional[int]:
            context_id = self.query_parameters.get(CONTEXT_ID_PARAM)
            if not context_id or self.context_service is None:
                return None
            context = await self.context_service.get_if_visible(context_id)
            if not context:
                return None
            return as_day_count(context.get("rollingWindowPeriodInDays"))

        async def from_organisation() -> Optional[int]:
            org_settings = await self.org_settings_service.get_settings(self.org_id)
            configured = org_settings.rolling_window_period_in_days if org_settings else None
            days = as_day_count(configured)
            return self.settings.default_rolling_window_days if days is None else days

        async def from_default() -> Optional[int]:
            return self.settings.default_rolling_window_days

        return [
            ("context", from_context),
            ("organisation", from_organisation),
            ("default", from_default),
        ]

    async def get_rolling_window_days(self) -> int:
        try:
            return await resolve_rolling_window(self.rolling_window_lookups())
        except RollingWindowUnresolvedError:
            self.logger.error("rolling_window_unresolved")
            return self.settings.default_rolling_window_days

    # -----------------------------------------------------------------------
    # Date period
    # -----------------------------------------------------------------------

    def _boundaries(self) -> tuple[Optional[datetime], Optional[datetime]]:
        zone = self.zone
        start = parse_date_in_zone(self.query_parameters.get(DEPARTURE_DATE_LOWER_PARAM), zone)
        end = parse_date_in_zone(self.query_parameters.get(DEPARTURE_DATE_UPPER_PARAM), zone)
        if start is not None:
            start = start_of(start, AggregationKey.DAY)
        if end is not None:
            end = end_of(end, AggregationKey.DAY)
        return start, end

    async def date_period(self) -> Interval:
        """
        Date period of the request in the client timezone.

        Explicit boundaries start at the beginning of their day and end at the
        end of their day. A missing end is the end of today; a missing start
        is the start of the week ``rolling window`` days before the end. An
        inverted pair is swapped.

        Returns:
            Interval with both bounds in the client timezone

        Raises:
            InvalidDatePeriodError: If the period cannot be computed
        """
        try:
            start, end = self._boundaries()
            if end is None:
                end = end_of(self.now(), AggregationKey.DAY)
            if start is None:
                rolling_window_days = await self.get_rolling_window_days()
                start = start_of(end - relativedelta(days=rolling_window_days), AggregationKey.WEEK)
        except (OverflowError, ValueError) as e:
            self.logger.error("date_period_invalid", error=str(e))
            raise InvalidDatePeriodError("Invalid date period filter") from e

        if start <= end:
            return Interval(start=start, end=end)
        return Interval(start=end, end=start)

    def date_period_unsafe(self) -> Optional[Interval]:
        """
        Date period from explicit boundaries only, without the rolling window.

        Returns None unless both boundaries parse and are in order.
        """
        try:
            start, end = self._boundaries()
        except (OverflowError, ValueError):
            return None
        if start is None or end is None or end < start:
            return None
        return Interval(start=start, end=end)

    # -----------------------------------------------------------------------
    # Aggregation
    # -----------------------------------------------------------------------

    def get_current_data_aggregation(self) -> AggregationKey:
        """
        Aggregation read straight from the request.

        Deprecated: use the ``aggregation`` property.

        Raises:
            InvalidAggregationError: If the parameter names no aggregation
        """
        raw = self.query_parameters.get(AGGREGATION_PARAM) or "Weeks"
        aggregation = str(raw).lower()
        if aggregation.endswith("s"):
            aggregation = aggregation[:-1]
        if not is_aggregation_valid(aggregation):
            raise InvalidAggregationError("Invalid aggregation")
        return AggregationKey(aggregation)

    def set_safe_aggregation(self) -> None:
        """
        Widen the aggregation for long explicit date ranges.

        Up to 3 months aggregates by week, up to 12 by month, up to 24 by
        quarter and anything longer by year. Does nothing without both
        explicit boundaries.
        """
        interval = self.date_period_unsafe()
        if interval is None:
            return

        months = diff_in_months(interval.start, interval.end)
        if months <= 3:
            self.aggregation = AggregationKey.WEEK
        elif months <= 12:
            self.aggregation = AggregationKey.MONTH
        elif months <= 24:
            self.aggregation = AggregationKey.QUARTER
        else:
            self.aggregation = AggregationKey.YEAR

    # -----------------------------------------------------------------------
    # Identity
    # -----------------------------------------------------------------------

    def fingerprint(self) -> str:
        """Stable digest of everything that changes what a query returns."""
        state = {
            "org_id": self.org_id,
            "parameters": self.query_parameters,
            "context_id": self.get_context_id(),
            "aggregation": self.aggregation.value,
            "date_analysis_option": self.date_analysis_option.value,
            "filter_by_date": self.filter_by_date,
            "filter_by_state_category": self.filter_by_state_category,
        }
        canonical = json.dumps(state, sort_keys=True, default=str)
        return hashlib.sha1(canonical.encode("utf-8")).hexdigest()

    def copy_with_boundaries(self, start: datetime, end: datetime) -> "QueryFilters":
        """Shallow copy whose explicit date boundaries are ``start`` and ``end``."""
        clone = copy.copy(self)
        clone.query_parameters = {
            **self.query_parameters,
            DEPARTURE_DATE_LOWER_PARAM: start.isoformat(),
            DEPARTURE_DATE_UPPER_PARAM: end.isoformat(),
        }
        return clone
