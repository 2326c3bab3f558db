"""
Property-based tests using Hypothesis for the flow metrics engine.

These tests check bounds and partitioning invariants of the date bucketing,
filter parsing, statistics and caching helpers across generated inputs.
"""

from datetime import date, datetime, timedelta, timezone

import hypothesis.strategies as st
import pytest
from hypothesis import given, settings

from flowmetrics.engine.aggregation import (
    generate_date_array,
    get_time_duration,
    separate_work_items_in_interval_buckets,
    start_of,
)
from flowmetrics.engine.cache import CacheKey, MemoCache
from flowmetrics.engine.calculations.performance_checkpoint import ProductivityBand, classify_productivity
from flowmetrics.engine.filters import (
    RollingWindowUnresolvedError,
    as_day_count,
    parse_flagged,
    resolve_rolling_window,
)
from flowmetrics.engine.statistics import get_percentile
from flowmetrics.engine.trend_analysis import DISPLAY_PERCENTAGE_LIMIT, get_percentual_difference
from flowmetrics.models.enums import AggregationKey
from flowmetrics.models.intervals import Interval
from tests.conftest import make_filters, run

UTC = timezone.utc

aggregations = st.sampled_from(list(AggregationKey))
instants = st.datetimes(
    min_value=datetime(2020, 1, 1),
    max_value=datetime(2026, 12, 31),
    timezones=st.just(UTC),
)
span_days = st.integers(min_value=0, max_value=400)


# =============================================================================
# Date Bucketing Property Tests
# =============================================================================


@given(start=instants, days=span_days, aggregation=aggregations)
@settings(max_examples=100, deadline=None)
def test_prop_date_array_aligned_and_ordered(start: datetime, days: int, aggregation: AggregationKey):
    """
    Invariant: Bucket starts are unit-aligned, strictly increasing and cover
    the interval start.

    Property: For any interval, every bucket start equals its own start_of,
    the first bucket holds interval.start and no bucket starts after
    interval.end.
    """
    interval = Interval(start=start, end=start + timedelta(days=days))

    dates = generate_date_array(interval, aggregation)

    assert len(dates) >= 1
    assert all(d == start_of(d, aggregation) for d in dates)
    assert all(a < b for a, b in zip(dates, dates[1:]))
    assert dates[0] <= interval.start < dates[0] + get_time_duration(1, aggregation)
    assert dates[-1] <= interval.end


@given(
    start=instants,
    days=span_days,
    aggregation=aggregations,
    offsets=st.lists(st.integers(min_value=-30 * 24 * 60, max_value=430 * 24 * 60), max_size=20),
)
@settings(max_examples=100, deadline=None)
def test_prop_buckets_partition_items(start: datetime, days: int, aggregation: AggregationKey, offsets: list[int]):
    """
    Invariant: Bucket membership is exclusive and exhaustive.

    Property: An item dated after the first bucket start and no later than
    the last bucket end lands in exactly one bucket; any other item lands in
    none.
    """
    interval = Interval(start=start, end=start + timedelta(days=days))
    items = [
        {"id": index, "departure_date_time": start + timedelta(minutes=offset)}
        for index, offset in enumerate(offsets)
    ]

    buckets = separate_work_items_in_interval_buckets(items, interval, aggregation, "departure_date_time")

    lower = buckets[0]["date_start"]
    upper = buckets[-1]["date_end"]
    for item in items:
        hits = sum(1 for b in buckets for member in b["work_item_list"] if member["id"] == item["id"])
        expected = 1 if lower < item["departure_date_time"] <= upper else 0
        assert hits == expected

    for earlier, later in zip(buckets, buckets[1:]):
        assert earlier["date_end"] == later["date_start"]


# =============================================================================
# Filter Parsing Property Tests
# =============================================================================


_AGGREGATION_RANK = [AggregationKey.WEEK, AggregationKey.MONTH, AggregationKey.QUARTER, AggregationKey.YEAR]


@given(
    start=st.dates(min_value=date(2020, 1, 1), max_value=date(2025, 12, 31)),
    shorter=st.integers(min_value=0, max_value=1200),
    extra=st.integers(min_value=0, max_value=1200),
)
@settings(max_examples=100, deadline=None)
def test_prop_safe_aggregation_monotonic(start: date, shorter: int, extra: int):
    """
    Invariant: Longer explicit ranges never get a finer safe aggregation.

    Property: For ranges r1 within r2 sharing a start, rank(safe(r1)) <=
    rank(safe(r2)).
    """

    def safe_aggregation(days: int) -> AggregationKey:
        filters = make_filters(
            {
                "departureDateLowerBoundary": start.isoformat(),
                "departureDateUpperBoundary": (start + timedelta(days=days)).isoformat(),
            }
        )
        filters.set_safe_aggregation()
        return filters.aggregation

    narrow = safe_aggregation(shorter)
    wide = safe_aggregation(shorter + extra)

    assert _AGGREGATION_RANK.index(narrow) <= _AGGREGATION_RANK.index(wide)


@given(selected=st.lists(st.sampled_from(["Yes", "No", "Maybe", "yes"]), min_size=1, max_size=5))
@settings(max_examples=100)
def test_prop_flagged_tri_state(selected: list[str]):
    """
    Invariant: The flagged filter is set only when exactly one of Yes and No
    is selected.

    Property: parse_flagged(list) is True for {Yes}, False for {No} and None
    otherwise.
    """
    result = parse_flagged(",".join(selected))

    known = set(selected) & {"Yes", "No"}
    if known == {"Yes"}:
        assert result is True
    elif known == {"No"}:
        assert result is False
    else:
        assert result is None


@given(
    value=st.one_of(
        st.none(),
        st.booleans(),
        st.integers(),
        st.floats(allow_nan=True, allow_infinity=True),
        st.text(max_size=20),
        st.lists(st.integers(), max_size=3),
    )
)
@settings(max_examples=100)
def test_prop_day_count_never_raises(value):
    """
    Invariant: Loosely typed day counts never raise.

    Property: as_day_count(x) is None or an int for any x.
    """
    result = as_day_count(value)
    assert result is None or isinstance(result, int)


@given(
    outcomes=st.lists(
        st.one_of(st.none(), st.integers(min_value=1, max_value=365), st.just("error")),
        min_size=1,
        max_size=6,
    )
)
@settings(max_examples=100)
def test_prop_rolling_window_first_resolved(outcomes: list):
    """
    Invariant: The rolling window comes from the first lookup that yields a
    value; failing or empty lookups are skipped.

    Property: resolve_rolling_window(lookups) is the first outcome that is
    neither None nor an error, and raises only when there is none.
    """

    def lookup_for(outcome):
        async def lookup():
            if outcome == "error":
                raise ConnectionError("settings store unavailable")
            return outcome

        return lookup

    lookups = [(f"source-{index}", lookup_for(outcome)) for index, outcome in enumerate(outcomes)]
    resolved = [o for o in outcomes if o is not None and o != "error"]

    if resolved:
        assert run(resolve_rolling_window(lookups)) == resolved[0]
    else:
        with pytest.raises(RollingWindowUnresolvedError):
            run(resolve_rolling_window(lookups))


# =============================================================================
# Statistics Property Tests
# =============================================================================


@given(
    percentile=st.floats(min_value=0.0, max_value=100.0, allow_nan=False),
    values=st.lists(st.integers(min_value=-10_000, max_value=10_000), min_size=1, max_size=50),
)
@settings(max_examples=100)
def test_prop_percentile_within_sample(percentile: float, values: list[int]):
    """
    Invariant: A percentile never leaves the sample range.

    Property: min(values) <= get_percentile(p, values) <= max(values)
    """
    result = get_percentile(percentile, values)
    assert min(values) <= result <= max(values)


@given(
    previous=st.integers(min_value=0, max_value=1_000_000),
    current=st.integers(min_value=0, max_value=1_000_000),
)
@settings(max_examples=100)
def test_prop_percentual_difference_bounded(previous: int, current: int):
    """
    Invariant: Percentage changes of counts are capped for display.

    Property: -100 <= get_percentual_difference(prev, cur) <= 9999
    """
    result = get_percentual_difference(previous, current)

    assert -100 <= result <= DISPLAY_PERCENTAGE_LIMIT
    if previous == current:
        assert result == 0


@given(
    value=st.integers(min_value=0, max_value=500),
    median=st.integers(min_value=0, max_value=200),
    standard_deviation=st.integers(min_value=0, max_value=50),
)
@settings(max_examples=100)
def test_prop_productivity_band_total(value: int, median: int, standard_deviation: int):
    """
    Invariant: Every weekly count falls in exactly one productivity band.

    Property: classify_productivity returns a ProductivityBand value, above
    the median only for larger counts and below it only for smaller ones.
    """
    label = ProductivityBand(classify_productivity(value, median, standard_deviation))

    above = {ProductivityBand.GOOD, ProductivityBand.GREAT, ProductivityBand.EXCELLENT}
    below = {ProductivityBand.SLIGHTLY_UNDER, ProductivityBand.POOR, ProductivityBand.BAD}
    if value > median:
        assert label in above
    elif value < median:
        assert label in below
    else:
        assert label == ProductivityBand.MEDIAN


# =============================================================================
# Cache Property Tests
# =============================================================================


@given(selectors=st.lists(st.sampled_from(["inventory", "wip", "completed", "discarded"]), max_size=20))
@settings(max_examples=100)
def test_prop_memo_cache_creates_once_per_key(selectors: list[str]):
    """
    Invariant: The factory runs once per distinct key.

    Property: After any sequence of lookups, factory calls == distinct keys
    and every lookup returns the value created for its key.
    """
    cache: MemoCache[str] = MemoCache("prop")
    created: list[str] = []

    def factory_for(selector: str):
        async def factory() -> str:
            created.append(selector)
            return f"items:{selector}"

        return factory

    async def lookups() -> list[str]:
        return [
            await cache.get_or_create(CacheKey(org_id="org-1", selector=s), factory_for(s)) for s in selectors
        ]

    results = run(lookups())

    assert results == [f"items:{s}" for s in selectors]
    assert sorted(created) == sorted(set(selectors))
    assert len(cache) == len(set(selectors))
