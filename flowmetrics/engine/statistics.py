"""
Statistical helpers shared by the calculation engines.

Percentiles follow the spreadsheet conventions product owners check results
against (PERCENTILE.INC and PERCENTRANK.INC), and rounding is half-up like a
spreadsheet rather than Python's banker's rounding. numpy provides the
underlying reductions.

Two families live here:
    - Strict helpers (get_percentile, get_percent_rank) used for KPIs
    - Nullable summary helpers (get_mean, get_median, ...) that return None for
      empty input, used for descriptive summaries
"""

import math
from decimal import Decimal
from enum import Enum
from typing import Optional, Sequence

import numpy as np

HIGH_VARIABILITY_LIMIT = 5.6


class VariabilityClassification(str, Enum):
    """Variability of a lead time or throughput distribution."""

    HIGH = "High"
    LOW = "Low"


class DistributionShape(str, Enum):
    """Predictability label derived from the p98/p50 ratio."""

    # Spelling matches the labels persisted by the dashboards
    LOW_PREDICTABILITY = "Low Predictabilty Distribution"
    HIGH_PREDICTABILITY = "High Predictabilty Distribution"


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves towards positive infinity."""
    return int(math.floor(value + 0.5))


def round_to_decimal_places(value: float, places: int) -> float:
    """
    Round ``value`` to ``places`` decimals, halves up.

    The value is shifted through its decimal representation so that inputs
    such as 1.005 round to 1.01 as a spreadsheet would.
    """
    shifted = Decimal(repr(float(value))).scaleb(places)
    return float(Decimal(math.floor(shifted + Decimal("0.5"))).scaleb(-places))


def get_percentile(percentile: float, values: Sequence[float]) -> float:
    """
    Percentile of ``values`` with linear interpolation (PERCENTILE.INC).

    Args:
        percentile: Percentile in [0, 100]
        values: Sample (any order)

    Returns:
        Interpolated percentile rounded to two decimals; 0.0 for an empty sample

    Raises:
        ValueError: If percentile is NaN or outside [0, 100]

    Example:
        >>> get_percentile(85, [1, 2, 3, 4, 5])
        4.4
    """
    try:
        percentile = float(percentile)
    except (TypeError, ValueError):
        raise ValueError(f'Expect percentile to be a number but given "{percentile}"')
    if math.isnan(percentile):
        raise ValueError(f'Expect percentile to be a number but given "{percentile}"')
    if percentile < 0:
        raise ValueError(f'Expect percentile to be >= 0 but given "{percentile}"')
    if percentile > 100:
        raise ValueError(f'Expect percentile to be <= 100 but given "{percentile}"')

    if len(values) == 0:
        return 0.0

    ordered = np.sort(np.asarray(values, dtype=float))
    if percentile == 0:
        return float(ordered[0])
    if percentile == 100:
        return float(ordered[-1])

    result = np.percentile(ordered, percentile, method="linear")
    return round_to_decimal_places(float(result), 2)


def get_percent_rank(values: Sequence[float], target: float) -> float:
    """
    Relative standing of ``target`` in ``values`` (PERCENTRANK.INC).

    Targets at or below the minimum rank 0.0, at or above the maximum 1.0;
    values between two entries are interpolated.
    """
    ordered = sorted(values)
    count = len(ordered)
    if count == 0:
        return 0.0
    if target <= ordered[0]:
        return 0.0
    if target >= ordered[-1]:
        return 1.0

    below = 0
    while below < count and ordered[below] < target:
        below += 1

    if ordered[below] == target:
        return below / (count - 1)

    lower, higher = ordered[below - 1], ordered[below]
    position = (target - lower) / (higher - lower)
    lower_rank = get_percent_rank(ordered, lower)
    higher_rank = get_percent_rank(ordered, higher)
    return lower_rank + position * (higher_rank - lower_rank)


def is_variability_high(percentile_50th: float, percentile_98th: float) -> bool:
    if not percentile_50th:
        return False
    return percentile_98th / percentile_50th >= HIGH_VARIABILITY_LIMIT


def get_target_variability(median: float) -> float:
    return median * HIGH_VARIABILITY_LIMIT


def get_variability_classification(
    percentile_50th: float, percentile_98th: float
) -> VariabilityClassification:
    if is_variability_high(percentile_50th, percentile_98th):
        return VariabilityClassification.HIGH
    return VariabilityClassification.LOW


def get_distribution_shape(percentile_50th: float, percentile_98th: float) -> DistributionShape:
    if is_variability_high(percentile_50th, percentile_98th):
        return DistributionShape.LOW_PREDICTABILITY
    return DistributionShape.HIGH_PREDICTABILITY


def get_throughput_variability(weekly_throughput: Sequence[float]) -> str:
    """Classify weekly throughput counts as High or Low variability."""
    percentile_98th = get_percentile(98, weekly_throughput)
    percentile_50th = get_percentile(50, weekly_throughput)
    return get_variability_classification(percentile_50th, percentile_98th).value


def sample_standard_deviation(values: Sequence[float]) -> float:
    """Bessel-corrected standard deviation; 0.0 for fewer than two values."""
    if len(values) < 2:
        return 0.0
    return float(np.std(np.asarray(values, dtype=float), ddof=1))


# ---------------------------------------------------------------------------
# Nullable summary helpers
# ---------------------------------------------------------------------------


def get_mean(values: Sequence[float]) -> Optional[int]:
    if len(values) == 0:
        return None
    return round_half_up(float(np.mean(values)))


def get_median(values: Sequence[float]) -> Optional[int]:
    if len(values) == 0:
        return None
    return round_half_up(float(np.median(values)))


def get_min(values: Sequence[float]) -> Optional[int]:
    if len(values) == 0:
        return None
    return round_half_up(float(np.min(values)))


def get_max(values: Sequence[float]) -> Optional[int]:
    if len(values) == 0:
        return None
    return round_half_up(float(np.max(values)))


def get_modes(values: Sequence[float]) -> Optional[list[int]]:
    """
    Most frequent values, rounded and ascending.

    Returns None for an empty sample and when every value occurs once.
    """
    if len(values) == 0:
        return None
    uniques, counts = np.unique(np.asarray(values, dtype=float), return_counts=True)
    top = counts.max()
    modes = uniques[counts == top]
    if len(modes) == len(values):
        return None
    return sorted(round_half_up(float(m)) for m in modes)


def get_rounded_percentile(percentile: float, values: Sequence[float]) -> Optional[int]:
    """
    Percentile (fraction in [0, 1]) rounded to an integer.

    Returns None for an empty sample or a zero result.
    """
    if len(values) == 0:
        return None
    result = float(np.quantile(np.asarray(values, dtype=float), percentile))
    return round_half_up(result) if result else None
