"""
Trend analysis between consecutive periods.

Compares a current value against a previous one and renders the comparison
the way the dashboards display it: an absolute percentage, a sentence
fragment, an arrow direction and an arrow colour.
"""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from flowmetrics.engine.aggregation import end_of, start_of
from flowmetrics.engine.statistics import round_half_up
from flowmetrics.models.enums import AggregationKey
from flowmetrics.models.intervals import Interval

DISPLAY_PERCENTAGE_LIMIT = 9999

WEEKS_IN_YEAR = 52


class TrendDirection(str, Enum):
    """Arrow direction of a trend."""

    UP = "Up"
    DOWN = "Down"
    STABLE = "Stable"


class ArrowColours(BaseModel):
    """Colour per arrow direction."""

    up_colour: str = "green"
    down_colour: str = "red"
    stable_colour: str = "yellow"

    def reversed(self) -> "ArrowColours":
        """Colours for metrics where a decrease is good."""
        return ArrowColours(
            up_colour=self.down_colour,
            down_colour=self.up_colour,
            stable_colour=self.stable_colour,
        )


DEFAULT_COLOURS = ArrowColours()
REVERSED_DEFAULT_COLOURS = DEFAULT_COLOURS.reversed()


def empty_trend_analysis() -> dict:
    return {"percentage": 0, "text": "", "arrowDirection": "", "arrowColour": ""}


def get_percentual_difference(previous_value: float, current_value: float) -> float:
    """
    Percentage change from ``previous_value`` to ``current_value``.

    Zero to zero is 0; growth from zero (and any growth beyond the display
    limit) is capped at 9999.
    """
    if not previous_value and not current_value:
        return 0.0
    if not previous_value:
        return math.copysign(DISPLAY_PERCENTAGE_LIMIT, current_value)
    difference = ((current_value - previous_value) / previous_value) * 100
    return min(difference, DISPLAY_PERCENTAGE_LIMIT)


def get_trend_analysis_content(
    previous_value: float,
    current_value: float,
    period: str,
    colours: Optional[ArrowColours] = None,
    decrease_is_good: bool = False,
) -> dict:
    """
    Render the comparison of two period values.

    Args:
        previous_value: Value of the earlier period
        current_value: Value of the later period
        period: Period wording used in the text ("week", "two weeks", ...)
        colours: Arrow colours; defaults depend on ``decrease_is_good``
        decrease_is_good: Swap up/down colours when no colours are given

    Returns:
        Dictionary with percentage, text, arrowDirection and arrowColour

    Example:
        >>> get_trend_analysis_content(10, 15, "week")["text"]
        'more compared to last week'
    """
    if colours is None:
        colours = REVERSED_DEFAULT_COLOURS if decrease_is_good else DEFAULT_COLOURS

    comparison = f" compared to last {period}"
    percentage = get_percentual_difference(previous_value, current_value)

    if percentage > 0:
        word, direction, colour = "more", TrendDirection.UP, colours.up_colour
    elif percentage < 0:
        word, direction, colour = "less", TrendDirection.DOWN, colours.down_colour
    else:
        word, direction, colour = "same", TrendDirection.STABLE, colours.stable_colour

    return {
        "percentage": abs(round_half_up(percentage)),
        "text": word + comparison,
        "arrowDirection": direction.value,
        "arrowColour": colour,
    }


def get_week_index(week_number: int) -> int:
    """Wrap week numbers that cross a year boundary back into 1..52."""
    if week_number <= 0:
        return week_number + WEEKS_IN_YEAR
    return week_number


def format_week_count(week_count: dict[int, int], period: Optional[Interval]) -> None:
    """
    Fill missing weeks of ``period`` with zero counts, in place.

    The current calendar week and the first week of the period are always
    present afterwards, so trend windows line up with the calendar.
    """
    if period is not None:
        current_week = end_of(period.end, AggregationKey.WEEK).isocalendar()[1]
        beginning_week: Optional[int] = start_of(period.start, AggregationKey.WEEK).isocalendar()[1]
    else:
        current_week = datetime.now(timezone.utc).isocalendar()[1]
        beginning_week = None

    week_count.setdefault(current_week, 0)
    if beginning_week is not None:
        week_count.setdefault(beginning_week, 0)
        for week in range(beginning_week + 1, current_week):
            week_count.setdefault(week, 0)


def get_current_week_number(week_count: dict[int, int]) -> Optional[int]:
    """Latest finished week, i.e. the second highest week number present."""
    weeks_descending = sorted(week_count, reverse=True)
    if len(weeks_descending) < 2:
        return None
    return weeks_descending[1]


def _week_value(week_number: int, week_count: dict[int, int]) -> int:
    return week_count.get(get_week_index(week_number), 0) or 0


def get_trend_analysis_response_from_week_count(
    week_count: dict[int, int],
    colours: Optional[ArrowColours] = None,
) -> dict:
    """
    Trend of the last week, two weeks and four weeks against the ones before.

    The highest week is the unfinished current week and is excluded. A window
    is only compared when enough weeks exist: more than 2 for the last week,
    more than 4 for two weeks, more than 8 for four weeks.
    """
    response = {
        "lastWeek": empty_trend_analysis(),
        "lastTwoWeeks": empty_trend_analysis(),
        "lastFourWeeks": empty_trend_analysis(),
    }
    size = len(week_count)
    current_week_number = get_current_week_number(week_count)
    if size <= 1 or current_week_number is None:
        return response

    current_week = _week_value(current_week_number, week_count)
    current_two_weeks = 0
    current_four_weeks = 0

    if size > 2:
        last_week = _week_value(current_week_number - 1, week_count)
        response["lastWeek"] = get_trend_analysis_content(last_week, current_week, "week", colours)
        current_two_weeks = current_week + last_week

    if size > 4:
        previous_two_weeks = _week_value(current_week_number - 2, week_count) + _week_value(
            current_week_number - 3, week_count
        )
        response["lastTwoWeeks"] = get_trend_analysis_content(
            previous_two_weeks, current_two_weeks, "two weeks", colours
        )
        current_four_weeks = current_two_weeks + previous_two_weeks

    if size > 8:
        previous_four_weeks = sum(
            _week_value(current_week_number - offset, week_count) for offset in range(4, 8)
        )
        response["lastFourWeeks"] = get_trend_analysis_content(
            previous_four_weeks, current_four_weeks, "four weeks", colours
        )

    return response


def get_trend_analysis_response(
    week_numbers: list[int],
    period: Optional[Interval],
    colours: Optional[ArrowColours] = None,
) -> dict:
    """Trend analysis from one ISO week number per completed item."""
    week_count: dict[int, int] = {}
    for week in week_numbers:
        week_count[week] = week_count.get(week, 0) + 1
    format_week_count(week_count, period)
    return get_trend_analysis_response_from_week_count(week_count, colours)
