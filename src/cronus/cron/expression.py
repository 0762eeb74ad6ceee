"""Cron expression parsing and trigger computation.

Expressions have five fields (minute hour day-of-month month day-of-week)
or six, with a leading seconds field. Parsing and matching are done by
croniter; this module pins down the parts of the behavior Cronus relies on.

Day-of-month and day-of-week follow the classic cron rule: when both are
restricted a day matches if either one matches, otherwise both must match.
A field counts as unrestricted when its text starts with ``*``.

Triggers are searched in naive wall-clock time and then placed in the
scheduling zone, so a time skipped by a DST jump fires at the shifted
instant and a repeated hour fires once.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, tzinfo

from croniter import CroniterBadDateError, croniter

from cronus.errors import CronParseError

logger = logging.getLogger(__name__)

# Searches give up after this many years and report no trigger
SEARCH_HORIZON_YEARS = 5

FIELD_NAMES = ("minute", "hour", "day-of-month", "month", "day-of-week")
SIX_FIELD_NAMES = ("second", *FIELD_NAMES)


@dataclass(frozen=True)
class CronExpression:
    """A parsed cron expression.

    Two expressions are equal when their fields expand to the same value
    sets, regardless of how the source text was written.

    Attributes:
        fields: Expanded field values as reported by croniter.
        has_seconds: Whether the expression has a leading seconds field.
        day_or: Whether day-of-month and day-of-week combine with OR.
        source: The text the expression was parsed from.
    """

    fields: tuple[tuple[int | str, ...], ...]
    has_seconds: bool
    day_or: bool
    source: str = field(default="", compare=False)

    def __str__(self) -> str:
        return self.source

    def iterator(self, start: datetime) -> croniter:
        """Create a croniter walking forward from a naive wall-clock time."""
        return croniter(
            self.source,
            start,
            day_or=self.day_or,
            second_at_beginning=self.has_seconds,
            max_years_between_matches=SEARCH_HORIZON_YEARS,
        )

    def day_branches(self) -> tuple["CronExpression", "CronExpression"]:
        """Split an OR-combined expression into its day-of-month and day-of-week halves."""
        parts = self.source.split()
        by_day = [*parts[:-1], "*"]
        by_weekday = [*parts[:-3], "*", *parts[-2:]]
        return parse(" ".join(by_day)), parse(" ".join(by_weekday))


def _expand(text: str, day_or: bool, has_seconds: bool) -> croniter:
    return croniter(text, day_or=day_or, second_at_beginning=has_seconds)


def _failing_field(parts: list[str], has_seconds: bool) -> str | None:
    """Find the first field that croniter rejects on its own."""
    names = SIX_FIELD_NAMES if has_seconds else FIELD_NAMES
    for index, name in enumerate(names):
        trial = ["*"] * len(parts)
        trial[index] = parts[index]
        try:
            _expand(" ".join(trial), True, has_seconds)
        except (ValueError, KeyError):
            return name
    return None


def parse(text: str) -> CronExpression:
    """Parse a cron expression.

    Args:
        text: Five- or six-field cron expression.

    Returns:
        The parsed expression.

    Raises:
        CronParseError: If the expression is malformed or out of range.
    """
    if not isinstance(text, str):
        raise CronParseError(f"Cron expression must be a string, got {type(text).__name__}")

    parts = text.split()
    if len(parts) not in (5, 6):
        raise CronParseError(
            f"Cron expression must have 5 or 6 fields, got {len(parts)}: {text!r}", text
        )

    has_seconds = len(parts) == 6
    dom, dow = parts[-3], parts[-1]
    day_or = not (dom.startswith("*") or dow.startswith("*"))
    source = " ".join(parts)

    try:
        itr = _expand(source, day_or, has_seconds)
    except (ValueError, KeyError) as e:
        field_name = _failing_field(parts, has_seconds)
        where = f" in the {field_name} field" if field_name else ""
        raise CronParseError(
            f"Invalid cron expression {text!r}{where}: {e}", text, field_name
        ) from e

    return CronExpression(
        fields=tuple(tuple(values) for values in itr.expanded),
        has_seconds=has_seconds,
        day_or=day_or,
        source=source,
    )


def validate_cron_expression(text: str) -> bool:
    """Check whether a cron expression parses."""
    try:
        parse(text)
    except CronParseError:
        return False
    return True


def _localize(wall: datetime, tz: tzinfo | None) -> datetime:
    """Attach a zone to a naive wall-clock time, normalizing DST gaps."""
    if tz is None:
        return wall.astimezone()
    return wall.replace(tzinfo=tz).astimezone(tz)


def next_trigger(
    expr: CronExpression,
    after: datetime,
    tz: tzinfo | None = None,
) -> datetime | None:
    """Compute the earliest instant strictly after ``after`` matching ``expr``.

    Args:
        expr: The parsed expression.
        after: Reference instant. Naive values are read as wall-clock time
            in ``tz``.
        tz: Zone the expression is evaluated in (local zone when None).

    Returns:
        An aware datetime in ``tz``, or None if nothing matches within
        ``SEARCH_HORIZON_YEARS`` (e.g. ``0 0 30 2 *``).
    """
    if after.tzinfo is None:
        after = _localize(after, tz)
    local = after.astimezone(tz) if tz is not None else after.astimezone()
    itr = expr.iterator(local.replace(tzinfo=None, microsecond=0))

    while True:
        try:
            candidate = itr.get_next(datetime)
        except CroniterBadDateError:
            break
        moment = _localize(candidate, tz)
        # Repeated wall-clock hours at a DST fall-back can map backwards
        if moment > after:
            return moment

    # croniter gives up on the whole union when one day half can never match
    if expr.day_or:
        found = [
            moment
            for moment in (next_trigger(branch, after, tz) for branch in expr.day_branches())
            if moment is not None
        ]
        if found:
            return min(found)

    logger.debug(f"No trigger within {SEARCH_HORIZON_YEARS} years for {expr.source!r}")
    return None


def upcoming(
    expr: CronExpression,
    after: datetime,
    count: int,
    tz: tzinfo | None = None,
) -> list[datetime]:
    """List up to ``count`` consecutive trigger instants after ``after``."""
    result: list[datetime] = []
    moment: datetime | None = after
    while moment is not None and len(result) < count:
        moment = next_trigger(expr, moment, tz)
        if moment is not None:
            result.append(moment)
    return result


def describe(expr: CronExpression) -> str:
    """Get a short human-readable description of an expression.

    Args:
        expr: The parsed expression.

    Returns:
        Description such as ``"at minute 0 past hour 9 on Mon"``.
    """
    parts = expr.source.split()
    if len(parts) == 6:
        second, parts = parts[0], parts[1:]
    else:
        second = "0"
    minute, hour, day, month, dow = parts

    descriptions = []

    if second != "0":
        descriptions.append(f"at second {second}")

    if minute == "*":
        descriptions.append("every minute")
    else:
        descriptions.append(f"at minute {minute}")

    if hour == "*":
        descriptions.append("of every hour")
    else:
        descriptions.append(f"past hour {hour}")

    if day != "*":
        descriptions.append(f"on day {day}")

    if month != "*":
        descriptions.append(f"in month {month}")

    if dow != "*":
        dow_names = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
        if dow.isdigit() and int(dow) < 7:
            descriptions.append(f"on {dow_names[int(dow)]}")
        else:
            descriptions.append(f"on {dow}")

    return " ".join(descriptions)
