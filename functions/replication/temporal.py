"""
Lifetime / reign overlap matching at year granularity.
"""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Any, Iterable, List, Optional

from shared.types import LIVING_SENTINEL_YEAR, Monarch

logger = logging.getLogger(__name__)

_LEADING_YEAR = re.compile(r"^\s*(-?\d{1,4})")


def year_of(value: Any) -> Optional[int]:
    """Return the calendar year of an int, date/datetime or ISO-like string."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, date):
        return value.year
    if isinstance(value, str):
        match = _LEADING_YEAR.match(value)
        if match:
            return int(match.group(1))
    return None


def overlaps(born: int, died: Optional[int], interval: Monarch) -> bool:
    """
    True if a lifetime [born, died] shares at least one year with the reign.

    Both ends are inclusive: a reign ending in the birth year and a reign
    starting in the death year both count.

    `died=None` (or the legacy 9999 marker) means "still living". In that case
    only reigns that contain the birth year match, not every reign up to the
    present day.
    """
    reign_start = year_of(interval.reign_from)
    reign_end = year_of(interval.reign_to)
    if reign_start is None or reign_end is None:
        logger.debug(
            "Skipping monarch %s with unparseable reign dates (%r, %r)",
            interval.id,
            interval.reign_from,
            interval.reign_to,
        )
        return False

    effective_death = LIVING_SENTINEL_YEAR if died is None else died
    if effective_death == LIVING_SENTINEL_YEAR:
        # FIXME: this mirrors how the dataset encodes living people rather
        # than real semantics; replace once records carry an explicit flag.
        return reign_start <= born <= reign_end

    return born <= reign_end and effective_death >= reign_start


def get_overlapping(
    born: int, died: Optional[int], intervals: Iterable[Monarch]
) -> List[Monarch]:
    """Monarchs whose reign overlaps the lifetime, in reference-list order."""
    return [interval for interval in intervals if overlaps(born, died, interval)]
