"""
Position numbering constants.

Reserved milestone ranges are never handed out by the regular lane: a value
that lands inside [start, end] makes the counter jump so the next position
is `jump_to`.

Regular lane: floor+1 upward, skipping the ranges below.
KOL lane: 1..KOL_MAX_POSITION, no ranges.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple

import config
from app.core.exceptions import ConfigurationError


@dataclass(frozen=True)
class SkipRange:
    start: int
    end: int
    jump_to: int

    def contains(self, position: int) -> bool:
        return self.start <= position <= self.end


# (start, end, jump_to), ascending
DEFAULT_SKIP_RANGES: Tuple[Tuple[int, int, int], ...] = (
    (301, 500, 501),
    (4801, 5000, 5001),
    (19801, 20000, 20001),
    (49801, 50000, 50001),
)


def build_skip_table(ranges: Iterable[Tuple[int, int, int]]) -> Tuple[SkipRange, ...]:
    """
    Validate and freeze a skip-range table.

    Raises:
        ConfigurationError: ranges unordered, overlapping, empty, or jump_to <= end
    """
    table = tuple(SkipRange(*r) for r in ranges)
    previous: Optional[SkipRange] = None
    for r in table:
        if r.start > r.end:
            raise ConfigurationError(f"skip range {r.start}-{r.end}: start after end")
        if r.jump_to <= r.end:
            raise ConfigurationError(f"skip range {r.start}-{r.end}: jump_to {r.jump_to} must be past end")
        if previous is not None and r.start <= previous.end:
            raise ConfigurationError(
                f"skip range {r.start}-{r.end} overlaps or precedes {previous.start}-{previous.end}"
            )
        previous = r
    return table


def find_skip_range(position: int, table: Sequence[SkipRange]) -> Optional[SkipRange]:
    """First range containing `position`, or None."""
    for r in table:
        if r.contains(position):
            return r
    return None


SKIP_RANGES: Tuple[SkipRange, ...] = build_skip_table(DEFAULT_SKIP_RANGES)

REGULAR_POSITION_FLOOR: int = config.POSITION_FLOOR
KOL_MAX_POSITION: int = config.KOL_MAX_POSITION

REGULAR_COUNTER_ID = "referral_position"
KOL_COUNTER_ID = "kol_position"
