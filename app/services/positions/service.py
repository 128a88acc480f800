"""
Position Allocator

Hands out signature positions from two counters:

- regular lane: floor+1 upward, never inside a reserved skip range
- kol lane: 1..KOL_MAX_POSITION, for members of the KOL list

Uniqueness comes only from the store's atomic increment. When an increment
lands in a reserved range the counter is advanced (forward-only) to just
before the range's jump target and incremented again. Concurrent callers can
waste numbers this way; none of them can receive a reserved or duplicate one.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Sequence

import database
from app.constants.positions import (
    KOL_COUNTER_ID,
    KOL_MAX_POSITION,
    REGULAR_COUNTER_ID,
    REGULAR_POSITION_FLOOR,
    SKIP_RANGES,
    SkipRange,
    find_skip_range,
)
from app.core.structured_logger import log_event
from app.services.positions.exceptions import (
    KolLaneExhaustedError,
    PositionAllocationError,
    PositionPostconditionError,
)

logger = logging.getLogger(__name__)


class Lane(Enum):
    REGULAR = "regular"
    KOL = "kol"


@dataclass(frozen=True)
class PositionAllocation:
    position: int
    lane: Lane
    is_kol: bool


class PositionAllocator:
    """
    Allocates positions against a counter store.

    `db` is the `database` module or any object with the same async
    functions (increment_counter, advance_counter, get_counter_value,
    get_max_position, count_referrals).
    """

    def __init__(
        self,
        db: Any = database,
        skip_ranges: Sequence[SkipRange] = SKIP_RANGES,
        floor: int = REGULAR_POSITION_FLOOR,
        kol_max: int = KOL_MAX_POSITION,
    ):
        self.db = db
        self.skip_ranges = tuple(skip_ranges)
        self.floor = floor
        self.kol_max = kol_max

    async def next_position(self, lane: Lane) -> int:
        """
        Next position in `lane`.

        Raises:
            KolLaneExhaustedError: lane is KOL and the KOL counter passed kol_max
            PositionAllocationError: regular lane did not settle within the bound
        """
        if lane is Lane.KOL:
            return await self._next_kol()
        return await self._next_regular()

    async def _next_regular(self) -> int:
        value = await self.db.increment_counter(REGULAR_COUNTER_ID, self.floor)
        # Every jump lands strictly past one range, so one pass per range suffices
        for _ in range(len(self.skip_ranges) + 1):
            skip = find_skip_range(value, self.skip_ranges)
            if skip is None:
                return value
            log_event(
                logger,
                component="allocator",
                operation="skip_range_jump",
                outcome="jump",
                level="debug",
                value=value,
                jump_to=skip.jump_to,
            )
            await self.db.advance_counter(REGULAR_COUNTER_ID, skip.jump_to - 1)
            value = await self.db.increment_counter(REGULAR_COUNTER_ID, self.floor)
        raise PositionAllocationError(f"regular lane did not leave reserved ranges (last value {value})")

    async def _next_kol(self) -> int:
        value = await self.db.increment_counter(KOL_COUNTER_ID, 0)
        if value > self.kol_max:
            raise KolLaneExhaustedError(f"kol counter at {value}, max {self.kol_max}")
        return value

    async def allocate(self, is_kol: bool) -> PositionAllocation:
        """
        Allocate for a caller whose KOL membership is already known.

        KOL members get the KOL lane while it has room; on overflow they fall
        back to the regular lane and are recorded as non-KOL.
        """
        if is_kol:
            try:
                position = await self.next_position(Lane.KOL)
                return PositionAllocation(position=position, lane=Lane.KOL, is_kol=True)
            except KolLaneExhaustedError as e:
                log_event(
                    logger,
                    component="allocator",
                    operation="kol_overflow",
                    outcome="fallback",
                    level="warning",
                    reason=str(e),
                )
        position = await self.next_position(Lane.REGULAR)
        return PositionAllocation(position=position, lane=Lane.REGULAR, is_kol=False)

    def check_postcondition(self, position: int, is_kol: bool) -> None:
        """
        Verify a stored position obeys its lane's numbering.

        Raises:
            PositionPostconditionError
        """
        if is_kol:
            if not 1 <= position <= self.kol_max:
                raise PositionPostconditionError(
                    f"kol position {position} outside 1..{self.kol_max}"
                )
            return
        if position <= self.floor:
            raise PositionPostconditionError(f"regular position {position} not above floor {self.floor}")
        skip = find_skip_range(position, self.skip_ranges)
        if skip is not None:
            raise PositionPostconditionError(
                f"regular position {position} inside reserved range {skip.start}-{skip.end}"
            )

    async def seed_from_existing(self, lane: Lane) -> Optional[int]:
        """
        Advance a lane's counter to the highest position already stored in it.

        Recovery path for a lost or reset counter row. Never lowers a counter.

        Returns:
            The counter value after seeding, or None if the lane has no records.
        """
        if lane is Lane.KOL:
            highest = await self.db.get_max_position(1, self.kol_max, True)
            counter_id = KOL_COUNTER_ID
        else:
            highest = await self.db.get_max_position(self.floor + 1, None, False)
            counter_id = REGULAR_COUNTER_ID
        if highest is None:
            return None
        value = await self.db.advance_counter(counter_id, highest)
        log_event(
            logger,
            component="allocator",
            operation="seed_counter",
            outcome="success",
            lane=lane.value,
            value=value,
        )
        return value

    async def current_total(self) -> int:
        """Current regular counter value; record count if the counter row is absent."""
        value = await self.db.get_counter_value(REGULAR_COUNTER_ID)
        if value is None:
            return await self.db.count_referrals()
        return value
