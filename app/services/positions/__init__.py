"""
Position Service Layer

Signature position allocation: regular lane with reserved skip ranges,
KOL lane with a fixed ceiling.
"""

from app.services.positions.service import (
    Lane,
    PositionAllocation,
    PositionAllocator,
)

from app.services.positions.exceptions import (
    PositionServiceError,
    KolLaneExhaustedError,
    PositionAllocationError,
    PositionPostconditionError,
)

__all__ = [
    "Lane",
    "PositionAllocation",
    "PositionAllocator",
    "PositionServiceError",
    "KolLaneExhaustedError",
    "PositionAllocationError",
    "PositionPostconditionError",
]
