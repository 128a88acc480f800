"""
Position Service Domain Exceptions
"""

from app.core.exceptions import SignatureCampaignError


class PositionServiceError(SignatureCampaignError):
    """Base exception for position allocation errors"""
    pass


class KolLaneExhaustedError(PositionServiceError):
    """Raised when the KOL counter has passed the last KOL position"""
    pass


class PositionAllocationError(PositionServiceError):
    """Raised when no valid position could be produced within the iteration bound"""
    pass


class PositionPostconditionError(PositionServiceError):
    """Raised when a stored position violates its lane's numbering rules.

    Treated as a transient failure by the queue worker (job is retried).
    """
    pass
