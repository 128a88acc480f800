"""
Referral Service Domain Exceptions

All exceptions raised by the referral service layer.
"""

from typing import Any, Optional

from app.core.exceptions import ConflictError, SignatureCampaignError, ValidationError


class ReferralServiceError(SignatureCampaignError):
    """Base exception for referral service errors"""
    pass


class InvalidReferralCodeError(ValidationError, ReferralServiceError):
    """Raised when a referral code does not match the accepted formats"""
    pass


class ReferralCodeExhaustedError(ReferralServiceError):
    """Raised when no unused referral code was found within the attempt budget"""
    pass


class ReferralAlreadyExistsError(ConflictError, ReferralServiceError):
    """Raised when the identity already has a referral record.

    `record` carries the existing record when it is known. Callers treat this
    as "already done".
    """

    def __init__(self, identity: str, record: Optional[Any] = None):
        self.identity = identity
        self.record = record
        super().__init__(f"referral record already exists for identity {identity}")


class ReferralNotFoundError(ReferralServiceError):
    """Raised when a referral record is required but absent"""
    pass


class StatusPollTimeoutError(ReferralServiceError):
    """Raised by the client poller when the status never became terminal"""

    def __init__(self, polls: int, message: str = "Request timeout. Please refresh the page."):
        self.polls = polls
        super().__init__(message)
