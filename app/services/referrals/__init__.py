"""
Referral Service Layer

Referral records, code generation, attribution cookies, KOL-aware creation
and the status contract polled by clients.
"""

from app.services.referrals.service import (
    ReferralRecord,
    ReferralCreateResult,
    ReferralStore,
)
from app.services.referrals.codes import (
    CodeValidation,
    ReferralCodeGenerator,
)
from app.services.referrals.attribution import (
    AttributionContext,
    AttributionCodec,
    ReferralLinkTracker,
)
from app.services.referrals.creation import ReferralCreator
from app.services.referrals.status import (
    ReferralStatus,
    ReferralStatusKind,
    ReferralStatusPoller,
    ReferralStatusService,
    referral_job_id,
)

from app.services.referrals.exceptions import (
    ReferralServiceError,
    InvalidReferralCodeError,
    ReferralCodeExhaustedError,
    ReferralAlreadyExistsError,
    ReferralNotFoundError,
    StatusPollTimeoutError,
)

__all__ = [
    "ReferralRecord",
    "ReferralCreateResult",
    "ReferralStore",
    "CodeValidation",
    "ReferralCodeGenerator",
    "AttributionContext",
    "AttributionCodec",
    "ReferralLinkTracker",
    "ReferralCreator",
    "ReferralStatus",
    "ReferralStatusKind",
    "ReferralStatusPoller",
    "ReferralStatusService",
    "referral_job_id",
    "ReferralServiceError",
    "InvalidReferralCodeError",
    "ReferralCodeExhaustedError",
    "ReferralAlreadyExistsError",
    "ReferralNotFoundError",
    "StatusPollTimeoutError",
]
