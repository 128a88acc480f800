"""
Referral endpoints: link tracking, status polling, manual retry, own record.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse

import config
from app.api.dependencies import (
    ApiServices,
    get_services,
    require_session,
    set_attribution_cookie,
)
from app.core.exceptions import SignatureCampaignError
from app.services.referrals import (
    InvalidReferralCodeError,
    ReferralNotFoundError,
    ReferralStatusKind,
    referral_job_id,
)
from app.services.signup import SessionState
from app.utils.logging_helpers import mask_secret
from app.utils.retry import TRANSIENT_EXCEPTIONS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/referral")


@router.get("/track")
async def track_referral(ref: Optional[str] = None, services: ApiServices = Depends(get_services)):
    """Count the visit and redirect to the landing page; the cookie is set only for a known code."""
    response = RedirectResponse(config.LANDING_URL, status_code=302)
    try:
        token = await services.tracker.track(ref)
    except (InvalidReferralCodeError, ReferralNotFoundError) as e:
        logger.info(f"REFERRAL_TRACK_REJECTED code={mask_secret(ref)} reason={type(e).__name__}")
        return response
    except (SignatureCampaignError,) + TRANSIENT_EXCEPTIONS as e:
        logger.warning(f"REFERRAL_TRACK_FAILED error={type(e).__name__}: {str(e)[:100]}")
        return response
    set_attribution_cookie(response, token)
    return response


@router.get("/status")
async def referral_status(
    state: SessionState = Depends(require_session),
    services: ApiServices = Depends(get_services),
):
    status = await services.status.get_referral_status(state.identity)
    return status.to_dict()


@router.post("/retry")
async def retry_referral(
    state: SessionState = Depends(require_session),
    services: ApiServices = Depends(get_services),
):
    """
    Put the caller's referral work back on the queue.

    A failed job is moved back to waiting; without a job, the session's
    retry payload is queued. Completed and below-follower-gate outcomes are
    final and returned as is. Responds with the resulting status.
    """
    current = await services.status.get_referral_status(state.identity)
    if current.status in (ReferralStatusKind.COMPLETED, ReferralStatusKind.INSUFFICIENT_FOLLOWERS):
        return current.to_dict()

    requeued = await services.queue.retry(referral_job_id(state.identity))
    if not requeued:
        if current.status is ReferralStatusKind.NOT_FOUND and state.retry_payload is None:
            raise ReferralNotFoundError("Nothing to retry")
        if state.retry_payload is not None:
            await services.signup.enqueue(state.retry_payload)

    status = await services.status.get_referral_status(state.identity)
    return status.to_dict()


@router.get("/user")
async def referral_user(
    state: SessionState = Depends(require_session),
    services: ApiServices = Depends(get_services),
):
    record = await services.referrals.find_by_identity(state.identity)
    if record is None:
        raise ReferralNotFoundError("Referral not found")
    return {
        "success": True,
        "referralCode": record.referral_code,
        "position": record.position,
        "referralCount": record.referral_count,
        "linkVisits": record.link_visits,
        "isKOL": record.is_kol,
    }
