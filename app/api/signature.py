"""Public signature counter and the caller's own position."""
from fastapi import APIRouter, Depends

from app.api.dependencies import ApiServices, get_services, require_session
from app.services.referrals import ReferralNotFoundError
from app.services.signup import SessionState

router = APIRouter(prefix="/signature")


@router.get("/count")
async def signature_count(services: ApiServices = Depends(get_services)):
    count = await services.allocator.current_total()
    return {"success": True, "count": count}


@router.get("/position")
async def signature_position(
    state: SessionState = Depends(require_session),
    services: ApiServices = Depends(get_services),
):
    record = await services.referrals.find_by_identity(state.identity)
    if record is None:
        raise ReferralNotFoundError("User position not found")
    return {"success": True, "position": record.position}
