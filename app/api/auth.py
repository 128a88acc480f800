"""
Sign-in endpoints.

The identity provider integration posts the verified profile to
/auth/callback. Everything after that is session-cookie based.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field

import config
from app.api.dependencies import (
    ApiServices,
    clear_attribution_cookie,
    clear_session_cookie,
    current_session,
    get_services,
    set_session_cookie,
)
from app.services.signup import SessionState
from app.services.users import IdentityProfile

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth")


class IdentityProfileBody(BaseModel):
    identity: str = Field(min_length=1, max_length=64)
    handle: Optional[str] = Field(default=None, max_length=64)
    display_name: Optional[str] = Field(default=None, max_length=256)
    avatar_url: Optional[str] = Field(default=None, max_length=2048)
    follower_count: int = Field(default=0, ge=0)

    def to_profile(self) -> IdentityProfile:
        return IdentityProfile(
            identity=self.identity,
            handle=self.handle,
            display_name=self.display_name,
            avatar_url=self.avatar_url,
            follower_count=self.follower_count,
        )


@router.post("/callback")
async def auth_callback(
    body: IdentityProfileBody,
    request: Request,
    response: Response,
    services: ApiServices = Depends(get_services),
):
    attribution_token = request.cookies.get(config.ATTRIBUTION_COOKIE_NAME)
    context = services.codec.decode(attribution_token)
    referral_code = context.referral_code if services.codec.is_valid(context) else None

    previous_session_id = request.cookies.get(config.SESSION_COOKIE_NAME)
    if previous_session_id:
        await services.sessions.delete(previous_session_id)

    state = await services.signup.sign_in(body.to_profile(), referral_code)
    await services.sessions.save(state.session_id, state.to_dict())

    set_session_cookie(response, state.session_id)
    if attribution_token:
        clear_attribution_cookie(response)
    return {"success": True, "session": state.public_view()}


@router.get("/session")
async def get_session(state: Optional[SessionState] = Depends(current_session)):
    if state is None:
        return {"success": True, "authenticated": False, "session": None}
    return {"success": True, "authenticated": True, "session": state.public_view()}


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    services: ApiServices = Depends(get_services),
):
    session_id = request.cookies.get(config.SESSION_COOKIE_NAME)
    if session_id:
        await services.sessions.delete(session_id)
    clear_session_cookie(response)
    return {"success": True}
