"""
Service wiring and request dependencies for the HTTP API.

All services are constructed once (build_services) and stored on
`app.state.services`; route handlers reach them through get_services.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional

import redis.asyncio as redis
from fastapi import Depends, Request, Response

import config
import database
from app.core.exceptions import AuthenticationRequiredError
from app.core.job_queue import RedisJobQueue, create_referral_queue
from app.core.session_store import RedisSessionStore
from app.services.kol import KolIndex
from app.services.positions import PositionAllocator
from app.services.referrals import (
    AttributionCodec,
    ReferralCodeGenerator,
    ReferralCreator,
    ReferralLinkTracker,
    ReferralStatusService,
    ReferralStore,
)
from app.services.signup import SessionState, SignupService
from app.services.users import UserService
from app.services.wallets import WalletService

logger = logging.getLogger(__name__)


@dataclass
class ApiServices:
    db: Any
    redis_client: Optional[redis.Redis]
    kol_index: KolIndex
    allocator: PositionAllocator
    referrals: ReferralStore
    codes: ReferralCodeGenerator
    codec: AttributionCodec
    tracker: ReferralLinkTracker
    creator: ReferralCreator
    queue: RedisJobQueue
    status: ReferralStatusService
    users: UserService
    wallets: WalletService
    signup: SignupService
    sessions: RedisSessionStore


def build_services(
    db: Any = database,
    redis_client: Optional[redis.Redis] = None,
    kol_index: Optional[KolIndex] = None,
    queue: Optional[RedisJobQueue] = None,
    sessions: Optional[RedisSessionStore] = None,
) -> ApiServices:
    """Construct every service over one store module and one Redis client."""
    kol_index = kol_index or KolIndex()
    allocator = PositionAllocator(db=db)
    referrals = ReferralStore(db)
    codes = ReferralCodeGenerator(db=db)
    codec = AttributionCodec(codes=codes)
    creator = ReferralCreator(kol_index, allocator, codes, referrals)
    queue = queue or create_referral_queue(redis_client)
    users = UserService(db)
    wallets = WalletService(db)
    signup = SignupService(users, creator, referrals, wallets, queue=queue)
    return ApiServices(
        db=db,
        redis_client=redis_client,
        kol_index=kol_index,
        allocator=allocator,
        referrals=referrals,
        codes=codes,
        codec=codec,
        tracker=ReferralLinkTracker(codes, referrals, codec),
        creator=creator,
        queue=queue,
        status=ReferralStatusService(referrals, queue, users=users),
        users=users,
        wallets=wallets,
        signup=signup,
        sessions=sessions or RedisSessionStore(redis_client),
    )


def get_services(request: Request) -> ApiServices:
    return request.app.state.services


# ----------------------------------------------------------------------
# cookies
# ----------------------------------------------------------------------

def set_session_cookie(response: Response, session_id: str) -> None:
    response.set_cookie(
        config.SESSION_COOKIE_NAME,
        session_id,
        max_age=config.SESSION_TTL_SECONDS,
        httponly=True,
        secure=config.COOKIE_SECURE,
        samesite="lax",
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(config.SESSION_COOKIE_NAME, path="/")


def set_attribution_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        config.ATTRIBUTION_COOKIE_NAME,
        token,
        max_age=config.ATTRIBUTION_TTL_SECONDS,
        httponly=True,
        secure=config.COOKIE_SECURE,
        samesite="lax",
        path="/",
    )


def clear_attribution_cookie(response: Response) -> None:
    response.delete_cookie(config.ATTRIBUTION_COOKIE_NAME, path="/")


# ----------------------------------------------------------------------
# session
# ----------------------------------------------------------------------

async def current_session(
    request: Request,
    services: ApiServices = Depends(get_services),
) -> Optional[SessionState]:
    """
    Session for the request cookie, or None.

    A session still marked deferred gets one retry of its sign-in work here,
    and the result is written back before the handler runs.
    """
    session_id = request.cookies.get(config.SESSION_COOKIE_NAME)
    if not session_id:
        return None
    data = await services.sessions.load(session_id)
    if data is None:
        return None
    try:
        state = SessionState.from_dict(data)
    except (KeyError, ValueError, TypeError) as e:
        logger.warning(f"SESSION_UNREADABLE error={type(e).__name__}")
        await services.sessions.delete(session_id)
        return None

    if state.needs_background_processing:
        state = await services.signup.retry_deferred(state)
        await services.sessions.save(state.session_id, state.to_dict())
    return state


async def require_session(state: Optional[SessionState] = Depends(current_session)) -> SessionState:
    if state is None:
        raise AuthenticationRequiredError("Authentication required")
    return state
