"""
Sign-in processing.

One pipeline, three callers:

- the sign-in request runs it under SIGNUP_TIMEOUT_SECONDS; on timeout or
  error the session is marked deferred and a queue job is added
- the next request of a deferred session runs the same pipeline again
- the queue worker runs only its referral part (complete_deferred), which
  never overwrites a stored profile or stamps a login

Every step is safe to repeat: the profile write is an upsert and a second
referral creation for the same identity ends in "already exists".
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Optional

import redis.exceptions

import config
from app.core.exceptions import DependencyUnavailableError, SignatureCampaignError
from app.core.job_queue import RedisJobQueue
from app.core.session_store import new_session_id
from app.core.structured_logger import log_event
from app.services.referrals import (
    ReferralAlreadyExistsError,
    ReferralCreator,
    ReferralRecord,
    ReferralStore,
    referral_job_id,
)
from app.services.signup.session import (
    RetryPayload,
    SessionState,
    SignupOutcome,
)
from app.services.users import IdentityProfile, SignupState, UserProfile, UserService
from app.services.wallets import WalletService
from app.utils.logging_helpers import classify_error
from app.utils.retry import TRANSIENT_EXCEPTIONS

logger = logging.getLogger(__name__)


class SignupService:
    def __init__(
        self,
        users: UserService,
        creator: ReferralCreator,
        referrals: ReferralStore,
        wallets: WalletService,
        queue: Optional[RedisJobQueue] = None,
        min_followers: int = config.MIN_FOLLOWERS,
        timeout_seconds: float = config.SIGNUP_TIMEOUT_SECONDS,
        wallet_timeout_seconds: float = config.WALLET_LOOKUP_TIMEOUT_SECONDS,
    ):
        self.users = users
        self.creator = creator
        self.referrals = referrals
        self.wallets = wallets
        self.queue = queue
        self.min_followers = min_followers
        self.timeout_seconds = timeout_seconds
        self.wallet_timeout_seconds = wallet_timeout_seconds

    # ------------------------------------------------------------------
    # pipeline
    # ------------------------------------------------------------------

    async def complete_signup(
        self,
        profile: IdentityProfile,
        referral_code: Optional[str] = None,
    ) -> SignupOutcome:
        """
        Profile upsert, follower gate, referral creation, login stamp, wallet lookup.

        Raises whatever the stores raise; callers decide whether to defer or retry.
        """
        upsert = await self.users.upsert(profile)
        outcome = await self._settle_referral(upsert.user, referral_code)

        await self.users.touch_last_login(profile.identity)
        wallet_address, wallet_chain = await self._lookup_wallet(profile.identity)
        return replace(outcome, wallet_address=wallet_address, wallet_chain_type=wallet_chain)

    async def complete_deferred(
        self,
        profile: IdentityProfile,
        referral_code: Optional[str] = None,
    ) -> SignupOutcome:
        """
        Queue-worker variant: follower gate and referral creation only.

        The profile captured in the job is written only when nothing is stored
        for the identity yet; a stored profile (possibly from a later sign-in)
        is used as is. No login is stamped and no wallet is looked up.
        """
        ensured = await self.users.ensure(profile)
        return await self._settle_referral(ensured.user, referral_code)

    async def _settle_referral(self, user: UserProfile, referral_code: Optional[str]) -> SignupOutcome:
        """Apply the follower gate or create/load the referral, by the stored signup_state."""
        # Anyone still pending has not finished a first sign-in yet
        is_new_user = user.signup_state is SignupState.PENDING
        record: Optional[ReferralRecord] = None
        insufficient = False

        if user.signup_state is SignupState.PENDING:
            if user.follower_count < self.min_followers:
                await self.users.set_signup_state(user.identity, SignupState.INSUFFICIENT)
                insufficient = True
                log_event(
                    logger,
                    component="signup",
                    operation="follower_gate",
                    outcome="rejected",
                    identity=user.identity,
                    followers=user.follower_count,
                )
            else:
                record = await self._ensure_referral(user.identity, user.handle, referral_code)
                await self.users.set_signup_state(user.identity, SignupState.COMPLETE)
        elif user.signup_state is SignupState.COMPLETE:
            record = await self.referrals.find_by_identity(user.identity)
        else:
            insufficient = True

        return SignupOutcome(
            is_new_user=is_new_user,
            referral_code=record.referral_code if record else None,
            position=record.position if record else None,
            is_kol=record.is_kol if record else False,
            insufficient_followers=insufficient,
        )

    async def _ensure_referral(
        self,
        identity: str,
        handle: Optional[str],
        referral_code: Optional[str],
    ) -> ReferralRecord:
        try:
            return await self.creator.create_referral_record(identity, handle, referral_code)
        except ReferralAlreadyExistsError as e:
            if e.record is not None:
                return e.record
            existing = await self.referrals.find_by_identity(identity)
            if existing is None:
                raise
            return existing

    async def _lookup_wallet(self, identity: str) -> tuple[Optional[str], Optional[str]]:
        """Wallet under its own deadline; failure means "unknown", never an error."""
        try:
            wallet = await asyncio.wait_for(self.wallets.find(identity), self.wallet_timeout_seconds)
        except (SignatureCampaignError,) + TRANSIENT_EXCEPTIONS as e:
            logger.warning(f"WALLET_LOOKUP_SKIPPED identity={identity} error={type(e).__name__}")
            return None, None
        if wallet is None:
            return None, None
        return wallet.address, wallet.chain_type.value

    # ------------------------------------------------------------------
    # sign-in path
    # ------------------------------------------------------------------

    async def sign_in(
        self,
        profile: IdentityProfile,
        referral_code: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> SessionState:
        """
        Run the pipeline within the sign-in deadline.

        Sign-in itself always succeeds: on timeout or error the returned
        session is PROCESSING_DEFERRED and a queue job is added.
        """
        state = SessionState(
            session_id=session_id or new_session_id(),
            identity=profile.identity,
            handle=profile.handle,
        )
        payload = RetryPayload(profile=profile, referral_code=referral_code)
        started = time.monotonic()

        try:
            outcome = await asyncio.wait_for(
                self.complete_signup(profile, referral_code),
                self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            reason = "timeout"
        except Exception as e:
            reason = f"{classify_error(e)}: {type(e).__name__}"
        else:
            log_event(
                logger,
                component="signup",
                operation="sign_in",
                outcome="success",
                duration_ms=int((time.monotonic() - started) * 1000),
                identity=profile.identity,
                position=outcome.position,
            )
            return state.completed(outcome)

        log_event(
            logger,
            component="signup",
            operation="sign_in",
            outcome="deferred",
            level="warning",
            reason=reason,
            duration_ms=int((time.monotonic() - started) * 1000),
            identity=profile.identity,
        )
        await self.enqueue(payload)
        # First sign-in status is unknown until the deferred work finishes
        return state.deferred(payload, reason)

    async def retry_deferred(self, state: SessionState) -> SessionState:
        """
        Redo deferred work once for a request carrying a deferred session.

        Returns the session unchanged (apart from last_error) if it fails again.
        """
        if not state.needs_background_processing or state.retry_payload is None:
            return state

        payload = state.retry_payload
        try:
            outcome = await asyncio.wait_for(
                self.complete_signup(payload.profile, payload.referral_code),
                self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            reason = "timeout"
        except Exception as e:
            reason = f"{classify_error(e)}: {type(e).__name__}"
        else:
            log_event(
                logger,
                component="signup",
                operation="retry_deferred",
                outcome="success",
                identity=state.identity,
                position=outcome.position,
            )
            return state.completed(outcome)

        log_event(
            logger,
            component="signup",
            operation="retry_deferred",
            outcome="failed",
            level="warning",
            reason=reason,
            identity=state.identity,
        )
        return state.retry_failed(reason)

    async def enqueue(self, payload: RetryPayload) -> bool:
        """Best-effort job add. Returns True if a new job was queued."""
        if self.queue is None:
            logger.warning(f"REFERRAL_ENQUEUE_SKIPPED identity={payload.profile.identity} reason=no_queue")
            return False
        job_id = referral_job_id(payload.profile.identity)
        try:
            added = await self.queue.add(job_id, payload.to_dict())
        except (DependencyUnavailableError, redis.exceptions.RedisError, OSError) as e:
            logger.warning(
                f"REFERRAL_ENQUEUE_FAILED identity={payload.profile.identity} "
                f"error={type(e).__name__}: {str(e)[:100]}"
            )
            return False
        log_event(
            logger,
            component="queue",
            operation="enqueue",
            outcome="added" if added else "duplicate",
            job_id=job_id,
        )
        return added
