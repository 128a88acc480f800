"""
Unit tests for sign-in processing and deferral.

Tests focus on:
- First sign-in creates exactly one referral record
- Follower gate consumes no position
- Timeout and failure defer the session and enqueue a job
- Retrying deferred work converges on one record
"""
import asyncio

import pytest
import redis.exceptions

from app.services.positions import PositionAllocator
from app.services.referrals import (
    ReferralCodeGenerator,
    ReferralCreator,
    ReferralStore,
    referral_job_id,
)
from app.services.signup import ProcessingState, RetryPayload, SessionState, SignupService
from app.services.users import IdentityProfile, SignupState, UserService
from app.services.wallets import WalletService


def make_signup(db, kol_index, queue=None, timeout_seconds=1.0, min_followers=50):
    referrals = ReferralStore(db)
    creator = ReferralCreator(kol_index, PositionAllocator(db=db), ReferralCodeGenerator(db=db), referrals)
    return SignupService(
        UserService(db),
        creator,
        referrals,
        WalletService(db),
        queue=queue,
        min_followers=min_followers,
        timeout_seconds=timeout_seconds,
        wallet_timeout_seconds=0.5,
    )


def profile(identity="user-1", handle="alice", followers=500):
    return IdentityProfile(identity=identity, handle=handle, display_name="Alice", follower_count=followers)


class TestCompleteSignup:
    """Tests for the shared pipeline"""

    @pytest.mark.asyncio
    async def test_new_user_gets_record(self, fake_db, kol_index):
        signup = make_signup(fake_db, kol_index)

        outcome = await signup.complete_signup(profile())

        assert outcome.is_new_user is True
        assert outcome.position == 501
        assert outcome.referral_code.startswith("SIGN-ALICE-")
        assert fake_db.users["user-1"]["signup_state"] == SignupState.COMPLETE.value
        assert fake_db.users["user-1"]["last_login_at"] is not None

    @pytest.mark.asyncio
    async def test_returning_user_keeps_record(self, fake_db, kol_index):
        signup = make_signup(fake_db, kol_index)
        first = await signup.complete_signup(profile())

        second = await signup.complete_signup(profile())

        assert second.is_new_user is False
        assert second.referral_code == first.referral_code
        assert len(fake_db.referrals) == 1

    @pytest.mark.asyncio
    async def test_follower_gate(self, fake_db, kol_index):
        """Below the gate: flagged, no record, no position consumed"""
        signup = make_signup(fake_db, kol_index)

        outcome = await signup.complete_signup(profile(followers=49))

        assert outcome.insufficient_followers is True
        assert outcome.position is None
        assert fake_db.referrals == {}
        assert fake_db.counters == {}
        assert fake_db.users["user-1"]["signup_state"] == SignupState.INSUFFICIENT.value

    @pytest.mark.asyncio
    async def test_insufficient_is_final(self, fake_db, kol_index):
        signup = make_signup(fake_db, kol_index)
        await signup.complete_signup(profile(followers=10))

        outcome = await signup.complete_signup(profile(followers=10_000))

        assert outcome.insufficient_followers is True
        assert fake_db.referrals == {}

    @pytest.mark.asyncio
    async def test_referral_code_credits_referrer(self, fake_db, kol_index):
        signup = make_signup(fake_db, kol_index)
        referrer = await signup.complete_signup(profile("referrer", "carol"))

        await signup.complete_signup(profile(), referrer.referral_code)

        assert fake_db.referrals["user-1"]["referred_by"] == "referrer"
        assert fake_db.referrals["referrer"]["referral_count"] == 1

    @pytest.mark.asyncio
    async def test_wallet_reported(self, fake_db, kol_index):
        await fake_db.insert_wallet("user-1", "0x" + "a" * 40, "ETH")
        signup = make_signup(fake_db, kol_index)

        outcome = await signup.complete_signup(profile())

        assert outcome.wallet_address == "0x" + "a" * 40
        assert outcome.wallet_chain_type == "ETH"

    @pytest.mark.asyncio
    async def test_wallet_lookup_failure_is_unknown(self, fake_db, kol_index):
        async def broken_wallet(identity):
            raise ConnectionError("db went away")

        fake_db.get_wallet = broken_wallet
        signup = make_signup(fake_db, kol_index)

        outcome = await signup.complete_signup(profile())

        assert outcome.wallet_address is None
        assert outcome.position == 501


class TestSignIn:
    """Tests for sign_in and deferral"""

    @pytest.mark.asyncio
    async def test_success(self, fake_db, kol_index, fake_queue):
        signup = make_signup(fake_db, kol_index, queue=fake_queue)

        state = await signup.sign_in(profile(), session_id="sess-1")

        assert state.session_id == "sess-1"
        assert state.processing is ProcessingState.PROCESSING_COMPLETE
        assert state.needs_background_processing is False
        assert state.position == 501
        assert state.is_new_user is True
        assert fake_queue.jobs == {}

    @pytest.mark.asyncio
    async def test_timeout_defers_and_enqueues(self, fake_db, kol_index, fake_queue):
        async def slow_upsert(*args):
            await asyncio.sleep(1)

        fake_db.upsert_user = slow_upsert
        signup = make_signup(fake_db, kol_index, queue=fake_queue, timeout_seconds=0.01)

        state = await signup.sign_in(profile(), "SIGN-CAROL-aaaaaaaa")

        assert state.processing is ProcessingState.PROCESSING_DEFERRED
        assert state.needs_background_processing is True
        assert state.last_error == "timeout"
        assert state.retry_payload.referral_code == "SIGN-CAROL-aaaaaaaa"
        job = fake_queue.jobs[referral_job_id("user-1")]
        assert job.payload["identity"] == "user-1"
        assert job.payload["referral_code"] == "SIGN-CAROL-aaaaaaaa"

    @pytest.mark.asyncio
    async def test_error_defers(self, fake_db, kol_index, fake_queue):
        async def broken_upsert(*args):
            raise ConnectionError("db went away")

        fake_db.upsert_user = broken_upsert
        signup = make_signup(fake_db, kol_index, queue=fake_queue)

        state = await signup.sign_in(profile())

        assert state.processing is ProcessingState.PROCESSING_DEFERRED
        assert "ConnectionError" in state.last_error
        assert referral_job_id("user-1") in fake_queue.jobs

    @pytest.mark.asyncio
    async def test_enqueue_failure_still_defers(self, fake_db, kol_index, fake_queue):
        async def broken_upsert(*args):
            raise ConnectionError("db went away")

        async def broken_add(job_id, payload):
            raise redis.exceptions.ConnectionError("redis down")

        fake_db.upsert_user = broken_upsert
        fake_queue.add = broken_add
        signup = make_signup(fake_db, kol_index, queue=fake_queue)

        state = await signup.sign_in(profile())

        assert state.processing is ProcessingState.PROCESSING_DEFERRED

    @pytest.mark.asyncio
    async def test_enqueue_is_deduplicated(self, fake_queue, fake_db, kol_index):
        signup = make_signup(fake_db, kol_index, queue=fake_queue)
        payload = RetryPayload(profile=profile())

        assert await signup.enqueue(payload) is True
        assert await signup.enqueue(payload) is False
        assert len(fake_queue.jobs) == 1

    @pytest.mark.asyncio
    async def test_enqueue_without_queue(self, fake_db, kol_index):
        signup = make_signup(fake_db, kol_index)
        assert await signup.enqueue(RetryPayload(profile=profile())) is False


class TestRetryDeferred:
    """Tests for redoing deferred work"""

    @pytest.mark.asyncio
    async def test_retry_completes_once(self, fake_db, kol_index, fake_queue):
        """Deferred sign-in followed by two retries yields exactly one record"""
        async def slow_upsert(*args):
            await asyncio.sleep(1)

        fake_db.upsert_user = slow_upsert
        signup = make_signup(fake_db, kol_index, queue=fake_queue, timeout_seconds=0.01)
        deferred = await signup.sign_in(profile())
        del fake_db.upsert_user
        signup.timeout_seconds = 1.0

        completed = await signup.retry_deferred(deferred)

        assert completed.processing is ProcessingState.PROCESSING_COMPLETE
        assert completed.retry_payload is None
        assert completed.position == 501
        assert completed.is_new_user is True

        again = await signup.retry_deferred(completed)
        assert again is completed

        # a queue job for the same payload finds the record already there
        outcome = await signup.complete_deferred(deferred.retry_payload.profile)
        assert outcome.position == 501
        assert len(fake_db.referrals) == 1

    @pytest.mark.asyncio
    async def test_retry_after_partial_sign_in_reports_new_user(self, fake_db, kol_index, fake_queue):
        """Profile stored before the deadline hit: the retry still sees a first sign-in"""
        signup = make_signup(fake_db, kol_index, queue=fake_queue, timeout_seconds=0.05)

        async def slow_create(*args):
            await asyncio.sleep(1)

        signup.creator.create_referral_record = slow_create
        deferred = await signup.sign_in(profile())
        assert deferred.processing is ProcessingState.PROCESSING_DEFERRED
        assert fake_db.users["user-1"]["signup_state"] == SignupState.PENDING.value

        del signup.creator.create_referral_record
        signup.timeout_seconds = 1.0
        completed = await signup.retry_deferred(deferred)

        assert completed.processing is ProcessingState.PROCESSING_COMPLETE
        assert completed.position == 501
        assert completed.is_new_user is True

    @pytest.mark.asyncio
    async def test_retry_failure_keeps_deferred(self, fake_db, kol_index):
        async def broken_upsert(*args):
            raise ConnectionError("db went away")

        fake_db.upsert_user = broken_upsert
        signup = make_signup(fake_db, kol_index)
        deferred = await signup.sign_in(profile())

        still = await signup.retry_deferred(deferred)

        assert still.processing is ProcessingState.PROCESSING_DEFERRED
        assert still.retry_payload == deferred.retry_payload
        assert "ConnectionError" in still.last_error


class TestCompleteDeferred:
    """Tests for the queue-worker variant of the pipeline"""

    @pytest.mark.asyncio
    async def test_stored_profile_wins_over_job_profile(self, fake_db, kol_index):
        signup = make_signup(fake_db, kol_index)
        await UserService(fake_db).upsert(
            IdentityProfile(identity="user-1", handle="alice_new", display_name="Alice N", follower_count=900)
        )

        outcome = await signup.complete_deferred(profile(followers=3))

        assert outcome.position == 501
        assert outcome.referral_code.startswith("SIGN-ALICE-")
        assert fake_db.users["user-1"]["handle"] == "alice_new"
        assert fake_db.users["user-1"]["follower_count"] == 900
        assert fake_db.users["user-1"]["last_login_at"] is None

    @pytest.mark.asyncio
    async def test_missing_profile_inserted_without_login(self, fake_db, kol_index):
        signup = make_signup(fake_db, kol_index)

        outcome = await signup.complete_deferred(profile())

        assert outcome.is_new_user is True
        assert outcome.position == 501
        assert fake_db.users["user-1"]["signup_state"] == SignupState.COMPLETE.value
        assert fake_db.users["user-1"]["last_login_at"] is None

    @pytest.mark.asyncio
    async def test_follower_gate_applies(self, fake_db, kol_index):
        signup = make_signup(fake_db, kol_index)

        outcome = await signup.complete_deferred(profile(followers=3))

        assert outcome.insufficient_followers is True
        assert fake_db.referrals == {}
        assert fake_db.users["user-1"]["signup_state"] == SignupState.INSUFFICIENT.value


class TestSessionState:
    """Tests for session serialization and public view"""

    def test_round_trip_with_payload(self):
        state = SessionState(session_id="s", identity="user-1", handle="alice").deferred(
            RetryPayload(profile=profile(), referral_code="SIGN-aaaaaaaa"), "timeout",
        )
        assert SessionState.from_dict(state.to_dict()) == state

    def test_public_view_hides_internals(self):
        state = SessionState(session_id="s", identity="user-1").deferred(
            RetryPayload(profile=profile()), "timeout",
        )
        view = state.public_view()
        assert view["needsBackgroundProcessing"] is True
        assert view["wallet"] is None
        assert "retry_payload" not in view
        assert "last_error" not in view
        assert "session_id" not in view

    def test_with_wallet(self):
        state = SessionState(session_id="s", identity="user-1").with_wallet("0x" + "b" * 40, "ETH")
        assert state.public_view()["wallet"] == {"address": "0x" + "b" * 40, "chainType": "ETH"}
