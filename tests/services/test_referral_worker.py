"""
Unit tests for the referral queue worker.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import config
from app.core.job_queue import JobState
from app.core.rate_limiter import RedisRateLimiter
from app.services.positions import PositionAllocator, PositionPostconditionError
from app.services.referrals import (
    ReferralCodeGenerator,
    ReferralCreator,
    ReferralStatusKind,
    ReferralStatusService,
    ReferralStore,
    referral_job_id,
)
from app.services.signup import RetryPayload, SignupOutcome, SignupService
from app.services.users import IdentityProfile, UserService
from app.services.wallets import WalletService
from referral_worker import ReferralJobProcessor, ReferralWorker


def make_signup(db, kol_index, queue):
    referrals = ReferralStore(db)
    creator = ReferralCreator(kol_index, PositionAllocator(db=db), ReferralCodeGenerator(db=db), referrals)
    return SignupService(UserService(db), creator, referrals, WalletService(db), queue=queue, timeout_seconds=1.0)


def payload(identity="user-1", handle="alice", followers=500):
    return RetryPayload(
        profile=IdentityProfile(identity=identity, handle=handle, follower_count=followers),
    ).to_dict()


@pytest.fixture
def processor(fake_db, kol_index, fake_queue):
    signup = make_signup(fake_db, kol_index, queue=fake_queue)
    return ReferralJobProcessor(
        signup=signup,
        allocator=PositionAllocator(db=fake_db),
        queue=fake_queue,
        rate_limiter=RedisRateLimiter(None, prefix="rate:test", max_requests=10, window_ms=1000),
        job_timeout_seconds=1.0,
    )


class TestReferralJobProcessor:
    """Tests for one job run"""

    @pytest.mark.asyncio
    async def test_empty_queue(self, processor):
        assert await processor.process_next() is False

    @pytest.mark.asyncio
    async def test_job_creates_record(self, processor, fake_queue, fake_db):
        await fake_queue.add(referral_job_id("user-1"), payload())

        assert await processor.process_next() is True

        job = fake_queue.jobs[referral_job_id("user-1")]
        assert job.state is JobState.COMPLETED
        assert job.result["position"] == 501
        assert job.result["referralCode"] == fake_db.referrals["user-1"]["referral_code"]

    @pytest.mark.asyncio
    async def test_job_for_existing_record_is_noop(self, processor, fake_queue, fake_db):
        await processor.signup.complete_signup(IdentityProfile(identity="user-1", handle="alice", follower_count=500))
        await fake_queue.add(referral_job_id("user-1"), payload())

        await processor.process_next()

        assert fake_queue.jobs[referral_job_id("user-1")].state is JobState.COMPLETED
        assert len(fake_db.referrals) == 1

    @pytest.mark.asyncio
    async def test_low_follower_job_reports_insufficient(self, processor, fake_queue, fake_db):
        await fake_queue.add(referral_job_id("user-1"), payload(followers=3))

        await processor.process_next()

        job = fake_queue.jobs[referral_job_id("user-1")]
        assert job.state is JobState.COMPLETED
        assert job.result["insufficientFollowers"] is True
        status = await ReferralStatusService(ReferralStore(fake_db), fake_queue).get_referral_status("user-1")
        assert status.status is ReferralStatusKind.INSUFFICIENT_FOLLOWERS
        assert status.is_terminal

    @pytest.mark.asyncio
    async def test_job_keeps_newer_stored_profile(self, processor, fake_queue, fake_db):
        await UserService(fake_db).upsert(IdentityProfile(identity="user-1", handle="alice_new", follower_count=900))
        await fake_queue.add(referral_job_id("user-1"), payload(followers=3))

        await processor.process_next()

        assert fake_db.referrals["user-1"]["position"] == 501
        assert fake_db.users["user-1"]["handle"] == "alice_new"
        assert fake_db.users["user-1"]["last_login_at"] is None

    @pytest.mark.asyncio
    async def test_failure_delays_then_fails(self, processor, fake_queue, fake_db):
        async def broken_insert(*args):
            raise RuntimeError("store rejected write")

        fake_db.insert_user_if_absent = broken_insert
        await fake_queue.add(referral_job_id("user-1"), payload())

        for _ in range(4):
            await processor.process_next()
            assert fake_queue.jobs[referral_job_id("user-1")].state is JobState.DELAYED

        await processor.process_next()

        job = fake_queue.jobs[referral_job_id("user-1")]
        assert job.state is JobState.FAILED
        assert job.failed_reason == "RuntimeError: store rejected write"

    @pytest.mark.asyncio
    async def test_timeout_reason(self, processor, fake_queue, fake_db):
        async def slow_insert(*args):
            await asyncio.sleep(1)

        fake_db.insert_user_if_absent = slow_insert
        processor.job_timeout_seconds = 0.01
        await fake_queue.add(referral_job_id("user-1"), payload())

        await processor.process_next()

        assert fake_queue.jobs[referral_job_id("user-1")].failed_reason == "Job timed out after 0.01s"

    @pytest.mark.asyncio
    async def test_postcondition_violation_fails_attempt(self, processor, fake_queue):
        processor.signup.complete_deferred = AsyncMock(
            return_value=SignupOutcome(is_new_user=True, referral_code="SIGN-aaaaaaaa", position=400, is_kol=False)
        )
        await fake_queue.add(referral_job_id("user-1"), payload())

        await processor.process_next()

        job = fake_queue.jobs[referral_job_id("user-1")]
        assert job.state is JobState.DELAYED
        assert job.failed_reason.startswith(PositionPostconditionError.__name__)

    @pytest.mark.asyncio
    async def test_rate_limiter_consulted_per_job(self, processor, fake_queue):
        processor.rate_limiter = MagicMock()
        processor.rate_limiter.wait = AsyncMock()

        await processor.process_next()
        processor.rate_limiter.wait.assert_not_awaited()

        await fake_queue.add(referral_job_id("user-1"), payload())
        await processor.process_next()
        processor.rate_limiter.wait.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_concurrent_jobs_unique_positions(self, processor, fake_queue, fake_db):
        for n in range(20):
            await fake_queue.add(referral_job_id(f"user-{n}"), payload(f"user-{n}", f"user{n}"))

        await asyncio.gather(*(processor.process_next() for _ in range(20)))

        positions = [r["position"] for r in fake_db.referrals.values()]
        assert len(positions) == 20
        assert len(set(positions)) == 20

    @pytest.mark.asyncio
    async def test_maintenance_recovers_and_purges(self, processor):
        processor.queue = MagicMock()
        processor.queue.recover_stalled = AsyncMock(return_value=1)
        processor.queue.purge = AsyncMock(return_value=0)

        await processor.run_maintenance()

        processor.queue.recover_stalled.assert_awaited_once()
        processor.queue.purge.assert_awaited_once_with(
            completed_age_seconds=config.QUEUE_COMPLETED_RETENTION_SECONDS,
            completed_keep=config.QUEUE_COMPLETED_RETENTION_COUNT,
            failed_age_seconds=config.QUEUE_FAILED_RETENTION_SECONDS,
        )


class TestReferralWorker:
    """Tests for worker lifecycle"""

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        processor = MagicMock()
        processor.process_next = AsyncMock(return_value=False)
        processor.run_maintenance = AsyncMock()

        with patch("referral_worker.config.QUEUE_POLL_INTERVAL_SECONDS", 0.01):
            worker = ReferralWorker(processor, concurrency=3)
            worker.start()
            assert worker.running
            await asyncio.sleep(0.05)
            await worker.stop(timeout=1.0)

        assert worker.running is False
        assert processor.process_next.await_count >= 3

    @pytest.mark.asyncio
    async def test_consumer_survives_errors(self):
        processor = MagicMock()
        processor.process_next = AsyncMock(side_effect=[RuntimeError("boom"), False, False])
        processor.run_maintenance = AsyncMock()

        with patch("referral_worker.MINIMUM_SAFE_SLEEP_ON_FAILURE", 0.01), \
                patch("referral_worker.config.QUEUE_POLL_INTERVAL_SECONDS", 10):
            worker = ReferralWorker(processor, concurrency=1)
            worker.start()
            await asyncio.sleep(0.1)
            await worker.stop(timeout=1.0)

        assert processor.process_next.await_count == 2

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        worker = ReferralWorker(MagicMock(), concurrency=1)
        await worker.stop()
        assert worker.running is False
