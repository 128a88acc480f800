"""Consumers for the referral-creation queue"""
import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import asyncpg
import redis.exceptions

import config
from app.core.job_queue import Job, JobState, RedisJobQueue
from app.core.rate_limiter import RedisRateLimiter
from app.core.structured_logger import log_event
from app.services.positions import PositionAllocator
from app.services.signup import RetryPayload, SignupService
from app.utils.logging_helpers import (
    classify_error,
    log_worker_iteration_end,
    log_worker_iteration_start,
)

logger = logging.getLogger(__name__)

WORKER_NAME = "referral_worker"

# Minimum sleep after an infrastructure failure to prevent tight retry storms
MINIMUM_SAFE_SLEEP_ON_FAILURE = 5


class ReferralJobProcessor:
    """
    Runs referral-creation jobs.

    Each job runs the referral part of the sign-in pipeline for one identity
    (follower gate and KOL-aware record creation, never a profile overwrite
    or login stamp) and then checks the stored position against its lane's
    numbering. Any exception fails the attempt; the queue schedules the retry
    with exponential backoff and marks the job failed once attempts are
    exhausted.
    """

    def __init__(
        self,
        signup: SignupService,
        allocator: PositionAllocator,
        queue: RedisJobQueue,
        rate_limiter: RedisRateLimiter,
        job_timeout_seconds: float = config.QUEUE_JOB_TIMEOUT_SECONDS,
    ):
        self.signup = signup
        self.allocator = allocator
        self.queue = queue
        self.rate_limiter = rate_limiter
        self.job_timeout_seconds = job_timeout_seconds

    async def handle(self, job: Job) -> Dict[str, Any]:
        payload = RetryPayload.from_dict(job.payload)
        outcome = await self.signup.complete_deferred(payload.profile, payload.referral_code)
        if outcome.position is not None:
            self.allocator.check_postcondition(outcome.position, outcome.is_kol)
        return {
            "position": outcome.position,
            "referralCode": outcome.referral_code,
            "isKOL": outcome.is_kol,
            "insufficientFollowers": outcome.insufficient_followers,
        }

    async def process_next(self) -> bool:
        """
        Claim and run one job.

        Returns:
            False when the queue had nothing ready, True otherwise
        """
        job = await self.queue.claim()
        if job is None:
            return False

        await self.rate_limiter.wait()

        log_worker_iteration_start(
            worker_name=WORKER_NAME,
            correlation_id=f"{job.id}:{job.attempts}",
            job_id=job.id,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
        )
        started = time.time()

        try:
            result = await asyncio.wait_for(self.handle(job), self.job_timeout_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                reason = f"Job timed out after {self.job_timeout_seconds}s"
            else:
                reason = f"{type(e).__name__}: {str(e)[:200]}"
            state = await self.queue.fail(job, reason)
            log_worker_iteration_end(
                worker_name=WORKER_NAME,
                outcome="failed" if state is JobState.FAILED else "degraded",
                items_processed=0,
                error_type=classify_error(e),
                duration_ms=(time.time() - started) * 1000,
                job_id=job.id,
                next_state=state.value,
                reason=reason,
            )
            return True

        await self.queue.complete(job, result)
        log_worker_iteration_end(
            worker_name=WORKER_NAME,
            outcome="success",
            items_processed=1,
            duration_ms=(time.time() - started) * 1000,
            job_id=job.id,
            position=result.get("position"),
        )
        return True

    async def run_maintenance(self) -> None:
        recovered = await self.queue.recover_stalled()
        await self.queue.purge(
            completed_age_seconds=config.QUEUE_COMPLETED_RETENTION_SECONDS,
            completed_keep=config.QUEUE_COMPLETED_RETENTION_COUNT,
            failed_age_seconds=config.QUEUE_FAILED_RETENTION_SECONDS,
        )
        if recovered:
            log_event(
                logger,
                component="queue",
                operation="recover_stalled",
                outcome="recovered",
                recovered=recovered,
            )


async def consumer_loop(processor: ReferralJobProcessor, consumer_number: int, stop_event: asyncio.Event):
    """One consumer: claim, run, repeat. Sleeps between empty polls."""
    logger.info(f"{WORKER_NAME} consumer {consumer_number} started")
    while not stop_event.is_set():
        try:
            processed = await processor.process_next()
            if not processed:
                await _sleep_or_stop(stop_event, config.QUEUE_POLL_INTERVAL_SECONDS)
        except asyncio.CancelledError:
            log_event(
                logger,
                component="worker",
                operation=f"{WORKER_NAME}_consumer",
                outcome="cancelled",
                consumer=consumer_number,
            )
            raise
        except (asyncpg.PostgresError, redis.exceptions.RedisError, asyncio.TimeoutError, OSError) as e:
            logger.warning(
                f"{WORKER_NAME}: dependency temporarily unavailable in consumer {consumer_number}: "
                f"{type(e).__name__}: {str(e)[:100]}"
            )
            await _sleep_or_stop(stop_event, MINIMUM_SAFE_SLEEP_ON_FAILURE)
        except Exception as e:
            logger.error(f"{WORKER_NAME}: unexpected error in consumer {consumer_number}: {type(e).__name__}: {str(e)[:100]}")
            logger.debug(f"{WORKER_NAME}: full traceback", exc_info=True)
            await _sleep_or_stop(stop_event, MINIMUM_SAFE_SLEEP_ON_FAILURE)
    logger.info(f"{WORKER_NAME} consumer {consumer_number} stopped")


async def maintenance_loop(processor: ReferralJobProcessor, stop_event: asyncio.Event):
    """Stalled-job recovery and retention purge every QUEUE_MAINTENANCE_INTERVAL_SECONDS."""
    iteration_number = 0
    while not stop_event.is_set():
        await _sleep_or_stop(stop_event, config.QUEUE_MAINTENANCE_INTERVAL_SECONDS)
        if stop_event.is_set():
            break
        iteration_number += 1
        log_worker_iteration_start(worker_name=f"{WORKER_NAME}_maintenance", iteration_number=iteration_number)
        started = time.time()
        try:
            await processor.run_maintenance()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_worker_iteration_end(
                worker_name=f"{WORKER_NAME}_maintenance",
                outcome="failed",
                error_type=classify_error(e),
                duration_ms=(time.time() - started) * 1000,
            )
            continue
        log_worker_iteration_end(
            worker_name=f"{WORKER_NAME}_maintenance",
            outcome="success",
            duration_ms=(time.time() - started) * 1000,
        )


async def _sleep_or_stop(stop_event: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


class ReferralWorker:
    """
    QUEUE_CONCURRENCY consumer tasks plus one maintenance task.

    Example:
        worker = ReferralWorker(processor)
        worker.start()
        ...
        await worker.stop()
    """

    def __init__(self, processor: ReferralJobProcessor, concurrency: int = config.QUEUE_CONCURRENCY):
        self.processor = processor
        self.concurrency = max(1, concurrency)
        self._stop_event: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        self._stop_event = asyncio.Event()
        for n in range(1, self.concurrency + 1):
            self._tasks.append(
                asyncio.create_task(consumer_loop(self.processor, n, self._stop_event), name=f"{WORKER_NAME}-{n}")
            )
        self._tasks.append(
            asyncio.create_task(maintenance_loop(self.processor, self._stop_event), name=f"{WORKER_NAME}-maintenance")
        )
        logger.info(f"{WORKER_NAME} started (concurrency={self.concurrency})")

    async def stop(self, timeout: float = 10.0) -> None:
        """Let in-flight jobs finish, cancel whatever is still running after `timeout`."""
        if not self._tasks:
            return
        self._stop_event.set()
        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        logger.info(f"{WORKER_NAME} stopped (cancelled={len(pending)})")
