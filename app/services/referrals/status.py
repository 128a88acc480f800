"""
Referral status contract.

Server side: answer "where is my referral?" from the record store and the
referral-creation queue.

Client side: a poller that asks every 2 seconds until the answer is terminal
(completed, failed or insufficient_followers) and gives up after 60 polls.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

import config
from app.core.job_queue import JobState, RedisJobQueue
from app.services.referrals.exceptions import StatusPollTimeoutError
from app.services.referrals.service import ReferralStore
from app.services.users import SignupState, UserService

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_MESSAGE = "Referral creation failed. Please try again in 1 hour."
MISSING_AFTER_COMPLETION_MESSAGE = "Referral record missing after job completion"
NO_JOB_MESSAGE = "No referral creation job found"
INSUFFICIENT_FOLLOWERS_MESSAGE = "Account does not meet the minimum follower count"

POLL_INTERVAL_SECONDS = 2.0
MAX_POLLS = 60
STATUS_HTTP_TIMEOUT = httpx.Timeout(connect=5.0, read=10.0, write=5.0, pool=5.0)


class ReferralStatusKind(Enum):
    COMPLETED = "completed"
    NOT_FOUND = "not_found"
    FAILED = "failed"
    PROCESSING = "processing"
    PENDING = "pending"
    INSUFFICIENT_FOLLOWERS = "insufficient_followers"


@dataclass
class ReferralStatus:
    status: ReferralStatusKind
    position: Optional[int] = None
    referral_code: Optional[str] = None
    is_kol: Optional[bool] = None
    error: Optional[str] = None
    estimated_wait_time: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            ReferralStatusKind.COMPLETED,
            ReferralStatusKind.FAILED,
            ReferralStatusKind.INSUFFICIENT_FOLLOWERS,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape (camelCase, unset fields omitted)."""
        data: Dict[str, Any] = {"status": self.status.value}
        if self.position is not None:
            data["position"] = self.position
        if self.referral_code is not None:
            data["referralCode"] = self.referral_code
        if self.is_kol is not None:
            data["isKOL"] = self.is_kol
        if self.error is not None:
            data["error"] = self.error
        if self.estimated_wait_time is not None:
            data["estimatedWaitTime"] = self.estimated_wait_time
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReferralStatus":
        return cls(
            status=ReferralStatusKind(data["status"]),
            position=data.get("position"),
            referral_code=data.get("referralCode"),
            is_kol=data.get("isKOL"),
            error=data.get("error"),
            estimated_wait_time=data.get("estimatedWaitTime"),
        )


def _insufficient() -> ReferralStatus:
    return ReferralStatus(status=ReferralStatusKind.INSUFFICIENT_FOLLOWERS, error=INSUFFICIENT_FOLLOWERS_MESSAGE)


def referral_job_id(identity: str) -> str:
    """Deterministic queue id: one referral job per identity."""
    return f"referral-{identity}"


class ReferralStatusService:
    def __init__(
        self,
        store: ReferralStore,
        queue: RedisJobQueue,
        users: Optional[UserService] = None,
        concurrency: int = config.QUEUE_CONCURRENCY,
        avg_service_seconds: float = config.STATUS_AVG_SERVICE_SECONDS,
    ):
        self.store = store
        self.queue = queue
        self.users = users
        self.concurrency = max(1, concurrency)
        self.avg_service_seconds = avg_service_seconds

    def estimate_wait_seconds(self, waiting: int) -> int:
        return math.ceil(waiting * self.avg_service_seconds / self.concurrency)

    async def _completed_from_store(self, identity: str) -> Optional[ReferralStatus]:
        record = await self.store.find_by_identity(identity)
        if record is None:
            return None
        return ReferralStatus(
            status=ReferralStatusKind.COMPLETED,
            position=record.position,
            referral_code=record.referral_code,
            is_kol=record.is_kol,
        )

    async def _is_insufficient(self, identity: str) -> bool:
        if self.users is None:
            return False
        user = await self.users.find(identity)
        return user is not None and user.signup_state is SignupState.INSUFFICIENT

    async def get_referral_status(self, identity: str) -> ReferralStatus:
        completed = await self._completed_from_store(identity)
        if completed is not None:
            return completed

        # Below the follower gate is final: no record will ever be created
        if await self._is_insufficient(identity):
            return _insufficient()

        job = await self.queue.get_job(referral_job_id(identity))
        if job is None:
            return ReferralStatus(status=ReferralStatusKind.NOT_FOUND, error=NO_JOB_MESSAGE)

        if job.state is JobState.COMPLETED:
            # Record may have landed between the first lookup and the job read
            completed = await self._completed_from_store(identity)
            if completed is not None:
                return completed
            if job.result and job.result.get("insufficientFollowers"):
                return _insufficient()
            return ReferralStatus(status=ReferralStatusKind.FAILED, error=MISSING_AFTER_COMPLETION_MESSAGE)

        if job.state is JobState.FAILED:
            return ReferralStatus(
                status=ReferralStatusKind.FAILED,
                error=job.failed_reason or DEFAULT_FAILURE_MESSAGE,
            )

        if job.state is JobState.ACTIVE:
            return ReferralStatus(status=ReferralStatusKind.PROCESSING)

        waiting = await self.queue.count_waiting()
        return ReferralStatus(
            status=ReferralStatusKind.PENDING,
            estimated_wait_time=self.estimate_wait_seconds(waiting),
        )


class ReferralStatusPoller:
    """
    Client-side poller for GET /referral/status.

    Example:
        async with httpx.AsyncClient(base_url=url, cookies=cookies) as client:
            status = await ReferralStatusPoller(client).poll()
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        path: str = "/referral/status",
        interval_seconds: float = POLL_INTERVAL_SECONDS,
        max_polls: int = MAX_POLLS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_status: Optional[Callable[[ReferralStatus], Any]] = None,
    ):
        self.client = client
        self.path = path
        self.interval_seconds = interval_seconds
        self.max_polls = max_polls
        self._sleep = sleep
        self._on_status = on_status

    async def fetch(self) -> ReferralStatus:
        response = await self.client.get(self.path, timeout=STATUS_HTTP_TIMEOUT)
        response.raise_for_status()
        return ReferralStatus.from_dict(response.json())

    async def poll(self) -> ReferralStatus:
        """
        Poll until the status is terminal.

        Transport errors count as a poll and are otherwise ignored.

        Raises:
            StatusPollTimeoutError: no terminal status after max_polls
        """
        for poll_number in range(1, self.max_polls + 1):
            try:
                status = await self.fetch()
            except (httpx.HTTPError, ValueError, KeyError) as e:
                logger.warning(f"STATUS_POLL_ERROR poll={poll_number} error={type(e).__name__}: {str(e)[:100]}")
            else:
                if self._on_status is not None:
                    self._on_status(status)
                if status.is_terminal:
                    return status
            if poll_number < self.max_polls:
                await self._sleep(self.interval_seconds)
        raise StatusPollTimeoutError(polls=self.max_polls)
