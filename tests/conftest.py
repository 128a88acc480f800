"""
Pytest configuration and shared fixtures.

FakeDatabase mirrors the async functions of the `database` module in memory,
with the same atomicity (each call is one step) and the same unique
constraints. Every call yields to the event loop first so concurrent callers
interleave between calls the way they do against Postgres.
"""
import os

# config refuses to start without APP_ENV outside prod defaults; tests run as local
os.environ.setdefault("APP_ENV", "local")

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.core.exceptions import RecordAlreadyExistsError
from app.core.job_queue import Job, JobState
from app.services.kol import KolIndex


def _now() -> datetime:
    return datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeDatabase:
    DB_READY = True

    def __init__(self):
        self.counters: Dict[str, int] = {}
        self.referrals: Dict[str, Dict[str, Any]] = {}
        self.users: Dict[str, Dict[str, Any]] = {}
        self.wallets: Dict[str, Dict[str, Any]] = {}

    # counters

    async def increment_counter(self, counter_id: str, floor: int = 0) -> int:
        await asyncio.sleep(0)
        current = self.counters.get(counter_id)
        value = (floor if current is None else max(current, floor)) + 1
        self.counters[counter_id] = value
        return value

    async def advance_counter(self, counter_id: str, value: int) -> int:
        await asyncio.sleep(0)
        current = self.counters.get(counter_id)
        self.counters[counter_id] = value if current is None else max(current, value)
        return self.counters[counter_id]

    async def get_counter_value(self, counter_id: str) -> Optional[int]:
        await asyncio.sleep(0)
        return self.counters.get(counter_id)

    # referrals

    async def insert_referral(self, identity, referral_code, position, is_kol, referred_by=None):
        await asyncio.sleep(0)
        if identity in self.referrals:
            raise RecordAlreadyExistsError("identity")
        if any(r["referral_code"] == referral_code for r in self.referrals.values()):
            raise RecordAlreadyExistsError("referral_code")
        if any(r["position"] == position for r in self.referrals.values()):
            raise RecordAlreadyExistsError("position")
        row = {
            "identity": identity,
            "referral_code": referral_code,
            "position": position,
            "is_kol": is_kol,
            "referred_by": referred_by,
            "referral_count": 0,
            "link_visits": 0,
            "created_at": _now(),
            "updated_at": _now(),
        }
        self.referrals[identity] = row
        return dict(row)

    async def get_referral_by_identity(self, identity):
        await asyncio.sleep(0)
        row = self.referrals.get(identity)
        return dict(row) if row else None

    async def get_referral_by_code(self, referral_code):
        await asyncio.sleep(0)
        for row in self.referrals.values():
            if row["referral_code"] == referral_code:
                return dict(row)
        return None

    async def referral_code_exists(self, referral_code):
        return await self.get_referral_by_code(referral_code) is not None

    async def increment_referral_count(self, identity):
        await asyncio.sleep(0)
        row = self.referrals.get(identity)
        if row is None:
            return False
        row["referral_count"] += 1
        return True

    async def increment_link_visits(self, referral_code):
        await asyncio.sleep(0)
        for row in self.referrals.values():
            if row["referral_code"] == referral_code:
                row["link_visits"] += 1
                return True
        return False

    async def get_max_position(self, min_position, max_position=None, is_kol=None):
        await asyncio.sleep(0)
        positions = [
            r["position"] for r in self.referrals.values()
            if r["position"] >= min_position
            and (max_position is None or r["position"] <= max_position)
            and (is_kol is None or r["is_kol"] == is_kol)
        ]
        return max(positions) if positions else None

    async def count_referrals(self):
        await asyncio.sleep(0)
        return len(self.referrals)

    # users

    async def upsert_user(self, identity, handle, display_name, avatar_url, follower_count) -> Tuple[Dict[str, Any], bool]:
        await asyncio.sleep(0)
        fields = {
            "handle": handle,
            "display_name": display_name,
            "avatar_url": avatar_url,
            "follower_count": follower_count,
        }
        row = self.users.get(identity)
        if row is not None:
            row.update(fields)
            return dict(row), False
        row = {"identity": identity, "signup_state": "pending", "created_at": _now(), "last_login_at": None, **fields}
        self.users[identity] = row
        return dict(row), True

    async def insert_user_if_absent(self, identity, handle, display_name, avatar_url, follower_count):
        await asyncio.sleep(0)
        row = self.users.get(identity)
        if row is not None:
            return dict(row), False
        return await self.upsert_user(identity, handle, display_name, avatar_url, follower_count)

    async def get_user(self, identity):
        await asyncio.sleep(0)
        row = self.users.get(identity)
        return dict(row) if row else None

    async def set_signup_state(self, identity, state):
        await asyncio.sleep(0)
        if identity in self.users:
            self.users[identity]["signup_state"] = state

    async def touch_last_login(self, identity):
        await asyncio.sleep(0)
        if identity in self.users:
            self.users[identity]["last_login_at"] = _now()

    # wallets

    async def insert_wallet(self, identity, address, chain_type):
        await asyncio.sleep(0)
        if identity in self.wallets:
            raise RecordAlreadyExistsError("identity")
        row = {"identity": identity, "address": address, "chain_type": chain_type, "created_at": _now()}
        self.wallets[identity] = row
        return dict(row)

    async def get_wallet(self, identity):
        await asyncio.sleep(0)
        row = self.wallets.get(identity)
        return dict(row) if row else None


class FakeJobQueue:
    """In-memory stand-in for RedisJobQueue. Backoff delays are not simulated."""

    def __init__(self, max_attempts: int = 5):
        self.max_attempts = max_attempts
        self.jobs: Dict[str, Job] = {}
        self.waiting: List[str] = []

    async def add(self, job_id: str, payload: Dict[str, Any]) -> bool:
        if job_id in self.jobs:
            return False
        self.jobs[job_id] = Job(id=job_id, payload=dict(payload), state=JobState.WAITING, max_attempts=self.max_attempts)
        self.waiting.append(job_id)
        return True

    async def retry(self, job_id: str) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job.state is not JobState.FAILED:
            return False
        job.state = JobState.WAITING
        job.attempts = 0
        job.failed_reason = None
        self.waiting.append(job_id)
        return True

    async def claim(self) -> Optional[Job]:
        if not self.waiting:
            return None
        job = self.jobs[self.waiting.pop(0)]
        job.state = JobState.ACTIVE
        job.attempts += 1
        return replace(job)

    async def complete(self, job: Job, result: Optional[Dict[str, Any]] = None) -> bool:
        stored = self.jobs[job.id]
        stored.state = JobState.COMPLETED
        stored.result = result
        stored.failed_reason = None
        return True

    async def fail(self, job: Job, reason: str) -> JobState:
        stored = self.jobs[job.id]
        stored.failed_reason = reason
        if job.attempts >= job.max_attempts:
            stored.state = JobState.FAILED
            return JobState.FAILED
        stored.state = JobState.DELAYED
        self.waiting.append(job.id)
        return JobState.DELAYED

    async def recover_stalled(self) -> int:
        return 0

    async def purge(self, completed_age_seconds=3600, completed_keep=1000, failed_age_seconds=86400) -> int:
        return 0

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = self.jobs.get(job_id)
        return replace(job) if job else None

    async def count_waiting(self) -> int:
        return sum(1 for job_id in self.waiting if self.jobs[job_id].state is JobState.WAITING)


class FakeSessionStore:
    def __init__(self):
        self.sessions: Dict[str, Dict[str, Any]] = {}

    async def load(self, session_id: str) -> Optional[Dict[str, Any]]:
        data = self.sessions.get(session_id)
        return dict(data) if data else None

    async def save(self, session_id: str, data: Dict[str, Any]) -> None:
        self.sessions[session_id] = dict(data)

    async def delete(self, session_id: str) -> None:
        self.sessions.pop(session_id, None)


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def fake_queue():
    return FakeJobQueue()


@pytest.fixture
def fake_sessions():
    return FakeSessionStore()


@pytest.fixture
def kol_list_file(tmp_path):
    path = tmp_path / "kol.reserve.json"
    path.write_text(
        '{"kols": ['
        '{"identity": "kol-1", "handle": "KolOne"},'
        '{"xId": "kol-2", "username": "@kol_two"}'
        ']}'
    )
    return path


@pytest.fixture
def kol_index(kol_list_file):
    return KolIndex(kol_list_file)


@pytest.fixture
def mock_database():
    """MagicMock database module for error-injection tests"""
    db = MagicMock()
    db.increment_counter = AsyncMock()
    db.advance_counter = AsyncMock()
    db.get_counter_value = AsyncMock()
    db.insert_referral = AsyncMock()
    db.get_referral_by_identity = AsyncMock(return_value=None)
    db.get_referral_by_code = AsyncMock(return_value=None)
    db.referral_code_exists = AsyncMock(return_value=False)
    db.increment_referral_count = AsyncMock(return_value=True)
    db.increment_link_visits = AsyncMock(return_value=True)
    db.get_max_position = AsyncMock(return_value=None)
    db.count_referrals = AsyncMock(return_value=0)
    db.upsert_user = AsyncMock()
    db.insert_user_if_absent = AsyncMock()
    db.get_user = AsyncMock()
    db.set_signup_state = AsyncMock()
    db.touch_last_login = AsyncMock()
    db.insert_wallet = AsyncMock()
    db.get_wallet = AsyncMock(return_value=None)
    return db
