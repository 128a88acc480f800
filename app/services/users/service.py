"""
User Profile Service

Profiles arrive from the identity provider on every sign-in and are upserted
by identity. `signup_state` records how far first-sign-in processing got:

    pending      -> no referral decision yet (new user, or deferred work)
    insufficient -> below the follower gate; no position was consumed
    complete     -> referral record exists
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

import database

logger = logging.getLogger(__name__)


class SignupState(Enum):
    PENDING = "pending"
    INSUFFICIENT = "insufficient"
    COMPLETE = "complete"


@dataclass(frozen=True)
class IdentityProfile:
    """Profile handed over by the identity provider."""
    identity: str
    handle: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    follower_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity,
            "handle": self.handle,
            "display_name": self.display_name,
            "avatar_url": self.avatar_url,
            "follower_count": self.follower_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IdentityProfile":
        return cls(
            identity=str(data["identity"]),
            handle=data.get("handle"),
            display_name=data.get("display_name"),
            avatar_url=data.get("avatar_url"),
            follower_count=int(data.get("follower_count") or 0),
        )


@dataclass
class UserProfile:
    identity: str
    handle: Optional[str]
    display_name: Optional[str]
    avatar_url: Optional[str]
    follower_count: int
    signup_state: SignupState
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UserProfile":
        return cls(
            identity=row["identity"],
            handle=row.get("handle"),
            display_name=row.get("display_name"),
            avatar_url=row.get("avatar_url"),
            follower_count=int(row.get("follower_count") or 0),
            signup_state=SignupState(row.get("signup_state") or SignupState.PENDING.value),
            created_at=row.get("created_at"),
            last_login_at=row.get("last_login_at"),
        )


@dataclass
class UpsertResult:
    user: UserProfile
    is_new: bool


class UserService:
    def __init__(self, db: Any = database):
        self.db = db

    async def upsert(self, profile: IdentityProfile) -> UpsertResult:
        row, inserted = await self.db.upsert_user(
            profile.identity,
            profile.handle,
            profile.display_name,
            profile.avatar_url,
            profile.follower_count,
        )
        if inserted:
            logger.info(f"USER_CREATED identity={profile.identity}")
        return UpsertResult(user=UserProfile.from_row(row), is_new=inserted)

    async def ensure(self, profile: IdentityProfile) -> UpsertResult:
        """Store the profile only if the identity has none yet; otherwise return the stored one."""
        row, inserted = await self.db.insert_user_if_absent(
            profile.identity,
            profile.handle,
            profile.display_name,
            profile.avatar_url,
            profile.follower_count,
        )
        if inserted:
            logger.info(f"USER_CREATED identity={profile.identity} source=deferred")
        return UpsertResult(user=UserProfile.from_row(row), is_new=inserted)

    async def find(self, identity: str) -> Optional[UserProfile]:
        row = await self.db.get_user(identity)
        return UserProfile.from_row(row) if row else None

    async def set_signup_state(self, identity: str, state: SignupState) -> None:
        await self.db.set_signup_state(identity, state.value)

    async def touch_last_login(self, identity: str) -> None:
        await self.db.touch_last_login(identity)
