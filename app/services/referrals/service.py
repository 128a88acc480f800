"""
Referral Record Store

One referral record per identity: its code, its position and the counters
that grow as the code is shared. Records are never updated beyond the two
counters and never deleted.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import database
from app.core.exceptions import RecordAlreadyExistsError
from app.core.structured_logger import log_event
from app.services.referrals.exceptions import ReferralAlreadyExistsError

logger = logging.getLogger(__name__)


@dataclass
class ReferralRecord:
    identity: str
    referral_code: str
    position: int
    is_kol: bool = False
    referred_by: Optional[str] = None
    referral_count: int = 0
    link_visits: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ReferralRecord":
        return cls(
            identity=row["identity"],
            referral_code=row["referral_code"],
            position=int(row["position"]),
            is_kol=bool(row.get("is_kol", False)),
            referred_by=row.get("referred_by"),
            referral_count=int(row.get("referral_count") or 0),
            link_visits=int(row.get("link_visits") or 0),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


@dataclass
class ReferralCreateResult:
    """Outcome of create_with_referrer.

    `referrer_credited` is False when there was no referrer or when crediting
    the referrer failed after the record itself was stored.
    """
    record: ReferralRecord
    referrer_credited: bool


class ReferralStore:
    def __init__(self, db: Any = database):
        self.db = db

    async def create(
        self,
        identity: str,
        referral_code: str,
        position: int,
        is_kol: bool,
        referred_by: Optional[str] = None,
    ) -> ReferralRecord:
        """
        Raises:
            ReferralAlreadyExistsError: identity already has a record
            RecordAlreadyExistsError: referral_code or position is taken
        """
        try:
            row = await self.db.insert_referral(identity, referral_code, position, is_kol, referred_by)
        except RecordAlreadyExistsError as e:
            if e.field == "identity":
                raise ReferralAlreadyExistsError(identity) from e
            raise
        return ReferralRecord.from_row(row)

    async def find_by_identity(self, identity: str) -> Optional[ReferralRecord]:
        row = await self.db.get_referral_by_identity(identity)
        return ReferralRecord.from_row(row) if row else None

    async def find_by_code(self, referral_code: str) -> Optional[ReferralRecord]:
        row = await self.db.get_referral_by_code(referral_code)
        return ReferralRecord.from_row(row) if row else None

    async def increment_referral_count(self, identity: str) -> bool:
        return await self.db.increment_referral_count(identity)

    async def increment_link_visits(self, referral_code: str) -> bool:
        return await self.db.increment_link_visits(referral_code)

    async def create_with_referrer(
        self,
        identity: str,
        referral_code: str,
        position: int,
        is_kol: bool,
        referrer_identity: Optional[str] = None,
    ) -> ReferralCreateResult:
        """
        Create the record, then credit the referrer.

        The two writes are not atomic. A failed credit after a successful
        create is logged and reported in the result, never raised: the new
        user's record must not be lost over a counter.
        """
        record = await self.create(identity, referral_code, position, is_kol, referrer_identity)
        if not referrer_identity:
            return ReferralCreateResult(record=record, referrer_credited=False)

        try:
            credited = await self.increment_referral_count(referrer_identity)
        except Exception as e:
            log_event(
                logger,
                component="referrals",
                operation="credit_referrer",
                outcome="failed",
                level="error",
                reason=f"{type(e).__name__}: {str(e)[:100]}",
                identity=identity,
                referrer=referrer_identity,
            )
            return ReferralCreateResult(record=record, referrer_credited=False)

        if not credited:
            log_event(
                logger,
                component="referrals",
                operation="credit_referrer",
                outcome="failed",
                level="error",
                reason="referrer_record_missing",
                identity=identity,
                referrer=referrer_identity,
            )
        return ReferralCreateResult(record=record, referrer_credited=credited)
