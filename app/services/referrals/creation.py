"""
KOL-aware referral creation.

Order of work for one identity:
1. existing record -> ReferralAlreadyExistsError (no position is consumed)
2. KOL membership
3. position allocation (KOL lane when eligible, regular otherwise)
4. referrer resolution from the code the visitor arrived with
5. unique code + record insert, crediting the referrer
"""

import logging
import time
from typing import Optional

from app.core.exceptions import RecordAlreadyExistsError
from app.core.structured_logger import log_event
from app.services.kol import KolIndex
from app.services.positions import PositionAllocator
from app.services.referrals.codes import ReferralCodeGenerator
from app.services.referrals.exceptions import (
    ReferralAlreadyExistsError,
    ReferralCodeExhaustedError,
)
from app.services.referrals.service import ReferralRecord, ReferralStore

logger = logging.getLogger(__name__)


class ReferralCreator:
    def __init__(
        self,
        kol_index: KolIndex,
        allocator: PositionAllocator,
        codes: ReferralCodeGenerator,
        store: ReferralStore,
    ):
        self.kol_index = kol_index
        self.allocator = allocator
        self.codes = codes
        self.store = store

    async def resolve_referrer(self, identity: str, referred_by_code: Optional[str]) -> Optional[str]:
        """Identity owning `referred_by_code`, or None (no code, bad code, unknown, self)."""
        if not referred_by_code:
            return None
        if not self.codes.validate_format(referred_by_code).valid:
            logger.info("REFERRER_CODE_INVALID_FORMAT")
            return None
        referrer = await self.store.find_by_code(referred_by_code)
        if referrer is None:
            logger.warning(f"REFERRER_NOT_FOUND identity={identity}")
            return None
        if referrer.identity == identity:
            logger.warning(f"REFERRAL_SELF_ATTEMPT identity={identity}")
            return None
        return referrer.identity

    async def create_referral_record(
        self,
        identity: str,
        handle: Optional[str],
        referred_by_code: Optional[str] = None,
    ) -> ReferralRecord:
        """
        Create the identity's referral record.

        Raises:
            ReferralAlreadyExistsError: the identity already has one
            ReferralCodeExhaustedError: no free code within the attempt budget
        """
        started = time.monotonic()

        existing = await self.store.find_by_identity(identity)
        if existing is not None:
            raise ReferralAlreadyExistsError(identity, existing)

        is_kol = await self.kol_index.is_kol(identity, handle)
        allocation = await self.allocator.allocate(is_kol)
        referrer_identity = await self.resolve_referrer(identity, referred_by_code)

        # A code can be taken between the existence check and the insert
        for _ in range(self.codes.max_attempts):
            code = await self.codes.create_unique(handle)
            try:
                result = await self.store.create_with_referrer(
                    identity=identity,
                    referral_code=code,
                    position=allocation.position,
                    is_kol=allocation.is_kol,
                    referrer_identity=referrer_identity,
                )
            except ReferralAlreadyExistsError as e:
                e.record = await self.store.find_by_identity(identity)
                raise
            except RecordAlreadyExistsError as e:
                if e.field != "referral_code":
                    raise
                logger.info("REFERRAL_CODE_RACE regenerating")
                continue

            log_event(
                logger,
                component="referrals",
                operation="create_record",
                outcome="success",
                duration_ms=int((time.monotonic() - started) * 1000),
                identity=identity,
                position=result.record.position,
                lane=allocation.lane.value,
                referred=bool(referrer_identity),
            )
            return result.record

        raise ReferralCodeExhaustedError("Unable to generate unique referral code")
