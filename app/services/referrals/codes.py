"""
Referral code generation and format validation.

Code shapes:
    PREFIX-HANDLE-RANDOM   e.g. SIGN-VITAL-aZ3k9QpL
    PREFIX-RANDOM          e.g. SIGN-aZ3k9QpL   (no usable handle)

HANDLE is the first 5 characters of the handle, upper-cased, with everything
outside [A-Z0-9] removed, so it can come out shorter than 5. RANDOM is 8
characters from [A-Za-z0-9].
"""

import logging
import re
import secrets
import string
from dataclasses import dataclass
from typing import Any, Callable, Optional

import config
import database
from app.services.referrals.exceptions import ReferralCodeExhaustedError

logger = logging.getLogger(__name__)

ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits
RANDOM_LENGTH = 8
HANDLE_LENGTH = 5

_NON_CODE_CHARS = re.compile(r"[^A-Z0-9]")


@dataclass(frozen=True)
class CodeValidation:
    valid: bool
    error: Optional[str] = None


def handle_segment(handle: Optional[str]) -> str:
    """Handle part of a code; empty when nothing usable remains."""
    if not handle:
        return ""
    return _NON_CODE_CHARS.sub("", handle[:HANDLE_LENGTH].upper())


def random_segment(length: int = RANDOM_LENGTH) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


class ReferralCodeGenerator:
    def __init__(
        self,
        db: Any = database,
        prefix: str = config.REFERRAL_CODE_PREFIX,
        max_attempts: int = config.REFERRAL_CODE_MAX_ATTEMPTS,
        random_part: Callable[[], str] = random_segment,
    ):
        self.db = db
        self.prefix = prefix
        self.max_attempts = max_attempts
        self._random_part = random_part
        self._pattern = re.compile(
            rf"{re.escape(prefix)}-(?:[A-Z0-9]{{1,{HANDLE_LENGTH}}}-)?[A-Za-z0-9]{{{RANDOM_LENGTH}}}"
        )

    def generate(self, handle: Optional[str] = None) -> str:
        """One candidate code. Uniqueness is not checked."""
        segment = handle_segment(handle)
        random_part = self._random_part()
        if segment:
            return f"{self.prefix}-{segment}-{random_part}"
        return f"{self.prefix}-{random_part}"

    async def create_unique(self, handle: Optional[str] = None) -> str:
        """
        A code not yet used by any referral record.

        Raises:
            ReferralCodeExhaustedError: every attempt collided
        """
        for attempt in range(1, self.max_attempts + 1):
            code = self.generate(handle)
            if not await self.db.referral_code_exists(code):
                return code
            logger.info(f"REFERRAL_CODE_COLLISION attempt={attempt}/{self.max_attempts}")
        logger.error(f"REFERRAL_CODE_EXHAUSTED attempts={self.max_attempts}")
        raise ReferralCodeExhaustedError("Unable to generate unique referral code")

    def validate_format(self, code: Optional[str]) -> CodeValidation:
        if not code or not isinstance(code, str):
            return CodeValidation(valid=False, error="Referral code is required")
        if not self._pattern.fullmatch(code):
            return CodeValidation(valid=False, error="Invalid referral code format")
        return CodeValidation(valid=True)
