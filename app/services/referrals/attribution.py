"""
Referral attribution context.

Who referred a visitor travels in a cookie from the referral-link visit to
sign-in. The token is

    base64url(JSON {"referralCode", "timestamp", "referrerIdentity"}) "." base64url(HMAC-SHA256)

The payload is readable by anyone; the signature stops clients from forging
or editing it. Tokens older than the TTL decode to None.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import config
from app.services.referrals.codes import ReferralCodeGenerator
from app.services.referrals.exceptions import InvalidReferralCodeError, ReferralNotFoundError
from app.services.referrals.service import ReferralStore

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class AttributionContext:
    referral_code: str
    timestamp: int  # epoch milliseconds
    referrer_identity: Optional[str] = None


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


class AttributionCodec:
    def __init__(
        self,
        secret: str = config.ATTRIBUTION_SECRET,
        ttl_seconds: int = config.ATTRIBUTION_TTL_SECONDS,
        codes: Optional[ReferralCodeGenerator] = None,
        now_ms: Callable[[], int] = _now_ms,
    ):
        self._key = secret.encode("utf-8")
        self.ttl_ms = ttl_seconds * 1000
        self.codes = codes or ReferralCodeGenerator()
        self._now_ms = now_ms

    def new_context(self, referral_code: str, referrer_identity: Optional[str] = None) -> AttributionContext:
        return AttributionContext(
            referral_code=referral_code,
            timestamp=self._now_ms(),
            referrer_identity=referrer_identity,
        )

    def _sign(self, payload: str) -> str:
        digest = hmac.new(self._key, payload.encode("ascii"), hashlib.sha256).digest()
        return _b64encode(digest)

    def encode(self, context: AttributionContext) -> str:
        body = {"referralCode": context.referral_code, "timestamp": context.timestamp}
        if context.referrer_identity:
            body["referrerIdentity"] = context.referrer_identity
        payload = _b64encode(json.dumps(body, separators=(",", ":")).encode("utf-8"))
        return f"{payload}.{self._sign(payload)}"

    def decode(self, token: Optional[str]) -> Optional[AttributionContext]:
        """
        Parse and verify a token.

        Returns None for a bad signature, malformed content, missing fields or
        an expired context. Never raises.
        """
        if not token or token.count(".") != 1:
            return None
        payload, signature = token.split(".", 1)
        try:
            expected = self._sign(payload)
        except UnicodeEncodeError:
            return None
        if not hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8")):
            logger.info("ATTRIBUTION_SIGNATURE_MISMATCH")
            return None

        try:
            body = json.loads(_b64decode(payload))
        except (binascii.Error, ValueError):
            return None
        if not isinstance(body, dict):
            return None

        code = body.get("referralCode")
        timestamp = body.get("timestamp")
        referrer = body.get("referrerIdentity")
        if not isinstance(code, str) or not code:
            return None
        if not isinstance(timestamp, int) or isinstance(timestamp, bool):
            return None
        if referrer is not None and not isinstance(referrer, str):
            return None

        context = AttributionContext(referral_code=code, timestamp=timestamp, referrer_identity=referrer)
        if not self._within_ttl(context):
            return None
        return context

    def _within_ttl(self, context: AttributionContext) -> bool:
        age = self._now_ms() - context.timestamp
        return 0 <= age <= self.ttl_ms

    def is_valid(self, context: Optional[AttributionContext]) -> bool:
        """Fresh and carrying a well-formed referral code."""
        if context is None:
            return False
        return self._within_ttl(context) and self.codes.validate_format(context.referral_code).valid


class ReferralLinkTracker:
    """Handles a visit to a shared referral link."""

    def __init__(self, codes: ReferralCodeGenerator, store: ReferralStore, codec: AttributionCodec):
        self.codes = codes
        self.store = store
        self.codec = codec

    async def track(self, referral_code: Optional[str]) -> str:
        """
        Count the visit and build the attribution cookie value.

        Raises:
            InvalidReferralCodeError: code is malformed
            ReferralNotFoundError: no record owns the code
        """
        validation = self.codes.validate_format(referral_code)
        if not validation.valid:
            raise InvalidReferralCodeError(validation.error)
        referrer = await self.store.find_by_code(referral_code)
        if referrer is None:
            raise ReferralNotFoundError(f"no referral record for code {referral_code}")
        await self.store.increment_link_visits(referral_code)
        return self.codec.encode(self.codec.new_context(referral_code, referrer.identity))
