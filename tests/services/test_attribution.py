"""
Unit tests for the referral attribution cookie and link tracking.
"""
import base64
import json

import pytest

from app.services.referrals import (
    AttributionCodec,
    AttributionContext,
    InvalidReferralCodeError,
    ReferralCodeGenerator,
    ReferralLinkTracker,
    ReferralNotFoundError,
    ReferralStore,
)

TTL_SECONDS = 30 * 24 * 3600
NOW_MS = 1_700_000_000_000
CODE = "SIGN-VITAL-aZ3k9QpL"


class Clock:
    def __init__(self, now_ms: int):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


@pytest.fixture
def clock():
    return Clock(NOW_MS)


@pytest.fixture
def codec(clock):
    return AttributionCodec(secret="test-secret", ttl_seconds=TTL_SECONDS, now_ms=clock)


class TestAttributionCodec:
    """Tests for encode/decode and TTL"""

    def test_round_trip(self, codec):
        context = codec.new_context(CODE, "referrer-1")
        assert codec.decode(codec.encode(context)) == context

    def test_round_trip_without_referrer(self, codec):
        context = codec.new_context(CODE)
        decoded = codec.decode(codec.encode(context))
        assert decoded == AttributionContext(referral_code=CODE, timestamp=NOW_MS, referrer_identity=None)

    def test_valid_just_before_ttl(self, codec, clock):
        token = codec.encode(codec.new_context(CODE))
        clock.now_ms = NOW_MS + TTL_SECONDS * 1000 - 1
        assert codec.decode(token) is not None

    def test_expired_one_ms_after_ttl(self, codec, clock):
        context = codec.new_context(CODE)
        token = codec.encode(context)
        clock.now_ms = NOW_MS + TTL_SECONDS * 1000 + 1
        assert codec.decode(token) is None
        assert codec.is_valid(context) is False

    def test_future_timestamp_rejected(self, codec, clock):
        token = codec.encode(AttributionContext(referral_code=CODE, timestamp=NOW_MS + 60_000))
        assert codec.decode(token) is None

    def test_tampered_payload_rejected(self, codec):
        token = codec.encode(codec.new_context(CODE, "referrer-1"))
        _, signature = token.split(".")
        forged = base64.urlsafe_b64encode(
            json.dumps({"referralCode": CODE, "timestamp": NOW_MS, "referrerIdentity": "attacker"}).encode()
        ).rstrip(b"=").decode()
        assert codec.decode(f"{forged}.{signature}") is None

    def test_other_secret_rejected(self, codec, clock):
        token = codec.encode(codec.new_context(CODE))
        other = AttributionCodec(secret="other-secret", ttl_seconds=TTL_SECONDS, now_ms=clock)
        assert other.decode(token) is None

    @pytest.mark.parametrize("token", [None, "", "garbage", "a.b.c", "ünï.códe", "e30.sïg", "e30.sig"])
    def test_malformed_tokens(self, codec, token):
        assert codec.decode(token) is None

    def test_signed_but_wrong_shape_rejected(self, codec):
        """A correctly signed payload still needs a code and an integer timestamp"""
        payload = base64.urlsafe_b64encode(b'{"referralCode": "", "timestamp": "now"}').rstrip(b"=").decode()
        token = f"{payload}.{codec._sign(payload)}"
        assert codec.decode(token) is None

    def test_is_valid_checks_code_format(self, codec):
        assert codec.is_valid(codec.new_context(CODE)) is True
        assert codec.is_valid(codec.new_context("not-a-code")) is False
        assert codec.is_valid(None) is False


class TestReferralLinkTracker:
    """Tests for the referral link visit"""

    @pytest.mark.asyncio
    async def test_track_counts_visit_and_returns_token(self, fake_db, codec):
        await fake_db.insert_referral("referrer-1", CODE, 501, False)
        store = ReferralStore(fake_db)
        tracker = ReferralLinkTracker(ReferralCodeGenerator(db=fake_db), store, codec)

        token = await tracker.track(CODE)

        context = codec.decode(token)
        assert context.referral_code == CODE
        assert context.referrer_identity == "referrer-1"
        assert fake_db.referrals["referrer-1"]["link_visits"] == 1

    @pytest.mark.asyncio
    async def test_track_rejects_bad_format(self, fake_db, codec):
        tracker = ReferralLinkTracker(ReferralCodeGenerator(db=fake_db), ReferralStore(fake_db), codec)
        with pytest.raises(InvalidReferralCodeError):
            await tracker.track("nope")
        with pytest.raises(InvalidReferralCodeError, match="Referral code is required"):
            await tracker.track(None)

    @pytest.mark.asyncio
    async def test_track_unknown_code(self, fake_db, codec):
        tracker = ReferralLinkTracker(ReferralCodeGenerator(db=fake_db), ReferralStore(fake_db), codec)
        with pytest.raises(ReferralNotFoundError):
            await tracker.track(CODE)
