"""
Per-session sign-in state.

SessionState is an immutable value: every transition returns a new instance.

    NEW ──sign_in ok──────────────▶ PROCESSING_COMPLETE
     │
     └─timeout/error──▶ PROCESSING_DEFERRED ──retry ok──▶ PROCESSING_COMPLETE
                              │    ▲
                              └────┘ retry failed (unchanged, last_error updated)

While deferred the session carries the RetryPayload needed to redo the work.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional

from app.services.users import IdentityProfile


class ProcessingState(Enum):
    NEW = "new"
    PROCESSING_DEFERRED = "processing_deferred"
    PROCESSING_COMPLETE = "processing_complete"


@dataclass(frozen=True)
class RetryPayload:
    profile: IdentityProfile
    referral_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = self.profile.to_dict()
        data["referral_code"] = self.referral_code
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPayload":
        return cls(profile=IdentityProfile.from_dict(data), referral_code=data.get("referral_code"))


@dataclass(frozen=True)
class SignupOutcome:
    """What the sign-in pipeline established for one identity."""
    is_new_user: bool
    referral_code: Optional[str] = None
    position: Optional[int] = None
    is_kol: bool = False
    insufficient_followers: bool = False
    wallet_address: Optional[str] = None
    wallet_chain_type: Optional[str] = None


@dataclass(frozen=True)
class SessionState:
    session_id: str
    identity: str
    handle: Optional[str] = None
    processing: ProcessingState = ProcessingState.NEW
    retry_payload: Optional[RetryPayload] = None
    referral_code: Optional[str] = None
    position: Optional[int] = None
    is_kol: bool = False
    is_new_user: bool = False
    insufficient_followers: bool = False
    wallet_address: Optional[str] = None
    wallet_chain_type: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def needs_background_processing(self) -> bool:
        return self.processing is ProcessingState.PROCESSING_DEFERRED

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------

    def deferred(self, payload: RetryPayload, error: str) -> "SessionState":
        return replace(
            self,
            processing=ProcessingState.PROCESSING_DEFERRED,
            retry_payload=payload,
            last_error=error,
        )

    def completed(self, outcome: SignupOutcome) -> "SessionState":
        return replace(
            self,
            processing=ProcessingState.PROCESSING_COMPLETE,
            retry_payload=None,
            last_error=None,
            referral_code=outcome.referral_code,
            position=outcome.position,
            is_kol=outcome.is_kol,
            # A retry after deferral still reports the first sign-in as new
            is_new_user=self.is_new_user or outcome.is_new_user,
            insufficient_followers=outcome.insufficient_followers,
            wallet_address=outcome.wallet_address,
            wallet_chain_type=outcome.wallet_chain_type,
        )

    def retry_failed(self, error: str) -> "SessionState":
        return replace(self, last_error=error)

    def with_wallet(self, address: str, chain_type: str) -> "SessionState":
        return replace(self, wallet_address=address, wallet_chain_type=chain_type)

    # ------------------------------------------------------------------
    # serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "identity": self.identity,
            "handle": self.handle,
            "processing": self.processing.value,
            "retry_payload": self.retry_payload.to_dict() if self.retry_payload else None,
            "referral_code": self.referral_code,
            "position": self.position,
            "is_kol": self.is_kol,
            "is_new_user": self.is_new_user,
            "insufficient_followers": self.insufficient_followers,
            "wallet_address": self.wallet_address,
            "wallet_chain_type": self.wallet_chain_type,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionState":
        payload = data.get("retry_payload")
        return cls(
            session_id=data["session_id"],
            identity=data["identity"],
            handle=data.get("handle"),
            processing=ProcessingState(data.get("processing", ProcessingState.NEW.value)),
            retry_payload=RetryPayload.from_dict(payload) if payload else None,
            referral_code=data.get("referral_code"),
            position=data.get("position"),
            is_kol=bool(data.get("is_kol", False)),
            is_new_user=bool(data.get("is_new_user", False)),
            insufficient_followers=bool(data.get("insufficient_followers", False)),
            wallet_address=data.get("wallet_address"),
            wallet_chain_type=data.get("wallet_chain_type"),
            last_error=data.get("last_error"),
        )

    def public_view(self) -> Dict[str, Any]:
        """Client-facing session shape. No retry payload, no internal errors."""
        wallet = None
        if self.wallet_address:
            wallet = {"address": self.wallet_address, "chainType": self.wallet_chain_type}
        return {
            "identity": self.identity,
            "handle": self.handle,
            "processing": self.processing.value,
            "needsBackgroundProcessing": self.needs_background_processing,
            "referralCode": self.referral_code,
            "position": self.position,
            "isKOL": self.is_kol,
            "isNewUser": self.is_new_user,
            "insufficientFollowers": self.insufficient_followers,
            "wallet": wallet,
        }
