"""
Signup Service Layer

Authentication-time processing with timeout-bounded deferral to the
referral-creation queue.
"""

from app.services.signup.session import (
    ProcessingState,
    RetryPayload,
    SessionState,
    SignupOutcome,
)
from app.services.signup.service import SignupService

__all__ = [
    "ProcessingState",
    "RetryPayload",
    "SessionState",
    "SignupOutcome",
    "SignupService",
]
