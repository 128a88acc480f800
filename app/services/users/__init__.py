"""
User Service Layer

Identity-provider profiles and first-sign-in state.
"""

from app.services.users.service import (
    IdentityProfile,
    SignupState,
    UpsertResult,
    UserProfile,
    UserService,
)

__all__ = [
    "IdentityProfile",
    "SignupState",
    "UpsertResult",
    "UserProfile",
    "UserService",
]
