"""
Core domain exceptions shared across services.

Used to distinguish business failures (validation, conflicts) from system
failures (database, Redis, timeouts).
"""


class SignatureCampaignError(Exception):
    """Base class for all domain errors raised by this service."""
    pass


class ValidationError(SignatureCampaignError):
    """Raised when caller input is malformed. Never retried."""
    pass


class ConflictError(SignatureCampaignError):
    """Raised when a uniqueness rule rejects a write."""
    pass


class RecordAlreadyExistsError(ConflictError):
    """Raised by the database layer when a unique constraint is violated.

    `field` names the column whose uniqueness was violated
    ("identity", "referral_code", "position").
    """

    def __init__(self, field: str, message: str = ""):
        self.field = field
        super().__init__(message or f"record already exists: duplicate {field}")


class ConfigurationError(SignatureCampaignError):
    """Raised at startup when static configuration is invalid."""
    pass


class DependencyUnavailableError(SignatureCampaignError):
    """Raised when a required backing store (Postgres, Redis) is not configured or not ready."""
    pass


class AuthenticationRequiredError(SignatureCampaignError):
    """Raised when a request needs a session and carries none."""
    pass
