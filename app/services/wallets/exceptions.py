"""
Wallet Service Domain Exceptions

`code` is the stable error code returned to API clients.
"""

from app.core.exceptions import ConflictError, SignatureCampaignError, ValidationError


class WalletServiceError(SignatureCampaignError):
    """Base exception for wallet errors"""
    code = "SERVER_ERROR"


class InvalidWalletAddressError(ValidationError, WalletServiceError):
    """Raised when the address fails format validation"""
    code = "INVALID_ADDRESS"


class InvalidChainTypeError(ValidationError, WalletServiceError):
    """Raised when the chain type is not supported"""
    code = "INVALID_BLOCKCHAIN"


class WalletAlreadyExistsError(ConflictError, WalletServiceError):
    """Raised on a second submission: wallets are write-once"""
    code = "WALLET_ALREADY_EXISTS"


class WalletNotFoundError(WalletServiceError):
    """Raised when the identity has not submitted a wallet"""
    code = "WALLET_NOT_FOUND"
