"""
Wallet Service Layer

Write-once EVM wallet submission.
"""

from app.services.wallets.service import (
    ChainType,
    Wallet,
    WalletService,
    parse_chain_type,
    validate_evm_address,
)

from app.services.wallets.exceptions import (
    WalletServiceError,
    InvalidWalletAddressError,
    InvalidChainTypeError,
    WalletAlreadyExistsError,
    WalletNotFoundError,
)

__all__ = [
    "ChainType",
    "Wallet",
    "WalletService",
    "parse_chain_type",
    "validate_evm_address",
    "WalletServiceError",
    "InvalidWalletAddressError",
    "InvalidChainTypeError",
    "WalletAlreadyExistsError",
    "WalletNotFoundError",
]
