"""
Wallet Service

One wallet address per identity, validated and stored once. There is no
update or delete path.

Only EVM-compatible addresses are accepted: "0x" followed by 40 hex digits.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

import database
from app.core.exceptions import RecordAlreadyExistsError
from app.services.wallets.exceptions import (
    InvalidChainTypeError,
    InvalidWalletAddressError,
    WalletAlreadyExistsError,
    WalletNotFoundError,
)

logger = logging.getLogger(__name__)

EVM_ADDRESS_PATTERN = re.compile(r"0x[a-fA-F0-9]{40}")
EVM_ADDRESS_LENGTH = 42


class ChainType(Enum):
    ETH = "ETH"


@dataclass
class Wallet:
    identity: str
    address: str
    chain_type: ChainType
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Wallet":
        return cls(
            identity=row["identity"],
            address=row["address"],
            chain_type=ChainType(row["chain_type"]),
            created_at=row.get("created_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "chainType": self.chain_type.value,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


def parse_chain_type(value: Optional[str]) -> ChainType:
    """
    Raises:
        InvalidChainTypeError
    """
    try:
        return ChainType((value or "").upper())
    except ValueError:
        raise InvalidChainTypeError("Only EVM-compatible addresses are supported") from None


def validate_evm_address(address: Optional[str]) -> None:
    """
    Raises:
        InvalidWalletAddressError: with a message naming the first rule broken
    """
    if not address:
        raise InvalidWalletAddressError("EVM-compatible wallet address is required")
    if not address.startswith("0x"):
        raise InvalidWalletAddressError('EVM address must start with "0x"')
    if len(address) != EVM_ADDRESS_LENGTH:
        raise InvalidWalletAddressError("EVM address must be exactly 42 characters (0x + 40 hex characters)")
    if not EVM_ADDRESS_PATTERN.fullmatch(address):
        raise InvalidWalletAddressError(
            "Invalid EVM address format. Must contain only hexadecimal characters (0-9, a-f, A-F)"
        )


class WalletService:
    def __init__(self, db: Any = database):
        self.db = db

    async def find(self, identity: str) -> Optional[Wallet]:
        row = await self.db.get_wallet(identity)
        return Wallet.from_row(row) if row else None

    async def get(self, identity: str) -> Wallet:
        wallet = await self.find(identity)
        if wallet is None:
            raise WalletNotFoundError("No wallet found for this user")
        return wallet

    async def submit(self, identity: str, address: Optional[str], chain_type: Optional[str]) -> Wallet:
        """
        Validate and store the identity's wallet.

        Raises:
            InvalidChainTypeError, InvalidWalletAddressError, WalletAlreadyExistsError
        """
        chain = parse_chain_type(chain_type)
        validate_evm_address(address)
        try:
            row = await self.db.insert_wallet(identity, address, chain.value)
        except RecordAlreadyExistsError:
            raise WalletAlreadyExistsError("You have already submitted a wallet address") from None
        logger.info(f"WALLET_SUBMITTED identity={identity} chain={chain.value}")
        return Wallet.from_row(row)
