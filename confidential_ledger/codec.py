"""
Balance Codec Module

Encodes account balances into a fixed 64-byte opaque representation and
performs arithmetic over it. The ledger only talks to the BalanceCodec
interface, so the placeholder below can be swapped for a real additive
homomorphic scheme without touching accounts or escrow logic.

The placeholder is NOT confidential: the amount sits in the first 8 bytes.
"""

import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Union

from .errors import BalanceOverflow, InsufficientBalance

logger = logging.getLogger(__name__)

BALANCE_SIZE = 64
AMOUNT_SIZE = 8
NOISE_OFFSET = 8
NOISE_SIZE = 32
NOISE_DOMAIN = b"noise"

U64_MAX = 2 ** 64 - 1


def validate_amount(amount: int) -> int:
    """Ensure ``amount`` is an int in the u64 range"""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError(f"Amount must be an integer, got {type(amount).__name__}")
    if amount < 0 or amount > U64_MAX:
        raise ValueError(f"Amount {amount} outside u64 range")
    return amount


@dataclass(frozen=True)
class OpaqueBalance:
    """Immutable 64-byte balance ciphertext"""
    data: bytes

    def __post_init__(self):
        if not isinstance(self.data, (bytes, bytearray)):
            raise ValueError("Opaque balance must be bytes")
        if len(self.data) != BALANCE_SIZE:
            raise ValueError(f"Opaque balance must be {BALANCE_SIZE} bytes, got {len(self.data)}")
        object.__setattr__(self, 'data', bytes(self.data))

    def __bytes__(self) -> bytes:
        return self.data

    def to_hex(self) -> str:
        return self.data.hex()

    @classmethod
    def from_hex(cls, value: str) -> 'OpaqueBalance':
        try:
            raw = bytes.fromhex(value)
        except (TypeError, ValueError):
            raise ValueError(f"Opaque balance is not valid hex: {value!r}")
        return cls(raw)


class BalanceCodec(ABC):
    """Abstract interface for balance encodings"""

    @abstractmethod
    def encode(self, amount: int) -> OpaqueBalance:
        """Encode a plaintext u64 amount"""
        pass

    @abstractmethod
    def decode(self, balance: OpaqueBalance) -> int:
        """Recover the plaintext amount"""
        pass

    @abstractmethod
    def add(self, balance: OpaqueBalance, delta: OpaqueBalance) -> OpaqueBalance:
        """Add two encodings, saturating at the maximum amount"""
        pass

    @abstractmethod
    def checked_add(self, balance: OpaqueBalance, delta: OpaqueBalance) -> OpaqueBalance:
        """Add two encodings, raising BalanceOverflow past the maximum amount"""
        pass

    @abstractmethod
    def checked_sub(self, balance: OpaqueBalance, delta: OpaqueBalance) -> OpaqueBalance:
        """Subtract ``delta``, raising InsufficientBalance if it exceeds ``balance``"""
        pass

    def assert_ge(self, balance: OpaqueBalance, amount: Union[int, OpaqueBalance]) -> None:
        """Raise InsufficientBalance unless ``balance`` >= ``amount``"""
        if isinstance(amount, OpaqueBalance):
            amount = self.decode(amount)
        current = self.decode(balance)
        if current < amount:
            raise InsufficientBalance(
                f"Balance {current} is less than required amount {amount}"
            )

    def zero(self) -> OpaqueBalance:
        return self.encode(0)


class NoiseBalanceCodec(BalanceCodec):
    """
    Placeholder codec: little-endian amount followed by deterministic noise

    Layout:
        bytes 0..8    amount, u64 little-endian
        bytes 8..40   SHA-256(amount bytes || b"noise")
        bytes 40..64  zero, reserved for a real ciphertext tail
    """

    def encode(self, amount: int) -> OpaqueBalance:
        amount_bytes = validate_amount(amount).to_bytes(AMOUNT_SIZE, "little")
        noise = hashlib.sha256(amount_bytes + NOISE_DOMAIN).digest()

        buffer = bytearray(BALANCE_SIZE)
        buffer[0:AMOUNT_SIZE] = amount_bytes
        buffer[NOISE_OFFSET:NOISE_OFFSET + NOISE_SIZE] = noise[:NOISE_SIZE]
        return OpaqueBalance(bytes(buffer))

    def decode(self, balance: OpaqueBalance) -> int:
        return int.from_bytes(bytes(balance)[0:AMOUNT_SIZE], "little")

    def add(self, balance: OpaqueBalance, delta: OpaqueBalance) -> OpaqueBalance:
        total = self.decode(balance) + self.decode(delta)
        if total > U64_MAX:
            logger.warning("Balance addition saturated at u64 maximum")
            total = U64_MAX
        return self.encode(total)

    def checked_add(self, balance: OpaqueBalance, delta: OpaqueBalance) -> OpaqueBalance:
        total = self.decode(balance) + self.decode(delta)
        if total > U64_MAX:
            raise BalanceOverflow(f"Balance addition overflows u64 by {total - U64_MAX}")
        return self.encode(total)

    def checked_sub(self, balance: OpaqueBalance, delta: OpaqueBalance) -> OpaqueBalance:
        current = self.decode(balance)
        amount = self.decode(delta)
        if amount > current:
            raise InsufficientBalance(
                f"Cannot subtract {amount} from balance {current}"
            )
        return self.encode(current - amount)


def create_codec(name: str = "noise") -> BalanceCodec:
    """Build the codec named in configuration"""
    if name == "noise":
        return NoiseBalanceCodec()
    raise ValueError(f"Unknown balance codec: {name}")
