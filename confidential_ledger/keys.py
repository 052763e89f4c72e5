"""
Identity and Address Derivation Module

Identities are 32 raw bytes. Every stored record lives at an address derived
deterministically from a role seed and the identities that own it, so a
record can always be found again from its owners alone.
"""

import hashlib
import secrets
from typing import Iterable, Tuple

IDENTITY_SIZE = 32

ACCOUNT_SEED = b"balance"
VAULT_SEED = b"vault"
PENDING_TRANSFER_SEED = b"pending_transfer"
COMMITMENT_SEED = b"commitment"

ADDRESS_MARKER = b"ConfidentialLedgerAddress"


def validate_identity(identity: bytes) -> bytes:
    """Return ``identity`` as bytes, raising ValueError unless it is 32 bytes"""
    if not isinstance(identity, (bytes, bytearray)):
        raise ValueError(f"Identity must be bytes, got {type(identity).__name__}")
    if len(identity) != IDENTITY_SIZE:
        raise ValueError(f"Identity must be {IDENTITY_SIZE} bytes, got {len(identity)}")
    return bytes(identity)


def new_identity() -> bytes:
    """Generate a random identity (tests, demos)"""
    return secrets.token_bytes(IDENTITY_SIZE)


def identity_to_hex(identity: bytes) -> str:
    return validate_identity(identity).hex()


def identity_from_hex(value: str) -> bytes:
    """Parse a 64-character hex identity"""
    try:
        raw = bytes.fromhex(value)
    except (TypeError, ValueError):
        raise ValueError(f"Identity is not valid hex: {value!r}")
    return validate_identity(raw)


def derive_address(seeds: Iterable[bytes], program_id: bytes) -> Tuple[str, int]:
    """
    Derive a record address and its addressing tag

    Each seed is length-prefixed so that different seed splits can never
    produce the same preimage.

    Args:
        seeds: Role seed followed by the identities/values owning the record
        program_id: Identity of the ledger deployment

    Returns:
        (hex address, addressing tag byte)
    """
    hasher = hashlib.sha256()
    for seed in seeds:
        if len(seed) > 255:
            raise ValueError("Address seed longer than 255 bytes")
        hasher.update(bytes([len(seed)]))
        hasher.update(seed)
    hasher.update(validate_identity(program_id))
    hasher.update(ADDRESS_MARKER)
    digest = hasher.digest()
    return digest.hex(), digest[-1]


def account_address(owner: bytes, program_id: bytes) -> Tuple[str, int]:
    return derive_address([ACCOUNT_SEED, validate_identity(owner)], program_id)


def vault_address(program_id: bytes) -> Tuple[str, int]:
    return derive_address([VAULT_SEED], program_id)


def pending_transfer_address(
    sender: bytes,
    recipient: bytes,
    nonce: int,
    program_id: bytes
) -> Tuple[str, int]:
    """Address of the escrow created by ``sender`` for ``recipient`` at ``nonce``"""
    return derive_address(
        [
            PENDING_TRANSFER_SEED,
            validate_identity(sender),
            validate_identity(recipient),
            nonce.to_bytes(8, "little"),
        ],
        program_id
    )


def commitment_address(commitment: bytes, program_id: bytes) -> Tuple[str, int]:
    return derive_address([COMMITMENT_SEED, bytes(commitment)], program_id)
