"""
Commitment Scheme Module

Derives the 32-byte values that let an off-ledger observer check a transfer's
authenticity without learning its amount:

- commitment hash: binds (encrypted amount, sender nonce, recipient)
- encrypted tag: binds (recipient, sender secret), so the recipient can spot
  transfers meant for them
- stealth address: one-way delivery address derived from the tag
"""

import hashlib
import secrets
from typing import Iterable, Optional, Union

from cryptography.hazmat.primitives import constant_time

from .codec import OpaqueBalance, validate_amount
from .keys import validate_identity

COMMITMENT_SIZE = 32
TAG_SIZE = 32
SECRET_SIZE = 32


def _payload_bytes(encrypted_amount: Union[OpaqueBalance, bytes]) -> bytes:
    if isinstance(encrypted_amount, OpaqueBalance):
        return bytes(encrypted_amount)
    return bytes(OpaqueBalance(encrypted_amount))


def commitment_hash(
    encrypted_amount: Union[OpaqueBalance, bytes],
    sender_nonce: int,
    recipient: bytes
) -> bytes:
    """SHA-256(encrypted_amount || le64(sender_nonce) || recipient)"""
    hasher = hashlib.sha256()
    hasher.update(_payload_bytes(encrypted_amount))
    hasher.update(validate_amount(sender_nonce).to_bytes(8, "little"))
    hasher.update(validate_identity(recipient))
    return hasher.digest()


def encrypted_tag(recipient: bytes, sender_secret: bytes) -> bytes:
    """SHA-256(recipient || sender_secret)"""
    return hashlib.sha256(validate_identity(recipient) + bytes(sender_secret)).digest()


def verify_commitment_hash(
    expected: bytes,
    encrypted_amount: Union[OpaqueBalance, bytes],
    sender_nonce: int,
    recipient: bytes
) -> bool:
    """Recompute the commitment and compare in constant time"""
    if len(expected) != COMMITMENT_SIZE:
        return False
    actual = commitment_hash(encrypted_amount, sender_nonce, recipient)
    return constant_time.bytes_eq(actual, bytes(expected))


def verify_encrypted_tag(expected: bytes, recipient: bytes, sender_secret: bytes) -> bool:
    if len(expected) != TAG_SIZE:
        return False
    return constant_time.bytes_eq(encrypted_tag(recipient, sender_secret), bytes(expected))


def stealth_address(recipient: bytes, sender_secret: bytes) -> bytes:
    """SHA-256(recipient || encrypted_tag(recipient, sender_secret))"""
    tag = encrypted_tag(recipient, sender_secret)
    return hashlib.sha256(validate_identity(recipient) + tag).digest()


def generate_sender_secret() -> bytes:
    return secrets.token_bytes(SECRET_SIZE)


def match_tag(
    tag: bytes,
    recipient: bytes,
    candidate_secrets: Iterable[bytes]
) -> Optional[bytes]:
    """
    Recipient-side scan: find which shared secret produced ``tag``

    Args:
        tag: Tag attached to an observed transfer event
        recipient: The scanning recipient's identity
        candidate_secrets: Secrets shared with known senders

    Returns:
        The matching secret, or None if the transfer is not addressed to us
    """
    for secret in candidate_secrets:
        if verify_encrypted_tag(tag, recipient, secret):
            return secret
    return None
