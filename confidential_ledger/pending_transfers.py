"""
Pending Transfer Module

Two-phase escrow between confidential accounts. Creating a pending transfer
debits the sender immediately and consumes one sender nonce; the record is
stored at an address derived from (sender, recipient, nonce), so repeated
transfers between the same pair never collide.

A record is resolved exactly once: the recipient claims it or the sender
cancels it, and either way the record is deleted. A second claim or cancel
finds nothing and fails with RecordNotFound.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .accounts import AccountManager
from .audit import AuditTrail, AuditEventType
from .codec import OpaqueBalance, BALANCE_SIZE, validate_amount
from .errors import RecordNotFound, Unauthorized
from .keys import IDENTITY_SIZE, pending_transfer_address, validate_identity
from .storage import StorageInterface, StorageRecord

PENDING_TRANSFER_LAYOUT_SIZE = IDENTITY_SIZE * 2 + 8 + BALANCE_SIZE + 8 + 1


class PendingTransferState(Enum):
    """Escrow lifecycle; only CREATED has a stored record"""
    CREATED = "created"
    CLAIMED = "claimed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PendingTransferKey:
    """Derivation key of an escrow: sender, recipient and the sender's nonce at creation"""
    sender: bytes
    recipient: bytes
    nonce: int

    def __post_init__(self):
        object.__setattr__(self, 'sender', validate_identity(self.sender))
        object.__setattr__(self, 'recipient', validate_identity(self.recipient))
        validate_amount(self.nonce)

    def address(self, program_id: bytes) -> Tuple[str, int]:
        return pending_transfer_address(self.sender, self.recipient, self.nonce, program_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sender': self.sender.hex(),
            'recipient': self.recipient.hex(),
            'nonce': self.nonce
        }


@dataclass
class PendingTransfer(StorageRecord):
    """
    Escrowed transfer awaiting claim or cancellation

    Persisted layout (145 bytes):
        sender(32) || recipient(32) || amount(8, LE) || encrypted_amount(64)
        || timestamp(8, LE signed) || address_tag(1)

    The creation nonce is part of the key, not the layout.
    """
    sender: bytes
    recipient: bytes
    amount: int  # plaintext, kept because the placeholder codec cannot do range checks
    encrypted_amount: OpaqueBalance  # meant for the recipient
    timestamp: int  # unix seconds at creation
    nonce: int
    address_tag: int

    @property
    def key(self) -> PendingTransferKey:
        return PendingTransferKey(self.sender, self.recipient, self.nonce)

    @property
    def state(self) -> PendingTransferState:
        return PendingTransferState.CREATED

    def to_bytes(self) -> bytes:
        return (
            self.sender
            + self.recipient
            + self.amount.to_bytes(8, "little")
            + bytes(self.encrypted_amount)
            + self.timestamp.to_bytes(8, "little", signed=True)
            + bytes([self.address_tag])
        )

    @classmethod
    def from_bytes(cls, raw: bytes, nonce: int, program_id: bytes) -> 'PendingTransfer':
        """Rebuild a record from its layout; the nonce comes from the lookup key"""
        if len(raw) != PENDING_TRANSFER_LAYOUT_SIZE:
            raise ValueError(
                f"Pending transfer layout must be {PENDING_TRANSFER_LAYOUT_SIZE} bytes, got {len(raw)}"
            )
        sender, recipient = raw[0:32], raw[32:64]
        address, tag = pending_transfer_address(sender, recipient, nonce, program_id)
        if raw[-1] != tag:
            raise ValueError("Pending transfer address tag does not match its key")
        timestamp = int.from_bytes(raw[136:144], "little", signed=True)
        created = datetime.fromtimestamp(timestamp, timezone.utc)
        return cls(
            id=address,
            created_at=created,
            updated_at=created,
            sender=sender,
            recipient=recipient,
            amount=int.from_bytes(raw[64:72], "little"),
            encrypted_amount=OpaqueBalance(raw[72:136]),
            timestamp=timestamp,
            nonce=nonce,
            address_tag=tag
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'sender': self.sender.hex(),
            'recipient': self.recipient.hex(),
            'amount': self.amount,
            'encrypted_amount': self.encrypted_amount.to_hex(),
            'timestamp': self.timestamp,
            'nonce': self.nonce,
            'address_tag': self.address_tag
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PendingTransfer':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            sender=bytes.fromhex(data['sender']),
            recipient=bytes.fromhex(data['recipient']),
            amount=data['amount'],
            encrypted_amount=OpaqueBalance.from_hex(data['encrypted_amount']),
            timestamp=data['timestamp'],
            nonce=data['nonce'],
            address_tag=data['address_tag']
        )


@dataclass(frozen=True)
class TransferResolution:
    """Outcome of a claim or cancel"""
    key: PendingTransferKey
    address: str
    state: PendingTransferState
    amount: int
    resolved_by: bytes
    resolved_at: datetime


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PendingTransferManager:
    """
    Creates and resolves escrowed transfers
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        audit_trail: AuditTrail,
        program_id: bytes,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.accounts = account_manager
        self.audit_trail = audit_trail
        self.program_id = validate_identity(program_id)
        self.clock = clock or _utc_now
        self.table_name = "pending_transfers"

    def create(
        self,
        sender: bytes,
        recipient: bytes,
        amount: int,
        encrypted_amount: Union[OpaqueBalance, bytes]
    ) -> PendingTransfer:
        """
        Escrow ``amount`` from ``sender`` for ``recipient``

        The debit, the nonce increment and the record creation form one
        atomic unit.

        Args:
            sender: Identity funding the transfer
            recipient: Identity allowed to claim it
            amount: Plaintext amount to escrow
            encrypted_amount: Opaque amount addressed to the recipient

        Returns:
            The created PendingTransfer

        Raises:
            InsufficientBalance: If the sender's balance is below ``amount``
            RecordNotFound: If the sender has no account
        """
        recipient = validate_identity(recipient)
        if validate_amount(amount) == 0:
            raise ValueError("Transfer amount must be positive")
        if not isinstance(encrypted_amount, OpaqueBalance):
            encrypted_amount = OpaqueBalance(encrypted_amount)

        with self.storage.atomic():
            self.accounts.debit_checked(sender, amount)
            nonce = self.accounts.next_nonce(sender)

            key = PendingTransferKey(sender, recipient, nonce)
            address, tag = key.address(self.program_id)
            if self.storage.exists(self.table_name, address):
                raise ValueError(f"Pending transfer {address} already exists")

            now = self.clock()
            transfer = PendingTransfer(
                id=address,
                created_at=now,
                updated_at=now,
                sender=key.sender,
                recipient=recipient,
                amount=amount,
                encrypted_amount=encrypted_amount,
                timestamp=int(now.timestamp()),
                nonce=nonce,
                address_tag=tag
            )
            self.storage.save(self.table_name, address, transfer.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.PENDING_TRANSFER_CREATED,
                entity_type="pending_transfer",
                entity_id=address,
                metadata={**key.to_dict(), "amount": amount},
                caller=key.sender.hex()
            )

        return transfer

    def claim(self, key: PendingTransferKey, caller: bytes) -> TransferResolution:
        """
        Recipient takes the escrowed funds

        Raises:
            RecordNotFound: If no open transfer exists for ``key``
            Unauthorized: If ``caller`` is not the recipient
        """
        return self._resolve(key, caller, PendingTransferState.CLAIMED)

    def cancel(self, key: PendingTransferKey, caller: bytes) -> TransferResolution:
        """
        Sender takes the escrowed funds back

        Raises:
            RecordNotFound: If no open transfer exists for ``key``
            Unauthorized: If ``caller`` is not the sender
        """
        return self._resolve(key, caller, PendingTransferState.CANCELLED)

    def _resolve(
        self,
        key: PendingTransferKey,
        caller: bytes,
        outcome: PendingTransferState
    ) -> TransferResolution:
        caller = validate_identity(caller)
        with self.storage.atomic():
            transfer = self.require(key)

            if outcome == PendingTransferState.CLAIMED:
                beneficiary, role, action = transfer.recipient, "recipient", "claim"
                event_type = AuditEventType.PENDING_TRANSFER_CLAIMED
            else:
                beneficiary, role, action = transfer.sender, "sender", "cancel"
                event_type = AuditEventType.PENDING_TRANSFER_CANCELLED

            if caller != beneficiary:
                raise Unauthorized(f"Only the {role} may {action} pending transfer {transfer.id}")

            self.accounts.credit_amount(beneficiary, transfer.amount)
            self.storage.delete(self.table_name, transfer.id)

            resolved_at = self.clock()
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="pending_transfer",
                entity_id=transfer.id,
                metadata={**key.to_dict(), "amount": transfer.amount},
                caller=caller.hex()
            )

        return TransferResolution(
            key=key,
            address=transfer.id,
            state=outcome,
            amount=transfer.amount,
            resolved_by=caller,
            resolved_at=resolved_at
        )

    def get(self, key: PendingTransferKey) -> Optional[PendingTransfer]:
        """Open transfer for ``key``, or None if it never existed or was resolved"""
        address, tag = key.address(self.program_id)
        data = self.storage.load(self.table_name, address)
        if not data:
            return None
        transfer = PendingTransfer.from_dict(data)
        if transfer.address_tag != tag or transfer.key != key:
            return None
        return transfer

    def require(self, key: PendingTransferKey) -> PendingTransfer:
        transfer = self.get(key)
        if transfer is None:
            raise RecordNotFound(
                f"No open pending transfer from {key.sender.hex()} to {key.recipient.hex()} "
                f"at nonce {key.nonce}"
            )
        return transfer

    def list_for_recipient(self, recipient: bytes) -> List[PendingTransfer]:
        """Open transfers the recipient can claim, oldest first"""
        return self._find({'recipient': validate_identity(recipient).hex()})

    def list_for_sender(self, sender: bytes) -> List[PendingTransfer]:
        """Open transfers the sender can cancel, oldest first"""
        return self._find({'sender': validate_identity(sender).hex()})

    def total_in_flight(self, identity: bytes) -> int:
        """Sum of open escrow amounts where ``identity`` is sender or recipient"""
        involved = {t.id: t for t in self.list_for_sender(identity)}
        involved.update({t.id: t for t in self.list_for_recipient(identity)})
        return sum(t.amount for t in involved.values())

    def _find(self, filters: Dict[str, Any]) -> List[PendingTransfer]:
        transfers = [PendingTransfer.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        transfers.sort(key=lambda t: (t.timestamp, t.sender, t.nonce))
        return transfers
