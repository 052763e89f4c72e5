"""
Confidential Payment Processing Module

The external entry points of the ledger: account setup, deposit, withdraw,
direct (commitment-bound) private transfers and the escrow create/claim/cancel
flow. Each entry point:

- checks the caller against the owning identity before touching state
- runs as one atomic unit under the processor lock
- on failure, logs and audits the rejection and re-raises it unchanged
- on success, publishes a ledger event after the unit commits
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Union

from .accounts import AccountManager, ConfidentialAccount
from .audit import AuditTrail, AuditEventType
from .codec import BalanceCodec, OpaqueBalance, validate_amount
from .commitment import TAG_SIZE, verify_commitment_hash
from .errors import (
    CommitmentMismatch, DuplicateCommitment, InvalidNonce, Unauthorized
)
from .events import EventDispatcher, EventPayload, LedgerEvent
from .keys import commitment_address, validate_identity
from .logging_config import get_logger, log_action
from .pending_transfers import (
    PendingTransfer, PendingTransferKey, PendingTransferManager, TransferResolution
)
from .storage import StorageInterface
from .vault import Vault


@dataclass(frozen=True)
class PrivateTransferReceipt:
    """Result of a direct private transfer"""
    address: str
    commitment_hash: bytes
    encrypted_tag: bytes
    sender_nonce: int
    settled: bool


def _as_opaque(value: Union[OpaqueBalance, bytes]) -> OpaqueBalance:
    if isinstance(value, OpaqueBalance):
        return value
    return OpaqueBalance(value)


class ConfidentialPaymentProcessor:
    """
    Authorizes and executes ledger operations atomically
    """

    def __init__(
        self,
        storage: StorageInterface,
        codec: BalanceCodec,
        account_manager: AccountManager,
        pending_transfers: PendingTransferManager,
        vault: Vault,
        audit_trail: AuditTrail,
        event_dispatcher: Optional[EventDispatcher] = None,
        direct_transfer_settles: bool = False
    ):
        self.storage = storage
        self.codec = codec
        self.accounts = account_manager
        self.pending_transfers = pending_transfers
        self.vault = vault
        self.audit_trail = audit_trail
        self.direct_transfer_settles = direct_transfer_settles
        self.table_name = "private_transfers"
        self.logger = get_logger("veil.processor")

        self._event_dispatcher = event_dispatcher
        self._lock = threading.RLock()

    @contextmanager
    def _operation(self, action: str, caller: bytes):
        """Serialize, run atomically and record rejections"""
        try:
            with self._lock, self.storage.atomic():
                yield
        except ValueError as e:
            with self._lock:
                self._reject(action, caller, e)
            raise

    def _reject(self, action: str, caller: bytes, error: ValueError) -> None:
        code = getattr(error, "code", "invalid_input")
        caller_hex = caller.hex() if isinstance(caller, (bytes, bytearray)) else None
        log_action(
            self.logger, "warning", f"Operation rejected: {action}",
            caller=caller_hex, action=action,
            extra={"error": code, "detail": str(error)}
        )
        self.audit_trail.log_event(
            event_type=AuditEventType.OPERATION_REJECTED,
            entity_type="operation",
            entity_id=action,
            metadata={"error": code, "detail": str(error)},
            caller=caller_hex
        )

    def _authorize(self, caller: bytes, owner: bytes) -> bytes:
        """The single authorization gate: caller must be the owning identity"""
        caller = validate_identity(caller)
        if caller != validate_identity(owner):
            raise Unauthorized(f"Caller {caller.hex()} does not own {bytes(owner).hex()}")
        return caller

    def _publish(self, event_type: LedgerEvent, entity_type: str, entity_id: str, data: dict) -> None:
        if self._event_dispatcher:
            self._event_dispatcher.publish(EventPayload(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                data=data
            ))

    def _check_encoded_amount(self, encrypted_amount: OpaqueBalance, amount: int) -> None:
        decoded = self.codec.decode(encrypted_amount)
        if decoded != amount:
            raise CommitmentMismatch(
                f"Encrypted amount encodes {decoded}, expected {amount}"
            )

    # Accounts

    def init_account(self, caller: bytes) -> ConfidentialAccount:
        """Create the caller's confidential account"""
        with self._operation("init_account", caller):
            account = self.accounts.init_account(validate_identity(caller))

        log_action(self.logger, "info", "Account initialized",
                   caller=account.owner.hex(), action="init_account",
                   resource=f"account:{account.id}")
        self._publish(LedgerEvent.ACCOUNT_INITIALIZED, "account", account.id,
                      {"owner": account.owner.hex()})
        return account

    def get_account(self, owner: bytes) -> Optional[ConfidentialAccount]:
        return self.accounts.get_account(owner)

    def get_balance(self, caller: bytes, owner: bytes) -> int:
        """Decoded balance; only the owner may read it"""
        self._authorize(caller, owner)
        return self.accounts.get_balance(owner)

    # Custody

    def deposit(
        self,
        caller: bytes,
        amount: int,
        encrypted_amount: Union[OpaqueBalance, bytes]
    ) -> ConfidentialAccount:
        """
        Move ``amount`` of the native asset into the vault and credit the caller

        The opaque amount is added to the balance as-is, after checking it
        encodes ``amount``. The asset transfer runs last, so a failed credit
        never leaves the asset stranded in the vault.

        Raises:
            CommitmentMismatch: If ``encrypted_amount`` does not encode ``amount``
            AssetTransferError: If the caller cannot fund the deposit
            BalanceOverflow: If strict overflow is on and the credit overflows
        """
        with self._operation("deposit", caller):
            caller = validate_identity(caller)
            if validate_amount(amount) == 0:
                raise ValueError("Deposit amount must be positive")
            encrypted_amount = _as_opaque(encrypted_amount)
            self._check_encoded_amount(encrypted_amount, amount)

            account = self.accounts.credit(caller, encrypted_amount)
            self.audit_trail.log_event(
                event_type=AuditEventType.DEPOSIT_POSTED,
                entity_type="account",
                entity_id=account.id,
                metadata={"amount": amount, "vault": self.vault.address},
                caller=caller.hex()
            )
            self.vault.deposit(caller.hex(), amount)

        log_action(self.logger, "info", "Deposit posted",
                   caller=caller.hex(), action="deposit",
                   resource=f"account:{account.id}", extra={"amount": amount})
        self._publish(LedgerEvent.DEPOSIT, "account", account.id, {"amount": amount})
        return account

    def withdraw(
        self,
        caller: bytes,
        amount: int,
        encrypted_amount: Optional[Union[OpaqueBalance, bytes]] = None
    ) -> ConfidentialAccount:
        """
        Debit the caller and pay ``amount`` out of the vault

        The payout is the last step of the unit, after the debit and its
        audit record are written.

        Args:
            caller: Authenticated account owner
            amount: Plaintext amount to withdraw
            encrypted_amount: Optional opaque amount; if given it must encode ``amount``

        Raises:
            InsufficientBalance: If the decoded balance is below ``amount``
            InsufficientReserve: If the payout breaches the vault reserve
        """
        with self._operation("withdraw", caller):
            caller = validate_identity(caller)
            if validate_amount(amount) == 0:
                raise ValueError("Withdrawal amount must be positive")
            if encrypted_amount is not None:
                self._check_encoded_amount(_as_opaque(encrypted_amount), amount)

            account = self.accounts.debit_checked(caller, amount)
            self.audit_trail.log_event(
                event_type=AuditEventType.WITHDRAWAL_POSTED,
                entity_type="account",
                entity_id=account.id,
                metadata={"amount": amount, "vault": self.vault.address},
                caller=caller.hex()
            )
            self.vault.withdraw(caller.hex(), amount)

        log_action(self.logger, "info", "Withdrawal posted",
                   caller=caller.hex(), action="withdraw",
                   resource=f"account:{account.id}", extra={"amount": amount})
        self._publish(LedgerEvent.WITHDRAWAL, "account", account.id, {"amount": amount})
        return account

    # Direct transfers

    def private_transfer(
        self,
        caller: bytes,
        sender: bytes,
        recipient: bytes,
        encrypted_amount: Union[OpaqueBalance, bytes],
        nonce: int,
        commitment_hash: bytes,
        encrypted_tag: bytes
    ) -> PrivateTransferReceipt:
        """
        Record a commitment-bound direct transfer

        The commitment must verify against (encrypted_amount, nonce, recipient)
        and ``nonce`` must be the sender's current nonce, which the transfer
        consumes. Each commitment is accepted once. Value only moves when the
        processor is configured to settle direct transfers; otherwise the
        published event is the whole effect.

        Raises:
            Unauthorized: If ``caller`` is not ``sender``
            CommitmentMismatch: If the commitment does not verify
            InvalidNonce: If ``nonce`` is not the sender's current nonce
            DuplicateCommitment: If this commitment was already recorded
            InsufficientBalance: When settling and the sender cannot cover the amount
        """
        with self._operation("private_transfer", caller):
            sender = self._authorize(caller, sender)
            recipient = validate_identity(recipient)
            encrypted_amount = _as_opaque(encrypted_amount)
            if len(encrypted_tag) != TAG_SIZE:
                raise ValueError(f"Encrypted tag must be {TAG_SIZE} bytes")

            account = self.accounts.require_account(sender)
            if not verify_commitment_hash(commitment_hash, encrypted_amount, nonce, recipient):
                raise CommitmentMismatch("Commitment hash does not match amount, nonce and recipient")
            if nonce != account.nonce:
                raise InvalidNonce(f"Expected sender nonce {account.nonce}, got {nonce}")
            self.accounts.next_nonce(sender)

            address, _ = commitment_address(commitment_hash, self.accounts.program_id)
            if self.storage.exists(self.table_name, address):
                raise DuplicateCommitment(f"Commitment {bytes(commitment_hash).hex()} already recorded")

            settled = self.direct_transfer_settles
            if settled:
                amount = self.codec.decode(encrypted_amount)
                self.accounts.require_account(recipient)
                self.accounts.debit_checked(sender, amount)
                self.accounts.credit_amount(recipient, amount)

            self.storage.save(self.table_name, address, {
                'id': address,
                'commitment_hash': bytes(commitment_hash).hex(),
                'encrypted_tag': bytes(encrypted_tag).hex(),
                'sender_nonce': nonce,
                'settled': settled,
                'created_at': datetime.now(timezone.utc).isoformat()
            })
            self.audit_trail.log_event(
                event_type=AuditEventType.PRIVATE_TRANSFER_RECORDED,
                entity_type="private_transfer",
                entity_id=address,
                metadata={
                    "commitment_hash": bytes(commitment_hash),
                    "encrypted_tag": bytes(encrypted_tag),
                    "settled": settled
                },
                caller=sender.hex()
            )

        receipt = PrivateTransferReceipt(
            address=address,
            commitment_hash=bytes(commitment_hash),
            encrypted_tag=bytes(encrypted_tag),
            sender_nonce=nonce,
            settled=settled
        )
        log_action(self.logger, "info", "Private transfer recorded",
                   caller=sender.hex(), action="private_transfer",
                   resource=f"private_transfer:{address}", extra={"settled": settled})
        self._publish(LedgerEvent.PRIVATE_TRANSFER, "private_transfer", address, {
            "commitment_hash": receipt.commitment_hash.hex(),
            "encrypted_tag": receipt.encrypted_tag.hex()
        })
        return receipt

    # Escrow

    def create_transfer(
        self,
        caller: bytes,
        recipient: bytes,
        amount: int,
        encrypted_amount: Union[OpaqueBalance, bytes]
    ) -> PendingTransfer:
        """Escrow ``amount`` from the caller for ``recipient``"""
        with self._operation("create_transfer", caller):
            transfer = self.pending_transfers.create(
                validate_identity(caller), recipient, amount, encrypted_amount
            )

        log_action(self.logger, "info", "Pending transfer created",
                   caller=transfer.sender.hex(), action="create_transfer",
                   resource=f"pending_transfer:{transfer.id}",
                   extra={"recipient": transfer.recipient.hex(), "nonce": transfer.nonce})
        self._publish(LedgerEvent.TRANSFER_CREATED, "pending_transfer", transfer.id,
                      transfer.key.to_dict())
        return transfer

    def claim_transfer(self, caller: bytes, key: PendingTransferKey) -> TransferResolution:
        """Recipient claims an open escrow"""
        with self._operation("claim_transfer", caller):
            resolution = self.pending_transfers.claim(key, caller)

        self._log_resolution(resolution, "claim_transfer")
        self._publish(LedgerEvent.TRANSFER_CLAIMED, "pending_transfer", resolution.address,
                      key.to_dict())
        return resolution

    def cancel_transfer(self, caller: bytes, key: PendingTransferKey) -> TransferResolution:
        """Sender cancels an open escrow and is refunded"""
        with self._operation("cancel_transfer", caller):
            resolution = self.pending_transfers.cancel(key, caller)

        self._log_resolution(resolution, "cancel_transfer")
        self._publish(LedgerEvent.TRANSFER_CANCELLED, "pending_transfer", resolution.address,
                      key.to_dict())
        return resolution

    def _log_resolution(self, resolution: TransferResolution, action: str) -> None:
        log_action(self.logger, "info", f"Pending transfer {resolution.state.value}",
                   caller=resolution.resolved_by.hex(), action=action,
                   resource=f"pending_transfer:{resolution.address}",
                   extra={"amount": resolution.amount})

    def get_pending_transfer(self, key: PendingTransferKey) -> Optional[PendingTransfer]:
        return self.pending_transfers.get(key)

    def list_incoming(self, caller: bytes) -> List[PendingTransfer]:
        return self.pending_transfers.list_for_recipient(caller)

    def list_outgoing(self, caller: bytes) -> List[PendingTransfer]:
        return self.pending_transfers.list_for_sender(caller)
