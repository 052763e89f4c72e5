"""
Confidential Account Module

One record per owner identity holding the opaque balance and a monotonically
increasing nonce. Accounts are never destroyed, even at zero balance, so the
nonce sequence used to key escrow records never restarts.

All balance arithmetic goes through the BalanceCodec. Debits (and escrow
claim/cancel credits) decode, do plaintext arithmetic and re-encode; deposits
add the caller-supplied opaque amount.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .codec import BalanceCodec, OpaqueBalance, BALANCE_SIZE, U64_MAX, validate_amount
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import AccountAlreadyExists, BalanceOverflow, InsufficientBalance, RecordNotFound
from .keys import IDENTITY_SIZE, account_address, validate_identity

ACCOUNT_LAYOUT_SIZE = IDENTITY_SIZE + BALANCE_SIZE + 8 + 1


@dataclass
class ConfidentialAccount(StorageRecord):
    """
    Per-owner balance record

    Persisted layout (105 bytes):
        owner(32) || opaque_balance(64) || nonce(8, LE) || address_tag(1)
    """
    owner: bytes
    balance: OpaqueBalance
    nonce: int
    address_tag: int

    def __post_init__(self):
        self.owner = validate_identity(self.owner)
        validate_amount(self.nonce)
        if not 0 <= self.address_tag <= 255:
            raise ValueError("Address tag must fit in one byte")

    def to_bytes(self) -> bytes:
        return (
            self.owner
            + bytes(self.balance)
            + self.nonce.to_bytes(8, "little")
            + bytes([self.address_tag])
        )

    @classmethod
    def from_bytes(cls, raw: bytes, program_id: bytes) -> 'ConfidentialAccount':
        """Rebuild an account from its persisted layout"""
        if len(raw) != ACCOUNT_LAYOUT_SIZE:
            raise ValueError(f"Account layout must be {ACCOUNT_LAYOUT_SIZE} bytes, got {len(raw)}")
        owner = raw[0:32]
        address, tag = account_address(owner, program_id)
        if raw[-1] != tag:
            raise ValueError("Account address tag does not match its owner")
        now = datetime.now(timezone.utc)
        return cls(
            id=address,
            created_at=now,
            updated_at=now,
            owner=owner,
            balance=OpaqueBalance(raw[32:96]),
            nonce=int.from_bytes(raw[96:104], "little"),
            address_tag=raw[104]
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'owner': self.owner.hex(),
            'balance': self.balance.to_hex(),
            'nonce': self.nonce,
            'address_tag': self.address_tag
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConfidentialAccount':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            owner=bytes.fromhex(data['owner']),
            balance=OpaqueBalance.from_hex(data['balance']),
            nonce=data['nonce'],
            address_tag=data['address_tag']
        )


class AccountManager:
    """
    Manages confidential account records, balance updates and nonces

    Callers are responsible for authorization and for wrapping multi-step
    operations in ``storage.atomic()``.
    """

    def __init__(
        self,
        storage: StorageInterface,
        codec: BalanceCodec,
        audit_trail: AuditTrail,
        program_id: bytes,
        strict_overflow: bool = False
    ):
        self.storage = storage
        self.codec = codec
        self.audit_trail = audit_trail
        self.program_id = validate_identity(program_id)
        self.strict_overflow = strict_overflow
        self.table_name = "confidential_accounts"

    def address_of(self, owner: bytes) -> str:
        return account_address(owner, self.program_id)[0]

    def init_account(self, owner: bytes) -> ConfidentialAccount:
        """
        Create the account record for ``owner`` with a zero balance and nonce 0

        Raises:
            AccountAlreadyExists: If the owner already has an account
        """
        address, tag = account_address(owner, self.program_id)
        if self.storage.exists(self.table_name, address):
            raise AccountAlreadyExists(f"Account {address} already exists")

        now = datetime.now(timezone.utc)
        account = ConfidentialAccount(
            id=address,
            created_at=now,
            updated_at=now,
            owner=owner,
            balance=self.codec.zero(),
            nonce=0,
            address_tag=tag
        )
        self._save(account)

        self.audit_trail.log_event(
            event_type=AuditEventType.ACCOUNT_INITIALIZED,
            entity_type="account",
            entity_id=address,
            metadata={"address_tag": tag},
            caller=account.owner.hex()
        )
        return account

    def get_account(self, owner: bytes) -> Optional[ConfidentialAccount]:
        data = self.storage.load(self.table_name, self.address_of(owner))
        if data:
            return ConfidentialAccount.from_dict(data)
        return None

    def require_account(self, owner: bytes) -> ConfidentialAccount:
        account = self.get_account(owner)
        if account is None:
            raise RecordNotFound(f"No account initialized for {validate_identity(owner).hex()}")
        return account

    def get_balance(self, owner: bytes) -> int:
        """Decoded balance of ``owner``"""
        return self.codec.decode(self.require_account(owner).balance)

    def list_accounts(self) -> List[ConfidentialAccount]:
        return [ConfidentialAccount.from_dict(data) for data in self.storage.load_all(self.table_name)]

    def credit(self, owner: bytes, opaque_delta: OpaqueBalance) -> ConfidentialAccount:
        """Add an opaque amount to the owner's balance"""
        account = self.require_account(owner)
        if self.strict_overflow:
            account.balance = self.codec.checked_add(account.balance, opaque_delta)
        else:
            account.balance = self.codec.add(account.balance, opaque_delta)
        self._touch(account)

        self._audit_balance(AuditEventType.BALANCE_CREDITED, account, "opaque")
        return account

    def credit_amount(self, owner: bytes, amount: int) -> ConfidentialAccount:
        """Add a plaintext amount: decode, add, re-encode"""
        validate_amount(amount)
        account = self.require_account(owner)
        total = self.codec.decode(account.balance) + amount
        if total > U64_MAX:
            if self.strict_overflow:
                raise BalanceOverflow(f"Crediting {amount} overflows account {account.id}")
            total = U64_MAX
        account.balance = self.codec.encode(total)
        self._touch(account)

        self._audit_balance(AuditEventType.BALANCE_CREDITED, account, "plaintext", amount)
        return account

    def debit_checked(self, owner: bytes, amount: int) -> ConfidentialAccount:
        """
        Subtract a plaintext amount

        Raises:
            InsufficientBalance: If the decoded balance is below ``amount``
        """
        validate_amount(amount)
        account = self.require_account(owner)
        current = self.codec.decode(account.balance)
        if current < amount:
            raise InsufficientBalance(
                f"Account {account.id} balance {current} is less than {amount}"
            )
        account.balance = self.codec.encode(current - amount)
        self._touch(account)

        self._audit_balance(AuditEventType.BALANCE_DEBITED, account, "plaintext", amount)
        return account

    def next_nonce(self, owner: bytes) -> int:
        """
        Consume the owner's current nonce

        Returns:
            The pre-increment nonce value
        """
        account = self.require_account(owner)
        if account.nonce >= U64_MAX:
            raise BalanceOverflow(f"Nonce space exhausted for account {account.id}")
        current = account.nonce
        account.nonce = current + 1
        self._touch(account)

        self.audit_trail.log_event(
            event_type=AuditEventType.NONCE_ADVANCED,
            entity_type="account",
            entity_id=account.id,
            metadata={"consumed_nonce": current, "next_nonce": account.nonce},
            caller=account.owner.hex()
        )
        return current

    def _audit_balance(self, event_type: AuditEventType, account: ConfidentialAccount,
                       path: str, amount: Optional[int] = None) -> None:
        metadata = {"path": path, "balance": account.balance.to_hex()}
        if amount is not None:
            metadata["amount"] = amount
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="account",
            entity_id=account.id,
            metadata=metadata,
            caller=account.owner.hex()
        )

    def _touch(self, account: ConfidentialAccount) -> None:
        account.updated_at = datetime.now(timezone.utc)
        self._save(account)

    def _save(self, account: ConfidentialAccount) -> None:
        self.storage.save(self.table_name, account.id, account.to_dict())
