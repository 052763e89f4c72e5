"""
Tests for confidential accounts

Covers account creation, the persisted layout, balance updates through the
codec under both overflow policies, and nonce consumption.
"""

import pytest

from confidential_ledger.accounts import ACCOUNT_LAYOUT_SIZE, AccountManager, ConfidentialAccount
from confidential_ledger.audit import AuditEventType, AuditTrail
from confidential_ledger.codec import U64_MAX, NoiseBalanceCodec
from confidential_ledger.errors import (
    AccountAlreadyExists, BalanceOverflow, InsufficientBalance, RecordNotFound
)
from confidential_ledger.keys import account_address, new_identity
from confidential_ledger.storage import InMemoryStorage

PROGRAM_ID = b"\x07" * 32


class TestAccountManager:
    """Test account lifecycle and balance operations"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.codec = NoiseBalanceCodec()
        self.audit_trail = AuditTrail(self.storage)
        self.manager = AccountManager(self.storage, self.codec, self.audit_trail, PROGRAM_ID)
        self.owner = new_identity()

    def test_init_account(self):
        """Test a new account starts at zero with nonce 0"""
        account = self.manager.init_account(self.owner)
        address, tag = account_address(self.owner, PROGRAM_ID)

        assert account.id == address
        assert account.address_tag == tag
        assert account.owner == self.owner
        assert account.nonce == 0
        assert self.manager.get_balance(self.owner) == 0
        assert self.audit_trail.get_events_by_type(AuditEventType.ACCOUNT_INITIALIZED)

    def test_init_account_twice(self):
        self.manager.init_account(self.owner)
        with pytest.raises(AccountAlreadyExists, match="already exists"):
            self.manager.init_account(self.owner)

    def test_missing_account(self):
        assert self.manager.get_account(self.owner) is None
        with pytest.raises(RecordNotFound, match="No account initialized"):
            self.manager.require_account(self.owner)

    def test_credit_opaque(self):
        self.manager.init_account(self.owner)
        account = self.manager.credit(self.owner, self.codec.encode(100))

        assert account.balance == self.codec.encode(100)
        assert self.manager.get_balance(self.owner) == 100

    def test_credit_saturates_by_default(self):
        self.manager.init_account(self.owner)
        self.manager.credit(self.owner, self.codec.encode(U64_MAX))
        self.manager.credit(self.owner, self.codec.encode(10))
        assert self.manager.get_balance(self.owner) == U64_MAX

    def test_credit_strict_overflow(self):
        """Test that strict mode rejects credits past the maximum"""
        manager = AccountManager(
            self.storage, self.codec, self.audit_trail, PROGRAM_ID, strict_overflow=True
        )
        manager.init_account(self.owner)
        manager.credit(self.owner, self.codec.encode(U64_MAX))

        with pytest.raises(BalanceOverflow):
            manager.credit(self.owner, self.codec.encode(1))
        with pytest.raises(BalanceOverflow):
            manager.credit_amount(self.owner, 1)
        assert manager.get_balance(self.owner) == U64_MAX

    def test_credit_amount(self):
        """Test the decode-add-encode path"""
        self.manager.init_account(self.owner)
        self.manager.credit_amount(self.owner, 40)
        account = self.manager.credit_amount(self.owner, 2)

        assert account.balance == self.codec.encode(42)

    def test_credit_amount_saturates(self):
        self.manager.init_account(self.owner)
        self.manager.credit_amount(self.owner, U64_MAX - 1)
        self.manager.credit_amount(self.owner, 5)
        assert self.manager.get_balance(self.owner) == U64_MAX

    def test_debit_checked(self):
        self.manager.init_account(self.owner)
        self.manager.credit_amount(self.owner, 100)

        account = self.manager.debit_checked(self.owner, 60)
        assert self.codec.decode(account.balance) == 40

        with pytest.raises(InsufficientBalance, match="less than 41"):
            self.manager.debit_checked(self.owner, 41)
        assert self.manager.get_balance(self.owner) == 40

    def test_debit_rejects_invalid_amount(self):
        self.manager.init_account(self.owner)
        with pytest.raises(ValueError, match="outside u64 range"):
            self.manager.debit_checked(self.owner, -1)

    def test_next_nonce(self):
        """Test nonce returns the pre-increment value and persists +1"""
        self.manager.init_account(self.owner)

        assert self.manager.next_nonce(self.owner) == 0
        assert self.manager.next_nonce(self.owner) == 1
        assert self.manager.require_account(self.owner).nonce == 2

    def test_list_accounts(self):
        self.manager.init_account(self.owner)
        self.manager.init_account(new_identity())
        assert len(self.manager.list_accounts()) == 2

    def test_balance_changes_are_audited(self):
        self.manager.init_account(self.owner)
        self.manager.credit_amount(self.owner, 10)
        self.manager.debit_checked(self.owner, 5)

        assert len(self.audit_trail.get_events_by_type(AuditEventType.BALANCE_CREDITED)) == 1
        assert len(self.audit_trail.get_events_by_type(AuditEventType.BALANCE_DEBITED)) == 1
        assert self.audit_trail.verify_integrity()["valid"]


class TestAccountLayout:
    """Test the persisted byte layout"""

    def setup_method(self):
        storage = InMemoryStorage()
        self.codec = NoiseBalanceCodec()
        self.manager = AccountManager(storage, self.codec, AuditTrail(storage), PROGRAM_ID)
        self.owner = new_identity()
        self.manager.init_account(self.owner)
        self.manager.credit_amount(self.owner, 1234)
        self.manager.next_nonce(self.owner)
        self.account = self.manager.require_account(self.owner)

    def test_layout(self):
        raw = self.account.to_bytes()

        assert len(raw) == ACCOUNT_LAYOUT_SIZE == 105
        assert raw[0:32] == self.owner
        assert raw[32:96] == bytes(self.codec.encode(1234))
        assert int.from_bytes(raw[96:104], "little") == 1
        assert raw[104] == self.account.address_tag

    def test_round_trip(self):
        restored = ConfidentialAccount.from_bytes(self.account.to_bytes(), PROGRAM_ID)

        assert restored.id == self.account.id
        assert restored.owner == self.owner
        assert restored.balance == self.account.balance
        assert restored.nonce == 1

    def test_tag_mismatch(self):
        """Test that a record stored under the wrong tag is refused"""
        raw = self.account.to_bytes()
        corrupted = raw[:-1] + bytes([(raw[-1] + 1) % 256])
        with pytest.raises(ValueError, match="tag does not match"):
            ConfidentialAccount.from_bytes(corrupted, PROGRAM_ID)

    def test_wrong_size(self):
        with pytest.raises(ValueError, match="105 bytes"):
            ConfidentialAccount.from_bytes(b"\x00" * 104, PROGRAM_ID)

    def test_dict_round_trip(self):
        assert ConfidentialAccount.from_dict(self.account.to_dict()) == self.account
