"""
Tests for the custody vault and the in-memory asset ledger
"""

import pytest

from confidential_ledger.errors import AssetTransferError, InsufficientReserve
from confidential_ledger.vault import InMemoryAssetLedger, Vault

VAULT = "vault-address"


class TestInMemoryAssetLedger:
    """Test the asset ledger used in tests and local runs"""

    def setup_method(self):
        self.ledger = InMemoryAssetLedger()

    def test_fund_and_transfer(self):
        self.ledger.fund("alice", 500)
        self.ledger.transfer("alice", "bob", 200)

        assert self.ledger.balance_of("alice") == 300
        assert self.ledger.balance_of("bob") == 200
        assert self.ledger.balance_of("nobody") == 0

    def test_transfer_insufficient_funds(self):
        self.ledger.fund("alice", 10)
        with pytest.raises(AssetTransferError, match="cannot transfer 11"):
            self.ledger.transfer("alice", "bob", 11)
        assert self.ledger.balance_of("alice") == 10

    def test_rejects_negative_amounts(self):
        with pytest.raises(ValueError):
            self.ledger.transfer("alice", "bob", -1)


class TestVault:
    """Test deposits, withdrawals and the minimum reserve"""

    def setup_method(self):
        self.ledger = InMemoryAssetLedger()
        self.ledger.fund("alice", 1000)
        self.vault = Vault(self.ledger, VAULT, minimum_reserve=100)

    def test_deposit(self):
        self.vault.deposit("alice", 400)
        assert self.vault.balance() == 400
        assert self.ledger.balance_of("alice") == 600

    def test_deposit_without_funds(self):
        with pytest.raises(AssetTransferError):
            self.vault.deposit("bob", 1)
        assert self.vault.balance() == 0

    def test_withdraw_within_reserve(self):
        self.vault.deposit("alice", 400)
        self.vault.withdraw("alice", 300)

        assert self.vault.balance() == 100
        assert self.ledger.balance_of("alice") == 900

    def test_withdraw_breaching_reserve(self):
        """Test that the reserve floor blocks the payout before any asset moves"""
        self.vault.deposit("alice", 400)
        with pytest.raises(InsufficientReserve, match="below minimum reserve 100"):
            self.vault.withdraw("alice", 301)
        assert self.vault.balance() == 400

    def test_withdraw_more_than_vault_saturates(self):
        """Test that an oversized payout reports a reserve breach, not a negative balance"""
        self.vault.deposit("alice", 50)
        with pytest.raises(InsufficientReserve, match="leaves vault at 0"):
            self.vault.check_withdrawal(5000)

    def test_zero_reserve_allows_full_drain(self):
        vault = Vault(self.ledger, "other-vault")
        vault.deposit("alice", 250)
        vault.withdraw("alice", 250)
        assert vault.balance() == 0

    def test_negative_reserve_rejected(self):
        with pytest.raises(ValueError):
            Vault(self.ledger, VAULT, minimum_reserve=-1)
