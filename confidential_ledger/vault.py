"""
Custody Vault Module

The native asset backing confidential balances sits in one pooled vault
account on an external asset ledger. Deposits move the asset into the vault,
withdrawals move it back out, and a withdrawal may never take the vault below
its minimum reserve.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict

from .codec import validate_amount
from .errors import AssetTransferError, InsufficientReserve

logger = logging.getLogger(__name__)


class AssetLedger(ABC):
    """Interface to the external ledger holding the native asset"""

    @abstractmethod
    def balance_of(self, holder: str) -> int:
        """Asset balance of ``holder``"""
        pass

    @abstractmethod
    def transfer(self, source: str, destination: str, amount: int) -> None:
        """Move ``amount`` from ``source`` to ``destination``, raising AssetTransferError on failure"""
        pass


class InMemoryAssetLedger(AssetLedger):
    """Asset ledger kept in a dict, for tests and local runs"""

    def __init__(self):
        self._balances: Dict[str, int] = {}
        self._lock = threading.RLock()

    def fund(self, holder: str, amount: int) -> None:
        """Mint ``amount`` to ``holder`` (test setup)"""
        with self._lock:
            self._balances[holder] = self._balances.get(holder, 0) + validate_amount(amount)

    def balance_of(self, holder: str) -> int:
        with self._lock:
            return self._balances.get(holder, 0)

    def transfer(self, source: str, destination: str, amount: int) -> None:
        validate_amount(amount)
        with self._lock:
            available = self._balances.get(source, 0)
            if available < amount:
                raise AssetTransferError(
                    f"Asset holder {source} has {available}, cannot transfer {amount}"
                )
            self._balances[source] = available - amount
            self._balances[destination] = self._balances.get(destination, 0) + amount


class Vault:
    """
    Pooled custody account for deposited assets

    Args:
        asset_ledger: External ledger holding the native asset
        address: Vault holder name on the asset ledger
        minimum_reserve: Floor the vault balance may never drop below on withdrawal
    """

    def __init__(self, asset_ledger: AssetLedger, address: str, minimum_reserve: int = 0):
        self.asset_ledger = asset_ledger
        self.address = address
        self.minimum_reserve = validate_amount(minimum_reserve)

    def balance(self) -> int:
        return self.asset_ledger.balance_of(self.address)

    def deposit(self, holder: str, amount: int) -> None:
        """Move ``amount`` from ``holder`` into the vault"""
        self.asset_ledger.transfer(holder, self.address, amount)
        logger.debug(f"Vault received {amount} from {holder}")

    def check_withdrawal(self, amount: int) -> None:
        """
        Raise InsufficientReserve if paying out ``amount`` breaches the reserve

        The remaining balance saturates at zero, so an amount larger than the
        whole vault is reported as a reserve breach rather than a negative balance.
        """
        validate_amount(amount)
        remaining = max(self.balance() - amount, 0)
        if remaining < self.minimum_reserve:
            raise InsufficientReserve(
                f"Withdrawing {amount} leaves vault at {remaining}, "
                f"below minimum reserve {self.minimum_reserve}"
            )

    def withdraw(self, holder: str, amount: int) -> None:
        """Move ``amount`` out of the vault to ``holder``"""
        self.check_withdrawal(amount)
        self.asset_ledger.transfer(self.address, holder, amount)
        logger.debug(f"Vault paid {amount} to {holder}")
