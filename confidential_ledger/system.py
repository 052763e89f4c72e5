"""
Ledger System Module

Builds every component from one LedgerConfig and wires them together. This is
the only place configuration is read; components receive plain values.
"""

from typing import Optional

from .accounts import AccountManager
from .audit import AuditTrail
from .codec import create_codec
from .config import LedgerConfig, get_config
from .events import EventDispatcher
from .keys import vault_address
from .logging_config import get_logger
from .pending_transfers import PendingTransferManager
from .processor import ConfidentialPaymentProcessor
from .storage import StorageInterface, create_storage
from .vault import AssetLedger, InMemoryAssetLedger, Vault


class LedgerSystem:
    """Confidential ledger with all components initialized"""

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        storage: Optional[StorageInterface] = None,
        asset_ledger: Optional[AssetLedger] = None
    ):
        self.config = config or get_config()
        self.logger = get_logger("veil.system")
        program_id = self.config.program_id_bytes

        # Initialize storage
        self.storage = storage or create_storage(
            self.config.storage_backend, self.config.database_path
        )

        # Initialize core components
        self.codec = create_codec(self.config.balance_codec)
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.event_dispatcher = EventDispatcher()
        self.account_manager = AccountManager(
            self.storage, self.codec, self.audit_trail, program_id,
            strict_overflow=self.config.strict_overflow
        )
        self.pending_transfers = PendingTransferManager(
            self.storage, self.account_manager, self.audit_trail, program_id
        )

        # Custody
        self.asset_ledger = asset_ledger or InMemoryAssetLedger()
        self.vault = Vault(
            self.asset_ledger,
            vault_address(program_id)[0],
            minimum_reserve=self.config.minimum_vault_reserve
        )

        self.processor = ConfidentialPaymentProcessor(
            self.storage, self.codec, self.account_manager, self.pending_transfers,
            self.vault, self.audit_trail, self.event_dispatcher,
            direct_transfer_settles=self.config.direct_transfer_settles
        )

        self.logger.info(
            f"Ledger system ready (storage={self.config.storage_backend}, "
            f"codec={self.config.balance_codec}, vault={self.vault.address})"
        )

    def close(self) -> None:
        self.storage.close()
