"""
Ledger Error Taxonomy

Every rejected operation raises one of these. They subclass ValueError so
callers that already handle ValueError for bad input keep working, and each
carries a stable ``code`` used by logging, audit and the HTTP layer.
"""


class LedgerError(ValueError):
    """Base class for all rejected ledger operations"""
    code = "ledger_error"


class InsufficientBalance(LedgerError):
    """A debit or escrow creation would make the decoded balance negative"""
    code = "insufficient_balance"


class InsufficientReserve(LedgerError):
    """A custody withdrawal would breach the vault's minimum reserve"""
    code = "insufficient_reserve"


class Unauthorized(LedgerError):
    """Caller identity does not match the required role on a record"""
    code = "unauthorized"


class RecordNotFound(LedgerError):
    """Account or escrow lookup failed, or the escrow was already resolved"""
    code = "record_not_found"


class CommitmentMismatch(LedgerError):
    """A recomputed commitment, tag or encoded amount differs from the supplied one"""
    code = "commitment_mismatch"


class BalanceOverflow(LedgerError):
    """A credit would exceed the maximum representable balance"""
    code = "balance_overflow"


class InvalidNonce(LedgerError):
    """The nonce bound into a direct transfer is not the sender's current nonce"""
    code = "invalid_nonce"


class DuplicateCommitment(LedgerError):
    """A direct transfer with this commitment hash was already recorded"""
    code = "duplicate_commitment"


class AccountAlreadyExists(LedgerError):
    """An account record already exists for this owner"""
    code = "account_already_exists"


class AssetTransferError(LedgerError):
    """The external asset ledger refused a custody transfer"""
    code = "asset_transfer_failed"
