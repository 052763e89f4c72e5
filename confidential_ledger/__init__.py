"""
Confidential Ledger

A confidential-balance payment ledger: opaque 64-byte balances behind a
pluggable codec, commitment-bound private transfers, and a two-phase escrow
with exactly-once claim or cancel.
"""

__version__ = "1.0.0"
