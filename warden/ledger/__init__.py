"""
Tamper-evident ledger for Generation Warden.

Append-only, hash-chained record of every verification, staging,
activation, rollback and quarantine event.
"""

from .event_ledger import (
    EventKind,
    LedgerEntry,
    Ledger,
    load_signing_key,
    generate_signing_key,
    verify_key_hex,
)

__all__ = [
    'EventKind',
    'LedgerEntry',
    'Ledger',
    'load_signing_key',
    'generate_signing_key',
    'verify_key_hex',
]
