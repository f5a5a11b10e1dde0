"""
Storage Layer for the Impact Ledger

Provides:
- AuditLog abstraction (append-only, hash-chained, single writer lock)
- ClaimStore abstraction (claims keyed by content-derived id)
- In-memory implementations of both
"""

from .store import (
    AppendContext,
    AuditLog,
    ChainHead,
    ChainIntegrityError,
    ClaimStore,
    InMemoryAuditLog,
    InMemoryClaimStore,
    StoreError,
)

__all__ = [
    "AppendContext",
    "AuditLog",
    "ChainHead",
    "ChainIntegrityError",
    "ClaimStore",
    "InMemoryAuditLog",
    "InMemoryClaimStore",
    "StoreError",
]
