# storage/__init__.py
# ============================================================================
# TRAINER LEDGER - STORAGE MODULE
# ============================================================================
# Document store interface, sentinels and the in-memory implementation
# ============================================================================

from storage.document_store import (
    DocumentStore,
    StoreTransaction,
    DocumentSnapshot,
    InMemoryDocumentStore,
    Increment,
    SERVER_TIMESTAMP,
    StoreError,
    DocumentNotFound,
    DocumentExists,
    TransactionConflict,
    get_path,
    utcnow,
)

__all__ = [
    "DocumentStore",
    "StoreTransaction",
    "DocumentSnapshot",
    "InMemoryDocumentStore",
    "Increment",
    "SERVER_TIMESTAMP",
    "StoreError",
    "DocumentNotFound",
    "DocumentExists",
    "TransactionConflict",
    "get_path",
    "utcnow",
]
