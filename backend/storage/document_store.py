"""
Document Store - Persistence Interface
=======================================
Collections of JSON-like documents keyed by generated ids, with the
small set of primitives the ledger needs:

- Dotted field paths on update ("financial.totalEarnings")
- Server-side increments (Increment sentinel, never read-modify-write)
- Transactions: reads run immediately, writes are buffered and applied
  atomically when the block exits without an exception
- run_transaction() retries the whole unit of work on contention

InMemoryDocumentStore serialises transactions with an asyncio.Lock and is
used by tests and STORE_BACKEND=memory. PostgresDocumentStore lives in
database.py.
"""

import asyncio
import copy
import os
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncContextManager, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar, Union

import structlog

logger = structlog.get_logger().bind(component="document_store")

T = TypeVar("T")


# =============================================================================
# CONFIGURATION
# =============================================================================

class TransactionConfig:
    """Transaction retry configuration"""

    MAX_ATTEMPTS = int(os.getenv("STORE_TX_MAX_ATTEMPTS", "5"))
    RETRY_DELAY_SECONDS = float(os.getenv("STORE_TX_RETRY_DELAY", "0.05"))


tx_config = TransactionConfig()


# =============================================================================
# ERRORS
# =============================================================================

class StoreError(Exception):
    """Base class for document store failures."""


class DocumentNotFound(StoreError):
    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} does not exist")
        self.collection = collection
        self.doc_id = doc_id


class DocumentExists(StoreError):
    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} already exists")
        self.collection = collection
        self.doc_id = doc_id


class TransactionConflict(StoreError):
    """Concurrent transaction touched the same data; the caller may retry."""


# =============================================================================
# SENTINELS
# =============================================================================

@dataclass(frozen=True)
class Increment:
    """Server-side numeric delta for a field (created at 0 when missing)."""
    amount: Union[int, Decimal]


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"

    # Survives copy.deepcopy of buffered writes as the same sentinel
    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


SERVER_TIMESTAMP = _ServerTimestamp()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DocumentSnapshot:
    id: str
    data: Dict[str, Any]

    def get(self, path: str, default: Any = None) -> Any:
        return get_path(self.data, path, default)


def split_path(path: str) -> List[str]:
    parts = path.split(".")
    if any(not part for part in parts):
        raise ValueError(f"Invalid field path: {path!r}")
    return parts


def get_path(data: Optional[Dict[str, Any]], path: str, default: Any = None) -> Any:
    """Read a dotted field path from a document dict."""
    current: Any = data
    for part in split_path(path):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def resolve_value(value: Any, now: datetime) -> Any:
    """Replace SERVER_TIMESTAMP sentinels (recursively) with a concrete time."""
    if value is SERVER_TIMESTAMP:
        return now
    if isinstance(value, dict):
        return {k: resolve_value(v, now) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_value(v, now) for v in value]
    return value


def apply_changes(data: Dict[str, Any], changes: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """
    Apply an update map to a copy of a document.

    Keys are dotted paths; intermediate maps are created as needed.
    Increment values are added to the existing number (0 when absent).
    """
    updated = copy.deepcopy(data)
    for path, value in changes.items():
        parts = split_path(path)
        target = updated
        for part in parts[:-1]:
            child = target.get(part)
            if not isinstance(child, dict):
                child = {}
                target[part] = child
            target = child
        leaf = parts[-1]
        if isinstance(value, Increment):
            current = target.get(leaf) or 0
            if isinstance(value.amount, Decimal) or isinstance(current, Decimal):
                target[leaf] = Decimal(str(current)) + Decimal(str(value.amount))
            else:
                target[leaf] = current + value.amount
        else:
            target[leaf] = resolve_value(value, now)
    return updated


def matches(data: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    missing = object()
    return all(get_path(data, field, missing) == expected for field, expected in filters.items())


# =============================================================================
# INTERFACES
# =============================================================================

# (op, collection, doc_id, payload)
PendingWrite = Tuple[str, str, str, Dict[str, Any]]


class StoreTransaction(ABC):
    """
    Unit of work handed to run_transaction() callbacks.

    Reads hit the store immediately; create/set/update are buffered and
    applied together when the transaction commits.
    """

    def __init__(self):
        self._writes: List[PendingWrite] = []

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[DocumentSnapshot]:
        pass

    @abstractmethod
    async def find(
        self,
        collection: str,
        filters: Dict[str, Any],
        limit: Optional[int] = None,
    ) -> List[DocumentSnapshot]:
        pass

    async def find_one(self, collection: str, filters: Dict[str, Any]) -> Optional[DocumentSnapshot]:
        found = await self.find(collection, filters, limit=1)
        return found[0] if found else None

    def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Insert a new document; commit fails with DocumentExists if the id is taken."""
        self._writes.append(("create", collection, doc_id, data))

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Insert or fully replace a document."""
        self._writes.append(("set", collection, doc_id, data))

    def update(self, collection: str, doc_id: str, changes: Dict[str, Any]) -> None:
        """Patch an existing document; commit fails with DocumentNotFound if absent."""
        self._writes.append(("update", collection, doc_id, changes))

    @property
    def pending_writes(self) -> List[PendingWrite]:
        return list(self._writes)


class DocumentStore(ABC):
    """Abstract document store (swap in-memory/Postgres without code changes)"""

    def new_id(self) -> str:
        return uuid.uuid4().hex[:20]

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[DocumentSnapshot]:
        pass

    @abstractmethod
    async def find(
        self,
        collection: str,
        filters: Dict[str, Any],
        order_by: Optional[str] = None,
        descending: bool = False,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[DocumentSnapshot]:
        pass

    @abstractmethod
    async def count(self, collection: str, filters: Dict[str, Any]) -> int:
        pass

    @abstractmethod
    def transaction(self) -> AsyncContextManager[StoreTransaction]:
        """Async context manager yielding a StoreTransaction."""

    async def close(self) -> None:
        pass

    async def find_one(self, collection: str, filters: Dict[str, Any]) -> Optional[DocumentSnapshot]:
        found = await self.find(collection, filters, limit=1)
        return found[0] if found else None

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        async with self.transaction() as tx:
            tx.set(collection, doc_id, data)

    async def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        async with self.transaction() as tx:
            tx.create(collection, doc_id, data)

    async def update(self, collection: str, doc_id: str, changes: Dict[str, Any]) -> None:
        async with self.transaction() as tx:
            tx.update(collection, doc_id, changes)

    async def run_transaction(
        self,
        fn: Callable[[StoreTransaction], Awaitable[T]],
        max_attempts: Optional[int] = None,
    ) -> T:
        """
        Run fn inside a transaction, retrying on TransactionConflict.

        fn may be invoked more than once, so it must not have side effects
        outside the transaction it is given.
        """
        attempts = max_attempts or tx_config.MAX_ATTEMPTS
        for attempt in range(1, attempts + 1):
            try:
                async with self.transaction() as tx:
                    return await fn(tx)
            except TransactionConflict as e:
                if attempt >= attempts:
                    logger.error("transaction_conflict_exhausted", attempts=attempt, error=str(e))
                    raise
                logger.warning("transaction_conflict_retry", attempt=attempt, error=str(e))
                await asyncio.sleep(tx_config.RETRY_DELAY_SECONDS * attempt)
        raise TransactionConflict("transaction retries exhausted")


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class _InMemoryTransaction(StoreTransaction):

    def __init__(self, store: "InMemoryDocumentStore"):
        super().__init__()
        self._store = store

    async def get(self, collection: str, doc_id: str) -> Optional[DocumentSnapshot]:
        return self._store._get_unlocked(collection, doc_id)

    async def find(
        self,
        collection: str,
        filters: Dict[str, Any],
        limit: Optional[int] = None,
    ) -> List[DocumentSnapshot]:
        return self._store._find_unlocked(collection, filters, limit=limit)


class InMemoryDocumentStore(DocumentStore):
    """
    Process-local store with serialisable transactions.

    One asyncio.Lock guards every transaction, so two concurrent webhook
    deliveries touching the same trainer run one after the other.
    """

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    # -- raw access (lock held by caller) ---------------------------------

    def _get_unlocked(self, collection: str, doc_id: str) -> Optional[DocumentSnapshot]:
        data = self._collections.get(collection, {}).get(doc_id)
        if data is None:
            return None
        return DocumentSnapshot(id=doc_id, data=copy.deepcopy(data))

    def _find_unlocked(
        self,
        collection: str,
        filters: Dict[str, Any],
        order_by: Optional[str] = None,
        descending: bool = False,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[DocumentSnapshot]:
        docs = [
            DocumentSnapshot(id=doc_id, data=copy.deepcopy(data))
            for doc_id, data in self._collections.get(collection, {}).items()
            if matches(data, filters)
        ]
        if order_by:
            docs.sort(key=lambda d: _sort_key(d.get(order_by)), reverse=descending)
        docs = docs[offset:]
        if limit is not None:
            docs = docs[:limit]
        return docs

    def _commit(self, writes: List[PendingWrite]) -> None:
        now = utcnow()
        # Stage everything first so a failing write leaves the store untouched
        staged: Dict[Tuple[str, str], Dict[str, Any]] = {}

        def current(collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
            key = (collection, doc_id)
            if key in staged:
                return staged[key]
            return self._collections.get(collection, {}).get(doc_id)

        for op, collection, doc_id, payload in writes:
            existing = current(collection, doc_id)
            if op == "create":
                if existing is not None:
                    raise DocumentExists(collection, doc_id)
                staged[(collection, doc_id)] = resolve_value(copy.deepcopy(payload), now)
            elif op == "set":
                staged[(collection, doc_id)] = resolve_value(copy.deepcopy(payload), now)
            elif op == "update":
                if existing is None:
                    raise DocumentNotFound(collection, doc_id)
                staged[(collection, doc_id)] = apply_changes(existing, payload, now)
            else:
                raise StoreError(f"Unknown write op: {op}")

        for (collection, doc_id), data in staged.items():
            self._collections.setdefault(collection, {})[doc_id] = data

    # -- public API -------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        async with self._lock:
            tx = _InMemoryTransaction(self)
            yield tx
            self._commit(tx.pending_writes)

    async def get(self, collection: str, doc_id: str) -> Optional[DocumentSnapshot]:
        async with self._lock:
            return self._get_unlocked(collection, doc_id)

    async def find(
        self,
        collection: str,
        filters: Dict[str, Any],
        order_by: Optional[str] = None,
        descending: bool = False,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[DocumentSnapshot]:
        async with self._lock:
            return self._find_unlocked(collection, filters, order_by, descending, offset, limit)

    async def count(self, collection: str, filters: Dict[str, Any]) -> int:
        async with self._lock:
            return len(self._find_unlocked(collection, filters))


def _sort_key(value: Any) -> Tuple[int, Any]:
    # None sorts first; datetimes and ISO strings compare within their own kind
    if value is None:
        return (0, "")
    if isinstance(value, datetime):
        return (1, value.isoformat())
    return (1, value)
