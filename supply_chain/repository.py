"""In-memory repositories and the transaction manager shared by all stores."""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from typing import (
    Callable,
    Dict,
    Generic,
    Iterator,
    List,
    MutableMapping,
    Optional,
    TypeVar,
)

from .domain import (
    LedgerItem,
    LedgerTransaction,
    Material,
    MaterialRequest,
    Order,
    Product,
    ProductionBatch,
    RecyclingRecord,
    SupplyChain,
    Transport,
)
from .errors import ConcurrentModificationError, DuplicateError, NotFoundError

T = TypeVar("T")

_MISSING = object()


class RepositoryError(RuntimeError):
    """Base exception for repository errors."""


class DuplicateRecordError(DuplicateError, RepositoryError):
    """Raised when attempting to insert a record that already exists."""


class RecordNotFoundError(NotFoundError, RepositoryError):
    """Raised when a requested record is missing."""


class StaleRecordError(ConcurrentModificationError, RepositoryError):
    """Raised when an update carries a version older than the stored one."""


class TransactionManager:
    """Reentrant, store-wide transaction.

    The outermost ``transaction()`` holds the lock until it commits or rolls
    back, so concurrent callers are serialized and the second one observes
    the first one's writes. Nested calls join the running transaction.
    """

    def __init__(
        self,
        *,
        on_begin: Optional[Callable[[], None]] = None,
        on_commit: Optional[Callable[[], None]] = None,
        on_rollback: Optional[Callable[[], None]] = None,
    ) -> None:
        self.lock = threading.RLock()
        self._depth = 0
        self._undo: List[Callable[[], None]] = []
        self._on_begin = on_begin
        self._on_commit = on_commit
        self._on_rollback = on_rollback

    @property
    def active(self) -> bool:
        return self._depth > 0

    def record_undo(self, action: Callable[[], None]) -> None:
        if self._depth:
            self._undo.append(action)

    @contextmanager
    def transaction(self) -> Iterator["TransactionManager"]:
        with self.lock:
            outermost = self._depth == 0
            if outermost:
                self._undo = []
                if self._on_begin is not None:
                    self._on_begin()
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._rollback()
                raise
            else:
                self._depth -= 1
                if outermost:
                    if self._on_commit is not None:
                        self._on_commit()
                    self._undo = []

    def _rollback(self) -> None:
        undo, self._undo = self._undo, []
        for action in reversed(undo):
            action()
        if self._on_rollback is not None:
            self._on_rollback()


class InMemoryRepository(Generic[T]):
    """Generic repository backed by a simple dictionary.

    Records are copied on the way in and out so a caller only changes stored
    state through ``add``/``update``/``upsert``. Writes are journaled into
    the transaction manager for rollback.
    """

    def __init__(self, transactions: Optional[TransactionManager] = None) -> None:
        self._items: MutableMapping[str, T] = {}
        self._tx = transactions or TransactionManager()

    def __contains__(self, item_id: object) -> bool:
        with self._tx.lock:
            return item_id in self._items

    def __len__(self) -> int:
        with self._tx.lock:
            return len(self._items)

    def _journal(self, item_id: str) -> None:
        previous = self._items.get(item_id, _MISSING)

        def restore() -> None:
            if previous is _MISSING:
                self._items.pop(item_id, None)
            else:
                self._items[item_id] = previous

        self._tx.record_undo(restore)

    def add(self, item_id: str, item: T) -> None:
        with self._tx.transaction():
            if item_id in self._items:
                raise DuplicateRecordError(f"Record with id {item_id!r} already exists")
            self._journal(item_id)
            self._items[item_id] = copy.deepcopy(item)

    def upsert(self, item_id: str, item: T) -> None:
        with self._tx.transaction():
            self._journal(item_id)
            self._items[item_id] = copy.deepcopy(item)

    def update(self, item_id: str, item: T) -> T:
        """Store ``item`` if its version matches the stored one, then bump it."""

        with self._tx.transaction():
            stored = self._items.get(item_id, _MISSING)
            if stored is _MISSING:
                raise RecordNotFoundError(f"Record with id {item_id!r} not found")
            expected = getattr(item, "version")
            if getattr(stored, "version") != expected:
                raise StaleRecordError(
                    f"Record {item_id!r} was modified concurrently "
                    f"(expected version {expected}, found {getattr(stored, 'version')})",
                    record_id=item_id,
                )
            setattr(item, "version", expected + 1)
            self._journal(item_id)
            self._items[item_id] = copy.deepcopy(item)
            return item

    def get(self, item_id: str) -> T:
        with self._tx.lock:
            try:
                return copy.deepcopy(self._items[item_id])
            except KeyError as exc:
                raise RecordNotFoundError(f"Record with id {item_id!r} not found") from exc

    def remove(self, item_id: str) -> None:
        with self._tx.transaction():
            if item_id not in self._items:
                raise RecordNotFoundError(f"Record with id {item_id!r} not found")
            self._journal(item_id)
            del self._items[item_id]

    def list(self) -> List[T]:
        with self._tx.lock:
            return [copy.deepcopy(item) for item in self._items.values()]

    def find(self, predicate: Callable[[T], bool]) -> List[T]:
        with self._tx.lock:
            return [
                copy.deepcopy(item) for item in self._items.values() if predicate(item)
            ]

    def __iter__(self) -> Iterator[T]:
        return iter(self.list())


class InMemoryDatabase:
    """Bundle of in-memory repositories sharing one transaction manager."""

    def __init__(self) -> None:
        self.transactions = TransactionManager()
        tx = self.transactions
        self.supply_chains = InMemoryRepository[SupplyChain](tx)
        self.ledger_items = InMemoryRepository[LedgerItem](tx)
        self.ledger_transactions = InMemoryRepository[LedgerTransaction](tx)
        self.ledger_meta = InMemoryRepository[Dict[str, object]](tx)
        self.materials = InMemoryRepository[Material](tx)
        self.products = InMemoryRepository[Product](tx)
        self.material_requests = InMemoryRepository[MaterialRequest](tx)
        self.batches = InMemoryRepository[ProductionBatch](tx)
        self.orders = InMemoryRepository[Order](tx)
        self.transports = InMemoryRepository[Transport](tx)
        self.recycling = InMemoryRepository[RecyclingRecord](tx)

    def transaction(self):
        return self.transactions.transaction()

    def close(self) -> None:
        return None


__all__ = [
    "InMemoryRepository",
    "InMemoryDatabase",
    "TransactionManager",
    "RepositoryError",
    "DuplicateRecordError",
    "RecordNotFoundError",
    "StaleRecordError",
]
