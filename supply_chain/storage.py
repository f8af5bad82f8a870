"""SQLite-backed persistence helpers for the supply chain core."""

from __future__ import annotations

import pickle
import sqlite3
from typing import Callable, Dict, Generic, Iterator, List, Optional, TypeVar

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
from .errors import ConcurrentModificationError
from .logging_config import get_logger
from .repository import (
    DuplicateRecordError,
    RecordNotFoundError,
    StaleRecordError,
    TransactionManager,
)

T = TypeVar("T")

logger = get_logger("storage")


class SQLiteRepository(Generic[T]):
    """Repository implementation that persists records inside SQLite."""

    def __init__(
        self,
        connection: sqlite3.Connection,
        table: str,
        transactions: TransactionManager,
    ) -> None:
        self._connection = connection
        self._table = table
        self._tx = transactions
        with self._tx.transaction():
            self._connection.execute(
                f"CREATE TABLE IF NOT EXISTS {table} ("  # nosec - static table names
                "id TEXT PRIMARY KEY, version INTEGER NOT NULL DEFAULT 0, "
                "payload BLOB NOT NULL)"
            )

    def __contains__(self, item_id: object) -> bool:
        if not isinstance(item_id, str):  # pragma: no cover - defensive
            return False
        with self._tx.lock:
            cursor = self._connection.execute(
                f"SELECT 1 FROM {self._table} WHERE id = ? LIMIT 1", (item_id,)
            )
            return cursor.fetchone() is not None

    def __iter__(self) -> Iterator[T]:
        return iter(self.list())

    def __len__(self) -> int:
        with self._tx.lock:
            cursor = self._connection.execute(f"SELECT COUNT(1) FROM {self._table}")
            value = cursor.fetchone()
            return int(value[0]) if value else 0

    # ------------------------------------------------------------------
    # CRUD operations
    # ------------------------------------------------------------------
    def add(self, item_id: str, item: T) -> None:
        with self._tx.transaction():
            if item_id in self:
                raise DuplicateRecordError(f"Record with id {item_id!r} already exists")
            self._connection.execute(
                f"INSERT INTO {self._table} (id, version, payload) VALUES (?, ?, ?)",
                (item_id, getattr(item, "version", 0), pickle.dumps(item)),
            )

    def upsert(self, item_id: str, item: T) -> None:
        with self._tx.transaction():
            self._connection.execute(
                f"INSERT INTO {self._table} (id, version, payload) VALUES (?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET payload = excluded.payload, "
                "version = excluded.version",
                (item_id, getattr(item, "version", 0), pickle.dumps(item)),
            )

    def update(self, item_id: str, item: T) -> T:
        """Compare-and-set on the ``version`` column."""

        with self._tx.transaction():
            expected = getattr(item, "version")
            setattr(item, "version", expected + 1)
            cursor = self._connection.execute(
                f"UPDATE {self._table} SET payload = ?, version = ? "
                "WHERE id = ? AND version = ?",
                (pickle.dumps(item), expected + 1, item_id, expected),
            )
            if cursor.rowcount == 0:
                setattr(item, "version", expected)
                if item_id not in self:
                    raise RecordNotFoundError(f"Record with id {item_id!r} not found")
                raise StaleRecordError(
                    f"Record {item_id!r} was modified concurrently "
                    f"(expected version {expected})",
                    record_id=item_id,
                )
            return item

    def get(self, item_id: str) -> T:
        with self._tx.lock:
            cursor = self._connection.execute(
                f"SELECT payload FROM {self._table} WHERE id = ?", (item_id,)
            )
            row = cursor.fetchone()
        if row is None:
            raise RecordNotFoundError(f"Record with id {item_id!r} not found")
        return pickle.loads(row[0])

    def remove(self, item_id: str) -> None:
        with self._tx.transaction():
            cursor = self._connection.execute(
                f"DELETE FROM {self._table} WHERE id = ?", (item_id,)
            )
            if cursor.rowcount == 0:
                raise RecordNotFoundError(f"Record with id {item_id!r} not found")

    def list(self) -> List[T]:
        with self._tx.lock:
            cursor = self._connection.execute(
                f"SELECT payload FROM {self._table} ORDER BY rowid"
            )
            rows = cursor.fetchall()
        return [pickle.loads(row[0]) for row in rows]

    def find(self, predicate: Callable[[T], bool]) -> List[T]:
        return [item for item in self.list() if predicate(item)]


class SupplyChainDatabase:
    """Convenience facade bundling SQLite repositories for all aggregates.

    The connection runs in autocommit mode; ``transaction()`` wraps work in
    ``BEGIN IMMEDIATE`` so writers on the same file serialize as well.
    """

    def __init__(self, path: str) -> None:
        connection = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        connection.row_factory = sqlite3.Row
        self._connection = connection
        self.transactions = TransactionManager(
            on_begin=self._begin,
            on_commit=lambda: connection.execute("COMMIT"),
            on_rollback=self._rollback,
        )
        tx = self.transactions
        self.supply_chains = SQLiteRepository[SupplyChain](connection, "supply_chains", tx)
        self.ledger_items = SQLiteRepository[LedgerItem](connection, "ledger_items", tx)
        self.ledger_transactions = SQLiteRepository[LedgerTransaction](
            connection, "ledger_transactions", tx
        )
        self.ledger_meta = SQLiteRepository[Dict[str, object]](connection, "ledger_meta", tx)
        self.materials = SQLiteRepository[Material](connection, "materials", tx)
        self.products = SQLiteRepository[Product](connection, "products", tx)
        self.material_requests = SQLiteRepository[MaterialRequest](
            connection, "material_requests", tx
        )
        self.batches = SQLiteRepository[ProductionBatch](connection, "production_batches", tx)
        self.orders = SQLiteRepository[Order](connection, "orders", tx)
        self.transports = SQLiteRepository[Transport](connection, "transports", tx)
        self.recycling = SQLiteRepository[RecyclingRecord](connection, "recycling", tx)
        logger.info("database_opened", extra={"path": path})

    def _begin(self) -> None:
        try:
            self._connection.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as exc:
            raise ConcurrentModificationError(
                f"Could not acquire the database write lock: {exc}"
            ) from exc

    def _rollback(self) -> None:
        if self._connection.in_transaction:
            self._connection.execute("ROLLBACK")

    @property
    def connection(self) -> sqlite3.Connection:
        return self._connection

    def transaction(self):
        return self.transactions.transaction()

    def close(self) -> None:
        self._connection.close()

    def __enter__(self) -> "SupplyChainDatabase":
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[BaseException],
    ) -> None:
        self.close()


__all__ = ["SQLiteRepository", "SupplyChainDatabase"]
