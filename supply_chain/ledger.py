"""Append-only ledger of quantity-bearing items.

Items are never deleted. A transfer always splits: the source keeps the
remainder (and goes inactive at zero) while a child item, linked through
``parent_item_id``, carries the transferred quantity. When ledger tracking is
enabled each mutation is also written as a hash-chained
:class:`LedgerTransaction`.
"""

from __future__ import annotations

from collections import deque
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from uuid import uuid4

from . import config
from .config import Settings
from .domain import (
    ItemStatus,
    ItemType,
    LedgerItem,
    LedgerTransaction,
    TraceEntry,
    as_quantity,
    check_version,
    parse_status,
    utcnow,
)
from .errors import (
    InsufficientQuantityError,
    InvalidArgumentError,
    ItemInactiveError,
    NotFoundError,
)
from .hashing import hash_payload, hash_transaction
from .logging_config import get_logger
from .repository import RecordNotFoundError

logger = get_logger("ledger")

_HEAD_KEY = "head"


class Ledger:
    """Owns every mutation of :class:`LedgerItem` rows."""

    def __init__(self, database: Any, *, settings: Optional[Settings] = None) -> None:
        self._db = database
        self._settings = settings

    # ------------------------------------------------------------------
    # Capability
    # ------------------------------------------------------------------
    def tracking_enabled(self) -> bool:
        if self._settings is not None:
            return self._settings.ledger_tracking_enabled
        return config.ledger_tracking_enabled()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_item(self, item_id: str) -> LedgerItem:
        try:
            return self._db.ledger_items.get(item_id)
        except RecordNotFoundError as exc:
            raise NotFoundError(f"Ledger item {item_id!r} not found", item_id=item_id) from exc

    def get_items_by_owner(
        self, owner_id: str, *, active_only: bool = False
    ) -> List[LedgerItem]:
        return self.find_items(
            lambda item: item.owner_id == owner_id and (item.is_active or not active_only)
        )

    def get_items_by_supply_chain(self, supply_chain_id: str) -> List[LedgerItem]:
        return self.find_items(lambda item: item.supply_chain_id == supply_chain_id)

    def find_items(self, predicate: Callable[[LedgerItem], bool]) -> List[LedgerItem]:
        items = self._db.ledger_items.find(predicate)
        items.sort(key=lambda item: item.sequence)
        return items

    def get_transaction(self, tx_hash: str) -> LedgerTransaction:
        try:
            return self._db.ledger_transactions.get(tx_hash)
        except RecordNotFoundError as exc:
            raise NotFoundError(
                f"Ledger transaction {tx_hash!r} not found", tx_hash=tx_hash
            ) from exc

    def transactions_for(self, item: LedgerItem) -> List[LedgerTransaction]:
        return [self.get_transaction(tx_hash) for tx_hash in item.transaction_hashes]

    def trace_item_history(self, item_id: str) -> List[TraceEntry]:
        """Return the item and all of its ancestors, oldest mint first."""

        with self._db.transaction():
            root = self.get_item(item_id)
            seen: Dict[str, LedgerItem] = {root.id: root}
            queue = deque([root])
            while queue:
                current = queue.popleft()
                ancestors = list(current.source_item_ids)
                if current.parent_item_id:
                    ancestors.insert(0, current.parent_item_id)
                for ancestor_id in ancestors:
                    if ancestor_id in seen:
                        continue
                    ancestor = self.get_item(ancestor_id)
                    seen[ancestor_id] = ancestor
                    queue.append(ancestor)
            ordered = sorted(seen.values(), key=lambda item: item.sequence)
            return [TraceEntry(item=item, transactions=self.transactions_for(item)) for item in ordered]

    def verify_chain(self) -> bool:
        """Recompute every transaction hash and check the links between them."""

        transactions = sorted(self._db.ledger_transactions.list(), key=lambda tx: tx.sequence)
        previous: Optional[str] = None
        for expected_sequence, tx in enumerate(transactions, start=1):
            if tx.sequence != expected_sequence or tx.previous_hash != previous:
                return False
            recomputed = hash_transaction(
                tx.sequence, tx.action, hash_payload(tx.payload), tx.previous_hash
            )
            if recomputed != tx.tx_hash:
                return False
            previous = tx.tx_hash
        return True

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def mint(
        self,
        owner_id: str,
        item_type: ItemType | str,
        quantity: object,
        supply_chain_id: str,
        parent_item_id: Optional[str] = None,
        *,
        reference_id: Optional[str] = None,
        status: ItemStatus = ItemStatus.CREATED,
        source_item_ids: Sequence[str] = (),
        metadata: Optional[Mapping[str, str]] = None,
        actor_id: Optional[str] = None,
    ) -> LedgerItem:
        item_type = parse_status(ItemType, item_type)
        amount = as_quantity(quantity)
        if amount <= 0:
            raise InvalidArgumentError("Minted quantity must be positive", quantity=str(amount))
        if not owner_id:
            raise InvalidArgumentError("A ledger item needs an owner")
        with self._db.transaction():
            for linked_id in (parent_item_id, *source_item_ids):
                if linked_id:
                    self.get_item(linked_id)
            item = LedgerItem(
                id=str(uuid4()),
                item_type=item_type,
                owner_id=owner_id,
                quantity=amount,
                supply_chain_id=supply_chain_id,
                status=status,
                parent_item_id=parent_item_id,
                reference_id=reference_id,
                source_item_ids=tuple(dict.fromkeys(source_item_ids)),
                metadata=dict(metadata or {}),
                sequence=self._next_item_sequence(),
            )
            tx_hash = self._record(
                "mint",
                [item],
                actor_id or owner_id,
                amount,
                {
                    "owner_id": owner_id,
                    "item_type": item_type,
                    "supply_chain_id": supply_chain_id,
                    "parent_item_id": parent_item_id,
                    "reference_id": reference_id,
                    "source_item_ids": list(item.source_item_ids),
                    "status": status,
                },
            )
            self._db.ledger_items.add(item.id, item)
        logger.info(
            "ledger_mint",
            extra={
                "item_id": item.id,
                "item_type": item_type.value,
                "owner_id": owner_id,
                "quantity": str(amount),
                "tx_hash": tx_hash,
            },
        )
        return item

    def transfer(
        self,
        item_id: str,
        new_owner_id: str,
        quantity: object,
        *,
        status: Optional[ItemStatus] = None,
        item_type: Optional[ItemType] = None,
        metadata: Optional[Mapping[str, str]] = None,
        actor_id: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Tuple[LedgerItem, LedgerItem]:
        """Split ``quantity`` off ``item_id`` into a new item owned by ``new_owner_id``.

        Returns ``(remainder, transferred)``; ``remainder`` is the updated
        source item and ``remainder.quantity + transferred.quantity`` equals
        the source quantity before the call.
        """

        amount = as_quantity(quantity)
        if amount <= 0:
            raise InvalidArgumentError("Transferred quantity must be positive", quantity=str(amount))
        if not new_owner_id:
            raise InvalidArgumentError("A transfer needs a new owner")
        with self._db.transaction():
            source = self.get_item(item_id)
            check_version(source, expected_version, label="Ledger item")
            if not source.is_active:
                raise ItemInactiveError(
                    f"Ledger item {item_id!r} is inactive and cannot be transferred",
                    item_id=item_id,
                )
            if amount > source.quantity:
                raise InsufficientQuantityError(
                    f"Ledger item {item_id!r} holds {source.quantity}, cannot transfer {amount}",
                    item_id=item_id,
                    available=str(source.quantity),
                    requested=str(amount),
                )
            child_metadata = dict(source.metadata)
            child_metadata.update(metadata or {})
            child = LedgerItem(
                id=str(uuid4()),
                item_type=item_type or source.item_type,
                owner_id=new_owner_id,
                quantity=amount,
                supply_chain_id=source.supply_chain_id,
                status=status or source.status,
                parent_item_id=source.id,
                reference_id=source.reference_id,
                metadata=child_metadata,
                sequence=self._next_item_sequence(),
            )
            previous_owner = source.owner_id
            source.quantity -= amount
            if source.quantity == 0:
                source.is_active = False
            tx_hash = self._record(
                "transfer",
                [source, child],
                actor_id or previous_owner,
                amount,
                {
                    "source_item_id": source.id,
                    "child_item_id": child.id,
                    "from_owner_id": previous_owner,
                    "to_owner_id": new_owner_id,
                    "remainder": source.quantity,
                    "status": child.status,
                    "item_type": child.item_type,
                },
            )
            self._db.ledger_items.update(source.id, source)
            self._db.ledger_items.add(child.id, child)
        logger.info(
            "ledger_transfer",
            extra={
                "item_id": source.id,
                "child_item_id": child.id,
                "to_owner_id": new_owner_id,
                "quantity": str(amount),
                "remainder": str(source.quantity),
                "tx_hash": tx_hash,
            },
        )
        return source, child

    def update_status(
        self,
        item_id: str,
        status: ItemStatus | str,
        *,
        actor_id: Optional[str] = None,
    ) -> LedgerItem:
        """Move an item to ``status``; replaying the same status is a no-op."""

        status = parse_status(ItemStatus, status)
        with self._db.transaction():
            item = self.get_item(item_id)
            if item.status == status:
                return item
            previous = item.status
            item.status = status
            self._record(
                "status",
                [item],
                actor_id or item.owner_id,
                None,
                {"item_id": item.id, "from_status": previous, "to_status": status},
            )
            self._db.ledger_items.update(item.id, item)
        logger.info(
            "ledger_status",
            extra={"item_id": item_id, "from_status": previous.value, "to_status": status.value},
        )
        return item

    def deactivate(
        self,
        item_id: str,
        *,
        status: Optional[ItemStatus] = None,
        actor_id: Optional[str] = None,
    ) -> LedgerItem:
        """Retire an item so it can no longer be a transfer source."""

        with self._db.transaction():
            item = self.get_item(item_id)
            if not item.is_active and (status is None or item.status == status):
                return item
            item.is_active = False
            if status is not None:
                item.status = status
            self._record(
                "deactivate",
                [item],
                actor_id or item.owner_id,
                item.quantity,
                {"item_id": item.id, "status": item.status},
            )
            self._db.ledger_items.update(item.id, item)
        logger.info("ledger_deactivate", extra={"item_id": item_id, "status": item.status.value})
        return item

    def consume(
        self,
        item_ids: Iterable[str],
        new_owner_id: str,
        quantity: object,
        *,
        status: Optional[ItemStatus] = None,
        item_type: Optional[ItemType] = None,
        metadata: Optional[Mapping[str, str]] = None,
        actor_id: Optional[str] = None,
    ) -> List[LedgerItem]:
        """Transfer ``quantity`` drawn from several lots, oldest first.

        Fails with ``InsufficientQuantity`` before any write when the active
        lots do not cover the quantity.
        """

        remaining = as_quantity(quantity)
        with self._db.transaction():
            lots = sorted(
                (item for item in (self.get_item(item_id) for item_id in item_ids) if item.is_active),
                key=lambda item: item.sequence,
            )
            available = sum((lot.quantity for lot in lots), Decimal("0"))
            if available < remaining:
                raise InsufficientQuantityError(
                    f"Lots hold {available}, cannot draw {remaining}",
                    available=str(available),
                    requested=str(remaining),
                )
            moved: List[LedgerItem] = []
            for lot in lots:
                if remaining <= 0:
                    break
                take = min(lot.quantity, remaining)
                _, child = self.transfer(
                    lot.id,
                    new_owner_id,
                    take,
                    status=status,
                    item_type=item_type,
                    metadata=metadata,
                    actor_id=actor_id,
                )
                moved.append(child)
                remaining -= take
            return moved

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _head(self) -> Dict[str, Any]:
        try:
            return dict(self._db.ledger_meta.get(_HEAD_KEY))
        except RecordNotFoundError:
            return {"sequence": 0, "hash": None, "item_sequence": 0}

    def _next_item_sequence(self) -> int:
        head = self._head()
        head["item_sequence"] = int(head.get("item_sequence", 0)) + 1
        self._db.ledger_meta.upsert(_HEAD_KEY, head)
        return head["item_sequence"]

    def _record(
        self,
        action: str,
        items: Sequence[LedgerItem],
        actor_id: Optional[str],
        quantity: Optional[Decimal],
        payload: Dict[str, Any],
    ) -> Optional[str]:
        """Append one hash-chained transaction and link it to ``items``."""

        if not self.tracking_enabled():
            return None
        head = self._head()
        sequence = int(head["sequence"]) + 1
        previous_hash = head["hash"]
        body = dict(payload)
        body.update(
            {
                "action": action,
                "actor_id": actor_id,
                "quantity": quantity,
                "item_ids": [item.id for item in items],
            }
        )
        tx_hash = hash_transaction(sequence, action, hash_payload(body), previous_hash)
        transaction = LedgerTransaction(
            tx_hash=tx_hash,
            sequence=sequence,
            action=action,
            item_ids=tuple(item.id for item in items),
            actor_id=actor_id,
            quantity=quantity,
            payload=body,
            previous_hash=previous_hash,
            recorded_at=utcnow(),
        )
        self._db.ledger_transactions.add(tx_hash, transaction)
        head.update({"sequence": sequence, "hash": tx_hash})
        self._db.ledger_meta.upsert(_HEAD_KEY, head)
        for item in items:
            item.transaction_hashes.append(tx_hash)
        return tx_hash


__all__ = ["Ledger"]
