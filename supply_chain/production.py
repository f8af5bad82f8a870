"""Production batches: material consumption, quality control and output."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from uuid import uuid4

from .catalog import Catalog
from .domain import (
    BATCH_TRANSITIONS,
    MATERIAL_ITEM_TYPES,
    BatchMaterial,
    BatchStatus,
    ItemStatus,
    ItemType,
    LedgerItem,
    NodeRole,
    Product,
    ProductionBatch,
    StatusChange,
    as_quantity,
    check_version,
    parse_status,
)
from .errors import (
    InsufficientQuantityError,
    InvalidArgumentError,
    InvalidTransitionError,
    ItemInactiveError,
    NotFoundError,
)
from .graph import GraphRegistry
from .ledger import Ledger
from .logging_config import get_logger
from .repository import RecordNotFoundError

logger = get_logger("production")


class ProductionEngine:
    """Turns material lots into finished product lots."""

    def __init__(
        self, database: Any, ledger: Ledger, graph: GraphRegistry, catalog: Catalog
    ) -> None:
        self._db = database
        self._ledger = ledger
        self._graph = graph
        self._catalog = catalog

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_batch(self, batch_id: str) -> ProductionBatch:
        try:
            return self._db.batches.get(batch_id)
        except RecordNotFoundError as exc:
            raise NotFoundError(f"Production batch {batch_id!r} not found", batch_id=batch_id) from exc

    def list_batches(
        self,
        *,
        manufacturer_id: Optional[str] = None,
        supply_chain_id: Optional[str] = None,
        status: Optional[BatchStatus | str] = None,
    ) -> List[ProductionBatch]:
        wanted = parse_status(BatchStatus, status) if status is not None else None
        batches = self._db.batches.find(
            lambda batch: (manufacturer_id is None or batch.manufacturer_id == manufacturer_id)
            and (supply_chain_id is None or batch.supply_chain_id == supply_chain_id)
            and (wanted is None or batch.status == wanted)
        )
        batches.sort(key=lambda batch: batch.created_at)
        return batches

    def usable_lots(self, manufacturer_id: str, material_id: Optional[str] = None) -> List[LedgerItem]:
        """Active material lots the manufacturer may feed into a batch."""

        return self._ledger.find_items(
            lambda item: item.is_active
            and item.item_type in MATERIAL_ITEM_TYPES
            and self._usable_by(item, manufacturer_id)
            and (material_id is None or item.reference_id == material_id)
        )

    def available_inventory(self, manufacturer_id: str, product_id: str) -> Decimal:
        """Finished product quantity the manufacturer still holds."""

        return sum(
            (
                lot.quantity
                for lot in self._ledger.find_items(
                    lambda item: item.is_active
                    and item.item_type == ItemType.PRODUCT
                    and item.owner_id == manufacturer_id
                    and item.reference_id == product_id
                )
            ),
            Decimal("0"),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def create_batch(
        self,
        manufacturer_id: str,
        product_id: str,
        supply_chain_id: str,
        quantity: object,
        materials: Iterable[Any],
        *,
        related_order_id: Optional[str] = None,
    ) -> ProductionBatch:
        """Plan a batch and move its material into processing.

        Every lot and every bill-of-materials requirement is checked before
        the first ledger write.
        """

        amount = as_quantity(quantity)
        if amount <= 0:
            raise InvalidArgumentError("Batch quantity must be positive", quantity=str(amount))
        with self._db.transaction():
            chain = self._graph.require_operational(supply_chain_id)
            self._graph.node_for_user(chain, manufacturer_id, NodeRole.MANUFACTURER)
            product = self._catalog.get_product(product_id)
            if product.manufacturer_id != manufacturer_id or product.supply_chain_id != chain.id:
                raise InvalidArgumentError(
                    f"Product {product_id!r} is not made by {manufacturer_id!r} in this chain",
                    product_id=product_id,
                )
            if not product.is_active:
                raise InvalidArgumentError(f"Product {product_id!r} is inactive")
            if related_order_id is not None and related_order_id not in self._db.orders:
                raise NotFoundError(f"Order {related_order_id!r} not found", order_id=related_order_id)

            lots = self._batch_lots(materials, manufacturer_id)
            lines = self._plan_consumption(product, amount, lots)

            batch = ProductionBatch(
                id=str(uuid4()),
                batch_number=f"BATCH-{uuid4().hex[:8].upper()}",
                manufacturer_id=manufacturer_id,
                product_id=product_id,
                supply_chain_id=chain.id,
                quantity=amount,
                materials=lines,
                related_order_id=related_order_id,
            )
            batch.history.append(StatusChange(status=batch.status.value, actor_id=manufacturer_id))
            for line in lines:
                _, processing = self._ledger.transfer(
                    line.blockchain_item_id,
                    manufacturer_id,
                    line.quantity,
                    status=ItemStatus.PROCESSING,
                    metadata={"batch_id": batch.id},
                    actor_id=manufacturer_id,
                )
                line.consumed_item_id = processing.id
            self._transition(batch, BatchStatus.IN_PRODUCTION, manufacturer_id)
            self._db.batches.add(batch.id, batch)
        logger.info(
            "batch_created",
            extra={"batch_id": batch.id, "product_id": product_id, "quantity": str(amount)},
        )
        return batch

    def start_quality_check(
        self,
        batch_id: str,
        *,
        actor_id: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> ProductionBatch:
        with self._db.transaction():
            batch = self.get_batch(batch_id)
            check_version(batch, expected_version, label="Production batch")
            if batch.status == BatchStatus.IN_QC:
                return batch
            self._transition(batch, BatchStatus.IN_QC, actor_id or batch.manufacturer_id)
            return self._db.batches.update(batch.id, batch)

    def complete(
        self,
        batch_id: str,
        quality_notes: str,
        *,
        actor_id: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> ProductionBatch:
        """Close a batch and mint its output as a product lot."""

        if not quality_notes or not quality_notes.strip():
            raise InvalidArgumentError("Completing a batch needs quality notes")
        with self._db.transaction():
            batch = self.get_batch(batch_id)
            check_version(batch, expected_version, label="Production batch")
            if batch.status == BatchStatus.COMPLETED:
                return batch
            actor = actor_id or batch.manufacturer_id
            self._transition(batch, BatchStatus.COMPLETED, actor, note=quality_notes.strip())
            consumed_ids = [line.consumed_item_id for line in batch.materials if line.consumed_item_id]
            for item_id in consumed_ids:
                self._ledger.deactivate(item_id, status=ItemStatus.COMPLETED, actor_id=actor)
            product_item = self._ledger.mint(
                batch.manufacturer_id,
                ItemType.PRODUCT,
                batch.quantity,
                batch.supply_chain_id,
                reference_id=batch.product_id,
                source_item_ids=consumed_ids,
                metadata={"batch_id": batch.id},
                actor_id=actor,
            )
            batch.quality_notes = quality_notes.strip()
            batch.product_item_id = product_item.id
            self._db.batches.update(batch.id, batch)
        logger.info(
            "batch_completed",
            extra={"batch_id": batch_id, "product_item_id": product_item.id},
        )
        return batch

    def reject(
        self,
        batch_id: str,
        reason: str,
        *,
        actor_id: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> ProductionBatch:
        """Fail a batch. Material already in processing is written off."""

        if not reason or not reason.strip():
            raise InvalidArgumentError("Rejecting a batch needs a reason")
        with self._db.transaction():
            batch = self.get_batch(batch_id)
            check_version(batch, expected_version, label="Production batch")
            if batch.status == BatchStatus.REJECTED:
                return batch
            actor = actor_id or batch.manufacturer_id
            self._transition(batch, BatchStatus.REJECTED, actor, note=reason.strip())
            for line in batch.materials:
                if line.consumed_item_id:
                    self._ledger.deactivate(
                        line.consumed_item_id, status=ItemStatus.REJECTED, actor_id=actor
                    )
            batch.rejection_reason = reason.strip()
            return self._db.batches.update(batch.id, batch)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @staticmethod
    def _usable_by(item: LedgerItem, manufacturer_id: str) -> bool:
        # Allocated lots count only once delivery has moved them to the manufacturer.
        return item.owner_id == manufacturer_id

    def _batch_lots(
        self, materials: Iterable[Any], manufacturer_id: str
    ) -> List[Tuple[LedgerItem, Decimal]]:
        """Resolve the offered lots, oldest first, each with the most it may give.

        An entry is a lot id, a ``(lot_id, quantity)`` pair or a mapping with
        ``blockchain_item_id`` and an optional ``quantity`` cap.
        """

        lots: Dict[str, LedgerItem] = {}
        caps: Dict[str, Decimal] = {}
        for entry in materials:
            quantity = None
            material_id = None
            if isinstance(entry, str):
                item_id = entry
            elif isinstance(entry, Mapping):
                item_id = entry.get("blockchain_item_id") or entry.get("item_id")
                quantity = entry.get("quantity")
                material_id = entry.get("material_id")
            else:
                item_id, quantity = entry[0], entry[1]
            if not item_id:
                raise InvalidArgumentError("Batch materials need a lot id")
            lot = lots.get(item_id) or self._ledger.get_item(item_id)
            if not lot.is_active:
                raise ItemInactiveError(f"Lot {item_id!r} is inactive", item_id=item_id)
            if lot.item_type not in MATERIAL_ITEM_TYPES:
                raise InvalidArgumentError(f"Lot {item_id!r} is not material", item_id=item_id)
            if not self._usable_by(lot, manufacturer_id):
                raise InvalidArgumentError(
                    f"Lot {item_id!r} is not available to {manufacturer_id!r}", item_id=item_id
                )
            if material_id is not None and material_id != lot.reference_id:
                raise InvalidArgumentError(
                    f"Lot {item_id!r} holds material {lot.reference_id!r}, not {material_id!r}",
                    item_id=item_id,
                )
            cap = lot.quantity if quantity is None else as_quantity(quantity)
            if cap <= 0:
                raise InvalidArgumentError(
                    "Batch material quantities must be positive", item_id=item_id
                )
            lots[item_id] = lot
            caps[item_id] = caps.get(item_id, Decimal("0")) + cap
            if caps[item_id] > lot.quantity:
                raise InsufficientQuantityError(
                    f"Lot {item_id!r} holds {lot.quantity}, cannot draw {caps[item_id]}",
                    item_id=item_id,
                    available=str(lot.quantity),
                    requested=str(caps[item_id]),
                )
        if not lots:
            raise InvalidArgumentError("A batch needs at least one material lot")
        ordered = sorted(lots.values(), key=lambda lot: lot.sequence)
        return [(lot, caps[lot.id]) for lot in ordered]

    @staticmethod
    def _plan_consumption(
        product: Product, amount: Decimal, lots: List[Tuple[LedgerItem, Decimal]]
    ) -> List[BatchMaterial]:
        """Draw exactly the bill-of-materials need for ``amount`` units."""

        required: Dict[str, Decimal] = {}
        for requirement in product.required_materials:
            required[requirement.material_id] = (
                required.get(requirement.material_id, Decimal("0"))
                + requirement.quantity_per_unit * amount
            )
        for lot, _ in lots:
            if lot.reference_id not in required:
                raise InvalidArgumentError(
                    f"Lot {lot.id!r} holds material {lot.reference_id!r}, "
                    f"which product {product.id!r} does not use",
                    item_id=lot.id,
                )

        lines: List[BatchMaterial] = []
        for material_id, needed in required.items():
            offered = [(lot, cap) for lot, cap in lots if lot.reference_id == material_id]
            provided = sum((cap for _, cap in offered), Decimal("0"))
            if provided < needed:
                raise InsufficientQuantityError(
                    f"Batch needs {needed} of material {material_id!r}, got {provided}",
                    material_id=material_id,
                    required=str(needed),
                    provided=str(provided),
                )
            remaining = needed
            for lot, cap in offered:
                if remaining <= 0:
                    break
                draw = min(cap, remaining)
                lines.append(
                    BatchMaterial(material_id=material_id, blockchain_item_id=lot.id, quantity=draw)
                )
                remaining -= draw
        return lines

    def _transition(
        self,
        batch: ProductionBatch,
        target: BatchStatus,
        actor_id: Optional[str],
        *,
        note: str = "",
    ) -> None:
        if target not in BATCH_TRANSITIONS[batch.status]:
            raise InvalidTransitionError(
                "production batch", batch.id, batch.status.value, target.value
            )
        previous = batch.status
        batch.status = target
        batch.history.append(StatusChange(status=target.value, actor_id=actor_id, note=note))
        logger.info(
            "batch_transition",
            extra={"batch_id": batch.id, "from_status": previous.value, "to_status": target.value},
        )


__all__ = ["ProductionEngine"]
