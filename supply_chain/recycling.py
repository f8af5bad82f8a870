"""Returns of delivered product and their recovery into material."""

from __future__ import annotations

from typing import Any, List, Optional
from uuid import uuid4

from .catalog import Catalog
from .domain import ItemStatus, ItemType, RecyclingRecord, as_quantity
from .errors import InvalidArgumentError, InvalidTransitionError, NotFoundError
from .ledger import Ledger
from .logging_config import get_logger
from .repository import RecordNotFoundError

logger = get_logger("recycling")


class RecyclingService:
    def __init__(self, database: Any, ledger: Ledger, catalog: Catalog) -> None:
        self._db = database
        self._ledger = ledger
        self._catalog = catalog

    def get_return(self, record_id: str) -> RecyclingRecord:
        try:
            return self._db.recycling.get(record_id)
        except RecordNotFoundError as exc:
            raise NotFoundError(f"Return {record_id!r} not found", record_id=record_id) from exc

    def list_returns(
        self,
        *,
        customer_id: Optional[str] = None,
        manufacturer_id: Optional[str] = None,
        processed: Optional[bool] = None,
    ) -> List[RecyclingRecord]:
        records = self._db.recycling.find(
            lambda record: (customer_id is None or record.customer_id == customer_id)
            and (manufacturer_id is None or record.manufacturer_id == manufacturer_id)
            and (processed is None or record.processed == processed)
        )
        records.sort(key=lambda record: record.created_at)
        return records

    def return_product(
        self,
        customer_id: str,
        item_id: str,
        quantity: object,
        *,
        order_id: Optional[str] = None,
    ) -> RecyclingRecord:
        """Send part of a delivered product lot back to its manufacturer."""

        amount = as_quantity(quantity)
        with self._db.transaction():
            lot = self._ledger.get_item(item_id)
            if lot.owner_id != customer_id or lot.item_type != ItemType.PRODUCT:
                raise InvalidArgumentError(
                    f"Customer {customer_id!r} holds no product lot {item_id!r}", item_id=item_id
                )
            if lot.status != ItemStatus.COMPLETED:
                raise InvalidTransitionError(
                    "ledger item",
                    lot.id,
                    lot.status.value,
                    ItemType.RETURNED_PRODUCT.value,
                    message=f"Product lot {item_id!r} has not been delivered",
                )
            product = self._catalog.get_product(lot.reference_id)
            _, returned = self._ledger.transfer(
                lot.id,
                product.manufacturer_id,
                amount,
                status=ItemStatus.CREATED,
                item_type=ItemType.RETURNED_PRODUCT,
                metadata={"returned_by": customer_id},
                actor_id=customer_id,
            )
            record = RecyclingRecord(
                id=str(uuid4()),
                customer_id=customer_id,
                manufacturer_id=product.manufacturer_id,
                product_id=product.id,
                supply_chain_id=lot.supply_chain_id,
                quantity=amount,
                returned_item_id=returned.id,
                order_id=order_id or lot.metadata.get("order_id"),
            )
            self._db.recycling.add(record.id, record)
        logger.info(
            "product_returned",
            extra={"record_id": record.id, "item_id": item_id, "quantity": str(amount)},
        )
        return record

    def process_to_materials(
        self, record_id: str, *, actor_id: Optional[str] = None
    ) -> RecyclingRecord:
        """Break a returned lot down into recycled material per the bill of materials."""

        with self._db.transaction():
            record = self.get_return(record_id)
            if record.processed:
                return record
            product = self._catalog.get_product(record.product_id)
            actor = actor_id or record.manufacturer_id
            for line in product.required_materials:
                recovered = self._ledger.mint(
                    record.manufacturer_id,
                    ItemType.RECYCLED_MATERIAL,
                    line.quantity_per_unit * record.quantity,
                    record.supply_chain_id,
                    reference_id=line.material_id,
                    source_item_ids=[record.returned_item_id],
                    metadata={"recycling_id": record.id},
                    actor_id=actor,
                )
                record.recycled_item_ids.append(recovered.id)
            self._ledger.deactivate(record.returned_item_id, status=ItemStatus.COMPLETED, actor_id=actor)
            record.processed = True
            self._db.recycling.update(record.id, record)
        logger.info(
            "return_processed",
            extra={"record_id": record_id, "recycled_items": len(record.recycled_item_ids)},
        )
        return record


__all__ = ["RecyclingService"]
