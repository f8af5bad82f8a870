"""Supplier materials and manufacturer products."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Iterable, List, Mapping, Optional
from uuid import uuid4

from .domain import (
    BillOfMaterialsLine,
    ItemType,
    LedgerItem,
    Material,
    NodeRole,
    Product,
    as_quantity,
    check_version,
)
from .errors import InvalidArgumentError, NotFoundError
from .graph import GraphRegistry
from .ledger import Ledger
from .logging_config import get_logger
from .repository import RecordNotFoundError

logger = get_logger("catalog")


def _bom_lines(required_materials: Iterable[Any]) -> List[BillOfMaterialsLine]:
    lines: List[BillOfMaterialsLine] = []
    for entry in required_materials:
        if isinstance(entry, BillOfMaterialsLine):
            material_id, per_unit = entry.material_id, entry.quantity_per_unit
        elif isinstance(entry, Mapping):
            material_id, per_unit = entry.get("material_id"), entry.get("quantity_per_unit")
        else:
            material_id, per_unit = entry
        amount = as_quantity(per_unit, field_name="quantity_per_unit")
        if not material_id or amount <= 0:
            raise InvalidArgumentError(
                "Bill of materials lines need a material and a positive quantity per unit",
                material_id=material_id,
            )
        if any(line.material_id == material_id for line in lines):
            raise InvalidArgumentError(
                f"Material {material_id!r} appears twice in the bill of materials"
            )
        lines.append(BillOfMaterialsLine(material_id=material_id, quantity_per_unit=amount))
    return lines


class Catalog:
    """Master data for materials and products, scoped to a supply chain."""

    def __init__(self, database: Any, ledger: Ledger, graph: GraphRegistry) -> None:
        self._db = database
        self._ledger = ledger
        self._graph = graph

    # ------------------------------------------------------------------
    # Materials
    # ------------------------------------------------------------------
    def create_material(
        self,
        supplier_id: str,
        supply_chain_id: str,
        name: str,
        unit: str,
        *,
        description: str = "",
        quantity: object = None,
    ) -> Material:
        """Register a supplier material, minting opening stock when given."""

        if not name.strip() or not unit.strip():
            raise InvalidArgumentError("Materials need a name and a unit")
        opening = as_quantity(quantity) if quantity is not None else Decimal("0")
        if opening < 0:
            raise InvalidArgumentError("Opening stock cannot be negative")
        with self._db.transaction():
            chain = self._graph.require_operational(supply_chain_id)
            self._graph.node_for_user(chain, supplier_id, NodeRole.SUPPLIER)
            material = Material(
                id=str(uuid4()),
                supplier_id=supplier_id,
                supply_chain_id=supply_chain_id,
                name=name.strip(),
                unit=unit.strip(),
                description=description,
            )
            if opening > 0:
                lot = self._ledger.mint(
                    supplier_id,
                    ItemType.RAW_MATERIAL,
                    opening,
                    supply_chain_id,
                    reference_id=material.id,
                )
                material.ledger_item_id = lot.id
            self._db.materials.add(material.id, material)
        logger.info(
            "material_created",
            extra={"material_id": material.id, "supplier_id": supplier_id, "opening": str(opening)},
        )
        return material

    def add_stock(self, material_id: str, quantity: object) -> LedgerItem:
        """Mint a further raw-material lot for the material's supplier."""

        with self._db.transaction():
            material = self.get_material(material_id)
            if not material.is_active:
                raise InvalidArgumentError(f"Material {material_id!r} is inactive")
            return self._ledger.mint(
                material.supplier_id,
                ItemType.RAW_MATERIAL,
                quantity,
                material.supply_chain_id,
                reference_id=material.id,
            )

    def get_material(self, material_id: str) -> Material:
        try:
            return self._db.materials.get(material_id)
        except RecordNotFoundError as exc:
            raise NotFoundError(
                f"Material {material_id!r} not found", material_id=material_id
            ) from exc

    def list_materials(
        self,
        *,
        supplier_id: Optional[str] = None,
        supply_chain_id: Optional[str] = None,
        active_only: bool = False,
    ) -> List[Material]:
        return self._db.materials.find(
            lambda material: (supplier_id is None or material.supplier_id == supplier_id)
            and (supply_chain_id is None or material.supply_chain_id == supply_chain_id)
            and (material.is_active or not active_only)
        )

    def material_lots(self, material_id: str, owner_id: Optional[str] = None) -> List[LedgerItem]:
        """Active raw-material lots of a material, oldest first."""

        material = self.get_material(material_id)
        owner = owner_id or material.supplier_id
        return self._ledger.find_items(
            lambda item: item.is_active
            and item.reference_id == material_id
            and item.owner_id == owner
            and item.item_type in (ItemType.RAW_MATERIAL, ItemType.RECYCLED_MATERIAL)
        )

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------
    def create_product(
        self,
        manufacturer_id: str,
        supply_chain_id: str,
        name: str,
        price: object,
        required_materials: Iterable[Any] = (),
        *,
        description: str = "",
    ) -> Product:
        amount = as_quantity(price, field_name="price")
        if amount < 0:
            raise InvalidArgumentError("Price cannot be negative")
        if not name.strip():
            raise InvalidArgumentError("Products need a name")
        lines = _bom_lines(required_materials)
        with self._db.transaction():
            chain = self._graph.require_operational(supply_chain_id)
            self._graph.node_for_user(chain, manufacturer_id, NodeRole.MANUFACTURER)
            self._check_bom(lines, supply_chain_id)
            product = Product(
                id=str(uuid4()),
                manufacturer_id=manufacturer_id,
                supply_chain_id=supply_chain_id,
                name=name.strip(),
                price=amount,
                required_materials=lines,
                description=description,
            )
            self._db.products.add(product.id, product)
        logger.info(
            "product_created",
            extra={"product_id": product.id, "manufacturer_id": manufacturer_id},
        )
        return product

    def update_product(
        self,
        product_id: str,
        *,
        name: Optional[str] = None,
        price: object = None,
        description: Optional[str] = None,
        required_materials: Optional[Iterable[Any]] = None,
        expected_version: Optional[int] = None,
    ) -> Product:
        with self._db.transaction():
            product = self.get_product(product_id)
            check_version(product, expected_version, label="Product")
            if name is not None:
                if not name.strip():
                    raise InvalidArgumentError("Products need a name")
                product.name = name.strip()
            if price is not None:
                amount = as_quantity(price, field_name="price")
                if amount < 0:
                    raise InvalidArgumentError("Price cannot be negative")
                product.price = amount
            if description is not None:
                product.description = description
            if required_materials is not None:
                lines = _bom_lines(required_materials)
                self._check_bom(lines, product.supply_chain_id)
                product.required_materials = lines
            return self._db.products.update(product.id, product)

    def deactivate_product(self, product_id: str) -> Product:
        with self._db.transaction():
            product = self.get_product(product_id)
            if not product.is_active:
                return product
            product.is_active = False
            self._db.products.update(product.id, product)
        logger.info("product_deactivated", extra={"product_id": product_id})
        return product

    def get_product(self, product_id: str) -> Product:
        try:
            return self._db.products.get(product_id)
        except RecordNotFoundError as exc:
            raise NotFoundError(
                f"Product {product_id!r} not found", product_id=product_id
            ) from exc

    def list_products(
        self,
        *,
        manufacturer_id: Optional[str] = None,
        supply_chain_id: Optional[str] = None,
        active_only: bool = False,
    ) -> List[Product]:
        return self._db.products.find(
            lambda product: (manufacturer_id is None or product.manufacturer_id == manufacturer_id)
            and (supply_chain_id is None or product.supply_chain_id == supply_chain_id)
            and (product.is_active or not active_only)
        )

    def _check_bom(self, lines: Iterable[BillOfMaterialsLine], supply_chain_id: str) -> None:
        for line in lines:
            material = self.get_material(line.material_id)
            if material.supply_chain_id != supply_chain_id:
                raise InvalidArgumentError(
                    f"Material {line.material_id!r} belongs to another supply chain",
                    material_id=line.material_id,
                )


__all__ = ["Catalog"]
