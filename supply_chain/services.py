"""Service layer wiring the supply chain engines onto one store."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional

from .catalog import Catalog
from .config import Settings, get_settings
from .domain import (
    AssignedUser,
    ItemType,
    MaterialRequest,
    NodeRole,
    OrderStatus,
    SupplyChain,
    TraceEntry,
    TransportType,
)
from .graph import GraphRegistry
from .ledger import Ledger
from .logging_config import get_logger
from .orders import OrderEngine
from .production import ProductionEngine
from .recycling import RecyclingService
from .repository import InMemoryDatabase
from .requests import MaterialRequestEngine
from .transport import TransportCoordinator

logger = get_logger("services")


@dataclass(slots=True)
class MaterialShortage:
    """Material a manufacturer lacks to build the open part of an order."""

    material_id: str
    name: str
    supplier_id: str
    required_quantity: Decimal
    on_hand: Decimal
    shortage: Decimal


@dataclass(slots=True)
class InventoryPosition:
    """Active quantity a user holds for one material or product."""

    reference_id: Optional[str]
    item_type: ItemType
    quantity: Decimal
    lot_ids: List[str] = field(default_factory=list)


@dataclass(slots=True)
class ChainOverview:
    """Aggregate view of one supply chain."""

    chain: SupplyChain
    participants: List[AssignedUser]
    request_counts: Mapping[str, int]
    batch_counts: Mapping[str, int]
    order_counts: Mapping[str, int]
    transport_counts: Mapping[str, int]
    active_ledger_items: int
    ledger_verified: bool


def _count_by_status(records: List[Any]) -> Dict[str, int]:
    counts: Dict[str, int] = defaultdict(int)
    for record in records:
        counts[record.status.value] += 1
    return dict(counts)


class SupplyChainService:
    """Facade that exposes supply chain use-cases to clients."""

    def __init__(
        self,
        database: Optional[Any] = None,
        *,
        settings: Optional[Settings] = None,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.database = database if database is not None else InMemoryDatabase()
        self.ledger = Ledger(self.database, settings=self.settings)
        self.graph = GraphRegistry(self.database, settings=self.settings)
        self.catalog = Catalog(self.database, self.ledger, self.graph)
        self.requests = MaterialRequestEngine(self.database, self.ledger, self.graph, self.catalog)
        self.production = ProductionEngine(self.database, self.ledger, self.graph, self.catalog)
        self.transport = TransportCoordinator(
            self.database, self.graph, self.requests, today=today
        )
        self.orders = OrderEngine(
            self.database, self.ledger, self.graph, self.catalog, self.transport
        )
        self.recycling = RecyclingService(self.database, self.ledger, self.catalog)

    # ------------------------------------------------------------------
    # Overview
    # ------------------------------------------------------------------
    def chain_overview(self, chain_id: str) -> ChainOverview:
        with self.database.transaction():
            chain = self.graph.get_chain(chain_id)
            return ChainOverview(
                chain=chain,
                participants=self.graph.get_assigned_users(chain_id),
                request_counts=_count_by_status(
                    self.requests.list_requests(supply_chain_id=chain_id)
                ),
                batch_counts=_count_by_status(
                    self.production.list_batches(supply_chain_id=chain_id)
                ),
                order_counts=_count_by_status(self.orders.list_orders(supply_chain_id=chain_id)),
                transport_counts=_count_by_status(
                    self.transport.list_transports(supply_chain_id=chain_id)
                ),
                active_ledger_items=sum(
                    1 for item in self.ledger.get_items_by_supply_chain(chain_id) if item.is_active
                ),
                ledger_verified=self.ledger.verify_chain(),
            )

    def inventory_report(self, owner_id: str) -> List[InventoryPosition]:
        positions: Dict[tuple, InventoryPosition] = {}
        for item in self.ledger.get_items_by_owner(owner_id, active_only=True):
            key = (item.reference_id, item.item_type)
            position = positions.get(key)
            if position is None:
                position = positions[key] = InventoryPosition(
                    reference_id=item.reference_id,
                    item_type=item.item_type,
                    quantity=Decimal("0"),
                )
            position.quantity += item.quantity
            position.lot_ids.append(item.id)
        return list(positions.values())

    def trace(self, item_id: str) -> List[TraceEntry]:
        return self.ledger.trace_item_history(item_id)

    # ------------------------------------------------------------------
    # Material planning
    # ------------------------------------------------------------------
    def material_shortage_report(self, order_id: str) -> List[MaterialShortage]:
        """Material needed to build the part of an order not covered by stock."""

        with self.database.transaction():
            order = self.orders.get_order(order_id)
            to_build: Dict[str, Decimal] = defaultdict(Decimal)
            manufacturer_id = order.manufacturer_id
            for line in order.items:
                product = self.catalog.get_product(line.product_id)
                manufacturer_id = manufacturer_id or product.manufacturer_id
                to_build[product.id] += line.quantity
            required: Dict[str, Decimal] = defaultdict(Decimal)
            for product_id, quantity in to_build.items():
                missing = quantity - self.production.available_inventory(manufacturer_id, product_id)
                if missing <= 0:
                    continue
                for requirement in self.catalog.get_product(product_id).required_materials:
                    required[requirement.material_id] += requirement.quantity_per_unit * missing

            shortages: List[MaterialShortage] = []
            for material_id, quantity in required.items():
                material = self.catalog.get_material(material_id)
                on_hand = sum(
                    (lot.quantity for lot in self.production.usable_lots(manufacturer_id, material_id)),
                    Decimal("0"),
                )
                if on_hand >= quantity:
                    continue
                shortages.append(
                    MaterialShortage(
                        material_id=material_id,
                        name=material.name,
                        supplier_id=material.supplier_id,
                        required_quantity=quantity,
                        on_hand=on_hand,
                        shortage=quantity - on_hand,
                    )
                )
            return shortages

    def plan_material_requests(self, order_id: str) -> List[MaterialRequest]:
        """Start production for an order and request whatever material it lacks.

        One request is raised per supplier.
        """

        with self.database.transaction():
            order = self.orders.get_order(order_id)
            if order.status == OrderStatus.REQUESTED:
                order = self.orders.start_production(order_id)
            shortages = self.material_shortage_report(order_id)
            by_supplier: Dict[str, List[MaterialShortage]] = defaultdict(list)
            for shortage in shortages:
                by_supplier[shortage.supplier_id].append(shortage)
            created = [
                self.requests.create_request(
                    order.manufacturer_id,
                    supplier_id,
                    order.supply_chain_id,
                    [
                        {"material_id": shortage.material_id, "quantity": shortage.shortage}
                        for shortage in lines
                    ],
                    order_id=order.id,
                    notes=f"Material for order {order.order_number}",
                )
                for supplier_id, lines in by_supplier.items()
            ]
        logger.info(
            "material_requests_planned",
            extra={"order_id": order_id, "request_count": len(created)},
        )
        return created

    def close(self) -> None:
        self.database.close()


# ----------------------------------------------------------------------
# Demo data
# ----------------------------------------------------------------------
@dataclass(slots=True)
class DemoChain:
    chain_id: str
    supplier_node_id: str
    manufacturer_node_id: str
    material_id: str
    product_id: str


def build_demo_chain(service: SupplyChainService) -> DemoChain:
    """Finalized aluminium frame chain with opening stock and one product."""

    graph = service.graph
    chain = graph.create_chain("Aluminium Fahrradrahmen", created_by="admin")
    supplier = graph.add_node(chain.id, NodeRole.SUPPLIER, (0, 0), assigned_user_id="alu-werk")
    manufacturer = graph.add_node(
        chain.id, NodeRole.MANUFACTURER, (200, 0), assigned_user_id="rahmenbau"
    )
    distributor = graph.add_node(
        chain.id, NodeRole.DISTRIBUTOR, (400, 0), assigned_user_id="spedition-nord"
    )
    customer = graph.add_node(chain.id, NodeRole.CUSTOMER, (600, 0), assigned_user_id="radhaus")
    graph.add_edge(chain.id, supplier.id, manufacturer.id)
    graph.add_edge(chain.id, manufacturer.id, distributor.id)
    graph.add_edge(chain.id, distributor.id, customer.id)
    graph.finalize(chain.id)

    aluminium = service.catalog.create_material(
        "alu-werk", chain.id, "Aluminium 6061", "kg", quantity=Decimal("2000")
    )
    frame = service.catalog.create_product(
        "rahmenbau",
        chain.id,
        "Trekking-Rahmen",
        Decimal("189.00"),
        [{"material_id": aluminium.id, "quantity_per_unit": Decimal("2.5")}],
    )
    return DemoChain(
        chain_id=chain.id,
        supplier_node_id=supplier.id,
        manufacturer_node_id=manufacturer.id,
        material_id=aluminium.id,
        product_id=frame.id,
    )


def ensure_demo_data(service: SupplyChainService) -> None:
    """Seed one finalized chain with stock, a product and a shipped order."""

    if service.graph.list_chains():
        return

    demo = build_demo_chain(service)
    request = service.requests.create_request(
        "rahmenbau", "alu-werk", demo.chain_id, [{"material_id": demo.material_id, "quantity": 500}]
    )
    service.requests.approve(request.id, {request.items[0].id: 500})
    request = service.requests.allocate(request.id)
    today = service.transport.today()
    material_transport = service.transport.schedule(
        TransportType.MATERIAL_TRANSPORT,
        demo.supplier_node_id,
        demo.manufacturer_node_id,
        request.id,
        today,
        today + timedelta(days=2),
    )
    service.transport.record_pickup(material_transport.id)
    service.transport.record_delivery(material_transport.id)
    request = service.requests.get_request(request.id)

    batch = service.production.create_batch(
        "rahmenbau",
        demo.product_id,
        demo.chain_id,
        40,
        [request.items[0].delivered_item_id],
    )
    service.production.complete(batch.id, "Schweißnähte geprüft, Maßhaltigkeit i.O.")

    order = service.orders.create_order(
        "radhaus",
        [{"product_id": demo.product_id, "quantity": 10}],
        "Hafenstraße 4, 20457 Hamburg",
        today + timedelta(days=10),
    )
    service.orders.fulfill_from_stock(order.id, scheduled_delivery_date=today + timedelta(days=5))
    logger.info("demo_data_seeded", extra={"chain_id": demo.chain_id})


__all__ = [
    "DemoChain",
    "build_demo_chain",
    "ensure_demo_data",
    "SupplyChainService",
    "MaterialShortage",
    "InventoryPosition",
    "ChainOverview",
]
