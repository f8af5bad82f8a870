"""
Pytest fixtures for the supply chain core test suite.

Provides:
- In-memory and SQLite backed services with a fixed "today"
- A finalized supplier -> manufacturer -> distributor -> customer chain
- Factories that push material and product through the lifecycle
"""

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Callable, Tuple

import pytest

from supply_chain.config import Settings, reset_settings
from supply_chain.domain import MaterialRequest, NodeRole, ProductionBatch, TransportType
from supply_chain.logging_config import reset_logging
from supply_chain.repository import InMemoryDatabase
from supply_chain.services import SupplyChainService
from supply_chain.storage import SupplyChainDatabase

TODAY = date(2026, 3, 2)

SUPPLIER = "supplier-1"
MANUFACTURER = "maker-1"
DISTRIBUTOR = "carrier-1"
CUSTOMER = "customer-1"


@dataclass
class ChainFixture:
    chain_id: str
    supplier_node: str
    manufacturer_node: str
    distributor_node: str
    customer_node: str
    material_id: str
    product_id: str
    opening_lot_id: str


@pytest.fixture(autouse=True)
def isolated_process_config():
    reset_settings()
    yield
    reset_settings()
    reset_logging()


@pytest.fixture
def settings() -> Settings:
    return Settings(admin_wallet_address="0xadmin")


@pytest.fixture
def service(settings) -> SupplyChainService:
    svc = SupplyChainService(InMemoryDatabase(), settings=settings, today=lambda: TODAY)
    yield svc
    svc.close()


@pytest.fixture
def sqlite_service(settings, tmp_path) -> SupplyChainService:
    database = SupplyChainDatabase(str(tmp_path / "chain.sqlite3"))
    svc = SupplyChainService(database, settings=settings, today=lambda: TODAY)
    yield svc
    svc.close()


def build_chain(service: SupplyChainService, *, opening_stock: int = 1000) -> ChainFixture:
    graph = service.graph
    chain = graph.create_chain("Bike frames", created_by="admin")
    supplier = graph.add_node(chain.id, NodeRole.SUPPLIER, (0, 0), assigned_user_id=SUPPLIER)
    manufacturer = graph.add_node(
        chain.id, NodeRole.MANUFACTURER, (1, 0), assigned_user_id=MANUFACTURER
    )
    distributor = graph.add_node(
        chain.id, NodeRole.DISTRIBUTOR, (2, 0), assigned_user_id=DISTRIBUTOR
    )
    customer = graph.add_node(chain.id, NodeRole.CUSTOMER, (3, 0), assigned_user_id=CUSTOMER)
    graph.add_edge(chain.id, supplier.id, manufacturer.id)
    graph.add_edge(chain.id, manufacturer.id, distributor.id)
    graph.add_edge(chain.id, distributor.id, customer.id)
    graph.finalize(chain.id)

    material = service.catalog.create_material(
        SUPPLIER, chain.id, "Aluminum", "kg", quantity=opening_stock
    )
    product = service.catalog.create_product(
        MANUFACTURER,
        chain.id,
        "Product X",
        Decimal("50"),
        [{"material_id": material.id, "quantity_per_unit": 2}],
    )
    return ChainFixture(
        chain_id=chain.id,
        supplier_node=supplier.id,
        manufacturer_node=manufacturer.id,
        distributor_node=distributor.id,
        customer_node=customer.id,
        material_id=material.id,
        product_id=product.id,
        opening_lot_id=material.ledger_item_id,
    )


@pytest.fixture
def chain(service) -> ChainFixture:
    return build_chain(service)


@pytest.fixture
def allocated_request(service, chain) -> Callable[[int], MaterialRequest]:
    """Factory: a request approved and allocated in full."""

    def make(quantity: int) -> MaterialRequest:
        request = service.requests.create_request(
            MANUFACTURER,
            SUPPLIER,
            chain.chain_id,
            [{"material_id": chain.material_id, "quantity": quantity}],
        )
        service.requests.approve(request.id, {request.items[0].id: quantity})
        return service.requests.allocate(request.id)

    return make


@pytest.fixture
def delivered_material(service, chain, allocated_request) -> Callable[[int], Tuple[MaterialRequest, str]]:
    """Factory: material delivered to the manufacturer, returns (request, lot id)."""

    def make(quantity: int) -> Tuple[MaterialRequest, str]:
        request = allocated_request(quantity)
        transport = service.transport.schedule(
            TransportType.MATERIAL_TRANSPORT,
            chain.supplier_node,
            chain.manufacturer_node,
            request.id,
            TODAY,
            TODAY + timedelta(days=2),
        )
        service.transport.record_pickup(transport.id)
        service.transport.record_delivery(transport.id)
        request = service.requests.get_request(request.id)
        return request, request.items[0].delivered_item_id

    return make


@pytest.fixture
def finished_stock(service, chain, delivered_material) -> Callable[[int], ProductionBatch]:
    """Factory: a completed batch of ``units`` of Product X."""

    def make(units: int) -> ProductionBatch:
        _, lot_id = delivered_material(units * 2)
        batch = service.production.create_batch(
            MANUFACTURER,
            chain.product_id,
            chain.chain_id,
            units,
            [{"blockchain_item_id": lot_id, "quantity": units * 2}],
        )
        return service.production.complete(batch.id, "Dimensions within tolerance")

    return make
