"""SQLite persistence, version compare-and-set and transactional rollback."""

from datetime import timedelta
from decimal import Decimal

import pytest

from supply_chain.domain import ItemType, OrderStatus, RequestStatus
from supply_chain.errors import InsufficientInventoryError
from supply_chain.repository import (
    DuplicateRecordError,
    InMemoryDatabase,
    RecordNotFoundError,
    StaleRecordError,
)
from supply_chain.services import SupplyChainService
from supply_chain.storage import SupplyChainDatabase

from tests.conftest import CUSTOMER, MANUFACTURER, SUPPLIER, TODAY, build_chain


def test_sqlite_backed_service_runs_the_material_flow(sqlite_service):
    chain = build_chain(sqlite_service)
    request = sqlite_service.requests.create_request(
        MANUFACTURER, SUPPLIER, chain.chain_id, [{"material_id": chain.material_id, "quantity": 500}]
    )
    sqlite_service.requests.approve(request.id, {request.items[0].id: 500})

    allocated = sqlite_service.requests.allocate(request.id)

    assert allocated.status == RequestStatus.ALLOCATED
    lot = sqlite_service.ledger.get_item(allocated.items[0].blockchain_item_id)
    assert lot.quantity == Decimal("500")
    assert sqlite_service.ledger.verify_chain()


def test_records_survive_reopening_the_file(settings, tmp_path):
    path = str(tmp_path / "chain.sqlite3")
    first = SupplyChainService(SupplyChainDatabase(path), settings=settings, today=lambda: TODAY)
    chain = build_chain(first)
    first.close()

    reopened = SupplyChainService(SupplyChainDatabase(path), settings=settings, today=lambda: TODAY)
    try:
        stored = reopened.graph.get_chain(chain.chain_id)
        assert stored.is_operational
        assert len(stored.nodes) == 4
        assert reopened.ledger.get_item(chain.opening_lot_id).quantity == Decimal("1000")
        assert reopened.ledger.verify_chain()
    finally:
        reopened.close()


@pytest.mark.parametrize("backend", ["memory", "sqlite"])
def test_update_is_a_version_compare_and_set(backend, tmp_path, settings):
    database = (
        InMemoryDatabase() if backend == "memory" else SupplyChainDatabase(str(tmp_path / "db"))
    )
    service = SupplyChainService(database, settings=settings, today=lambda: TODAY)
    chain = build_chain(service)

    first = database.supply_chains.get(chain.chain_id)
    second = database.supply_chains.get(chain.chain_id)
    database.supply_chains.update(first.id, first)

    with pytest.raises(StaleRecordError):
        database.supply_chains.update(second.id, second)
    with pytest.raises(DuplicateRecordError):
        database.supply_chains.add(first.id, first)
    with pytest.raises(RecordNotFoundError):
        database.supply_chains.get("missing")
    assert database.supply_chains.get(chain.chain_id).version == first.version
    service.close()


def test_failed_operation_rolls_back_every_write(sqlite_service):
    chain = build_chain(sqlite_service)
    items_before = len(sqlite_service.database.ledger_items)
    order = sqlite_service.orders.create_order(
        CUSTOMER, [{"product_id": chain.product_id, "quantity": 1}], "Kaiserallee 2, Bonn"
    )

    with pytest.raises(RuntimeError):
        with sqlite_service.database.transaction():
            sqlite_service.ledger.mint(MANUFACTURER, ItemType.PRODUCT, 5, chain.chain_id)
            raise RuntimeError("abort")

    assert len(sqlite_service.database.ledger_items) == items_before
    with pytest.raises(InsufficientInventoryError):
        sqlite_service.orders.fulfill_from_stock(
            order.id, scheduled_delivery_date=TODAY + timedelta(days=1)
        )
    assert sqlite_service.orders.get_order(order.id).status == OrderStatus.REQUESTED


def test_in_memory_rollback_restores_previous_values(service, chain):
    with pytest.raises(RuntimeError):
        with service.database.transaction():
            service.ledger.transfer(chain.opening_lot_id, MANUFACTURER, 400)
            raise RuntimeError("abort")

    lot = service.ledger.get_item(chain.opening_lot_id)
    assert lot.quantity == Decimal("1000")
    assert service.ledger.get_items_by_owner(MANUFACTURER) == []
    assert service.ledger.verify_chain()
