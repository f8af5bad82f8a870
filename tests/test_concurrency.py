"""
Thread races against shared lots.

Each test releases its workers through a barrier so the calls overlap,
then checks that the ledger never goes negative and that quantity is
conserved across the split items.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

import pytest

from supply_chain.domain import ItemType
from supply_chain.errors import (
    InsufficientInventoryError,
    InsufficientQuantityError,
    ItemInactiveError,
)

from tests.conftest import CUSTOMER, MANUFACTURER, TODAY

pytestmark = pytest.mark.concurrency


def run_concurrently(calls):
    barrier = threading.Barrier(len(calls))

    def worker(call):
        barrier.wait()
        try:
            return ("ok", call())
        except (InsufficientQuantityError, ItemInactiveError) as exc:
            return ("error", exc)

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        return list(pool.map(worker, calls))


def test_competing_batches_cannot_overdraw_one_lot(service, chain, delivered_material):
    _, lot_id = delivered_material(500)

    def batch(units, draw):
        return lambda: service.production.create_batch(
            MANUFACTURER, chain.product_id, chain.chain_id, units, [(lot_id, draw)]
        )

    results = run_concurrently([batch(100, 200), batch(200, 400)])

    outcomes = sorted(kind for kind, _ in results)
    assert outcomes == ["error", "ok"]
    failure = next(value for kind, value in results if kind == "error")
    assert isinstance(failure, InsufficientQuantityError)
    winner = next(value for kind, value in results if kind == "ok")
    remaining = service.ledger.get_item(lot_id).quantity
    assert remaining == Decimal("500") - winner.materials[0].quantity
    assert remaining >= 0


def test_parallel_transfers_conserve_quantity(service):
    lot = service.ledger.mint("supplier-1", ItemType.RAW_MATERIAL, 500, "chain-1")

    results = run_concurrently(
        [lambda n=n: service.ledger.transfer(lot.id, f"buyer-{n}", 100) for n in range(8)]
    )

    succeeded = [value for kind, value in results if kind == "ok"]
    assert len(succeeded) == 5
    source = service.ledger.get_item(lot.id)
    assert source.quantity == 0
    assert not source.is_active
    children = service.ledger.find_items(lambda item: item.parent_item_id == lot.id)
    assert sum(child.quantity for child in children) == Decimal("500")
    assert service.ledger.verify_chain()


def test_parallel_fulfillment_reserves_stock_once(service, chain, finished_stock):
    finished_stock(6)
    orders = [
        service.orders.create_order(
            CUSTOMER, [{"product_id": chain.product_id, "quantity": 4}], "Ringstrasse 9, Wien"
        )
        for _ in range(2)
    ]
    barrier = threading.Barrier(2)

    def fulfill(order):
        barrier.wait()
        try:
            return service.orders.fulfill_from_stock(
                order.id, scheduled_delivery_date=TODAY + timedelta(days=2)
            )
        except InsufficientInventoryError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(fulfill, orders))

    assert sum(isinstance(result, InsufficientInventoryError) for result in results) == 1
    assert service.production.available_inventory(MANUFACTURER, chain.product_id) == Decimal("2")
