"""Customer orders: reservation from stock, delivery and cancellation."""

from datetime import timedelta
from decimal import Decimal

import pytest

from supply_chain.domain import ItemStatus, OrderStatus, TransportStatus
from supply_chain.errors import (
    InsufficientInventoryError,
    InvalidArgumentError,
    InvalidScheduleError,
    InvalidTopologyError,
    InvalidTransitionError,
)

from tests.conftest import CUSTOMER, DISTRIBUTOR, MANUFACTURER, SUPPLIER, TODAY


def place_order(service, chain, units=10):
    return service.orders.create_order(
        CUSTOMER,
        [{"product_id": chain.product_id, "quantity": units}],
        "Hauptstrasse 1, Berlin",
    )


def fulfill(service, order):
    return service.orders.fulfill_from_stock(
        order.id, scheduled_delivery_date=TODAY + timedelta(days=3)
    )


def test_order_takes_catalog_price(service, chain):
    order = place_order(service, chain, 3)

    assert order.status == OrderStatus.REQUESTED
    assert order.order_number.startswith("ORD-")
    assert order.total_amount == Decimal("150")


def test_only_customers_place_orders(service, chain):
    with pytest.raises(InvalidTopologyError):
        service.orders.create_order(
            SUPPLIER, [{"product_id": chain.product_id, "quantity": 1}], "Somewhere"
        )
    with pytest.raises(InvalidArgumentError):
        service.orders.create_order(CUSTOMER, [], "Somewhere")


def test_short_stock_leaves_order_and_lots_untouched(service, chain, finished_stock):
    batch = finished_stock(5)
    order = place_order(service, chain, 10)

    with pytest.raises(InsufficientInventoryError) as excinfo:
        fulfill(service, order)

    assert excinfo.value.details["shortages"] == [
        {"product_id": chain.product_id, "requested": "10", "available": "5"}
    ]
    assert service.orders.get_order(order.id).status == OrderStatus.REQUESTED
    assert service.ledger.get_item(batch.product_item_id).quantity == Decimal("5")
    assert service.transport.list_transports(related_id=order.id) == []


def test_order_runs_through_its_lifecycle_in_order(service, chain, finished_stock):
    finished_stock(10)
    order = place_order(service, chain, 10)

    ready = fulfill(service, order)
    assert ready.status == OrderStatus.READY_FOR_SHIPMENT
    assert ready.distributor_id == DISTRIBUTOR
    reserved = [service.ledger.get_item(item_id) for item_id in ready.reserved_item_ids]
    assert sum(item.quantity for item in reserved) == Decimal("10")
    assert all(item.owner_id == CUSTOMER for item in reserved)

    service.transport.record_pickup(ready.transport_id)
    in_transit = service.orders.get_order(order.id)
    assert in_transit.status == OrderStatus.IN_TRANSIT
    with pytest.raises(InvalidTransitionError):
        service.orders.transition(in_transit, OrderStatus.READY_FOR_SHIPMENT)

    service.transport.record_delivery(ready.transport_id)
    assert service.orders.get_order(order.id).status == OrderStatus.DELIVERED
    assert all(
        service.ledger.get_item(item_id).status == ItemStatus.COMPLETED
        for item_id in ready.reserved_item_ids
    )

    completed = service.orders.confirm_delivery(order.id)
    assert completed.status == OrderStatus.COMPLETED
    assert service.transport.get_transport(ready.transport_id).status == TransportStatus.CONFIRMED
    assert [change.status for change in completed.history] == [
        "Requested",
        "Ready for Shipment",
        "In Transit",
        "Delivered",
        "Completed",
    ]


def test_fulfill_is_idempotent(service, chain, finished_stock):
    finished_stock(10)
    order = place_order(service, chain, 4)

    first = fulfill(service, order)
    again = fulfill(service, order)

    assert again.reserved_item_ids == first.reserved_item_ids
    assert len(service.transport.list_transports(related_id=order.id)) == 1
    assert service.production.available_inventory(MANUFACTURER, chain.product_id) == Decimal("6")


def test_fulfill_rejects_past_pickup(service, chain, finished_stock):
    finished_stock(2)
    order = place_order(service, chain, 2)

    with pytest.raises(InvalidScheduleError):
        service.orders.fulfill_from_stock(
            order.id,
            scheduled_pickup_date=TODAY - timedelta(days=1),
            scheduled_delivery_date=TODAY + timedelta(days=1),
        )

    assert service.orders.get_order(order.id).status == OrderStatus.REQUESTED


def test_cancel_releases_reserved_stock(service, chain, finished_stock):
    finished_stock(10)
    order = place_order(service, chain, 4)
    ready = fulfill(service, order)

    cancelled = service.orders.cancel(order.id, "Changed my mind")

    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.cancellation_reason == "Changed my mind"
    assert service.production.available_inventory(MANUFACTURER, chain.product_id) == Decimal("10")
    assert service.transport.get_transport(ready.transport_id).status == TransportStatus.CANCELLED
    assert service.orders.cancel(order.id).status == OrderStatus.CANCELLED


def test_cancel_after_pickup_is_invalid(service, chain, finished_stock):
    finished_stock(2)
    ready = fulfill(service, place_order(service, chain, 2))
    service.transport.record_pickup(ready.transport_id)

    with pytest.raises(InvalidTransitionError):
        service.orders.cancel(ready.id)


def test_start_production_marks_manufacturer(service, chain):
    order = place_order(service, chain, 2)

    started = service.orders.start_production(order.id, MANUFACTURER)

    assert started.status == OrderStatus.IN_PRODUCTION
    assert started.manufacturer_id == MANUFACTURER
    with pytest.raises(InvalidArgumentError):
        service.orders.start_production(
            place_order(service, chain, 1).id, "someone-else"
        )
