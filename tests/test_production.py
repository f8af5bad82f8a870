"""Production batches: material checks, quality control and product output."""

from decimal import Decimal

import pytest

from supply_chain.domain import BatchStatus, ItemStatus, ItemType
from supply_chain.errors import (
    InsufficientQuantityError,
    InvalidArgumentError,
    InvalidTransitionError,
    ItemInactiveError,
)

from tests.conftest import MANUFACTURER


def test_batch_splits_the_lot_it_draws_from(service, chain, delivered_material):
    _, lot_id = delivered_material(500)

    batch = service.production.create_batch(
        MANUFACTURER,
        chain.product_id,
        chain.chain_id,
        100,
        [{"blockchain_item_id": lot_id, "quantity": 200}],
    )

    assert batch.status == BatchStatus.IN_PRODUCTION
    assert batch.batch_number.startswith("BATCH-")
    assert service.ledger.get_item(lot_id).quantity == Decimal("300")
    processing = service.ledger.get_item(batch.materials[0].consumed_item_id)
    assert processing.status == ItemStatus.PROCESSING
    assert processing.quantity == Decimal("200")
    assert processing.metadata["batch_id"] == batch.id


def test_second_batch_cannot_overdraw_the_remainder(service, chain, delivered_material):
    _, lot_id = delivered_material(500)
    service.production.create_batch(
        MANUFACTURER, chain.product_id, chain.chain_id, 100, [(lot_id, 200)]
    )

    with pytest.raises(InsufficientQuantityError):
        service.production.create_batch(
            MANUFACTURER, chain.product_id, chain.chain_id, 200, [(lot_id, 400)]
        )

    assert service.ledger.get_item(lot_id).quantity == Decimal("300")
    assert len(service.production.list_batches(manufacturer_id=MANUFACTURER)) == 1


def test_bill_of_materials_shortfall_is_refused(service, chain, delivered_material):
    _, lot_id = delivered_material(100)

    with pytest.raises(InsufficientQuantityError) as excinfo:
        service.production.create_batch(
            MANUFACTURER, chain.product_id, chain.chain_id, 60, [(lot_id, 100)]
        )

    assert excinfo.value.details["required"] == "120"
    assert service.ledger.get_item(lot_id).quantity == Decimal("100")


def test_same_lot_listed_twice_counts_against_its_quantity(service, chain, delivered_material):
    _, lot_id = delivered_material(100)

    with pytest.raises(InsufficientQuantityError):
        service.production.create_batch(
            MANUFACTURER, chain.product_id, chain.chain_id, 40, [(lot_id, 60), (lot_id, 60)]
        )


def test_batch_consumes_exactly_the_bill_of_materials_need(service, chain, delivered_material):
    _, lot_id = delivered_material(500)

    batch = service.production.create_batch(
        MANUFACTURER, chain.product_id, chain.chain_id, 10, [(lot_id, 500)]
    )

    assert service.ledger.get_item(lot_id).quantity == Decimal("480")
    assert [line.quantity for line in batch.materials] == [Decimal("20")]


def test_batch_draws_from_the_oldest_lot_first(service, chain, delivered_material):
    _, older = delivered_material(30)
    _, newer = delivered_material(30)

    batch = service.production.create_batch(
        MANUFACTURER, chain.product_id, chain.chain_id, 20, [newer, older]
    )

    assert [(line.blockchain_item_id, line.quantity) for line in batch.materials] == [
        (older, Decimal("30")),
        (newer, Decimal("10")),
    ]
    assert not service.ledger.get_item(older).is_active
    assert service.ledger.get_item(newer).quantity == Decimal("20")


def test_lot_outside_the_bill_of_materials_is_refused(service, chain, delivered_material):
    _, lot_id = delivered_material(40)
    stray = service.ledger.mint(
        MANUFACTURER, ItemType.RAW_MATERIAL, 50, chain.chain_id, reference_id="steel"
    )

    with pytest.raises(InvalidArgumentError):
        service.production.create_batch(
            MANUFACTURER, chain.product_id, chain.chain_id, 20, [lot_id, stray.id]
        )

    assert service.ledger.get_item(lot_id).quantity == Decimal("40")
    assert service.ledger.get_item(stray.id).quantity == Decimal("50")


def test_undelivered_allocated_lot_is_refused(service, chain, allocated_request):
    request = allocated_request(20)
    lot_id = request.items[0].blockchain_item_id

    with pytest.raises(InvalidArgumentError):
        service.production.create_batch(
            MANUFACTURER, chain.product_id, chain.chain_id, 10, [(lot_id, 20)]
        )

    assert service.ledger.get_item(lot_id).quantity == Decimal("20")
    assert service.production.usable_lots(MANUFACTURER, chain.material_id) == []


def test_lots_of_other_parties_are_refused(service, chain):
    with pytest.raises(InvalidArgumentError):
        service.production.create_batch(
            MANUFACTURER, chain.product_id, chain.chain_id, 1, [(chain.opening_lot_id, 2)]
        )


def test_completing_mints_product_with_provenance(service, chain, delivered_material):
    _, lot_id = delivered_material(40)
    batch = service.production.create_batch(
        MANUFACTURER, chain.product_id, chain.chain_id, 20, [(lot_id, 40)]
    )
    service.production.start_quality_check(batch.id)

    completed = service.production.complete(batch.id, "Welds inspected")

    assert completed.status == BatchStatus.COMPLETED
    product = service.ledger.get_item(completed.product_item_id)
    assert product.item_type == ItemType.PRODUCT
    assert product.quantity == Decimal("20")
    assert product.reference_id == chain.product_id
    consumed = service.ledger.get_item(batch.materials[0].consumed_item_id)
    assert product.source_item_ids == (consumed.id,)
    assert not consumed.is_active
    assert consumed.status == ItemStatus.COMPLETED
    assert service.production.available_inventory(MANUFACTURER, chain.product_id) == Decimal("20")

    trace_ids = [entry.item.id for entry in service.trace(product.id)]
    assert chain.opening_lot_id in trace_ids
    assert trace_ids[-1] == product.id


def test_complete_needs_quality_notes_and_is_idempotent(service, chain, finished_stock):
    batch = finished_stock(5)

    with pytest.raises(InvalidArgumentError):
        service.production.complete(batch.id, "")
    again = service.production.complete(batch.id, "Second inspection")

    assert again.product_item_id == batch.product_item_id
    assert again.quality_notes == "Dimensions within tolerance"


def test_rejected_batch_writes_material_off(service, chain, delivered_material):
    _, lot_id = delivered_material(40)
    batch = service.production.create_batch(
        MANUFACTURER, chain.product_id, chain.chain_id, 20, [(lot_id, 40)]
    )

    rejected = service.production.reject(batch.id, "Cracked welds")

    assert rejected.status == BatchStatus.REJECTED
    assert rejected.product_item_id is None
    consumed = service.ledger.get_item(batch.materials[0].consumed_item_id)
    assert consumed.status == ItemStatus.REJECTED
    assert not consumed.is_active
    assert service.production.usable_lots(MANUFACTURER, chain.material_id) == []
    with pytest.raises(InvalidTransitionError):
        service.production.complete(batch.id, "Too late")


def test_inactive_lot_cannot_feed_a_batch(service, chain, delivered_material):
    _, lot_id = delivered_material(40)
    service.ledger.deactivate(lot_id)

    with pytest.raises(ItemInactiveError):
        service.production.create_batch(
            MANUFACTURER, chain.product_id, chain.chain_id, 20, [(lot_id, 40)]
        )
