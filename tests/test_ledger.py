"""Ledger: splitting transfers, provenance tracing and the hash chain."""

from decimal import Decimal

import pytest

from supply_chain.config import Settings
from supply_chain.domain import ItemStatus, ItemType
from supply_chain.errors import (
    ConcurrentModificationError,
    InsufficientQuantityError,
    InvalidArgumentError,
    ItemInactiveError,
    NotFoundError,
)
from supply_chain.ledger import Ledger
from supply_chain.repository import InMemoryDatabase


@pytest.fixture
def ledger():
    return Ledger(InMemoryDatabase(), settings=Settings(admin_wallet_address="0xadmin"))


def test_mint_records_one_hashed_transaction(ledger):
    item = ledger.mint("supplier", ItemType.RAW_MATERIAL, 500, "chain-1")

    assert item.quantity == Decimal("500")
    assert item.is_active
    assert len(item.transaction_hashes) == 1
    tx = ledger.get_transaction(item.transaction_hashes[0])
    assert tx.action == "mint"
    assert tx.previous_hash is None
    assert tx.item_ids == (item.id,)


def test_transfer_splits_and_conserves_quantity(ledger):
    lot = ledger.mint("supplier", ItemType.RAW_MATERIAL, 500, "chain-1")

    remainder, moved = ledger.transfer(lot.id, "maker", 200)

    assert remainder.id == lot.id
    assert remainder.quantity + moved.quantity == Decimal("500")
    assert moved.parent_item_id == lot.id
    assert moved.owner_id == "maker"
    assert ledger.get_item(lot.id).quantity == Decimal("300")


def test_transfer_of_full_quantity_deactivates_source(ledger):
    lot = ledger.mint("supplier", ItemType.RAW_MATERIAL, 50, "chain-1")

    remainder, _ = ledger.transfer(lot.id, "maker", 50)

    assert remainder.quantity == 0
    assert not remainder.is_active
    with pytest.raises(ItemInactiveError):
        ledger.transfer(lot.id, "someone", 1)


def test_transfer_more_than_available_writes_nothing(ledger):
    lot = ledger.mint("supplier", ItemType.RAW_MATERIAL, 10, "chain-1")
    before = len(ledger.get_items_by_supply_chain("chain-1"))

    with pytest.raises(InsufficientQuantityError):
        ledger.transfer(lot.id, "maker", 11)

    assert ledger.get_item(lot.id).quantity == Decimal("10")
    assert len(ledger.get_items_by_supply_chain("chain-1")) == before


@pytest.mark.parametrize("quantity", [0, -5, "abc"])
def test_invalid_quantities_are_rejected(ledger, quantity):
    lot = ledger.mint("supplier", ItemType.RAW_MATERIAL, 10, "chain-1")

    with pytest.raises(InvalidArgumentError):
        ledger.transfer(lot.id, "maker", quantity)


def test_unknown_item_is_not_found(ledger):
    with pytest.raises(NotFoundError):
        ledger.transfer("missing", "maker", 1)


def test_transfer_with_stale_version_is_refused(ledger):
    lot = ledger.mint("supplier", ItemType.RAW_MATERIAL, 10, "chain-1")
    ledger.transfer(lot.id, "maker", 1)

    with pytest.raises(ConcurrentModificationError):
        ledger.transfer(lot.id, "maker", 1, expected_version=lot.version)


def test_consume_draws_oldest_lots_first_all_or_nothing(ledger):
    first = ledger.mint("maker", ItemType.PRODUCT, 3, "chain-1")
    second = ledger.mint("maker", ItemType.PRODUCT, 4, "chain-1")

    with pytest.raises(InsufficientQuantityError):
        ledger.consume([first.id, second.id], "customer", 8)
    assert ledger.get_item(first.id).quantity == Decimal("3")

    moved = ledger.consume([second.id, first.id], "customer", 5)

    assert [item.parent_item_id for item in moved] == [first.id, second.id]
    assert sum(item.quantity for item in moved) == Decimal("5")
    assert not ledger.get_item(first.id).is_active
    assert ledger.get_item(second.id).quantity == Decimal("2")


def test_trace_follows_parents_and_sources_oldest_first(ledger):
    lot_a = ledger.mint("supplier", ItemType.RAW_MATERIAL, 10, "chain-1")
    lot_b = ledger.mint("supplier", ItemType.RAW_MATERIAL, 10, "chain-1")
    _, part_a = ledger.transfer(lot_a.id, "maker", 4)
    _, part_b = ledger.transfer(lot_b.id, "maker", 6)
    product = ledger.mint(
        "maker", ItemType.PRODUCT, 2, "chain-1", source_item_ids=[part_a.id, part_b.id]
    )
    _, shipped = ledger.transfer(product.id, "customer", 1)

    trace = ledger.trace_item_history(shipped.id)

    ids = [entry.item.id for entry in trace]
    assert ids[0] == lot_a.id
    assert ids[-1] == shipped.id
    assert set(ids) == {lot_a.id, lot_b.id, part_a.id, part_b.id, product.id, shipped.id}
    assert all(entry.transactions for entry in trace)


def test_status_update_is_idempotent(ledger):
    lot = ledger.mint("supplier", ItemType.RAW_MATERIAL, 10, "chain-1")

    first = ledger.update_status(lot.id, ItemStatus.IN_TRANSIT)
    again = ledger.update_status(lot.id, "InTransit")

    assert first.status == ItemStatus.IN_TRANSIT
    assert len(again.transaction_hashes) == len(first.transaction_hashes)


def test_hash_chain_verifies_and_detects_tampering(ledger):
    lot = ledger.mint("supplier", ItemType.RAW_MATERIAL, 10, "chain-1")
    ledger.transfer(lot.id, "maker", 3)
    ledger.deactivate(lot.id)
    assert ledger.verify_chain()

    database = ledger._db
    tx = database.ledger_transactions.get(lot.transaction_hashes[0])
    tx.payload["quantity"] = Decimal("1000")
    database.ledger_transactions.upsert(tx.tx_hash, tx)

    assert not ledger.verify_chain()


def test_tracking_disabled_keeps_items_without_transactions():
    database = InMemoryDatabase()
    ledger = Ledger(database, settings=Settings())

    lot = ledger.mint("supplier", ItemType.RAW_MATERIAL, 10, "chain-1")
    _, moved = ledger.transfer(lot.id, "maker", 4)

    assert not ledger.tracking_enabled()
    assert lot.transaction_hashes == []
    assert moved.quantity == Decimal("4")
    assert len(database.ledger_transactions) == 0
    assert ledger.verify_chain()
