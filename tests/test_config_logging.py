"""Environment configuration, the tracking capability and JSON log lines."""

import io
import json
import logging
import sys
from decimal import Decimal

import pytest

from supply_chain.config import (
    NodeDeletionPolicy,
    Settings,
    configure,
    get_settings,
    ledger_tracking_enabled,
)
from supply_chain.domain import ItemType
from supply_chain.errors import InvalidTopologyError
from supply_chain.ledger import Ledger
from supply_chain.logging_config import StructuredFormatter, configure_logging, get_logger
from supply_chain.repository import InMemoryDatabase


def test_settings_read_prefixed_environment():
    settings = Settings.from_env(
        {
            "SUPPLY_CHAIN_DATABASE": "/tmp/chain.db",
            "SUPPLY_CHAIN_LOG_LEVEL": "debug",
            "SUPPLY_CHAIN_ADMIN_WALLET": "0xabc",
            "SUPPLY_CHAIN_NODE_DELETION_POLICY": "allow-terminal",
            "SUPPLY_CHAIN_SEED_DEMO_DATA": "yes",
        }
    )

    assert settings.database_path == "/tmp/chain.db"
    assert settings.log_level == "debug"
    assert settings.ledger_tracking_enabled
    assert settings.node_deletion_policy == NodeDeletionPolicy.ALLOW_TERMINAL
    assert settings.seed_demo_data


def test_settings_defaults_disable_tracking():
    settings = Settings.from_env({})

    assert not settings.ledger_tracking_enabled
    assert settings.node_deletion_policy == NodeDeletionPolicy.PRESERVE_HISTORY
    assert settings.log_level == "INFO"


def test_unknown_deletion_policy_fails_at_boot():
    with pytest.raises(ValueError):
        Settings.from_env({"SUPPLY_CHAIN_NODE_DELETION_POLICY": "whatever"})


def test_installed_settings_drive_the_capability_query():
    configure(Settings(admin_wallet_address="0xfeed"))

    assert get_settings().admin_wallet_address == "0xfeed"
    assert ledger_tracking_enabled()
    item = Ledger(InMemoryDatabase()).mint("supplier", ItemType.RAW_MATERIAL, 1, "chain")
    assert len(item.transaction_hashes) == 1

    configure(Settings())
    assert not ledger_tracking_enabled()


def test_formatter_renders_extra_fields_as_json():
    record = logging.LogRecord(
        "supply_chain.ledger", logging.INFO, __file__, 1, "ledger_transfer", (), None
    )
    record.quantity = Decimal("2.50")
    record.item_type = ItemType.PRODUCT

    payload = json.loads(StructuredFormatter().format(record))

    assert payload["message"] == "ledger_transfer"
    assert payload["logger"] == "supply_chain.ledger"
    assert payload["quantity"] == "2.50"
    assert payload["item_type"] == "product"
    assert "ts" in payload


def test_formatter_includes_error_kind():
    try:
        raise InvalidTopologyError("no edge")
    except InvalidTopologyError:
        record = logging.LogRecord(
            "supply_chain.web", logging.WARNING, __file__, 1, "failed", (), None
        )
        record.exc_info = sys.exc_info()

    payload = json.loads(StructuredFormatter().format(record))

    assert payload["exc_type"] == "InvalidTopologyError"
    assert payload["exc_kind"] == "InvalidTopology"


def test_engines_log_business_events(service, chain):
    stream = io.StringIO()
    configure_logging("INFO", stream=stream)

    service.ledger.transfer(chain.opening_lot_id, "maker-1", 10)
    get_logger("test").debug("hidden")

    lines = [json.loads(line) for line in stream.getvalue().splitlines()]
    transfer = next(line for line in lines if line["message"] == "ledger_transfer")
    assert transfer["item_id"] == chain.opening_lot_id
    assert transfer["quantity"] == "10"
    assert all(line["message"] != "hidden" for line in lines)
