"""Supply chain orchestration core.

This package provides the graph registry, the append-only item ledger and
the coupled state machines for material requests, production batches,
customer orders and transports, plus in-memory and SQLite persistence.
"""

from .config import NodeDeletionPolicy, Settings, configure, get_settings
from .domain import (
    BatchStatus,
    ChainStatus,
    ItemStatus,
    ItemType,
    NodeRole,
    OrderStatus,
    RequestStatus,
    TransportStatus,
    TransportType,
)
from .errors import ErrorKind, SupplyChainError
from .logging_config import configure_logging
from .services import SupplyChainService

__all__ = [
    "NodeDeletionPolicy",
    "Settings",
    "configure",
    "get_settings",
    "BatchStatus",
    "ChainStatus",
    "ItemStatus",
    "ItemType",
    "NodeRole",
    "OrderStatus",
    "RequestStatus",
    "TransportStatus",
    "TransportType",
    "ErrorKind",
    "SupplyChainError",
    "configure_logging",
    "SupplyChainService",
]
