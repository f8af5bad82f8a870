"""Error taxonomy shared by every engine of the supply chain core.

Each error carries a machine readable ``kind``. Callers catch by type, the
HTTP boundary serialises errors with :meth:`SupplyChainError.to_dict`.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, ClassVar, Dict, Optional


class ErrorKind(str, Enum):
    """Closed set of error kinds surfaced to the initiating actor."""

    NOT_FOUND = "NotFound"
    INVALID_TRANSITION = "InvalidTransition"
    INVALID_TOPOLOGY = "InvalidTopology"
    INSUFFICIENT_QUANTITY = "InsufficientQuantity"
    INSUFFICIENT_INVENTORY = "InsufficientInventory"
    NODE_HAS_DEPENDENCIES = "NodeHasDependencies"
    CHAIN_FINALIZED = "ChainFinalized"
    ITEM_INACTIVE = "ItemInactive"
    INVALID_APPROVAL = "InvalidApproval"
    INVALID_SCHEDULE = "InvalidSchedule"
    CONCURRENT_MODIFICATION = "ConcurrentModification"
    INVALID_ARGUMENT = "InvalidArgument"
    DUPLICATE_RECORD = "DuplicateRecord"


class SupplyChainError(RuntimeError):
    """Base class for all errors raised by the core."""

    kind: ClassVar[ErrorKind] = ErrorKind.INVALID_ARGUMENT
    retryable: ClassVar[bool] = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFoundError(SupplyChainError):
    kind = ErrorKind.NOT_FOUND


class InvalidTransitionError(SupplyChainError):
    """Raised when an entity is asked to move to a status it cannot reach."""

    kind = ErrorKind.INVALID_TRANSITION

    def __init__(
        self,
        entity: str,
        entity_id: str,
        current: Any,
        target: Any,
        *,
        message: Optional[str] = None,
    ) -> None:
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        super().__init__(
            message
            or f"{entity} {entity_id!r} cannot move from {current_value!r} to {target_value!r}",
            entity=entity,
            entity_id=entity_id,
            current=current_value,
            target=target_value,
        )


class InvalidTopologyError(SupplyChainError):
    kind = ErrorKind.INVALID_TOPOLOGY


class InsufficientQuantityError(SupplyChainError):
    kind = ErrorKind.INSUFFICIENT_QUANTITY


class InsufficientInventoryError(SupplyChainError):
    kind = ErrorKind.INSUFFICIENT_INVENTORY


class NodeHasDependenciesError(SupplyChainError):
    kind = ErrorKind.NODE_HAS_DEPENDENCIES


class ChainFinalizedError(SupplyChainError):
    kind = ErrorKind.CHAIN_FINALIZED


class ItemInactiveError(SupplyChainError):
    kind = ErrorKind.ITEM_INACTIVE


class InvalidApprovalError(SupplyChainError):
    kind = ErrorKind.INVALID_APPROVAL


class InvalidScheduleError(SupplyChainError):
    kind = ErrorKind.INVALID_SCHEDULE


class ConcurrentModificationError(SupplyChainError):
    """The record changed since the caller last observed it. Safe to retry."""

    kind = ErrorKind.CONCURRENT_MODIFICATION
    retryable = True


class InvalidArgumentError(SupplyChainError):
    kind = ErrorKind.INVALID_ARGUMENT


class DuplicateError(SupplyChainError):
    kind = ErrorKind.DUPLICATE_RECORD


__all__ = [
    "ErrorKind",
    "SupplyChainError",
    "NotFoundError",
    "InvalidTransitionError",
    "InvalidTopologyError",
    "InsufficientQuantityError",
    "InsufficientInventoryError",
    "NodeHasDependenciesError",
    "ChainFinalizedError",
    "ItemInactiveError",
    "InvalidApprovalError",
    "InvalidScheduleError",
    "ConcurrentModificationError",
    "InvalidArgumentError",
    "DuplicateError",
]
