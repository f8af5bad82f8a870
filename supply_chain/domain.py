"""Core data structures for the supply chain orchestration core."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple, Type, TypeVar

from .errors import ConcurrentModificationError, InvalidArgumentError

E = TypeVar("E", bound=Enum)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_quantity(value: object, *, field_name: str = "quantity") -> Decimal:
    """Normalise a user supplied quantity into a ``Decimal``."""

    if isinstance(value, bool):
        raise InvalidArgumentError(f"{field_name} must be a number", field=field_name)
    try:
        quantity = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidArgumentError(
            f"{field_name} must be a number, got {value!r}", field=field_name
        ) from exc
    if not quantity.is_finite():
        raise InvalidArgumentError(f"{field_name} must be finite", field=field_name)
    return quantity


def check_version(record: object, expected_version: Optional[int], *, label: str) -> None:
    """Refuse to act on a caller's stale view of ``record``."""

    if expected_version is not None and record.version != expected_version:
        raise ConcurrentModificationError(
            f"{label} {record.id!r} changed since version {expected_version}",
            record_id=record.id,
            current_version=record.version,
        )


def parse_status(enum_type: Type[E], value: object) -> E:
    """Resolve a raw value into a member of ``enum_type`` or fail loudly."""

    if isinstance(value, enum_type):
        return value
    for member in enum_type:
        if value == member.value or (isinstance(value, str) and value.upper() == member.name):
            return member
    raise InvalidArgumentError(
        f"Unknown {enum_type.__name__} value {value!r}",
        allowed=[member.value for member in enum_type],
    )


# ----------------------------------------------------------------------
# Graph
# ----------------------------------------------------------------------
class NodeRole(str, Enum):
    """Role a node plays inside a supply chain."""

    SUPPLIER = "Supplier"
    MANUFACTURER = "Manufacturer"
    DISTRIBUTOR = "Distributor"
    CUSTOMER = "Customer"
    UNASSIGNED = "Unassigned"
    QA = "QA"
    WAREHOUSE = "Warehouse"


class NodeStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"


class ChainStatus(str, Enum):
    """Blockchain status of a supply chain topology."""

    DRAFT = "DRAFT"
    FINALIZED = "FINALIZED"
    CONFIRMED = "CONFIRMED"


OPERATIONAL_CHAIN_STATUSES: FrozenSet[ChainStatus] = frozenset(
    {ChainStatus.FINALIZED, ChainStatus.CONFIRMED}
)


@dataclass(slots=True)
class GraphNode:
    """A role slot in a supply chain, optionally occupied by a user."""

    id: str
    supply_chain_id: str
    role: NodeRole
    assigned_user_id: Optional[str] = None
    status: NodeStatus = NodeStatus.PENDING
    label: str = ""
    position: Tuple[float, float] = (0.0, 0.0)


@dataclass(slots=True)
class GraphEdge:
    """Directed flow of material or product between two nodes."""

    id: str
    supply_chain_id: str
    source_node_id: str
    target_node_id: str


@dataclass(slots=True)
class SupplyChain:
    id: str
    name: str
    created_by: str
    nodes: Dict[str, GraphNode] = field(default_factory=dict)
    edges: Dict[str, GraphEdge] = field(default_factory=dict)
    blockchain_status: ChainStatus = ChainStatus.DRAFT
    created_at: datetime = field(default_factory=utcnow)
    finalized_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_operational(self) -> bool:
        return self.blockchain_status in OPERATIONAL_CHAIN_STATUSES


@dataclass(slots=True)
class AssignedUser:
    user_id: str
    role: NodeRole
    node_id: str


# ----------------------------------------------------------------------
# Ledger
# ----------------------------------------------------------------------
class ItemType(str, Enum):
    RAW_MATERIAL = "raw-material"
    ALLOCATED_MATERIAL = "allocated-material"
    RECYCLED_MATERIAL = "recycled-material"
    PRODUCT = "product"
    RETURNED_PRODUCT = "returned-product"


MATERIAL_ITEM_TYPES: FrozenSet[ItemType] = frozenset(
    {ItemType.RAW_MATERIAL, ItemType.ALLOCATED_MATERIAL, ItemType.RECYCLED_MATERIAL}
)


class ItemStatus(str, Enum):
    CREATED = "Created"
    IN_TRANSIT = "InTransit"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    REJECTED = "Rejected"


@dataclass(slots=True)
class LedgerItem:
    """Quantity-bearing record of a physical lot with its provenance."""

    id: str
    item_type: ItemType
    owner_id: str
    quantity: Decimal
    supply_chain_id: str
    status: ItemStatus = ItemStatus.CREATED
    is_active: bool = True
    parent_item_id: Optional[str] = None
    reference_id: Optional[str] = None
    source_item_ids: Tuple[str, ...] = tuple()
    transaction_hashes: List[str] = field(default_factory=list)
    metadata: Dict[str, str] = field(default_factory=dict)
    sequence: int = 0
    created_at: datetime = field(default_factory=utcnow)
    version: int = 0


@dataclass(slots=True)
class LedgerTransaction:
    """Append-only, hash addressed record of one ledger mutation."""

    tx_hash: str
    sequence: int
    action: str
    item_ids: Tuple[str, ...]
    actor_id: Optional[str]
    quantity: Optional[Decimal]
    payload: Mapping[str, object]
    previous_hash: Optional[str]
    recorded_at: datetime


@dataclass(slots=True)
class TraceEntry:
    item: LedgerItem
    transactions: List[LedgerTransaction] = field(default_factory=list)


# ----------------------------------------------------------------------
# Catalog
# ----------------------------------------------------------------------
@dataclass(slots=True)
class Material:
    """Supplier material master data."""

    id: str
    supplier_id: str
    supply_chain_id: str
    name: str
    unit: str
    description: str = ""
    ledger_item_id: Optional[str] = None
    is_active: bool = True
    version: int = 0


@dataclass(slots=True)
class BillOfMaterialsLine:
    material_id: str
    quantity_per_unit: Decimal


@dataclass(slots=True)
class Product:
    """Manufacturer product with its bill of materials."""

    id: str
    manufacturer_id: str
    supply_chain_id: str
    name: str
    price: Decimal
    required_materials: List[BillOfMaterialsLine] = field(default_factory=list)
    description: str = ""
    is_active: bool = True
    version: int = 0


# ----------------------------------------------------------------------
# Status machines
# ----------------------------------------------------------------------
@dataclass(slots=True)
class StatusChange:
    status: str
    changed_at: datetime = field(default_factory=utcnow)
    actor_id: Optional[str] = None
    note: str = ""


class RequestStatus(str, Enum):
    """Lifecycle of a material request and of each of its items."""

    REQUESTED = "Requested"
    APPROVED = "Approved"
    ALLOCATED = "Allocated"
    READY_FOR_PICKUP = "Ready for Pickup"
    IN_TRANSIT = "In Transit"
    DELIVERED = "Delivered"
    REJECTED = "Rejected"

    @property
    def rank(self) -> int:
        return _REQUEST_RANK[self]


_REQUEST_RANK: Dict[RequestStatus, int] = {
    RequestStatus.REQUESTED: 0,
    RequestStatus.APPROVED: 1,
    RequestStatus.ALLOCATED: 2,
    RequestStatus.READY_FOR_PICKUP: 3,
    RequestStatus.IN_TRANSIT: 4,
    RequestStatus.DELIVERED: 5,
    RequestStatus.REJECTED: 99,
}


class BatchStatus(str, Enum):
    PLANNED = "Planned"
    IN_PRODUCTION = "In Production"
    IN_QC = "In QC"
    COMPLETED = "Completed"
    REJECTED = "Rejected"


BATCH_TRANSITIONS: Mapping[BatchStatus, FrozenSet[BatchStatus]] = {
    BatchStatus.PLANNED: frozenset({BatchStatus.IN_PRODUCTION, BatchStatus.REJECTED}),
    BatchStatus.IN_PRODUCTION: frozenset(
        {BatchStatus.IN_QC, BatchStatus.COMPLETED, BatchStatus.REJECTED}
    ),
    BatchStatus.IN_QC: frozenset({BatchStatus.COMPLETED, BatchStatus.REJECTED}),
    BatchStatus.COMPLETED: frozenset(),
    BatchStatus.REJECTED: frozenset(),
}


class OrderStatus(str, Enum):
    REQUESTED = "Requested"
    IN_PRODUCTION = "In Production"
    READY_FOR_SHIPMENT = "Ready for Shipment"
    IN_TRANSIT = "In Transit"
    DELIVERED = "Delivered"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


ORDER_TRANSITIONS: Mapping[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.REQUESTED: frozenset(
        {OrderStatus.IN_PRODUCTION, OrderStatus.READY_FOR_SHIPMENT, OrderStatus.CANCELLED}
    ),
    OrderStatus.IN_PRODUCTION: frozenset(
        {OrderStatus.READY_FOR_SHIPMENT, OrderStatus.CANCELLED}
    ),
    OrderStatus.READY_FOR_SHIPMENT: frozenset(
        {OrderStatus.IN_TRANSIT, OrderStatus.CANCELLED}
    ),
    OrderStatus.IN_TRANSIT: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


class TransportType(str, Enum):
    MATERIAL_TRANSPORT = "Material Transport"
    PRODUCT_DELIVERY = "Product Delivery"


class TransportStatus(str, Enum):
    SCHEDULED = "Scheduled"
    IN_TRANSIT = "In Transit"
    DELIVERED = "Delivered"
    CONFIRMED = "Confirmed"
    CANCELLED = "Cancelled"


TRANSPORT_TRANSITIONS: Mapping[TransportStatus, FrozenSet[TransportStatus]] = {
    TransportStatus.SCHEDULED: frozenset(
        {TransportStatus.IN_TRANSIT, TransportStatus.CANCELLED}
    ),
    TransportStatus.IN_TRANSIT: frozenset({TransportStatus.DELIVERED}),
    TransportStatus.DELIVERED: frozenset({TransportStatus.CONFIRMED}),
    TransportStatus.CONFIRMED: frozenset(),
    TransportStatus.CANCELLED: frozenset(),
}

OPEN_TRANSPORT_STATUSES: FrozenSet[TransportStatus] = frozenset(
    {TransportStatus.SCHEDULED, TransportStatus.IN_TRANSIT}
)


# ----------------------------------------------------------------------
# Operational entities
# ----------------------------------------------------------------------
@dataclass(slots=True)
class MaterialRequestItem:
    id: str
    material_id: str
    requested_quantity: Decimal
    approved_quantity: Decimal = Decimal("0")
    allocated_quantity: Decimal = Decimal("0")
    status: RequestStatus = RequestStatus.REQUESTED
    blockchain_item_id: Optional[str] = None
    delivered_item_id: Optional[str] = None


@dataclass(slots=True)
class MaterialRequest:
    """Manufacturer's request for supplier material."""

    id: str
    request_number: str
    supplier_id: str
    manufacturer_id: str
    supply_chain_id: str
    items: List[MaterialRequestItem]
    status: RequestStatus = RequestStatus.REQUESTED
    order_id: Optional[str] = None
    blockchain_tx_hash: Optional[str] = None
    notes: str = ""
    rejection_reason: str = ""
    created_at: datetime = field(default_factory=utcnow)
    history: List[StatusChange] = field(default_factory=list)
    version: int = 0

    def item(self, item_id: str) -> Optional[MaterialRequestItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None


@dataclass(slots=True)
class BatchMaterial:
    material_id: str
    blockchain_item_id: str
    quantity: Decimal
    consumed_item_id: Optional[str] = None


@dataclass(slots=True)
class ProductionBatch:
    id: str
    batch_number: str
    manufacturer_id: str
    product_id: str
    supply_chain_id: str
    quantity: Decimal
    materials: List[BatchMaterial] = field(default_factory=list)
    status: BatchStatus = BatchStatus.PLANNED
    related_order_id: Optional[str] = None
    quality_notes: str = ""
    rejection_reason: str = ""
    product_item_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    history: List[StatusChange] = field(default_factory=list)
    version: int = 0


@dataclass(slots=True)
class OrderItem:
    product_id: str
    quantity: Decimal
    price: Decimal


@dataclass(slots=True)
class Order:
    id: str
    order_number: str
    customer_id: str
    supply_chain_id: str
    items: List[OrderItem]
    shipping_address: str
    requested_delivery_date: Optional[date] = None
    status: OrderStatus = OrderStatus.REQUESTED
    manufacturer_id: Optional[str] = None
    distributor_id: Optional[str] = None
    reserved_item_ids: List[str] = field(default_factory=list)
    transport_id: Optional[str] = None
    cancellation_reason: str = ""
    created_at: datetime = field(default_factory=utcnow)
    history: List[StatusChange] = field(default_factory=list)
    version: int = 0

    @property
    def total_amount(self) -> Decimal:
        return sum((item.quantity * item.price for item in self.items), Decimal("0"))


@dataclass(slots=True)
class Transport:
    id: str
    tracking_number: str
    distributor_id: str
    transport_type: TransportType
    supply_chain_id: str
    source_node_id: str
    destination_node_id: str
    scheduled_pickup_date: date
    scheduled_delivery_date: date
    related_request_id: Optional[str] = None
    related_order_id: Optional[str] = None
    status: TransportStatus = TransportStatus.SCHEDULED
    actual_pickup_date: Optional[datetime] = None
    actual_delivery_date: Optional[datetime] = None
    notes: List[str] = field(default_factory=list)
    cancellation_reason: str = ""
    created_at: datetime = field(default_factory=utcnow)
    history: List[StatusChange] = field(default_factory=list)
    version: int = 0

    @property
    def related_id(self) -> Optional[str]:
        return self.related_request_id or self.related_order_id


@dataclass(slots=True)
class RecyclingRecord:
    """Customer return of delivered product quantity for recycling."""

    id: str
    customer_id: str
    manufacturer_id: str
    product_id: str
    supply_chain_id: str
    quantity: Decimal
    returned_item_id: str
    order_id: Optional[str] = None
    processed: bool = False
    recycled_item_ids: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    version: int = 0


__all__ = [
    "as_quantity",
    "check_version",
    "parse_status",
    "utcnow",
    "NodeRole",
    "NodeStatus",
    "ChainStatus",
    "OPERATIONAL_CHAIN_STATUSES",
    "GraphNode",
    "GraphEdge",
    "SupplyChain",
    "AssignedUser",
    "ItemType",
    "MATERIAL_ITEM_TYPES",
    "ItemStatus",
    "LedgerItem",
    "LedgerTransaction",
    "TraceEntry",
    "Material",
    "BillOfMaterialsLine",
    "Product",
    "StatusChange",
    "RequestStatus",
    "BatchStatus",
    "BATCH_TRANSITIONS",
    "OrderStatus",
    "ORDER_TRANSITIONS",
    "TransportType",
    "TransportStatus",
    "TRANSPORT_TRANSITIONS",
    "OPEN_TRANSPORT_STATUSES",
    "MaterialRequestItem",
    "MaterialRequest",
    "BatchMaterial",
    "ProductionBatch",
    "OrderItem",
    "Order",
    "Transport",
    "RecyclingRecord",
]
