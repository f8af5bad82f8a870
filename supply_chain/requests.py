"""Material requests from manufacturers to suppliers."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional
from uuid import uuid4

from .catalog import Catalog
from .domain import (
    ItemStatus,
    ItemType,
    MaterialRequest,
    MaterialRequestItem,
    NodeRole,
    RequestStatus,
    StatusChange,
    as_quantity,
    check_version,
    parse_status,
)
from .errors import (
    InvalidApprovalError,
    InvalidArgumentError,
    InvalidTransitionError,
    NotFoundError,
)
from .graph import GraphRegistry
from .ledger import Ledger
from .logging_config import get_logger
from .repository import RecordNotFoundError

logger = get_logger("requests")


def derive_status(items: Iterable[MaterialRequestItem]) -> RequestStatus:
    """Request status is the least advanced of its non-rejected items."""

    live = [item.status for item in items if item.status != RequestStatus.REJECTED]
    if not live:
        return RequestStatus.REJECTED
    return min(live, key=lambda status: status.rank)


def _request_lines(items: Iterable[Any]) -> List[MaterialRequestItem]:
    lines: List[MaterialRequestItem] = []
    for entry in items:
        if isinstance(entry, Mapping):
            material_id = entry.get("material_id")
            quantity = entry.get("quantity", entry.get("requested_quantity"))
        else:
            material_id, quantity = entry
        amount = as_quantity(quantity, field_name="requested_quantity")
        if not material_id or amount <= 0:
            raise InvalidArgumentError(
                "Request items need a material and a positive quantity",
                material_id=material_id,
            )
        lines.append(
            MaterialRequestItem(id=str(uuid4()), material_id=material_id, requested_quantity=amount)
        )
    if not lines:
        raise InvalidArgumentError("A material request needs at least one item")
    return lines


class MaterialRequestEngine:
    """Create, approve, reject and allocate material requests."""

    def __init__(
        self, database: Any, ledger: Ledger, graph: GraphRegistry, catalog: Catalog
    ) -> None:
        self._db = database
        self._ledger = ledger
        self._graph = graph
        self._catalog = catalog

    derive_status = staticmethod(derive_status)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_request(self, request_id: str) -> MaterialRequest:
        try:
            return self._db.material_requests.get(request_id)
        except RecordNotFoundError as exc:
            raise NotFoundError(
                f"Material request {request_id!r} not found", request_id=request_id
            ) from exc

    def list_requests(
        self,
        *,
        supplier_id: Optional[str] = None,
        manufacturer_id: Optional[str] = None,
        supply_chain_id: Optional[str] = None,
        status: Optional[RequestStatus | str] = None,
    ) -> List[MaterialRequest]:
        wanted = parse_status(RequestStatus, status) if status is not None else None
        requests = self._db.material_requests.find(
            lambda request: (supplier_id is None or request.supplier_id == supplier_id)
            and (manufacturer_id is None or request.manufacturer_id == manufacturer_id)
            and (supply_chain_id is None or request.supply_chain_id == supply_chain_id)
            and (wanted is None or request.status == wanted)
        )
        requests.sort(key=lambda request: request.created_at)
        return requests

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def create_request(
        self,
        manufacturer_id: str,
        supplier_id: str,
        supply_chain_id: str,
        items: Iterable[Any],
        *,
        order_id: Optional[str] = None,
        notes: str = "",
    ) -> MaterialRequest:
        lines = _request_lines(items)
        with self._db.transaction():
            chain = self._graph.require_operational(supply_chain_id)
            self._graph.require_flow(
                chain, supplier_id, NodeRole.SUPPLIER, manufacturer_id, NodeRole.MANUFACTURER
            )
            for line in lines:
                material = self._catalog.get_material(line.material_id)
                if (
                    material.supplier_id != supplier_id
                    or material.supply_chain_id != supply_chain_id
                    or not material.is_active
                ):
                    raise NotFoundError(
                        f"Supplier {supplier_id!r} offers no material {line.material_id!r} "
                        f"in supply chain {supply_chain_id!r}",
                        material_id=line.material_id,
                    )
            if order_id is not None and order_id not in self._db.orders:
                raise NotFoundError(f"Order {order_id!r} not found", order_id=order_id)
            request = MaterialRequest(
                id=str(uuid4()),
                request_number=f"REQ-{uuid4().hex[:8].upper()}",
                supplier_id=supplier_id,
                manufacturer_id=manufacturer_id,
                supply_chain_id=supply_chain_id,
                items=lines,
                order_id=order_id,
                notes=notes,
            )
            request.history.append(
                StatusChange(status=request.status.value, actor_id=manufacturer_id)
            )
            self._db.material_requests.add(request.id, request)
        logger.info(
            "request_created",
            extra={
                "request_id": request.id,
                "supplier_id": supplier_id,
                "manufacturer_id": manufacturer_id,
                "item_count": len(lines),
            },
        )
        return request

    def approve(
        self,
        request_id: str,
        approvals: Mapping[str, object],
        *,
        actor_id: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> MaterialRequest:
        """Record the supplier's approved quantity for each item.

        Items missing from ``approvals`` are approved at zero; an item
        approved at zero is rejected, and a request whose items are all
        rejected becomes Rejected.
        """

        with self._db.transaction():
            request = self.get_request(request_id)
            check_version(request, expected_version, label="Material request")
            amounts = self._validated_approvals(request, approvals)
            if request.status != RequestStatus.REQUESTED:
                if request.status == RequestStatus.APPROVED and all(
                    item.approved_quantity == amounts[item.id] for item in request.items
                ):
                    return request
                raise InvalidTransitionError(
                    "material request", request.id, request.status.value, RequestStatus.APPROVED.value
                )
            for item in request.items:
                item.approved_quantity = amounts[item.id]
                item.status = (
                    RequestStatus.APPROVED if item.approved_quantity > 0 else RequestStatus.REJECTED
                )
            request.status = derive_status(request.items)
            if request.status == RequestStatus.REJECTED:
                request.rejection_reason = "No quantity approved"
            request.history.append(
                StatusChange(status=request.status.value, actor_id=actor_id or request.supplier_id)
            )
            self._db.material_requests.update(request.id, request)
        logger.info(
            "request_approved",
            extra={"request_id": request_id, "status": request.status.value},
        )
        return request

    def reject(
        self, request_id: str, reason: str, *, actor_id: Optional[str] = None
    ) -> MaterialRequest:
        if not reason or not reason.strip():
            raise InvalidArgumentError("A rejection needs a reason")
        with self._db.transaction():
            request = self.get_request(request_id)
            if request.status == RequestStatus.REJECTED:
                return request
            if request.status not in (RequestStatus.REQUESTED, RequestStatus.APPROVED):
                raise InvalidTransitionError(
                    "material request", request.id, request.status.value, RequestStatus.REJECTED.value
                )
            for item in request.items:
                item.status = RequestStatus.REJECTED
            request.status = RequestStatus.REJECTED
            request.rejection_reason = reason.strip()
            request.history.append(
                StatusChange(
                    status=request.status.value,
                    actor_id=actor_id or request.supplier_id,
                    note=request.rejection_reason,
                )
            )
            self._db.material_requests.update(request.id, request)
        logger.info("request_rejected", extra={"request_id": request_id})
        return request

    def allocate(
        self,
        request_id: str,
        *,
        actor_id: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> MaterialRequest:
        """Set aside approved quantities as allocated-material ledger items.

        Each approved item draws on the oldest supplier lot of its material
        that covers the approved quantity; without such a lot a fresh lot is
        minted for it.
        """

        with self._db.transaction():
            request = self.get_request(request_id)
            check_version(request, expected_version, label="Material request")
            if (
                request.status != RequestStatus.REJECTED
                and request.status.rank >= RequestStatus.ALLOCATED.rank
            ):
                return request
            if request.status != RequestStatus.APPROVED:
                raise InvalidTransitionError(
                    "material request", request.id, request.status.value, RequestStatus.ALLOCATED.value
                )
            actor = actor_id or request.supplier_id
            metadata = {"allocated_to": request.manufacturer_id, "request_id": request.id}
            tx_hash: Optional[str] = None
            for item in request.items:
                if item.status != RequestStatus.APPROVED or item.blockchain_item_id:
                    continue
                lot = next(
                    (
                        candidate
                        for candidate in self._catalog.material_lots(
                            item.material_id, request.supplier_id
                        )
                        if candidate.item_type == ItemType.RAW_MATERIAL
                        and candidate.quantity >= item.approved_quantity
                    ),
                    None,
                )
                if lot is not None:
                    _, allocated = self._ledger.transfer(
                        lot.id,
                        request.supplier_id,
                        item.approved_quantity,
                        status=ItemStatus.CREATED,
                        item_type=ItemType.ALLOCATED_MATERIAL,
                        metadata=metadata,
                        actor_id=actor,
                    )
                else:
                    allocated = self._ledger.mint(
                        request.supplier_id,
                        ItemType.ALLOCATED_MATERIAL,
                        item.approved_quantity,
                        request.supply_chain_id,
                        reference_id=item.material_id,
                        metadata=metadata,
                        actor_id=actor,
                    )
                item.allocated_quantity = item.approved_quantity
                item.blockchain_item_id = allocated.id
                item.status = RequestStatus.ALLOCATED
                if allocated.transaction_hashes:
                    tx_hash = allocated.transaction_hashes[-1]
            request.status = derive_status(request.items)
            request.blockchain_tx_hash = tx_hash or request.blockchain_tx_hash
            request.history.append(StatusChange(status=request.status.value, actor_id=actor))
            self._db.material_requests.update(request.id, request)
        logger.info(
            "request_allocated",
            extra={"request_id": request_id, "tx_hash": request.blockchain_tx_hash},
        )
        return request

    # ------------------------------------------------------------------
    # Transport driven transitions
    # ------------------------------------------------------------------
    def mark_ready_for_pickup(
        self, request_id: str, *, actor_id: Optional[str] = None
    ) -> MaterialRequest:
        return self._advance(
            request_id,
            RequestStatus.READY_FOR_PICKUP,
            frozenset({RequestStatus.ALLOCATED}),
            actor_id,
        )

    def mark_in_transit(self, request_id: str, *, actor_id: Optional[str] = None) -> MaterialRequest:
        with self._db.transaction():
            request = self._advance(
                request_id,
                RequestStatus.IN_TRANSIT,
                frozenset({RequestStatus.ALLOCATED, RequestStatus.READY_FOR_PICKUP}),
                actor_id,
            )
            for item in request.items:
                if item.blockchain_item_id and item.status == RequestStatus.IN_TRANSIT:
                    self._ledger.update_status(
                        item.blockchain_item_id, ItemStatus.IN_TRANSIT, actor_id=actor_id
                    )
            return request

    def mark_delivered(self, request_id: str, *, actor_id: Optional[str] = None) -> MaterialRequest:
        """Hand the allocated lots over to the manufacturer."""

        with self._db.transaction():
            request = self._advance(
                request_id,
                RequestStatus.DELIVERED,
                frozenset({RequestStatus.IN_TRANSIT}),
                actor_id,
            )
            changed = False
            for item in request.items:
                if item.status != RequestStatus.DELIVERED or item.delivered_item_id:
                    continue
                if not item.blockchain_item_id:
                    continue
                lot = self._ledger.get_item(item.blockchain_item_id)
                _, delivered = self._ledger.transfer(
                    lot.id,
                    request.manufacturer_id,
                    lot.quantity,
                    status=ItemStatus.CREATED,
                    actor_id=actor_id,
                )
                item.delivered_item_id = delivered.id
                changed = True
            if changed:
                self._db.material_requests.update(request.id, request)
            return request

    def _advance(
        self,
        request_id: str,
        target: RequestStatus,
        allowed_from: FrozenSet[RequestStatus],
        actor_id: Optional[str],
    ) -> MaterialRequest:
        with self._db.transaction():
            request = self.get_request(request_id)
            if request.status == target or (
                request.status != RequestStatus.REJECTED and request.status.rank > target.rank
            ):
                return request
            if request.status not in allowed_from:
                raise InvalidTransitionError(
                    "material request", request.id, request.status.value, target.value
                )
            for item in request.items:
                if item.status in allowed_from:
                    item.status = target
            previous = request.status
            request.status = derive_status(request.items)
            request.history.append(StatusChange(status=request.status.value, actor_id=actor_id))
            self._db.material_requests.update(request.id, request)
        logger.info(
            "request_transition",
            extra={
                "request_id": request_id,
                "from_status": previous.value,
                "to_status": request.status.value,
            },
        )
        return request

    def _validated_approvals(
        self, request: MaterialRequest, approvals: Mapping[str, object]
    ) -> Dict[str, Decimal]:
        amounts: Dict[str, Decimal] = {item.id: Decimal("0") for item in request.items}
        for item_id, raw in approvals.items():
            item = request.item(item_id)
            if item is None:
                raise InvalidApprovalError(
                    f"Material request {request.id!r} has no item {item_id!r}", item_id=item_id
                )
            amount = as_quantity(raw, field_name="approved_quantity")
            if amount < 0 or amount > item.requested_quantity:
                raise InvalidApprovalError(
                    f"Approved quantity {amount} for item {item_id!r} must be within "
                    f"0..{item.requested_quantity}",
                    item_id=item_id,
                )
            amounts[item_id] = amount
        return amounts


__all__ = ["MaterialRequestEngine", "derive_status"]
