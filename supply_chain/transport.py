"""Scheduling and tracking of material transports and product deliveries."""

from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from .domain import (
    OPEN_TRANSPORT_STATUSES,
    TRANSPORT_TRANSITIONS,
    NodeRole,
    OrderStatus,
    RequestStatus,
    StatusChange,
    SupplyChain,
    Transport,
    TransportStatus,
    TransportType,
    check_version,
    parse_status,
    utcnow,
)
from .errors import (
    InvalidArgumentError,
    InvalidScheduleError,
    InvalidTopologyError,
    InvalidTransitionError,
    NotFoundError,
)
from .graph import GraphRegistry
from .logging_config import get_logger
from .repository import RecordNotFoundError
from .requests import MaterialRequestEngine

if TYPE_CHECKING:
    from .orders import OrderEngine

logger = get_logger("transport")


def as_date(value: object, *, field_name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError as exc:
            raise InvalidArgumentError(
                f"{field_name} must be an ISO date, got {value!r}", field=field_name
            ) from exc
    raise InvalidArgumentError(f"{field_name} must be a date", field=field_name)


class TransportCoordinator:
    """Owns transport records and the request/order moves they trigger."""

    def __init__(
        self,
        database: Any,
        graph: GraphRegistry,
        requests: MaterialRequestEngine,
        *,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self._db = database
        self._graph = graph
        self._requests = requests
        self._orders: Optional["OrderEngine"] = None
        self._today = today or (lambda: utcnow().date())

    def today(self) -> date:
        return self._today()

    def bind_orders(self, orders: "OrderEngine") -> None:
        self._orders = orders

    @property
    def orders(self) -> "OrderEngine":
        if self._orders is None:
            raise RuntimeError("TransportCoordinator has no order engine bound")
        return self._orders

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_transport(self, transport_id: str) -> Transport:
        try:
            return self._db.transports.get(transport_id)
        except RecordNotFoundError as exc:
            raise NotFoundError(
                f"Transport {transport_id!r} not found", transport_id=transport_id
            ) from exc

    def list_transports(
        self,
        *,
        distributor_id: Optional[str] = None,
        supply_chain_id: Optional[str] = None,
        status: Optional[TransportStatus | str] = None,
        transport_type: Optional[TransportType | str] = None,
        related_id: Optional[str] = None,
    ) -> List[Transport]:
        wanted_status = parse_status(TransportStatus, status) if status is not None else None
        wanted_type = (
            parse_status(TransportType, transport_type) if transport_type is not None else None
        )
        transports = self._db.transports.find(
            lambda transport: (distributor_id is None or transport.distributor_id == distributor_id)
            and (supply_chain_id is None or transport.supply_chain_id == supply_chain_id)
            and (wanted_status is None or transport.status == wanted_status)
            and (wanted_type is None or transport.transport_type == wanted_type)
            and (related_id is None or transport.related_id == related_id)
        )
        transports.sort(key=lambda transport: transport.scheduled_pickup_date)
        return transports

    def transport_counts(self, distributor_id: Optional[str] = None) -> Dict[str, int]:
        counts = {status.value: 0 for status in TransportStatus}
        for transport in self.list_transports(distributor_id=distributor_id):
            counts[transport.status.value] += 1
        return counts

    def open_transport_for(self, related_id: str) -> Optional[Transport]:
        for transport in self._db.transports.find(
            lambda transport: transport.related_id == related_id
            and transport.status in OPEN_TRANSPORT_STATUSES
        ):
            return transport
        return None

    # ------------------------------------------------------------------
    # Validation shared with order fulfillment
    # ------------------------------------------------------------------
    def validate_dates(
        self, scheduled_pickup_date: object, scheduled_delivery_date: object
    ) -> Tuple[date, date]:
        pickup = as_date(scheduled_pickup_date, field_name="scheduled_pickup_date")
        delivery = as_date(scheduled_delivery_date, field_name="scheduled_delivery_date")
        if pickup < self._today():
            raise InvalidScheduleError(
                f"Pickup date {pickup.isoformat()} is in the past",
                scheduled_pickup_date=pickup.isoformat(),
            )
        if delivery <= pickup:
            raise InvalidScheduleError(
                "Delivery date must be after the pickup date",
                scheduled_pickup_date=pickup.isoformat(),
                scheduled_delivery_date=delivery.isoformat(),
            )
        return pickup, delivery

    def resolve_distributor(self, chain: SupplyChain, distributor_id: Optional[str]) -> str:
        if distributor_id:
            self._graph.node_for_user(chain, distributor_id, NodeRole.DISTRIBUTOR)
            return distributor_id
        candidates = self._graph.get_assigned_users(chain.id, NodeRole.DISTRIBUTOR)
        if not candidates:
            raise InvalidTopologyError(
                f"Supply chain {chain.id!r} has no distributor", chain_id=chain.id
            )
        return candidates[0].user_id

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def schedule(
        self,
        transport_type: TransportType | str,
        source_node_id: str,
        destination_node_id: str,
        related_id: str,
        scheduled_pickup_date: object,
        scheduled_delivery_date: object,
        *,
        distributor_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Transport:
        transport_type = parse_status(TransportType, transport_type)
        pickup, delivery = self.validate_dates(scheduled_pickup_date, scheduled_delivery_date)
        with self._db.transaction():
            if transport_type == TransportType.MATERIAL_TRANSPORT:
                request = self._requests.get_request(related_id)
                if request.status not in (
                    RequestStatus.ALLOCATED,
                    RequestStatus.READY_FOR_PICKUP,
                ):
                    raise InvalidTransitionError(
                        "material request",
                        request.id,
                        request.status.value,
                        RequestStatus.READY_FOR_PICKUP.value,
                    )
                chain_id = request.supply_chain_id
                sender, receiver = request.supplier_id, request.manufacturer_id
                sender_role, receiver_role = NodeRole.SUPPLIER, NodeRole.MANUFACTURER
            else:
                order = self.orders.get_order(related_id)
                if order.status != OrderStatus.READY_FOR_SHIPMENT:
                    raise InvalidTransitionError(
                        "order",
                        order.id,
                        order.status.value,
                        OrderStatus.IN_TRANSIT.value,
                        message=f"Order {order.id!r} is not ready for shipment",
                    )
                chain_id = order.supply_chain_id
                sender, receiver = order.manufacturer_id, order.customer_id
                sender_role, receiver_role = NodeRole.MANUFACTURER, NodeRole.CUSTOMER
            existing = self.open_transport_for(related_id)
            if existing is not None:
                raise InvalidTransitionError(
                    "transport",
                    existing.id,
                    existing.status.value,
                    TransportStatus.SCHEDULED.value,
                    message=f"{related_id!r} already has open transport {existing.id!r}",
                )
            chain = self._graph.require_operational(chain_id)
            self._check_endpoint(chain, source_node_id, sender, sender_role)
            self._check_endpoint(chain, destination_node_id, receiver, receiver_role)
            distributor = self.resolve_distributor(chain, distributor_id)
            transport = Transport(
                id=str(uuid4()),
                tracking_number=f"TRK-{uuid4().hex[:10].upper()}",
                distributor_id=distributor,
                transport_type=transport_type,
                supply_chain_id=chain.id,
                source_node_id=source_node_id,
                destination_node_id=destination_node_id,
                scheduled_pickup_date=pickup,
                scheduled_delivery_date=delivery,
            )
            if transport_type == TransportType.MATERIAL_TRANSPORT:
                transport.related_request_id = related_id
            else:
                transport.related_order_id = related_id
            transport.history.append(
                StatusChange(status=transport.status.value, actor_id=actor_id or distributor)
            )
            self._db.transports.add(transport.id, transport)
            if transport_type == TransportType.MATERIAL_TRANSPORT:
                self._requests.mark_ready_for_pickup(related_id, actor_id=actor_id or distributor)
            else:
                self.orders.attach_transport(related_id, transport)
        logger.info(
            "transport_scheduled",
            extra={
                "transport_id": transport.id,
                "transport_type": transport_type.value,
                "related_id": related_id,
                "distributor_id": distributor,
            },
        )
        return transport

    def record_pickup(
        self,
        transport_id: str,
        *,
        actor_id: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Transport:
        with self._db.transaction():
            transport = self.get_transport(transport_id)
            check_version(transport, expected_version, label="Transport")
            if transport.status in (
                TransportStatus.IN_TRANSIT,
                TransportStatus.DELIVERED,
                TransportStatus.CONFIRMED,
            ):
                return transport
            self._transition(transport, TransportStatus.IN_TRANSIT, actor_id)
            transport.actual_pickup_date = utcnow()
            self._db.transports.update(transport.id, transport)
            actor = actor_id or transport.distributor_id
            if transport.related_request_id:
                self._requests.mark_in_transit(transport.related_request_id, actor_id=actor)
            else:
                self.orders.mark_in_transit(transport.related_order_id, actor_id=actor)
        return transport

    def record_delivery(
        self,
        transport_id: str,
        *,
        actor_id: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Transport:
        with self._db.transaction():
            transport = self.get_transport(transport_id)
            check_version(transport, expected_version, label="Transport")
            if transport.status in (TransportStatus.DELIVERED, TransportStatus.CONFIRMED):
                return transport
            self._transition(transport, TransportStatus.DELIVERED, actor_id)
            transport.actual_delivery_date = utcnow()
            self._db.transports.update(transport.id, transport)
            actor = actor_id or transport.distributor_id
            if transport.related_request_id:
                self._requests.mark_delivered(transport.related_request_id, actor_id=actor)
            else:
                self.orders.mark_delivered(transport.related_order_id, actor_id=actor)
        return transport

    def confirm(self, transport_id: str, *, actor_id: Optional[str] = None) -> Transport:
        with self._db.transaction():
            transport = self.get_transport(transport_id)
            if transport.status == TransportStatus.CONFIRMED:
                return transport
            self._transition(transport, TransportStatus.CONFIRMED, actor_id)
            self._db.transports.update(transport.id, transport)
        return transport

    def cancel(
        self, transport_id: str, reason: str = "", *, actor_id: Optional[str] = None
    ) -> Transport:
        """Cancel a transport that has not been picked up yet."""

        with self._db.transaction():
            transport = self.get_transport(transport_id)
            if transport.status == TransportStatus.CANCELLED:
                return transport
            self._transition(transport, TransportStatus.CANCELLED, actor_id, note=reason)
            transport.cancellation_reason = reason
            self._db.transports.update(transport.id, transport)
            if transport.related_order_id:
                self.orders.detach_transport(transport.related_order_id, transport.id)
        return transport

    def add_notes(self, transport_id: str, note: str) -> Transport:
        if not note or not note.strip():
            raise InvalidArgumentError("Transport notes cannot be empty")
        with self._db.transaction():
            transport = self.get_transport(transport_id)
            transport.notes.append(note.strip())
            return self._db.transports.update(transport.id, transport)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _check_endpoint(
        self, chain: SupplyChain, node_id: str, user_id: Optional[str], role: NodeRole
    ) -> None:
        node = chain.nodes.get(node_id)
        if node is None:
            raise InvalidTopologyError(
                f"Node {node_id!r} does not belong to supply chain {chain.id!r}", node_id=node_id
            )
        if node.role != role or (user_id and node.assigned_user_id != user_id):
            raise InvalidTopologyError(
                f"Node {node_id!r} is not the {role.value} node of {user_id!r}",
                node_id=node_id,
            )

    def _transition(
        self,
        transport: Transport,
        target: TransportStatus,
        actor_id: Optional[str],
        *,
        note: str = "",
    ) -> None:
        if target not in TRANSPORT_TRANSITIONS[transport.status]:
            raise InvalidTransitionError(
                "transport", transport.id, transport.status.value, target.value
            )
        previous = transport.status
        transport.status = target
        transport.history.append(
            StatusChange(status=target.value, actor_id=actor_id or transport.distributor_id, note=note)
        )
        logger.info(
            "transport_transition",
            extra={
                "transport_id": transport.id,
                "from_status": previous.value,
                "to_status": target.value,
            },
        )


__all__ = ["TransportCoordinator", "as_date"]
