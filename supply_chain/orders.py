"""Customer orders: stock reservation, shipment and completion."""

from __future__ import annotations

from collections import OrderedDict
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional
from uuid import uuid4

from .catalog import Catalog
from .domain import (
    ORDER_TRANSITIONS,
    ItemStatus,
    ItemType,
    LedgerItem,
    NodeRole,
    Order,
    OrderItem,
    OrderStatus,
    StatusChange,
    Transport,
    TransportStatus,
    TransportType,
    as_quantity,
    check_version,
    parse_status,
)
from .errors import (
    InsufficientInventoryError,
    InvalidArgumentError,
    InvalidTransitionError,
    NotFoundError,
)
from .graph import GraphRegistry
from .ledger import Ledger
from .logging_config import get_logger
from .repository import RecordNotFoundError
from .transport import TransportCoordinator, as_date

logger = get_logger("orders")


class OrderEngine:
    """Order lifecycle on top of the ledger and the transport coordinator."""

    def __init__(
        self,
        database: Any,
        ledger: Ledger,
        graph: GraphRegistry,
        catalog: Catalog,
        transport: TransportCoordinator,
    ) -> None:
        self._db = database
        self._ledger = ledger
        self._graph = graph
        self._catalog = catalog
        self._transport = transport
        transport.bind_orders(self)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_order(self, order_id: str) -> Order:
        try:
            return self._db.orders.get(order_id)
        except RecordNotFoundError as exc:
            raise NotFoundError(f"Order {order_id!r} not found", order_id=order_id) from exc

    def list_orders(
        self,
        *,
        customer_id: Optional[str] = None,
        manufacturer_id: Optional[str] = None,
        supply_chain_id: Optional[str] = None,
        status: Optional[OrderStatus | str] = None,
    ) -> List[Order]:
        wanted = parse_status(OrderStatus, status) if status is not None else None
        orders = self._db.orders.find(
            lambda order: (customer_id is None or order.customer_id == customer_id)
            and (manufacturer_id is None or order.manufacturer_id == manufacturer_id)
            and (supply_chain_id is None or order.supply_chain_id == supply_chain_id)
            and (wanted is None or order.status == wanted)
        )
        orders.sort(key=lambda order: order.created_at)
        return orders

    def product_lots(self, manufacturer_id: str, product_id: str) -> List[LedgerItem]:
        """Active product lots a manufacturer can still ship, oldest first."""

        return self._ledger.find_items(
            lambda item: item.is_active
            and item.item_type == ItemType.PRODUCT
            and item.owner_id == manufacturer_id
            and item.reference_id == product_id
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def create_order(
        self,
        customer_id: str,
        items: Iterable[Any],
        shipping_address: str,
        requested_delivery_date: object = None,
    ) -> Order:
        """Place an order against catalog products. Nothing is reserved yet."""

        if not shipping_address or not shipping_address.strip():
            raise InvalidArgumentError("An order needs a shipping address")
        delivery_date = (
            as_date(requested_delivery_date, field_name="requested_delivery_date")
            if requested_delivery_date is not None
            else None
        )
        with self._db.transaction():
            lines: List[OrderItem] = []
            chain_ids = set()
            manufacturers = set()
            for entry in items:
                if isinstance(entry, Mapping):
                    product_id = entry.get("product_id")
                    quantity, price = entry.get("quantity"), entry.get("price")
                else:
                    product_id, quantity = entry[0], entry[1]
                    price = entry[2] if len(entry) > 2 else None
                product = self._catalog.get_product(product_id)
                if not product.is_active:
                    raise InvalidArgumentError(
                        f"Product {product_id!r} is no longer offered", product_id=product_id
                    )
                amount = as_quantity(quantity)
                if amount <= 0:
                    raise InvalidArgumentError(
                        "Order quantities must be positive", product_id=product_id
                    )
                unit_price = as_quantity(price, field_name="price") if price is not None else product.price
                lines.append(OrderItem(product_id=product.id, quantity=amount, price=unit_price))
                chain_ids.add(product.supply_chain_id)
                manufacturers.add(product.manufacturer_id)
            if not lines:
                raise InvalidArgumentError("An order needs at least one item")
            if len(chain_ids) != 1 or len(manufacturers) != 1:
                raise InvalidArgumentError(
                    "An order's products must come from one manufacturer of one supply chain"
                )
            chain = self._graph.require_operational(chain_ids.pop())
            self._graph.node_for_user(chain, customer_id, NodeRole.CUSTOMER)
            order = Order(
                id=str(uuid4()),
                order_number=f"ORD-{uuid4().hex[:8].upper()}",
                customer_id=customer_id,
                supply_chain_id=chain.id,
                items=lines,
                shipping_address=shipping_address.strip(),
                requested_delivery_date=delivery_date,
            )
            order.history.append(StatusChange(status=order.status.value, actor_id=customer_id))
            self._db.orders.add(order.id, order)
        logger.info(
            "order_created",
            extra={"order_id": order.id, "customer_id": customer_id, "total": str(order.total_amount)},
        )
        return order

    def transition(
        self,
        order: Order,
        target: OrderStatus,
        *,
        actor_id: Optional[str] = None,
        note: str = "",
    ) -> Order:
        """Apply ``target`` to ``order`` in memory, enforcing the transition table."""

        if target not in ORDER_TRANSITIONS[order.status]:
            raise InvalidTransitionError("order", order.id, order.status.value, target.value)
        previous = order.status
        order.status = target
        order.history.append(StatusChange(status=target.value, actor_id=actor_id, note=note))
        logger.info(
            "order_transition",
            extra={"order_id": order.id, "from_status": previous.value, "to_status": target.value},
        )
        return order

    def start_production(
        self,
        order_id: str,
        manufacturer_id: Optional[str] = None,
        *,
        expected_version: Optional[int] = None,
    ) -> Order:
        with self._db.transaction():
            order = self.get_order(order_id)
            check_version(order, expected_version, label="Order")
            if order.status == OrderStatus.IN_PRODUCTION:
                return order
            manufacturer = self._manufacturer_of(order)
            if manufacturer_id is not None and manufacturer_id != manufacturer:
                raise InvalidArgumentError(
                    f"Order {order_id!r} is for products of {manufacturer!r}",
                    manufacturer_id=manufacturer_id,
                )
            self.transition(order, OrderStatus.IN_PRODUCTION, actor_id=manufacturer)
            order.manufacturer_id = manufacturer
            return self._db.orders.update(order.id, order)

    def fulfill_from_stock(
        self,
        order_id: str,
        *,
        scheduled_delivery_date: object,
        scheduled_pickup_date: object = None,
        distributor_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Order:
        """Reserve finished stock for every line and schedule the delivery.

        Every line is checked before anything is written, so a shortage on
        one line leaves the order and the manufacturer's lots untouched.
        """

        with self._db.transaction():
            order = self.get_order(order_id)
            check_version(order, expected_version, label="Order")
            if order.status in (
                OrderStatus.READY_FOR_SHIPMENT,
                OrderStatus.IN_TRANSIT,
                OrderStatus.DELIVERED,
                OrderStatus.COMPLETED,
            ):
                return order
            if OrderStatus.READY_FOR_SHIPMENT not in ORDER_TRANSITIONS[order.status]:
                raise InvalidTransitionError(
                    "order", order.id, order.status.value, OrderStatus.READY_FOR_SHIPMENT.value
                )
            pickup = (
                scheduled_pickup_date
                if scheduled_pickup_date is not None
                else self._transport.today()
            )
            self._transport.validate_dates(pickup, scheduled_delivery_date)
            manufacturer = order.manufacturer_id or self._manufacturer_of(order)
            chain = self._graph.require_operational(order.supply_chain_id)
            distributor = self._transport.resolve_distributor(chain, distributor_id)
            source = self._graph.node_for_user(chain, manufacturer, NodeRole.MANUFACTURER)
            destination = self._graph.node_for_user(chain, order.customer_id, NodeRole.CUSTOMER)

            needed: Dict[str, Decimal] = OrderedDict()
            for line in order.items:
                needed[line.product_id] = needed.get(line.product_id, Decimal("0")) + line.quantity
            lots_by_product: Dict[str, List[LedgerItem]] = {}
            shortages = []
            for product_id, quantity in needed.items():
                lots = self.product_lots(manufacturer, product_id)
                available = sum((lot.quantity for lot in lots), Decimal("0"))
                if available < quantity:
                    shortages.append(
                        {
                            "product_id": product_id,
                            "requested": str(quantity),
                            "available": str(available),
                        }
                    )
                lots_by_product[product_id] = lots
            if shortages:
                raise InsufficientInventoryError(
                    f"Manufacturer {manufacturer!r} cannot cover order {order_id!r} from stock",
                    shortages=shortages,
                )

            reserved: List[str] = []
            for product_id, quantity in needed.items():
                moved = self._ledger.consume(
                    [lot.id for lot in lots_by_product[product_id]],
                    order.customer_id,
                    quantity,
                    status=ItemStatus.CREATED,
                    metadata={"order_id": order.id},
                    actor_id=actor_id or manufacturer,
                )
                reserved.extend(item.id for item in moved)
            order.manufacturer_id = manufacturer
            order.reserved_item_ids = reserved
            self.transition(order, OrderStatus.READY_FOR_SHIPMENT, actor_id=actor_id or manufacturer)
            self._db.orders.update(order.id, order)
            self._transport.schedule(
                TransportType.PRODUCT_DELIVERY,
                source.id,
                destination.id,
                order.id,
                pickup,
                scheduled_delivery_date,
                distributor_id=distributor,
                actor_id=actor_id or manufacturer,
            )
            return self.get_order(order.id)

    def cancel(
        self, order_id: str, reason: str = "", *, actor_id: Optional[str] = None
    ) -> Order:
        """Cancel before shipment, handing reserved stock back to the manufacturer."""

        with self._db.transaction():
            order = self.get_order(order_id)
            if order.status == OrderStatus.CANCELLED:
                return order
            self.transition(
                order, OrderStatus.CANCELLED, actor_id=actor_id or order.customer_id, note=reason
            )
            order.cancellation_reason = reason
            for item_id in order.reserved_item_ids:
                item = self._ledger.get_item(item_id)
                if item.is_active and item.owner_id == order.customer_id:
                    self._ledger.transfer(
                        item.id,
                        order.manufacturer_id,
                        item.quantity,
                        status=ItemStatus.CREATED,
                        metadata={"released_from_order": order.id},
                        actor_id=actor_id or order.customer_id,
                    )
            self._db.orders.update(order.id, order)
            if order.transport_id:
                transport = self._transport.get_transport(order.transport_id)
                if transport.status == TransportStatus.SCHEDULED:
                    self._transport.cancel(
                        transport.id, reason or "Order cancelled", actor_id=actor_id
                    )
            return self.get_order(order.id)

    def confirm_delivery(self, order_id: str, *, actor_id: Optional[str] = None) -> Order:
        """Customer sign-off: Delivered -> Completed."""

        with self._db.transaction():
            order = self.get_order(order_id)
            if order.status == OrderStatus.COMPLETED:
                return order
            self.transition(order, OrderStatus.COMPLETED, actor_id=actor_id or order.customer_id)
            self._db.orders.update(order.id, order)
            if order.transport_id:
                transport = self._transport.get_transport(order.transport_id)
                if transport.status == TransportStatus.DELIVERED:
                    self._transport.confirm(transport.id, actor_id=actor_id or order.customer_id)
            return self.get_order(order.id)

    # ------------------------------------------------------------------
    # Transport driven transitions
    # ------------------------------------------------------------------
    def attach_transport(self, order_id: str, transport: Transport) -> Order:
        with self._db.transaction():
            order = self.get_order(order_id)
            order.transport_id = transport.id
            order.distributor_id = transport.distributor_id
            return self._db.orders.update(order.id, order)

    def detach_transport(self, order_id: str, transport_id: str) -> Order:
        with self._db.transaction():
            order = self.get_order(order_id)
            if order.transport_id != transport_id or order.status != OrderStatus.READY_FOR_SHIPMENT:
                return order
            order.transport_id = None
            return self._db.orders.update(order.id, order)

    def mark_in_transit(self, order_id: str, *, actor_id: Optional[str] = None) -> Order:
        return self._carry(order_id, OrderStatus.IN_TRANSIT, ItemStatus.IN_TRANSIT, actor_id)

    def mark_delivered(self, order_id: str, *, actor_id: Optional[str] = None) -> Order:
        return self._carry(order_id, OrderStatus.DELIVERED, ItemStatus.COMPLETED, actor_id)

    def _carry(
        self,
        order_id: str,
        target: OrderStatus,
        lot_status: ItemStatus,
        actor_id: Optional[str],
    ) -> Order:
        with self._db.transaction():
            order = self.get_order(order_id)
            if order.status == target:
                return order
            self.transition(order, target, actor_id=actor_id)
            for item_id in order.reserved_item_ids:
                self._ledger.update_status(item_id, lot_status, actor_id=actor_id)
            return self._db.orders.update(order.id, order)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _manufacturer_of(self, order: Order) -> str:
        if order.manufacturer_id:
            return order.manufacturer_id
        return self._catalog.get_product(order.items[0].product_id).manufacturer_id


__all__ = ["OrderEngine"]
