"""Demonstration script for the supply chain orchestration core."""

from __future__ import annotations

from datetime import timedelta
from pprint import pprint

from . import Settings, SupplyChainService, TransportType, configure_logging
from .services import build_demo_chain


def main() -> None:
    configure_logging("WARNING")
    service = SupplyChainService(settings=Settings(admin_wallet_address="0xadmin"))

    # Lieferkette und Stammdaten
    demo = build_demo_chain(service)

    # Kundenauftrag ohne Lagerbestand: Material anfordern
    order = service.orders.create_order(
        "radhaus",
        [{"product_id": demo.product_id, "quantity": 20}],
        "Hafenstraße 4, 20457 Hamburg",
    )
    print("Materialbedarf für", order.order_number)
    for shortage in service.material_shortage_report(order.id):
        print(f" - {shortage.name}: {shortage.shortage} fehlen")
    request = service.plan_material_requests(order.id)[0]

    service.requests.approve(request.id, {request.items[0].id: request.items[0].requested_quantity})
    request = service.requests.allocate(request.id)

    today = service.transport.today()
    transport = service.transport.schedule(
        TransportType.MATERIAL_TRANSPORT,
        demo.supplier_node_id,
        demo.manufacturer_node_id,
        request.id,
        today,
        today + timedelta(days=2),
    )
    service.transport.record_pickup(transport.id)
    service.transport.record_delivery(transport.id)
    request = service.requests.get_request(request.id)
    print("Anforderung", request.request_number, "->", request.status.value)

    # Fertigung
    delivered_lot = request.items[0].delivered_item_id
    batch = service.production.create_batch(
        "rahmenbau",
        demo.product_id,
        demo.chain_id,
        20,
        [delivered_lot],
        related_order_id=order.id,
    )
    service.production.start_quality_check(batch.id)
    batch = service.production.complete(batch.id, "Schweißnähte geprüft")
    print("Charge", batch.batch_number, "->", batch.status.value)

    # Auslieferung
    order = service.orders.fulfill_from_stock(
        order.id, scheduled_delivery_date=today + timedelta(days=4)
    )
    service.transport.record_pickup(order.transport_id)
    service.transport.record_delivery(order.transport_id)
    order = service.orders.confirm_delivery(order.id)
    print("Auftrag", order.order_number, "->", order.status.value)

    print("\nHerkunft der ausgelieferten Rahmen")
    for entry in service.trace(order.reserved_item_ids[0]):
        item = entry.item
        print(f" {item.sequence:>3} {item.item_type.value:<20} {item.owner_id:<15} {item.quantity}")

    overview = service.chain_overview(demo.chain_id)
    print("\nÜbersicht")
    pprint(
        {
            "orders": overview.order_counts,
            "transports": overview.transport_counts,
            "ledger_verified": overview.ledger_verified,
        }
    )


if __name__ == "__main__":  # pragma: no cover - manual execution
    main()
