"""FastAPI-based JSON interface for the supply chain core."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config import Settings, configure, get_settings
from ..errors import ErrorKind, InvalidArgumentError, SupplyChainError
from ..logging_config import configure_logging, get_logger
from ..repository import InMemoryDatabase
from ..services import SupplyChainService, ensure_demo_data
from ..storage import SupplyChainDatabase

logger = get_logger("web")

STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONCURRENT_MODIFICATION: 409,
    ErrorKind.INVALID_ARGUMENT: 422,
    ErrorKind.INVALID_APPROVAL: 422,
    ErrorKind.INVALID_SCHEDULE: 422,
    ErrorKind.INVALID_TOPOLOGY: 422,
    ErrorKind.INVALID_TRANSITION: 409,
    ErrorKind.CHAIN_FINALIZED: 409,
    ErrorKind.NODE_HAS_DEPENDENCIES: 409,
    ErrorKind.ITEM_INACTIVE: 409,
    ErrorKind.INSUFFICIENT_QUANTITY: 409,
    ErrorKind.INSUFFICIENT_INVENTORY: 409,
    ErrorKind.DUPLICATE_RECORD: 409,
}


def to_json(value: Any) -> Any:
    return jsonable_encoder(value, custom_encoder={Decimal: str})


# ----------------------------------------------------------------------
# Request bodies
# ----------------------------------------------------------------------
class ChainIn(BaseModel):
    name: str
    created_by: str


class NodeIn(BaseModel):
    role: str
    x: float = 0.0
    y: float = 0.0
    assigned_user_id: Optional[str] = None
    label: str = ""


class NodeUpdate(BaseModel):
    role: Optional[str] = None
    assigned_user_id: Optional[str] = None
    label: Optional[str] = None
    status: Optional[str] = None


class EdgeIn(BaseModel):
    source_id: str
    target_id: str


class MaterialIn(BaseModel):
    supplier_id: str
    supply_chain_id: str
    name: str
    unit: str
    description: str = ""
    quantity: Optional[Decimal] = None


class StockIn(BaseModel):
    quantity: Decimal


class BomLineIn(BaseModel):
    material_id: str
    quantity_per_unit: Decimal


class ProductIn(BaseModel):
    manufacturer_id: str
    supply_chain_id: str
    name: str
    price: Decimal
    required_materials: List[BomLineIn] = Field(default_factory=list)
    description: str = ""


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    price: Optional[Decimal] = None
    description: Optional[str] = None
    required_materials: Optional[List[BomLineIn]] = None
    expected_version: Optional[int] = None


class RequestItemIn(BaseModel):
    material_id: str
    quantity: Decimal


class MaterialRequestIn(BaseModel):
    manufacturer_id: str
    supplier_id: str
    supply_chain_id: str
    items: List[RequestItemIn]
    order_id: Optional[str] = None
    notes: str = ""


class ApprovalIn(BaseModel):
    approvals: Dict[str, Decimal]
    actor_id: Optional[str] = None
    expected_version: Optional[int] = None


class ReasonIn(BaseModel):
    reason: str = ""
    actor_id: Optional[str] = None


class VersionIn(BaseModel):
    actor_id: Optional[str] = None
    expected_version: Optional[int] = None


class BatchMaterialIn(BaseModel):
    blockchain_item_id: str
    quantity: Optional[Decimal] = None
    material_id: Optional[str] = None


class BatchIn(BaseModel):
    manufacturer_id: str
    product_id: str
    supply_chain_id: str
    quantity: Decimal
    materials: List[BatchMaterialIn]
    related_order_id: Optional[str] = None


class CompleteIn(BaseModel):
    quality_notes: str
    actor_id: Optional[str] = None
    expected_version: Optional[int] = None


class OrderItemIn(BaseModel):
    product_id: str
    quantity: Decimal
    price: Optional[Decimal] = None


class OrderIn(BaseModel):
    customer_id: str
    items: List[OrderItemIn]
    shipping_address: str
    requested_delivery_date: Optional[date] = None


class FulfillIn(BaseModel):
    scheduled_delivery_date: date
    scheduled_pickup_date: Optional[date] = None
    distributor_id: Optional[str] = None
    actor_id: Optional[str] = None
    expected_version: Optional[int] = None


class TransportIn(BaseModel):
    transport_type: str
    source_node_id: str
    destination_node_id: str
    related_id: str
    scheduled_pickup_date: date
    scheduled_delivery_date: date
    distributor_id: Optional[str] = None


class StartProductionIn(BaseModel):
    manufacturer_id: Optional[str] = None
    expected_version: Optional[int] = None


class NoteIn(BaseModel):
    note: str


class ReturnIn(BaseModel):
    customer_id: str
    item_id: str
    quantity: Decimal
    order_id: Optional[str] = None


# ----------------------------------------------------------------------
# Application
# ----------------------------------------------------------------------
def create_app(
    database_path: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    settings = configure(settings) if settings is not None else get_settings()
    configure_logging(settings.log_level)
    path = database_path if database_path is not None else settings.database_path
    database = SupplyChainDatabase(path) if path else InMemoryDatabase()
    service = SupplyChainService(database, settings=settings)
    if settings.seed_demo_data:
        ensure_demo_data(service)

    app = FastAPI(title="Supply Chain Orchestration")
    app.state.service = service
    app.state.database = database

    @app.on_event("shutdown")
    async def shutdown_event() -> None:  # pragma: no cover - framework hook
        database.close()

    @app.exception_handler(SupplyChainError)
    async def supply_chain_error(request: Request, exc: SupplyChainError) -> JSONResponse:
        logger.warning(
            "request_rejected",
            extra={"kind": exc.kind.value, "path": request.url.path, "method": request.method},
        )
        return JSONResponse(
            status_code=STATUS_BY_KIND.get(exc.kind, 400), content=to_json(exc.to_dict())
        )

    @app.exception_handler(RequestValidationError)
    async def malformed_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        error = InvalidArgumentError(
            "Malformed request",
            errors=[
                {"field": ".".join(str(part) for part in problem["loc"]), "message": problem["msg"]}
                for problem in exc.errors()
            ],
        )
        return await supply_chain_error(request, error)

    def svc(request: Request) -> SupplyChainService:
        return request.app.state.service

    @app.get("/health")
    async def health(request: Request):
        return {
            "status": "ok",
            "ledger_tracking": svc(request).ledger.tracking_enabled(),
        }

    # ------------------------------------------------------------------
    # Supply chains
    # ------------------------------------------------------------------
    @app.post("/chains", status_code=201)
    def create_chain(body: ChainIn, request: Request):
        return to_json(svc(request).graph.create_chain(body.name, body.created_by))

    @app.get("/chains")
    def list_chains(request: Request, user_id: Optional[str] = None):
        graph = svc(request).graph
        chains = graph.chains_for_user(user_id) if user_id else graph.list_chains()
        return to_json(chains)

    @app.get("/chains/{chain_id}")
    def get_chain(chain_id: str, request: Request):
        return to_json(svc(request).graph.get_chain(chain_id))

    @app.get("/chains/{chain_id}/overview")
    def chain_overview(chain_id: str, request: Request):
        return to_json(svc(request).chain_overview(chain_id))

    @app.post("/chains/{chain_id}/nodes", status_code=201)
    def add_node(chain_id: str, body: NodeIn, request: Request):
        node = svc(request).graph.add_node(
            chain_id,
            body.role,
            (body.x, body.y),
            assigned_user_id=body.assigned_user_id,
            label=body.label,
        )
        return to_json(node)

    @app.patch("/chains/{chain_id}/nodes/{node_id}")
    def update_node(chain_id: str, node_id: str, body: NodeUpdate, request: Request):
        graph = svc(request).graph
        if body.role is not None or body.assigned_user_id is not None or body.label is not None:
            graph.update_node(
                chain_id,
                node_id,
                role=body.role,
                assigned_user_id=body.assigned_user_id,
                label=body.label,
            )
        if body.status is not None:
            graph.update_node_status(chain_id, node_id, body.status)
        return to_json(graph.get_node(chain_id, node_id))

    @app.delete("/chains/{chain_id}/nodes/{node_id}", status_code=204)
    def delete_node(chain_id: str, node_id: str, request: Request, as_admin: bool = False):
        svc(request).graph.delete_node(chain_id, node_id, as_admin=as_admin)

    @app.get("/chains/{chain_id}/nodes/{node_id}/dependencies")
    def node_dependencies(chain_id: str, node_id: str, request: Request):
        report = svc(request).graph.check_node_dependencies(chain_id, node_id)
        return {
            "node_id": report.node_id,
            "can_delete": report.can_delete,
            "dependents": report.dependents,
            "blocking": report.blocking,
            "message": report.message,
        }

    @app.post("/chains/{chain_id}/edges", status_code=201)
    def add_edge(chain_id: str, body: EdgeIn, request: Request):
        return to_json(svc(request).graph.add_edge(chain_id, body.source_id, body.target_id))

    @app.delete("/chains/{chain_id}/edges/{edge_id}", status_code=204)
    def delete_edge(chain_id: str, edge_id: str, request: Request):
        svc(request).graph.delete_edge(chain_id, edge_id)

    @app.post("/chains/{chain_id}/finalize")
    def finalize_chain(chain_id: str, request: Request):
        return to_json(svc(request).graph.finalize(chain_id))

    @app.post("/chains/{chain_id}/confirm")
    def confirm_chain(chain_id: str, request: Request):
        return to_json(svc(request).graph.confirm(chain_id))

    @app.get("/chains/{chain_id}/users")
    def assigned_users(chain_id: str, request: Request, role: Optional[str] = None):
        return to_json(svc(request).graph.get_assigned_users(chain_id, role))

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------
    @app.post("/materials", status_code=201)
    def create_material(body: MaterialIn, request: Request):
        material = svc(request).catalog.create_material(
            body.supplier_id,
            body.supply_chain_id,
            body.name,
            body.unit,
            description=body.description,
            quantity=body.quantity,
        )
        return to_json(material)

    @app.get("/materials")
    def list_materials(
        request: Request,
        supplier_id: Optional[str] = None,
        supply_chain_id: Optional[str] = None,
    ):
        return to_json(
            svc(request).catalog.list_materials(
                supplier_id=supplier_id, supply_chain_id=supply_chain_id
            )
        )

    @app.post("/materials/{material_id}/stock", status_code=201)
    def add_stock(material_id: str, body: StockIn, request: Request):
        return to_json(svc(request).catalog.add_stock(material_id, body.quantity))

    @app.post("/products", status_code=201)
    def create_product(body: ProductIn, request: Request):
        product = svc(request).catalog.create_product(
            body.manufacturer_id,
            body.supply_chain_id,
            body.name,
            body.price,
            [line.model_dump() for line in body.required_materials],
            description=body.description,
        )
        return to_json(product)

    @app.get("/products")
    def list_products(
        request: Request,
        manufacturer_id: Optional[str] = None,
        supply_chain_id: Optional[str] = None,
        active_only: bool = False,
    ):
        return to_json(
            svc(request).catalog.list_products(
                manufacturer_id=manufacturer_id,
                supply_chain_id=supply_chain_id,
                active_only=active_only,
            )
        )

    @app.patch("/products/{product_id}")
    def update_product(product_id: str, body: ProductUpdate, request: Request):
        lines = (
            [line.model_dump() for line in body.required_materials]
            if body.required_materials is not None
            else None
        )
        product = svc(request).catalog.update_product(
            product_id,
            name=body.name,
            price=body.price,
            description=body.description,
            required_materials=lines,
            expected_version=body.expected_version,
        )
        return to_json(product)

    @app.delete("/products/{product_id}")
    def deactivate_product(product_id: str, request: Request):
        return to_json(svc(request).catalog.deactivate_product(product_id))

    # ------------------------------------------------------------------
    # Material requests
    # ------------------------------------------------------------------
    @app.post("/requests", status_code=201)
    def create_request(body: MaterialRequestIn, request: Request):
        material_request = svc(request).requests.create_request(
            body.manufacturer_id,
            body.supplier_id,
            body.supply_chain_id,
            [item.model_dump() for item in body.items],
            order_id=body.order_id,
            notes=body.notes,
        )
        return to_json(material_request)

    @app.get("/requests")
    def list_requests(
        request: Request,
        supplier_id: Optional[str] = None,
        manufacturer_id: Optional[str] = None,
        status: Optional[str] = None,
    ):
        return to_json(
            svc(request).requests.list_requests(
                supplier_id=supplier_id, manufacturer_id=manufacturer_id, status=status
            )
        )

    @app.get("/requests/{request_id}")
    def get_request(request_id: str, request: Request):
        return to_json(svc(request).requests.get_request(request_id))

    @app.post("/requests/{request_id}/approve")
    def approve_request(request_id: str, body: ApprovalIn, request: Request):
        return to_json(
            svc(request).requests.approve(
                request_id,
                body.approvals,
                actor_id=body.actor_id,
                expected_version=body.expected_version,
            )
        )

    @app.post("/requests/{request_id}/reject")
    def reject_request(request_id: str, body: ReasonIn, request: Request):
        return to_json(
            svc(request).requests.reject(request_id, body.reason, actor_id=body.actor_id)
        )

    @app.post("/requests/{request_id}/allocate")
    def allocate_request(request_id: str, body: VersionIn, request: Request):
        return to_json(
            svc(request).requests.allocate(
                request_id, actor_id=body.actor_id, expected_version=body.expected_version
            )
        )

    # ------------------------------------------------------------------
    # Production
    # ------------------------------------------------------------------
    @app.post("/batches", status_code=201)
    def create_batch(body: BatchIn, request: Request):
        batch = svc(request).production.create_batch(
            body.manufacturer_id,
            body.product_id,
            body.supply_chain_id,
            body.quantity,
            [line.model_dump() for line in body.materials],
            related_order_id=body.related_order_id,
        )
        return to_json(batch)

    @app.get("/batches")
    def list_batches(
        request: Request,
        manufacturer_id: Optional[str] = None,
        status: Optional[str] = None,
    ):
        return to_json(
            svc(request).production.list_batches(manufacturer_id=manufacturer_id, status=status)
        )

    @app.get("/batches/{batch_id}")
    def get_batch(batch_id: str, request: Request):
        return to_json(svc(request).production.get_batch(batch_id))

    @app.post("/batches/{batch_id}/quality-check")
    def start_quality_check(batch_id: str, body: VersionIn, request: Request):
        return to_json(
            svc(request).production.start_quality_check(
                batch_id, actor_id=body.actor_id, expected_version=body.expected_version
            )
        )

    @app.post("/batches/{batch_id}/complete")
    def complete_batch(batch_id: str, body: CompleteIn, request: Request):
        return to_json(
            svc(request).production.complete(
                batch_id,
                body.quality_notes,
                actor_id=body.actor_id,
                expected_version=body.expected_version,
            )
        )

    @app.post("/batches/{batch_id}/reject")
    def reject_batch(batch_id: str, body: ReasonIn, request: Request):
        return to_json(
            svc(request).production.reject(batch_id, body.reason, actor_id=body.actor_id)
        )

    @app.get("/inventory/{manufacturer_id}/{product_id}")
    def available_inventory(manufacturer_id: str, product_id: str, request: Request):
        quantity = svc(request).production.available_inventory(manufacturer_id, product_id)
        return {"manufacturer_id": manufacturer_id, "product_id": product_id, "quantity": str(quantity)}

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    @app.post("/orders", status_code=201)
    def create_order(body: OrderIn, request: Request):
        order = svc(request).orders.create_order(
            body.customer_id,
            [item.model_dump() for item in body.items],
            body.shipping_address,
            body.requested_delivery_date,
        )
        return to_json(order)

    @app.get("/orders")
    def list_orders(
        request: Request,
        customer_id: Optional[str] = None,
        manufacturer_id: Optional[str] = None,
        status: Optional[str] = None,
    ):
        return to_json(
            svc(request).orders.list_orders(
                customer_id=customer_id, manufacturer_id=manufacturer_id, status=status
            )
        )

    @app.get("/orders/{order_id}")
    def get_order(order_id: str, request: Request):
        return to_json(svc(request).orders.get_order(order_id))

    @app.post("/orders/{order_id}/start-production")
    def start_production(order_id: str, body: StartProductionIn, request: Request):
        return to_json(
            svc(request).orders.start_production(
                order_id, body.manufacturer_id, expected_version=body.expected_version
            )
        )

    @app.post("/orders/{order_id}/plan-materials")
    def plan_materials(order_id: str, request: Request):
        return to_json(svc(request).plan_material_requests(order_id))

    @app.post("/orders/{order_id}/fulfill")
    def fulfill_order(order_id: str, body: FulfillIn, request: Request):
        return to_json(
            svc(request).orders.fulfill_from_stock(
                order_id,
                scheduled_delivery_date=body.scheduled_delivery_date,
                scheduled_pickup_date=body.scheduled_pickup_date,
                distributor_id=body.distributor_id,
                actor_id=body.actor_id,
                expected_version=body.expected_version,
            )
        )

    @app.post("/orders/{order_id}/cancel")
    def cancel_order(order_id: str, body: ReasonIn, request: Request):
        return to_json(svc(request).orders.cancel(order_id, body.reason, actor_id=body.actor_id))

    @app.post("/orders/{order_id}/confirm-delivery")
    def confirm_delivery(order_id: str, body: VersionIn, request: Request):
        return to_json(svc(request).orders.confirm_delivery(order_id, actor_id=body.actor_id))

    # ------------------------------------------------------------------
    # Transports
    # ------------------------------------------------------------------
    @app.post("/transports", status_code=201)
    def schedule_transport(body: TransportIn, request: Request):
        transport = svc(request).transport.schedule(
            body.transport_type,
            body.source_node_id,
            body.destination_node_id,
            body.related_id,
            body.scheduled_pickup_date,
            body.scheduled_delivery_date,
            distributor_id=body.distributor_id,
        )
        return to_json(transport)

    @app.get("/transports")
    def list_transports(
        request: Request,
        distributor_id: Optional[str] = None,
        status: Optional[str] = None,
        transport_type: Optional[str] = None,
    ):
        return to_json(
            svc(request).transport.list_transports(
                distributor_id=distributor_id, status=status, transport_type=transport_type
            )
        )

    @app.get("/transports/counts")
    def transport_counts(request: Request, distributor_id: Optional[str] = None):
        return svc(request).transport.transport_counts(distributor_id)

    @app.get("/transports/{transport_id}")
    def get_transport(transport_id: str, request: Request):
        return to_json(svc(request).transport.get_transport(transport_id))

    @app.post("/transports/{transport_id}/pickup")
    def record_pickup(transport_id: str, body: VersionIn, request: Request):
        return to_json(
            svc(request).transport.record_pickup(
                transport_id, actor_id=body.actor_id, expected_version=body.expected_version
            )
        )

    @app.post("/transports/{transport_id}/delivery")
    def record_delivery(transport_id: str, body: VersionIn, request: Request):
        return to_json(
            svc(request).transport.record_delivery(
                transport_id, actor_id=body.actor_id, expected_version=body.expected_version
            )
        )

    @app.post("/transports/{transport_id}/confirm")
    def confirm_transport(transport_id: str, body: VersionIn, request: Request):
        return to_json(svc(request).transport.confirm(transport_id, actor_id=body.actor_id))

    @app.post("/transports/{transport_id}/cancel")
    def cancel_transport(transport_id: str, body: ReasonIn, request: Request):
        return to_json(
            svc(request).transport.cancel(transport_id, body.reason, actor_id=body.actor_id)
        )

    @app.post("/transports/{transport_id}/notes")
    def add_transport_notes(transport_id: str, body: NoteIn, request: Request):
        return to_json(svc(request).transport.add_notes(transport_id, body.note))

    # ------------------------------------------------------------------
    # Ledger and recycling
    # ------------------------------------------------------------------
    @app.get("/ledger/items/{item_id}")
    def get_ledger_item(item_id: str, request: Request):
        return to_json(svc(request).ledger.get_item(item_id))

    @app.get("/ledger/items/{item_id}/trace")
    def trace_item(item_id: str, request: Request):
        return to_json(svc(request).trace(item_id))

    @app.get("/ledger/owners/{owner_id}")
    def items_by_owner(owner_id: str, request: Request, active_only: bool = False):
        return to_json(svc(request).ledger.get_items_by_owner(owner_id, active_only=active_only))

    @app.get("/ledger/transactions/{tx_hash}")
    def get_transaction(tx_hash: str, request: Request):
        return to_json(svc(request).ledger.get_transaction(tx_hash))

    @app.get("/ledger/verify")
    def verify_ledger(request: Request):
        return {"valid": svc(request).ledger.verify_chain()}

    @app.post("/returns", status_code=201)
    def return_product(body: ReturnIn, request: Request):
        record = svc(request).recycling.return_product(
            body.customer_id, body.item_id, body.quantity, order_id=body.order_id
        )
        return to_json(record)

    @app.post("/returns/{record_id}/process")
    def process_return(record_id: str, request: Request):
        return to_json(svc(request).recycling.process_to_materials(record_id))

    return app


__all__ = ["create_app", "STATUS_BY_KIND"]
