"""HTTP surface: routes, serialisation and error mapping."""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from supply_chain.config import Settings
from supply_chain.errors import ErrorKind
from supply_chain.web.app import STATUS_BY_KIND, create_app


@pytest.fixture
def client():
    app = create_app(settings=Settings(admin_wallet_address="0xadmin", log_level="WARNING"))
    with TestClient(app) as test_client:
        yield test_client


def post(client, path, body=None, expected=200):
    response = client.post(path, json=body or {})
    assert response.status_code == expected, response.text
    return response.json()


@pytest.fixture
def api_chain(client):
    chain = post(client, "/chains", {"name": "Bike frames", "created_by": "admin"}, 201)
    nodes = {}
    for index, (role, user) in enumerate(
        [
            ("Supplier", "supplier-1"),
            ("Manufacturer", "maker-1"),
            ("Distributor", "carrier-1"),
            ("Customer", "customer-1"),
        ]
    ):
        nodes[role] = post(
            client,
            f"/chains/{chain['id']}/nodes",
            {"role": role, "x": index * 100, "assigned_user_id": user},
            201,
        )
    for source, target in [
        ("Supplier", "Manufacturer"),
        ("Manufacturer", "Distributor"),
        ("Distributor", "Customer"),
    ]:
        post(
            client,
            f"/chains/{chain['id']}/edges",
            {"source_id": nodes[source]["id"], "target_id": nodes[target]["id"]},
            201,
        )
    finalized = post(client, f"/chains/{chain['id']}/finalize")
    assert finalized["blockchain_status"] == "FINALIZED"
    material = post(
        client,
        "/materials",
        {
            "supplier_id": "supplier-1",
            "supply_chain_id": chain["id"],
            "name": "Aluminum",
            "unit": "kg",
            "quantity": 1000,
        },
        201,
    )
    product = post(
        client,
        "/products",
        {
            "manufacturer_id": "maker-1",
            "supply_chain_id": chain["id"],
            "name": "Product X",
            "price": 50,
            "required_materials": [{"material_id": material["id"], "quantity_per_unit": 2}],
        },
        201,
    )
    return {"chain": chain, "nodes": nodes, "material": material, "product": product}


def test_health_reports_ledger_tracking(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "ledger_tracking": True}


def test_request_allocation_over_http(client, api_chain):
    request = post(
        client,
        "/requests",
        {
            "manufacturer_id": "maker-1",
            "supplier_id": "supplier-1",
            "supply_chain_id": api_chain["chain"]["id"],
            "items": [{"material_id": api_chain["material"]["id"], "quantity": 500}],
        },
        201,
    )
    item_id = request["items"][0]["id"]

    post(client, f"/requests/{request['id']}/approve", {"approvals": {item_id: 500}})
    allocated = post(client, f"/requests/{request['id']}/allocate")

    assert allocated["status"] == "Allocated"
    lot_id = allocated["items"][0]["blockchain_item_id"]
    lot = client.get(f"/ledger/items/{lot_id}").json()
    assert lot["quantity"] == "500"
    assert lot["item_type"] == "allocated-material"
    trace = client.get(f"/ledger/items/{lot_id}/trace").json()
    assert [entry["item"]["id"] for entry in trace][-1] == lot_id
    assert client.get("/ledger/verify").json() == {"valid": True}


def test_errors_carry_kind_and_status(client, api_chain):
    chain_id = api_chain["chain"]["id"]

    missing = client.get("/requests/unknown")
    assert missing.status_code == 404
    assert missing.json()["kind"] == "NotFound"

    locked = client.post(f"/chains/{chain_id}/nodes", json={"role": "QA"})
    assert locked.status_code == 409
    assert locked.json()["kind"] == "ChainFinalized"

    bad_approval = post(
        client,
        "/requests",
        {
            "manufacturer_id": "maker-1",
            "supplier_id": "supplier-1",
            "supply_chain_id": chain_id,
            "items": [{"material_id": api_chain["material"]["id"], "quantity": 5}],
        },
        201,
    )
    response = client.post(
        f"/requests/{bad_approval['id']}/approve",
        json={"approvals": {bad_approval["items"][0]["id"]: 6}},
    )
    assert response.status_code == STATUS_BY_KIND[ErrorKind(response.json()["kind"])]
    assert response.json()["kind"] == "InvalidApproval"

    blocked = client.delete(
        f"/chains/{chain_id}/nodes/{api_chain['nodes']['Manufacturer']['id']}",
        params={"as_admin": True},
    )
    assert blocked.status_code == 409
    assert blocked.json()["kind"] == "NodeHasDependencies"
    report = client.get(
        f"/chains/{chain_id}/nodes/{api_chain['nodes']['Manufacturer']['id']}/dependencies"
    ).json()
    assert report["can_delete"] is False
    assert report["blocking"]["material requests"] == 1


def test_short_stock_order_reports_shortages(client, api_chain):
    order = post(
        client,
        "/orders",
        {
            "customer_id": "customer-1",
            "items": [{"product_id": api_chain["product"]["id"], "quantity": 10}],
            "shipping_address": "Hauptstrasse 1, Berlin",
        },
        201,
    )
    today = client.app.state.service.transport.today()

    response = client.post(
        f"/orders/{order['id']}/fulfill",
        json={"scheduled_delivery_date": (today + timedelta(days=2)).isoformat()},
    )

    assert response.status_code == 409
    body = response.json()
    assert body["kind"] == "InsufficientInventory"
    assert body["details"]["shortages"][0]["available"] == "0"
    assert client.get(f"/orders/{order['id']}").json()["status"] == "Requested"

    past = client.post(
        f"/orders/{order['id']}/fulfill",
        json={
            "scheduled_pickup_date": (today - timedelta(days=1)).isoformat(),
            "scheduled_delivery_date": (today + timedelta(days=2)).isoformat(),
        },
    )
    assert past.status_code == 422
    assert past.json()["kind"] == "InvalidSchedule"


def test_transport_counts_are_zero_filled(client):
    counts = client.get("/transports/counts").json()

    assert counts == {
        "Scheduled": 0,
        "In Transit": 0,
        "Delivered": 0,
        "Confirmed": 0,
        "Cancelled": 0,
    }


def test_demo_data_seeds_a_shipped_order():
    app = create_app(
        settings=Settings(admin_wallet_address="0xadmin", seed_demo_data=True, log_level="WARNING")
    )
    with TestClient(app) as client:
        chains = client.get("/chains").json()
        orders = client.get("/orders", params={"customer_id": "radhaus"}).json()
        counts = client.get("/transports/counts").json()
        verified = client.get("/ledger/verify").json()

    assert len(chains) == 1
    assert orders[0]["status"] == "Ready for Shipment"
    assert counts["Scheduled"] == 1
    assert counts["Delivered"] == 1
    assert verified == {"valid": True}


def test_malformed_body_gets_a_structured_error(client):
    response = client.post("/materials/unknown/stock", json={"quantity": "lots"})

    assert response.status_code == 422
    body = response.json()
    assert body["kind"] == "InvalidArgument"
    assert body["message"] == "Malformed request"
    assert [error["field"] for error in body["details"]["errors"]] == ["body.quantity"]
