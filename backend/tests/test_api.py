"""API endpoint tests."""

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

API = "/api/v1"


class TestHealthCheck:
    """Test health check endpoints."""

    def test_health_check(self, client: TestClient):
        """Test health check returns healthy status."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_readiness(self, client: TestClient):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["checks"]["database"] == "healthy"

    def test_security_headers(self, client: TestClient):
        response = client.get("/health")
        assert response.headers["X-Content-Type-Options"] == "nosniff"


class TestInventoryRoutes:
    """Inventory ledger endpoints (camelCase JSON)."""

    @pytest.fixture
    def type_id(self, client: TestClient) -> int:
        response = client.post(
            f"{API}/inventory/cylinder-types",
            json={"code": "DOM-14", "capacityLabel": "14.2 kg", "description": "Domestic"},
        )
        assert response.status_code == 201
        assert response.json()["capacityLabel"] == "14.2 kg"
        return response.json()["id"]

    @pytest.fixture
    def stocked(self, client: TestClient, type_id: int) -> int:
        """100 filled in the yard and a registered truck."""
        response = client.post(
            f"{API}/inventory/initialize",
            json={
                "locationType": "YARD",
                "cylinders": [{"cylinderTypeId": type_id, "quantity": 100, "cylinderStatus": "FILLED"}],
                "actor": "ops",
            },
        )
        assert response.status_code == 201
        assert response.json()["totalQuantity"] == 100
        assert response.json()["referenceId"] == 0

        response = client.post(
            f"{API}/inventory/location-references",
            json={"locationType": "VEHICLE", "referenceId": 7, "referenceName": "Truck 7"},
        )
        assert response.status_code == 201
        assert response.json()["displayPath"] == ["Truck 7"]
        return type_id

    def movement(self, type_id: int, quantity: int, **overrides) -> dict:
        body = {
            "cylinderTypeId": type_id,
            "fromLocationType": "YARD",
            "toLocationType": "VEHICLE",
            "toLocationReferenceId": 7,
            "quantity": quantity,
            "cylinderStatus": "FILLED",
            "movementType": "TRANSFER",
        }
        body.update(overrides)
        return body

    def test_list_cylinder_types(self, client: TestClient, type_id: int):
        response = client.get(f"{API}/inventory/cylinder-types")
        assert response.status_code == 200
        assert [t["code"] for t in response.json()] == ["DOM-14"]

    def test_duplicate_cylinder_type(self, client: TestClient, type_id: int):
        response = client.post(
            f"{API}/inventory/cylinder-types", json={"code": "DOM-14", "capacityLabel": "14.2 kg"}
        )
        assert response.status_code == 422

    def test_available_quantity(self, client: TestClient, stocked: int):
        response = client.get(f"{API}/inventory/available/{stocked}/YARD/0/FILLED")
        assert response.status_code == 200
        assert response.json() == {"quantity": 100}

    def test_available_quantity_unknown_type(self, client: TestClient, stocked: int):
        response = client.get(f"{API}/inventory/available/9999/YARD/0/FILLED")
        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    def test_create_movement(self, client: TestClient, stocked: int):
        response = client.post(f"{API}/inventory/movements", json=self.movement(stocked, 30, actor="loader"))
        assert response.status_code == 201
        data = response.json()
        assert data["movementType"] == "TRANSFER"
        assert data["toReferenceId"] == 7
        assert data["actor"] == "loader"

        response = client.get(f"{API}/inventory", params={"locationType": "VEHICLE", "referenceId": 7})
        items = response.json()["items"]
        assert [(i["quantity"], i["referenceName"]) for i in items] == [(30, "Truck 7")]

    def test_insufficient_inventory_conflict(self, client: TestClient, stocked: int):
        response = client.post(f"{API}/inventory/movements", json=self.movement(stocked, 150))
        assert response.status_code == 409
        body = response.json()
        assert body["code"] == "insufficient_inventory"
        assert body["needed"] == 150
        assert body["available"] == 100

    def test_status_rule_violation(self, client: TestClient, stocked: int):
        response = client.post(
            f"{API}/inventory/movements",
            json=self.movement(stocked, 1, movementType="DELIVERY_EMPTY"),
        )
        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"

    def test_conversion_statuses_inferred(self, client: TestClient, stocked: int):
        response = client.post(
            f"{API}/inventory/movements",
            json=self.movement(stocked, 10, toLocationType="YARD", toLocationReferenceId=None, movementType="CONVERSION"),
        )
        assert response.status_code == 201
        assert response.json()["fromStatus"] == "FILLED"
        assert response.json()["toStatus"] == "EMPTY"

    def test_unknown_cylinder_type(self, client: TestClient, stocked: int):
        response = client.post(f"{API}/inventory/movements", json=self.movement(999, 1))
        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    def test_unregistered_vehicle(self, client: TestClient, stocked: int):
        response = client.post(f"{API}/inventory/movements", json=self.movement(stocked, 1, toLocationReferenceId=8))
        assert response.status_code == 404

    def test_malformed_request(self, client: TestClient, stocked: int):
        response = client.post(f"{API}/inventory/movements", json={"quantity": 1})
        assert response.status_code == 422

    def test_compound_replay(self, client: TestClient, stocked: int):
        body = {
            "idempotencyKey": "load-truck-7",
            "actor": "loader",
            "legs": [self.movement(stocked, 10), self.movement(stocked, 5)],
        }
        first = client.post(f"{API}/inventory/movements/compound", json=body)
        assert first.status_code == 201
        assert first.json()["created"] is True
        assert [m["quantity"] for m in first.json()["movements"]] == [10, 5]

        second = client.post(f"{API}/inventory/movements/compound", json=body)
        assert second.status_code == 200
        assert second.json()["created"] is False
        assert second.json()["batchId"] == first.json()["batchId"]

        response = client.get(f"{API}/inventory/available/{stocked}/VEHICLE/7/FILLED")
        assert response.json()["quantity"] == 15

    def test_compound_rolls_back(self, client: TestClient, stocked: int):
        body = {
            "idempotencyKey": "too-much",
            "legs": [self.movement(stocked, 60), self.movement(stocked, 60)],
        }
        response = client.post(f"{API}/inventory/movements/compound", json=body)
        assert response.status_code == 409
        assert client.get(f"{API}/inventory/available/{stocked}/YARD/0/FILLED").json()["quantity"] == 100

    def test_movement_log(self, client: TestClient, stocked: int):
        client.post(f"{API}/inventory/movements", json=self.movement(stocked, 3))
        response = client.get(f"{API}/inventory/movements", params={"movementType": "TRANSFER", "limit": 10})
        assert response.status_code == 200
        assert response.json()["total"] == 1
        assert response.json()["limit"] == 10

        assert client.get(f"{API}/inventory/movements", params={"limit": 0}).status_code == 422
        assert client.get(f"{API}/inventory/movements", params={"limit": 1001}).status_code == 422

    def test_reinitialize_rejected(self, client: TestClient, stocked: int):
        response = client.post(
            f"{API}/inventory/initialize",
            json={
                "locationType": "YARD",
                "cylinders": [{"cylinderTypeId": stocked, "quantity": 100, "cylinderStatus": "FILLED"}],
            },
        )
        assert response.status_code == 422

    def test_dashboard(self, client: TestClient, stocked: int):
        client.post(f"{API}/inventory/movements", json=self.movement(stocked, 40))
        response = client.get(f"{API}/inventory/dashboard")
        assert response.status_code == 200
        data = response.json()
        assert data["grandTotal"] == 100
        assert data["totals"]["VEHICLE"]["filled"] == 40
        assert data["cylinderTypes"][0]["totalQuantity"] == 100


class TestDeliveryFlow:
    """Order -> plan -> exchange -> delivered -> reconciliation over HTTP."""

    @pytest.fixture
    def assigned_order(self, client: TestClient, cylinder_type) -> dict:
        response = client.post(
            f"{API}/orders",
            json={
                "order_number": "ORD-100",
                "customer_id": 501,
                "customer_name": "Acme Kitchens",
                "lines": [{"cylinder_type_id": cylinder_type.id, "ordered_qty": 10}],
            },
        )
        assert response.status_code == 201
        order = response.json()
        assert order["status"] == "PENDING"
        assert order["expected_empty"] == 10

        response = client.post(f"{API}/orders/{order['id']}/status", json={"status": "CONFIRMED"})
        assert response.status_code == 200

        response = client.post(
            f"{API}/plans",
            json={
                "plan_date": datetime.now(timezone.utc).date().isoformat(),
                "vehicle_id": 7,
                "vehicle_number": "KA-01-0007",
                "driver_id": 11,
                "order_ids": [order["id"]],
            },
        )
        assert response.status_code == 201
        plan = response.json()
        assert plan["orders"][0]["status"] == "ASSIGNED"

        for location_type, reference_id, status in (("VEHICLE", 7, "FILLED"), ("CUSTOMER", 501, "EMPTY")):
            response = client.post(
                f"{API}/inventory/initialize",
                json={
                    "locationType": location_type,
                    "referenceId": reference_id,
                    "cylinders": [{"cylinderTypeId": cylinder_type.id, "quantity": 10, "cylinderStatus": status}],
                },
            )
            assert response.status_code == 201
        return {"order_id": order["id"], "plan_id": plan["id"], "type_id": cylinder_type.id}

    def record(self, client: TestClient, order_id: int, **overrides):
        body = {"order_id": order_id, "filled_delivered": 10, "empty_collected": 8, "variance_reason": "Two in use"}
        body.update(overrides)
        return client.post(f"{API}/exchange/record", json=body)

    def test_unknown_order(self, client: TestClient):
        response = client.get(f"{API}/orders/999")
        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    def test_delivered_requires_exchange(self, client: TestClient, assigned_order: dict):
        order_id = assigned_order["order_id"]
        for status in ("LOADED", "IN_TRANSIT"):
            assert client.post(f"{API}/orders/{order_id}/status", json={"status": status}).status_code == 200

        response = client.post(f"{API}/orders/{order_id}/status", json={"status": "DELIVERED"})
        assert response.status_code == 409
        assert response.json()["code"] == "state_transition_error"
        assert response.json()["missing_precondition"] == "exchange_record"

        assert self.record(client, order_id).status_code == 201
        response = client.post(f"{API}/orders/{order_id}/status", json={"status": "DELIVERED"})
        assert response.status_code == 200
        assert response.json()["status"] == "DELIVERED"

    def test_illegal_transition(self, client: TestClient, assigned_order: dict):
        response = client.post(f"{API}/orders/{assigned_order['order_id']}/status", json={"status": "PENDING"})
        assert response.status_code == 409

    def test_record_and_replay(self, client: TestClient, assigned_order: dict):
        first = self.record(client, assigned_order["order_id"])
        assert first.status_code == 201
        data = first.json()
        assert data["variance_qty"] == -2
        assert data["variance_type"] == "SHORTAGE"
        assert data["empty_destination"] == "YARD"

        replay = self.record(client, assigned_order["order_id"])
        assert replay.status_code == 200
        assert replay.json()["id"] == data["id"]

        conflict = self.record(client, assigned_order["order_id"], empty_collected=9, variance_reason="Recount")
        assert conflict.status_code == 422

        balance = client.get(f"{API}/inventory/available/{assigned_order['type_id']}/YARD/0/EMPTY")
        assert balance.json()["quantity"] == 8

    def test_missing_variance_reason(self, client: TestClient, assigned_order: dict):
        response = self.record(client, assigned_order["order_id"], variance_reason=None)
        assert response.status_code == 422
        assert response.json()["variance_type"] == "SHORTAGE"

    def test_insufficient_customer_stock(self, client: TestClient, assigned_order: dict):
        response = self.record(client, assigned_order["order_id"], empty_collected=15, variance_reason="Extra")
        assert response.status_code == 409
        body = response.json()
        assert body["code"] == "insufficient_customer_stock"
        assert body["needed"] == 15
        assert body["available"] == 10
        assert client.get(f"{API}/exchange/tracking").json()["total"] == 0

    def test_tracking_queries(self, client: TestClient, assigned_order: dict):
        exchange_id = self.record(client, assigned_order["order_id"]).json()["id"]

        listing = client.get(f"{API}/exchange/tracking", params={"plan_id": assigned_order["plan_id"]})
        assert listing.status_code == 200
        assert listing.json()["total"] == 1
        assert client.get(f"{API}/exchange/tracking", params={"variance_type": "MATCH"}).json()["total"] == 0

        detail = client.get(f"{API}/exchange/tracking/{exchange_id}")
        assert detail.status_code == 200
        assert detail.json()["order_number"] == "ORD-100"
        assert detail.json()["customer_name"] == "Acme Kitchens"

        ack = client.patch(
            f"{API}/exchange/tracking/{exchange_id}/acknowledge", json={"acknowledged_by": "Site manager"}
        )
        assert ack.status_code == 200
        assert ack.json()["customer_acknowledged"] is True

        summary = client.get(f"{API}/exchange/summary/{assigned_order['plan_id']}")
        assert summary.status_code == 200
        assert summary.json()["total_shortage_qty"] == 2
        assert summary.json()["pending_acknowledgments"] == 0

    def test_reconciliation_flow(self, client: TestClient, assigned_order: dict):
        plan_id = assigned_order["plan_id"]
        type_id = assigned_order["type_id"]
        self.record(client, assigned_order["order_id"])

        count = client.post(
            f"{API}/reconciliation/count-inventory",
            json={"plan_id": plan_id, "inventory_items": [{"cylinder_type_id": type_id, "actual_remaining": 0}]},
        )
        assert count.status_code == 201
        assert count.json()["items"][0]["severity"] == "ok"

        created = client.post(f"{API}/reconciliation/daily", json={"plan_id": plan_id, "reconciled_by": "supervisor"})
        assert created.status_code == 201
        reconciliation = created.json()
        assert reconciliation["total_shortages"] == 2
        assert len(reconciliation["variance_details"]) == 1

        close_body = {"closed_by": "manager"}
        blocked = client.post(f"{API}/reconciliation/daily/{reconciliation['id']}/close", json=close_body)
        assert blocked.status_code == 409

        detail_id = reconciliation["variance_details"][0]["id"]
        resolved = client.patch(
            f"{API}/reconciliation/variance/{detail_id}",
            json={"resolution_status": "RESOLVED", "resolved_by": "supervisor"},
        )
        assert resolved.status_code == 200
        assert resolved.json()["resolved_by"] == "supervisor"

        closed = client.post(f"{API}/reconciliation/daily/{reconciliation['id']}/close", json=close_body)
        assert closed.status_code == 200
        assert closed.json()["status"] == "CLOSED"

        listing = client.get(f"{API}/reconciliation/daily", params={"status": "CLOSED"})
        assert listing.json()["total"] == 1
        assert client.get(f"{API}/reconciliation/vehicle-inventory/{plan_id}").json()["total"] == 1
