"""
API Tests — routes, envelopes and error status codes.
"""

import pytest
from httpx import AsyncClient

from tests.fakes import LAB_ID, OTHER_LAB_ID, SITE_ID


async def _prepared(client: AsyncClient, *aliquot_ids: str, ref: str = "SHP-API") -> int:
    response = await client.post(
        "/api/v1/shipments/", json={"sent_from_id": LAB_ID, "sent_to_id": OTHER_LAB_ID, "ref": ref}
    )
    assert response.status_code == 201
    shipment_id = response.json()["data"]["shipment_id"]
    for aliquot_id in aliquot_ids:
        added = await client.post(f"/api/v1/shipments/{shipment_id}/aliquots", json={"aliquot_id": aliquot_id})
        assert added.status_code == 200
    return shipment_id


@pytest.mark.asyncio
class TestHealthCheck:
    async def test_health_check(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"


@pytest.mark.asyncio
class TestLocationsAPI:
    async def test_labs_only_by_default(self, client: AsyncClient, seeded_db):
        response = await client.get("/api/v1/locations/")
        assert response.status_code == 200
        body = response.json()
        assert body["error"] is None
        assert [row["name"] for row in body["data"]] == ["Analysis Lab", "Central Biobank"]

    async def test_all_locations(self, client: AsyncClient, seeded_db):
        response = await client.get("/api/v1/locations/", params={"labs_only": "false"})
        assert {row["location_id"] for row in response.json()["data"]} == {LAB_ID, SITE_ID, OTHER_LAB_ID}

    async def test_location_not_found(self, client: AsyncClient, seeded_db):
        response = await client.get("/api/v1/locations/999")
        assert response.status_code == 404
        assert response.json() == {"data": None, "error": {"code": "NOT_FOUND", "message": "Location 999 not found"}}


@pytest.mark.asyncio
class TestAliquotsAPI:
    async def test_shippable_stock(self, client: AsyncClient, seeded_db):
        response = await client.get("/api/v1/aliquots/", params={"location_id": LAB_ID, "exclude": "ALQ-002"})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["total"] == 2
        assert [row["aliquot_id"] for row in data["rows"]] == ["ALQ-001", "ALQ-003"]

    async def test_aliquot_history(self, client: AsyncClient, seeded_db):
        await _prepared(client, "ALQ-001")

        response = await client.get("/api/v1/aliquots/ALQ-001/history")
        actions = [row["action"] for row in response.json()["data"]]
        assert actions == ["CREATED", "ASSIGNED"]

    async def test_unknown_aliquot(self, client: AsyncClient, seeded_db):
        response = await client.get("/api/v1/aliquots/NOPE")
        assert response.status_code == 404


@pytest.mark.asyncio
class TestShipmentsAPI:
    async def test_create_uses_current_user_as_sender(self, client: AsyncClient, seeded_db):
        response = await client.post("/api/v1/shipments/", json={"sent_from_id": LAB_ID, "ref": "SHP-9"})

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["status_id"] == 1
        assert data["sender_id"] == "user-42"
        assert data["sender"] == "Test Operator"

    async def test_full_round_trip(self, client: AsyncClient, seeded_db):
        shipment_id = await _prepared(client, "ALQ-001", "ALQ-003")

        sent = await client.post(f"/api/v1/shipments/{shipment_id}/send", json={"send_date": "2026-03-05T10:00:00"})
        assert sent.status_code == 200
        assert sent.json()["data"]["status_id"] == 2

        started = await client.post(f"/api/v1/shipments/{shipment_id}/reception")
        assert started.json()["data"]["status_id"] == 3

        condition = await client.put(
            f"/api/v1/shipments/{shipment_id}/aliquots/ALQ-003/condition", json={"condition_id": "THAWED"}
        )
        assert condition.json()["data"] == {"aliquot_id": "ALQ-003", "condition_id": "THAWED"}

        finished = await client.post(
            f"/api/v1/shipments/{shipment_id}/reception/finish",
            json={"reception_date": "2026-03-06T08:00:00", "reception_status_id": 1},
        )
        assert finished.status_code == 200
        data = finished.json()["data"]
        assert data["status_id"] == 4
        assert data["receiver_id"] == "user-42"

        details = (await client.get(f"/api/v1/shipments/{shipment_id}")).json()["data"]
        assert details["sent_from"] == "Central Biobank"
        assert details["sent_to"] == "Analysis Lab"
        statuses = {row["aliquot_id"]: (row["status_id"], row["location_id"]) for row in details["aliquots"]}
        assert statuses == {"ALQ-001": (1, OTHER_LAB_ID), "ALQ-003": (3, OTHER_LAB_ID)}

    async def test_send_empty_shipment_is_rejected(self, client: AsyncClient, seeded_db):
        shipment_id = await _prepared(client)

        response = await client.post(f"/api/v1/shipments/{shipment_id}/send")

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "DATA_MISSING"
        still = (await client.get(f"/api/v1/shipments/{shipment_id}")).json()["data"]
        assert still["status_id"] == 1

    async def test_invalid_transition_is_a_conflict(self, client: AsyncClient, seeded_db):
        shipment_id = await _prepared(client, "ALQ-001")

        response = await client.post(f"/api/v1/shipments/{shipment_id}/reception")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "INVALID_STATUS"

    async def test_aliquot_elsewhere_is_rejected(self, client: AsyncClient, seeded_db):
        await _prepared(client, "ALQ-001", ref="SHP-A")
        other = await _prepared(client, ref="SHP-B")

        response = await client.post(f"/api/v1/shipments/{other}/aliquots", json={"aliquot_id": "ALQ-001"})

        assert response.status_code == 409

    async def test_remove_then_delete(self, client: AsyncClient, seeded_db):
        shipment_id = await _prepared(client, "ALQ-002")

        removed = await client.delete(f"/api/v1/shipments/{shipment_id}/aliquots/ALQ-002")
        assert removed.json()["data"] == {"aliquot_id": "ALQ-002", "status_id": 1}

        deleted = await client.delete(f"/api/v1/shipments/{shipment_id}")
        assert deleted.json()["data"] == {"shipment_id": shipment_id}
        assert (await client.get(f"/api/v1/shipments/{shipment_id}")).status_code == 404

    async def test_list_for_destination_hides_preparing(self, client: AsyncClient, seeded_db):
        shipment_id = await _prepared(client, "ALQ-001")

        hidden = await client.get("/api/v1/shipments/", params={"active_location_id": OTHER_LAB_ID})
        assert hidden.json()["data"]["total"] == 0

        await client.post(f"/api/v1/shipments/{shipment_id}/send")
        visible = await client.get("/api/v1/shipments/", params={"active_location_id": OTHER_LAB_ID})
        assert [row["shipment_id"] for row in visible.json()["data"]["rows"]] == [shipment_id]

    async def test_patch_after_send(self, client: AsyncClient, seeded_db):
        shipment_id = await _prepared(client, "ALQ-001")
        await client.post(f"/api/v1/shipments/{shipment_id}/send")

        response = await client.patch(f"/api/v1/shipments/{shipment_id}", json={"sent_to_id": SITE_ID})

        assert response.status_code == 409


@pytest.mark.asyncio
class TestTrackingAPI:
    async def test_nothing_pending(self, client: AsyncClient, seeded_db):
        response = await client.post("/api/v1/tracking/shipments")
        assert response.status_code == 200
        assert response.json()["code"] == "idle"

    async def test_tracks_sent_shipment(self, client: AsyncClient, seeded_db, fake_ecrf):
        fake_ecrf.add_case("CASE-1", "ONCOIVD_001")
        shipment_id = await _prepared(client, "ALQ-001")
        await client.post(f"/api/v1/shipments/{shipment_id}/send")

        response = await client.post("/api/v1/tracking/shipments")

        body = response.json()
        assert body["code"] == "success"
        assert body["message"] == "Shipments updated successfully: 1, Errors: 0"
        assert len(fake_ecrf.tasks_with_code("SHIPMENT_TRACKING")) == 1

        again = await client.post("/api/v1/tracking/shipments")
        assert again.json()["code"] == "idle"

    async def test_receptions_idle(self, client: AsyncClient, seeded_db):
        response = await client.post("/api/v1/tracking/receptions")
        assert response.json() == {
            "code": "idle",
            "message": "No shipment receptions pending be tracked.",
            "details": [],
        }

    async def test_runs_documented_with_background_envelope(self, client: AsyncClient):
        schema = (await client.get("/openapi.json")).json()

        envelope = schema["components"]["schemas"]["BackgroundServiceResponse"]
        assert set(envelope["properties"]) == {"code", "message", "details"}
        assert schema["components"]["schemas"]["BackgroundStatus"]["enum"] == ["idle", "success", "error"]
        for path in ("shipments", "receptions", "imports/redcap", "imports/aliquots"):
            ok = schema["paths"][f"/api/v1/tracking/{path}"]["post"]["responses"]["200"]
            assert ok["content"]["application/json"]["schema"]["$ref"].endswith("/BackgroundServiceResponse")
