"""HTTP surface via TestClient."""

from tests.conftest import ADMIN, CERTIFIER, FARM, LOGISTICS, OUTSIDER, PLANT, RETAILER


def _as(principal):
    return {"X-Principal": principal}


def _create(client, details="Lot-42"):
    response = client.post("/api/batches", json={"details": details}, headers=_as(FARM))
    assert response.status_code == 201
    return response.json()["id"]


def _walk_to_packaged(client, batch_id):
    for stage in ("Slaughtered", "Processed", "Packaged"):
        response = client.post(f"/api/batches/{batch_id}/stage", json={"stage": stage}, headers=_as(PLANT))
        assert response.status_code == 200


class TestRolesAPI:
    def test_grant_and_check(self, client):
        response = client.post("/api/roles/grant", json={"principal": "P7", "role": "Retailer"},
                               headers=_as(ADMIN))
        assert response.status_code == 200
        assert response.json() == {"principal": "P7", "role": "Retailer", "granted": True}
        assert client.get("/api/roles/P7/Retailer").json()["granted"] is True
        assert client.get("/api/roles/P7").json() == {"principal": "P7", "roles": ["Retailer"]}

    def test_revoke(self, client):
        response = client.post("/api/roles/revoke", json={"principal": RETAILER, "role": "Retailer"},
                               headers=_as(ADMIN))
        assert response.json()["granted"] is False
        assert client.get(f"/api/roles/{RETAILER}/Retailer").json()["granted"] is False

    def test_non_admin_gets_403(self, client):
        response = client.post("/api/roles/grant", json={"principal": OUTSIDER, "role": "Retailer"},
                               headers=_as(FARM))
        assert response.status_code == 403
        body = response.json()
        assert body["error"] == "Unauthorized"
        assert body["operation"] == "grant"

    def test_unknown_role_is_422(self, client):
        response = client.post("/api/roles/grant", json={"principal": OUTSIDER, "role": "Butcher"},
                               headers=_as(ADMIN))
        assert response.status_code == 422

    def test_missing_principal_header_is_422(self, client):
        response = client.post("/api/roles/grant", json={"principal": OUTSIDER, "role": "Retailer"})
        assert response.status_code == 422

    def test_role_trail(self, client):
        events = client.get("/api/audit/roles").json()
        assert len(events) == 7
        assert client.get("/api/audit/roles/verify").json() == {"verified": True, "events": 7}


class TestBatchAPI:
    def test_create_and_get(self, client):
        batch_id = _create(client)
        body = client.get(f"/api/batches/{batch_id}").json()
        assert body["id"] == 1
        assert body["stage"] == "Raw"
        assert body["status"] == "Raw Chicken Registered"
        assert body["cert_hash"] == "" and body["certified_at"] == ""

    def test_unknown_batch_is_404(self, client):
        for path in ("/api/batches/9", "/api/batches/9/shipments", "/api/batches/9/events",
                     "/api/batches/9/verify", "/api/batches/9/qrcode"):
            response = client.get(path)
            assert response.status_code == 404, path
            assert response.json()["error"] == "NotFound"

    def test_skipping_a_stage_is_409(self, client):
        batch_id = _create(client)
        response = client.post(f"/api/batches/{batch_id}/stage", json={"stage": "Packaged"}, headers=_as(PLANT))
        assert response.status_code == 409
        assert response.json() == {
            "error": "InvalidTransition",
            "detail": "cannot move batch 1 from Raw to Packaged",
            "operation": "update_stage",
            "batch_id": 1,
        }

    def test_wrong_role_is_403_even_for_valid_move(self, client):
        batch_id = _create(client)
        response = client.post(f"/api/batches/{batch_id}/stage", json={"stage": "Slaughtered"},
                               headers=_as(FARM))
        assert response.status_code == 403
        assert client.get(f"/api/batches/{batch_id}").json()["stage"] == "Raw"

    def test_certificate(self, client):
        batch_id = _create(client)
        url = f"/api/batches/{batch_id}/certificate"
        first = client.post(url, json={"cert_hash": "0xabc"}, headers=_as(CERTIFIER))
        assert first.status_code == 200
        assert first.json()["cert_hash"] == "0xabc"
        second = client.post(url, json={"cert_hash": "0xabc"}, headers=_as(CERTIFIER))
        assert second.status_code == 409
        assert second.json()["error"] == "AlreadyCertified"

    def test_empty_certificate_is_422(self, client):
        batch_id = _create(client)
        response = client.post(f"/api/batches/{batch_id}/certificate", json={"cert_hash": ""},
                               headers=_as(CERTIFIER))
        assert response.status_code == 422

    def test_ship_and_receive(self, client):
        batch_id = _create(client)
        early = client.post(f"/api/batches/{batch_id}/shipments",
                            json={"location": "Warehouse-7", "status": "in transit"}, headers=_as(LOGISTICS))
        assert early.status_code == 409
        assert early.json()["error"] == "StagePrecondition"

        _walk_to_packaged(client, batch_id)
        shipped = client.post(f"/api/batches/{batch_id}/shipments",
                              json={"location": "Warehouse-7", "status": "in transit"}, headers=_as(LOGISTICS))
        assert shipped.status_code == 201
        assert shipped.json()["location"] == "Warehouse-7"

        history = client.get(f"/api/batches/{batch_id}/shipments").json()
        assert history["batch_id"] == batch_id
        assert [(s["location"], s["status"]) for s in history["shipments"]] == [("Warehouse-7", "in transit")]

        received = client.post(f"/api/batches/{batch_id}/receive", headers=_as(RETAILER))
        assert received.status_code == 200
        assert received.json()["status"] == "Delivered to Retailer"

        events = client.get(f"/api/batches/{batch_id}/events").json()
        assert events[-1]["type"] == "BatchReceived"
        assert client.get(f"/api/batches/{batch_id}/verify").json() == {"verified": True, "events": 6}

    def test_listing(self, client):
        _create(client, "Lot-1")
        _create(client, "Lot-2")
        body = client.get("/api/batches", params={"q": "lot-2"}).json()
        assert body["total"] == 1
        assert body["items"][0]["details"] == "Lot-2"
        assert client.get("/api/batches", params={"page_size": 500}).status_code == 422

    def test_qrcode(self, client):
        batch_id = _create(client)
        response = client.get(f"/api/batches/{batch_id}/qrcode")
        assert response.status_code == 200
        assert response.headers["content-type"] == "image/png"
        assert response.content.startswith(b"\x89PNG")


class TestSeedAPI:
    def test_seed_requires_admin(self, client):
        assert client.post("/api/seed", headers=_as(FARM)).status_code == 403

    def test_seed_walks_the_scenario(self, client):
        body = client.post("/api/seed", headers=_as(ADMIN)).json()
        batch = client.get(f"/api/batches/{body['batch_id']}").json()
        assert batch["stage"] == "Delivered"
        assert batch["cert_hash"]
        assert client.get(f"/api/batches/{body['batch_id']}/verify").json()["verified"]

    def test_seed_many(self, client):
        body = client.post("/api/seed_many", params={"n": 4}, headers=_as(ADMIN)).json()
        assert body["created"] == 4
        assert client.get("/api/batches").json()["total"] == 4
