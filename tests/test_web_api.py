from __future__ import annotations

from pathlib import Path
from typing import Any, List, Sequence

import pytest
from starlette.testclient import TestClient

from warung_pos.errors import ExternalUnavailable
from warung_pos.store.models import Commentary
from warung_pos.vision import Detection, DetectionFrame
from warung_pos.web import create_app


class _FakeCommentator:
    def __init__(self) -> None:
        self.calls: List[List[str]] = []

    def generate(self, items: List[str], *, transaction_id: Any) -> Commentary:
        self.calls.append(items)
        return Commentary(sentence="Borong banget nih!", tts="Borooong!", audio_ref=None)


class _OfflineDetector:
    def detect(self, image_b64: str, prompts: Sequence[str]) -> DetectionFrame:
        raise ExternalUnavailable("vision", "KOLOSAL_API_KEY not set")


class _StaticDetector:
    def __init__(self) -> None:
        self.prompts: List[Sequence[str]] = []

    def detect(self, image_b64: str, prompts: Sequence[str]) -> DetectionFrame:
        self.prompts.append(prompts)
        return DetectionFrame([Detection("bottle", 0.91, (100.0, 10.0, 40.0, 60.0))], 640)


@pytest.fixture
def commentator() -> _FakeCommentator:
    return _FakeCommentator()


@pytest.fixture
def client(project_root: Path, commentator: _FakeCommentator) -> TestClient:
    app = create_app(
        root_dir=str(project_root),
        allow_origins=["*"],
        commentator=commentator,  # type: ignore[arg-type]
        detector=_OfflineDetector(),  # type: ignore[arg-type]
    )
    return TestClient(app)


def _product(client: TestClient, **overrides: Any) -> dict:
    payload = {"barcode": "089686010947", "name": "Indomie Goreng", "category": "Mie", "buy_price": 2500, "sell_price": 3500, "stock": 10}
    payload.update(overrides)
    resp = client.post("/api/products", json=payload)
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_health(client: TestClient, project_root: Path) -> None:
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json()["db_path"].startswith(str(project_root))


def test_product_crud(client: TestClient) -> None:
    product = _product(client)
    pid = product["product_id"]

    assert client.get(f"/api/products/{pid}").json()["name"] == "Indomie Goreng"
    assert client.get("/api/products/barcode/089686010947").json()["product_id"] == pid
    assert client.get("/api/products", params={"search": "indomie"}).json()["products"][0]["product_id"] == pid

    patched = client.patch(f"/api/products/{pid}", json={"sell_price": 4000})
    assert patched.json()["sell_price"] == 4000
    assert client.post(f"/api/products/{pid}/stock", json={"delta": -3}).json()["stock"] == 7

    duplicate = client.post("/api/products", json={"barcode": "089686010947", "name": "Copy"})
    assert duplicate.status_code == 400
    assert duplicate.json() == {"error": "Barcode already exists", "field": "barcode"}

    assert client.delete(f"/api/products/{pid}").json() == {"deleted": pid}
    missing = client.get(f"/api/products/{pid}")
    assert missing.status_code == 404
    assert missing.json()["kind"] == "product"


def test_checkout_flow(client: TestClient, commentator: _FakeCommentator) -> None:
    product = _product(client)
    tx = client.post("/api/transactions", json={"direction": "OUT"})
    assert tx.status_code == 201
    tx_id = tx.json()["transaction_id"]

    added = client.post(f"/api/transactions/{tx_id}/items", json={"barcode": "089686010947", "quantity": 2})
    assert added.status_code == 201
    body = added.json()
    assert body["transaction"]["total_amount"] == 7000
    item_id = body["item"]["item_id"]

    updated = client.patch(f"/api/transactions/{tx_id}/items/{item_id}", json={"quantity": 3})
    assert updated.json()["total_amount"] == 10500

    completed = client.post(f"/api/transactions/{tx_id}/complete")
    assert completed.status_code == 200
    assert completed.json()["status"] == "COMPLETED"
    assert client.get(f"/api/products/{product['product_id']}").json()["stock"] == 7

    # Background commentary has run by the time TestClient returns.
    assert commentator.calls == [["Indomie Goreng (3)"]]
    detail = client.get(f"/api/transactions/{tx_id}").json()
    assert detail["kepo_sentence"] == "Borong banget nih!"

    receipt = client.get(f"/api/transactions/{tx_id}/receipt").json()
    assert receipt["type"] == "SALE"
    assert receipt["total"] == 10500
    assert receipt["kepoSentence"] == "Borong banget nih!"

    again = client.post(f"/api/transactions/{tx_id}/items", json={"product_id": product["product_id"]})
    assert again.status_code == 409
    assert again.json()["status"] == "COMPLETED"

    listing = client.get("/api/transactions", params={"status": "completed"}).json()
    assert [t["transaction_id"] for t in listing["transactions"]] == [tx_id]
    assert listing["pagination"]["total"] == 1


def test_error_mapping(client: TestClient) -> None:
    tx_id = client.post("/api/transactions", json={}).json()["transaction_id"]

    unknown = client.post(f"/api/transactions/{tx_id}/items", json={"barcode": "0000"})
    assert unknown.status_code == 404
    assert unknown.json()["identifier"] == "0000"
    assert "0000" in unknown.json()["error"]

    bad_qty = client.post(f"/api/transactions/{tx_id}/items", json={"barcode": "0000", "quantity": 0})
    assert bad_qty.status_code == 400
    assert client.post(f"/api/transactions/{tx_id}/items", json={}).status_code == 400
    assert client.post(f"/api/transactions/{tx_id}/items", content=b"not json").status_code == 400
    assert client.get("/api/transactions/9999").status_code == 404
    assert client.get("/api/transactions", params={"direction": "sideways"}).status_code == 400
    assert client.post("/api/transactions", json={"direction": "UP"}).status_code == 400

    pending_commentary = client.post(f"/api/transactions/{tx_id}/commentary")
    assert pending_commentary.status_code == 409

    assert client.delete(f"/api/transactions/{tx_id}").json() == {"deleted": tx_id}
    assert client.get(f"/api/transactions/{tx_id}").status_code == 404


def test_detect_is_unavailable_without_vision_service(client: TestClient) -> None:
    resp = client.post("/api/ai/detect", json={"image": "aGVsbG8="})
    assert resp.status_code == 503
    assert "vision" in resp.json()["error"]
    assert client.post("/api/ai/detect", json={}).status_code == 400


def test_detect_uses_catalog_labels(project_root: Path) -> None:
    detector = _StaticDetector()
    client = TestClient(create_app(root_dir=str(project_root), detector=detector))  # type: ignore[arg-type]
    _product(client, vision_label="noodle pack")

    resp = client.post("/api/ai/detect", json={"image": "aGVsbG8="})

    assert resp.status_code == 200
    assert resp.json() == {
        "detections": [{"name": "bottle", "confidence": 0.91, "bbox": [100.0, 10.0, 40.0, 60.0]}],
        "imageWidth": 640,
    }
    assert list(detector.prompts[0]) == ["noodle pack"]


def test_match_and_labels(client: TestClient) -> None:
    assert client.get("/api/ai/detection-labels").json() == {"labels": ["box", "tube", "bottle"]}
    product = _product(client, vision_label="noodle pack")
    matches = client.post("/api/ai/match", json={"labels": ["noodle pack", "umbrella"]}).json()["matches"]
    assert matches[0]["product"]["product_id"] == product["product_id"]
    assert matches[1] == {"label": "umbrella", "product": None}
    assert client.post("/api/ai/match", json={"labels": "noodle"}).status_code == 400


def test_scan_session_with_client_side_detections(client: TestClient) -> None:
    product = _product(client, vision_label="noodle pack")
    tx_id = client.post("/api/transactions", json={"direction": "OUT"}).json()["transaction_id"]
    opened = client.post("/api/scan/sessions", json={"transactionId": tx_id, "mirrored": False})
    assert opened.status_code == 201
    sid = opened.json()["session_id"]

    def frame(center_x: float) -> dict:
        return {
            "detections": [{"name": "noodle pack", "confidence": 0.8, "bbox": [center_x - 10, 0, 20, 20]}],
            "imageWidth": 320,
        }

    first = client.post(f"/api/scan/sessions/{sid}/frames", json=frame(60)).json()
    assert first["skipped"] is False
    assert first["event"] is None
    crossed = client.post(f"/api/scan/sessions/{sid}/frames", json=frame(260)).json()
    assert crossed["event"]["action"] == "add"
    assert crossed["applied"] is True
    assert crossed["transaction"]["items"][0]["product_id"] == product["product_id"]

    # Vision outage: an image frame is treated as empty.
    outage = client.post(f"/api/scan/sessions/{sid}/frames", json={"image": "aGVsbG8="}).json()
    assert outage == {"skipped": False, "event": None, "applied": False, "transaction": None}

    assert client.delete(f"/api/scan/sessions/{sid}").json() == {"closed": sid}
    assert client.post(f"/api/scan/sessions/{sid}/frames", json=frame(60)).status_code == 404


def test_scan_session_requires_pending_transaction(client: TestClient) -> None:
    assert client.post("/api/scan/sessions", json={"transactionId": 4242}).status_code == 404
    assert client.post("/api/scan/sessions", json={"direction": "UP"}).status_code == 400


def test_scan_session_rejects_non_boolean_mirrored(client: TestClient) -> None:
    for value in ("false", 0, "yes"):
        resp = client.post("/api/scan/sessions", json={"mirrored": value})
        assert resp.status_code == 400
        assert resp.json()["field"] == "mirrored"
    assert client.app.state.sessions == {}


def test_idle_scan_sessions_are_closed_and_forgotten(client: TestClient) -> None:
    stale = client.post("/api/scan/sessions", json={}).json()["session_id"]
    stale_session = client.app.state.sessions[stale]
    stale_session.last_used -= 11 * 60

    fresh = client.post("/api/scan/sessions", json={}).json()["session_id"]

    assert stale_session.closed is True
    assert list(client.app.state.sessions) == [fresh]
    frame = {"detections": [], "imageWidth": 320}
    assert client.post(f"/api/scan/sessions/{stale}/frames", json=frame).status_code == 404
    assert client.post(f"/api/scan/sessions/{fresh}/frames", json=frame).status_code == 200
    assert client.app.state.prune_idle_sessions() == 0


def test_analytics_endpoints(client: TestClient) -> None:
    _product(client, stock=2)
    assert client.get("/api/analytics/summary", params={"period": "week"}).json()["totalSales"] == 0
    assert len(client.get("/api/analytics/revenue", params={"from": "2024-05-01", "to": "2024-05-07"}).json()) == 7
    assert client.get("/api/analytics/revenue", params={"from": "garbage"}).status_code == 400
    assert client.get("/api/analytics/top-products").json() == []
    assert client.get("/api/analytics/categories").json() == []
    assert len(client.get("/api/analytics/hourly-pattern").json()) == 24
    assert [p["name"] for p in client.get("/api/analytics/low-stock").json()] == ["Indomie Goreng"]
    assert client.get("/api/analytics/weekly-report").json()["revenueChange"] == 0


def test_websocket_streams_only_its_transaction(client: TestClient) -> None:
    product = _product(client)
    watched = client.post("/api/transactions", json={}).json()["transaction_id"]
    other = client.post("/api/transactions", json={}).json()["transaction_id"]

    with client.websocket_connect(f"/ws/transactions/{watched}") as ws:
        snapshot = ws.receive_json()
        assert snapshot["event"] == "snapshot"
        assert snapshot["transaction"]["transaction_id"] == watched

        client.post(f"/api/transactions/{other}/items", json={"product_id": product["product_id"]})
        client.post(f"/api/transactions/{watched}/items", json={"product_id": product["product_id"], "quantity": 2})
        message = ws.receive_json()

    assert message["event"] == "item:added"
    assert message["transactionId"] == watched
    assert message["transaction"]["total_amount"] == 7000


def test_websocket_unknown_transaction(client: TestClient) -> None:
    with client.websocket_connect("/ws/transactions/9999") as ws:
        message = ws.receive_json()
    assert message["event"] == "error"
    assert message["kind"] == "transaction"
