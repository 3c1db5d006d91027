import base64
import json
import logging

import pytest
from fastapi.testclient import TestClient

from app.infra.memory import MemoryPressure
from app.main import create_app

from conftest import NINE_MB, THREE_MB, make_image, padded_jpeg, split_chunks, stored_keys

AUTH = {"Authorization": "Bearer testtoken"}


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


@pytest.fixture
def client(test_settings, monitor, local_store, session_factory):
    app = create_app(test_settings, monitor=monitor, blob_store=local_store, session_factory=session_factory)
    with TestClient(app) as c:
        yield c


def _chunk(session_id, index, total, data, **extra):
    body = {
        "session_id": session_id,
        "chunk_index": index,
        "total_chunks": total,
        "data": _b64(data),
        "file_name": "dak.jpg",
        "file_type": "image/jpeg",
    }
    body.update(extra)
    return body


# -------------------------
# Auth + health
# -------------------------
def test_health_is_public(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": "Basic testtoken"}])
def test_upload_routes_require_bearer_token(client, headers):
    r = client.post("/uploads/single", json={}, headers=headers)
    assert r.status_code == 401
    assert r.json()["ok"] is False


def test_metrics_exposed(client):
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "media_intake_chunks_total" in r.text


def test_failing_request_is_still_logged(test_settings, monitor, local_store, session_factory, caplog):
    app = create_app(test_settings, monitor=monitor, blob_store=local_store, session_factory=session_factory)

    @app.get("/boom")
    def boom():
        raise RuntimeError("boom")

    caplog.set_level(logging.INFO)
    with TestClient(app, raise_server_exceptions=False) as c:
        assert c.get("/boom").status_code == 500

    finished = [json.loads(r.getMessage()) for r in caplog.records if "request_finished" in r.getMessage()]
    assert finished[-1]["status_code"] == 500
    assert finished[-1]["path"] == "/boom"
    assert any("request_failed" in r.getMessage() for r in caplog.records)


# -------------------------
# Chunked
# -------------------------
def test_chunked_upload_out_of_order(client, local_store):
    data = padded_jpeg(NINE_MB)
    chunks = split_chunks(data, THREE_MB)

    responses = [
        client.post("/uploads/chunk", json=_chunk("sess-9mb", i, 3, chunks[i], original_chunk_size=THREE_MB), headers=AUTH)
        for i in (0, 2, 1)
    ]
    assert [r.status_code for r in responses] == [200, 200, 200]

    first, _, last = (r.json() for r in responses)
    assert first["complete"] is False
    assert first["received_chunks"] == 1
    assert first["progress"] == pytest.approx(33.3)

    assert last["complete"] is True
    result = last["result"]
    assert result["metadata"]["original_size"] == NINE_MB
    assert result["metadata"]["content_type"] == "image/jpeg"
    assert result["metadata"]["detected_format"] == "image/jpeg"
    assert result["file_path"].endswith(".jpg")
    assert stored_keys(local_store) == [result["file_path"]]


def test_duplicate_chunk_is_idempotent(client):
    body = _chunk("dup", 0, 2, b"\xff\xd8\xff" + b"x" * 100)
    assert client.post("/uploads/chunk", json=body, headers=AUTH).json()["received_chunks"] == 1
    again = client.post("/uploads/chunk", json=body, headers=AUTH).json()
    assert again["received_chunks"] == 1
    assert again["success"] is True


def test_backpressure_rejection_returns_413(client, monitor):
    monitor.available_mb = 50
    monitor.pressure = MemoryPressure.high

    r = client.post("/uploads/chunk", json=_chunk("bp", 0, 3, b"x" * (6 * 1024 * 1024)), headers=AUTH)
    assert r.status_code == 413
    body = r.json()
    assert body["success"] is False
    assert body["suggested_action"] == "reduce_chunk_size"
    assert body["adaptive_chunk_size"] == 1024 * 1024
    assert body["memory_pressure"] == "high"
    assert body["received_chunks"] == 0
    assert body["error"]["suggested_chunk_size"] == 1024 * 1024

    recovery = client.get("/uploads/sessions/bp/recovery", headers=AUTH).json()
    assert recovery["missing_chunks"] == [0, 1, 2]


def test_recovery_lists_missing_chunks(client):
    client.post("/uploads/chunk", json=_chunk("rec", 1, 3, b"abc"), headers=AUTH)
    r = client.get("/uploads/sessions/rec/recovery", headers=AUTH)
    assert r.status_code == 200
    assert r.json()["missing_chunks"] == [0, 2]


def test_recovery_unknown_session(client):
    r = client.get("/uploads/sessions/unknown/recovery", headers=AUTH)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "session_not_found"


def test_invalid_base64_is_validation_error(client):
    body = _chunk("b64", 0, 1, b"")
    body["data"] = "!!!not-base64!!!"
    r = client.post("/uploads/chunk", json=body, headers=AUTH)
    assert r.status_code == 400
    assert r.json()["error"]["category"] == "validation"


def test_non_image_type_rejected(client):
    body = _chunk("txt", 0, 1, b"hello")
    body["file_type"] = "text/plain"
    r = client.post("/uploads/chunk", json=body, headers=AUTH)
    assert r.status_code == 400


def test_too_many_chunks_rejected(client):
    r = client.post("/uploads/chunk", json=_chunk("many", 0, 101, b"x"), headers=AUTH)
    assert r.status_code == 400


# -------------------------
# Single / images
# -------------------------
def test_single_upload_then_get_list_delete(client, local_store):
    r = client.post(
        "/uploads/single",
        json={
            "file_name": "logo.png",
            "file_content": "data:image/png;base64," + _b64(make_image("PNG", mode="RGBA")),
            "file_type": "image/png",
            "title": "Logo",
            "alt_text": "Bedrijfslogo",
        },
        headers=AUTH,
    )
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["metadata"]["strategy"] == "high-quality"
    file_path = body["file_path"]
    assert file_path.endswith(".png")
    assert "logo" not in file_path

    got = client.get(f"/images/{file_path}", headers=AUTH)
    assert got.status_code == 200
    assert got.json()["data_url"].startswith("data:image/png;base64,")
    assert got.json()["image"]["title"] == "Logo"

    listing = client.get("/images", params={"search": "LOGO"}, headers=AUTH).json()
    assert listing["total"] == 1
    assert listing["items"][0]["file_path"] == file_path

    assert client.delete(f"/images/{file_path}", headers=AUTH).status_code == 200
    assert client.get(f"/images/{file_path}", headers=AUTH).status_code == 404
    assert stored_keys(local_store) == []


def test_single_upload_rejects_empty(client):
    r = client.post(
        "/uploads/single",
        json={"file_name": "a.png", "file_content": "data:image/png;base64,", "file_type": "image/png"},
        headers=AUTH,
    )
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "empty_file"


def test_undecodable_image_is_unprocessable(client):
    r = client.post(
        "/uploads/single",
        json={"file_name": "kapot.png", "file_content": _b64(b"\x00" * 200), "file_type": "image/png"},
        headers=AUTH,
    )
    assert r.status_code == 422
    assert r.json()["error"]["code"] == "all_strategies_failed"
    assert r.json()["error"]["severity"] == "critical"


def test_get_image_rejects_traversal(client):
    r = client.get("/images/..%5Csecret", headers=AUTH)
    assert r.status_code == 400


# -------------------------
# Bulk
# -------------------------
def test_bulk_collects_per_image_errors(client):
    images = [
        {"file_name": "ok.jpg", "file_content": _b64(make_image("JPEG")), "file_type": "image/jpeg"},
        {"file_name": "kapot.png", "file_content": _b64(b"\x00" * 200), "file_type": "image/png"},
    ]
    r = client.post("/uploads/bulk", json={"images": images}, headers=AUTH)
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is False
    assert body["summary"] == {"total": 2, "succeeded": 1, "failed": 1}
    assert body["errors"][0]["index"] == 1
    assert body["errors"][0]["file_name"] == "kapot.png"


def test_bulk_refused_under_critical_pressure(client, monitor):
    monitor.pressure = MemoryPressure.critical
    images = [{"file_name": "ok.jpg", "file_content": _b64(make_image("JPEG")), "file_type": "image/jpeg"}]
    r = client.post("/uploads/bulk", json={"images": images}, headers=AUTH)
    assert r.status_code == 503
    assert r.headers["Retry-After"] == "300"
    assert r.json()["error"]["category"] == "memory"


def test_bulk_limit(client):
    image = {"file_name": "ok.jpg", "file_content": _b64(make_image("JPEG")), "file_type": "image/jpeg"}
    r = client.post("/uploads/bulk", json={"images": [image] * 6}, headers=AUTH)
    assert r.status_code == 400
