"""Tests for the HTTP API."""

import base64
import io
import json
import tempfile
import time
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from api.main import create_app
from common.job_store import JobStore
from common.storage import LocalObjectStorage
from worker.webhook import WebhookNotifier

REGIONS = [
    {"coordinates": {"x": 0, "y": 0, "width": 10, "height": 10}, "operation": {"type": "fill", "color": "#000000"}},
    {"coordinates": {"x_norm": 0.5, "y_norm": 0.5, "w_norm": 0.5, "h_norm": 0.5}, "operation": {"type": "pixelate", "size": "S"}},
]


def _png(size=(48, 32)):
    buf = io.BytesIO()
    Image.new("RGB", size, (120, 180, 240)).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def storage_root():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        (root / "src").mkdir()
        (root / "dst").mkdir()
        for name in ("a", "b"):
            (root / "src" / f"{name}.png").write_bytes(_png())
        yield root


@pytest.fixture
def client(storage_root):
    app = create_app(
        storage=LocalObjectStorage(storage_root),
        store=JobStore(),
        notifier=AsyncMock(spec=WebhookNotifier),
        default_webhook_url=None,
        setup_logging=False,
    )
    with TestClient(app) as test_client:
        yield test_client


def _assert_error(response, status, code):
    assert response.status_code == status
    body = response.json()
    assert body["code"] == code
    assert body["message"]
    assert body["trace_id"] == response.headers["X-Trace-Id"]
    return body


# ---------- health ----------

def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["formats"] == {"webp": True, "jpeg": True}


def test_ready_and_live(client):
    assert client.get("/health/ready").json() == {"ready": True}
    assert client.get("/health/live").json() == {"alive": True}


# ---------- multipart ----------

def test_multipart_redact(client):
    response = client.post(
        "/v1/redact",
        files={"file": ("photo.png", _png(), "image/png")},
        data={"ops": json.dumps({"regions": REGIONS})},
    )

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/webp"
    assert response.headers["cache-control"] == "private, max-age=3600"
    assert response.headers["etag"].startswith('"')
    assert int(response.headers["x-process-ms"]) >= 0
    assert response.headers["x-trace-id"]
    with Image.open(io.BytesIO(response.content)) as img:
        assert img.format == "WEBP"
        assert img.size == (48, 32)


def test_multipart_output_options(client):
    ops = {"regions": REGIONS, "output": {"format": "jpeg", "quality": 60}}
    response = client.post(
        "/v1/redact",
        files={"file": ("photo.png", _png(), "image/png")},
        data={"ops": json.dumps(ops)},
    )

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/jpeg"


def test_multipart_same_input_same_etag(client):
    def post():
        return client.post(
            "/v1/redact",
            files={"file": ("photo.png", _png(), "image/png")},
            data={"ops": json.dumps({"regions": REGIONS})},
        )

    first, second = post(), post()
    assert first.headers["etag"] == second.headers["etag"]
    assert first.content == second.content


def test_multipart_mime_mismatch(client):
    response = client.post(
        "/v1/redact",
        files={"file": ("photo.jpg", _png(), "image/jpeg")},
        data={"ops": json.dumps({"regions": REGIONS})},
    )

    body = _assert_error(response, 415, "UNSUPPORTED_MEDIA")
    assert body["details"]["detected_type"] == "image/png"


def test_multipart_bad_ops(client):
    response = client.post(
        "/v1/redact",
        files={"file": ("photo.png", _png(), "image/png")},
        data={"ops": json.dumps({"regions": []})},
    )

    _assert_error(response, 400, "VALIDATION_ERROR")


def test_multipart_missing_file(client):
    response = client.post("/v1/redact", data={"ops": json.dumps({"regions": REGIONS})})

    _assert_error(response, 400, "VALIDATION_ERROR")


# ---------- base64 ----------

def test_base64_redact(client):
    image = base64.b64encode(_png()).decode()
    response = client.post("/v1/redact/base64", json={"image": image, "regions": REGIONS})

    assert response.status_code == 200
    body = response.json()
    assert body["format"] == "webp"
    assert (body["width"], body["height"]) == (48, 32)
    assert body["etag"].startswith('"')
    with Image.open(io.BytesIO(base64.b64decode(body["image"]))) as img:
        assert img.format == "WEBP"


def test_base64_data_url(client):
    image = "data:image/png;base64," + base64.b64encode(_png()).decode()
    response = client.post(
        "/v1/redact/base64",
        json={"image": image, "regions": REGIONS, "output": {"format": "jpeg"}},
    )

    assert response.status_code == 200
    assert response.json()["format"] == "jpeg"


def test_base64_invalid_payload(client):
    response = client.post("/v1/redact/base64", json={"image": "***", "regions": REGIONS})

    _assert_error(response, 400, "VALIDATION_ERROR")


def test_base64_region_out_of_range(client):
    region = {"coordinates": {"x_norm": 0.9, "y_norm": 0, "w_norm": 0.5, "h_norm": 0.5},
              "operation": {"type": "blur", "size": "S"}}
    response = client.post(
        "/v1/redact/base64",
        json={"image": base64.b64encode(_png()).decode(), "regions": [region]},
    )

    _assert_error(response, 400, "VALIDATION_ERROR")


def test_too_many_regions(client):
    response = client.post(
        "/v1/redact/base64",
        json={"image": base64.b64encode(_png()).decode(), "regions": REGIONS * 11},
    )

    _assert_error(response, 413, "LIMIT_EXCEEDED")


# ---------- storage ----------

def _storage_body(src="a.png", dst="a.webp", **extra):
    return {
        "input": {"bucket": "src", "key": src},
        "output": {"bucket": "dst", "key": dst},
        "regions": REGIONS,
        **extra,
    }


def test_storage_redact(client, storage_root):
    response = client.post("/v1/redact/storage", json=_storage_body())

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["skipped"] is False
    assert body["output"]["format"] == "webp"
    assert "x-process-ms" in response.headers
    assert (storage_root / "dst" / "a.webp").is_file()

    repeat = client.post("/v1/redact/storage", json=_storage_body())
    assert repeat.json()["skipped"] is True
    assert repeat.json()["processing_time_ms"] == 0


def test_storage_missing_object(client):
    response = client.post("/v1/redact/storage", json=_storage_body(src="missing.png"))

    _assert_error(response, 404, "OBJECT_NOT_FOUND")


def test_storage_missing_bucket(client):
    body = _storage_body()
    body["input"]["bucket"] = "nope"
    response = client.post("/v1/redact/storage", json=body)

    _assert_error(response, 404, "BUCKET_NOT_FOUND")


# ---------- batch ----------

def _wait_for_job(client, job_id, timeout=10.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/v1/redact/batch/{job_id}").json()
        if body["status"] in ("completed", "failed"):
            return body
        assert time.monotonic() < deadline, "batch job did not finish"
        time.sleep(0.05)


def test_batch_submit_and_poll(client, storage_root):
    items = [_storage_body("a.png", "1.webp"), _storage_body("missing.png", "2.webp"), _storage_body("b.png", "3.webp")]
    response = client.post("/v1/redact/batch", json={"items": items})

    assert response.status_code == 202
    submitted = response.json()
    assert submitted["items_count"] == 3
    assert submitted["estimated_completion_ms"] == 1500

    status = _wait_for_job(client, submitted["job_id"])

    assert status["status"] == "failed"
    assert status["progress"] == {"total": 3, "completed": 2, "failed": 1, "pending": 0}
    assert [item["status"] for item in status["items"]] == ["completed", "failed", "completed"]
    assert "Object not found" in status["items"][1]["error"]
    assert status["items"][0]["output"]["key"] == "1.webp"
    assert "webhook_url" not in status
    assert (storage_root / "dst" / "3.webp").is_file()


def test_batch_too_many_items(client):
    items = [_storage_body(dst=f"{i}.webp") for i in range(11)]
    response = client.post("/v1/redact/batch", json={"items": items})

    _assert_error(response, 400, "VALIDATION_ERROR")


def test_batch_unknown_job(client):
    response = client.get("/v1/redact/batch/does-not-exist")

    _assert_error(response, 404, "JOB_NOT_FOUND")
