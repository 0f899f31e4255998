"""
Tests for the HTTP API.
"""
import pytest
from fastapi.testclient import TestClient

from ridgelab.api.routes import get_blob_store, get_run_store
from ridgelab.db.session import build_engine
from ridgelab.main import app
from ridgelab.services.runs import RunStore


@pytest.fixture
def client(store, blobs):
    """Test client wired to per-test stores."""
    app.dependency_overrides[get_run_store] = lambda: store
    app.dependency_overrides[get_blob_store] = lambda: blobs
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def upload(client, payload, filename="print.png", content_type="image/png", **fields):
    return client.post("/api/images", files={"file": (filename, payload, content_type)}, data=fields)


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_returns_ok(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestImageUpload:
    """Uploads land in the blob store under a forensic key."""

    def test_upload_returns_key_and_dimensions(self, client, fingerprint_png):
        response = upload(client, fingerprint_png, case_id="CASE 7")
        assert response.status_code == 201
        data = response.json()
        assert data["key"].startswith("CASE_7/default/original_")
        assert data["width"] == 8
        assert data["height"] == 8
        assert data["size_bytes"] == len(fingerprint_png)

        blob = client.get(data["url"])
        assert blob.status_code == 200
        assert blob.content == fingerprint_png

    def test_upload_rejects_non_image_type(self, client):
        response = upload(client, b"hello", filename="notes.txt", content_type="text/plain")
        assert response.status_code == 422

    def test_upload_rejects_undecodable_image(self, client):
        response = upload(client, b"not really a png")
        assert response.status_code == 422
        assert response.json()["detail"]["error_code"] == "INVALID_IMAGE"

    def test_missing_blob_is_404(self, client):
        assert client.get("/api/blobs/default/default/nothing.png").status_code == 404


class TestRuns:
    """Apply texture, then read the run back."""

    def test_apply_texture_and_fetch(self, client, fingerprint_png):
        key = upload(client, fingerprint_png).json()["key"]
        response = client.post("/api/runs", json={"source_key": key, "seed": 5, "case_id": "C-1"})
        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "completed"
        assert data["persisted"] is True
        assert data["noise_seed"] == 5
        assert data["oracle_status"] == "skipped"
        assert data["quality_metrics"]["background_cleanness"] == 1.0

        run = client.get(f"/api/runs/{data['run_id']}").json()
        assert run["status"] == "completed"
        assert run["processed_image_url"] == data["processed_image_url"]
        assert run["quality_metrics"] == data["quality_metrics"]
        assert run["oracle_report"] is None

        processed = client.get(data["processed_image_url"])
        assert processed.status_code == 200
        assert processed.headers["content-type"] == "image/png"

    def test_invalid_source_fails_run(self, client, blobs):
        key = blobs.put("default/default/original_1_x_broken.png", b"garbage", "image/png").key
        response = client.post("/api/runs", json={"source_key": key})
        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["error_code"] == "INVALID_IMAGE"

        run = client.get(f"/api/runs/{detail['run_id']}").json()
        assert run["status"] == "failed"
        assert run["error_code"] == "INVALID_IMAGE"
        assert run["processed_image_url"] is None

    def test_traversal_key_is_rejected(self, client):
        response = client.post("/api/runs", json={"source_key": "../etc/passwd"})
        assert response.status_code == 422

    def test_list_filters_and_paginates(self, client, fingerprint_png, blobs):
        key = upload(client, fingerprint_png).json()["key"]
        for seed in (1, 2):
            client.post("/api/runs", json={"source_key": key, "seed": seed})
        broken = blobs.put("default/default/original_1_x_broken.png", b"garbage", "image/png").key
        client.post("/api/runs", json={"source_key": broken})

        assert len(client.get("/api/runs").json()) == 3
        assert len(client.get("/api/runs", params={"limit": 2}).json()) == 2
        assert len(client.get("/api/runs", params={"offset": 2}).json()) == 1
        failed = client.get("/api/runs", params={"status": "failed"}).json()
        assert [run["error_code"] for run in failed] == ["INVALID_IMAGE"]
        assert client.get("/api/runs", params={"limit": 0}).status_code == 422

    def test_delete_run(self, client, fingerprint_png):
        key = upload(client, fingerprint_png).json()["key"]
        data = client.post("/api/runs", json={"source_key": key}).json()

        assert client.delete(f"/api/runs/{data['run_id']}").status_code == 204
        assert client.get(f"/api/runs/{data['run_id']}").status_code == 404
        assert client.get(data["processed_image_url"]).status_code == 404
        assert client.delete(f"/api/runs/{data['run_id']}").status_code == 404


class TestPromptInfo:
    def test_prompt_info(self, client):
        data = client.get("/api/prompt").json()
        assert data["version"] == "5.0"
        assert "sharpen" in data["prompt"]


class TestStoreOutage:
    """Run store outages surface as 503 with the error payload."""

    def test_list_runs_when_store_is_down(self, blobs, tmp_path):
        broken = RunStore(build_engine(f"sqlite:///{tmp_path / 'missing' / 'runs.db'}"))
        app.dependency_overrides[get_run_store] = lambda: broken
        app.dependency_overrides[get_blob_store] = lambda: blobs
        try:
            with TestClient(app) as test_client:
                response = test_client.get("/api/runs")
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 503
        assert response.json()["detail"]["error_code"] == "STORE_UNAVAILABLE"
