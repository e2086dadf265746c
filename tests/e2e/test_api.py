import base64
import io
from unittest.mock import AsyncMock

import pytest
from PIL import Image

from tilescale.api.dependencies import get_pipeline
from tilescale.core.exceptions import GENERIC_SERVER_ERROR, RemoteEnhancementError
from tilescale.main import app
from tilescale.pipeline.models import EnhancementMode
from tilescale.pipeline.orchestrator import UpscalePipeline


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_ready_reports_local_mode(client):
    response = await client.get("/ready")
    assert response.status_code == 200
    data = response.json()
    assert data["ready"] is True
    assert data["enhancement"]["mode"] == "local"


@pytest.mark.asyncio
async def test_root_lists_endpoints(client):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["upscale"] == "/api/v1/upscale"


@pytest.mark.asyncio
async def test_upscale_base64(client, sample_png_base64):
    response = await client.post(
        "/api/v1/upscale",
        json={
            "image_base64": sample_png_base64,
            "tile_size": 32,
            "overlap": 8,
            "upscale_factor": 2
        }
    )
    assert response.status_code == 200
    data = response.json()
    assert (data["width"], data["height"]) == (192, 128)
    assert data["mode"] == "local"
    assert data["ai_enhanced"] is False
    assert data["tiles_processed"] == 4 * 3
    assert data["final_pass_applied"] is False
    assert "X-Process-Time" in response.headers
    
    output = Image.open(io.BytesIO(base64.b64decode(data["image_base64"])))
    assert output.format == "PNG"
    assert output.size == (192, 128)


@pytest.mark.asyncio
async def test_upscale_with_final_pass(client, sample_png_base64):
    response = await client.post(
        "/api/v1/upscale",
        json={
            "image_base64": sample_png_base64,
            "tile_size": 64,
            "overlap": 16,
            "upscale_factor": 1.5,
            "final_pass": True
        }
    )
    assert response.status_code == 200
    data = response.json()
    assert data["final_pass_applied"] is True
    assert (data["width"], data["height"]) == (144, 96)


@pytest.mark.asyncio
async def test_upscale_rejects_overlap_not_below_tile_size(client, sample_png_base64):
    response = await client.post(
        "/api/v1/upscale",
        json={"image_base64": sample_png_base64, "tile_size": 32, "overlap": 32}
    )
    assert response.status_code == 400
    data = response.json()
    assert "overlap" in data["error"]
    assert data["stage"] == "validation"


@pytest.mark.asyncio
async def test_upscale_rejects_factor_below_one(client, sample_png_base64):
    response = await client.post(
        "/api/v1/upscale",
        json={"image_base64": sample_png_base64, "upscale_factor": 0.5}
    )
    assert response.status_code == 400
    assert "upscale_factor" in response.json()["error"]


@pytest.mark.asyncio
async def test_upscale_rejects_too_many_tiles(client, sample_png_base64):
    response = await client.post(
        "/api/v1/upscale",
        json={"image_base64": sample_png_base64, "tile_size": 2, "overlap": 1}
    )
    assert response.status_code == 400
    data = response.json()
    assert "Tile count too large" in data["error"]
    assert data["details"]["tile_count"] == 96 * 64


@pytest.mark.asyncio
async def test_upscale_rejects_invalid_base64(client):
    response = await client.post("/api/v1/upscale", json={"image_base64": "not base64!!"})
    assert response.status_code == 400
    assert "base64" in response.json()["error"]


@pytest.mark.asyncio
async def test_upscale_rejects_non_image(client):
    payload = base64.b64encode(b"plain text, not pixels").decode("utf-8")
    response = await client.post("/api/v1/upscale", json={"image_base64": payload})
    assert response.status_code == 400
    assert "Unable to read image" in response.json()["error"]


@pytest.mark.asyncio
async def test_upload_endpoint(client, sample_png):
    response = await client.post(
        "/api/v1/upscale/upload",
        files={"file": ("sample.png", sample_png, "image/png")},
        data={"tile_size": "48", "overlap": "16", "upscale_factor": "2"}
    )
    assert response.status_code == 200
    data = response.json()
    assert (data["width"], data["height"]) == (192, 128)


@pytest.mark.asyncio
async def test_upload_requires_file(client):
    response = await client.post("/api/v1/upscale/upload", data={"tile_size": "64"})
    assert response.status_code == 400
    assert response.json()["error"] == "Image file is required"


@pytest.mark.asyncio
async def test_upload_rejects_non_image_content_type(client):
    response = await client.post(
        "/api/v1/upscale/upload",
        files={"file": ("notes.txt", b"hello", "text/plain")}
    )
    assert response.status_code == 400
    assert "image" in response.json()["error"]


@pytest.mark.asyncio
async def test_status_endpoint(client):
    response = await client.get("/api/v1/upscale/status")
    assert response.status_code == 200
    data = response.json()
    assert data["mode"] == "local"
    assert data["status"] == "local_only"
    assert data["limits"]["max_tile_count"] == 500


@pytest.mark.asyncio
async def test_metrics_endpoint(client, sample_png_base64):
    await client.post(
        "/api/v1/upscale",
        json={"image_base64": sample_png_base64, "tile_size": 64, "overlap": 0, "upscale_factor": 1}
    )
    response = await client.get("/api/v1/metrics")
    assert response.status_code == 200
    assert "upscale_jobs_total" in response.text
    assert "tiles_enhanced_total" in response.text


def override_pipeline(client_mock):
    app.dependency_overrides[get_pipeline] = lambda: UpscalePipeline(client_mock)


@pytest.mark.asyncio
async def test_remote_failure_returns_generic_error(client, sample_png_base64):
    failing = AsyncMock()
    failing.mode = EnhancementMode.REMOTE
    failing.enhance.side_effect = RemoteEnhancementError(
        "HTTP 500 from http://secret-host",
        attempts=3,
        cause=RuntimeError("http://secret-host refused"),
        http_status=500
    )
    override_pipeline(failing)
    try:
        response = await client.post(
            "/api/v1/upscale",
            json={"image_base64": sample_png_base64, "tile_size": 64, "overlap": 0}
        )
    finally:
        app.dependency_overrides.clear()
    
    assert response.status_code == 502
    data = response.json()
    assert data["error"] == GENERIC_SERVER_ERROR
    assert "details" not in data
    assert "stage" not in data
    assert "secret-host" not in response.text


@pytest.mark.asyncio
async def test_internal_failure_returns_generic_error(client, sample_png_base64):
    broken = AsyncMock()
    broken.mode = EnhancementMode.LOCAL
    broken.enhance.side_effect = RuntimeError("disk at /var/secret full")
    override_pipeline(broken)
    try:
        response = await client.post(
            "/api/v1/upscale",
            json={"image_base64": sample_png_base64, "tile_size": 64, "overlap": 0}
        )
    finally:
        app.dependency_overrides.clear()
    
    assert response.status_code == 500
    data = response.json()
    assert data["error"] == GENERIC_SERVER_ERROR
    assert "details" not in data
    assert "/var/secret" not in response.text
