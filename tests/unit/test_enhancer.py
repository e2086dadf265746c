import base64
import json

import httpx
import numpy as np
import pytest

from tilescale.core.config import Settings
from tilescale.core.exceptions import CircuitBreaker, RemoteEnhancementError
from tilescale.pipeline.enhancer import (
    LocalEnhancementClient,
    RemoteEnhancementClient,
    create_enhancement_client,
)
from tilescale.pipeline.models import EnhancementMode
from tests.utils import make_image, encode_png

API_URL = "https://enhancer.test/v1/upscale"


def upscaled_png(request: httpx.Request, factor: int = 2) -> bytes:
    payload = json.loads(request.content)
    height, width = payload["height"], payload["width"]
    pixels = np.full((height * factor, width * factor, 3), 128, dtype=np.uint8)
    return encode_png(pixels)


def make_remote(handler, **kwargs) -> RemoteEnhancementClient:
    kwargs.setdefault("backoff_seconds", 0)
    return RemoteEnhancementClient(
        api_url=API_URL,
        api_key="test-key",
        transport=httpx.MockTransport(handler),
        **kwargs
    )


@pytest.mark.asyncio
async def test_local_client_resizes_by_factor():
    client = LocalEnhancementClient()
    tile = make_image(30, 20)
    
    enhanced = await client.enhance(tile, "sharpen", 2.0)
    
    assert client.mode == EnhancementMode.LOCAL
    assert enhanced.shape == (40, 60, 3)


@pytest.mark.asyncio
async def test_local_client_factor_one_returns_same_pixels():
    tile = make_image(16, 16)
    
    enhanced = await LocalEnhancementClient().enhance(tile, "", 1.0)
    
    np.testing.assert_array_equal(enhanced, tile)


@pytest.mark.asyncio
async def test_remote_client_success():
    seen = []
    
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=upscaled_png(request), headers={"content-type": "image/png"})
    
    client = make_remote(handler)
    enhanced = await client.enhance(make_image(10, 8), "sharpen", 2.0)
    await client.aclose()
    
    assert enhanced.shape == (16, 20, 3)
    assert len(seen) == 1
    assert seen[0].headers["authorization"] == "Bearer test-key"
    body = json.loads(seen[0].content)
    assert body["prompt"] == "sharpen"
    assert body["upscale_factor"] == 2.0
    assert base64.b64decode(body["image"]).startswith(b"\x89PNG")


@pytest.mark.asyncio
async def test_remote_client_accepts_json_data_url():
    def handler(request: httpx.Request) -> httpx.Response:
        encoded = base64.b64encode(upscaled_png(request)).decode("utf-8")
        return httpx.Response(200, json={"image": f"data:image/png;base64,{encoded}"})
    
    client = make_remote(handler)
    enhanced = await client.enhance(make_image(6, 6), "", 2.0)
    
    assert enhanced.shape == (12, 12, 3)


@pytest.mark.asyncio
async def test_remote_server_error_exhausts_retries():
    calls = []
    
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500, json={"error": "boom"})
    
    client = make_remote(handler)
    
    with pytest.raises(RemoteEnhancementError) as exc_info:
        await client.enhance(make_image(8, 8), "", 2.0, retry_count=2)
    
    assert len(calls) == 3
    assert exc_info.value.attempts == 3
    assert exc_info.value.details["http_status"] == 500
    assert exc_info.value.code == 502


@pytest.mark.asyncio
async def test_remote_recovers_after_transient_failure():
    calls = []
    
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        if len(calls) == 2:
            return httpx.Response(429)
        return httpx.Response(200, content=upscaled_png(request), headers={"content-type": "image/png"})
    
    client = make_remote(handler)
    enhanced = await client.enhance(make_image(8, 8), "", 2.0, retry_count=2)
    
    assert len(calls) == 3
    assert enhanced.shape == (16, 16, 3)


@pytest.mark.asyncio
async def test_remote_client_error_is_not_retried():
    calls = []
    
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(401, json={"error": "bad key"})
    
    client = make_remote(handler)
    
    with pytest.raises(RemoteEnhancementError) as exc_info:
        await client.enhance(make_image(8, 8), "", 2.0, retry_count=4)
    
    assert len(calls) == 1
    assert exc_info.value.details["http_status"] == 401


@pytest.mark.asyncio
async def test_remote_unreadable_body_fails():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "ok"})
    
    client = make_remote(handler)
    
    with pytest.raises(RemoteEnhancementError, match="unreadable"):
        await client.enhance(make_image(8, 8), "", 2.0)


@pytest.mark.asyncio
async def test_remote_fallback_to_local_when_enabled():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)
    
    client = make_remote(handler, fallback_to_local=True)
    enhanced = await client.enhance(make_image(10, 10), "", 2.0, retry_count=1)
    
    assert enhanced.shape == (20, 20, 3)


@pytest.mark.asyncio
async def test_open_circuit_fails_without_calling_remote():
    calls = []
    
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500)
    
    breaker = CircuitBreaker("test", failure_threshold=1, recovery_timeout=60)
    client = make_remote(handler, circuit_breaker=breaker)
    
    with pytest.raises(RemoteEnhancementError):
        await client.enhance(make_image(8, 8), "", 2.0, retry_count=0)
    assert breaker.state == "OPEN"
    
    with pytest.raises(RemoteEnhancementError, match="circuit breaker open"):
        await client.enhance(make_image(8, 8), "", 2.0, retry_count=0)
    assert len(calls) == 1


def test_create_client_picks_local_without_endpoint():
    client = create_enhancement_client(Settings(ENHANCER_API_URL=None, ENHANCER_API_KEY=None))
    
    assert isinstance(client, LocalEnhancementClient)


def test_create_client_requires_url_and_key():
    client = create_enhancement_client(Settings(ENHANCER_API_URL=API_URL, ENHANCER_API_KEY=None))
    
    assert client.mode == EnhancementMode.LOCAL


@pytest.mark.asyncio
async def test_create_client_picks_remote_when_configured():
    config = Settings(
        ENHANCER_API_URL=API_URL,
        ENHANCER_API_KEY="secret",
        ENHANCER_FALLBACK_TO_LOCAL=True
    )
    client = create_enhancement_client(config)
    
    assert isinstance(client, RemoteEnhancementClient)
    assert client.describe()["fallback_to_local"] is True
    assert client.describe()["circuit_breaker"] == "CLOSED"
    await client.aclose()
