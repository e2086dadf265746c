import base64
from typing import AsyncGenerator

import numpy as np
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from tilescale.main import app
from tests.utils import make_image, encode_png


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    # Trigger lifespan events (startup/shutdown)
    # app.router.lifespan_context(app) returns an async context manager
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac


@pytest.fixture
def sample_image() -> np.ndarray:
    return make_image(96, 64)


@pytest.fixture
def sample_png(sample_image) -> bytes:
    return encode_png(sample_image)


@pytest.fixture
def sample_png_base64(sample_png) -> str:
    return base64.b64encode(sample_png).decode("utf-8")
