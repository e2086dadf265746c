import io

import numpy as np
from PIL import Image


def make_image(width: int, height: int, channels: int = 3, seed: int = 0) -> np.ndarray:
    """Deterministic noisy test image."""
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(height, width, channels), dtype=np.uint8)


def encode_png(pixels: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(pixels).save(buffer, format="PNG")
    return buffer.getvalue()
