"""
Pixel buffer helpers.

Images travel through the pipeline as uint8 numpy arrays of shape
(height, width, channels) with 3 (RGB) or 4 (RGBA) channels. Pillow does the
decoding, encoding and resampling.
"""

import io
from typing import Iterable, Optional

import numpy as np
from PIL import Image, ImageEnhance, ImageFilter, UnidentifiedImageError

from tilescale.core.exceptions import UnsupportedImageError

_MODES = {3: "RGB", 4: "RGBA"}


def _normalize_mode(img: Image.Image) -> Image.Image:
    has_alpha = "A" in img.getbands() or "transparency" in img.info
    target = "RGBA" if has_alpha else "RGB"
    if img.mode != target:
        img = img.convert(target)
    return img


def decode_image(
    data: bytes,
    max_bytes: Optional[int] = None,
    allowed_formats: Optional[Iterable[str]] = None,
) -> np.ndarray:
    """
    Decode uploaded bytes into a read-only pixel buffer.
    
    Raises:
        UnsupportedImageError: missing, oversized, unreadable or disallowed image.
    """
    if not data:
        raise UnsupportedImageError("Image file is required")
    
    if max_bytes is not None and len(data) > max_bytes:
        raise UnsupportedImageError(
            f"Image size ({len(data) / (1024 * 1024):.2f}MB) exceeds maximum allowed size "
            f"({max_bytes / (1024 * 1024):.0f}MB)",
            details={"size_bytes": len(data), "max_bytes": max_bytes}
        )
    
    try:
        img = Image.open(io.BytesIO(data))
        img_format = (img.format or "").upper()
        img.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
        raise UnsupportedImageError(f"Unable to read image: {e}")
    
    if allowed_formats is not None:
        allowed = [f.upper() for f in allowed_formats]
        if img_format not in allowed:
            raise UnsupportedImageError(
                f"Unsupported image format '{img_format or 'unknown'}'. Allowed: {', '.join(allowed)}",
                details={"format": img_format, "allowed_formats": allowed}
            )
    
    if img.width <= 0 or img.height <= 0:
        raise UnsupportedImageError("Unable to read image dimensions")
    
    pixels = np.asarray(_normalize_mode(img), dtype=np.uint8)
    pixels.setflags(write=False)
    return pixels


def decode_tile(data: bytes, channels: int) -> np.ndarray:
    """Decode an enhanced tile returned by the remote service into `channels` channels."""
    img = Image.open(io.BytesIO(data))
    img.load()
    mode = _MODES[channels]
    if img.mode != mode:
        img = img.convert(mode)
    return np.array(img, dtype=np.uint8)


def to_image(pixels: np.ndarray) -> Image.Image:
    if pixels.ndim != 3 or pixels.shape[2] not in _MODES:
        raise ValueError(f"Expected an (h, w, 3|4) buffer, got shape {pixels.shape}")
    return Image.fromarray(np.ascontiguousarray(pixels, dtype=np.uint8))


def encode_image(pixels: np.ndarray, fmt: str = "PNG") -> bytes:
    """Encode a pixel buffer (PNG by default)."""
    buffer = io.BytesIO()
    to_image(pixels).save(buffer, format=fmt)
    return buffer.getvalue()


def resize(pixels: np.ndarray, width: int, height: int) -> np.ndarray:
    """Lanczos resize to exactly width x height; an unchanged size returns a copy."""
    if pixels.shape[1] == width and pixels.shape[0] == height:
        return np.array(pixels, dtype=np.uint8, copy=True)
    resized = to_image(pixels).resize((width, height), Image.Resampling.LANCZOS)
    return np.array(resized, dtype=np.uint8)


def resize_by_factor(pixels: np.ndarray, factor: float) -> np.ndarray:
    """Scale both dimensions by factor, never below one pixel."""
    width = max(1, int(round(pixels.shape[1] * factor)))
    height = max(1, int(round(pixels.shape[0] * factor)))
    return resize(pixels, width, height)


def post_process(
    pixels: np.ndarray,
    sharpness: int = 0,
    denoise: int = 0,
    contrast: int = 50,
) -> np.ndarray:
    """
    Gentle finishing filters on the merged image.
    
    Args:
        sharpness: 0-100, unsharp mask strength (0 disables)
        denoise: 0-100, median filter; only applied above 20
        contrast: 0-100, 50 is neutral; saturation is nudged by at most 10%
    """
    img = to_image(pixels)
    
    if denoise > 20:
        size = max(3, min(5, -(-denoise // 25) + 2))
        if size % 2 == 0:
            size += 1
        img = img.filter(ImageFilter.MedianFilter(size=size))
    
    if sharpness > 0:
        amount = min(1.0, sharpness / 100)
        img = img.filter(ImageFilter.UnsharpMask(
            radius=0.3 + amount * 0.7,
            percent=int(40 + amount * 110),
            threshold=2
        ))
    
    if contrast != 50:
        factor = 1.0 + (contrast - 50) / 50 * 0.1
        img = ImageEnhance.Color(img).enhance(factor)
    
    return np.array(img, dtype=np.uint8)
