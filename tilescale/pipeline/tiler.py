"""
Tiler - covering grid of overlapping tiles.

Tiles start at 0, step, 2*step, ... along each axis (step = tile_size -
overlap) and are cropped, not padded, where they would cross the image edge.
Everything here is a pure function of its inputs.
"""

import math
from typing import List, Optional

import numpy as np

from tilescale.core.config import settings
from tilescale.core.exceptions import InvalidSettingsError, TooManyTilesError
from tilescale.pipeline.models import Tile


def validate_grid_settings(tile_size: int, overlap: int) -> int:
    """Check tile geometry and return the step between tile origins."""
    if tile_size <= 0:
        raise InvalidSettingsError(f"Invalid tile_size: must be positive (got {tile_size})")
    if overlap < 0 or overlap >= tile_size:
        raise InvalidSettingsError(
            f"Invalid overlap: must satisfy 0 <= overlap < tile_size (got overlap={overlap}, tile_size={tile_size})"
        )
    return tile_size - overlap


def count_tiles(width: int, height: int, tile_size: int, overlap: int) -> int:
    """Number of tiles the grid will contain: ceil(w/step) * ceil(h/step)."""
    step = validate_grid_settings(tile_size, overlap)
    return math.ceil(width / step) * math.ceil(height / step)


def tile(
    width: int,
    height: int,
    tile_size: int,
    overlap: int,
    max_tiles: Optional[int] = None,
) -> List[Tile]:
    """
    Compute the ordered (row-major) tile grid for an image.
    
    Args:
        width: Image width in pixels.
        height: Image height in pixels.
        tile_size: Nominal tile edge length.
        overlap: Pixels shared between neighbouring tiles.
        max_tiles: Safe ceiling; defaults to settings.MAX_TILE_COUNT.
    
    Raises:
        InvalidSettingsError: bad geometry or empty image.
        TooManyTilesError: the grid would exceed the ceiling. Raised before
            any tile is built.
    """
    if width <= 0 or height <= 0:
        raise InvalidSettingsError(f"Invalid image dimensions {width}x{height}")
    
    step = validate_grid_settings(tile_size, overlap)
    ceiling = settings.MAX_TILE_COUNT if max_tiles is None else max_tiles
    
    total = math.ceil(width / step) * math.ceil(height / step)
    if total > ceiling:
        raise TooManyTilesError(tile_count=total, max_tiles=ceiling)
    
    tiles: List[Tile] = []
    for row, y in enumerate(range(0, height, step)):
        for col, x in enumerate(range(0, width, step)):
            tiles.append(Tile(
                index=len(tiles),
                x=x,
                y=y,
                width=min(tile_size, width - x),
                height=min(tile_size, height - y),
                row=row,
                col=col
            ))
    
    return tiles


def cut_tiles(image: np.ndarray, tiles: List[Tile]) -> List[Tile]:
    """Attach each tile's source pixel slice (a view into image)."""
    for t in tiles:
        t.pixels = image[t.y:t.y2, t.x:t.x2]
    return tiles


def describe_tile_position(t: Tile, image_width: int, image_height: int) -> str:
    """Coarse position of a tile in the image, e.g. "top-left corner" or "center"."""
    center_x = t.x + t.width / 2
    center_y = t.y + t.height / 2
    
    if center_x < image_width / 3:
        horizontal = "left"
    elif center_x > image_width * 2 / 3:
        horizontal = "right"
    else:
        horizontal = "center"
    
    if center_y < image_height / 3:
        vertical = "top"
    elif center_y > image_height * 2 / 3:
        vertical = "bottom"
    else:
        vertical = "middle"
    
    if horizontal == "center" and vertical == "middle":
        return "center"
    if vertical == "middle":
        return f"{horizontal} side"
    if horizontal == "center":
        return f"{vertical} center"
    return f"{vertical}-{horizontal} corner"
