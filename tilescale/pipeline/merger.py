"""
Merger - feathered accumulation of enhanced tiles.

Each enhanced tile is weighted by a mask that is 1.0 in its interior and
ramps linearly towards 0 across the (upscaled) overlap band on every edge it
shares with a neighbour. The 2-D mask is the outer product of the two 1-D
ramps, so corners taper in both directions. Border-facing edges do not ramp.

Accumulation is purely additive, so tiles may be applied in any order, but
apply() itself must only ever be called from one task at a time.
"""

from typing import Iterable, Optional

import numpy as np

from tilescale.core.exceptions import MergeError
from tilescale.core.logging import get_logger
from tilescale.pipeline.imaging import resize
from tilescale.pipeline.models import EnhancedTile, Tile

logger = get_logger(__name__)


def feather_ramp(length: int, feather: float, ramp_start: bool, ramp_end: bool) -> np.ndarray:
    """
    1-D weights for one tile axis.
    
    Weights are sampled at pixel centres, (d + 0.5) / feather where d is the
    distance from the ramped edge, so they rise from 0 at the outer edge of
    the band to 1 at its inner edge without ever being exactly 0.
    """
    weights = np.ones(length, dtype=np.float32)
    if feather <= 0:
        return weights
    
    centres = np.arange(length, dtype=np.float32) + 0.5
    if ramp_start:
        weights = np.minimum(weights, centres / feather)
    if ramp_end:
        weights = np.minimum(weights, (length - centres) / feather)
    return np.clip(weights, 0.0, 1.0)


class Canvas:
    """Accumulator and weight-sum buffers at output resolution."""
    
    def __init__(self, width: int, height: int, channels: int):
        self.width = width
        self.height = height
        self.channels = channels
        self.accumulator = np.zeros((height, width, channels), dtype=np.float32)
        self.weight_sum = np.zeros((height, width), dtype=np.float32)


class TileMerger:
    """Owns the canvas for one request."""
    
    def __init__(
        self,
        original_width: int,
        original_height: int,
        upscale_factor: float,
        overlap: int,
        channels: int = 3
    ):
        self.original_width = original_width
        self.original_height = original_height
        self.upscale_factor = upscale_factor
        self.feather = overlap * upscale_factor
        self.canvas = Canvas(
            width=int(round(original_width * upscale_factor)),
            height=int(round(original_height * upscale_factor)),
            channels=channels
        )
        self.tiles_applied = 0
    
    @property
    def output_size(self):
        return self.canvas.width, self.canvas.height
    
    def weight_mask(self, tile: Tile, width: int, height: int) -> np.ndarray:
        """Per-pixel weights over a tile's target rectangle."""
        ramp_x = feather_ramp(
            width,
            self.feather,
            ramp_start=tile.x > 0,
            ramp_end=tile.x2 < self.original_width
        )
        ramp_y = feather_ramp(
            height,
            self.feather,
            ramp_start=tile.y > 0,
            ramp_end=tile.y2 < self.original_height
        )
        return np.outer(ramp_y, ramp_x)
    
    def apply(self, enhanced: EnhancedTile):
        """Add one enhanced tile into the accumulator and weight sum."""
        canvas = self.canvas
        x0, y0 = enhanced.target_x, enhanced.target_y
        width, height = enhanced.target_width, enhanced.target_height
        
        pixels = enhanced.pixels
        if pixels.shape[1] != width or pixels.shape[0] != height:
            logger.debug(
                "tile_resized_to_target",
                tile_index=enhanced.tile.index,
                received=[int(pixels.shape[1]), int(pixels.shape[0])],
                target=[width, height]
            )
            pixels = resize(pixels, width, height)
        
        # Clip to the canvas; only rounding can push a rectangle past it
        x1 = min(x0 + width, canvas.width)
        y1 = min(y0 + height, canvas.height)
        if x1 <= x0 or y1 <= y0:
            return
        
        mask = self.weight_mask(enhanced.tile, width, height)[: y1 - y0, : x1 - x0]
        values = pixels[: y1 - y0, : x1 - x0, : canvas.channels].astype(np.float32)
        
        canvas.accumulator[y0:y1, x0:x1] += values * mask[:, :, np.newaxis]
        canvas.weight_sum[y0:y1, x0:x1] += mask
        self.tiles_applied += 1
    
    def normalize(self) -> np.ndarray:
        """Divide the accumulator by the weight sum and return uint8 pixels."""
        canvas = self.canvas
        uncovered = int(np.count_nonzero(canvas.weight_sum <= 0))
        if uncovered:
            raise MergeError(
                f"{uncovered} output pixels were not covered by any tile",
                uncovered_pixels=uncovered
            )
        
        averaged = canvas.accumulator / canvas.weight_sum[:, :, np.newaxis]
        return np.clip(np.rint(averaged), 0, 255).astype(np.uint8)


def merge(
    original_width: int,
    original_height: int,
    upscale_factor: float,
    enhanced_tiles: Iterable[EnhancedTile],
    overlap: int = 0,
    channels: Optional[int] = None
) -> np.ndarray:
    """Merge a complete set of enhanced tiles in one call."""
    enhanced_tiles = list(enhanced_tiles)
    if channels is None:
        channels = enhanced_tiles[0].pixels.shape[2] if enhanced_tiles else 3
    
    merger = TileMerger(original_width, original_height, upscale_factor, overlap, channels)
    for enhanced in enhanced_tiles:
        merger.apply(enhanced)
    return merger.normalize()
