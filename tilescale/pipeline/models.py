"""
Pipeline data model.

Settings are an immutable pydantic model validated once per request; tiles
and enhanced tiles are plain dataclasses carrying numpy pixel buffers of
shape (height, width, channels).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from tilescale.core.config import settings
from tilescale.core.exceptions import InvalidSettingsError


class PipelineState(str, Enum):
    """Per-request state machine. DONE and ERROR are terminal."""
    UPLOADED = "uploaded"
    TILING = "tiling"
    DISPATCHING = "dispatching"
    MERGING = "merging"
    FINAL_PASS = "final_pass"
    POST_PROCESSING = "post_processing"
    DONE = "done"
    ERROR = "error"


class EnhancementMode(str, Enum):
    REMOTE = "remote"
    LOCAL = "local"


class UpscaleSettings(BaseModel):
    """Immutable per-request settings."""
    model_config = ConfigDict(frozen=True)
    
    tile_size: int = Field(default=settings.DEFAULT_TILE_SIZE, gt=0)
    overlap: int = Field(default=settings.DEFAULT_OVERLAP, ge=0)
    upscale_factor: float = Field(
        default=settings.DEFAULT_UPSCALE_FACTOR, ge=1.0, le=settings.MAX_UPSCALE_FACTOR
    )
    prompt: str = Field(default=settings.DEFAULT_PROMPT, max_length=settings.MAX_PROMPT_LENGTH)
    final_pass: bool = False
    concurrency_limit: int = Field(
        default=settings.DEFAULT_CONCURRENCY_LIMIT, ge=1, le=settings.MAX_CONCURRENCY_LIMIT
    )
    retry_count: int = Field(default=settings.DEFAULT_RETRY_COUNT, ge=0, le=settings.MAX_RETRY_COUNT)
    enhancement_passes: int = Field(default=1, ge=1, le=settings.MAX_ENHANCEMENT_PASSES)
    
    # Post-processing, neutral by default
    sharpness: int = Field(default=0, ge=0, le=100)
    denoise: int = Field(default=0, ge=0, le=100)
    contrast: int = Field(default=50, ge=0, le=100)
    
    @model_validator(mode="after")
    def check_overlap(self) -> "UpscaleSettings":
        if self.overlap >= self.tile_size:
            raise ValueError(
                f"overlap ({self.overlap}) must be smaller than tile_size ({self.tile_size})"
            )
        return self
    
    @property
    def step(self) -> int:
        return self.tile_size - self.overlap
    
    @property
    def post_processing_enabled(self) -> bool:
        return self.sharpness > 0 or self.denoise > 0 or self.contrast != 50
    
    @classmethod
    def build(cls, **values) -> "UpscaleSettings":
        """Validate raw request values, dropping None so defaults apply."""
        try:
            return cls(**{k: v for k, v in values.items() if v is not None})
        except ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ()))
            reason = first.get("msg", "invalid value")
            message = f"Invalid {location}: {reason}" if location else f"Invalid settings: {reason}"
            raise InvalidSettingsError(message, details={"errors": [
                {"field": ".".join(str(p) for p in err.get("loc", ())), "reason": err.get("msg")}
                for err in e.errors()
            ]})


@dataclass
class Tile:
    """A rectangular region of the source image, cropped (not padded) at edges."""
    index: int
    x: int
    y: int
    width: int
    height: int
    row: int = 0
    col: int = 0
    pixels: Optional[np.ndarray] = field(default=None, repr=False)
    
    @property
    def x2(self) -> int:
        return self.x + self.width
    
    @property
    def y2(self) -> int:
        return self.y + self.height
    
    def target_rect(self, upscale_factor: float) -> Tuple[int, int, int, int]:
        """(x, y, width, height) of this tile on the upscaled canvas.
        
        Edges are rounded independently so neighbouring rectangles share
        their boundaries exactly.
        """
        x0 = int(round(self.x * upscale_factor))
        y0 = int(round(self.y * upscale_factor))
        x1 = int(round(self.x2 * upscale_factor))
        y1 = int(round(self.y2 * upscale_factor))
        return x0, y0, max(1, x1 - x0), max(1, y1 - y0)


@dataclass
class EnhancedTile:
    """Enhanced pixels for a Tile plus its target rectangle on the canvas."""
    tile: Tile
    pixels: np.ndarray = field(repr=False)
    target_x: int = 0
    target_y: int = 0
    target_width: int = 0
    target_height: int = 0
    
    @classmethod
    def from_tile(cls, tile: Tile, pixels: np.ndarray, upscale_factor: float) -> "EnhancedTile":
        x, y, w, h = tile.target_rect(upscale_factor)
        return cls(
            tile=tile,
            pixels=pixels,
            target_x=x,
            target_y=y,
            target_width=w,
            target_height=h
        )


@dataclass
class UpscaleResult:
    """Final output of one pipeline run."""
    job_id: str
    pixels: np.ndarray = field(repr=False)
    tiles_processed: int
    mode: EnhancementMode
    final_pass_applied: bool = False
    final_pass_error: Optional[str] = None
    processing_time_ms: int = 0
    states: List[PipelineState] = field(default_factory=list)
    
    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])
    
    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])
