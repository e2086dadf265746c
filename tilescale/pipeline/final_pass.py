"""
Final-Pass Controller - optional whole-image consistency pass.

The merged canvas is sent once more through the Enhancement Client as a
single tile at upscale factor 1. This is the one step that degrades instead
of failing: if the call fails after its retries, the pre-pass canvas is
returned and the failure is reported alongside it.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np

from tilescale.core.exceptions import RemoteEnhancementError
from tilescale.core.logging import get_logger
from tilescale.core.metrics import record_final_pass
from tilescale.pipeline.enhancer import EnhancementClient
from tilescale.pipeline.imaging import resize
from tilescale.pipeline.scheduler import WorkerPool

logger = get_logger(__name__)

FINAL_PASS_INSTRUCTIONS = (
    "CRITICAL: Ensure global consistency across the entire image. "
    "Fix any visible seams, color discontinuities, or artifacts. "
    "Enhance overall sharpness and detail uniformity. Do NOT change the content."
)


def build_final_pass_prompt(prompt: str) -> str:
    prompt = (prompt or "").strip()
    if prompt:
        return f"{prompt}. {FINAL_PASS_INSTRUCTIONS}"
    return FINAL_PASS_INSTRUCTIONS


@dataclass
class FinalPassResult:
    pixels: np.ndarray
    applied: bool
    error: Optional[str] = None


class FinalPassController:
    
    def __init__(self, client: EnhancementClient):
        self.client = client
        self._pool = WorkerPool(concurrency_limit=1, name="final_pass")
    
    async def run(self, canvas: np.ndarray, prompt: str, retry_count: int) -> FinalPassResult:
        final_prompt = build_final_pass_prompt(prompt)
        
        async def enhance_canvas(pixels: np.ndarray) -> np.ndarray:
            return await self.client.enhance(pixels, final_prompt, 1.0, retry_count=retry_count)
        
        try:
            outcomes = await self._pool.run_all([canvas], enhance_canvas)
        except RemoteEnhancementError as e:
            # Keep the merged canvas
            logger.warning(
                "final_pass_degraded",
                error=e.message,
                attempts=e.attempts,
                cause=e.details.get("cause")
            )
            record_final_pass("degraded")
            return FinalPassResult(pixels=canvas, applied=False, error=e.message)
        
        enhanced = outcomes[0].result
        height, width = canvas.shape[:2]
        if enhanced.shape[0] != height or enhanced.shape[1] != width:
            enhanced = resize(enhanced, width, height)
        
        record_final_pass("applied")
        logger.info("final_pass_applied", width=width, height=height)
        return FinalPassResult(pixels=enhanced, applied=True)
