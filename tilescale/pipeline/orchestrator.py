"""
Pipeline Orchestrator

Sequences one request through the state machine:

    uploaded -> tiling -> dispatching -> merging -> [final_pass]
             -> [post_processing] -> done

with error reachable from every state. The whole run is bounded by an
overall deadline; a run either returns a complete, fully blended image or
raises. The only tolerated partial outcome is a failed final pass, which
falls back to the merged canvas.
"""

import asyncio
import time
import uuid
from typing import List, Optional

import numpy as np

from tilescale.core.config import settings
from tilescale.core.exceptions import (
    InternalError,
    InvalidSettingsError,
    PipelineCancelledError,
    PipelineTimeoutError,
    TilescaleError,
)
from tilescale.core.logging import LogContext, get_logger, set_job_context
from tilescale.core.metrics import (
    record_job_completion,
    record_job_started,
    record_tile_enhanced,
    track_stage_latency,
)
from tilescale.pipeline.enhancer import EnhancementClient
from tilescale.pipeline.final_pass import FinalPassController
from tilescale.pipeline.imaging import post_process
from tilescale.pipeline.merger import TileMerger
from tilescale.pipeline.models import (
    EnhancedTile,
    PipelineState,
    Tile,
    UpscaleResult,
    UpscaleSettings,
)
from tilescale.pipeline.scheduler import Outcome, WorkerPool
from tilescale.pipeline.tiler import cut_tiles, describe_tile_position, tile

logger = get_logger(__name__)


def build_tile_prompt(prompt: str, t: Tile, image_width: int, image_height: int) -> str:
    position = describe_tile_position(t, image_width, image_height)
    context = f"This tile is from the {position} of the image."
    prompt = (prompt or "").strip()
    return f"{prompt}. {context}" if prompt else context


def build_refinement_prompt(prompt: str, pass_number: int) -> str:
    return (
        f"{prompt} Pass {pass_number}: Refine details further, "
        f"enhance micro-textures, increase clarity."
    )


class UpscalePipeline:
    """Runs tile-based super-resolution for one image at a time."""
    
    def __init__(
        self,
        client: EnhancementClient,
        timeout_seconds: Optional[float] = None,
        max_tiles: Optional[int] = None,
        max_output_pixels: Optional[int] = None
    ):
        self.client = client
        self.timeout_seconds = settings.PIPELINE_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        self.max_tiles = settings.MAX_TILE_COUNT if max_tiles is None else max_tiles
        self.max_output_pixels = settings.MAX_OUTPUT_PIXELS if max_output_pixels is None else max_output_pixels
        self.final_pass = FinalPassController(client)
    
    async def run(
        self,
        image: np.ndarray,
        options: UpscaleSettings,
        job_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> UpscaleResult:
        """
        Upscale an (h, w, channels) uint8 image.
        
        Raises:
            TilescaleError: any validation, remote, merge, timeout or
                cancellation failure. Unexpected errors surface as InternalError.
        """
        job_id = job_id or str(uuid.uuid4())
        states: List[PipelineState] = [PipelineState.UPLOADED]
        start_time = time.time()
        record_job_started()
        
        with LogContext(job_id=job_id, stage=PipelineState.UPLOADED.value):
            logger.info(
                "pipeline_started",
                width=int(image.shape[1]),
                height=int(image.shape[0]),
                tile_size=options.tile_size,
                overlap=options.overlap,
                upscale_factor=options.upscale_factor,
                final_pass=options.final_pass,
                mode=self.client.mode.value
            )
            
            try:
                coro = self._run(image, options, job_id, states, cancel_event)
                if self.timeout_seconds:
                    result = await asyncio.wait_for(coro, timeout=self.timeout_seconds)
                else:
                    result = await coro
            except asyncio.TimeoutError:
                error = PipelineTimeoutError(self.timeout_seconds, job_id=job_id)
                self._fail(states, start_time, error)
                raise error
            except TilescaleError as e:
                self._fail(states, start_time, e)
                raise
            except asyncio.CancelledError:
                self._fail(states, start_time, PipelineCancelledError(job_id=job_id))
                raise
            except Exception as e:
                logger.exception("pipeline_internal_error", error=str(e), error_type=type(e).__name__)
                error = InternalError(job_id=job_id, stage=states[-1].value)
                self._fail(states, start_time, error)
                raise error from e
            
            duration = time.time() - start_time
            result.processing_time_ms = int(duration * 1000)
            result.states = states
            record_job_completion("completed", duration)
            logger.info(
                "pipeline_completed",
                duration_ms=result.processing_time_ms,
                tiles_processed=result.tiles_processed,
                output_width=result.width,
                output_height=result.height,
                final_pass_applied=result.final_pass_applied
            )
            return result
    
    def _fail(self, states: List[PipelineState], start_time: float, error: TilescaleError):
        failure_stage = states[-1].value
        states.append(PipelineState.ERROR)
        duration = time.time() - start_time
        record_job_completion("failed", duration, failure_stage=failure_stage)
        logger.error(
            "pipeline_failed",
            failure_stage=failure_stage,
            stage=failure_stage,
            error=error.message,
            error_type=type(error).__name__,
            code=error.code,
            details=error.details,
            duration_ms=int(duration * 1000)
        )
    
    @staticmethod
    def _enter(states: List[PipelineState], state: PipelineState, job_id: str):
        states.append(state)
        set_job_context(job_id, state.value)
        logger.debug("pipeline_state_entered")
    
    async def _run(
        self,
        image: np.ndarray,
        options: UpscaleSettings,
        job_id: str,
        states: List[PipelineState],
        cancel_event: Optional[asyncio.Event]
    ) -> UpscaleResult:
        height, width, channels = image.shape
        factor = options.upscale_factor
        
        # ---------------------------------------------------------------- tiling
        self._enter(states, PipelineState.TILING, job_id)
        with track_stage_latency(PipelineState.TILING.value):
            grid = tile(width, height, options.tile_size, options.overlap, self.max_tiles)
        
        output_pixels = round(width * factor) * round(height * factor)
        if output_pixels > self.max_output_pixels:
            raise InvalidSettingsError(
                f"Output image too large ({output_pixels} pixels > {self.max_output_pixels}). "
                f"Please reduce upscale_factor.",
                details={"output_pixels": output_pixels, "max_output_pixels": self.max_output_pixels}
            )
        
        tiles = cut_tiles(image, grid)
        
        logger.info(
            "tiling_completed",
            tile_count=len(tiles),
            grid=[tiles[-1].row + 1, tiles[-1].col + 1],
            step=options.step
        )
        
        # ----------------------------------------------------------- dispatching
        self._enter(states, PipelineState.DISPATCHING, job_id)
        merger = TileMerger(width, height, factor, options.overlap, channels)
        
        async def enhance_tile(t: Tile) -> EnhancedTile:
            prompt = build_tile_prompt(options.prompt, t, width, height)
            pixels = await self.client.enhance(t.pixels, prompt, factor, retry_count=options.retry_count)
            for pass_number in range(2, options.enhancement_passes + 1):
                pixels = await self.client.enhance(
                    pixels,
                    build_refinement_prompt(prompt, pass_number),
                    1.0,
                    retry_count=options.retry_count
                )
            return EnhancedTile.from_tile(t, pixels, factor)
        
        async def apply_tile(outcome: Outcome) -> None:
            # Single consumer: the pool awaits this sequentially
            await asyncio.to_thread(merger.apply, outcome.result)
            record_tile_enhanced()
            logger.debug("tile_merged", tile_index=outcome.index, applied=merger.tiles_applied)
        
        pool = WorkerPool(options.concurrency_limit, name="tiles")
        with track_stage_latency(PipelineState.DISPATCHING.value):
            await pool.run_all(tiles, enhance_tile, on_result=apply_tile, cancel_event=cancel_event)
        
        logger.info("dispatching_completed", tiles_enhanced=merger.tiles_applied)
        
        # --------------------------------------------------------------- merging
        self._enter(states, PipelineState.MERGING, job_id)
        with track_stage_latency(PipelineState.MERGING.value):
            output = await asyncio.to_thread(merger.normalize)
        
        # ------------------------------------------------------------ final pass
        final_pass_applied = False
        final_pass_error = None
        if options.final_pass:
            self._enter(states, PipelineState.FINAL_PASS, job_id)
            if cancel_event is not None and cancel_event.is_set():
                raise PipelineCancelledError(job_id=job_id)
            with track_stage_latency(PipelineState.FINAL_PASS.value):
                outcome = await self.final_pass.run(output, options.prompt, options.retry_count)
            output = outcome.pixels
            final_pass_applied = outcome.applied
            final_pass_error = outcome.error
        
        # ------------------------------------------------------- post processing
        if options.post_processing_enabled:
            self._enter(states, PipelineState.POST_PROCESSING, job_id)
            with track_stage_latency(PipelineState.POST_PROCESSING.value):
                output = await asyncio.to_thread(
                    post_process,
                    output,
                    options.sharpness,
                    options.denoise,
                    options.contrast
                )
        
        self._enter(states, PipelineState.DONE, job_id)
        return UpscaleResult(
            job_id=job_id,
            pixels=output,
            tiles_processed=len(tiles),
            mode=self.client.mode,
            final_pass_applied=final_pass_applied,
            final_pass_error=final_pass_error
        )
