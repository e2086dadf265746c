"""
Upscale Endpoint - Tile-based Super-Resolution

POST /api/v1/upscale        - JSON body with a base64 encoded image
POST /api/v1/upscale/upload - Multipart form with an image file
GET  /api/v1/upscale/status - Active enhancement mode and limits

Both POST variants run the full pipeline synchronously and return the
enhanced PNG.
"""

import asyncio
import base64
import binascii
import uuid
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends, UploadFile, File, Form
from pydantic import BaseModel, Field

from tilescale.core.config import settings
from tilescale.core.exceptions import UnsupportedImageError
from tilescale.core.logging import get_logger, LogContext
from tilescale.pipeline.enhancer import EnhancementClient
from tilescale.pipeline.imaging import decode_image, encode_image
from tilescale.pipeline.models import EnhancementMode, UpscaleSettings
from tilescale.pipeline.orchestrator import UpscalePipeline
from tilescale.api.dependencies import get_enhancement_client, get_pipeline

MAX_IMAGE_SIZE_BYTES = settings.MAX_IMAGE_SIZE_BYTES
MAX_IMAGE_SIZE_MB = MAX_IMAGE_SIZE_BYTES / (1024 * 1024)

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Request/Response Schemas
# =============================================================================

class UpscaleRequest(BaseModel):
    """Request for tile-based upscaling. Omitted settings fall back to server defaults."""
    image_base64: str = Field(..., description="Base64 encoded image (PNG, JPEG or WEBP)")
    tile_size: Optional[int] = Field(None, description="Tile edge length in pixels")
    overlap: Optional[int] = Field(None, description="Pixels shared between neighbouring tiles")
    upscale_factor: Optional[float] = Field(None, description="Linear scale factor (>= 1)")
    prompt: Optional[str] = Field(None, description="Guidance for the enhancement model")
    final_pass: bool = Field(False, description="Run a whole-image consistency pass after merging")
    concurrency_limit: Optional[int] = Field(None, description="Max enhancement calls in flight")
    retry_count: Optional[int] = Field(None, description="Extra attempts per remote call")
    enhancement_passes: Optional[int] = Field(None, description="Refinement passes per tile")
    sharpness: Optional[int] = Field(None, description="Post-processing sharpening, 0-100")
    denoise: Optional[int] = Field(None, description="Post-processing denoising, 0-100")
    contrast: Optional[int] = Field(None, description="Post-processing contrast, 0-100 (50 = neutral)")
    
    def to_settings(self) -> UpscaleSettings:
        return UpscaleSettings.build(**self.model_dump(exclude={"image_base64"}))


class UpscaleResponse(BaseModel):
    """Enhanced image and run summary."""
    job_id: str
    image_base64: str
    width: int
    height: int
    format: str = "png"
    tiles_processed: int
    final_pass_applied: bool
    final_pass_error: Optional[str] = None
    mode: str
    ai_enhanced: bool
    processing_time_ms: int


class EnhancerStatusResponse(BaseModel):
    """Which enhancement mode this process runs in."""
    mode: str
    remote_configured: bool
    fallback_to_local: bool
    circuit_breaker: Optional[str] = None
    status: str
    message: str
    limits: Dict[str, Any]


# =============================================================================
# Helpers
# =============================================================================

def _decode_base64_image(image_base64: str) -> bytes:
    if not image_base64:
        raise UnsupportedImageError("Image data is required")
    
    # Approximate decoded size before paying for the decode
    if len(image_base64) * 3 / 4 > MAX_IMAGE_SIZE_BYTES:
        raise UnsupportedImageError(
            f"Image size ({len(image_base64) * 3 / 4 / (1024 * 1024):.2f}MB) exceeds maximum "
            f"allowed size ({MAX_IMAGE_SIZE_MB:.0f}MB). Please compress or resize your image."
        )
    
    if image_base64.startswith("data:"):
        image_base64 = image_base64.split(",", 1)[-1]
    try:
        return base64.b64decode(image_base64, validate=True)
    except (binascii.Error, ValueError):
        raise UnsupportedImageError("Image data is not valid base64")


async def _run_upscale(
    job_id: str,
    image_bytes: bytes,
    options: UpscaleSettings,
    pipeline: UpscalePipeline
) -> UpscaleResponse:
    image = await asyncio.to_thread(
        decode_image,
        image_bytes,
        MAX_IMAGE_SIZE_BYTES,
        settings.allowed_image_formats
    )
    
    result = await pipeline.run(image, options, job_id=job_id)
    png_bytes = await asyncio.to_thread(encode_image, result.pixels)
    
    return UpscaleResponse(
        job_id=job_id,
        image_base64=base64.b64encode(png_bytes).decode("utf-8"),
        width=result.width,
        height=result.height,
        tiles_processed=result.tiles_processed,
        final_pass_applied=result.final_pass_applied,
        final_pass_error=result.final_pass_error,
        mode=result.mode.value,
        ai_enhanced=result.mode == EnhancementMode.REMOTE,
        processing_time_ms=result.processing_time_ms
    )


# =============================================================================
# Endpoints
# =============================================================================

@router.post("", response_model=UpscaleResponse)
async def upscale_image(
    request: UpscaleRequest,
    pipeline: UpscalePipeline = Depends(get_pipeline)
):
    """
    Upscale an image with tile-based enhancement.
    
    Flow:
    1. Validate settings and decode the image
    2. Split into overlapping tiles and enhance them concurrently
    3. Feather-blend the tiles into the upscaled canvas
    4. Optionally run the final consistency pass and post-processing
    """
    job_id = str(uuid.uuid4())
    
    with LogContext(job_id=job_id, stage="validation"):
        logger.info(
            "upscale_request_received",
            image_size_mb=round(len(request.image_base64) * 3 / 4 / (1024 * 1024), 2),
            tile_size=request.tile_size,
            overlap=request.overlap,
            upscale_factor=request.upscale_factor,
            final_pass=request.final_pass
        )
        
        options = request.to_settings()
        image_bytes = _decode_base64_image(request.image_base64)
        return await _run_upscale(job_id, image_bytes, options, pipeline)


@router.post("/upload", response_model=UpscaleResponse)
async def upscale_uploaded_image(
    file: Optional[UploadFile] = File(None),
    tile_size: Optional[int] = Form(None),
    overlap: Optional[int] = Form(None),
    upscale_factor: Optional[float] = Form(None),
    prompt: Optional[str] = Form(None),
    final_pass: bool = Form(False),
    concurrency_limit: Optional[int] = Form(None),
    retry_count: Optional[int] = Form(None),
    enhancement_passes: Optional[int] = Form(None),
    sharpness: Optional[int] = Form(None),
    denoise: Optional[int] = Form(None),
    contrast: Optional[int] = Form(None),
    pipeline: UpscalePipeline = Depends(get_pipeline)
):
    """
    Upscale an image submitted as a file upload.
    
    Alternative to the base64 endpoint for direct file uploads.
    """
    job_id = str(uuid.uuid4())
    
    with LogContext(job_id=job_id, stage="validation"):
        if file is None:
            raise UnsupportedImageError("Image file is required")
        if file.content_type and not file.content_type.startswith("image/"):
            raise UnsupportedImageError("Only image uploads are allowed")
        
        # Read one byte past the limit so oversized uploads are caught without buffering them whole
        image_bytes = await file.read(MAX_IMAGE_SIZE_BYTES + 1)
        
        logger.info(
            "upscale_upload_received",
            filename=file.filename,
            image_size_mb=round(len(image_bytes) / (1024 * 1024), 2),
            tile_size=tile_size,
            overlap=overlap,
            upscale_factor=upscale_factor,
            final_pass=final_pass
        )
        
        options = UpscaleSettings.build(
            tile_size=tile_size,
            overlap=overlap,
            upscale_factor=upscale_factor,
            prompt=prompt,
            final_pass=final_pass,
            concurrency_limit=concurrency_limit,
            retry_count=retry_count,
            enhancement_passes=enhancement_passes,
            sharpness=sharpness,
            denoise=denoise,
            contrast=contrast
        )
        return await _run_upscale(job_id, image_bytes, options, pipeline)


@router.get("/status", response_model=EnhancerStatusResponse)
async def enhancer_status(client: EnhancementClient = Depends(get_enhancement_client)):
    """Report the enhancement mode chosen at startup."""
    info = client.describe()
    remote = client.mode == EnhancementMode.REMOTE
    
    return EnhancerStatusResponse(
        mode=client.mode.value,
        remote_configured=remote,
        fallback_to_local=bool(info.get("fallback_to_local", False)),
        circuit_breaker=info.get("circuit_breaker"),
        status="ai_ready" if remote else "local_only",
        message=(
            "Remote enhancement ready"
            if remote
            else "Set ENHANCER_API_URL and ENHANCER_API_KEY for remote enhancement"
        ),
        limits={
            "max_tile_count": settings.MAX_TILE_COUNT,
            "max_image_size_bytes": MAX_IMAGE_SIZE_BYTES,
            "allowed_formats": settings.allowed_image_formats,
            "max_upscale_factor": settings.MAX_UPSCALE_FACTOR,
            "max_concurrency_limit": settings.MAX_CONCURRENCY_LIMIT,
            "max_retry_count": settings.MAX_RETRY_COUNT,
            "pipeline_timeout_seconds": settings.PIPELINE_TIMEOUT_SECONDS
        }
    )
