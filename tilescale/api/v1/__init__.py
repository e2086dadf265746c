"""
API v1 Router Module

All v1 endpoints are prefixed with /api/v1/

Primary endpoint: POST /api/v1/upscale
- JSON (base64 image) and multipart upload variants
- GET /api/v1/upscale/status reports the enhancement mode
"""

from fastapi import APIRouter

from tilescale.api.v1.upscale import router as upscale_router
from tilescale.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(upscale_router, prefix="/upscale", tags=["upscale"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
