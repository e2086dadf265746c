"""
FastAPI Dependencies

The Enhancement Client is created once per process in the application
lifespan and stored on app.state; the pipeline is built per request around
that singleton.
"""

from fastapi import Request

from tilescale.pipeline.enhancer import EnhancementClient
from tilescale.pipeline.orchestrator import UpscalePipeline


def get_enhancement_client(request: Request) -> EnhancementClient:
    """Returns the process-wide enhancement client."""
    return request.app.state.enhancement_client


def get_pipeline(request: Request) -> UpscalePipeline:
    """Returns an UpscalePipeline bound to the process-wide client."""
    return UpscalePipeline(get_enhancement_client(request))
