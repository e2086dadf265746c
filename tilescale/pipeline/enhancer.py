"""
Enhancement Client

Turns one tile buffer into one enhanced tile buffer. The operating mode is
chosen once at process start by create_enhancement_client():

- remote: an external endpoint and credential are configured. Each call is
  retried on network errors and 5xx/429 responses with exponential backoff,
  for a total of retry_count + 1 attempts. Exhaustion raises
  RemoteEnhancementError, or resizes locally when ENHANCER_FALLBACK_TO_LOCAL
  is switched on.
- local: no endpoint. Every call is a deterministic Lanczos resize run on a
  worker thread, so the pipeline works with zero external dependencies.
"""

import asyncio
import base64
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
import numpy as np

from tilescale.core.config import Settings, settings as app_settings
from tilescale.core.exceptions import CircuitBreaker, RemoteEnhancementError
from tilescale.core.logging import get_logger
from tilescale.core.metrics import record_enhancement_attempt
from tilescale.pipeline.imaging import decode_tile, encode_image, resize_by_factor
from tilescale.pipeline.models import EnhancementMode

logger = get_logger(__name__)

# Remote statuses worth another attempt
TRANSIENT_STATUS_CODES = {429}


class EnhancementClient(ABC):
    """Buffer-in, buffer-out enhancement of a single tile."""
    
    mode: EnhancementMode
    
    @abstractmethod
    async def enhance(
        self,
        pixels: np.ndarray,
        prompt: str,
        upscale_factor: float,
        retry_count: Optional[int] = None
    ) -> np.ndarray:
        """Return the enhanced tile, roughly upscale_factor times larger."""
    
    def describe(self) -> Dict[str, Any]:
        return {"mode": self.mode.value}
    
    async def aclose(self):
        """Release network resources."""


class LocalEnhancementClient(EnhancementClient):
    """Stand-in enhancer: a plain resize by upscale_factor."""
    
    mode = EnhancementMode.LOCAL
    
    async def enhance(
        self,
        pixels: np.ndarray,
        prompt: str,
        upscale_factor: float,
        retry_count: Optional[int] = None
    ) -> np.ndarray:
        enhanced = await asyncio.to_thread(resize_by_factor, pixels, upscale_factor)
        record_enhancement_attempt(self.mode.value, "success")
        return enhanced


class RemoteEnhancementClient(EnhancementClient):
    """HTTP client for the external super-resolution service."""
    
    mode = EnhancementMode.REMOTE
    
    def __init__(
        self,
        api_url: str,
        api_key: str,
        timeout_seconds: float = 60.0,
        backoff_seconds: float = 0.5,
        default_retry_count: int = 2,
        fallback_to_local: bool = False,
        circuit_breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_url = api_url
        self.backoff_seconds = backoff_seconds
        self.default_retry_count = default_retry_count
        self.fallback_to_local = fallback_to_local
        self.circuit = circuit_breaker or CircuitBreaker("remote_enhancer")
        self._local = LocalEnhancementClient()
        self._headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}"
        }
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)
    
    def describe(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "api_url": self.api_url,
            "fallback_to_local": self.fallback_to_local,
            "circuit_breaker": self.circuit.state
        }
    
    async def aclose(self):
        await self._client.aclose()
    
    async def enhance(
        self,
        pixels: np.ndarray,
        prompt: str,
        upscale_factor: float,
        retry_count: Optional[int] = None
    ) -> np.ndarray:
        retries = self.default_retry_count if retry_count is None else retry_count
        try:
            return await self._enhance_remote(pixels, prompt, upscale_factor, retries + 1)
        except RemoteEnhancementError as e:
            if not self.fallback_to_local:
                raise
            logger.warning(
                "enhancement_fallback_to_local",
                attempts=e.attempts,
                error=e.message,
                cause=e.details.get("cause")
            )
            record_enhancement_attempt(self.mode.value, "fallback")
            return await self._local.enhance(pixels, prompt, upscale_factor)
    
    async def _enhance_remote(
        self,
        pixels: np.ndarray,
        prompt: str,
        upscale_factor: float,
        max_attempts: int
    ) -> np.ndarray:
        if not self.circuit.can_execute():
            raise RemoteEnhancementError(
                "Remote enhancer is temporarily unavailable (circuit breaker open)",
                attempts=0
            )
        
        payload = await asyncio.to_thread(self._build_payload, pixels, prompt, upscale_factor)
        channels = pixels.shape[2]
        last_error: Optional[BaseException] = None
        last_status: Optional[int] = None
        
        for attempt in range(1, max_attempts + 1):
            try:
                response = await self._client.post(self.api_url, json=payload, headers=self._headers)
                response.raise_for_status()
                enhanced = await asyncio.to_thread(self._decode_response, response, channels)
            except httpx.HTTPStatusError as e:
                last_error = e
                last_status = e.response.status_code
                if last_status < 500 and last_status not in TRANSIENT_STATUS_CODES:
                    record_enhancement_attempt(self.mode.value, "client_error")
                    self.circuit.record_failure(e)
                    raise RemoteEnhancementError(
                        f"Remote enhancer rejected the request (HTTP {last_status})",
                        attempts=attempt,
                        cause=e,
                        http_status=last_status
                    ) from e
                outcome = "server_error"
            except httpx.TransportError as e:
                last_error = e
                outcome = "timeout" if isinstance(e, httpx.TimeoutException) else "network_error"
            except (ValueError, KeyError, OSError) as e:
                # Undecodable body: retrying the same request will not help
                record_enhancement_attempt(self.mode.value, "invalid_response")
                self.circuit.record_failure(e)
                raise RemoteEnhancementError(
                    "Remote enhancer returned an unreadable image",
                    attempts=attempt,
                    cause=e
                ) from e
            else:
                record_enhancement_attempt(self.mode.value, "success")
                self.circuit.record_success()
                return enhanced
            
            record_enhancement_attempt(self.mode.value, outcome)
            logger.warning(
                "enhancement_attempt_failed",
                attempt=attempt,
                max_attempts=max_attempts,
                outcome=outcome,
                http_status=last_status,
                error=str(last_error)
            )
            
            if attempt < max_attempts:
                await asyncio.sleep(self.backoff_seconds * (2 ** (attempt - 1)))
        
        self.circuit.record_failure(last_error)
        logger.error(
            "enhancement_retries_exhausted",
            attempts=max_attempts,
            http_status=last_status,
            error=str(last_error)
        )
        raise RemoteEnhancementError(
            f"Remote enhancement failed after {max_attempts} attempts",
            attempts=max_attempts,
            cause=last_error,
            http_status=last_status
        ) from last_error
    
    @staticmethod
    def _build_payload(pixels: np.ndarray, prompt: str, upscale_factor: float) -> Dict[str, Any]:
        return {
            "image": base64.b64encode(encode_image(pixels)).decode("utf-8"),
            "prompt": prompt,
            "upscale_factor": upscale_factor,
            "width": int(pixels.shape[1]),
            "height": int(pixels.shape[0])
        }
    
    @staticmethod
    def _decode_response(response: httpx.Response, channels: int) -> np.ndarray:
        content_type = response.headers.get("content-type", "")
        if content_type.startswith("image/"):
            return decode_tile(response.content, channels)
        
        result = response.json()
        encoded = result.get("image") or result.get("output")
        if not encoded:
            raise ValueError("Remote response carried no image")
        if encoded.startswith("data:"):
            encoded = encoded.split(",", 1)[1]
        return decode_tile(base64.b64decode(encoded), channels)


def create_enhancement_client(
    config: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> EnhancementClient:
    """Pick the enhancement mode once, from configuration."""
    config = config or app_settings
    
    if config.remote_enhancer_configured:
        logger.info(
            "enhancement_mode_selected",
            mode=EnhancementMode.REMOTE.value,
            api_url=config.ENHANCER_API_URL,
            fallback_to_local=config.ENHANCER_FALLBACK_TO_LOCAL
        )
        return RemoteEnhancementClient(
            api_url=config.ENHANCER_API_URL,
            api_key=config.ENHANCER_API_KEY,
            timeout_seconds=config.ENHANCER_REQUEST_TIMEOUT_SECONDS,
            backoff_seconds=config.ENHANCER_RETRY_BACKOFF_SECONDS,
            default_retry_count=config.DEFAULT_RETRY_COUNT,
            fallback_to_local=config.ENHANCER_FALLBACK_TO_LOCAL,
            circuit_breaker=CircuitBreaker(
                "remote_enhancer",
                failure_threshold=config.ENHANCER_BREAKER_FAILURE_THRESHOLD,
                recovery_timeout=config.ENHANCER_BREAKER_RECOVERY_SECONDS
            ),
            transport=transport
        )
    
    logger.info("enhancement_mode_selected", mode=EnhancementMode.LOCAL.value)
    return LocalEnhancementClient()
