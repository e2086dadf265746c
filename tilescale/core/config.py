"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings with environment variable support."""
    
    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "Tilescale Super-Resolution Service"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD
    DEBUG: bool = True
    
    # ==========================================================================
    # Remote Enhancer
    # ==========================================================================
    # Remote mode is only enabled when both URL and key are set
    ENHANCER_API_URL: Optional[str] = None
    ENHANCER_API_KEY: Optional[str] = None
    ENHANCER_REQUEST_TIMEOUT_SECONDS: float = 60.0
    ENHANCER_RETRY_BACKOFF_SECONDS: float = 0.5  # doubled per attempt
    
    # Resize a tile locally once its remote retries are exhausted
    ENHANCER_FALLBACK_TO_LOCAL: bool = False
    
    ENHANCER_BREAKER_FAILURE_THRESHOLD: int = 5
    ENHANCER_BREAKER_RECOVERY_SECONDS: int = 60
    
    # ==========================================================================
    # Pipeline Defaults & Ceilings
    # ==========================================================================
    DEFAULT_TILE_SIZE: int = 256
    DEFAULT_OVERLAP: int = 64
    DEFAULT_UPSCALE_FACTOR: float = 2.0
    DEFAULT_CONCURRENCY_LIMIT: int = 5
    DEFAULT_RETRY_COUNT: int = 2
    DEFAULT_PROMPT: str = "enhance detail, keep the original style"
    
    MAX_UPSCALE_FACTOR: float = 8.0
    MAX_CONCURRENCY_LIMIT: int = 16
    MAX_RETRY_COUNT: int = 5
    MAX_TILE_COUNT: int = 500
    MAX_ENHANCEMENT_PASSES: int = 3
    MAX_OUTPUT_PIXELS: int = 64_000_000
    MAX_PROMPT_LENGTH: int = 2000
    
    PIPELINE_TIMEOUT_SECONDS: float = 300.0
    
    # ==========================================================================
    # Upload Limits
    # ==========================================================================
    MAX_IMAGE_SIZE_BYTES: int = 10485760  # 10MB
    ALLOWED_IMAGE_FORMATS: str = "PNG,JPEG,WEBP"
    
    # ==========================================================================
    # Logging Settings
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT_JSON: bool = True  # JSON for production, console for development
    
    # ==========================================================================
    # CORS Settings
    # ==========================================================================
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173,http://localhost:8000"
    
    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
    
    @property
    def remote_enhancer_configured(self) -> bool:
        return bool(self.ENHANCER_API_URL and self.ENHANCER_API_KEY)
    
    @property
    def allowed_image_formats(self) -> List[str]:
        return [f.strip().upper() for f in self.ALLOWED_IMAGE_FORMATS.split(",") if f.strip()]


# Global settings instance
settings = Settings()
