"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.

Credentials are never embedded: remote service keys come from the
environment (or are supplied at runtime through the orchestrator).
"""

from enum import Enum
from typing import Optional

from pydantic_settings import BaseSettings


class QualityTier(str, Enum):
    """Named enhancement effort levels."""
    STANDARD = "standard"   # 2K studio polish
    HIGH = "high"           # 4K product master


# Target output long edge and service size label per tier
TIER_TARGETS = {
    QualityTier.STANDARD: (2048, "2K"),
    QualityTier.HIGH: (4096, "4K"),
}


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "EtsyFlow Enhancer"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD
    DEBUG: bool = True

    # ==========================================================================
    # Remote AI Services
    # ==========================================================================
    ANALYSIS_API_URL: str = "http://localhost:8081/v1/analyze"
    ANALYSIS_API_KEY: Optional[str] = None

    ENHANCEMENT_API_URL: str = "http://localhost:8081/v1/enhance"
    ENHANCEMENT_API_KEY: Optional[str] = None
    ENHANCEMENT_REQUIRE_API_KEY: bool = True

    # Timeout + retry policy (applies to both services)
    REMOTE_TIMEOUT_SECONDS: float = 60.0
    REMOTE_MAX_ATTEMPTS: int = 3
    REMOTE_BACKOFF_BASE_SECONDS: float = 1.0
    REMOTE_BACKOFF_MAX_SECONDS: float = 30.0

    # ==========================================================================
    # Ingestion Settings
    # ==========================================================================
    MAX_IMAGE_SIZE_BYTES: int = 10485760  # 10MB
    MAX_SAFE_DIMENSION: int = 2048        # long edge after normalization
    NORMALIZE_JPEG_QUALITY: int = 85
    MIN_PUBLISH_DIMENSION: int = 2000     # Etsy recommended minimum, both axes

    # ==========================================================================
    # Orchestration Settings
    # ==========================================================================
    DEFAULT_QUALITY_TIER: QualityTier = QualityTier.STANDARD
    ENHANCEMENT_INTER_ITEM_DELAY_SECONDS: float = 1.0
    ENHANCEMENT_FALLBACK_TO_ORIGINAL: bool = False

    # ==========================================================================
    # Preview Storage
    # ==========================================================================
    PREVIEW_STORAGE_BACKEND: str = "memory"  # memory, local
    LOCAL_PREVIEW_PATH: str = "./data/previews"

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


# Global settings instance
settings = Settings()
