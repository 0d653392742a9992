"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.
"""

from pydantic_settings import BaseSettings
from pathlib import Path
from typing import Optional


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "FreshMate Ripeness Detection"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD
    DEBUG: bool = True

    # ==========================================================================
    # Inference Service
    # ==========================================================================
    INFERENCE_SERVICE_URL: str = "http://localhost:8080"
    INFERENCE_TIMEOUT_SECONDS: float = 30.0
    # Only disable for a known internal endpoint with a self-signed certificate
    INFERENCE_VERIFY_TLS: bool = True

    # ==========================================================================
    # Storage Settings (The Bridge Pattern)
    # ==========================================================================
    STORAGE_BACKEND: str = "local"  # local, s3
    STORAGE_PREFIX: str = "cc"
    STORAGE_TIMEOUT_SECONDS: float = 30.0

    # Local storage path (development)
    LOCAL_STORAGE_PATH: str = "./data/storage"

    # S3-compatible object storage (production). Google Cloud Storage works
    # through its interoperability endpoint: https://storage.googleapis.com
    S3_BUCKET: Optional[str] = None
    S3_ENDPOINT_URL: Optional[str] = None
    S3_REGION: Optional[str] = None
    S3_ACCESS_KEY: Optional[str] = None
    S3_SECRET_KEY: Optional[str] = None

    # ==========================================================================
    # Upload Validation
    # ==========================================================================
    MAX_IMAGE_SIZE_BYTES: int = 2097152  # 2MB
    ALLOWED_IMAGE_TYPES: str = "image/jpeg,image/jpg,image/png"
    ALLOWED_IMAGE_EXTENSIONS: str = "jpg,jpeg,png"

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
    def allowed_image_types(self) -> set:
        return {t.strip().lower() for t in self.ALLOWED_IMAGE_TYPES.split(",") if t.strip()}

    @property
    def allowed_image_extensions(self) -> set:
        return {e.strip().lower().lstrip(".") for e in self.ALLOWED_IMAGE_EXTENSIONS.split(",") if e.strip()}


# Global settings instance
settings = Settings()

# Ensure critical directories exist
if settings.STORAGE_BACKEND.lower() == "local":
    Path(settings.LOCAL_STORAGE_PATH).mkdir(parents=True, exist_ok=True)
