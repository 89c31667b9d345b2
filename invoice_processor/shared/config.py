"""Shared configuration management for the invoice processor.

Based on Pydantic Settings v2 best practices:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_MAX_WORKERS=10
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Service configuration
    service_name: str = Field(
        default="invoice-processor-service",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )
    api_base_path: str = Field(
        default="/v1",
        description="Prefix for all versioned API routes",
    )

    # Extraction pipeline
    extraction_provider: Literal["openrouter", "mlx"] = Field(
        default="openrouter",
        description="Vision model provider: openrouter (cloud API), mlx (self-hosted MLX-VLM)",
    )
    max_workers: int = Field(
        default=5,
        description="Maximum concurrent extraction pipelines (upload + model call + parse)",
    )
    admission_timeout_seconds: float | None = Field(
        default=None,
        description="Give up waiting for a worker slot after this many seconds (None = wait)",
    )

    # OpenRouter configuration (for extraction_provider="openrouter")
    openrouter_api_key: str = Field(
        default="",
        description="OpenRouter API key (use env var APP_OPENROUTER_API_KEY)",
    )
    openrouter_base_url: str = Field(
        default="https://openrouter.ai/api/v1",
        description="OpenAI-compatible base URL of the OpenRouter API",
    )
    openrouter_model_id: str = Field(
        default="meta-llama/llama-3.2-11b-vision-instruct:free",
        description="Vision-capable model used for extraction",
    )
    openrouter_timeout_seconds: float = Field(
        default=60.0,
        description="HTTP timeout for a single model call",
    )
    openrouter_max_retries: int = Field(
        default=3,
        description="Attempts per model call before the error is surfaced",
    )
    openrouter_referer: str = Field(
        default="https://github.com/invoice-processor-service",
        description="HTTP-Referer header sent to OpenRouter for attribution",
    )

    # MLX-VLM configuration (for extraction_provider="mlx")
    mlx_service_url: str = Field(
        default="http://localhost:8000",
        description="MLX-VLM service base URL",
    )
    mlx_timeout_seconds: float = Field(
        default=300.0,
        description="HTTP timeout for MLX-VLM extraction requests",
    )

    # Storage configuration (S3-compatible object storage, e.g. Supabase storage)
    storage_endpoint: str = Field(
        default="",
        description="S3-compatible storage endpoint (host[:port])",
    )
    storage_access_key: str = Field(
        default="",
        description="Storage access key (use env var APP_STORAGE_ACCESS_KEY)",
    )
    storage_secret_key: str = Field(
        default="",
        description="Storage secret key (use env var APP_STORAGE_SECRET_KEY)",
    )
    storage_bucket: str = Field(
        default="invoice-images",
        description="Bucket receiving uploaded invoice images",
    )
    storage_region: str = Field(
        default="ap-southeast-1",
        description="Storage region",
    )
    storage_secure: bool = Field(
        default=True,
        description="Use HTTPS for storage connections",
    )
    storage_public_base_url: str = Field(
        default="",
        description="Base URL used to build public image URLs (defaults to the endpoint)",
    )

    # Receipt persistence
    database_url: str = Field(
        default="sqlite:///./receipts.db",
        description="SQLAlchemy URL of the receipt database",
    )


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
