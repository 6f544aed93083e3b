"""Shared configuration management for the invoice intake service.

Based on Pydantic Settings v2 best practices:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

import logging
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_LOG_LEVEL=debug
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
        default="invoice-intake",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Extraction provider configuration
    extraction_provider: Literal["regex", "ollama", "openai"] = Field(
        default="regex",
        description=(
            "Extraction provider: regex (offline fallback), ollama (self-hosted LLM), "
            "openai (cloud API)"
        ),
    )
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Ollama server base URL",
    )
    ollama_model: str = Field(
        default="qwen2.5:7b",
        description="Ollama model to use for extraction",
    )
    openai_model: str = Field(
        default="gpt-4o-mini",
        description="OpenAI model to use for extraction",
    )
    llm_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Timeout for a single LLM call",
    )

    ocr_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Timeout for a single Tesseract run",
    )

    # Normalization and confidence policy
    date_order: Literal["MDY", "DMY"] = Field(
        default="MDY",
        description="Component order for ambiguous dates like 03/04/2024",
    )
    confidence_weights: dict[str, float] = Field(
        default_factory=dict,
        description="Overrides for the per-field base confidence table (JSON in env)",
    )
    review_threshold: float = Field(
        default=0.7,
        ge=0,
        le=1,
        description="Overall confidence below this needs human review",
    )
    high_confidence_threshold: float = Field(
        default=0.9,
        ge=0,
        le=1,
        description="Overall confidence at or above this is high confidence",
    )
    auto_approve_high_confidence: bool = Field(
        default=False,
        description="Approve high-confidence extractions without review",
    )

    # Duplicate detection
    duplicate_window_days: int = Field(
        default=90,
        ge=0,
        description="Maximum invoice date distance for duplicate candidates",
    )

    # QuickBooks Online
    quickbooks_client_id: str = Field(
        default="",
        description="QuickBooks OAuth client id (use env var APP_QUICKBOOKS_CLIENT_ID)",
    )
    quickbooks_client_secret: str = Field(
        default="",
        description="QuickBooks OAuth client secret (use env var APP_QUICKBOOKS_CLIENT_SECRET)",
    )
    quickbooks_environment: Literal["sandbox", "production"] = Field(
        default="sandbox",
        description="QuickBooks API environment",
    )
    quickbooks_redirect_uri: str = Field(
        default="http://localhost:3000/api/accounting/quickbooks/callback",
        description="OAuth redirect URI registered with Intuit",
    )
    default_gl_account: str = Field(
        default="1",
        description="Expense account used for bill lines without an explicit account",
    )
    token_refresh_margin_seconds: int = Field(
        default=300,
        ge=0,
        description="Refresh access tokens expiring within this many seconds",
    )

    # Accounting sync
    provider_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for a single accounting provider call",
    )
    sync_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts for a bill sync when the provider reports transient errors",
    )
    vendor_match_threshold: float = Field(
        default=0.85,
        ge=0,
        le=1,
        description="Minimum name similarity to reuse an existing provider vendor",
    )
    excel_output_dir: str = Field(
        default="exports",
        description="Directory holding spreadsheet exports for the excel provider",
    )


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()


def configure_logging(settings: Settings) -> None:
    """Configure root logging for entry points (CLI, worker processes)."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
