"""
DocBridge - Core Configuration
==============================

Centralized configuration using Pydantic settings.
Settings can be configured via:
1. Environment variables (.env file) - For secrets and infrastructure
2. Defaults - Sensible defaults for all settings

Usage:
    from docbridge.core.config import settings

    client_id = settings.GOOGLE_CLIENT_ID
"""

from functools import lru_cache
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings

import structlog

logger = structlog.get_logger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Settings are divided into:
    - SECRETS: OAuth client credentials (must be in .env)
    - INFRASTRUCTURE: Database URLs, paths (usually in .env)
    - LIMITS: Connector sync and fetch limits
    """

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = Field(default="DocBridge", description="Application name")
    DEBUG: bool = Field(default=False, description="Debug mode")
    ENVIRONMENT: str = Field(default="development", description="Environment (development, staging, production)")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: str = Field(default="console", description="Log format (console or json)")

    # ==========================================================================
    # Database & Storage
    # ==========================================================================
    DATABASE_URL: str = Field(
        default="sqlite+aiosqlite:///./docbridge.db",
        description="Database connection URL"
    )
    DB_POOL_SIZE: int = Field(default=10, description="Connection pool size (ignored for SQLite)")
    DB_MAX_OVERFLOW: int = Field(default=20, description="Pool overflow connections (ignored for SQLite)")
    UPLOAD_DIR: str = Field(default="./uploads", description="Root directory for local blob storage")
    STORAGE_BUCKET: str = Field(default="recordings", description="Bucket used for uploads and URL imports")

    # ==========================================================================
    # OAuth - Google (SECRETS - .env only)
    # ==========================================================================
    GOOGLE_CLIENT_ID: str = Field(default="", description="Google OAuth client ID")
    GOOGLE_CLIENT_SECRET: str = Field(default="", description="Google OAuth client secret")
    GOOGLE_REDIRECT_URI: str = Field(default="", description="Google OAuth redirect URI")

    # ==========================================================================
    # OAuth - Microsoft (SECRETS - .env only)
    # ==========================================================================
    MICROSOFT_CLIENT_ID: str = Field(default="", description="Microsoft identity platform client ID")
    MICROSOFT_CLIENT_SECRET: str = Field(default="", description="Microsoft identity platform client secret")
    MICROSOFT_TENANT_ID: str = Field(default="common", description="Microsoft tenant (common for multi-tenant)")
    MICROSOFT_REDIRECT_URI: str = Field(default="", description="Microsoft OAuth redirect URI")

    # ==========================================================================
    # OAuth - Notion & Zoom (SECRETS - .env only)
    # ==========================================================================
    NOTION_CLIENT_ID: str = Field(default="", description="Notion OAuth client ID")
    NOTION_CLIENT_SECRET: str = Field(default="", description="Notion OAuth client secret")
    NOTION_REDIRECT_URI: str = Field(default="", description="Notion OAuth redirect URI")
    ZOOM_CLIENT_ID: str = Field(default="", description="Zoom OAuth client ID")
    ZOOM_CLIENT_SECRET: str = Field(default="", description="Zoom OAuth client secret")

    # ==========================================================================
    # Connector Limits
    # ==========================================================================
    CONNECTOR_MAX_FILE_SIZE_MB: int = Field(default=50, description="Max file size imported by a connector")
    CONNECTOR_PAGE_SIZE: int = Field(default=100, description="Page size for vendor list calls")
    CONNECTOR_SYNC_BATCH_SIZE: int = Field(default=10, description="Concurrent items per sync batch")
    TOKEN_EXPIRATION_BUFFER_SECONDS: int = Field(default=300, description="Refresh tokens this long before expiry")
    URL_IMPORT_TIMEOUT_SECONDS: int = Field(default=30, description="Per-request timeout for URL imports")
    URL_IMPORT_MAX_CONTENT_MB: int = Field(default=10, description="Max response size for URL imports")
    SHAREPOINT_SIMPLE_UPLOAD_LIMIT_MB: int = Field(default=4, description="Above this size SharePoint uses upload sessions")

    def model_post_init(self, __context: Any) -> None:
        """Warn about missing OAuth secrets outside development."""
        if self.ENVIRONMENT in ("production", "staging"):
            missing = [
                name for name in ("GOOGLE_CLIENT_ID", "MICROSOFT_CLIENT_ID", "ZOOM_CLIENT_ID")
                if not getattr(self, name)
            ]
            if missing:
                logger.warning("OAuth client credentials not configured", missing=missing)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"  # Ignore extra env vars


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()
