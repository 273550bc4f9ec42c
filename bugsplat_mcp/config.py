"""
Configuration Management

Settings for the BugSplat MCP server, loaded from environment variables
(and an optional .env file) with Pydantic Settings.

The Settings object is passed explicitly to every component that needs it;
get_settings() exists only for the server entry point.
"""
import os
import tempfile
from pathlib import Path
from typing import Optional

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings

from bugsplat_mcp.errors import ConfigurationError

DEFAULT_CACHE_DIR = Path(tempfile.gettempdir()) / "bugsplat-mcp"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ============================================================
    # BugSplat account
    # ============================================================
    bugsplat_database: Optional[str] = Field(None, description="BugSplat database name")
    bugsplat_client_id: Optional[str] = Field(None, description="OAuth client id")
    bugsplat_client_secret: Optional[str] = Field(None, description="OAuth client secret")
    bugsplat_api_url: str = Field("https://app.bugsplat.com", description="BugSplat API base URL")

    # ============================================================
    # Attachment cache
    # ============================================================
    mcp_attachment_cache_dir: Path = Field(
        DEFAULT_CACHE_DIR,
        description="Root directory for extracted attachment bundles"
    )
    mcp_attachment_cache_ttl_days: int = Field(14, ge=0, description="Delete cached crashes older than this")
    mcp_attachment_max_bundle_mb: int = Field(50, ge=1, description="Largest bundle that will be downloaded")
    mcp_attachment_download_timeout: Optional[float] = Field(
        None,
        description="Bundle download timeout in seconds (unset = no timeout)"
    )

    # ============================================================
    # Response limits
    # ============================================================
    mcp_max_response_bytes: int = Field(
        int(1048576 * 0.8),
        ge=1,
        description="Max attachment payload per response (client limit minus some buffer)"
    )
    mcp_default_chunk_bytes: int = Field(262144, ge=1, description="Default get-attachment limit")
    mcp_max_chunk_bytes: int = Field(1048576, ge=1, description="Largest allowed get-attachment limit")

    # ============================================================
    # Logging
    # ============================================================
    mcp_log_dir: Path = Field(Path("~/.bugsplat-mcp-logs"), description="Directory for audit logs")

    @property
    def max_bundle_bytes(self) -> int:
        return self.mcp_attachment_max_bundle_mb * 1024 * 1024

    def require_database(self) -> str:
        """Return the configured database name or raise ConfigurationError."""
        if not self.bugsplat_database:
            raise ConfigurationError("BUGSPLAT_DATABASE environment variable is not defined")
        return self.bugsplat_database

    def require_credentials(self) -> None:
        """Raise ConfigurationError naming every missing required variable."""
        missing = [
            name for name, value in (
                ("BUGSPLAT_DATABASE", self.bugsplat_database),
                ("BUGSPLAT_CLIENT_ID", self.bugsplat_client_id),
                ("BUGSPLAT_CLIENT_SECRET", self.bugsplat_client_secret),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}"
            )

    def clamp_chunk_limit(self, limit: Optional[int]) -> int:
        """Clamp a caller-supplied byte limit into [1, mcp_max_chunk_bytes]."""
        if limit is None:
            limit = self.mcp_default_chunk_bytes
        return max(1, min(int(limit), self.mcp_max_chunk_bytes))


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings (singleton).
    
    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings


def log_dir(settings: Settings) -> Path:
    return Path(os.path.expanduser(str(settings.mcp_log_dir)))
