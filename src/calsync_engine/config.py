# src/calsync_engine/config.py
"""Configuration management using Pydantic Settings."""

from pathlib import Path
from typing import Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Google Calendar API (OAuth client used for refresh-token grants)
    google_client_id: Optional[str] = Field(None, description="Google OAuth Client ID")
    google_client_secret: Optional[str] = Field(None, description="Google OAuth Client Secret")
    google_token_uri: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="Google OAuth token endpoint"
    )

    # Microsoft Graph (Outlook) OAuth client
    outlook_client_id: Optional[str] = Field(None, description="Azure AD application ID")
    outlook_client_secret: Optional[str] = Field(None, description="Azure AD client secret")
    outlook_tenant: str = Field(default="common", description="Azure AD tenant")

    # Application Configuration
    app_name: str = Field(default="calsync-engine", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )

    # Storage Configuration
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".calsync-engine",
        description="Application data directory"
    )
    database_url: str = Field(
        default="",
        description="Database URL (defaults to SQLite in data_dir)"
    )
    sync_log_retention_days: int = Field(
        default=30,
        ge=1,
        description="Days a sync log is kept before it is purged"
    )

    # Scheduler Configuration
    scheduler_enabled: bool = Field(default=True, description="Start the scheduler with the server")
    sync_interval_minutes: int = Field(default=15, ge=1, le=1440)
    token_refresh_interval_minutes: int = Field(default=60, ge=1, le=1440)
    derived_events_interval_minutes: int = Field(default=30, ge=1, le=1440)

    # Performance Configuration
    request_timeout_seconds: int = Field(
        default=30,
        ge=1,
        le=300,
        description="Upper bound for a single provider call"
    )

    @validator('data_dir', pre=True)
    def expand_path(cls, v):
        """Expand user paths and convert to Path objects."""
        if isinstance(v, str):
            return Path(v).expanduser().absolute()
        return v.expanduser().absolute()

    @validator('database_url', always=True)
    def set_default_database_url(cls, v, values):
        """Set default SQLite database URL if not provided."""
        if not v and 'data_dir' in values:
            data_dir = values['data_dir']
            return f"sqlite:///{data_dir}/calsync.db"
        return v

    @validator('log_level')
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    def ensure_directories(self):
        """Create the data directory with owner-only permissions."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

    @property
    def outlook_token_url(self) -> str:
        """Microsoft identity platform token endpoint for the configured tenant."""
        return f"https://login.microsoftonline.com/{self.outlook_tenant}/oauth2/v2.0/token"


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Load application settings.

    Args:
        config_file: Optional path to a .env style configuration file

    Returns:
        Settings instance
    """
    if config_file:
        settings = Settings(_env_file=config_file)
    else:
        settings = Settings()
    settings.ensure_directories()
    return settings


def create_example_config(path: Path) -> None:
    """Create an example configuration file.

    Args:
        path: Path to create the example config file
    """
    example_content = '''# CalSync Engine Configuration
# Copy this file to .env and fill in your OAuth client credentials

# Google Calendar OAuth client (refresh-token grant)
GOOGLE_CLIENT_ID=your_google_client_id_here
GOOGLE_CLIENT_SECRET=your_google_client_secret_here

# Microsoft Graph OAuth client
OUTLOOK_CLIENT_ID=your_azure_app_id_here
OUTLOOK_CLIENT_SECRET=your_azure_client_secret_here
OUTLOOK_TENANT=common

# Application Configuration
DEBUG=false
LOG_LEVEL=INFO

# Scheduler
SCHEDULER_ENABLED=true
SYNC_INTERVAL_MINUTES=15
TOKEN_REFRESH_INTERVAL_MINUTES=60
DERIVED_EVENTS_INTERVAL_MINUTES=30

# Provider calls
REQUEST_TIMEOUT_SECONDS=30

# Storage Configuration (optional)
# DATA_DIR=~/.calsync-engine
# DATABASE_URL=sqlite:///~/.calsync-engine/calsync.db
SYNC_LOG_RETENTION_DAYS=30
'''

    with open(path, 'w') as f:
        f.write(example_content)
