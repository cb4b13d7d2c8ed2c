"""
Application configuration management.
"""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "iOS Back"
    environment: str = "development"
    debug: bool = False
    log_level: str = "info"

    # Server
    host: str = "0.0.0.0"
    port: int = 8080

    # App Store receipt verification
    apple_shared_secret: Optional[str] = None
    apple_sandbox: bool = False
    apple_max_retries: int = 2  # retries on statuses 21100-21199
    apple_timeout: float = 30.0  # seconds
    apple_exclude_old_transactions: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
