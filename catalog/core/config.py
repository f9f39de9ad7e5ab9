"""Core application configuration and settings.

Handles environment variables, database, Redis, JWT, CSRF, CORS and
throttling settings.
"""
import os
from functools import lru_cache
from pathlib import Path
from typing import List, Optional
from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings


# Load environment variables
ROOT = Path(__file__).resolve().parents[2]
load_dotenv(dotenv_path=ROOT / ".env", override=False)

DEVELOPMENT_SECRET_KEY = "development-secret-key-change-in-production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = Field(
        default_factory=lambda: os.getenv("DATABASE_URL") or "sqlite:///./catalog.db",
        alias="DATABASE_URL"
    )
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    # Redis Configuration
    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_password: Optional[str] = Field(default=None, alias="REDIS_PASSWORD")
    redis_db: int = Field(default=0, alias="REDIS_DB")
    redis_enabled: bool = Field(default=True, alias="REDIS_ENABLED")

    # JWT Authentication
    jwt_secret_key: str = Field(default=DEVELOPMENT_SECRET_KEY, alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_lifetime_minutes: int = Field(default=5, alias="ACCESS_TOKEN_LIFETIME_MINUTES")
    refresh_token_lifetime_days: int = Field(default=1, alias="REFRESH_TOKEN_LIFETIME_DAYS")
    rotate_refresh_tokens: bool = Field(default=True, alias="ROTATE_REFRESH_TOKENS")
    blacklist_after_rotation: bool = Field(default=True, alias="BLACKLIST_AFTER_ROTATION")
    update_last_login: bool = Field(default=False, alias="UPDATE_LAST_LOGIN")

    # CSRF
    csrf_cookie_name: str = Field(default="csrftoken", alias="CSRF_COOKIE_NAME")
    csrf_header_name: str = Field(default="X-CSRFToken", alias="CSRF_HEADER_NAME")
    csrf_form_field: str = Field(default="csrfmiddlewaretoken", alias="CSRF_FORM_FIELD")
    csrf_cookie_secure: bool = Field(default=False, alias="CSRF_COOKIE_SECURE")
    csrf_cookie_age: int = Field(default=60 * 60 * 24 * 365, alias="CSRF_COOKIE_AGE")
    csrf_trusted_origins: List[str] = Field(default_factory=list, alias="CSRF_TRUSTED_ORIGINS")
    csrf_exempt_paths: List[str] = Field(
        default_factory=lambda: ["/api/"],
        alias="CSRF_EXEMPT_PATHS"
    )

    # Throttling
    anon_throttle_rate: str = Field(default="100/day", alias="ANON_THROTTLE_RATE")
    user_throttle_rate: str = Field(default="1000/day", alias="USER_THROTTLE_RATE")
    throttling_enabled: bool = Field(default=True, alias="THROTTLING_ENABLED")

    # Pagination
    page_size: int = Field(default=10, alias="PAGE_SIZE")
    max_page_size: int = Field(default=100, alias="MAX_PAGE_SIZE")

    # Fixtures
    fixture_dirs: List[str] = Field(default_factory=list, alias="FIXTURE_DIRS")

    # Application Settings
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # API Settings
    cors_origins: List[str] = Field(
        default_factory=lambda: [
            "http://localhost:3000",
            "http://127.0.0.1:3000"
        ],
        alias="CORS_ORIGINS"
    )
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")

    model_config = {
        "case_sensitive": False,
        "env_file": ".env",
        "populate_by_name": True,
        "extra": "ignore",
    }

    def validate_required_settings(self):
        """Validate that required settings are present."""
        if not self.database_url:
            raise ValueError("DATABASE_URL not set. Define DATABASE_URL in .env.")
        if self.environment == "production" and self.jwt_secret_key == DEVELOPMENT_SECRET_KEY:
            raise ValueError(
                "JWT_SECRET_KEY must be set to a secure value in production."
            )
        if self.page_size < 1 or self.max_page_size < self.page_size:
            raise ValueError("PAGE_SIZE must be positive and not exceed MAX_PAGE_SIZE.")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# Validate settings on module import (only in non-test environments)
if settings.environment != "test":
    try:
        settings.validate_required_settings()
    except ValueError as e:
        print(f"Configuration Error: {e}")
        # Don't raise in development to allow partial setup
        if settings.environment == "production":
            raise
