"""
Configuration module for the embedded-app authentication middleware.

This module uses Pydantic Settings to load and validate environment variables
for the Shopify app credentials, session verification behaviour, token
exchange limits and the liveness cache.

Environment variables are loaded from .env file or system environment.
"""

from functools import lru_cache
from typing import List

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    App credentials, middleware defaults and cache limits are defined here.
    """

    # =========================================================================
    # App Credentials
    # =========================================================================

    SHOPIFY_API_KEY: str = Field(
        ...,
        description="App API key (client id), also the expected session token audience",
        min_length=1,
    )

    SHOPIFY_API_SECRET: str = Field(
        ...,
        description="App API secret key, used to verify session tokens and OAuth HMACs",
        min_length=1,
    )

    SHOPIFY_SCOPES: str = Field(
        default="",
        description="Comma-separated access scopes requested during OAuth (e.g. 'read_products,write_orders')",
    )

    SHOPIFY_HOST_NAME: str = Field(
        default="localhost:8080",
        description="Public host name of this app, without scheme (e.g. 'my-app.example.com')",
    )

    SHOPIFY_API_VERSION: str = Field(
        default="2024-01",
        description="Admin API version used for authenticated calls",
    )

    IS_EMBEDDED_APP: bool = Field(
        default=True,
        description="Whether the app renders inside the Shopify Admin iframe",
    )

    # =========================================================================
    # Middleware Defaults
    # =========================================================================

    ACCESS_MODE: str = Field(
        default="online",
        description="Session access mode: 'online' (per user) or 'offline' (per shop)",
    )

    AUTH_PATH: str = Field(
        default="/auth",
        description="Route prefix of the interactive authorization flow",
    )

    RETURN_HEADER: bool = Field(
        default=False,
        description="Signal reauthorization with 401 + headers instead of a redirect",
    )

    # =========================================================================
    # Token Exchange / Verification Limits
    # =========================================================================

    TOKEN_EXCHANGE_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Upper bound on a single token exchange call",
        gt=0,
    )

    LIVENESS_CACHE_CAPACITY: int = Field(
        default=1000,
        description="Maximum number of (shop, access token) pairs remembered as valid",
        ge=1,
    )

    LIVENESS_CACHE_TTL_SECONDS: int = Field(
        default=3600,
        description="How long a confirmed access token is trusted without re-checking",
        ge=1,
    )

    SESSION_TOKEN_LEEWAY_SECONDS: int = Field(
        default=5,
        description="Clock skew tolerance when validating session tokens",
        ge=0,
        le=60,
    )

    OAUTH_STATE_TTL_SECONDS: int = Field(
        default=60,
        description="Lifetime of the signed OAuth state cookie",
        ge=10,
    )

    HTTP_TIMEOUT_SECONDS: float = Field(
        default=30.0,
        description="Timeout for outbound HTTP calls to the identity provider (above the token exchange bound)",
        gt=0,
    )

    # =========================================================================
    # Server Configuration
    # =========================================================================

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    MIDDLEWARE_HOST: str = Field(
        default="0.0.0.0",
        description="Host to bind the server",
    )

    MIDDLEWARE_PORT: int = Field(
        default=8080,
        description="Port to bind the server",
        ge=1,
        le=65535,
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def scopes_list(self) -> List[str]:
        """
        Parse and return SHOPIFY_SCOPES as a clean list.

        Returns:
            List of scope strings without whitespace, or empty list.
        """
        if not self.SHOPIFY_SCOPES:
            return []

        return [
            scope.strip()
            for scope in self.SHOPIFY_SCOPES.split(",")
            if scope.strip()
        ]

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("ACCESS_MODE")
    @classmethod
    def validate_access_mode(cls, v: str) -> str:
        """
        Validate access mode is one of the supported values.

        Raises:
            ValueError: If mode is not 'online' or 'offline'
        """
        v = v.strip().lower()
        if v not in ("online", "offline"):
            raise ValueError(f"ACCESS_MODE must be 'online' or 'offline', got: {v}")
        return v

    @field_validator("AUTH_PATH")
    @classmethod
    def validate_auth_path(cls, v: str) -> str:
        """
        Validate the auth path is relative without a trailing slash.

        Raises:
            ValueError: If the path is malformed
        """
        if not v.startswith("/") or v.endswith("/"):
            raise ValueError(
                f"Invalid auth path: '{v}'. "
                "Must be a relative path without a trailing slash (eg. '/auth')."
            )
        return v

    @field_validator("SHOPIFY_HOST_NAME")
    @classmethod
    def strip_host_scheme(cls, v: str) -> str:
        """Host name is stored without scheme or trailing slash."""
        for prefix in ("https://", "http://"):
            if v.startswith(prefix):
                v = v[len(prefix):]
        return v.rstrip("/")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unsupported LOG_LEVEL: {v}")
        return v

    @model_validator(mode="after")
    def validate_timeouts(self) -> "Settings":
        """
        The HTTP timeout must outlast the token exchange bound, so a slow
        exchange is reported as a timeout rather than a transport failure.

        Raises:
            ValueError: If HTTP_TIMEOUT_SECONDS <= TOKEN_EXCHANGE_TIMEOUT_SECONDS
        """
        if self.HTTP_TIMEOUT_SECONDS <= self.TOKEN_EXCHANGE_TIMEOUT_SECONDS:
            raise ValueError(
                f"HTTP_TIMEOUT_SECONDS ({self.HTTP_TIMEOUT_SECONDS}) must be greater than "
                f"TOKEN_EXCHANGE_TIMEOUT_SECONDS ({self.TOKEN_EXCHANGE_TIMEOUT_SECONDS})"
            )
        return self


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the application lifecycle.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()
