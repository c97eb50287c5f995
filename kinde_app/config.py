"""
Configuration module for the Kinde login service.

This module uses Pydantic Settings to load and validate environment variables
for the Kinde identity provider, session cookies, outbound HTTP limits and
logging.

Environment variables are loaded from .env file or system environment.
"""

from functools import lru_cache
from typing import List, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SESSION_SECRET = "change-this-secret-in-production"

SEVEN_DAYS_SECONDS = 86400 * 7

REQUIRED_SETTINGS = (
    "KINDE_DOMAIN",
    "KINDE_CLIENT_ID",
    "KINDE_CLIENT_SECRET",
    "KINDE_REDIRECT_URI",
    "KINDE_LOGOUT_REDIRECT_URI",
)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    The Kinde values default to empty strings so the service can still boot
    into setup mode and report what is missing instead of crashing on import.
    """

    # =========================================================================
    # Kinde Configuration (OAuth2 Authorization Code + PKCE)
    # =========================================================================

    KINDE_DOMAIN: str = Field(
        default="",
        description="Kinde business domain (e.g., https://yourbusiness.kinde.com)",
    )

    KINDE_CLIENT_ID: str = Field(
        default="",
        description="Kinde application client ID",
    )

    KINDE_CLIENT_SECRET: str = Field(
        default="",
        description="Kinde application client secret",
    )

    KINDE_REDIRECT_URI: str = Field(
        default="",
        description="Callback URL registered in Kinde (e.g., http://localhost:3000/callback)",
    )

    KINDE_LOGOUT_REDIRECT_URI: str = Field(
        default="",
        description="Where Kinde sends the browser after logout (e.g., http://localhost:3000)",
    )

    # =========================================================================
    # Session Configuration
    # =========================================================================

    SESSION_SECRET: str = Field(
        default=DEFAULT_SESSION_SECRET,
        description="Secret used to sign and encrypt the session cookie",
        min_length=1,
    )

    SESSION_BACKEND: Literal["cookie", "memory"] = Field(
        default="cookie",
        description="Where session values live: inside the encrypted cookie, or in process memory",
    )

    SESSION_MAX_AGE_SECONDS: int = Field(
        default=SEVEN_DAYS_SECONDS,
        description="Session time-to-live in seconds",
        ge=60,
    )

    SESSION_COOKIE_SECURE: bool = Field(
        default=False,
        description="Only send the session cookie over HTTPS (enable in production)",
    )

    SESSION_MEMORY_MAX_RECORDS: int = Field(
        default=10_000,
        description="Most sessions kept by the memory backend before the least recently saved are evicted",
        ge=1,
    )

    # =========================================================================
    # Outbound HTTP Limits
    # =========================================================================

    KINDE_HTTP_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for each call to the Kinde token and userinfo endpoints",
        gt=0,
    )

    CALLBACK_DEADLINE_SECONDS: float = Field(
        default=15.0,
        description="Overall deadline for the outbound work done by one /callback request",
        gt=0,
    )

    # =========================================================================
    # Server Configuration
    # =========================================================================

    HOST: str = Field(
        default="0.0.0.0",
        description="Host to bind the server",
    )

    PORT: int = Field(
        default=3000,
        description="Port to bind the server",
        ge=1,
        le=65535,
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        frozen=True,
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def authorization_endpoint(self) -> str:
        return f"{self.KINDE_DOMAIN}/oauth2/auth"

    @property
    def token_endpoint(self) -> str:
        return f"{self.KINDE_DOMAIN}/oauth2/token"

    @property
    def userinfo_endpoint(self) -> str:
        return f"{self.KINDE_DOMAIN}/oauth2/user_profile"

    @property
    def logout_endpoint(self) -> str:
        return f"{self.KINDE_DOMAIN}/logout"

    @property
    def is_configured(self) -> bool:
        """True when every Kinde variable needed for the login flow is set."""
        return not self.missing_settings()

    def missing_settings(self) -> List[str]:
        """
        List required Kinde variables that are empty.

        Returns:
            Names of the missing environment variables, in declaration order.
        """
        return [name for name in REQUIRED_SETTINGS if not getattr(self, name).strip()]

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("KINDE_DOMAIN")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Endpoints are built by appending paths, so drop any trailing slash."""
        return v.strip().rstrip("/")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

        level = v.strip().upper()
        if level not in allowed_levels:
            raise ValueError(
                f"LOG_LEVEL must be one of {allowed_levels}, got: {v}"
            )

        return level


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the application lifecycle. The instance is frozen and shared
    read-only by every request.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If an environment variable has an invalid value.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> dict:
    """
    Validate configuration settings and return a status report.

    Called during application startup so problems show up in the logs.

    Returns:
        Dictionary with validation status, errors and warnings.
    """
    errors = [f"{name} is required" for name in settings.missing_settings()]
    warnings = []

    if settings.SESSION_SECRET == DEFAULT_SESSION_SECRET:
        warnings.append("SESSION_SECRET is using the default value (set a random secret in production)")
    elif len(settings.SESSION_SECRET) < 32:
        warnings.append("SESSION_SECRET is shorter than recommended (32+ chars)")

    if settings.KINDE_REDIRECT_URI.startswith("https://") and not settings.SESSION_COOKIE_SECURE:
        warnings.append("KINDE_REDIRECT_URI uses HTTPS but SESSION_COOKIE_SECURE is disabled")

    if settings.KINDE_DOMAIN and not settings.KINDE_DOMAIN.startswith(("https://", "http://")):
        errors.append("KINDE_DOMAIN must include the scheme (e.g., https://yourbusiness.kinde.com)")

    if settings.SESSION_BACKEND == "memory":
        warnings.append("SESSION_BACKEND=memory keeps sessions in one process (not shared between workers)")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "session_backend": settings.SESSION_BACKEND,
        "session_max_age_seconds": settings.SESSION_MAX_AGE_SECONDS,
    }
