"""Application configuration management.

All configuration is loaded from environment variables.
No hardcoded values except sensible defaults for development.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pipeline settings loaded from environment variables.

    Environment variables are automatically loaded and validated.
    Each field maps to the upper-cased variable (MAX_IN_FLIGHT, RETRY_TIMES...).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    relay_env: Literal["development", "test", "production"] = Field(
        default="development",
        description="Application environment",
    )
    relay_log_level: Literal["debug", "info", "warning", "error"] = Field(
        default="info",
        description="Logging level",
    )
    relay_log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format",
    )

    # Transport
    api_base_url: str = Field(
        default="http://localhost:3000/api",
        description="Base URL prepended to relative request targets",
    )
    request_timeout_ms: int = Field(
        default=10000,
        ge=100,
        le=120000,
        description="Transport timeout per attempt in milliseconds",
    )

    # Admission
    max_in_flight: int = Field(
        default=6,
        ge=1,
        le=256,
        description="Maximum simultaneously in-flight requests",
    )

    # Retry
    retry_times: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retry budget for network, timeout and 5xx failures",
    )
    retry_delay_ms: int = Field(
        default=1000,
        ge=0,
        le=60000,
        description="Linear backoff base delay in milliseconds",
    )

    # Credentials
    refresh_path: str = Field(
        default="/oauth2/token",
        description="Token endpoint used for the refresh grant",
    )
    login_path: str = Field(
        default="/oauth2/token",
        description="Token endpoint used for the password grant",
    )
    login_route: str = Field(
        default="/pages/login/login",
        description="Route the sign-out side effect navigates to",
    )

    # Business envelope ({"code": 200, "msg": "...", "data": ...})
    business_envelope_enabled: bool = Field(
        default=True,
        description="Reject 2xx responses whose envelope code is not a success code",
    )
    business_code_field: str = Field(
        default="code",
        description="Envelope field carrying the business result code",
    )
    business_message_field: str = Field(
        default="msg",
        description="Envelope field carrying the server-provided message",
    )
    business_success_codes: list[int] = Field(
        default=[200],
        description="Envelope codes treated as success",
    )

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.relay_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.relay_env == "production"

    @property
    def is_test(self) -> bool:
        """Check if running in test mode."""
        return self.relay_env == "test"

    @property
    def request_timeout(self) -> float:
        """Transport timeout in seconds."""
        return self.request_timeout_ms / 1000

    @property
    def retry_delay(self) -> float:
        """Retry base delay in seconds."""
        return self.retry_delay_ms / 1000


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Settings are loaded once and cached for the lifetime of the process.
    """
    return Settings()
