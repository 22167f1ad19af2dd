"""
Configuration for the AppAtOnce SDK.

Uses pydantic-settings for environment variable loading. Every setting can
be given as ``APPATONCE_<NAME>`` (e.g. ``APPATONCE_API_KEY``).

Invariants:
    - All settings have defaults suitable for the hosted platform
    - The API key is excluded from repr and never logged
"""

from pydantic import Field
from pydantic_settings import BaseSettings

from .http_client import DEFAULT_BASE_URL, DEFAULT_TIMEOUT


class ClientSettings(BaseSettings):
    """Client configuration loaded from environment."""

    # Credentials and endpoints
    api_key: str = Field(default="", repr=False, description="Project API key")
    base_url: str = Field(default=DEFAULT_BASE_URL, description="REST API base URL")
    realtime_url: str | None = Field(
        default=None,
        description="Realtime server URL (defaults to base_url without /api/v1)",
    )
    realtime_path: str = Field(default="/socket.io/", description="Realtime socket path")

    # HTTP
    timeout: float = Field(default=DEFAULT_TIMEOUT, gt=0, description="HTTP timeout seconds")

    # Realtime
    handshake_timeout: float = Field(default=10.0, gt=0, description="Handshake reply timeout seconds")
    subscribe_timeout: float = Field(default=10.0, gt=0, description="Subscribe confirmation timeout seconds")
    reconnect_initial_delay: float = Field(default=1.0, gt=0, description="First reconnect delay seconds")
    reconnect_max_delay: float = Field(default=30.0, gt=0, description="Reconnect delay cap seconds")
    max_reconnect_attempts: int = Field(
        default=5,
        ge=0,
        description="Consecutive failed reconnects before giving up",
    )

    debug: bool = Field(default=False, description="Enable SDK debug logging")

    model_config = {"env_prefix": "APPATONCE_"}

    @property
    def resolved_realtime_url(self) -> str:
        """Realtime URL, derived from base_url when not set."""
        if self.realtime_url:
            return self.realtime_url.rstrip("/")
        base = self.base_url.rstrip("/")
        if base.endswith("/api/v1"):
            base = base[: -len("/api/v1")]
        return base
