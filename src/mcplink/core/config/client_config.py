import os
from typing import Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_MCP_PROXY_LISTEN_PORT = 6277


def _env_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_seconds(value: Optional[str], default: float) -> float:
    """Read a timeout given in milliseconds from the environment."""
    if value is None or value == "":
        return default
    return float(value) / 1000.0


class ClientConfig(BaseModel):
    """Client-wide settings shared by every server connection.

    Attributes:
        proxy_address: Base URL of the MCP proxy all transports go through.
        request_timeout: Per-request timeout in seconds.
        reset_timeout_on_progress: Restart the per-request timeout on progress notifications.
        max_total_timeout: Ceiling in seconds that progress resets cannot extend past.
    """

    proxy_address: str = Field(
        default=f"http://localhost:{DEFAULT_MCP_PROXY_LISTEN_PORT}",
        description="MCP proxy base URL",
    )
    request_timeout: float = Field(default=10.0, gt=0)
    reset_timeout_on_progress: bool = True
    max_total_timeout: float = Field(default=60.0, gt=0)
    health_check_timeout: float = Field(default=5.0, gt=0)
    client_name: str = "mcplink"
    client_version: str = "0.1.0"
    protocol_version: str = "2025-03-26"

    model_config = {
        "validate_assignment": True,
    }

    @field_validator("proxy_address")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @classmethod
    def from_env(cls) -> "ClientConfig":
        defaults = cls()
        return cls(
            proxy_address=os.environ.get("MCP_PROXY_FULL_ADDRESS") or defaults.proxy_address,
            request_timeout=_env_seconds(
                os.environ.get("MCP_SERVER_REQUEST_TIMEOUT"), defaults.request_timeout
            ),
            reset_timeout_on_progress=_env_bool(
                os.environ.get("MCP_REQUEST_TIMEOUT_RESET_ON_PROGRESS"),
                defaults.reset_timeout_on_progress,
            ),
            max_total_timeout=_env_seconds(
                os.environ.get("MCP_REQUEST_MAX_TOTAL_TIMEOUT"), defaults.max_total_timeout
            ),
        )
