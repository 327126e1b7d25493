"""Server configuration models.

A server is either launched over stdio (through the proxy) or reached over
HTTP using SSE or streamable HTTP. The two shapes are distinct models joined
in a discriminated union, so a config can never carry both a command and a URL.
"""

import shlex
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

TRANSPORT_STDIO = "stdio"
TRANSPORT_SSE = "sse"
TRANSPORT_STREAMABLE_HTTP = "streamable-http"


class StdioServerConfig(BaseModel):
    """An MCP server started from a local command."""

    transport_type: Literal["stdio"] = TRANSPORT_STDIO
    command: str = Field(min_length=1)
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = Field(default=None, gt=0)
    description: Optional[str] = None

    model_config = {"extra": "forbid", "frozen": True}

    @field_validator("args", mode="before")
    @classmethod
    def split_args(cls, value: Any) -> Any:
        if isinstance(value, str):
            return shlex.split(value)
        return value

    @property
    def is_remote(self) -> bool:
        return False


class HttpServerConfig(BaseModel):
    """An MCP server reached over SSE or streamable HTTP."""

    transport_type: Literal["sse", "streamable-http"] = TRANSPORT_STREAMABLE_HTTP
    url: str
    request_options: Dict[str, Any] = Field(default_factory=dict)
    timeout: Optional[float] = Field(default=None, gt=0)
    description: Optional[str] = None

    model_config = {"extra": "forbid", "frozen": True}

    @field_validator("url")
    @classmethod
    def check_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"Server URL must be http(s): {value}")
        return value

    @property
    def headers(self) -> Dict[str, str]:
        return {str(k): str(v) for k, v in self.request_options.get("headers", {}).items()}

    @property
    def is_remote(self) -> bool:
        return True


ServerConfig = Annotated[
    Union[StdioServerConfig, HttpServerConfig],
    Field(discriminator="transport_type"),
]

_server_config_adapter: TypeAdapter = TypeAdapter(ServerConfig)


def parse_server_config(raw: Mapping[str, Any]) -> Union[StdioServerConfig, HttpServerConfig]:
    """Validate a loosely shaped server entry.

    Accepts the camelCase keys used by ``.mcprc`` files and the proxy's
    ``/config`` endpoint (``transportType``, ``requestInit``) as well as the
    snake_case field names.

    Raises:
        ValueError: If both or neither of ``command`` and ``url`` are given.
        pydantic.ValidationError: If the entry is otherwise malformed.
    """
    if isinstance(raw, (StdioServerConfig, HttpServerConfig)):
        return raw

    data = dict(raw)
    has_command = bool(data.get("command"))
    has_url = bool(data.get("url"))
    if has_command == has_url:
        raise ValueError("Server config must define exactly one of 'command' or 'url'")

    transport = None
    for key in ("transport_type", "transportType", "transport", "type"):
        value = data.pop(key, None)
        transport = transport or value
    if "requestInit" in data:
        data["request_options"] = data.pop("requestInit")
    if "headers" in data and has_url:
        data.setdefault("request_options", {})
        data["request_options"] = {**data["request_options"], "headers": data.pop("headers")}

    if has_command:
        data["transport_type"] = TRANSPORT_STDIO
    elif transport in (TRANSPORT_SSE, TRANSPORT_STREAMABLE_HTTP):
        data["transport_type"] = transport
    elif transport in ("http", "streamable_http"):
        data["transport_type"] = TRANSPORT_STREAMABLE_HTTP
    else:
        data["transport_type"] = TRANSPORT_STREAMABLE_HTTP

    return _server_config_adapter.validate_python(data)
