from mcplink.core.config.client_config import ClientConfig
from mcplink.core.config.llm_config import APITypes, LLMConfig, ProviderSettings
from mcplink.core.config.server_config import (
    HttpServerConfig,
    ServerConfig,
    StdioServerConfig,
    parse_server_config,
)

__all__ = [
    "ClientConfig",
    "APITypes",
    "LLMConfig",
    "ProviderSettings",
    "HttpServerConfig",
    "ServerConfig",
    "StdioServerConfig",
    "parse_server_config",
]
