"""Server configuration bootstrap from local files, the environment and the proxy."""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import aiohttp
from pydantic import ValidationError

from mcplink.core.config.client_config import ClientConfig
from mcplink.core.config.server_config import StdioServerConfig, parse_server_config
from mcplink.mcp.manager import ServerConfigType

logger = logging.getLogger(__name__)


def _server_entries(config: Mapping[str, Any]) -> Mapping[str, Any]:
    """Accept both ``{name: entry}`` and ``{"mcpServers": {name: entry}}`` layouts."""
    if isinstance(config.get("mcpServers"), dict):
        return config["mcpServers"]
    return config


def parse_server_entries(entries: Mapping[str, Any], source: str) -> Dict[str, ServerConfigType]:
    """Validate named server entries, skipping (and logging) invalid ones."""
    servers: Dict[str, ServerConfigType] = {}
    for name, entry in entries.items():
        if not isinstance(entry, Mapping):
            logger.error(f"Invalid server entry '{name}' in {source}: expected an object")
            continue
        data = {k: v for k, v in entry.items() if k != "name"}
        try:
            servers[name] = parse_server_config(data)
        except (ValueError, ValidationError) as e:
            logger.error(f"Invalid server entry '{name}' in {source}: {str(e)}")
    return servers


class ServerConfigLoader:
    """Collects server configurations from every supported source.

    Local sources (``.mcprc``, ``MCP_SERVERS``, explicit mappings) are merged
    in that order, later ones overriding earlier ones. Servers announced by
    the proxy's ``/config`` endpoint are added only under names no local
    source declares, and the proxy's default environment is merged under
    every stdio server's own ``env``.
    """

    def __init__(self, workspace_root: Optional[Path] = None, client_config: Optional[ClientConfig] = None):
        self.workspace_root = workspace_root or Path.cwd()
        self.client_config = client_config or ClientConfig()

    async def load(
        self,
        explicit: Optional[Mapping[str, Any]] = None,
        include_proxy: bool = True,
    ) -> Dict[str, ServerConfigType]:
        servers: Dict[str, ServerConfigType] = {}
        servers.update(self.load_from_mcprc())
        servers.update(self.load_from_environment())
        if explicit:
            servers.update(parse_server_entries(_server_entries(explicit), "explicit configuration"))

        if not include_proxy:
            return servers

        proxy_config = await self.fetch_proxy_config()
        return self.merge_proxy_config(servers, proxy_config)

    def load_from_mcprc(self) -> Dict[str, ServerConfigType]:
        """Load servers from the first ``.mcprc`` found in the workspace or home directory."""
        for mcprc_path in (self.workspace_root / ".mcprc", Path.home() / ".mcprc"):
            if not mcprc_path.exists():
                continue
            try:
                with open(mcprc_path, "r") as f:
                    config = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Error loading .mcprc from {mcprc_path}: {str(e)}")
                continue
            servers = parse_server_entries(_server_entries(config), str(mcprc_path))
            logger.info(f"Loaded {len(servers)} servers from {mcprc_path}")
            return servers
        return {}

    def load_from_environment(self) -> Dict[str, ServerConfigType]:
        mcp_servers_env = os.environ.get("MCP_SERVERS")
        if not mcp_servers_env:
            return {}
        try:
            config = json.loads(mcp_servers_env)
        except json.JSONDecodeError as e:
            logger.error(f"Error parsing MCP_SERVERS environment variable: {str(e)}")
            return {}
        if not isinstance(config, dict):
            logger.error("MCP_SERVERS must be a JSON object")
            return {}
        return parse_server_entries(_server_entries(config), "MCP_SERVERS")

    async def fetch_proxy_config(self) -> Dict[str, Any]:
        """Fetch ``GET {proxy}/config``; an unreachable proxy yields ``{}``."""
        url = f"{self.client_config.proxy_address}/config"
        timeout = aiohttp.ClientTimeout(total=self.client_config.health_check_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        logger.warning(f"Proxy config request failed: HTTP {response.status}")
                        return {}
                    data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"Error fetching proxy config from {url}: {str(e)}")
            return {}
        return data if isinstance(data, dict) else {}

    @staticmethod
    def merge_proxy_config(
        local: Mapping[str, ServerConfigType],
        proxy_config: Mapping[str, Any],
    ) -> Dict[str, ServerConfigType]:
        default_env = proxy_config.get("defaultEnvironment") or {}
        announced = proxy_config.get("serverConfigs") or proxy_config.get("mcpServers") or {}

        merged: Dict[str, ServerConfigType] = dict(local)
        if announced:
            for name, config in parse_server_entries(announced, "proxy configuration").items():
                if name in merged:
                    logger.debug(f"Keeping local configuration for '{name}' over the proxy's")
                    continue
                merged[name] = config

        if default_env:
            for name, config in merged.items():
                if isinstance(config, StdioServerConfig):
                    merged[name] = config.model_copy(update={"env": {**default_env, **config.env}})
        return merged
