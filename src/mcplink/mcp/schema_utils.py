"""Utilities for translating between MCP tool schemas and LLM tool definitions."""

import copy
import json
import logging
import re
from typing import Any, Dict, Iterable, List, Union

from mcplink.mcp.base import MCPToolInfo

logger = logging.getLogger(__name__)

_INVALID_PROPERTY_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def sanitize_property_name(name: str) -> str:
    return _INVALID_PROPERTY_CHARS.sub("_", name)


def sanitize_schema(schema: Any) -> Any:
    """Recursively rewrite property names to ``[A-Za-z0-9_-]``.

    ``required`` lists next to a ``properties`` map are renamed with the same
    mapping so both stay consistent.

    Args:
        schema: A JSON schema fragment (dict, list or scalar)

    Returns:
        A sanitized copy; the input is not modified
    """
    if isinstance(schema, list):
        return [sanitize_schema(item) for item in schema]
    if not isinstance(schema, dict):
        return schema

    sanitized: Dict[str, Any] = {}
    key_mapping: Dict[str, str] = {}
    properties = schema.get("properties")
    if isinstance(properties, dict):
        sanitized_props = {}
        for prop_name, prop_schema in properties.items():
            new_name = sanitize_property_name(prop_name)
            key_mapping[prop_name] = new_name
            sanitized_props[new_name] = sanitize_schema(prop_schema)
        sanitized["properties"] = sanitized_props

    for key, value in schema.items():
        if key == "properties" and isinstance(properties, dict):
            continue
        if key == "required" and isinstance(value, list) and key_mapping:
            sanitized[key] = [key_mapping.get(req, req) for req in value]
        else:
            sanitized[key] = sanitize_schema(value)

    return sanitized


def normalize_input_schema(input_schema: Any) -> Dict[str, Any]:
    """Guarantee a ``type`` and, for objects, a ``properties`` map."""
    if not isinstance(input_schema, dict) or not input_schema:
        if input_schema:
            logger.warning("Invalid input schema for MCP tool, using empty object")
        return {"type": "object", "properties": {}, "required": []}

    schema = copy.deepcopy(input_schema)
    if not schema.get("type"):
        schema["type"] = "object"
    if schema["type"] == "object" and not schema.get("properties"):
        schema["properties"] = {}
    return schema


def sanitize_tool(tool: Union[MCPToolInfo, Dict[str, Any]]) -> Dict[str, Any]:
    """Translate a tool to the provider tool shape ``{name, description, input_schema}``.

    Accepts an ``MCPToolInfo``, a raw MCP tool dict (``inputSchema``) or an
    already translated provider tool dict (``input_schema``).
    """
    if isinstance(tool, MCPToolInfo):
        name, description, input_schema = tool.name, tool.description, tool.input_schema
    else:
        name = tool.get("name", "")
        description = tool.get("description") or ""
        input_schema = tool.get("input_schema", tool.get("inputSchema"))
    return {
        "name": name,
        "description": description,
        "input_schema": sanitize_schema(normalize_input_schema(input_schema)),
    }


def sanitize_tools(tools: Iterable[Union[MCPToolInfo, Dict[str, Any]]]) -> List[Dict[str, Any]]:
    return [sanitize_tool(tool) for tool in tools]


def tool_result_to_text(result: Any) -> str:
    """Render a ``tools/call`` result as text for the conversation.

    Text items of the MCP ``content`` list are joined with newlines; any
    other shape is serialized as JSON.
    """
    if isinstance(result, dict):
        content = result.get("content")
        if isinstance(content, list):
            texts = [
                item["text"]
                for item in content
                if isinstance(item, dict) and item.get("type") == "text" and item.get("text")
            ]
            if texts:
                return "\n".join(texts)
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result)
    except (TypeError, ValueError):
        return str(result)

