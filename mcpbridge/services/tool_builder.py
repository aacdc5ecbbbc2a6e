"""
Derives MCP tool definitions from endpoint definitions.
"""
import re
from typing import Any, Dict, List

from mcpbridge.schemas.bridge import EndpointDefinition, McpTool

_IDENTIFIER = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")
_PLACEHOLDER = re.compile(r"\{[^}]+\}")

_ACTIONS = {"post": "create", "put": "update", "patch": "update", "delete": "delete"}


def sanitize_tool_name(name: str) -> str:
    # MCP clients accept only [a-zA-Z0-9_-] in tool names.
    return re.sub(r"[^a-zA-Z0-9_-]", "_", name)


def standard_tool_name(method: str, path: str) -> str:
    """
    ``method_resource_action``, where resource is the last literal path segment.

    GET /users -> get_users_list, GET /users/{id} -> get_users_read,
    POST /users -> post_users_create, PUT|PATCH -> update, DELETE -> delete.
    """
    verb = method.lower()
    path = path.split("?", 1)[0]
    parts = [p.lower() for p in _PLACEHOLDER.sub("", path).split("/") if p]
    if verb == "get":
        action = "read" if "{" in path else "list"
    else:
        action = _ACTIONS.get(verb, "")
    resource = parts[-1] if parts else "root"
    return sanitize_tool_name(f"{verb}_{resource}_{action}")


def tool_name_for(endpoint: EndpointDefinition) -> str:
    if endpoint.name and _IDENTIFIER.match(endpoint.name):
        return endpoint.name
    return standard_tool_name(endpoint.method, endpoint.path)


def build_input_schema(endpoint: EndpointDefinition) -> Dict[str, Any]:
    properties: Dict[str, Any] = {}
    required: List[str] = []

    for param in endpoint.parameters:
        prop: Dict[str, Any] = {
            "type": param.type,
            "description": param.description or f"{param.name} parameter",
        }
        if param.default_value is not None:
            prop["default"] = param.default_value
        if param.enum:
            prop["enum"] = list(param.enum)
        properties[param.name] = prop
        if param.required:
            required.append(param.name)

    has_body_params = any(p.location == "body" for p in endpoint.parameters)
    if endpoint.accepts_body and not has_body_params:
        properties["requestBody"] = {"type": "object", "description": "Request body data"}

    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def build_description(endpoint: EndpointDefinition, base_url: str = "") -> str:
    description = endpoint.description or f"Call {endpoint.method} {endpoint.path}" + (
        f" on {base_url}" if base_url else ""
    )
    required = [f"{p.name} ({p.type})" for p in endpoint.parameters if p.required]
    optional = [f"{p.name} ({p.type})" for p in endpoint.parameters if not p.required]
    if required:
        description += "\n\nRequired parameters: " + ", ".join(required)
    if optional:
        description += "\n\nOptional parameters: " + ", ".join(optional)
    return description


def tool_for_endpoint(endpoint: EndpointDefinition, base_url: str = "") -> McpTool:
    return McpTool(
        name=tool_name_for(endpoint),
        description=build_description(endpoint, base_url),
        input_schema=build_input_schema(endpoint),
    )
