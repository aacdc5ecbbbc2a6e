import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from mcpbridge.db.models import Bridge
from mcpbridge.errors import Forbidden, GatewayError, NotFound, RateLimited, Unauthorized, ValidationError
from mcpbridge.services.bridge_store import stored_prompts, stored_resources
from mcpbridge.services.gateway import CORS_HEADERS, BridgeGateway

logger = logging.getLogger(__name__)

# Gate failures keep their HTTP status; method-level errors ride in a 200 JSON-RPC body.
_HTTP_VISIBLE = (Unauthorized, Forbidden, RateLimited)


@dataclass
class RpcReply:
    payload: Optional[Dict[str, Any]]
    status_code: int = 200
    headers: Dict[str, str] = field(default_factory=dict)


class ProtocolHandler:
    """
    Parses MCP JSON-RPC messages addressed to a bridge and routes them appropriately.
    """

    def __init__(self, gateway: BridgeGateway, *, protocol_version: str = "2024-11-05") -> None:
        self.gateway = gateway
        self.protocol_version = protocol_version

    async def handle_request(
        self,
        bridge_id: str,
        body: Any,
        headers: Mapping[str, str],
    ) -> RpcReply:
        """
        Handle one JSON-RPC request. Required fields: jsonrpc, method.
        Notifications (no id) get an empty reply.
        """
        if not isinstance(body, dict) or body.get("jsonrpc") != "2.0":
            return RpcReply(self._jsonrpc_error({}, code=-32600, message="Invalid Request"))
        method = body.get("method")
        if not isinstance(method, str) or not method:
            return RpcReply(self._jsonrpc_error(body, code=-32600, message="Missing 'method' in request"))

        try:
            bridge = self.gateway.lookup(bridge_id)
        except NotFound as e:
            return RpcReply(self._jsonrpc_error(body, code=e.jsonrpc_code, message=e.message), 404)
        except GatewayError as e:
            return self._error_reply(body, e)

        handlers = {
            "initialize": self._handle_initialize,
            "notifications/initialized": self._handle_initialized,
            "ping": self._handle_ping,
            "tools/list": self._handle_tools_list,
            "tools/call": self._handle_tools_call,
            "tools/invoke": self._handle_tools_call,
            "prompts/list": self._handle_prompts_list,
            "prompts/get": self._handle_prompts_get,
            "resources/list": self._handle_resources_list,
            "resources/read": self._handle_resources_read,
        }
        handler = handlers.get(method)
        if handler is None:
            return RpcReply(self._jsonrpc_error(body, code=-32601, message=f"Method not found: {method}"))

        try:
            result, rate_headers = await handler(bridge, body, headers)
        except GatewayError as e:
            return self._error_reply(body, e)
        except Exception:
            logger.exception("Unhandled error in %s for bridge %s", method, bridge.id)
            return RpcReply(self._jsonrpc_error(body, code=-32603, message="Internal error"), 500)

        if "id" not in body:
            return RpcReply(None, 202, rate_headers)
        return RpcReply(
            {"jsonrpc": "2.0", "id": body.get("id"), "result": result},
            headers=rate_headers,
        )

    def _error_reply(self, body: Dict[str, Any], error: GatewayError) -> RpcReply:
        status = error.status_code if isinstance(error, _HTTP_VISIBLE) else 200
        if error.status_code >= 500:
            status = error.status_code
        return RpcReply(
            self._jsonrpc_error(body, code=error.jsonrpc_code, message=error.message, data=error.data or None),
            status,
            error.headers,
        )

    # ---------- Lifecycle ----------

    async def _handle_initialize(self, bridge: Bridge, body: Dict[str, Any], headers: Mapping[str, str]):
        ctx = self.gateway.authorize(
            bridge, headers, None, None, action="initialize", resource=bridge.slug, record_success=True
        )
        result = {
            "protocolVersion": self.protocol_version,
            "capabilities": {
                "tools": {"listChanged": False},
                "prompts": {"listChanged": False},
                "resources": {"subscribe": False, "listChanged": False},
            },
            "serverInfo": {"name": bridge.name, "version": "1.0.0"},
        }
        return result, ctx.rate.headers

    async def _handle_initialized(self, bridge: Bridge, body: Dict[str, Any], headers: Mapping[str, str]):
        return {}, {}

    async def _handle_ping(self, bridge: Bridge, body: Dict[str, Any], headers: Mapping[str, str]):
        ctx = self.gateway.authorize(bridge, headers, None, None, action="ping", resource=bridge.slug)
        return {}, ctx.rate.headers

    # ---------- Tools ----------

    async def _handle_tools_list(self, bridge: Bridge, body: Dict[str, Any], headers: Mapping[str, str]):
        ctx = self.gateway.authorize(
            bridge, headers, "tools", None, action="tools/list", resource="tool/*", record_success=True
        )
        tools = self.gateway.list_tools(bridge)
        return {"tools": [t.model_dump(by_alias=True, exclude_none=True) for t in tools]}, ctx.rate.headers

    async def _handle_tools_call(self, bridge: Bridge, body: Dict[str, Any], headers: Mapping[str, str]):
        """
        tools/call (alias tools/invoke): authenticate, resolve the tool to its
        endpoint, map the arguments onto it and forward to the target API.

        The caller is authenticated before the name is resolved, so unknown
        names are only reported to callers who may call tools at all.
        """
        params = body.get("params") or {}
        tool_name = params.get("name")
        resource = f"tool/{tool_name}"
        ctx = self.gateway.authorize(bridge, headers, "tools", "execute", action="tools/call", resource=resource)
        if not tool_name:
            raise ValidationError("Missing tool 'name' in params")

        logger.info("tools/call received: tool=%s, bridge=%s", tool_name, bridge.id)
        endpoint = self.gateway.find_tool_endpoint(bridge, tool_name)
        self.gateway.check_endpoint(
            ctx, "tools", "execute", endpoint.path.split("?", 1)[0], action="tools/call", resource=resource
        )
        result = await self.gateway.call_tool(ctx, endpoint, params.get("arguments"))
        return result, ctx.rate.headers

    # ---------- Prompts ----------

    async def _handle_prompts_list(self, bridge: Bridge, body: Dict[str, Any], headers: Mapping[str, str]):
        ctx = self.gateway.authorize(
            bridge, headers, "prompts", None, action="prompts/list", resource="prompt/*", record_success=True
        )
        prompts = [p.model_dump(by_alias=True, exclude_none=True) for p in stored_prompts(bridge)]
        return {"prompts": prompts}, ctx.rate.headers

    async def _handle_prompts_get(self, bridge: Bridge, body: Dict[str, Any], headers: Mapping[str, str]):
        params = body.get("params") or {}
        name = params.get("name")
        ctx = self.gateway.authorize(
            bridge, headers, "prompts", "read", action="prompts/get", resource=f"prompt/{name}", record_success=True
        )
        prompt = next((p for p in stored_prompts(bridge) if p.name == name), None)
        if prompt is None:
            raise NotFound(f"Unknown prompt: {name}")

        arguments = params.get("arguments") or {}
        lines = [prompt.description or prompt.name]
        for arg in prompt.arguments:
            if arg.name in arguments:
                lines.append(f"{arg.name}: {arguments[arg.name]}")
        result = {
            "description": prompt.description,
            "messages": [{"role": "user", "content": {"type": "text", "text": "\n".join(lines)}}],
        }
        return result, ctx.rate.headers

    # ---------- Resources ----------

    async def _handle_resources_list(self, bridge: Bridge, body: Dict[str, Any], headers: Mapping[str, str]):
        ctx = self.gateway.authorize(
            bridge, headers, "resources", None, action="resources/list", resource="resource/*", record_success=True
        )
        resources = [r.model_dump(by_alias=True, exclude_none=True) for r in stored_resources(bridge)]
        return {"resources": resources}, ctx.rate.headers

    async def _handle_resources_read(self, bridge: Bridge, body: Dict[str, Any], headers: Mapping[str, str]):
        uri = (body.get("params") or {}).get("uri")
        ctx = self.gateway.authorize(
            bridge, headers, "resources", "read", action="resources/read", resource=f"resource/{uri}", record_success=True
        )
        resource = next((r for r in stored_resources(bridge) if r.uri == uri), None)
        if resource is None:
            raise NotFound(f"Unknown resource: {uri}")

        if uri == "openapi://spec/full":
            endpoints = self.gateway.store.endpoints_for(bridge.id)
            text = json.dumps(
                {
                    "name": bridge.name,
                    "baseUrl": bridge.base_url,
                    "description": bridge.description,
                    "endpoints": [e.model_dump(by_alias=True, exclude_none=True) for e in endpoints],
                },
                indent=2,
            )
        else:
            text = resource.description or resource.name
        contents = [{"uri": uri, "mimeType": resource.mime_type or "text/plain", "text": text}]
        return {"contents": contents}, ctx.rate.headers

    @staticmethod
    def _jsonrpc_error(
        request_body: Dict[str, Any],
        *,
        code: int,
        message: str,
        data: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": request_body.get("id"),
            "error": {
                "code": code,
                "message": message,
                **({"data": data} if data is not None else {}),
            },
        }


def reply_headers(reply: RpcReply) -> Dict[str, str]:
    return {**CORS_HEADERS, **reply.headers}
