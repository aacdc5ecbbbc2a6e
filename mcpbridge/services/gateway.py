"""
Bridge gateway: authorizes an inbound call against a bridge, resolves it to an
endpoint, forwards it to the target API and records the outcome.

Per request: look up the bridge, check access and rate, resolve the endpoint,
forward, audit, respond. Any gate may reject; rejections are audited and raised
as GatewayError before an upstream call is attempted.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import quote

import httpx

from mcpbridge.db.models import AccessToken, Bridge
from mcpbridge.errors import Forbidden, GatewayError, InternalError, NotFound, RateLimited, Unauthorized, ValidationError
from mcpbridge.schemas.bridge import BODY_METHODS, EndpointDefinition, McpTool
from mcpbridge.schemas.tokens import PermissionType, ValidateTokenRequest, ValidateTokenResponse
from mcpbridge.services import path_resolver
from mcpbridge.services.audit_sink import AuditSink, make_entry
from mcpbridge.services.auth_manager import AuthManager
from mcpbridge.services.bridge_store import BridgeStore, auth_config, custom_headers, stored_tools
from mcpbridge.services.connection_manager import ConnectionManager
from mcpbridge.services.quota_manager import QuotaManager, RateDecision
from mcpbridge.services.token_authority import TokenAuthority, find_permission, has_permission, is_usable, permissions_of
from mcpbridge.services.tool_builder import tool_for_endpoint, tool_name_for

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, PATCH, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-API-Key",
}

# Upstream response headers relayed to the caller; the rest are hop-specific.
_RELAYED_HEADERS = ("content-type", "cache-control", "etag", "last-modified", "location")

QueryInput = Union[Mapping[str, str], Sequence[Tuple[str, str]]]


@dataclass
class CallerContext:
    bridge: Bridge
    token: Optional[AccessToken]
    rate: RateDecision


@dataclass
class GatewayResponse:
    status_code: int
    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)


def resource_type_for(resource: str) -> PermissionType:
    if resource.startswith("tool/"):
        return "tools"
    if resource.startswith("resource/"):
        return "resources"
    if resource.startswith("prompt/"):
        return "prompts"
    return "admin"


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def build_tool_request(
    endpoint: EndpointDefinition,
    arguments: Optional[Dict[str, Any]],
) -> Tuple[str, Dict[str, str], Optional[bytes]]:
    """
    Map tool-call arguments onto an endpoint: returns ``(path, query, body)``.

    Path placeholders are substituted URL-encoded, query parameters are laid
    over the template defaults, and body parameters are collected into a JSON
    object for POST/PUT/PATCH. A ``requestBody`` argument is sent verbatim when
    the endpoint declares no body parameters. Undeclared arguments go to the
    body for body methods and to the query string otherwise.
    """
    args = dict(arguments or {})
    raw_body = args.pop("requestBody", None)
    body_params = [p for p in endpoint.parameters if p.location == "body"]

    missing = [
        p.name
        for p in endpoint.parameters
        if p.required and args.get(p.name) is None and not (p.location == "body" and raw_body is not None)
    ]
    if missing:
        raise ValidationError(f"Missing required argument(s): {', '.join(missing)}")

    template_path, query = path_resolver.split_template(endpoint.path)
    declared = {p.name for p in endpoint.parameters}

    path = template_path
    for p in endpoint.parameters:
        if p.location == "path":
            path = path.replace("{" + p.name + "}", quote(_query_value(args[p.name]), safe=""))

    body: Optional[Dict[str, Any]] = {} if endpoint.accepts_body else None
    for p in endpoint.parameters:
        value = args.get(p.name)
        if value is None:
            continue
        if p.location == "query":
            query[p.name] = _query_value(value)
        elif p.location == "body" and body is not None:
            body[p.name] = value

    for name, value in args.items():
        if name in declared or value is None:
            continue
        if body is not None:
            body[name] = value
        else:
            query[name] = _query_value(value)

    if body is None:
        return path, query, None
    if raw_body is not None and not body_params:
        payload = {**raw_body, **body} if isinstance(raw_body, dict) else raw_body
        return path, query, json.dumps(payload).encode("utf-8")
    return path, query, json.dumps(body).encode("utf-8")


def _result_text(response: httpx.Response) -> str:
    try:
        return json.dumps(response.json(), indent=2)
    except ValueError:
        return response.text


class BridgeGateway:
    def __init__(
        self,
        store: BridgeStore,
        tokens: TokenAuthority,
        quotas: QuotaManager,
        audit: AuditSink,
        connections: ConnectionManager,
        auth_manager: Optional[AuthManager] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.quotas = quotas
        self.audit = audit
        self.connections = connections
        self.auth_manager = auth_manager or AuthManager()

    # ---------- Audit ----------

    def _audit(
        self,
        bridge_id: str,
        action: str,
        resource: str,
        success: bool,
        *,
        token_id: Optional[str] = None,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            self.audit.record(
                make_entry(bridge_id, action, resource, success, token_id=token_id, error=error, metadata=metadata)
            )
        except Exception:
            # The caller always gets its response.
            logger.exception("Dropping audit entry for bridge %s", bridge_id)

    # ---------- Gates ----------

    def lookup(self, id_or_slug: str) -> Bridge:
        bridge = self.store.get(id_or_slug)
        if bridge is None:
            logger.info("Bridge lookup miss: %s", id_or_slug)
            raise NotFound("Bridge not found")
        if not bridge.enabled:
            self._audit(bridge.id, "access", id_or_slug, False, error="Bridge is disabled")
            raise Forbidden("Bridge is disabled")
        return bridge

    def _check_rate(
        self,
        bridge: Bridge,
        token: Optional[AccessToken],
        required_type: Optional[PermissionType],
    ) -> RateDecision:
        if token is not None and required_type is not None:
            permission = find_permission(token, required_type)
            if permission and permission.constraints and permission.constraints.rate_limit:
                return self.quotas.check_rate(f"token:{token.id}", permission.constraints.rate_limit)
        return self.quotas.check_user_rate(bridge.user_id)

    def authorize(
        self,
        bridge: Bridge,
        headers: Mapping[str, str],
        required_type: Optional[PermissionType],
        required_action: Optional[str],
        *,
        endpoint: Optional[str] = None,
        action: str,
        resource: str,
        record_success: bool = False,
    ) -> CallerContext:
        """
        Authenticate the caller and charge one request against its rate window.

        A bridge with ``auth_required`` accepts its static key or one of its
        access tokens. A token presented to an open bridge is still held to its
        permissions; anything else presented there is ignored.
        """
        credential = AuthManager.extract_credential(headers)
        token: Optional[AccessToken] = None
        try:
            static_ok = bridge.auth_required and AuthManager.matches_static_key(credential, bridge.api_key)
            if not static_ok:
                if credential is None and bridge.auth_required:
                    raise Unauthorized("Authentication required")
                if credential is not None:
                    if self.tokens.lookup(credential, bridge.id) is not None:
                        token = self.tokens.authorize(
                            credential, bridge.id, required_type, required_action, endpoint
                        )
                    elif bridge.auth_required:
                        raise Unauthorized("Invalid API key or token")

            decision = self._check_rate(bridge, token, required_type)
            if not decision.allowed:
                raise RateLimited(
                    "Rate limit exceeded", limit=decision.limit, reset_at=decision.reset_at, now=self.quotas.now()
                )
        except GatewayError as e:
            logger.warning("Rejected %s on bridge %s: %s", action, bridge.id, e.message)
            self._audit(bridge.id, action, resource, False, token_id=token.id if token else None, error=e.message)
            raise

        if token is not None:
            self.tokens.touch(token.id)
        if record_success:
            self._audit(bridge.id, action, resource, True, token_id=token.id if token else None)
        return CallerContext(bridge=bridge, token=token, rate=decision)

    def check_endpoint(
        self,
        ctx: CallerContext,
        required_type: PermissionType,
        required_action: str,
        endpoint: str,
        *,
        action: str,
        resource: str,
    ) -> None:
        """Apply a token's allowedEndpoints once the target endpoint is known."""
        if ctx.token is None:
            return
        if not has_permission(ctx.token, required_type, required_action, endpoint):
            logger.warning("Rejected %s on bridge %s: endpoint %s not allowed", action, ctx.bridge.id, endpoint)
            self._audit(ctx.bridge.id, action, resource, False, token_id=ctx.token.id, error="Insufficient permissions")
            raise Forbidden("Insufficient permissions")

    # ---------- Upstream ----------

    async def _forward(
        self,
        ctx: CallerContext,
        method: str,
        path: str,
        *,
        query: Dict[str, str],
        content: Optional[bytes],
        action: str,
        resource: str,
    ) -> httpx.Response:
        bridge = ctx.bridge
        headers, auth_query = self.auth_manager.build_headers(auth_config(bridge), custom_headers(bridge))
        url = path_resolver.join_url(bridge.base_url, path)
        params = {**query, **auth_query}
        token_id = ctx.token.id if ctx.token else None

        started = time.perf_counter()
        try:
            response = await self.connections.client.send(
                method,
                url,
                headers=headers,
                params=params,
                content=content if method in BODY_METHODS else None,
            )
        except httpx.RequestError as e:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            logger.warning("Upstream %s %s failed after %dms: %s", method, url, elapsed_ms, e)
            self._audit(
                bridge.id,
                action,
                resource,
                False,
                token_id=token_id,
                error="Upstream request failed",
                metadata={"method": method, "path": path, "durationMs": elapsed_ms},
            )
            raise InternalError("Upstream request failed") from e

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        self._audit(
            bridge.id,
            action,
            resource,
            response.is_success,
            token_id=token_id,
            error=None if response.is_success else f"Upstream returned HTTP {response.status_code}",
            metadata={
                "method": method,
                "path": path,
                "status": response.status_code,
                "durationMs": elapsed_ms,
            },
        )
        logger.info("%s %s -> %s in %dms", method, url, response.status_code, elapsed_ms)
        return response

    # ---------- REST passthrough ----------

    async def handle(
        self,
        bridge_id: str,
        method: str,
        path: str,
        headers: Mapping[str, str],
        query: QueryInput = (),
        body: Optional[bytes] = None,
    ) -> GatewayResponse:
        method = method.upper()
        path = "/" + path.lstrip("/")
        resource = f"{method} {path}"

        bridge = self.lookup(bridge_id)
        ctx = self.authorize(
            bridge, headers, "tools", "execute", endpoint=path, action="proxy", resource=resource
        )

        endpoints = self.store.endpoints_for(bridge.id)
        endpoint = path_resolver.match(((e.method, e.path, e) for e in endpoints), method, path)
        if endpoint is None:
            self._audit(bridge.id, "proxy", resource, False, error="Endpoint not found")
            raise NotFound(
                f"No endpoint matches {method} {path}",
                data={"availableEndpoints": [f"{e.method} {e.path}" for e in endpoints]},
            )

        concrete = path_resolver.resolve(endpoint.path, path)
        response = await self._forward(
            ctx,
            method,
            concrete,
            query=path_resolver.merge_query(endpoint.path, query),
            content=body,
            action="proxy",
            resource=resource,
        )

        relayed = {k: v for k, v in response.headers.items() if k.lower() in _RELAYED_HEADERS}
        return GatewayResponse(
            status_code=response.status_code,
            body=response.content,
            headers={**relayed, **CORS_HEADERS, **ctx.rate.headers},
        )

    # ---------- MCP tools ----------

    def list_tools(self, bridge: Bridge) -> List[McpTool]:
        """Derived tools for every endpoint; stored definitions with the same name win.

        Stored tools that match no endpoint are left out since tools/call cannot route them.
        """
        stored = {t.name: t for t in stored_tools(bridge)}
        tools: List[McpTool] = []
        for endpoint in self.store.endpoints_for(bridge.id):
            derived = tool_for_endpoint(endpoint, bridge.base_url)
            tools.append(stored.pop(derived.name, derived))
        return tools

    def find_tool_endpoint(self, bridge: Bridge, tool_name: str) -> EndpointDefinition:
        for endpoint in self.store.endpoints_for(bridge.id):
            if tool_name_for(endpoint) == tool_name:
                return endpoint
        raise NotFound(f"Unknown tool: {tool_name}")

    async def call_tool(
        self,
        ctx: CallerContext,
        endpoint: EndpointDefinition,
        arguments: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        path, query, content = build_tool_request(endpoint, arguments)
        tool_name = tool_name_for(endpoint)
        response = await self._forward(
            ctx,
            endpoint.method,
            path,
            query=query,
            content=content,
            action="tools/call",
            resource=f"tool/{tool_name}",
        )
        text = _result_text(response)
        if not response.is_success:
            return {
                "content": [{"type": "text", "text": f"HTTP {response.status_code}: {text}"}],
                "isError": True,
            }
        return {"content": [{"type": "text", "text": text}]}

    # ---------- Token validation ----------

    def check_token(self, request: ValidateTokenRequest) -> Tuple[int, ValidateTokenResponse, Dict[str, str]]:
        """
        Answer a token validation query. Returns ``(status, body, headers)``;
        every outcome is audited against the named bridge.
        """
        if not (request.token and request.bridge_id and request.action and request.resource):
            return 400, ValidateTokenResponse(valid=False, error="Missing required fields"), {}

        required_type = resource_type_for(request.resource)
        row = self.tokens.lookup(request.token, request.bridge_id)

        def reject(status: int, message: str, headers: Optional[Dict[str, str]] = None, **extra: Any):
            self._audit(
                request.bridge_id,
                request.action,
                request.resource,
                False,
                token_id=row.id if row else None,
                error=message,
                metadata={"endpoint": request.endpoint},
            )
            return status, ValidateTokenResponse(valid=False, error=message, **extra), headers or {}

        if row is None:
            return reject(401, "Invalid token")
        if not row.is_active:
            return reject(401, "Token is inactive")
        if not is_usable(row):
            return reject(401, "Token has expired")
        if not has_permission(row, required_type, request.action, request.endpoint):
            return reject(403, "Insufficient permissions")

        remaining: Optional[int] = None
        rate_headers: Dict[str, str] = {}
        permission = find_permission(row, required_type)
        if permission and permission.constraints and permission.constraints.rate_limit:
            decision = self.quotas.check_rate(f"token:{row.id}", permission.constraints.rate_limit)
            if not decision.allowed:
                limited = RateLimited(
                    "Rate limit exceeded", limit=decision.limit, reset_at=decision.reset_at, now=self.quotas.now()
                )
                return reject(429, limited.message, limited.headers, rate_limited=True, remaining_requests=0)
            remaining = decision.remaining
            rate_headers = decision.headers

        self.tokens.touch(row.id)
        self._audit(
            request.bridge_id,
            request.action,
            request.resource,
            True,
            token_id=row.id,
            metadata={"endpoint": request.endpoint},
        )
        permissions = permissions_of(row)
        headers = {
            "X-MCP-Version": "1.0",
            "X-MCP-Token-ID": row.id,
            "X-MCP-Permissions": ",".join(p.type for p in permissions),
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            **rate_headers,
        }
        body = ValidateTokenResponse(
            valid=True,
            permissions=[f"{p.type}:{','.join(p.actions)}" for p in permissions],
            rate_limited=False,
            remaining_requests=remaining,
        )
        return 200, body, headers
