import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from mcpbridge.controllers.dependencies import caller_id, owned_bridge
from mcpbridge.db.database import get_db_session
from mcpbridge.errors import Forbidden
from mcpbridge.schemas.api import AuditLogInfo, HealthResponse
from mcpbridge.schemas.bridge import BridgeCreate, BridgeInfo, BridgeUpdate, EndpointDefinition
from mcpbridge.schemas.openapi import ImportResult, OpenAPIImportRequest, ParsedBridgeSpec
from mcpbridge.services.audit_sink import AuditSink
from mcpbridge.services.bridge_store import BridgeStore
from mcpbridge.services.openapi_mapper import OpenAPISpecMapper
from mcpbridge.services.quota_manager import QuotaManager

logger = logging.getLogger(__name__)


def _enforce_ceilings(
    quotas: QuotaManager,
    user_id: str,
    *,
    bridge_id: Optional[str] = None,
    new_bridge: bool = False,
    endpoints: List[EndpointDefinition] = (),
    tools: int = 0,
    prompts: int = 0,
    resources: int = 0,
) -> None:
    """Raise Forbidden on the first ceiling the change would cross."""
    decisions = []
    if new_bridge:
        decisions.append(quotas.check_resource_ceiling(user_id, "bridge"))
    if endpoints:
        decisions.append(quotas.check_resource_ceiling(user_id, "endpoint", bridge_id, adding=len(endpoints)))
        decisions.extend(quotas.check_method_allowed(user_id, ep.method) for ep in endpoints)
    if tools:
        decisions.append(quotas.check_resource_ceiling(user_id, "mcp_tool", bridge_id, adding=tools))
    if prompts:
        decisions.append(quotas.check_resource_ceiling(user_id, "mcp_prompt", bridge_id, adding=prompts))
    if resources:
        decisions.append(quotas.check_resource_ceiling(user_id, "mcp_resource", bridge_id, adding=resources))

    for decision in decisions:
        if not decision.allowed:
            raise Forbidden(decision.message or "Resource limit reached")


def get_router(
    store: BridgeStore,
    quotas: QuotaManager,
    mapper: OpenAPISpecMapper,
    audit_sink: AuditSink,
) -> APIRouter:
    router = APIRouter()

    @router.post("/api/bridges", response_model=BridgeInfo, status_code=201)
    async def create_bridge(
        payload: BridgeCreate,
        user_id: str = Depends(caller_id),
        x_user_email: Optional[str] = Header(default=None),
    ) -> BridgeInfo:
        try:
            store.ensure_user(user_id, x_user_email)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        _enforce_ceilings(
            quotas,
            user_id,
            new_bridge=True,
            endpoints=payload.endpoints,
            tools=len(payload.mcp_tools),
            prompts=len(payload.mcp_prompts),
            resources=len(payload.mcp_resources),
        )
        try:
            return store.create(user_id, payload)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @router.get("/api/bridges", response_model=List[BridgeInfo])
    async def list_bridges(
        user_id: Optional[str] = Query(default=None, alias="userId"),
        caller: str = Depends(caller_id),
    ) -> List[BridgeInfo]:
        if user_id and user_id != caller:
            raise Forbidden("You can only list your own bridges")
        return store.list_for_user(caller)

    @router.get("/api/bridges/{bridge_id}", response_model=BridgeInfo)
    async def get_bridge(bridge_id: str, user_id: str = Depends(caller_id)) -> BridgeInfo:
        return store.to_info(owned_bridge(store, bridge_id, user_id))

    @router.patch("/api/bridges/{bridge_id}", response_model=BridgeInfo)
    async def update_bridge(
        bridge_id: str,
        payload: BridgeUpdate,
        user_id: str = Depends(caller_id),
    ) -> BridgeInfo:
        bridge = owned_bridge(store, bridge_id, user_id)
        try:
            return store.update(bridge.id, payload)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @router.post("/api/bridges/{bridge_id}/start", response_model=BridgeInfo)
    async def start_bridge(bridge_id: str, user_id: str = Depends(caller_id)) -> BridgeInfo:
        bridge = owned_bridge(store, bridge_id, user_id)
        return store.set_enabled(bridge.id, True)

    @router.post("/api/bridges/{bridge_id}/stop", response_model=BridgeInfo)
    async def stop_bridge(bridge_id: str, user_id: str = Depends(caller_id)) -> BridgeInfo:
        bridge = owned_bridge(store, bridge_id, user_id)
        return store.set_enabled(bridge.id, False)

    @router.post("/api/bridges/{bridge_id}/endpoints", response_model=EndpointDefinition, status_code=201)
    async def add_endpoint(
        bridge_id: str,
        payload: EndpointDefinition,
        user_id: str = Depends(caller_id),
    ) -> EndpointDefinition:
        bridge = owned_bridge(store, bridge_id, user_id)
        _enforce_ceilings(quotas, user_id, bridge_id=bridge.id, endpoints=[payload])
        try:
            return store.add_endpoint(bridge.id, payload)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @router.delete("/api/bridges/{bridge_id}/endpoints/{endpoint_id}", status_code=204)
    async def remove_endpoint(bridge_id: str, endpoint_id: str, user_id: str = Depends(caller_id)) -> None:
        bridge = owned_bridge(store, bridge_id, user_id)
        store.remove_endpoint(bridge.id, endpoint_id)

    @router.post("/api/openapi/import")
    async def import_openapi(request: Request) -> JSONResponse:
        """
        Parse an OpenAPI document without touching any bridge.

        Accepts JSON ``{"url": ...}`` or ``{"content": ...}``, or the raw document
        (JSON or YAML) as the request body, e.g. an uploaded file.
        """
        raw = await request.body()
        content_type = request.headers.get("content-type", "")

        if "application/json" in content_type:
            try:
                payload = OpenAPIImportRequest.model_validate(json.loads(raw))
            except (ValueError, PydanticValidationError):
                payload = None
            if payload is not None and payload.url:
                result = await mapper.parse_url(payload.url)
            elif payload is not None and payload.content:
                result = await mapper.parse(payload.content)
            else:
                # A bare OpenAPI document posted as JSON.
                result = await mapper.parse(raw)
        else:
            result = await mapper.parse(raw)

        status = 200 if result.success else 400
        return JSONResponse(result.model_dump(by_alias=True, exclude_none=True), status_code=status)

    @router.post("/api/bridges/{bridge_id}/openapi", response_model=BridgeInfo)
    async def apply_openapi(
        bridge_id: str,
        payload: ParsedBridgeSpec,
        user_id: str = Depends(caller_id),
    ) -> BridgeInfo:
        """
        Explicit confirmation step: replace the bridge's endpoints and MCP
        definitions with an import result. Nothing is merged.
        """
        bridge = owned_bridge(store, bridge_id, user_id)
        # Counted from zero since the current set is being replaced.
        _enforce_ceilings(
            quotas,
            user_id,
            endpoints=payload.endpoints,
            tools=len(payload.mcp_tools),
            prompts=len(payload.mcp_prompts),
            resources=len(payload.mcp_resources),
        )
        try:
            return store.replace_definitions(
                bridge.id,
                payload.endpoints,
                payload.mcp_tools,
                payload.mcp_prompts,
                payload.mcp_resources,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @router.get("/api/bridges/{bridge_id}/logs", response_model=List[AuditLogInfo])
    async def bridge_logs(
        bridge_id: str,
        limit: int = Query(default=50, ge=1, le=500),
        user_id: str = Depends(caller_id),
    ) -> List[AuditLogInfo]:
        bridge = owned_bridge(store, bridge_id, user_id)
        return audit_sink.recent(bridge.id, limit)

    @router.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        """
        Basic health-check endpoint; verifies DB connectivity.
        """
        try:
            with get_db_session() as db:
                db.exec(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.warning("Health check failed: %s", e)
            return HealthResponse(status="error", detail="database unavailable")
        return HealthResponse(status="ok")

    return router
