import json
import logging

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from mcpbridge.services.gateway import CORS_HEADERS, BridgeGateway
from mcpbridge.services.protocol_handler import ProtocolHandler, reply_headers

logger = logging.getLogger(__name__)

PASSTHROUGH_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH"]


def get_router(gateway: BridgeGateway, protocol_handler: ProtocolHandler) -> APIRouter:
    router = APIRouter()

    @router.options("/mcp/{bridge_id}")
    @router.options("/mcp/{bridge_id}/{path:path}")
    async def preflight() -> Response:
        return Response(status_code=204, headers=CORS_HEADERS)

    @router.post("/mcp/{bridge_id}")
    async def mcp_endpoint(bridge_id: str, request: Request) -> Response:
        """
        MCP endpoint for a bridge (JSON-RPC 2.0 over HTTP POST).
        """
        raw = await request.body()
        try:
            body = json.loads(raw)
        except ValueError:
            error = ProtocolHandler._jsonrpc_error({}, code=-32700, message="Parse error")
            return JSONResponse(error, status_code=400, headers=CORS_HEADERS)

        reply = await protocol_handler.handle_request(bridge_id, body, request.headers)
        if reply.payload is None:
            return Response(status_code=reply.status_code, headers=reply_headers(reply))
        return JSONResponse(reply.payload, status_code=reply.status_code, headers=reply_headers(reply))

    @router.api_route("/mcp/{bridge_id}/{path:path}", methods=PASSTHROUGH_METHODS)
    async def passthrough(bridge_id: str, path: str, request: Request) -> Response:
        """
        Generic REST passthrough to the bridge endpoint matching method + path.
        Gateway errors are rendered by the app-level handler.
        """
        body = await request.body()
        result = await gateway.handle(
            bridge_id,
            request.method,
            path,
            request.headers,
            request.query_params.multi_items(),
            body or None,
        )
        return Response(content=result.body, status_code=result.status_code, headers=result.headers)

    return router
