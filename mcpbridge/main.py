import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from mcpbridge.config import Settings, settings as default_settings
from mcpbridge.db.database import init_db
from mcpbridge.errors import GatewayError
from mcpbridge.services.audit_sink import AuditSink
from mcpbridge.services.auth_manager import AuthManager
from mcpbridge.services.bridge_store import BridgeStore
from mcpbridge.services.connection_manager import ConnectionManager, UpstreamClient
from mcpbridge.services.gateway import CORS_HEADERS, BridgeGateway
from mcpbridge.services.openapi_mapper import OpenAPISpecMapper
from mcpbridge.services.protocol_handler import ProtocolHandler
from mcpbridge.services.quota_manager import InMemoryRateStore, QuotaManager, RateStore
from mcpbridge.services.token_authority import TokenAuthority
from mcpbridge.controllers import auth_controller, bridge_controller, gateway_controller

logging.basicConfig(level=getattr(logging, default_settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    *,
    upstream_transport: Optional[httpx.AsyncBaseTransport] = None,
    rate_store: Optional[RateStore] = None,
    clock: Optional[Callable[[], float]] = None,
) -> FastAPI:
    settings = settings or default_settings

    # Core components (created once per process)
    store = BridgeStore(demo_emails=settings.demo_account_emails)
    tokens = TokenAuthority(prefix=settings.token_prefix)
    quota_options = {"window_seconds": settings.rate_window_seconds}
    if clock is not None:
        quota_options["clock"] = clock
    quotas = QuotaManager(rate_store or InMemoryRateStore(), store.resolve_tier, store, **quota_options)
    audit_sink = AuditSink(batch_size=settings.audit_batch_size, flush_interval=settings.audit_flush_interval)
    connection_manager = ConnectionManager(
        UpstreamClient(
            timeout=settings.upstream_timeout,
            retry_attempts=settings.retry_attempts,
            retry_backoff_base=settings.retry_backoff_base,
            transport=upstream_transport,
        )
    )
    gateway = BridgeGateway(store, tokens, quotas, audit_sink, connection_manager, AuthManager())
    protocol_handler = ProtocolHandler(gateway, protocol_version=settings.mcp_protocol_version)
    mapper = OpenAPISpecMapper(fetch_timeout=settings.openapi_fetch_timeout, transport=upstream_transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # --- startup ---
        logger.info("Initializing database...")
        init_db()
        logger.info("Startup complete.")
        try:
            yield
        finally:
            # --- shutdown ---
            logger.info("Draining audit log...")
            await audit_sink.aclose()
            logger.info("Shutting down connection manager...")
            await connection_manager.aclose_all()

    app = FastAPI(
        title="MCP Bridge Gateway",
        description="Exposes user-described REST APIs as Model Context Protocol servers.",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        return JSONResponse(
            {"error": exc.message, **exc.data},
            status_code=exc.status_code,
            headers={**CORS_HEADERS, **exc.headers},
        )

    # Routes
    app.include_router(gateway_controller.get_router(gateway, protocol_handler))
    app.include_router(auth_controller.get_router(store, tokens, gateway))
    app.include_router(bridge_controller.get_router(store, quotas, mapper, audit_sink))

    app.state.gateway = gateway
    app.state.audit_sink = audit_sink
    return app


app = create_app()
