import json
import logging
import re
from typing import Callable, ContextManager, Dict, Iterable, List, Optional, Sequence
from uuid import uuid4

from pydantic import TypeAdapter
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, func, or_, select

from mcpbridge.db.database import get_db_session
from mcpbridge.db.models import ApiEndpoint, Bridge, User, utcnow
from mcpbridge.errors import NotFound
from mcpbridge.schemas.bridge import (
    AuthConfig,
    BridgeCreate,
    BridgeInfo,
    BridgeUpdate,
    EndpointDefinition,
    EndpointParameter,
    McpPrompt,
    McpResource,
    McpTool,
)
from mcpbridge.services.quota_manager import DEMO_LIMITS, REGULAR_LIMITS, ResourceKind, TierLimits

logger = logging.getLogger(__name__)

_auth_adapter = TypeAdapter(AuthConfig)

_MCP_COLUMNS = {
    "mcp_tool": "mcp_tools_json",
    "mcp_prompt": "mcp_prompts_json",
    "mcp_resource": "mcp_resources_json",
}


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "bridge"


def _dump_models(items: Iterable) -> str:
    return json.dumps([i.model_dump(by_alias=True, exclude_none=True) for i in items])


# ---------- Row converters ----------


def auth_config(bridge: Bridge) -> AuthConfig:
    return _auth_adapter.validate_json(bridge.auth_json or '{"type": "none"}')


def custom_headers(bridge: Bridge) -> Dict[str, str]:
    return json.loads(bridge.headers_json or "{}")


def stored_tools(bridge: Bridge) -> List[McpTool]:
    return [McpTool.model_validate(t) for t in json.loads(bridge.mcp_tools_json or "[]")]


def stored_prompts(bridge: Bridge) -> List[McpPrompt]:
    return [McpPrompt.model_validate(p) for p in json.loads(bridge.mcp_prompts_json or "[]")]


def stored_resources(bridge: Bridge) -> List[McpResource]:
    return [McpResource.model_validate(r) for r in json.loads(bridge.mcp_resources_json or "[]")]


def to_endpoint_definition(row: ApiEndpoint) -> EndpointDefinition:
    return EndpointDefinition(
        id=row.id,
        name=row.name or None,
        method=row.method,
        path=row.path,
        description=row.description,
        parameters=[EndpointParameter.model_validate(p) for p in json.loads(row.parameters_json or "[]")],
    )


def _endpoint_row(bridge_id: str, endpoint: EndpointDefinition, position: int) -> ApiEndpoint:
    return ApiEndpoint(
        bridge_id=bridge_id,
        name=endpoint.name or "",
        method=endpoint.method,
        path=endpoint.path,
        description=endpoint.description,
        position=position,
        parameters_json=_dump_models(endpoint.parameters),
    )


class BridgeStore:
    """
    Persistence for bridges and their endpoints. Also answers the count queries
    the QuotaManager uses for resource ceilings, and resolves account tiers.
    """

    def __init__(
        self,
        session_factory: Callable[[], ContextManager[Session]] = get_db_session,
        *,
        demo_emails: Sequence[str] = (),
    ) -> None:
        self._session_factory = session_factory
        self.demo_emails = {e.lower() for e in demo_emails}

    # ---------- Users & tiers ----------

    def ensure_user(self, user_id: str, email: Optional[str] = None) -> User:
        with self._session_factory() as db:
            user = db.get(User, user_id)
            if user is not None:
                return user
            user = User(id=user_id, email=email.lower() if email else None)
            db.add(user)
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise ValueError("Email is already registered to another user") from e
            db.refresh(user)
            logger.info("Registered user %s", user_id)
            return user

    def resolve_tier(self, user_id: str) -> TierLimits:
        with self._session_factory() as db:
            user = db.get(User, user_id)
        if user is not None and user.email and user.email.lower() in self.demo_emails:
            return DEMO_LIMITS
        return REGULAR_LIMITS

    # ---------- Counts (ResourceCounter) ----------

    def count_bridges(self, user_id: str) -> int:
        with self._session_factory() as db:
            stmt = select(func.count()).select_from(Bridge).where(Bridge.user_id == user_id)
            return db.exec(stmt).one()

    def count_endpoints(self, bridge_id: str) -> int:
        with self._session_factory() as db:
            stmt = select(func.count()).select_from(ApiEndpoint).where(ApiEndpoint.bridge_id == bridge_id)
            return db.exec(stmt).one()

    def count_mcp_items(self, bridge_id: str, kind: ResourceKind) -> int:
        with self._session_factory() as db:
            bridge = db.get(Bridge, bridge_id)
        if bridge is None:
            return 0
        return len(json.loads(getattr(bridge, _MCP_COLUMNS[kind]) or "[]"))

    # ---------- Lookup ----------

    def get(self, id_or_slug: str) -> Optional[Bridge]:
        with self._session_factory() as db:
            stmt = select(Bridge).where(or_(Bridge.id == id_or_slug, Bridge.slug == id_or_slug))
            return db.exec(stmt).first()

    def require(self, id_or_slug: str) -> Bridge:
        bridge = self.get(id_or_slug)
        if bridge is None:
            raise NotFound("Bridge not found")
        return bridge

    def endpoints_for(self, bridge_id: str) -> List[EndpointDefinition]:
        with self._session_factory() as db:
            stmt = (
                select(ApiEndpoint)
                .where(ApiEndpoint.bridge_id == bridge_id)
                .order_by(ApiEndpoint.position, ApiEndpoint.method, ApiEndpoint.path)
            )
            return [to_endpoint_definition(row) for row in db.exec(stmt).all()]

    def to_info(self, bridge: Bridge) -> BridgeInfo:
        return BridgeInfo(
            id=bridge.id,
            slug=bridge.slug,
            user_id=bridge.user_id,
            name=bridge.name,
            description=bridge.description,
            base_url=bridge.base_url,
            enabled=bridge.enabled,
            auth_required=bridge.auth_required,
            api_key=bridge.api_key,
            is_public=bridge.is_public,
            authentication=auth_config(bridge),
            headers=custom_headers(bridge),
            endpoints=self.endpoints_for(bridge.id),
            mcp_tools=stored_tools(bridge),
            mcp_prompts=stored_prompts(bridge),
            mcp_resources=stored_resources(bridge),
            created_at=bridge.created_at,
            updated_at=bridge.updated_at,
        )

    def list_for_user(self, user_id: str) -> List[BridgeInfo]:
        with self._session_factory() as db:
            stmt = select(Bridge).where(Bridge.user_id == user_id).order_by(Bridge.created_at)
            rows = db.exec(stmt).all()
        return [self.to_info(row) for row in rows]

    # ---------- Writes ----------

    def _unique_slug(self, db: Session, wanted: str) -> str:
        slug = wanted
        while db.exec(select(Bridge.id).where(Bridge.slug == slug)).first() is not None:
            slug = f"{wanted}-{uuid4().hex[:6]}"
        return slug

    def create(self, user_id: str, payload: BridgeCreate) -> BridgeInfo:
        """
        Persist a validated bridge with its endpoints in one transaction.

        Raises ValueError when an explicit slug is taken or a uniqueness
        constraint fails.
        """
        now = utcnow()
        with self._session_factory() as db:
            if payload.slug:
                if db.exec(select(Bridge.id).where(Bridge.slug == payload.slug)).first() is not None:
                    raise ValueError(f"Slug '{payload.slug}' is already in use")
                slug = payload.slug
            else:
                slug = self._unique_slug(db, slugify(payload.name))

            bridge = Bridge(
                slug=slug,
                user_id=user_id,
                name=payload.name,
                description=payload.description,
                base_url=payload.base_url,
                enabled=payload.enabled,
                auth_required=payload.auth_required,
                api_key=payload.api_key,
                is_public=payload.is_public,
                auth_json=payload.authentication.model_dump_json(by_alias=True),
                headers_json=json.dumps(payload.headers),
                mcp_tools_json=_dump_models(payload.mcp_tools),
                mcp_prompts_json=_dump_models(payload.mcp_prompts),
                mcp_resources_json=_dump_models(payload.mcp_resources),
                created_at=now,
                updated_at=now,
            )
            db.add(bridge)
            # Parent row first; endpoints reference it.
            db.flush()
            for position, endpoint in enumerate(payload.endpoints):
                db.add(_endpoint_row(bridge.id, endpoint, position))
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise ValueError("Bridge conflicts with an existing bridge or endpoint") from e
            db.refresh(bridge)

        logger.info("Created bridge %s (%s) for user %s", bridge.id, bridge.slug, user_id)
        return self.to_info(bridge)

    def update(self, bridge_id: str, changes: BridgeUpdate) -> BridgeInfo:
        fields = changes.model_dump(exclude_unset=True)
        with self._session_factory() as db:
            bridge = db.get(Bridge, bridge_id)
            if bridge is None:
                raise NotFound("Bridge not found")

            if changes.authentication is not None:
                bridge.auth_json = changes.authentication.model_dump_json(by_alias=True)
            if "headers" in fields:
                bridge.headers_json = json.dumps(changes.headers or {})
            for name in ("name", "description", "base_url", "auth_required", "is_public"):
                if fields.get(name) is not None:
                    setattr(bridge, name, fields[name])
            if "api_key" in fields:
                bridge.api_key = fields["api_key"]

            if bridge.auth_required and not bridge.api_key:
                raise ValueError("authRequired is set but no apiKey is configured")

            bridge.updated_at = utcnow()
            db.add(bridge)
            db.commit()
            db.refresh(bridge)

        logger.info("Updated bridge %s: %s", bridge.id, sorted(fields))
        return self.to_info(bridge)

    def set_enabled(self, id_or_slug: str, enabled: bool) -> BridgeInfo:
        with self._session_factory() as db:
            stmt = select(Bridge).where(or_(Bridge.id == id_or_slug, Bridge.slug == id_or_slug))
            bridge = db.exec(stmt).first()
            if bridge is None:
                raise NotFound("Bridge not found")
            bridge.enabled = enabled
            bridge.updated_at = utcnow()
            db.add(bridge)
            db.commit()
            db.refresh(bridge)
        logger.info("Bridge %s %s", bridge.id, "enabled" if enabled else "disabled")
        return self.to_info(bridge)

    def add_endpoint(self, bridge_id: str, endpoint: EndpointDefinition) -> EndpointDefinition:
        with self._session_factory() as db:
            if db.get(Bridge, bridge_id) is None:
                raise NotFound("Bridge not found")
            position = db.exec(
                select(func.count()).select_from(ApiEndpoint).where(ApiEndpoint.bridge_id == bridge_id)
            ).one()
            row = _endpoint_row(bridge_id, endpoint, position)
            db.add(row)
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise ValueError(f"Endpoint {endpoint.method} {endpoint.path} already exists on this bridge") from e
            db.refresh(row)
            return to_endpoint_definition(row)

    def remove_endpoint(self, bridge_id: str, endpoint_id: str) -> None:
        with self._session_factory() as db:
            row = db.get(ApiEndpoint, endpoint_id)
            if row is None or row.bridge_id != bridge_id:
                raise NotFound("Endpoint not found")
            db.delete(row)
            db.commit()

    def replace_definitions(
        self,
        bridge_id: str,
        endpoints: List[EndpointDefinition],
        tools: List[McpTool],
        prompts: List[McpPrompt],
        resources: List[McpResource],
    ) -> BridgeInfo:
        """
        Swap a bridge's endpoints and MCP definitions for a new set, all at once.
        Used when an owner confirms an OpenAPI re-import; nothing is merged.
        """
        seen = set()
        for ep in endpoints:
            if (ep.method, ep.path) in seen:
                raise ValueError(f"Duplicate endpoint {ep.method} {ep.path}")
            seen.add((ep.method, ep.path))

        with self._session_factory() as db:
            bridge = db.get(Bridge, bridge_id)
            if bridge is None:
                raise NotFound("Bridge not found")
            for row in db.exec(select(ApiEndpoint).where(ApiEndpoint.bridge_id == bridge_id)).all():
                db.delete(row)
            db.flush()
            for position, endpoint in enumerate(endpoints):
                db.add(_endpoint_row(bridge_id, endpoint, position))
            bridge.mcp_tools_json = _dump_models(tools)
            bridge.mcp_prompts_json = _dump_models(prompts)
            bridge.mcp_resources_json = _dump_models(resources)
            bridge.updated_at = utcnow()
            db.add(bridge)
            db.commit()
            db.refresh(bridge)

        logger.info("Replaced definitions of bridge %s: %d endpoints", bridge_id, len(endpoints))
        return self.to_info(bridge)
