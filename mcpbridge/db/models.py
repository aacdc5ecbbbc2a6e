from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import Column, Text, UniqueConstraint
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    # Naive UTC: sqlite does not round-trip tzinfo.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=new_id, primary_key=True)
    email: Optional[str] = Field(default=None, index=True, unique=True)
    created_at: datetime = Field(default_factory=utcnow)


class Bridge(SQLModel, table=True):
    """
    A user-configured mapping from an MCP server identity to a target REST API.

    Never hard-deleted while traffic may be in flight; `enabled=False` stops proxying.
    """

    __tablename__ = "bridges"

    id: str = Field(default_factory=new_id, primary_key=True)
    slug: str = Field(index=True, unique=True)
    user_id: str = Field(index=True)
    name: str
    description: str = ""
    base_url: str
    enabled: bool = Field(default=True, index=True)
    auth_required: bool = False
    api_key: Optional[str] = None
    is_public: bool = True

    # JSON strings
    auth_json: str = Field(default='{"type": "none"}', sa_column=Column(Text, nullable=False))
    headers_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    mcp_tools_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    mcp_prompts_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    mcp_resources_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ApiEndpoint(SQLModel, table=True):
    __tablename__ = "api_endpoints"
    __table_args__ = (UniqueConstraint("bridge_id", "method", "path", name="uq_endpoint_method_path"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    bridge_id: str = Field(foreign_key="bridges.id", index=True)
    name: str
    method: str
    path: str
    description: str = ""
    position: int = 0

    # JSON strings
    parameters_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))


class AccessToken(SQLModel, table=True):
    __tablename__ = "access_tokens"

    id: str = Field(default_factory=new_id, primary_key=True)
    bridge_id: str = Field(foreign_key="bridges.id", index=True)
    token: str = Field(index=True, unique=True)
    name: str
    description: Optional[str] = None
    permissions_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    expires_at: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None


class AuditLogEntry(SQLModel, table=True):
    """
    Append-only record of an authorization decision or proxied call.
    """

    __tablename__ = "audit_log"

    id: str = Field(default_factory=new_id, primary_key=True)
    bridge_id: str = Field(index=True)
    token_id: Optional[str] = None
    action: str
    resource: str
    success: bool
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow, index=True)
    metadata_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
