from datetime import datetime
from typing import List, Literal, Optional

from pydantic import Field

from mcpbridge.schemas.bridge import CamelModel

PermissionType = Literal["tools", "resources", "prompts", "admin"]


class PermissionConstraints(CamelModel):
    rate_limit: Optional[int] = Field(default=None, gt=0, description="Requests per rate window")
    allowed_endpoints: Optional[List[str]] = Field(
        default=None, description="Glob patterns; '*' matches any run of characters"
    )


class TokenPermission(CamelModel):
    type: PermissionType
    actions: List[str] = Field(default_factory=list)
    constraints: Optional[PermissionConstraints] = None


def default_permissions() -> List[TokenPermission]:
    return [
        TokenPermission(type="tools", actions=["execute"], constraints=PermissionConstraints(rate_limit=100)),
        TokenPermission(type="resources", actions=["read"]),
        TokenPermission(type="prompts", actions=["read", "execute"]),
    ]


class IssueTokenRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    permissions: Optional[List[TokenPermission]] = None
    expires_in_days: Optional[int] = Field(default=None, gt=0)


class UpdateTokenRequest(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    permissions: Optional[List[TokenPermission]] = None
    is_active: Optional[bool] = None


class TokenInfo(CamelModel):
    id: str
    bridge_id: str
    name: str
    description: Optional[str] = None
    token: str = Field(..., description="Full secret only at issuance and on explicit reveal; masked otherwise")
    permissions: List[TokenPermission]
    expires_at: Optional[datetime] = None
    created_at: datetime
    last_used_at: Optional[datetime] = None
    is_active: bool


class ValidateTokenRequest(CamelModel):
    token: str = ""
    bridge_id: str = ""
    action: str = ""
    resource: str = ""
    endpoint: Optional[str] = None


class ValidateTokenResponse(CamelModel):
    valid: bool
    permissions: Optional[List[str]] = None
    rate_limited: Optional[bool] = None
    remaining_requests: Optional[int] = None
    error: Optional[str] = None
