from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import Field

from mcpbridge.schemas.bridge import CamelModel


class AuditLogInfo(CamelModel):
    id: str
    bridge_id: str
    token_id: Optional[str] = None
    action: str
    resource: str
    success: bool
    error: Optional[str] = None
    timestamp: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class HealthResponse(CamelModel):
    status: str
    detail: Optional[str] = None
