from typing import Optional

from fastapi import Header, HTTPException

from mcpbridge.db.models import Bridge
from mcpbridge.errors import Forbidden
from mcpbridge.services.bridge_store import BridgeStore


def caller_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Identity of the dashboard user, set by the session layer in front of this API."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


def owned_bridge(store: BridgeStore, bridge_id: str, user_id: str) -> Bridge:
    bridge = store.require(bridge_id)
    if bridge.user_id != user_id:
        raise Forbidden("You do not own this bridge")
    return bridge
