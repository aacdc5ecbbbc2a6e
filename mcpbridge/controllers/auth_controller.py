from typing import List

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from mcpbridge.controllers.dependencies import caller_id, owned_bridge
from mcpbridge.schemas.tokens import IssueTokenRequest, TokenInfo, UpdateTokenRequest, ValidateTokenRequest
from mcpbridge.services.bridge_store import BridgeStore
from mcpbridge.services.gateway import BridgeGateway
from mcpbridge.services.token_authority import TokenAuthority


def get_router(store: BridgeStore, tokens: TokenAuthority, gateway: BridgeGateway) -> APIRouter:
    router = APIRouter()

    @router.post("/api/auth/validate")
    async def validate_token(payload: ValidateTokenRequest) -> JSONResponse:
        """
        Check a token against an action on a bridge resource. Status mirrors the
        outcome: 200, 400, 401, 403 or 429.
        """
        status, body, headers = gateway.check_token(payload)
        return JSONResponse(body.model_dump(by_alias=True, exclude_none=True), status_code=status, headers=headers)

    @router.post("/api/bridges/{bridge_id}/tokens", response_model=TokenInfo, status_code=201)
    async def issue_token(
        bridge_id: str,
        payload: IssueTokenRequest,
        user_id: str = Depends(caller_id),
    ) -> TokenInfo:
        bridge = owned_bridge(store, bridge_id, user_id)
        return tokens.issue(
            bridge.id,
            payload.name,
            permissions=payload.permissions,
            expires_in_days=payload.expires_in_days,
            description=payload.description,
        )

    @router.get("/api/bridges/{bridge_id}/tokens", response_model=List[TokenInfo])
    async def list_tokens(bridge_id: str, user_id: str = Depends(caller_id)) -> List[TokenInfo]:
        bridge = owned_bridge(store, bridge_id, user_id)
        return tokens.list_for_bridge(bridge.id)

    @router.get("/api/bridges/{bridge_id}/tokens/{token_id}/reveal", response_model=TokenInfo)
    async def reveal_token(bridge_id: str, token_id: str, user_id: str = Depends(caller_id)) -> TokenInfo:
        bridge = owned_bridge(store, bridge_id, user_id)
        return tokens.reveal(bridge.id, token_id)

    @router.patch("/api/bridges/{bridge_id}/tokens/{token_id}", response_model=TokenInfo)
    async def update_token(
        bridge_id: str,
        token_id: str,
        payload: UpdateTokenRequest,
        user_id: str = Depends(caller_id),
    ) -> TokenInfo:
        bridge = owned_bridge(store, bridge_id, user_id)
        return tokens.update(bridge.id, token_id, payload)

    @router.delete("/api/bridges/{bridge_id}/tokens/{token_id}", status_code=204)
    async def revoke_token(bridge_id: str, token_id: str, user_id: str = Depends(caller_id)) -> None:
        bridge = owned_bridge(store, bridge_id, user_id)
        tokens.revoke(token_id, bridge.id)

    return router
