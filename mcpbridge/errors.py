from typing import Any, Dict, Optional


class GatewayError(Exception):
    """
    Base for every failure the gateway reports to a caller.

    `message` is always safe to show to the client; internal detail goes to
    the log, never into the message.
    """

    status_code = 500
    jsonrpc_code = -32603

    def __init__(self, message: str, *, data: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.data = data or {}

    @property
    def headers(self) -> Dict[str, str]:
        return {}


class NotFound(GatewayError):
    status_code = 404
    jsonrpc_code = -32602


class Unauthorized(GatewayError):
    status_code = 401
    jsonrpc_code = -32001

    @property
    def headers(self) -> Dict[str, str]:
        return {"WWW-Authenticate": 'Bearer realm="MCP Bridge"'}


class Forbidden(GatewayError):
    status_code = 403
    jsonrpc_code = -32003


class RateLimited(GatewayError):
    status_code = 429
    jsonrpc_code = -32029

    def __init__(self, message: str, *, limit: int, reset_at: float, now: float) -> None:
        super().__init__(message, data={"limit": limit, "remaining": 0, "resetAt": reset_at})
        self.limit = limit
        self.reset_at = reset_at
        self.retry_after = max(int(reset_at - now + 0.999), 0)

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(int(self.reset_at)),
            "Retry-After": str(self.retry_after),
        }


class ValidationError(GatewayError):
    status_code = 400
    jsonrpc_code = -32602


class InternalError(GatewayError):
    status_code = 500
    jsonrpc_code = -32603
