import base64
import hmac
from typing import Dict, Mapping, Optional, Tuple

from mcpbridge.schemas.bridge import ApiKeyAuth, AuthConfig, BasicAuth, BearerAuth, NoAuth


class AuthManager:
    """
    Builds upstream auth headers for a bridge and checks inbound bridge credentials.
    """

    def build_headers(
        self,
        auth: AuthConfig,
        custom_headers: Optional[Mapping[str, str]] = None,
    ) -> Tuple[Dict[str, str], Dict[str, str]]:
        """
        Return ``(headers, query_params)`` for an upstream call.

        Exactly one auth scheme is attached, then the bridge's custom headers are
        overlaid, so a custom header may replace an auth header.

        Supported:
        - none: no auth headers
        - bearer: Authorization: Bearer <token>
        - apikey: <header_name>: <token>, or a query parameter when location=query
        - basic: Authorization: Basic base64(user:pass)
        """
        headers: Dict[str, str] = {"Content-Type": "application/json"}
        query: Dict[str, str] = {}

        if isinstance(auth, NoAuth):
            pass
        elif isinstance(auth, BearerAuth):
            headers["Authorization"] = f"Bearer {auth.token}"
        elif isinstance(auth, ApiKeyAuth):
            if auth.location == "query":
                query[auth.param_name or auth.header_name] = auth.token
            else:
                headers[auth.header_name or "X-API-Key"] = auth.token
        elif isinstance(auth, BasicAuth):
            raw = f"{auth.username}:{auth.password}".encode("utf-8")
            headers["Authorization"] = "Basic " + base64.b64encode(raw).decode("ascii")
        else:
            raise ValueError(f"Unsupported auth type '{getattr(auth, 'type', auth)}'")

        headers.update(custom_headers or {})
        return headers, query

    @staticmethod
    def extract_credential(headers: Mapping[str, str]) -> Optional[str]:
        """
        Credential from ``Authorization: Bearer <key>``, ``Authorization: ApiKey <key>``
        or ``X-API-Key: <key>``, in that order. Header lookup is case-insensitive.
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        auth_header = lowered.get("authorization", "")
        for scheme in ("Bearer ", "ApiKey "):
            if auth_header.startswith(scheme):
                value = auth_header[len(scheme):].strip()
                if value:
                    return value
        api_key = lowered.get("x-api-key", "").strip()
        return api_key or None

    @staticmethod
    def matches_static_key(provided: Optional[str], expected: Optional[str]) -> bool:
        if not provided or not expected:
            return False
        return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
