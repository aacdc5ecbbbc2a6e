import json
import logging
import re
import secrets
import time
from datetime import datetime, timedelta
from typing import Callable, ContextManager, List, Optional

from sqlmodel import Session, select

from mcpbridge.db.database import get_db_session
from mcpbridge.db.models import AccessToken, utcnow
from mcpbridge.errors import Forbidden, NotFound, Unauthorized
from mcpbridge.schemas.tokens import (
    PermissionType,
    TokenInfo,
    TokenPermission,
    UpdateTokenRequest,
    default_permissions,
)

logger = logging.getLogger(__name__)

PREFIX_FORMAT = r"[a-z]+"
TOKEN_FORMAT = re.compile(rf"^{PREFIX_FORMAT}_[0-9a-z]+_[A-Za-z0-9_-]+$")

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_BASE36[r])
    return "".join(reversed(out))


def create_token_value(prefix: str = "mcp", now: Optional[float] = None) -> str:
    """``<prefix>_<base36 ms timestamp>_<base64url of 32 random bytes>``"""
    millis = int((time.time() if now is None else now) * 1000)
    return f"{prefix}_{_base36(millis)}_{secrets.token_urlsafe(32)}"


def validate_token_format(value: str) -> bool:
    return bool(value) and TOKEN_FORMAT.match(value) is not None


def mask_token(value: str) -> str:
    return value[:12] + "…"


def _glob_matches(pattern: str, endpoint: str) -> bool:
    if "*" not in pattern:
        return pattern == endpoint
    regex = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.fullmatch(regex, endpoint) is not None


def permissions_of(row: AccessToken) -> List[TokenPermission]:
    return [TokenPermission.model_validate(p) for p in json.loads(row.permissions_json or "[]")]


def is_usable(row: AccessToken, now: Optional[datetime] = None) -> bool:
    if not row.is_active:
        return False
    return row.expires_at is None or row.expires_at > (now or utcnow())


def find_permission(row: AccessToken, required_type: PermissionType) -> Optional[TokenPermission]:
    return next((p for p in permissions_of(row) if p.type == required_type), None)


def has_permission(
    row: AccessToken,
    required_type: PermissionType,
    required_action: str,
    endpoint: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Active, unexpired, holds an entry for ``required_type`` whose actions include
    ``required_action`` or ``*``, and (when the entry restricts endpoints) the
    endpoint matches one of its patterns.
    """
    if not is_usable(row, now):
        return False

    permission = find_permission(row, required_type)
    if permission is None:
        return False

    if required_action not in permission.actions and "*" not in permission.actions:
        return False

    allowed = permission.constraints.allowed_endpoints if permission.constraints else None
    if endpoint is not None and allowed:
        if not any(_glob_matches(pattern, endpoint) for pattern in allowed):
            return False

    return True


def to_info(row: AccessToken, *, reveal: bool = False) -> TokenInfo:
    return TokenInfo(
        id=row.id,
        bridge_id=row.bridge_id,
        name=row.name,
        description=row.description,
        token=row.token if reveal else mask_token(row.token),
        permissions=permissions_of(row),
        expires_at=row.expires_at,
        created_at=row.created_at,
        last_used_at=row.last_used_at,
        is_active=row.is_active,
    )


class TokenAuthority:
    """
    Issues, looks up, scopes and revokes bridge access tokens.
    """

    def __init__(
        self,
        session_factory: Callable[[], ContextManager[Session]] = get_db_session,
        *,
        prefix: str = "mcp",
    ) -> None:
        # Issued values must pass looks_like_token.
        if not re.fullmatch(PREFIX_FORMAT, prefix):
            raise ValueError(f"Token prefix must be lowercase letters only, got {prefix!r}")
        self._session_factory = session_factory
        self.prefix = prefix

    def issue(
        self,
        bridge_id: str,
        name: str,
        permissions: Optional[List[TokenPermission]] = None,
        expires_in_days: Optional[int] = None,
        description: Optional[str] = None,
    ) -> TokenInfo:
        now = utcnow()
        perms = permissions if permissions is not None else default_permissions()
        row = AccessToken(
            bridge_id=bridge_id,
            token=create_token_value(self.prefix),
            name=name,
            description=description,
            permissions_json=json.dumps([p.model_dump(by_alias=True, exclude_none=True) for p in perms]),
            expires_at=now + timedelta(days=expires_in_days) if expires_in_days else None,
            is_active=True,
            created_at=now,
        )
        with self._session_factory() as db:
            db.add(row)
            db.commit()
            db.refresh(row)
        logger.info("Issued token %s for bridge %s", row.id, bridge_id)
        return to_info(row, reveal=True)

    def lookup(self, value: str, bridge_id: Optional[str] = None) -> Optional[AccessToken]:
        if not validate_token_format(value):
            return None
        with self._session_factory() as db:
            stmt = select(AccessToken).where(AccessToken.token == value)
            if bridge_id is not None:
                stmt = stmt.where(AccessToken.bridge_id == bridge_id)
            return db.exec(stmt).first()

    def validate(
        self,
        token: AccessToken,
        required_type: PermissionType,
        required_action: str,
        endpoint: Optional[str] = None,
    ) -> bool:
        return has_permission(token, required_type, required_action, endpoint)

    def authorize(
        self,
        value: str,
        bridge_id: str,
        required_type: Optional[PermissionType],
        required_action: Optional[str],
        endpoint: Optional[str] = None,
    ) -> AccessToken:
        """
        Resolve and check a presented token, raising on any failure.

        ``required_type=None`` only authenticates (initialize, ping).
        ``required_action=None`` asks only for some entry of ``required_type``
        (used by listings).
        """
        row = self.lookup(value, bridge_id)
        if row is None:
            raise Unauthorized("Invalid token")
        if not row.is_active:
            raise Unauthorized("Token is inactive")
        if not is_usable(row):
            raise Unauthorized("Token has expired")
        if required_type is None:
            return row
        if required_action is None:
            if find_permission(row, required_type) is None:
                raise Forbidden("Insufficient permissions")
        elif not has_permission(row, required_type, required_action, endpoint):
            raise Forbidden("Insufficient permissions")
        return row

    def touch(self, token_id: str) -> None:
        with self._session_factory() as db:
            row = db.get(AccessToken, token_id)
            if row is None:
                return
            row.last_used_at = utcnow()
            db.add(row)
            db.commit()

    def list_for_bridge(self, bridge_id: str) -> List[TokenInfo]:
        with self._session_factory() as db:
            stmt = (
                select(AccessToken)
                .where(AccessToken.bridge_id == bridge_id)
                .order_by(AccessToken.created_at.desc())
            )
            return [to_info(row) for row in db.exec(stmt).all()]

    def _get(self, db: Session, bridge_id: str, token_id: str) -> AccessToken:
        row = db.get(AccessToken, token_id)
        if row is None or row.bridge_id != bridge_id:
            raise NotFound("Token not found")
        return row

    def reveal(self, bridge_id: str, token_id: str) -> TokenInfo:
        with self._session_factory() as db:
            return to_info(self._get(db, bridge_id, token_id), reveal=True)

    def update(self, bridge_id: str, token_id: str, changes: UpdateTokenRequest) -> TokenInfo:
        with self._session_factory() as db:
            row = self._get(db, bridge_id, token_id)
            if changes.name is not None:
                row.name = changes.name
            if changes.description is not None:
                row.description = changes.description
            if changes.permissions is not None:
                row.permissions_json = json.dumps(
                    [p.model_dump(by_alias=True, exclude_none=True) for p in changes.permissions]
                )
            if changes.is_active is not None:
                row.is_active = changes.is_active
            db.add(row)
            db.commit()
            db.refresh(row)
            return to_info(row)

    def revoke(self, token_id: str, bridge_id: Optional[str] = None) -> None:
        with self._session_factory() as db:
            row = db.get(AccessToken, token_id)
            if row is None or (bridge_id is not None and row.bridge_id != bridge_id):
                raise NotFound("Token not found")
            db.delete(row)
            db.commit()
        logger.info("Revoked token %s", token_id)
