"""
Request-rate windows and per-account resource ceilings.

Rate limiting is a fixed-window counter: the first hit opens a window of
``window_seconds``; hits before ``reset_at`` count against the ceiling; once
``reset_at`` passes the window restarts. At a window boundary this admits up to
twice the nominal rate, which is accepted in exchange for predictability.

Ceiling checks count current state at decision time. Two concurrent creators can
both pass; the storage layer's constraints are the real backstop.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Literal, Optional, Protocol

logger = logging.getLogger(__name__)

ResourceKind = Literal["bridge", "endpoint", "mcp_tool", "mcp_resource", "mcp_prompt"]


@dataclass(frozen=True)
class TierLimits:
    name: str
    requests_per_minute: int
    max_bridges: int
    max_endpoints_per_bridge: int
    max_mcp_tools: int
    max_mcp_resources: int
    max_mcp_prompts: int
    allowed_methods: FrozenSet[str] = field(default_factory=frozenset)


DEMO_LIMITS = TierLimits(
    name="demo",
    requests_per_minute=30,
    max_bridges=2,
    max_endpoints_per_bridge=5,
    max_mcp_tools=3,
    max_mcp_resources=2,
    max_mcp_prompts=2,
    allowed_methods=frozenset({"GET", "POST"}),
)

REGULAR_LIMITS = TierLimits(
    name="regular",
    requests_per_minute=100,
    max_bridges=10,
    max_endpoints_per_bridge=20,
    max_mcp_tools=15,
    max_mcp_resources=10,
    max_mcp_prompts=10,
    allowed_methods=frozenset({"GET", "POST", "PUT", "DELETE", "PATCH"}),
)


@dataclass
class RateWindow:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }


@dataclass(frozen=True)
class CeilingDecision:
    allowed: bool
    message: Optional[str] = None


class RateStore(Protocol):
    """
    Storage for rate windows. A shared backend (e.g. a counter service) can
    implement this without any change to QuotaManager.
    """

    def get(self, key: str) -> Optional[RateWindow]: ...

    def set(self, key: str, window: RateWindow) -> None: ...

    def increment(self, key: str, limit: int, window_seconds: float, now: float) -> tuple[RateWindow, bool]:
        """
        Atomically: open a fresh window if none is live, otherwise increment the
        live one unless it already reached ``limit``. Returns the window and
        whether this hit was counted.
        """
        ...

    def delete_expired(self, now: float) -> int: ...


class InMemoryRateStore:
    """
    Process-local store. Correct for a single gateway process only; several
    instances each keep their own windows.
    """

    def __init__(self) -> None:
        self._windows: Dict[str, RateWindow] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[RateWindow]:
        with self._lock:
            window = self._windows.get(key)
            return RateWindow(window.count, window.reset_at) if window else None

    def set(self, key: str, window: RateWindow) -> None:
        with self._lock:
            self._windows[key] = window

    def increment(self, key: str, limit: int, window_seconds: float, now: float) -> tuple[RateWindow, bool]:
        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                window = RateWindow(count=1, reset_at=now + window_seconds)
                self._windows[key] = window
                return RateWindow(window.count, window.reset_at), True
            if window.count >= limit:
                return RateWindow(window.count, window.reset_at), False
            window.count += 1
            return RateWindow(window.count, window.reset_at), True

    def delete_expired(self, now: float) -> int:
        with self._lock:
            expired = [k for k, w in self._windows.items() if now >= w.reset_at]
            for k in expired:
                del self._windows[k]
            return len(expired)


class ResourceCounter(Protocol):
    def count_bridges(self, user_id: str) -> int: ...

    def count_endpoints(self, bridge_id: str) -> int: ...

    def count_mcp_items(self, bridge_id: str, kind: ResourceKind) -> int: ...


class QuotaManager:
    """
    Decides whether an identity may make another request and whether an account
    may create another resource.
    """

    def __init__(
        self,
        store: RateStore,
        tier_resolver: Callable[[str], TierLimits],
        counter: Optional[ResourceCounter] = None,
        *,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.tier_resolver = tier_resolver
        self.counter = counter
        self.window_seconds = window_seconds
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def limits_for(self, user_id: str) -> TierLimits:
        return self.tier_resolver(user_id)

    # ---------- Rate ----------

    def check_rate(self, identity: str, requests_per_window: int) -> RateDecision:
        now = self._clock()
        window, counted = self.store.increment(
            f"rate_limit:{identity}", requests_per_window, self.window_seconds, now
        )
        if not counted:
            logger.info("Rate limit exceeded for %s (limit=%s)", identity, requests_per_window)
            return RateDecision(False, requests_per_window, 0, window.reset_at)
        return RateDecision(
            True, requests_per_window, max(requests_per_window - window.count, 0), window.reset_at
        )

    def check_user_rate(self, user_id: str) -> RateDecision:
        return self.check_rate(f"user:{user_id}", self.limits_for(user_id).requests_per_minute)

    def purge_expired(self) -> int:
        return self.store.delete_expired(self._clock())

    # ---------- Ceilings ----------

    def check_resource_ceiling(
        self,
        user_id: str,
        kind: ResourceKind,
        bridge_id: Optional[str] = None,
        *,
        adding: int = 1,
    ) -> CeilingDecision:
        """
        Advisory count-then-create check. ``adding`` is how many items the caller
        is about to create; for per-bridge kinds without a bridge yet the current
        count is zero.
        """
        limits = self.limits_for(user_id)
        tier = "Demo users" if limits.name == "demo" else "Users on this plan"

        if kind == "bridge":
            current = self.counter.count_bridges(user_id) if self.counter else 0
            if current + adding > limits.max_bridges:
                return CeilingDecision(
                    False,
                    f"Bridge limit reached. {tier} can create up to {limits.max_bridges} bridges.",
                )
            return CeilingDecision(True)

        if kind == "endpoint":
            current = self.counter.count_endpoints(bridge_id) if (self.counter and bridge_id) else 0
            if current + adding > limits.max_endpoints_per_bridge:
                return CeilingDecision(
                    False,
                    f"Endpoint limit reached. {tier} can create up to "
                    f"{limits.max_endpoints_per_bridge} endpoints per bridge.",
                )
            return CeilingDecision(True)

        ceilings = {
            "mcp_tool": ("MCP tool", limits.max_mcp_tools),
            "mcp_resource": ("MCP resource", limits.max_mcp_resources),
            "mcp_prompt": ("MCP prompt", limits.max_mcp_prompts),
        }
        label, ceiling = ceilings[kind]
        current = self.counter.count_mcp_items(bridge_id, kind) if (self.counter and bridge_id) else 0
        if current + adding > ceiling:
            return CeilingDecision(
                False, f"{label} limit reached. {tier} can create up to {ceiling} per bridge."
            )
        return CeilingDecision(True)

    def check_method_allowed(self, user_id: str, method: str) -> CeilingDecision:
        limits = self.limits_for(user_id)
        if method.upper() not in limits.allowed_methods:
            return CeilingDecision(
                False,
                f"HTTP method {method.upper()} is not available on the {limits.name} tier "
                f"(allowed: {', '.join(sorted(limits.allowed_methods))}).",
            )
        return CeilingDecision(True)
