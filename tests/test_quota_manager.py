from mcpbridge.services.quota_manager import (
    DEMO_LIMITS,
    REGULAR_LIMITS,
    InMemoryRateStore,
    QuotaManager,
)


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeCounter:
    def __init__(self, bridges: int = 0, endpoints: int = 0, items: int = 0) -> None:
        self.bridges = bridges
        self.endpoints = endpoints
        self.items = items

    def count_bridges(self, user_id):
        return self.bridges

    def count_endpoints(self, bridge_id):
        return self.endpoints

    def count_mcp_items(self, bridge_id, kind):
        return self.items


def _manager(tiers=None, counter=None, clock=None):
    tiers = tiers or {}
    return QuotaManager(
        InMemoryRateStore(),
        lambda user_id: tiers.get(user_id, REGULAR_LIMITS),
        counter,
        window_seconds=60,
        clock=clock or FakeClock(),
    )


def test_fixed_window_rejects_over_limit_then_resets():
    clock = FakeClock()
    quotas = _manager(clock=clock)

    decisions = [quotas.check_rate("user:u1", 30) for _ in range(35)]
    rejected = [d for d in decisions if not d.allowed]
    assert len(rejected) >= 5
    assert all(d.allowed for d in decisions[:30])
    assert decisions[29].remaining == 0

    clock.now += 61
    after = quotas.check_rate("user:u1", 30)
    assert after.allowed
    assert after.remaining == 29


def test_count_never_exceeds_ceiling():
    store = InMemoryRateStore()
    quotas = QuotaManager(store, lambda _: REGULAR_LIMITS, clock=FakeClock())
    for _ in range(10):
        quotas.check_rate("token:t1", 3)
    assert store.get("rate_limit:token:t1").count == 3


def test_identities_have_independent_windows():
    quotas = _manager()
    for _ in range(2):
        quotas.check_rate("user:a", 2)
    assert not quotas.check_rate("user:a", 2).allowed
    assert quotas.check_rate("user:b", 2).allowed


def test_user_rate_uses_tier_requests_per_minute():
    quotas = _manager(tiers={"demo": DEMO_LIMITS})
    assert quotas.check_user_rate("demo").limit == 30
    assert quotas.check_user_rate("someone").limit == 100


def test_rate_headers():
    decision = _manager().check_rate("user:x", 5)
    assert decision.headers["X-RateLimit-Limit"] == "5"
    assert decision.headers["X-RateLimit-Remaining"] == "4"
    assert decision.headers["X-RateLimit-Reset"] == "1060"


def test_purge_expired_drops_only_elapsed_windows():
    clock = FakeClock()
    quotas = _manager(clock=clock)
    quotas.check_rate("user:old", 5)
    clock.now += 61
    quotas.check_rate("user:new", 5)
    assert quotas.purge_expired() == 1


def test_demo_third_bridge_is_refused_regular_is_not():
    quotas = _manager(tiers={"demo": DEMO_LIMITS}, counter=FakeCounter(bridges=2))

    demo = quotas.check_resource_ceiling("demo", "bridge")
    assert not demo.allowed
    assert "bridge limit" in demo.message.lower()

    assert quotas.check_resource_ceiling("regular", "bridge").allowed


def test_endpoint_and_mcp_ceilings_count_what_is_being_added():
    quotas = _manager(tiers={"demo": DEMO_LIMITS}, counter=FakeCounter(endpoints=4, items=2))
    assert quotas.check_resource_ceiling("demo", "endpoint", "b1").allowed
    assert not quotas.check_resource_ceiling("demo", "endpoint", "b1", adding=2).allowed
    assert not quotas.check_resource_ceiling("demo", "mcp_tool", "b1", adding=2).allowed
    assert not quotas.check_resource_ceiling("demo", "mcp_prompt", "b1").allowed
    # A new bridge starts from zero.
    assert quotas.check_resource_ceiling("demo", "endpoint", None, adding=5).allowed


def test_demo_tier_restricts_methods():
    quotas = _manager(tiers={"demo": DEMO_LIMITS})
    assert quotas.check_method_allowed("demo", "get").allowed
    assert not quotas.check_method_allowed("demo", "DELETE").allowed
    assert quotas.check_method_allowed("regular", "DELETE").allowed
