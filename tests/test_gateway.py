import json

import httpx

DEMO_EMAIL = "demo@contextlayer.app"

ENDPOINTS = [
    {"method": "GET", "path": "/users"},
    {"method": "GET", "path": "/users/{id}"},
    {"method": "POST", "path": "/users"},
    {"method": "GET", "path": "/search?per_page=10&sort=asc"},
]


def test_forwards_to_resolved_endpoint_with_upstream_auth(client, upstream, make_bridge):
    bridge = make_bridge(endpoints=ENDPOINTS, headers={"X-Client": "bridge"})

    resp = client.get(f"/mcp/{bridge['slug']}/users/42")

    assert resp.status_code == 200
    assert resp.json()["path"] == "/v1/users/42"
    assert resp.headers["access-control-allow-origin"] == "*"
    assert resp.headers["x-ratelimit-limit"] == "100"

    sent = upstream.requests[-1]
    assert str(sent.url) == "https://api.example.com/v1/users/42"
    assert sent.headers["authorization"] == "Bearer up-secret"
    assert sent.headers["x-client"] == "bridge"


def test_bridge_id_and_slug_both_resolve(client, make_bridge):
    bridge = make_bridge()
    assert client.get(f"/mcp/{bridge['id']}/users").status_code == 200
    assert client.get(f"/mcp/{bridge['slug']}/users").status_code == 200


def test_inbound_query_overrides_template_defaults(client, upstream, make_bridge):
    bridge = make_bridge(endpoints=ENDPOINTS)
    client.get(f"/mcp/{bridge['slug']}/search", params={"per_page": "50", "q": "ada"})
    assert dict(upstream.requests[-1].url.params) == {"per_page": "50", "sort": "asc", "q": "ada"}


def test_body_is_forwarded_verbatim_for_post_only(client, upstream, make_bridge):
    bridge = make_bridge(endpoints=ENDPOINTS)
    raw = b'{"name": "Ada",  "tags": [1,2]}'

    client.post(f"/mcp/{bridge['slug']}/users", content=raw, headers={"Content-Type": "application/json"})
    assert upstream.requests[-1].content == raw

    client.request("GET", f"/mcp/{bridge['slug']}/users", content=b"ignored")
    assert upstream.requests[-1].content == b""


def test_custom_headers_override_auth_headers(client, upstream, make_bridge):
    bridge = make_bridge(headers={"Authorization": "Token custom"})
    client.get(f"/mcp/{bridge['slug']}/users")
    assert upstream.requests[-1].headers["authorization"] == "Token custom"


def test_api_key_and_basic_upstream_auth(client, upstream, make_bridge):
    keyed = make_bridge(
        name="Keyed", authentication={"type": "apikey", "token": "k-1", "location": "query", "paramName": "key"}
    )
    client.get(f"/mcp/{keyed['slug']}/users")
    assert upstream.requests[-1].url.params["key"] == "k-1"

    basic = make_bridge(name="Basic", authentication={"type": "basic", "username": "ada", "password": "pw"})
    client.get(f"/mcp/{basic['slug']}/users")
    assert upstream.requests[-1].headers["authorization"] == "Basic YWRhOnB3"


def test_auth_required_rejects_before_any_upstream_call(client, upstream, make_bridge):
    bridge = make_bridge(authRequired=True, apiKey="bridge-key")

    resp = client.get(f"/mcp/{bridge['slug']}/users")
    assert resp.status_code == 401
    assert "Bearer" in resp.headers["www-authenticate"]

    resp = client.get(f"/mcp/{bridge['slug']}/users", headers={"Authorization": "Bearer wrong"})
    assert resp.status_code == 401
    assert upstream.requests == []

    for headers in (
        {"Authorization": "Bearer bridge-key"},
        {"Authorization": "ApiKey bridge-key"},
        {"X-API-Key": "bridge-key"},
    ):
        assert client.get(f"/mcp/{bridge['slug']}/users", headers=headers).status_code == 200
    assert len(upstream.requests) == 3


def test_access_token_is_accepted_on_auth_required_bridge(client, make_bridge):
    bridge = make_bridge(authRequired=True, apiKey="bridge-key")
    owner = {"X-User-Id": "user-1"}
    token = client.post(f"/api/bridges/{bridge['id']}/tokens", json={"name": "ci"}, headers=owner).json()["token"]

    resp = client.get(f"/mcp/{bridge['slug']}/users", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200


def test_disabled_bridge_is_forbidden(client, upstream, make_bridge):
    bridge = make_bridge()
    client.post(f"/api/bridges/{bridge['id']}/stop", headers={"X-User-Id": "user-1"})

    resp = client.get(f"/mcp/{bridge['slug']}/users")
    assert resp.status_code == 403
    assert upstream.requests == []


def test_unknown_bridge_and_unknown_endpoint(client, make_bridge):
    assert client.get("/mcp/nope/users").status_code == 404

    bridge = make_bridge(endpoints=ENDPOINTS)
    resp = client.delete(f"/mcp/{bridge['slug']}/users/1")
    assert resp.status_code == 404
    assert "GET /users/{id}" in resp.json()["availableEndpoints"]


def test_upstream_errors_are_relayed_unchanged(client, upstream, make_bridge):
    bridge = make_bridge()
    upstream.responder = lambda request: httpx.Response(503, json={"detail": "maintenance"})

    resp = client.get(f"/mcp/{bridge['slug']}/users")
    assert resp.status_code == 503
    assert resp.json() == {"detail": "maintenance"}


def test_transport_failure_is_a_generic_500(client, upstream, make_bridge):
    bridge = make_bridge()

    def refuse(request):
        raise httpx.ConnectError("connection refused to 10.0.0.7:443", request=request)

    upstream.responder = refuse
    resp = client.get(f"/mcp/{bridge['slug']}/users")
    assert resp.status_code == 500
    assert resp.json() == {"error": "Upstream request failed"}
    assert "10.0.0.7" not in resp.text


def test_preflight(client):
    for url in ("/mcp/anything", "/mcp/anything/deep/path"):
        resp = client.options(url)
        assert resp.status_code == 204
        assert "PATCH" in resp.headers["access-control-allow-methods"]


def test_demo_rate_limit(client, make_bridge):
    bridge = make_bridge(user_id="demo-user", email=DEMO_EMAIL)
    statuses = [client.get(f"/mcp/{bridge['slug']}/users").status_code for _ in range(35)]

    assert statuses[:30] == [200] * 30
    assert statuses[30:] == [429] * 5

    resp = client.get(f"/mcp/{bridge['slug']}/users")
    assert resp.headers["x-ratelimit-remaining"] == "0"
    assert int(resp.headers["retry-after"]) >= 1


def test_rejections_and_calls_are_audited(app, upstream, make_bridge, client):
    bridge = make_bridge(authRequired=True, apiKey="bridge-key")
    client.get(f"/mcp/{bridge['slug']}/users")
    client.get(f"/mcp/{bridge['slug']}/users", headers={"X-API-Key": "bridge-key"})

    sink = app.state.audit_sink
    assert sink.pending == 2
    queued = list(sink._queue)
    assert [e.success for e in queued] == [False, True]
    assert queued[0].error == "Authentication required"
    assert json.loads(queued[1].metadata_json)["status"] == 200
