import json

import httpx

from fastapi.testclient import TestClient

DEMO_EMAIL = "demo@contextlayer.app"
OWNER = {"X-User-Id": "user-1"}

OPENAPI_DOC = {
    "openapi": "3.0.0",
    "info": {"title": "Orders", "version": "1.0"},
    "servers": [{"url": "https://orders.example.com"}],
    "paths": {
        "/orders": {"get": {"summary": "List orders", "tags": ["orders"]}},
        "/orders/{orderId}": {
            "get": {
                "summary": "Get an order",
                "tags": ["orders"],
                "parameters": [{"name": "orderId", "in": "path", "required": True, "schema": {"type": "string"}}],
            }
        },
    },
}


def _create(client, headers, **fields):
    payload = {"name": "API", "baseUrl": "https://api.example.com"}
    payload.update(fields)
    return client.post("/api/bridges", json=payload, headers=headers)


def test_create_and_fetch(client):
    resp = _create(client, OWNER, name="Weather Service", endpoints=[{"method": "get", "path": "forecast/{city}"}])
    assert resp.status_code == 201
    bridge = resp.json()

    assert bridge["slug"] == "weather-service"
    assert bridge["enabled"] is True
    assert bridge["authentication"] == {"type": "none"}
    endpoint = bridge["endpoints"][0]
    assert (endpoint["method"], endpoint["path"]) == ("GET", "/forecast/{city}")
    assert endpoint["parameters"][0] == {
        "name": "city",
        "type": "string",
        "required": True,
        "description": "",
        "defaultValue": None,
        "location": "path",
        "enum": None,
    }

    assert client.get(f"/api/bridges/{bridge['slug']}", headers=OWNER).json()["id"] == bridge["id"]
    assert [b["id"] for b in client.get("/api/bridges", headers=OWNER).json()] == [bridge["id"]]

    second = _create(client, OWNER, name="Weather Service").json()
    assert second["slug"].startswith("weather-service-")


def test_write_time_validation(client):
    assert _create(client, OWNER, baseUrl="ftp://files.example.com").status_code == 422
    assert _create(client, OWNER, authRequired=True).status_code == 422
    assert _create(client, OWNER, authentication={"type": "bearer"}).status_code == 422
    assert _create(client, OWNER, authentication={"type": "oauth"}).status_code == 422

    duplicate = [{"method": "GET", "path": "/a"}, {"method": "get", "path": "a"}]
    assert _create(client, OWNER, endpoints=duplicate).status_code == 422

    stray = [{"method": "GET", "path": "/a", "parameters": [{"name": "id", "location": "path"}]}]
    assert _create(client, OWNER, endpoints=stray).status_code == 422

    _create(client, OWNER, slug="taken")
    assert _create(client, OWNER, slug="taken").status_code == 400


def test_demo_account_bridge_limit(client):
    demo = {"X-User-Id": "demo-user", "X-User-Email": DEMO_EMAIL}
    assert _create(client, demo).status_code == 201
    assert _create(client, demo).status_code == 201

    third = _create(client, demo)
    assert third.status_code == 403
    assert "bridge limit" in third.json()["error"].lower()

    for _ in range(3):
        assert _create(client, OWNER).status_code == 201


def test_email_already_registered_to_another_user(client):
    assert _create(client, {"X-User-Id": "alice", "X-User-Email": "shared@example.com"}).status_code == 201

    resp = _create(client, {"X-User-Id": "mallory", "X-User-Email": "Shared@example.com"})
    assert resp.status_code == 400
    assert "already registered" in resp.json()["detail"]

    # The rejected caller was not registered; retrying without the email works.
    assert _create(client, {"X-User-Id": "mallory"}).status_code == 201


def test_demo_account_method_and_endpoint_limits(client):
    demo = {"X-User-Id": "demo-user", "X-User-Email": DEMO_EMAIL}
    resp = _create(client, demo, endpoints=[{"method": "DELETE", "path": "/x"}])
    assert resp.status_code == 403
    assert "DELETE" in resp.json()["error"]

    too_many = [{"method": "GET", "path": f"/r{i}"} for i in range(6)]
    assert _create(client, demo, endpoints=too_many).status_code == 403

    bridge = _create(client, demo, endpoints=too_many[:5]).json()
    extra = client.post(f"/api/bridges/{bridge['id']}/endpoints", json={"method": "GET", "path": "/r9"}, headers=demo)
    assert extra.status_code == 403


def test_add_endpoint_rejects_duplicates(client):
    bridge = _create(client, OWNER).json()
    url = f"/api/bridges/{bridge['id']}/endpoints"
    assert client.post(url, json={"method": "GET", "path": "/a"}, headers=OWNER).status_code == 201
    assert client.post(url, json={"method": "GET", "path": "/a"}, headers=OWNER).status_code == 400


def test_update_bridge_settings(client, upstream):
    bridge = _create(client, OWNER, endpoints=[{"method": "GET", "path": "/users"}]).json()
    url = f"/api/bridges/{bridge['id']}"

    updated = client.patch(
        url,
        json={"baseUrl": "https://v2.example.com", "authentication": {"type": "bearer", "token": "new"}},
        headers=OWNER,
    ).json()
    assert updated["baseUrl"] == "https://v2.example.com"
    assert updated["name"] == "API"
    assert updated["authentication"] == {"type": "bearer", "token": "new"}

    client.get(f"/mcp/{bridge['slug']}/users")
    assert str(upstream.requests[-1].url) == "https://v2.example.com/users"
    assert upstream.requests[-1].headers["authorization"] == "Bearer new"

    assert client.patch(url, json={"authRequired": True}, headers=OWNER).status_code == 400
    assert client.patch(url, json={"baseUrl": "nope"}, headers=OWNER).status_code == 422
    assert client.patch(url, json={"name": "x"}, headers={"X-User-Id": "other"}).status_code == 403


def test_start_stop(client):
    bridge = _create(client, OWNER).json()
    assert client.post(f"/api/bridges/{bridge['id']}/stop", headers=OWNER).json()["enabled"] is False
    assert client.post(f"/api/bridges/{bridge['id']}/start", headers=OWNER).json()["enabled"] is True
    assert client.post(f"/api/bridges/{bridge['id']}/stop", headers={"X-User-Id": "other"}).status_code == 403


def test_import_returns_envelope_without_touching_bridges(client):
    bridge = _create(client, OWNER, endpoints=[{"method": "GET", "path": "/keep"}]).json()

    resp = client.post("/api/openapi/import", json={"content": json.dumps(OPENAPI_DOC)})
    assert resp.status_code == 200
    envelope = resp.json()
    assert envelope["success"] is True
    assert len(envelope["data"]["endpoints"]) == 2

    raw_yaml = "openapi: 3.0.0\ninfo: {title: T, version: '1'}\nservers: [{url: 'https://t.example.com'}]\npaths: {}\n"
    resp = client.post("/api/openapi/import", content=raw_yaml, headers={"Content-Type": "application/yaml"})
    assert resp.json()["success"] is True

    bad = client.post("/api/openapi/import", json={"content": "{broken"})
    assert bad.status_code == 400
    assert bad.json()["success"] is False
    assert bad.json()["error"]

    unchanged = client.get(f"/api/bridges/{bridge['id']}", headers=OWNER).json()
    assert [e["path"] for e in unchanged["endpoints"]] == ["/keep"]


def test_import_of_pasted_url_fetches_the_document(client, upstream):
    upstream.responder = lambda request: httpx.Response(200, json=OPENAPI_DOC)

    resp = client.post("/api/openapi/import", json={"content": "  https://docs.example.com/openapi.json\n"})

    assert resp.status_code == 200
    assert len(resp.json()["data"]["endpoints"]) == 2
    assert str(upstream.requests[-1].url) == "https://docs.example.com/openapi.json"


def test_confirmed_import_replaces_definitions_wholesale(client):
    bridge = _create(client, OWNER, endpoints=[{"method": "GET", "path": "/keep"}]).json()
    data = client.post("/api/openapi/import", json={"content": json.dumps(OPENAPI_DOC)}).json()["data"]

    resp = client.post(f"/api/bridges/{bridge['id']}/openapi", json=data, headers=OWNER)
    assert resp.status_code == 200
    replaced = resp.json()
    assert sorted(e["path"] for e in replaced["endpoints"]) == ["/orders", "/orders/{orderId}"]
    assert len(replaced["mcpTools"]) == 2
    assert [p["name"] for p in replaced["mcpPrompts"]] == ["orders_operations"]
    assert replaced["mcpResources"][0]["uri"] == "openapi://spec/full"

    tools = client.post(
        f"/mcp/{bridge['slug']}", json={"jsonrpc": "2.0", "method": "tools/list", "id": 1}
    ).json()["result"]["tools"]
    assert sorted(t["name"] for t in tools) == ["get_orders_list", "get_orders_read"]


def test_health(client):
    assert client.get("/health").json()["status"] == "ok"


def test_logs_are_written_on_shutdown(app):
    with TestClient(app) as client:
        bridge = _create(client, OWNER, endpoints=[{"method": "GET", "path": "/users"}]).json()
        client.get(f"/mcp/{bridge['slug']}/users")
        client.get(f"/mcp/{bridge['slug']}/nothing-here")

    # Shutdown drained the queue.
    assert app.state.audit_sink.pending == 0
    assert len(app.state.audit_sink.recent(bridge["id"])) == 2

    with TestClient(app) as client:
        logs = client.get(f"/api/bridges/{bridge['id']}/logs", headers=OWNER).json()

    assert len(logs) == 2
    by_resource = {entry["resource"]: entry for entry in logs}
    assert by_resource["GET /users"]["success"] is True
    assert by_resource["GET /users"]["metadata"]["status"] == 200
    assert by_resource["GET /nothing-here"]["error"] == "Endpoint not found"
