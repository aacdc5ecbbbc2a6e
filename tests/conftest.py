"""
Test configuration.

- The engine is built at import time from DATABASE_URL, so the in-memory sqlite
  URL is set before anything from mcpbridge is imported.
- Every test starts from empty tables.
- The target REST API is an httpx.MockTransport that records what it receives.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DEMO_ACCOUNT_EMAILS"] = "demo@contextlayer.app"

from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from mcpbridge.config import Settings
from mcpbridge.db.database import reset_db
from mcpbridge.main import create_app

DEMO_EMAIL = "demo@contextlayer.app"


@pytest.fixture(autouse=True)
def fresh_db():
    reset_db()
    yield


class Upstream:
    """Stand-in target API: records requests, answers with `responder`."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.responder: Callable[[httpx.Request], httpx.Response] = lambda request: httpx.Response(
            200, json={"path": request.url.path, "query": dict(request.url.params)}
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)


@pytest.fixture
def upstream() -> Upstream:
    return Upstream()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        retry_attempts=0,
        audit_batch_size=1000,
        audit_flush_interval=60.0,
        demo_account_emails=[DEMO_EMAIL],
    )


@pytest.fixture
def app(upstream, test_settings):
    return create_app(test_settings, upstream_transport=httpx.MockTransport(upstream))


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_bridge(client) -> Callable[..., Dict[str, Any]]:
    def _make(user_id: str = "user-1", email: Optional[str] = None, **fields: Any) -> Dict[str, Any]:
        payload = {
            "name": "Users API",
            "baseUrl": "https://api.example.com/v1",
            "authentication": {"type": "bearer", "token": "up-secret"},
            "endpoints": [
                {"method": "GET", "path": "/users", "description": "List users"},
            ],
        }
        payload.update(fields)
        headers = {"X-User-Id": user_id}
        if email:
            headers["X-User-Email"] = email
        resp = client.post("/api/bridges", json=payload, headers=headers)
        assert resp.status_code == 201, resp.text
        return resp.json()

    return _make

