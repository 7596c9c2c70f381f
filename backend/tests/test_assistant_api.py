"""API tests for the assistant and fleet routes."""
from __future__ import annotations

import os
import sys
from pathlib import Path
from types import SimpleNamespace

from fastapi.testclient import TestClient


TMP = Path(__file__).resolve().parent / ".tmp_assistant_api"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["OPENAI_API_KEY"] = ""
os.environ["OPENAI_BASE_URL"] = ""
os.environ["GOOGLE_MAPS_API_KEY"] = ""
os.environ["AUTH_ENABLED"] = "false"
os.environ["DEFAULT_ORG_ID"] = "org-api"
os.environ["DISPATCH_DB_PATH"] = str(TMP / "dispatch.db")

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from dispatch_copilot.core.auth import DispatchRole, TokenGrant, parse_token_grants  # noqa: E402
from dispatch_copilot.core.config import Settings, get_settings  # noqa: E402
from dispatch_copilot.main import app  # noqa: E402
from dispatch_copilot.services.dispatch_assistant import DispatchAssistant  # noqa: E402
from dispatch_copilot.services.dispatch_store import DispatchStore  # noqa: E402
from dispatch_copilot.services.dispatch_tools import DispatchToolExecutor  # noqa: E402
from dispatch_copilot.services.runtime import get_dispatch_assistant, get_vehicle_locator  # noqa: E402
from dispatch_copilot.services.vehicle_locator import VehicleLocator  # noqa: E402


get_settings.cache_clear()
store = DispatchStore(str(TMP / "dispatch.db"))
store.reset_org("org-api")
store.insert_load("org-api", {"reference": "LD-2025-4404", "origin": "Sacramento, CA", "destination": "Reno, NV"})
store.insert_driver("org-api", {"full_name": "Maria Lopez"})
store.upsert_vehicle_row(
    "motive_vehicle_locations_current",
    "org-api",
    {"motive_vehicle_id": "880100", "vehicle_number": "2203", "located_at": "2025-06-01T10:00:00+00:00"},
)


class _EchoClient:
    """Answers every request with a fixed sentence and records what it saw."""

    def __init__(self):
        self.requests = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    async def _create(self, **kwargs):
        self.requests.append(kwargs)
        message = SimpleNamespace(content="LD-2025-4404 is available.", tool_calls=None)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


echo = _EchoClient()
locator = VehicleLocator(store)
assistant = DispatchAssistant(
    store,
    executor=DispatchToolExecutor(store, locator=locator),
    client=echo,
    settings=Settings(openai_api_key="test-key"),
)
app.dependency_overrides[get_dispatch_assistant] = lambda: assistant
app.dependency_overrides[get_vehicle_locator] = lambda: locator

client = TestClient(app)


def test_root_and_health():
    assert client.get("/health").json() == {"status": "healthy"}
    assert client.get("/").json()["endpoints"]["assistant"] == "/assistant"


def test_assistant_query_returns_camel_case_reply():
    response = client.post(
        "/assistant/query",
        json={
            "message": "is 4404 still open?",
            "conversationState": {
                "conversationHistory": [
                    {"role": "user", "content": "hi"},
                    {"role": "assistant", "content": "Hello! How can I help?"},
                ],
                "mode": None,
            },
        },
        headers={"X-User-ID": "dispatcher-1", "X-Org-ID": "org-api"},
    )
    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["usedAI"] is True
    assert payload["message"] == "LD-2025-4404 is available."
    assert [item["role"] for item in payload["conversationHistory"]] == ["user", "assistant", "user", "assistant"]
    assert "org-api" in echo.requests[-1]["messages"][0]["content"]


def test_assistant_query_validates_body():
    assert client.post("/assistant/query", json={"message": ""}).status_code == 422
    bad_history = client.post(
        "/assistant/query",
        json={"message": "hi", "conversationState": {"conversationHistory": [{"role": "tool", "content": "{}"}]}},
    )
    assert bad_history.status_code == 422


def test_fleet_viewer_can_read_trucks_but_not_drive_the_assistant():
    viewer = {"X-Actor-Role": "fleet_viewer"}
    assert client.post("/assistant/query", json={"message": "hi"}, headers=viewer).status_code == 403
    assert client.get("/fleet/locate", params={"q": "truck 2203"}, headers=viewer).status_code == 200
    assert client.get("/assistant/tools", headers={"X-Actor-Role": "billing"}).status_code == 400


def test_tool_catalogue_route():
    payload = client.get("/assistant/tools").json()
    assert payload["count"] == 8
    assert payload["org_id"] == "org-api"


def test_fleet_routes():
    located = client.get("/fleet/locate", params={"q": "where is truck 2203"}).json()
    assert located["found"] is True
    assert located["vehicle"]["provider"] == "motive"

    missing = client.get("/fleet/locate", params={"q": "truck 9999"}).json()
    assert missing["found"] is False
    assert missing["reason"] == "NOT_FOUND"

    latest = client.get("/fleet/latest", params={"provider": "all", "limit": 5}).json()
    assert latest["count"] == 1
    assert client.get("/fleet/latest", params={"provider": "geotab"}).status_code == 400
    assert client.get("/fleet/latest", params={"limit": 500}).status_code == 422


def test_bearer_token_scopes_the_organization(monkeypatch):
    monkeypatch.setenv("AUTH_ENABLED", "true")
    monkeypatch.setenv("ORG_TOKENS", "secret-token:org-api")
    get_settings.cache_clear()
    try:
        assert client.get("/assistant/tools").status_code == 401
        assert client.get("/assistant/tools", headers={"Authorization": "Bearer wrong"}).status_code == 403
        mismatch = client.get(
            "/assistant/tools",
            headers={"Authorization": "Bearer secret-token", "X-Org-ID": "org-other"},
        )
        assert mismatch.status_code == 403
        ok = client.get("/assistant/tools", headers={"Authorization": "Bearer secret-token"})
        assert ok.status_code == 200
        assert ok.json()["org_id"] == "org-api"
    finally:
        monkeypatch.undo()
        get_settings.cache_clear()


def test_token_can_bind_the_acting_user_and_role(monkeypatch):
    monkeypatch.setenv("AUTH_ENABLED", "true")
    monkeypatch.setenv("ORG_TOKENS", "dispatch-token:org-api:dispatcher-9, viewer-token:org-api::fleet_viewer")
    get_settings.cache_clear()
    try:
        bound = {"Authorization": "Bearer dispatch-token"}
        response = client.post("/assistant/query", json={"message": "hi"}, headers=bound)
        assert response.status_code == 200
        assert "dispatcher-9" in echo.requests[-1]["messages"][0]["content"]

        spoofed = client.post(
            "/assistant/query",
            json={"message": "hi"},
            headers={**bound, "X-User-ID": "someone-else"},
        )
        assert spoofed.status_code == 403

        viewer = {"Authorization": "Bearer viewer-token"}
        assert client.post("/assistant/query", json={"message": "hi"}, headers=viewer).status_code == 403
        assert client.get("/fleet/latest", headers=viewer).status_code == 200
        escalated = client.get("/fleet/latest", headers={**viewer, "X-Actor-Role": "admin"})
        assert escalated.status_code == 403
    finally:
        monkeypatch.undo()
        get_settings.cache_clear()


def test_token_grant_parsing():
    grants = parse_token_grants("a:org-1, b:org-2:user-2:admin, broken, c:org-3::nobody, :org-4")
    assert set(grants) == {"a", "b"}
    assert grants["a"] == TokenGrant(org_id="org-1")
    assert grants["b"] == TokenGrant(org_id="org-2", user_id="user-2", role=DispatchRole.ADMIN)
