import time

import pytest
from fastapi.testclient import TestClient

from chatgate.agent.loop import ToolLoopEngine
from chatgate.web.app import create_app
from tests.fakes import ScriptedProvider, make_settings, text_round, tool_round


def _client(tmp_path, rounds=None, **overrides) -> TestClient:
    settings = make_settings(tmp_path, **overrides)
    app = create_app(settings, engine=ToolLoopEngine(ScriptedProvider(rounds), max_iterations=5))
    return TestClient(app)


def _wait_for_event(client: TestClient, channel_id: str, predicate, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        for evt in client.get(f"/api/channels/{channel_id}/events").json():
            if predicate(evt):
                return evt
        time.sleep(0.02)
    raise AssertionError("event not published in time")


def test_healthz(tmp_path) -> None:
    with _client(tmp_path) as client:
        body = client.get("/healthz").json()
        assert body["ok"] is True
        assert body["permission_mode"] == "interactive"


def test_message_runs_a_turn_and_publishes_status(tmp_path) -> None:
    with _client(tmp_path, [text_round("Hello from the agent")]) as client:
        res = client.post("/api/channels/c1/messages", json={"content": "hi"})
        assert res.status_code == 200
        assert res.json() == {"accepted": True, "channel_id": "c1", "routed": "turn"}

        done = _wait_for_event(
            client, "c1", lambda e: e["type"] == "status" and e["payload"]["kind"] == "done"
        )
        assert done["seq"] > 1
        segment = _wait_for_event(
            client, "c1", lambda e: e["type"] == "status" and e["payload"]["kind"] == "segment_end"
        )
        assert segment["payload"]["text"] == "Hello from the agent"

        status = client.get("/api/channels/c1/status").json()
        assert status["plan_state"] == "disabled"
        assert status["session_id"].startswith("ses_")


def test_permission_prompt_round_trip(tmp_path) -> None:
    rounds = [tool_round("Bash", {"command": "make"}), text_round("built")]
    with _client(tmp_path, rounds) as client:
        client.post("/api/channels/c1/messages", json={"content": "build it"})
        prompt = _wait_for_event(client, "c1", lambda e: e["type"] == "permission_prompt")
        rid = prompt["payload"]["request_id"]
        assert prompt["payload"]["actions"] == ["allow", "always", "deny", "comment"]

        busy = client.post("/api/channels/c1/messages", json={"content": "hurry up"})
        assert busy.status_code == 409

        res = client.post(f"/api/permissions/{rid}", json={"action": "deny"})
        assert res.status_code == 200
        _wait_for_event(client, "c1", lambda e: e["type"] == "permission_resolved")
        _wait_for_event(client, "c1", lambda e: e["type"] == "status" and e["payload"]["kind"] == "done")

        again = client.post(f"/api/permissions/{rid}", json={"action": "allow"})
        assert again.status_code == 410

        audit = client.get("/api/channels/c1/permissions").json()
        assert [row["status"] for row in audit] == ["denied"]


@pytest.mark.parametrize(
    "path, body",
    [
        ("/api/permissions/perm_missing", {"action": "allow"}),
        ("/api/asks/ask_missing", {"option": 0}),
        ("/api/plans/plan_missing", {"action": "accept"}),
    ],
)
def test_unknown_request_ids_are_gone(tmp_path, path, body) -> None:
    with _client(tmp_path) as client:
        assert client.post(path, json=body).status_code == 410


def test_invalid_payloads_are_rejected(tmp_path) -> None:
    with _client(tmp_path) as client:
        assert client.post("/api/permissions/perm_x", json={"action": "maybe"}).status_code == 422
        assert client.post("/api/asks/ask_x", json={}).status_code == 400
        assert client.post("/api/channels/c1/messages", json={"content": ""}).status_code == 422


def test_plan_mode_and_stop_commands(tmp_path) -> None:
    with _client(tmp_path) as client:
        res = client.post("/api/channels/c1/plan")
        assert res.json() == {"ok": True, "plan_state": "exploring"}
        assert client.post("/api/channels/c1/plan").json()["ok"] is False

        assert client.post("/api/channels/c1/stop").json() == {"stopped": False, "reason": "no active query"}

        assert client.post("/api/channels/c1/new").json() == {"ok": True, "channel_id": "c1"}
        assert client.get("/api/channels/c1/status").json()["plan_state"] == "disabled"


def test_token_guards_write_endpoints(tmp_path) -> None:
    with _client(tmp_path, auth_token="s3cret") as client:
        assert client.get("/healthz").status_code == 200
        assert client.post("/api/channels/c1/new").status_code == 401
        ok = client.post("/api/channels/c1/new", headers={"Authorization": "Bearer s3cret"})
        assert ok.status_code == 200


def test_channels_are_listed_by_recent_activity(tmp_path) -> None:
    with _client(tmp_path, [text_round("hi")]) as client:
        assert client.get("/api/channels").json() == []
        client.post("/api/channels/c1/messages", json={"content": "hello"})
        _wait_for_event(client, "c1", lambda e: e["type"] == "status" and e["payload"]["kind"] == "done")

        channels = client.get("/api/channels").json()
        assert [c["channel_id"] for c in channels] == ["c1"]
        assert channels[0]["engine_session_id"].startswith("ses_")
        assert channels[0]["last_message_preview"] == "hello"
