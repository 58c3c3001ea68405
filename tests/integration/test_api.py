from __future__ import annotations

import asyncio

from fastapi.testclient import TestClient

from api.main import create_app
from models.schemas import ModificationType
from tenants.billing import WIDGET_BILLING_ERROR
from tools.notification_tools import NotificationError, NotificationTools

from conftest import ScriptedLLM, text_reply

ADMIN = {"X-Role": "ADMIN", "X-Operator-Id": "admin-1"}
AGENT = {"X-Role": "AGENT", "X-Operator-Id": "op-9"}


def _client(platform_factory, **kwargs) -> TestClient:
    return TestClient(create_app(platform_factory(**kwargs)))


def _activate(client: TestClient, tenant_id: str = "clinic-1", **config) -> None:
    resp = client.put(f"/api/v1/tenants/{tenant_id}/agent-config", json=config, headers=ADMIN)
    assert resp.status_code == 200, resp.text


def test_health_endpoint(platform_factory):
    resp = _client(platform_factory).get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["service"] == "caremax-agent-platform"
    assert data["llm_provider"] == "scripted"
    assert data["agent_versions"] == ["v1", "v2"]


def test_unknown_tenant_gets_billing_error(platform_factory):
    resp = _client(platform_factory).post("/api/v1/tenants/ghost/conversations", json={})
    assert resp.status_code == 402
    assert resp.json()["detail"] == {"error": WIDGET_BILLING_ERROR, "reason": "tenant_not_found"}


def test_conversation_turn_end_to_end(platform_factory):
    client = _client(platform_factory, llm=ScriptedLLM(replies=[text_reply("We open at 8am on weekdays.")]))
    _activate(client, agent_name="Ava")

    created = client.post("/api/v1/tenants/clinic-1/conversations", json={"user_id": "u1"})
    assert created.status_code == 200, created.text
    cid = created.json()["conversation_id"]
    assert created.json()["status"] == "open"

    turn = client.post(f"/api/v1/tenants/clinic-1/conversations/{cid}/messages", json={"content": "When do you open?"})
    assert turn.status_code == 200, turn.text
    assert turn.json()["assistant_content"] == "We open at 8am on weekdays."
    assert turn.json()["status"] == "open"

    history = client.get(f"/api/v1/tenants/clinic-1/conversations/{cid}/messages")
    assert [m["role"] for m in history.json()["messages"]] == ["user", "assistant"]
    assert client.get(f"/api/v1/tenants/clinic-1/conversations/{cid}/messages?limit=1").json()["messages"][0]["role"] == "assistant"

    metrics = client.get("/api/v1/tenants/clinic-1/analytics", headers=ADMIN)
    assert metrics.status_code == 200
    assert metrics.json()["activities"]["integrations"] == 1
    assert metrics.json()["input_tokens"] >= 10
    assert client.get("/api/v1/tenants/clinic-2/analytics", headers=ADMIN).json()["total_events"] == 0
    assert client.get("/api/v1/tenants/clinic-1/analytics", headers=AGENT).status_code == 403


def test_message_validation_and_missing_conversation(platform_factory):
    client = _client(platform_factory)
    _activate(client)
    empty = client.post("/api/v1/tenants/clinic-1/conversations/nope/messages", json={"content": "  "})
    assert empty.status_code == 400
    missing = client.post("/api/v1/tenants/clinic-1/conversations/nope/messages", json={"content": "hi"})
    assert missing.status_code == 404
    assert client.get("/api/v1/tenants/clinic-1/conversations/nope").status_code == 404


def test_staff_endpoints_require_a_role(platform_factory):
    client = _client(platform_factory)
    assert client.get("/api/v1/tenants/clinic-1/conversations").status_code == 403
    assert client.get("/api/v1/tenants/clinic-1/handoffs").status_code == 403
    assert client.put("/api/v1/tenants/clinic-1/agent-config", json={}, headers=AGENT).status_code == 403


def test_agent_config_validation(platform_factory):
    client = _client(platform_factory)
    bad_version = client.put("/api/v1/tenants/clinic-1/agent-config", json={"agent_version": "v9"}, headers=ADMIN)
    assert bad_version.status_code == 400
    bad_temp = client.put("/api/v1/tenants/clinic-1/agent-config", json={"temperature": 3.5}, headers=ADMIN)
    assert bad_temp.status_code == 400

    _activate(client, agent_version="V2", rag_enabled=True)
    config = client.get("/api/v1/tenants/clinic-1/agent-config", headers=AGENT).json()
    assert config["effective_agent_version"] == "v2"
    assert config["rag_enabled"] is True
    billing = client.get("/api/v1/tenants/clinic-1/billing", headers=AGENT).json()
    assert billing["is_active"] is True
    assert billing["billing_plan_id"] == "free"


def test_handoff_join_and_return_flow(platform_factory):
    with _client(platform_factory) as client:
        _activate(client)
        cid = client.post("/api/v1/tenants/clinic-1/conversations", json={}).json()["conversation_id"]
        base = f"/api/v1/tenants/clinic-1/conversations/{cid}"

        early_return = client.post(f"{base}/return-to-agent", headers=AGENT)
        assert early_return.status_code == 409

        turn = client.post(f"{base}/messages", json={"content": "I want to speak to a human"}).json()
        assert turn["request_handoff"] is True
        assert turn["status"] == "handoff_requested"

        queue = client.get("/api/v1/tenants/clinic-1/handoffs", headers=AGENT).json()
        assert [c["conversation_id"] for c in queue["waiting"]] == [cid]

        joined = client.post(f"{base}/join", headers=AGENT).json()
        assert joined["status"] == "human_joined"
        assert joined["joined_by"] == "op-9"

        silent = client.post(f"{base}/messages", json={"content": "are you there?"}).json()
        assert silent["assistant_message_id"] is None

        sent = client.post(f"{base}/agent-message", json={"content": "Hi, this is Sam from the care team."}, headers=AGENT)
        assert sent.status_code == 200
        assert sent.json()["role"] == "human_agent"
        assert client.post(f"{base}/agent-message", json={"content": " "}, headers=AGENT).status_code == 400

        reopened = client.post(f"{base}/return-to-agent", headers=AGENT).json()
        assert reopened["status"] == "open"
        assert reopened["joined_by"] is None


def test_whatsapp_send_failure_maps_to_bad_gateway(platform_factory):
    class FailingNotifications(NotificationTools):
        async def send_whatsapp(self, to, body, from_number=None):
            raise NotificationError("Twilio send failed (500)")

    client = _client(platform_factory, notifications=FailingNotifications(account_sid="", auth_token="", from_number=""))
    _activate(client)
    cid = client.post(
        "/api/v1/tenants/clinic-1/conversations", json={"external_user_id": "+15550003333", "channel": "whatsapp"}
    ).json()["conversation_id"]
    resp = client.post(f"/api/v1/tenants/clinic-1/conversations/{cid}/agent-message", json={"content": "Hello"}, headers=AGENT)
    assert resp.status_code == 502


def test_summary_endpoint_stores_user_scoped_summary(platform_factory):
    client = _client(platform_factory)
    _activate(client)
    cid = client.post("/api/v1/tenants/clinic-1/conversations", json={"user_id": "u1"}).json()["conversation_id"]
    resp = client.post(
        f"/api/v1/tenants/clinic-1/conversations/{cid}/summaries",
        json={"summary": "Patient asked about the flu shot schedule.", "key_topics": ["flu shot"]},
        headers=AGENT,
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["key_topics"] == ["flu shot"]
    assert resp.json()["user_id"] == "u1"
    assert resp.json()["scope"] == "user"


def test_notes_endpoints(platform_factory):
    platform = platform_factory()
    client = TestClient(create_app(platform))
    note = asyncio.run(platform.tools.notes.create_note("clinic-1", "c1", "Parking asked twice", patient_name="Ana"))
    listed = client.get("/api/v1/tenants/clinic-1/notes?patient_name=Ana", headers=AGENT).json()["notes"]
    assert [n["note_id"] for n in listed] == [note.note_id]

    reviewed = client.patch(f"/api/v1/tenants/clinic-1/notes/{note.note_id}", json={"status": "reviewed"}, headers=AGENT)
    assert reviewed.json()["reviewed_by"] == "op-9"
    assert client.get("/api/v1/tenants/clinic-1/notes?status=pending", headers=AGENT).json()["notes"] == []
    assert client.get(f"/api/v1/tenants/other/notes/{note.note_id}", headers=AGENT).status_code == 404
    assert client.delete(f"/api/v1/tenants/clinic-1/notes/{note.note_id}", headers=AGENT).json()["ok"] is True
    assert client.delete(f"/api/v1/tenants/clinic-1/notes/{note.note_id}", headers=AGENT).status_code == 404


def test_records_and_modification_requests(platform_factory):
    platform = platform_factory()
    client = TestClient(create_app(platform))
    assert client.post("/api/v1/tenants/clinic-1/records", json={"title": " ", "content": "x"}, headers=ADMIN).status_code == 400
    record = client.post(
        "/api/v1/tenants/clinic-1/records", json={"title": "Front desk", "content": "Call 555-0100"}, headers=ADMIN
    ).json()
    rid = record["record_id"]

    edit = asyncio.run(
        platform.tools.brain.create_modification_request("clinic-1", ModificationType.EDIT, rid, content="Call 555-0199")
    )
    pending = client.get("/api/v1/tenants/clinic-1/records/modification-requests", headers=AGENT).json()["requests"]
    assert [r["request_id"] for r in pending] == [edit.request_id]

    base = "/api/v1/tenants/clinic-1/records/modification-requests"
    assert client.post(f"{base}/{edit.request_id}/approve", headers=AGENT).status_code == 403
    assert client.post(f"{base}/{edit.request_id}/approve", headers=ADMIN).json()["ok"] is True
    assert client.post(f"{base}/{edit.request_id}/approve", headers=ADMIN).status_code == 409
    assert client.post(f"{base}/missing/approve", headers=ADMIN).status_code == 404
    assert client.post(f"{base}/{edit.request_id}/reject", headers=ADMIN).status_code == 404
    assert client.get(f"/api/v1/tenants/clinic-1/records/{rid}", headers=AGENT).json()["content"] == "Call 555-0199"

    updated = client.put(f"/api/v1/tenants/clinic-1/records/{rid}", json={"title": "Reception"}, headers=ADMIN)
    assert updated.json()["title"] == "Reception"
    assert client.delete(f"/api/v1/tenants/clinic-1/records/{rid}", headers=ADMIN).json()["deleted"] == rid
    assert client.get(f"/api/v1/tenants/clinic-1/records/{rid}", headers=AGENT).status_code == 404


def test_whatsapp_webhook(platform_factory):
    notifications = NotificationTools(account_sid="", auth_token="", from_number="")
    client = _client(platform_factory, llm=ScriptedLLM(replies=[text_reply("Hello from the clinic!")]), notifications=notifications)
    url = "/api/v1/tenants/clinic-1/webhooks/whatsapp"

    assert client.post(url, data={"From": "whatsapp:+15550004444", "Body": "hi"}).json() == {
        "ok": False,
        "error": WIDGET_BILLING_ERROR,
    }
    _activate(client)
    assert client.post(url, data={"Body": "hi"}).status_code == 400
    assert client.post(url, data={"From": "whatsapp:+15550004444", "Body": " "}).json()["ignored"] == "empty_body"

    resp = client.post(url, data={"From": "whatsapp:+15550004444", "Body": "hi"}).json()
    assert resp["ok"] is True
    assert resp["reply"] == "Hello from the clinic!"
    assert notifications.sent[-1]["to"] == "+15550004444"


def test_rate_limit_returns_429(platform_factory):
    client = _client(platform_factory, rate_limit_per_minute=2)
    assert client.get("/health").status_code == 200
    assert client.get("/health").status_code == 200
    assert client.get("/health").status_code == 429
