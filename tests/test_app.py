import time

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import error, ok
from outreach.channels.bluebubbles import BlueBubblesClient
from outreach.server.app import create_app

TEXT = "/api/v1/message/text"

async def no_sleep(seconds):
    return None

@pytest.fixture
def api(settings, gateway):
    client = BlueBubblesClient(settings, transport=httpx.MockTransport(gateway))
    app = create_app(settings, client=client, sleep=no_sleep)
    with TestClient(app) as c:
        yield c

def _wait_completed(api, broadcast_id):
    for _ in range(200):
        rep = api.get(f"/api/broadcasts/{broadcast_id}").json()
        if rep["status"] == "completed":
            return rep
        time.sleep(0.01)
    raise AssertionError("broadcast did not complete")

def test_healthz_and_metrics(api):
    assert api.get("/healthz").json()["ok"] is True
    assert "outreach_dispatches_total" in api.get("/metrics").text

def test_send_text_and_history(api, gateway):
    gateway.reply(TEXT, ok("abc-1"))
    api.put("/api/members/m1", json={"name": "Ada", "phone": "555-123-4567"})
    res = api.post("/api/messages", json={"kind": "text", "routing": "+15551234567", "member_id": "m1", "body": "Hi"})
    assert res.status_code == 200
    assert res.json()["guid"] == "abc-1"

    msgs = api.get("/api/members/m1/messages").json()["messages"]
    assert [(m["guid"], m["delivery_status"]) for m in msgs] == [("abc-1", "sent")]

def test_send_validation_is_400(api, gateway):
    res = api.post("/api/messages", json={"kind": "text", "routing": "+15551234567", "body": " "})
    assert res.status_code == 400 and res.json()["error"] == "Message is required"
    res = api.post("/api/messages", json={"kind": "fax", "routing": "+15551234567"})
    assert res.status_code == 400
    assert gateway.requests == []

def test_gateway_failure_status_is_passed_through(api, gateway):
    gateway.reply(TEXT, error(500, "Server Error"))
    res = api.post("/api/messages", json={"kind": "text", "routing": "+15551234567", "body": "Hi"})
    assert res.status_code == 500 and res.json()["ok"] is False

def test_attachment_upload(api, gateway):
    gateway.reply("/api/v1/message/attachment", ok("att-1"))
    res = api.post(
        "/api/attachments",
        data={"phone": "+15551234567", "message": "flyer"},
        files={"file": ("flyer.png", b"PNG", "image/png")},
    )
    assert res.status_code == 200 and res.json()["guid"] == "att-1"
    res = api.post("/api/attachments", data={"phone": "+15551234567"})
    assert res.status_code == 400 and res.json()["error"] == "No file provided"

def test_webhook_always_200(api, settings):
    res = api.post(settings.webhook_path, content=b"not json", headers={"content-type": "application/json"})
    assert res.status_code == 200 and res.json()["ok"] is False
    res = api.post(settings.webhook_path, json={"type": "chat-read-status-changed", "data": {}})
    assert res.status_code == 200 and res.json()["result"] == "ignored"

def test_webhook_updates_status(api, gateway, settings):
    gateway.reply(TEXT, ok("abc-1"))
    api.post("/api/messages", json={"kind": "text", "routing": "+15551234567", "member_id": "m1", "body": "Hi"})
    res = api.post(settings.webhook_path, json={"type": "message-delivered", "data": {"guid": "abc-1"}})
    assert res.json()["result"] == "applied"
    msgs = api.get("/api/members/m1/messages").json()["messages"]
    assert msgs[0]["delivery_status"] == "delivered"

def test_broadcast_runs_in_background(api, gateway):
    recipients = [{"member_id": f"m{i}", "name": f"R{i}", "phone": f"+1555000000{i}"} for i in range(3)]
    res = api.post("/api/broadcasts", json={"message": "Rally", "recipients": recipients})
    assert res.status_code == 202
    rep = _wait_completed(api, res.json()["broadcast_id"])
    assert rep["sent"] == 3 and rep["failed_count"] == 0
    assert rep["message"] == "Successfully sent 3 of 3 messages"
    assert len(gateway.calls(TEXT)) == 3

def test_broadcast_requires_recipients(api):
    assert api.post("/api/broadcasts", json={"message": "Rally", "recipients": []}).status_code == 400
    assert api.get("/api/broadcasts/bc_missing").status_code == 404

def test_intro_needs_contact_card(api, settings, tmp_path):
    body = {"recipients": [{"member_id": "m1", "name": "Ada", "phone": "+15551234567"}]}
    assert api.post("/api/intros", json=body).status_code == 503

    (tmp_path / "contact.vcf").write_bytes(b"BEGIN:VCARD\r\nFN:Test Org\r\nEND:VCARD\r\n")
    res = api.post("/api/intros", json=body)
    assert res.status_code == 202
    rep = _wait_completed(api, res.json()["broadcast_id"])
    assert rep["sent"] == 1

def test_event_stream(api):
    with api.websocket_connect("/ws") as ws:
        ws.send_json({"type": "req:subscribe", "id": "1", "payload": {"broadcast_id": "bc_x"}})
        res = ws.receive_json()
        assert res["type"] == "res:subscribe" and res["ok"] is True

        api.post("/api/messages", json={"kind": "text", "routing": "+15551234567", "body": "Hi"})
        evt = ws.receive_json()
        assert evt["type"] == "evt:message.status"
        assert evt["payload"]["status"] == "sent"
