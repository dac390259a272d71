import asyncio

import httpx
import pytest

from conftest import body_of, error, form_field, ok, raising
from outreach.channels.base import (
    Acknowledged, AcknowledgedNoId, AttachmentPayload, HardFailure, ReactionPayload, SoftTimeout, TextPayload,
)
from outreach.channels.bluebubbles import BlueBubblesClient, parse_response

def test_parse_response_with_guid():
    assert parse_response(200, '{"status":200,"data":{"guid":"abc-1"}}') == Acknowledged(guid="abc-1")

def test_parse_response_without_guid_or_body():
    assert parse_response(200, '{"status":200,"data":{}}') == AcknowledgedNoId()
    assert parse_response(200, "") == AcknowledgedNoId()
    assert parse_response(200, "<html>ok</html>") == AcknowledgedNoId()

def test_parse_response_embedded_error_status():
    out = parse_response(200, '{"status":500,"message":"Server Error","error":{"message":"chat not found"}}')
    assert isinstance(out, HardFailure)
    assert out.reason == "chat not found"
    assert out.server_side

def test_parse_response_http_error_reasons():
    assert parse_response(400, '{"error":{"error":"bad chat"}}').reason == "bad chat"
    assert parse_response(401, '{"message":"Unauthorized"}').reason == "Unauthorized"
    out = parse_response(502, "upstream down")
    assert out.reason == "upstream down" and out.status_code == 502

@pytest.mark.asyncio
async def test_text_submit_wire_format(client, gateway):
    gateway.reply("/api/v1/message/text", ok("abc-1"))
    out = await client.submit(TextPayload(chat_guid="iMessage;-;+15551234567", message="hi", temp_guid="temp-1"))
    assert out == Acknowledged(guid="abc-1")
    req = gateway.requests[0]
    assert req.url.params["password"] == "s3cret"
    assert body_of(req) == {
        "chatGuid": "iMessage;-;+15551234567", "message": "hi", "method": "private-api", "tempGuid": "temp-1",
    }

@pytest.mark.asyncio
async def test_reply_and_reaction_wire_format(client, gateway):
    await client.submit(TextPayload(chat_guid="c", message="re", temp_guid="temp-2", reply_to_guid="abc-1", part_index=1))
    await client.submit(ReactionPayload(chat_guid="c", target_guid="abc-1", reaction="love"))
    reply, react = gateway.requests
    assert body_of(reply)["selectedMessageGuid"] == "abc-1" and body_of(reply)["partIndex"] == 1
    assert react.url.path == "/api/v1/message/react"
    assert body_of(react)["reaction"] == "love" and body_of(react)["selectedMessageGuid"] == "abc-1"

@pytest.mark.asyncio
async def test_attachment_multipart(client, gateway):
    payload = AttachmentPayload(chat_guid="iMessage;-;+1555", data=b"PNGDATA", filename="a.png",
                                mime_type="image/png", caption=" look ", temp_guid="temp-3")
    await client.submit(payload)
    req = gateway.calls("/api/v1/message/attachment")[0]
    assert form_field(req, "chatGuid") == "iMessage;-;+1555"
    assert form_field(req, "tempGuid") == "temp-3"
    assert form_field(req, "name") == "a.png"
    assert form_field(req, "message") == "look"
    assert b"PNGDATA" in req.content

@pytest.mark.asyncio
async def test_attachment_budget_is_longer(client, settings):
    text = TextPayload(chat_guid="c", message="x")
    att = AttachmentPayload(chat_guid="c", data=b"x", filename="f")
    assert client.budget_for(text) == settings.text_timeout_s
    assert client.budget_for(att) == settings.attachment_timeout_s

@pytest.mark.asyncio
async def test_read_timeout_is_soft(client, gateway):
    gateway.reply("/api/v1/message/text", raising(httpx.ReadTimeout))
    out = await client.submit(TextPayload(chat_guid="c", message="x"))
    assert isinstance(out, SoftTimeout)

@pytest.mark.asyncio
async def test_budget_exhaustion_is_soft(client, gateway):
    async def slow(request):
        await asyncio.sleep(1)
        return httpx.Response(200, json={"status": 200})
    gateway.reply("/api/v1/message/text", slow)
    out = await client.submit(TextPayload(chat_guid="c", message="x"), timeout_s=0.05)
    assert out == SoftTimeout(budget_s=0.05)

@pytest.mark.asyncio
async def test_connection_failure_is_hard(client, gateway):
    gateway.reply("/api/v1/message/text", raising(httpx.ConnectError))
    out = await client.submit(TextPayload(chat_guid="c", message="x"))
    assert isinstance(out, HardFailure)
    assert not out.server_side

@pytest.mark.asyncio
async def test_create_chat(client, gateway):
    gateway.reply("/api/v1/chat/new", ok("SMS;-;+15551234567"), error(500))
    assert await client.create_chat("+15551234567", "SMS") == "SMS;-;+15551234567"
    assert body_of(gateway.requests[0]) == {"addresses": ["+15551234567"], "service": "SMS", "method": "private-api"}
    assert await client.create_chat("+15551234567", "SMS") is None

@pytest.mark.asyncio
async def test_client_never_touches_store(settings):
    # no session factory is given at all
    c = BlueBubblesClient(settings, transport=httpx.MockTransport(lambda r: httpx.Response(500, text="x")))
    out = await c.submit(TextPayload(chat_guid="c", message="x"))
    await c.aclose()
    assert isinstance(out, HardFailure)
