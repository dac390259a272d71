import pytest

from conftest import all_messages, error, form_field, ok
from outreach.channels.base import AttachmentPayload, HardFailure, TextPayload
from outreach.domain.models import AttachmentSend, TextSend, Transport

ATT = "/api/v1/message/attachment"
CHAT_NEW = "/api/v1/chat/new"

def _attachment():
    return AttachmentSend(routing="+15551234567", member_id="m1", data=b"img", filename="a.png", mime_type="image/png")

@pytest.mark.asyncio
async def test_attachment_falls_back_once(dispatcher, gateway, clock, session_factory):
    gateway.reply(ATT, error(500, "iMessage not available"), ok("att-sms-1"))
    gateway.reply(CHAT_NEW, ok("SMS;-;+15551234567"))

    res = await dispatcher.send(_attachment())

    assert res.ok and res.guid == "att-sms-1"
    assert res.transport is Transport.secondary
    assert res.chat_guid == "SMS;-;+15551234567"
    assert len(gateway.calls(CHAT_NEW)) == 1
    first, second = gateway.calls(ATT)
    assert form_field(first, "chatGuid") == "iMessage;-;+15551234567"
    assert form_field(second, "chatGuid") == "SMS;-;+15551234567"
    # same correlation token on both attempts
    assert form_field(first, "tempGuid") == form_field(second, "tempGuid")
    assert clock.sleeps == [2.0]
    rows = await all_messages(session_factory)
    assert [r.guid for r in rows] == ["att-sms-1"]

@pytest.mark.asyncio
async def test_secondary_chat_is_synthesized_when_gateway_gives_none(dispatcher, gateway):
    gateway.reply(ATT, error(500), ok("att-2"))
    gateway.reply(CHAT_NEW, error(500, "cannot create"))
    res = await dispatcher.send(_attachment())
    assert res.ok
    assert form_field(gateway.calls(ATT)[1], "chatGuid") == "SMS;-;+15551234567"

@pytest.mark.asyncio
async def test_failed_fallback_is_final(dispatcher, gateway, session_factory):
    gateway.reply(ATT, error(500, "still broken"))
    res = await dispatcher.send(_attachment())
    assert not res.ok and res.status_code == 500 and res.transport is Transport.secondary
    assert len(gateway.calls(CHAT_NEW)) == 1
    assert len(gateway.calls(ATT)) == 2
    assert await all_messages(session_factory) == []

@pytest.mark.asyncio
async def test_client_errors_do_not_fall_back(dispatcher, gateway):
    gateway.reply(ATT, error(400, "bad file"))
    res = await dispatcher.send(_attachment())
    assert not res.ok and res.status_code == 400
    assert gateway.calls(CHAT_NEW) == []

@pytest.mark.asyncio
async def test_text_never_falls_back(dispatcher, gateway):
    gateway.reply("/api/v1/message/text", error(500))
    res = await dispatcher.send(TextSend(routing="+15551234567", body="hi"))
    assert not res.ok
    assert gateway.calls(CHAT_NEW) == []

@pytest.mark.asyncio
async def test_applies_only_to_primary_attachments(dispatcher):
    policy = dispatcher.fallback
    boom = HardFailure(reason="x", status_code=500)
    assert policy.applies(AttachmentPayload(chat_guid="iMessage;-;+1", data=b"x", filename="f"), boom)
    assert not policy.applies(AttachmentPayload(chat_guid="SMS;-;+1", data=b"x", filename="f"), boom)
    assert not policy.applies(TextPayload(chat_guid="iMessage;-;+1", message="x"), boom)
    assert not policy.applies(AttachmentPayload(chat_guid="iMessage;-;+1", data=b"x", filename="f"),
                              HardFailure(reason="x"))
