import pytest

from conftest import all_messages, error, form_field, ok
from outreach.core.broadcast import BatchScheduler, Pacing
from outreach.core.contact_card import ContactCard
from outreach.core.errors import SendValidationError
from outreach.domain.models import DispatchResult, Recipient

TEXT = "/api/v1/message/text"
ATT = "/api/v1/message/attachment"

def recipients(n):
    return [Recipient(member_id=f"m{i}", name=f"R{i}", phone=f"+1555000{i:04d}") for i in range(n)]

def test_pacing_offsets_for_twelve_recipients(settings):
    pacing = Pacing.from_settings(settings)
    assert pacing.min_interval_s == 6.0
    assert pacing.offsets(12) == [0, 6, 12, 18, 24, 54, 60, 66, 72, 78, 108, 114]

def test_pacing_edge_cases():
    p = Pacing(batch_size=5, min_interval_s=6.0, batch_pause_s=30.0)
    assert p.offsets(0) == []
    assert p.offsets(1) == [0]
    assert p.delay_after(4, 5) == 0.0
    assert p.delay_after(4, 6) == 30.0

@pytest.mark.asyncio
async def test_sends_start_on_schedule(settings, dispatcher, clock):
    scheduler = BatchScheduler(settings, dispatcher, sleep=clock.sleep, clock=clock)
    started: list[float] = []

    async def send_one(r):
        started.append(clock.now)
        return DispatchResult(ok=True, guid=f"g-{r.member_id}")

    report = await scheduler.run(recipients(12), send_one)
    assert started == [0, 6, 12, 18, 24, 54, 60, 66, 72, 78, 108, 114]
    # nothing after the final send
    assert sum(clock.sleeps) == 114
    assert report.status == "completed" and report.sent == 12 and report.failed == []

@pytest.mark.asyncio
async def test_send_time_counts_toward_gap(settings, dispatcher, clock):
    scheduler = BatchScheduler(settings, dispatcher, sleep=clock.sleep, clock=clock)

    async def send_one(r):
        clock.now += 2.5
        return DispatchResult(ok=True, guid="g")

    await scheduler.run(recipients(3), send_one)
    assert clock.sleeps == [3.5, 3.5]

@pytest.mark.asyncio
async def test_late_send_never_squeezes_the_next_gap(settings, dispatcher, clock):
    scheduler = BatchScheduler(settings, dispatcher, sleep=clock.sleep, clock=clock)
    started: list[float] = []
    durations = iter([11.0, 0.1, 0.1])

    async def send_one(r):
        started.append(clock.now)
        clock.now += next(durations)
        return DispatchResult(ok=True, guid="g")

    await scheduler.run(recipients(3), send_one)
    assert started[:2] == [0.0, 11.0]
    gaps = [b - a for a, b in zip(started, started[1:])]
    assert all(g >= 6.0 - 1e-9 for g in gaps)
    assert started[2] == pytest.approx(17.0)

@pytest.mark.asyncio
async def test_unexpected_error_is_recorded_and_run_continues(settings, dispatcher, clock):
    scheduler = BatchScheduler(settings, dispatcher, sleep=clock.sleep, clock=clock)

    async def send_one(r):
        if r.member_id == "m0":
            raise RuntimeError("gateway client closed")
        return DispatchResult(ok=True, guid="g")

    report = await scheduler.run(recipients(2), send_one)
    assert report.status == "completed" and report.sent == 1
    assert [f.error for f in report.failed] == ["gateway client closed"]

    async def blank_failure(r):
        raise RuntimeError()

    report = await scheduler.run(recipients(1), blank_failure)
    assert report.failed[0].error == "Failed to send"

@pytest.mark.asyncio
async def test_failures_are_recorded_and_run_continues(settings, dispatcher, clock):
    scheduler = BatchScheduler(settings, dispatcher, sleep=clock.sleep, clock=clock)
    rs = recipients(4) + [Recipient(member_id="mx", name="No Phone", phone="")]
    calls = []
    progress = []

    async def send_one(r):
        calls.append(r.member_id)
        if r.member_id == "m1":
            return DispatchResult(ok=False, error="Chat does not exist", status_code=400)
        if r.member_id == "m2":
            raise SendValidationError("Message is required")
        return DispatchResult(ok=True, guid="g")

    async def on_progress(rep):
        progress.append((rep.sent, rep.failed_count, rep.total))

    report = await scheduler.run(rs, send_one, on_progress=on_progress)
    assert calls == ["m0", "m1", "m2", "m3"]
    assert report.total == 5 and report.sent == 2
    assert sorted(f.error for f in report.failed) == ["Chat does not exist", "Message is required", "Missing phone number"]
    assert progress == [(1, 1, 5), (1, 2, 5), (1, 3, 5), (2, 3, 5)]
    assert report.summary() == "Successfully sent 2 of 5 messages"

@pytest.mark.asyncio
async def test_broadcast_through_dispatcher(settings, dispatcher, gateway, clock, session_factory):
    gateway.reply(TEXT, ok("g-1"), error(500, "nope"), ok("g-3"))
    scheduler = BatchScheduler(settings, dispatcher, sleep=clock.sleep, clock=clock)
    report = await scheduler.send_broadcast("Rally tonight", recipients(3))

    assert len(gateway.calls(TEXT)) == 3
    assert report.sent == 2 and report.failed_count == 1
    assert scheduler.get_report(report.broadcast_id) is report
    rows = await all_messages(session_factory)
    assert sorted(r.guid for r in rows) == ["g-1", "g-3"]

@pytest.mark.asyncio
async def test_intro_sends_text_then_card(settings, dispatcher, gateway, clock, session_factory):
    card = ContactCard(data=b"BEGIN:VCARD\r\nEND:VCARD\r\n", filename="org.vcf")
    scheduler = BatchScheduler(settings, dispatcher, sleep=clock.sleep, clock=clock)

    report = await scheduler.send_intro(recipients(2), "Hi from Test Org", card)

    assert [r.url.path for r in gateway.requests] == [TEXT, ATT, TEXT, ATT]
    assert form_field(gateway.requests[1], "name") == "org.vcf"
    # the card gap counts toward the interval before the next recipient
    assert clock.sleeps == [1.5, 4.5, 1.5]
    assert report.sent == 2
    rows = await all_messages(session_factory)
    assert len(rows) == 4
    assert sum(r.is_contact_card for r in rows) == 2

@pytest.mark.asyncio
async def test_intro_card_failure_marks_recipient_failed(settings, dispatcher, gateway, clock):
    gateway.reply(TEXT, ok("t-1"))
    gateway.reply(ATT, error(400, "bad card"))
    card = ContactCard(data=b"BEGIN:VCARD\r\nEND:VCARD\r\n", filename="org.vcf")
    scheduler = BatchScheduler(settings, dispatcher, sleep=clock.sleep, clock=clock)

    report = await scheduler.send_intro(recipients(1), "Hi", card)
    assert report.sent == 0
    assert report.failed[0].error == "contact card not sent: bad card"
