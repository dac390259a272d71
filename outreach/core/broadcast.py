"""Sequential, rate-limited sending to many recipients."""
from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional

from outreach.bus import EventBus
from outreach.config import Settings
from outreach.core.contact_card import ContactCard
from outreach.core.dispatcher import Dispatcher
from outreach.core.errors import SendValidationError
from outreach.domain.models import (
    AttachmentSend, BroadcastReport, DispatchResult, EventType, Recipient, RecipientOutcome, TextSend,
)
from outreach.observability import metrics
from outreach.observability.logging import bind_broadcast_id, get_logger

log = get_logger("broadcast")

Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]
SendOne = Callable[[Recipient], Awaitable[DispatchResult]]
Progress = Callable[[BroadcastReport], Awaitable[None]]


@dataclass(frozen=True)
class Pacing:
    batch_size: int = 5
    min_interval_s: float = 6.0
    batch_pause_s: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "Pacing":
        return cls(
            batch_size=max(1, settings.batch_size),
            min_interval_s=settings.min_interval_s,
            batch_pause_s=settings.batch_pause_s,
        )

    def delay_after(self, index: int, total: int) -> float:
        """Gap between send `index` and the next one.

        The last send of a batch is followed by the batch pause instead of the
        interval; the final send of the run by nothing.
        """
        if index >= total - 1:
            return 0.0
        if (index + 1) % self.batch_size == 0:
            return self.batch_pause_s
        return self.min_interval_s

    def offsets(self, total: int) -> list[float]:
        """Start offset of every send, relative to the first one."""
        out: list[float] = []
        at = 0.0
        for i in range(total):
            out.append(at)
            at += self.delay_after(i, total)
        return out


def new_broadcast_id() -> str:
    return f"bc_{uuid.uuid4().hex[:12]}"


class BatchScheduler:
    """Runs sends one at a time on a fixed schedule.

    Each send starts at least the pacing gap after the previous send started;
    time spent inside a send counts toward that gap, but a late send never
    lets the next one follow sooner than the gap. Per-recipient failures of
    any kind are recorded and the run moves on.
    """

    def __init__(
        self,
        settings: Settings,
        dispatcher: Dispatcher,
        bus: EventBus | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
    ):
        self.settings = settings
        self.dispatcher = dispatcher
        self.bus = bus
        self.pacing = Pacing.from_settings(settings)
        self._sleep = sleep
        self._clock = clock
        self.reports: dict[str, BroadcastReport] = {}

    def open_report(self, total: int) -> BroadcastReport:
        report = BroadcastReport(broadcast_id=new_broadcast_id(), total=total)
        self.reports[report.broadcast_id] = report
        return report

    def get_report(self, broadcast_id: str) -> Optional[BroadcastReport]:
        return self.reports.get(broadcast_id)

    async def _publish(self, type: EventType, report: BroadcastReport) -> None:
        if self.bus is None:
            return
        await self.bus.emit(type, {
            "broadcast_id": report.broadcast_id,
            "sent": report.sent,
            "failed": report.failed_count,
            "total": report.total,
        })

    def _record(self, report: BroadcastReport, outcome: RecipientOutcome) -> None:
        report.outcomes.append(outcome)
        if outcome.ok:
            report.sent += 1
        else:
            report.failed.append(outcome)
        metrics.broadcast_recipients.labels(outcome="sent" if outcome.ok else "failed").inc()

    async def _attempt(self, recipient: Recipient, send_one: SendOne) -> RecipientOutcome:
        base = {"name": recipient.name, "phone": recipient.phone}
        try:
            result = await send_one(recipient)
        except SendValidationError as e:
            return RecipientOutcome(ok=False, error=e.message, **base)
        except Exception as e:
            log.exception("recipient_send_crashed", member_id=recipient.member_id, err=str(e))
            return RecipientOutcome(ok=False, error=str(e) or "Failed to send", **base)
        if not result.ok:
            return RecipientOutcome(ok=False, error=result.error or "Unknown error", **base)
        return RecipientOutcome(ok=True, guid=result.guid, note=result.note, **base)

    async def run(
        self,
        recipients: list[Recipient],
        send_one: SendOne,
        report: Optional[BroadcastReport] = None,
        on_progress: Optional[Progress] = None,
    ) -> BroadcastReport:
        report = report or self.open_report(len(recipients))
        bind_broadcast_id(report.broadcast_id)
        try:
            valid: list[Recipient] = []
            for r in recipients:
                if r.phone and r.phone.strip():
                    valid.append(r)
                else:
                    self._record(report, RecipientOutcome(name=r.name, phone=r.phone, ok=False, error="Missing phone number"))

            offsets = self.pacing.offsets(len(valid))
            log.info("broadcast_started", total=report.total, valid=len(valid), planned_s=offsets[-1] if offsets else 0)
            last_start = self._clock()
            for i, recipient in enumerate(valid):
                if i:
                    wait = last_start + self.pacing.delay_after(i - 1, len(valid)) - self._clock()
                    if wait > 0:
                        await self._sleep(wait)
                last_start = self._clock()
                outcome = await self._attempt(recipient, send_one)
                self._record(report, outcome)
                if outcome.ok:
                    log.info("recipient_sent", index=i + 1, of=len(valid), guid=outcome.guid)
                else:
                    log.warning("recipient_failed", index=i + 1, of=len(valid), err=outcome.error)
                if on_progress is not None:
                    await on_progress(report)
                await self._publish(EventType.broadcast_progress, report)

            report.status = "completed"
            report.finished_at = datetime.utcnow()
            log.info("broadcast_completed", sent=report.sent, failed=report.failed_count, total=report.total)
            await self._publish(EventType.broadcast_completed, report)
            return report
        finally:
            bind_broadcast_id(None)

    async def send_broadcast(
        self,
        message: str,
        recipients: list[Recipient],
        report: Optional[BroadcastReport] = None,
        on_progress: Optional[Progress] = None,
    ) -> BroadcastReport:
        async def send_one(r: Recipient) -> DispatchResult:
            return await self.dispatcher.send(TextSend(routing=r.phone, member_id=r.member_id, body=message))

        return await self.run(recipients, send_one, report=report, on_progress=on_progress)

    async def send_intro(
        self,
        recipients: list[Recipient],
        intro_text: str,
        contact_card: ContactCard,
        report: Optional[BroadcastReport] = None,
        on_progress: Optional[Progress] = None,
    ) -> BroadcastReport:
        """Intro text followed by the contact card, per recipient."""

        async def send_one(r: Recipient) -> DispatchResult:
            text = await self.dispatcher.send(TextSend(routing=r.phone, member_id=r.member_id, body=intro_text))
            if not text.ok:
                return text
            await self._sleep(self.settings.intro_gap_s)
            card = await self.dispatcher.send(AttachmentSend(
                routing=r.phone,
                member_id=r.member_id,
                data=contact_card.data,
                filename=contact_card.filename,
                mime_type=contact_card.mime_type,
                is_contact_card=True,
            ))
            if not card.ok:
                return card.model_copy(update={"error": f"contact card not sent: {card.error}"})
            return text.model_copy(update={"note": text.note or card.note})

        return await self.run(recipients, send_one, report=report, on_progress=on_progress)
