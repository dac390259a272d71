from __future__ import annotations
import asyncio, os, time
from typing import Awaitable, Callable, Optional
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from outreach.bus import EventBus
from outreach.config import Settings
from outreach.channels.base import GatewayClient
from outreach.channels.bluebubbles import BlueBubblesClient
from outreach.core.addressing import normalize_phone
from outreach.core.broadcast import BatchScheduler
from outreach.core.contact_card import ContactCardSource, FileContactCard
from outreach.core.dispatcher import Dispatcher
from outreach.core.errors import SendValidationError
from outreach.core.fallback import FallbackPolicy
from outreach.core.optout import OptOutHandler
from outreach.core.reconciler import DeliveryReconciler
from outreach.domain.models import (
    BroadcastReport, DispatchResult, EventType, Member, Message, Recipient, SendRequest, WebhookEnvelope,
)
from outreach.observability.logging import get_logger
from outreach.persistence.repo import MessageStore

log = get_logger("service")

Sleep = Callable[[float], Awaitable[None]]

class OutreachService:
    """Single authority: owns the gateway client, the store, dispatch and broadcast runs.

    External access: HTTP API, gateway webhook and the WS event stream.
    """
    def __init__(
        self,
        settings: Settings,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession],
        client: GatewayClient | None = None,
        contact_card: ContactCardSource | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.engine = engine
        self.session_factory = session_factory

        self.bus = EventBus()
        self.client = client or BlueBubblesClient(settings)
        fallback = FallbackPolicy(
            self.client,
            primary_service=settings.primary_service,
            secondary_service=settings.secondary_service,
            settle_s=settings.fallback_settle_s,
            sleep=sleep,
        )
        self.dispatcher = Dispatcher(settings, self.client, session_factory, fallback=fallback)
        self.optout = OptOutHandler(settings, session_factory, self.dispatcher)
        self.reconciler = DeliveryReconciler(settings, session_factory, bus=self.bus, optout=self.optout)
        self.scheduler = BatchScheduler(settings, self.dispatcher, bus=self.bus, sleep=sleep, clock=clock)
        self.contact_card = contact_card or FileContactCard(settings.contact_card_path)

        self._run_tasks: dict[str, asyncio.Task] = {}

    async def start(self) -> None:
        os.makedirs(self.settings.data_dir, exist_ok=True)
        log.info("service_started", instance_id=self.settings.instance_id, gateway=self.settings.gateway_host)

    async def stop(self) -> None:
        for task in list(self._run_tasks.values()):
            task.cancel()
        if self._run_tasks:
            await asyncio.gather(*self._run_tasks.values(), return_exceptions=True)
        await self.client.aclose()

    # ---------- single sends ----------

    async def send(self, req: SendRequest) -> DispatchResult:
        result = await self.dispatcher.send(req)
        if result.ok:
            await self.bus.emit(EventType.message_status, {
                "guid": result.guid,
                "status": "sending" if result.note else "sent",
                "member_id": req.member_id,
                "transport": result.transport.value,
            })
        return result

    # ---------- webhook ----------

    async def ingest_webhook(self, envelope: WebhookEnvelope) -> str:
        return await self.reconciler.apply(envelope)

    # ---------- history & directory ----------

    async def list_messages(self, member_id: str, limit: int = 500) -> list[Message]:
        async with self.session_factory() as s:
            return await MessageStore(s).list_messages(member_id, limit=limit)

    async def upsert_member(self, member_id: str, name: str, phone: str) -> Member:
        member = Member(id=member_id, name=name, phone_e164=normalize_phone(phone))
        async with self.session_factory() as s:
            store = MessageStore(s)
            existing = await store.find_member_by_phone(member.phone_e164)
            if existing is not None and existing.id != member_id:
                raise SendValidationError(f"Phone {member.phone_e164} already belongs to another member")
            member = await store.upsert_member(member)
            await s.commit()
        return member

    # ---------- broadcast runs ----------

    def _spawn(self, report: BroadcastReport, coro: Awaitable[BroadcastReport]) -> None:
        async def runner() -> None:
            try:
                await coro
            except asyncio.CancelledError:
                log.warning("broadcast_cancelled", broadcast_id=report.broadcast_id)
                raise
            except Exception as e:
                log.exception("broadcast_crashed", broadcast_id=report.broadcast_id, err=str(e))
                report.status = "completed"
            finally:
                self._run_tasks.pop(report.broadcast_id, None)

        self._run_tasks[report.broadcast_id] = asyncio.create_task(runner())

    def start_broadcast(self, message: str, recipients: list[Recipient]) -> BroadcastReport:
        if not message or not message.strip():
            raise SendValidationError("Message is required")
        if not recipients:
            raise SendValidationError("Recipients are required")
        report = self.scheduler.open_report(len(recipients))
        self._spawn(report, self.scheduler.send_broadcast(message, recipients, report=report))
        log.info("broadcast_accepted", broadcast_id=report.broadcast_id, total=report.total)
        return report

    def start_intro(self, recipients: list[Recipient], message: Optional[str] = None) -> BroadcastReport:
        """Raises ContactCardUnavailable before anything is sent."""
        if not recipients:
            raise SendValidationError("Recipients are required")
        card = self.contact_card.load()
        text = message or self.settings.intro_message.replace("{org}", self.settings.organization_name)
        report = self.scheduler.open_report(len(recipients))
        self._spawn(report, self.scheduler.send_intro(recipients, text, card, report=report))
        log.info("intro_accepted", broadcast_id=report.broadcast_id, total=report.total, card=card.filename)
        return report

    def get_report(self, broadcast_id: str) -> Optional[BroadcastReport]:
        return self.scheduler.get_report(broadcast_id)
