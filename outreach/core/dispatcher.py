"""Single-send orchestration: validate, submit, fall back, persist."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from outreach.channels.base import (
    Acknowledged, AttachmentPayload, GatewayClient, GatewayPayload, HardFailure,
    ReactionPayload, SoftTimeout, TextPayload,
)
from outreach.config import Settings
from outreach.core.addressing import new_provisional_guid, resolve_chat_guid
from outreach.core.errors import SendValidationError, StoreConflict
from outreach.core.fallback import FallbackPolicy
from outreach.core.retry import retry_async
from outreach.domain.models import (
    ATTACHMENT_PLACEHOLDER, REACTION_CODES, AttachmentSend, DeliveryStatus, Direction,
    DispatchResult, Message, ReactionSend, ReplySend, SendRequest, TextSend, Transport,
)
from outreach.observability import metrics
from outreach.observability.logging import get_logger
from outreach.persistence.repo import MessageStore, gen_id

log = get_logger("dispatcher")

SOFT_TIMEOUT_NOTE = "still processing"


class Dispatcher:
    """Runs one logical send end to end.

    A request that reaches the gateway and is not rejected produces exactly one
    stored message (when it names a member), whether the gateway returned an id,
    returned none, or was still busy when the budget ran out. Rejected requests
    store nothing. Store failures are logged and never change what the caller
    is told: the message already left.
    """

    def __init__(
        self,
        settings: Settings,
        client: GatewayClient,
        session_factory: async_sessionmaker[AsyncSession],
        fallback: FallbackPolicy | None = None,
    ):
        self.settings = settings
        self.client = client
        self.session_factory = session_factory
        self.fallback = fallback or FallbackPolicy(
            client,
            primary_service=settings.primary_service,
            secondary_service=settings.secondary_service,
            settle_s=settings.fallback_settle_s,
        )

    async def send(self, req: SendRequest) -> DispatchResult:
        try:
            self.validate(req)
        except SendValidationError as e:
            metrics.dispatches.labels(kind=req.kind, outcome="invalid").inc()
            log.info("send_rejected", kind=req.kind, reason=e.message)
            raise

        chat_guid = resolve_chat_guid(req.routing.strip(), self.settings.primary_service)
        provisional = new_provisional_guid()
        payload = self._payload(req, chat_guid, provisional)
        log.info("send_started", kind=req.kind, chat_guid=chat_guid, member_id=req.member_id)

        outcome = await self.client.submit(payload)
        transport = Transport.primary
        if self.fallback.applies(payload, outcome):
            log.warning("primary_transport_failed", chat_guid=chat_guid, reason=outcome.reason)
            payload, outcome = await self.fallback.retry(payload)
            transport = Transport.secondary

        if isinstance(outcome, HardFailure):
            metrics.dispatches.labels(kind=req.kind, outcome="failed").inc()
            log.error("send_failed", kind=req.kind, chat_guid=payload.chat_guid, reason=outcome.reason)
            code = outcome.status_code if outcome.status_code and outcome.status_code >= 400 else 502
            return DispatchResult(
                ok=False,
                chat_guid=payload.chat_guid,
                transport=transport,
                error=outcome.reason,
                status_code=code,
            )

        durable = outcome.guid if isinstance(outcome, Acknowledged) else None
        guid = durable or provisional
        timed_out = isinstance(outcome, SoftTimeout)
        status = DeliveryStatus.sending if timed_out else DeliveryStatus.sent

        if req.member_id:
            await self._persist(req, payload.chat_guid, guid, status)

        metrics.dispatches.labels(kind=req.kind, outcome="timeout" if timed_out else "sent").inc()
        log.info("send_accepted", kind=req.kind, guid=guid, provisional=durable is None, transport=transport.value)
        return DispatchResult(
            ok=True,
            guid=guid,
            provisional=durable is None,
            chat_guid=payload.chat_guid,
            transport=transport,
            note=SOFT_TIMEOUT_NOTE if timed_out else None,
        )

    def validate(self, req: SendRequest) -> None:
        if not req.routing or not req.routing.strip():
            raise SendValidationError("Phone is required")
        if isinstance(req, TextSend):
            if not req.body or not req.body.strip():
                raise SendValidationError("Message is required")
        elif isinstance(req, ReplySend):
            if not req.body or not req.body.strip():
                raise SendValidationError("Message is required")
            if not req.target_guid:
                raise SendValidationError("Reply target message guid is required")
        elif isinstance(req, ReactionSend):
            if not req.target_guid:
                raise SendValidationError("Reaction target message guid is required")
            if req.reaction.lower() not in REACTION_CODES:
                raise SendValidationError(
                    f"Invalid reaction type: {req.reaction}. Must be one of: {', '.join(REACTION_CODES)}"
                )
        elif isinstance(req, AttachmentSend):
            if not req.data:
                raise SendValidationError("No file provided")
            if not req.filename:
                raise SendValidationError("Filename is required")
            if len(req.data) > self.settings.max_attachment_bytes:
                limit_mb = self.settings.max_attachment_bytes / 1024 / 1024
                raise SendValidationError(f"File too large. Maximum size is {limit_mb:.1f}MB")
        else:
            raise TypeError(f"unsupported send request: {type(req).__name__}")

    def _payload(self, req: SendRequest, chat_guid: str, temp_guid: str) -> GatewayPayload:
        if isinstance(req, TextSend):
            return TextPayload(chat_guid=chat_guid, message=req.body, temp_guid=temp_guid)
        if isinstance(req, ReplySend):
            return TextPayload(
                chat_guid=chat_guid, message=req.body, temp_guid=temp_guid,
                reply_to_guid=req.target_guid, part_index=req.part_index,
            )
        if isinstance(req, ReactionSend):
            return ReactionPayload(
                chat_guid=chat_guid, target_guid=req.target_guid,
                reaction=req.reaction.lower(), part_index=req.part_index,
            )
        if isinstance(req, AttachmentSend):
            return AttachmentPayload(
                chat_guid=chat_guid, data=req.data, filename=req.filename, mime_type=req.mime_type,
                caption=req.caption, temp_guid=temp_guid,
                reply_to_guid=req.reply_to_guid, part_index=req.part_index,
            )
        raise TypeError(f"unsupported send request: {type(req).__name__}")

    def _record(self, req: SendRequest, conversation_id: str, guid: str, status: DeliveryStatus) -> Message:
        msg = Message(
            id=gen_id("msg"),
            conversation_id=conversation_id,
            direction=Direction.outbound,
            delivery_status=status,
            guid=guid,
            sender_phone=req.routing.strip(),
            created_at=datetime.utcnow(),
        )
        if isinstance(req, TextSend):
            msg.body = req.body
        elif isinstance(req, ReplySend):
            msg.body = req.body
            msg.thread_originator_guid = req.target_guid
        elif isinstance(req, ReactionSend):
            msg.body = ""
            msg.associated_message_guid = req.target_guid
            msg.associated_message_type = REACTION_CODES[req.reaction.lower()]
        elif isinstance(req, AttachmentSend):
            msg.body = (req.caption or "").strip() or ATTACHMENT_PLACEHOLDER
            msg.has_attachments = True
            msg.is_contact_card = req.is_contact_card
            msg.thread_originator_guid = req.reply_to_guid
        return msg

    async def _persist(self, req: SendRequest, chat_guid: str, guid: str, status: DeliveryStatus) -> None:
        async def record_outbound() -> None:
            async with self.session_factory() as s:
                store = MessageStore(s)
                conv = await store.find_or_create_conversation(req.member_id, chat_identifier=chat_guid)
                msg = self._record(req, conv.id, guid, status)
                await store.insert_message(msg)
                await store.update_conversation_snapshot(conv.id, msg.body, msg.created_at)
                await s.commit()

        try:
            await retry_async(record_outbound)
        except (SQLAlchemyError, StoreConflict) as e:
            metrics.store_errors.labels(op="record_outbound").inc()
            log.exception("persist_failed", guid=guid, member_id=req.member_id, err=str(e))
