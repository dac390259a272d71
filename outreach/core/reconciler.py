"""Applies gateway webhook events to stored messages."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from outreach.bus import EventBus
from outreach.config import Settings
from outreach.core.addressing import (
    address_from_chat_guid, is_provisional, normalize_phone, strip_part_prefix,
)
from outreach.core.errors import StoreConflict
from outreach.core.optout import OptOutHandler
from outreach.core.retry import retry_async
from outreach.domain.models import (
    ATTACHMENT_PLACEHOLDER, REACTION_CODES, DeliveryStatus, Direction, EventType,
    GatewayMessage, Member, Message, WebhookEnvelope,
)
from outreach.observability import metrics
from outreach.observability.logging import get_logger
from outreach.persistence.repo import MessageStore, gen_id

log = get_logger("reconciler")

T = TypeVar("T")

APPLIED = "applied"
DUPLICATE = "duplicate"
UNMATCHED = "unmatched"
NOOP = "noop"
LOGGED = "logged"
IGNORED = "ignored"
STORE_ERROR = "store_error"


def from_epoch_ms(value: Optional[int]) -> datetime:
    """Gateway timestamps are epoch milliseconds; missing means now."""
    if value is None:
        return datetime.utcnow()
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).replace(tzinfo=None)


def reaction_code(value: int | str | None) -> Optional[int]:
    if isinstance(value, int):
        return value if value >= 2000 else None
    if isinstance(value, str):
        return REACTION_CODES.get(value.strip().lower())
    return None


def sender_phone(msg: GatewayMessage) -> Optional[str]:
    raw = None
    if msg.handle and msg.handle.address:
        raw = msg.handle.address
    elif msg.chats and msg.chats[0].chat_identifier:
        raw = address_from_chat_guid(msg.chats[0].chat_identifier)
    return normalize_phone(raw) if raw else None


class DeliveryReconciler:
    """Folds gateway webhook events into the message store.

    Every handler is idempotent: replaying an event leaves the store as it was
    after the first delivery. Status only moves forward along
    sending -> sent -> delivered -> read, and failed is reachable only from
    sending or sent. Events that match nothing are dropped.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        bus: EventBus | None = None,
        optout: OptOutHandler | None = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.bus = bus
        self.optout = optout
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[str]]] = {
            "new-message": self._on_new_message,
            "updated-message": self._on_updated_message,
            "message-delivered": self._on_delivered,
            "read-receipt": self._on_read,
            "message-send-error": self._on_send_error,
            "typing-indicator": self._on_typing,
        }

    async def apply(self, envelope: WebhookEnvelope) -> str:
        handler = self._handlers.get(envelope.type)
        if handler is None:
            log.info("webhook_ignored", type=envelope.type)
            metrics.webhook_events.labels(type="other", result=IGNORED).inc()
            return IGNORED
        try:
            result = await handler(envelope.data)
        except (SQLAlchemyError, StoreConflict) as e:
            metrics.store_errors.labels(op=f"webhook:{envelope.type}").inc()
            log.exception("webhook_store_failed", type=envelope.type, err=str(e))
            result = STORE_ERROR
        metrics.webhook_events.labels(type=envelope.type, result=result).inc()
        log.debug("webhook_applied", type=envelope.type, result=result)
        return result

    async def _in_store(self, fn: Callable[[MessageStore], Awaitable[T]]) -> T:
        async def unit() -> T:
            async with self.session_factory() as s:
                out = await fn(MessageStore(s))
                await s.commit()
                return out

        return await retry_async(unit)

    def media_url(self, attachment_guid: str) -> str:
        host = self.settings.gateway_host.rstrip("/")
        return f"{host}/api/v1/attachment/{attachment_guid}/download?password={self.settings.gateway_password}"

    async def _emit(self, type: EventType, payload: dict[str, Any]) -> None:
        if self.bus is not None:
            await self.bus.emit(type, payload)

    # ---------- row lookup ----------

    async def _locate(self, store: MessageStore, msg: GatewayMessage) -> tuple[Optional[Message], bool]:
        """Find the row an event refers to, promoting a provisional row on first sight.

        The flag tells whether this call did the promotion.
        """
        if msg.guid:
            row = await store.get_message(msg.guid)
            if row is not None:
                return row, False
        if msg.guid and is_provisional(msg.temp_guid):
            row = await store.get_message(msg.temp_guid)
            if row is not None and row.direction is Direction.outbound:
                await store.promote_guid(msg.temp_guid, msg.guid)
                log.info("provisional_promoted", provisional=msg.temp_guid, guid=msg.guid)
                return row.model_copy(update={"guid": msg.guid}), True
        if msg.guid is None and is_provisional(msg.temp_guid):
            return await store.get_message(msg.temp_guid), False
        return None, False

    async def _advance(
        self,
        store: MessageStore,
        row: Message,
        delivered_at: Optional[datetime] = None,
        read_at: Optional[datetime] = None,
    ) -> Optional[DeliveryStatus]:
        """Apply delivered / read transitions; returns the new status if it moved."""
        status = row.delivery_status
        fields: dict[str, Any] = {}
        if delivered_at is not None and status in (DeliveryStatus.sending, DeliveryStatus.sent):
            status = DeliveryStatus.delivered
            fields.update(delivery_status=status, date_delivered=delivered_at)
        if read_at is not None and status in (DeliveryStatus.sent, DeliveryStatus.delivered):
            status = DeliveryStatus.read
            fields.update(delivery_status=status, date_read=read_at, is_read=True)
        if not fields:
            return None
        await store.update_message(row.guid, **fields)
        return status

    # ---------- new-message ----------

    async def _on_new_message(self, data: dict[str, Any]) -> str:
        msg = GatewayMessage.model_validate(data)
        if not msg.guid:
            log.debug("new_message_without_guid")
            return UNMATCHED
        code = reaction_code(msg.associated_message_type)
        if msg.associated_message_guid and code is not None:
            if msg.is_from_me:
                return await self._match_own_reaction(msg)
            return await self._record_reaction(msg, code)
        if msg.is_from_me:
            return await self._apply_update(msg)
        return await self._record_inbound(msg)

    async def _match_own_reaction(self, msg: GatewayMessage) -> str:
        """Echo of a tapback we sent: promote or confirm the stored row, never insert."""

        async def match(store: MessageStore) -> str:
            row, promoted = await self._locate(store, msg)
            if row is None or row.direction is not Direction.outbound:
                return UNMATCHED
            return APPLIED if promoted else NOOP

        result = await self._in_store(match)
        if result == UNMATCHED:
            log.debug("own_reaction_unmatched", guid=msg.guid, temp_guid=msg.temp_guid)
        return result

    async def _record_reaction(self, msg: GatewayMessage, code: int) -> str:
        phone = sender_phone(msg)
        if phone is None:
            log.debug("reaction_without_sender", guid=msg.guid)
            return UNMATCHED

        async def record(store: MessageStore) -> tuple[str, Optional[Message]]:
            if await store.get_message(msg.guid) is not None:
                return DUPLICATE, None
            member = await store.find_member_by_phone(phone)
            if member is None:
                return UNMATCHED, None
            conv = await store.get_conversation(member.id)
            if conv is None:
                return UNMATCHED, None
            row = Message(
                id=gen_id("msg"),
                conversation_id=conv.id,
                direction=Direction.inbound,
                body="",
                delivery_status=DeliveryStatus.delivered,
                guid=msg.guid,
                sender_phone=phone,
                associated_message_guid=strip_part_prefix(msg.associated_message_guid),
                associated_message_type=code,
                is_read=True,
                created_at=from_epoch_ms(msg.date_created),
            )
            await store.insert_message(row)
            return APPLIED, row

        result, row = await self._in_store(record)
        if row is not None:
            await self._emit(EventType.message_inbound, {
                "guid": row.guid, "conversation_id": row.conversation_id, "phone": phone,
                "reaction": code, "target_guid": row.associated_message_guid,
            })
        return result

    async def _record_inbound(self, msg: GatewayMessage) -> str:
        phone = sender_phone(msg)
        if phone is None:
            log.debug("inbound_without_sender", guid=msg.guid)
            return UNMATCHED
        body = msg.text or ""
        if msg.has_attachments and not body.strip():
            body = ATTACHMENT_PLACEHOLDER

        async def record(store: MessageStore) -> tuple[str, Optional[Member], Optional[Message]]:
            if await store.get_message(msg.guid) is not None:
                return DUPLICATE, None, None
            member = await store.find_member_by_phone(phone)
            if member is None:
                return UNMATCHED, None, None
            chat_id = msg.chats[0].guid if msg.chats else None
            conv = await store.find_or_create_conversation(member.id, chat_identifier=chat_id)
            row = Message(
                id=gen_id("msg"),
                conversation_id=conv.id,
                direction=Direction.inbound,
                body=body,
                delivery_status=DeliveryStatus.delivered,
                guid=msg.guid,
                sender_phone=phone,
                media_url=self.media_url(msg.attachments[0].guid) if msg.attachments else None,
                has_attachments=msg.has_attachments or bool(msg.attachments),
                associated_message_guid=msg.associated_message_guid,
                associated_message_type=msg.associated_message_type if isinstance(msg.associated_message_type, int) else None,
                thread_originator_guid=msg.thread_originator_guid,
                is_read=msg.date_read is not None,
                created_at=from_epoch_ms(msg.date_created),
                date_delivered=from_epoch_ms(msg.date_delivered) if msg.date_delivered else None,
                date_read=from_epoch_ms(msg.date_read) if msg.date_read else None,
            )
            await store.insert_message(row)
            await store.update_conversation_snapshot(conv.id, body, row.created_at)
            return APPLIED, member, row

        result, member, row = await self._in_store(record)
        if result != APPLIED:
            if result == UNMATCHED:
                log.debug("inbound_unknown_sender", phone=phone, guid=msg.guid)
            return result

        log.info("inbound_recorded", guid=row.guid, member_id=member.id)
        await self._emit(EventType.message_inbound, {
            "guid": row.guid, "conversation_id": row.conversation_id, "member_id": member.id,
            "phone": phone, "body": row.body, "media_url": row.media_url,
        })
        if self.optout is not None:
            await self.optout.handle(member.id, phone, msg.text)
        return result

    # ---------- updates and receipts ----------

    async def _apply_update(self, msg: GatewayMessage) -> str:
        async def update(store: MessageStore) -> tuple[str, Optional[Message], Optional[DeliveryStatus]]:
            row, promoted = await self._locate(store, msg)
            if row is None:
                return UNMATCHED, None, None
            changed = False
            if msg.text and msg.text != row.body:
                await store.update_message(row.guid, body=msg.text)
                changed = True
            moved = await self._advance(
                store, row,
                delivered_at=from_epoch_ms(msg.date_delivered) if msg.date_delivered else None,
                read_at=from_epoch_ms(msg.date_read) if msg.date_read else None,
            )
            return (APPLIED if changed or moved or promoted else NOOP), row, moved

        result, row, moved = await self._in_store(update)
        if result == UNMATCHED:
            log.debug("update_unmatched", guid=msg.guid, temp_guid=msg.temp_guid)
        if moved is not None:
            await self._emit(EventType.message_status, {"guid": row.guid, "status": moved.value})
        return result

    async def _on_updated_message(self, data: dict[str, Any]) -> str:
        return await self._apply_update(GatewayMessage.model_validate(data))

    async def _on_receipt(self, data: dict[str, Any], *, read: bool) -> str:
        msg = GatewayMessage.model_validate(data)

        async def mark(store: MessageStore) -> tuple[str, Optional[Message], Optional[DeliveryStatus]]:
            row, _ = await self._locate(store, msg)
            if row is None:
                return UNMATCHED, None, None
            if read:
                moved = await self._advance(store, row, read_at=from_epoch_ms(msg.date_read))
            else:
                moved = await self._advance(store, row, delivered_at=from_epoch_ms(msg.date_delivered))
            return (APPLIED if moved else NOOP), row, moved

        result, row, moved = await self._in_store(mark)
        if result == UNMATCHED:
            log.debug("receipt_unmatched", guid=msg.guid, read=read)
        if moved is not None:
            await self._emit(EventType.message_status, {"guid": row.guid, "status": moved.value})
        return result

    async def _on_delivered(self, data: dict[str, Any]) -> str:
        return await self._on_receipt(data, read=False)

    async def _on_read(self, data: dict[str, Any]) -> str:
        return await self._on_receipt(data, read=True)

    async def _on_send_error(self, data: dict[str, Any]) -> str:
        msg = GatewayMessage.model_validate(data)
        reason = str(msg.error) if msg.error not in (None, "", 0) else "Failed to send"

        async def fail(store: MessageStore) -> tuple[str, Optional[Message]]:
            row, _ = await self._locate(store, msg)
            if row is None:
                return UNMATCHED, None
            if row.delivery_status not in (DeliveryStatus.sending, DeliveryStatus.sent):
                return NOOP, row
            await store.update_message(row.guid, delivery_status=DeliveryStatus.failed, error=reason)
            return APPLIED, row

        result, row = await self._in_store(fail)
        if result == APPLIED:
            log.warning("send_error_reported", guid=row.guid, err=reason)
            await self._emit(EventType.message_status, {"guid": row.guid, "status": DeliveryStatus.failed.value, "error": reason})
        elif result == UNMATCHED:
            log.debug("send_error_unmatched", guid=msg.guid)
        return result

    async def _on_typing(self, data: dict[str, Any]) -> str:
        log.debug("typing_indicator", chat=data.get("chatGuid") or data.get("chat"), display=data.get("display"))
        return LOGGED
