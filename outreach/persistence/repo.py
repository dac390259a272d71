from __future__ import annotations
import uuid
from datetime import datetime
from typing import Any
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from outreach.core.errors import StoreConflict
from outreach.domain.models import Conversation, Member, Message, Direction, DeliveryStatus
from outreach.persistence.schema import ConversationRow, MemberRow, MessageRow

def gen_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"

def _conversation(r: ConversationRow) -> Conversation:
    return Conversation(
        id=r.id, member_id=r.member_id, chat_identifier=r.chat_identifier,
        last_message=r.last_message, last_message_at=r.last_message_at,
        status=r.status, created_at=r.created_at, updated_at=r.updated_at,
    )

def _message(r: MessageRow) -> Message:
    return Message(
        id=r.id, conversation_id=r.conversation_id, direction=Direction(r.direction),
        body=r.body, delivery_status=DeliveryStatus(r.delivery_status), guid=r.guid,
        sender_phone=r.sender_phone, media_url=r.media_url, has_attachments=r.has_attachments,
        is_contact_card=r.is_contact_card, associated_message_guid=r.associated_message_guid,
        associated_message_type=r.associated_message_type, thread_originator_guid=r.thread_originator_guid,
        is_read=r.is_read, error=r.error, created_at=r.created_at,
        date_delivered=r.date_delivered, date_read=r.date_read,
    )

class MessageStore:
    """Session-bound access to conversations, messages and the member directory.

    Callers own the session and commit; unique-constraint races surface as
    StoreConflict so the caller can retry the whole unit.
    """
    def __init__(self, session: AsyncSession):
        self.s = session

    async def _flush(self) -> None:
        try:
            await self.s.flush()
        except IntegrityError as e:
            raise StoreConflict(str(e.orig)) from e

    # ---------- conversations ----------

    async def get_conversation(self, member_id: str) -> Conversation | None:
        row = await self._conversation_row(member_id)
        return _conversation(row) if row else None

    async def _conversation_row(self, member_id: str) -> ConversationRow | None:
        res = await self.s.execute(select(ConversationRow).where(ConversationRow.member_id == member_id))
        return res.scalars().first()

    async def find_or_create_conversation(self, member_id: str, chat_identifier: str | None = None) -> Conversation:
        row = await self._conversation_row(member_id)
        if row is None:
            now = datetime.utcnow()
            row = ConversationRow(
                id=gen_id("conv"), member_id=member_id, chat_identifier=chat_identifier,
                status="active", created_at=now, updated_at=now,
            )
            self.s.add(row)
            await self._flush()
        return _conversation(row)

    async def update_conversation_snapshot(self, conversation_id: str, body: str, at: datetime) -> None:
        row = await self.s.get(ConversationRow, conversation_id)
        if row is None:
            return
        # an older message arriving late never replaces a newer snapshot
        if row.last_message_at is None or at >= row.last_message_at:
            row.last_message = body
            row.last_message_at = at
        row.updated_at = datetime.utcnow()

    # ---------- messages ----------

    async def insert_message(self, msg: Message) -> None:
        self.s.add(MessageRow(
            id=msg.id, conversation_id=msg.conversation_id, direction=msg.direction.value,
            body=msg.body, delivery_status=msg.delivery_status.value, guid=msg.guid,
            sender_phone=msg.sender_phone, media_url=msg.media_url, has_attachments=msg.has_attachments,
            is_contact_card=msg.is_contact_card, associated_message_guid=msg.associated_message_guid,
            associated_message_type=msg.associated_message_type, thread_originator_guid=msg.thread_originator_guid,
            is_read=msg.is_read, error=msg.error, created_at=msg.created_at,
            date_delivered=msg.date_delivered, date_read=msg.date_read,
        ))
        await self._flush()

    async def get_message(self, guid: str) -> Message | None:
        res = await self.s.execute(select(MessageRow).where(MessageRow.guid == guid))
        row = res.scalars().first()
        return _message(row) if row else None

    async def update_message(self, match_guid: str, **fields: Any) -> bool:
        """Update the message identified by `match_guid`; returns False when none matched."""
        values = {k: (v.value if isinstance(v, (DeliveryStatus, Direction)) else v) for k, v in fields.items()}
        res = await self.s.execute(update(MessageRow).where(MessageRow.guid == match_guid).values(**values))
        await self._flush()
        return res.rowcount > 0

    async def promote_guid(self, provisional: str, durable: str) -> bool:
        """Replace a provisional guid with the gateway's durable one."""
        return await self.update_message(provisional, guid=durable)

    async def list_messages(self, member_id: str, limit: int = 500) -> list[Message]:
        conv = await self._conversation_row(member_id)
        if conv is None:
            return []
        stmt = (
            select(MessageRow)
            .where(MessageRow.conversation_id == conv.id)
            .order_by(MessageRow.created_at)
            .limit(limit)
        )
        res = await self.s.execute(stmt)
        return [_message(r) for r in res.scalars().all()]

    # ---------- member directory ----------

    async def find_member_by_phone(self, phone_e164: str) -> Member | None:
        res = await self.s.execute(select(MemberRow).where(MemberRow.phone_e164 == phone_e164))
        row = res.scalars().first()
        if not row:
            return None
        return Member(id=row.id, name=row.name, phone_e164=row.phone_e164, opted_out=row.opted_out)

    async def set_opted_out(self, member_id: str, opted_out: bool) -> bool:
        row = await self.s.get(MemberRow, member_id)
        if row is None:
            return False
        row.opted_out = opted_out
        return True

    async def upsert_member(self, member: Member) -> Member:
        """Insert or rename/renumber a member; an existing opt-out flag is kept."""
        row = await self.s.get(MemberRow, member.id)
        if row is None:
            row = MemberRow(id=member.id, name=member.name, phone_e164=member.phone_e164, opted_out=member.opted_out)
            self.s.add(row)
        else:
            row.name = member.name
            row.phone_e164 = member.phone_e164
        await self._flush()
        return Member(id=row.id, name=row.name, phone_e164=row.phone_e164, opted_out=row.opted_out)
