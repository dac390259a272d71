from __future__ import annotations
from datetime import datetime
from sqlalchemy import String, DateTime, Text, Integer, Boolean, ForeignKey
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

class Base(DeclarativeBase):
    pass

class MemberRow(Base):
    __tablename__ = "members"
    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, default="")
    phone_e164: Mapped[str] = mapped_column(String, unique=True, index=True)
    opted_out: Mapped[bool] = mapped_column(Boolean, default=False)

class ConversationRow(Base):
    __tablename__ = "conversations"
    id: Mapped[str] = mapped_column(String, primary_key=True)
    # at most one conversation per member
    member_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    chat_identifier: Mapped[str | None] = mapped_column(String, nullable=True)
    last_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(DateTime)

class MessageRow(Base):
    __tablename__ = "messages"
    id: Mapped[str] = mapped_column(String, primary_key=True)
    conversation_id: Mapped[str] = mapped_column(String, ForeignKey("conversations.id"), index=True)
    direction: Mapped[str] = mapped_column(String, index=True)
    body: Mapped[str] = mapped_column(Text, default="")
    delivery_status: Mapped[str] = mapped_column(String, index=True)
    guid: Mapped[str] = mapped_column(String, unique=True, index=True)
    sender_phone: Mapped[str | None] = mapped_column(String, nullable=True)
    media_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    has_attachments: Mapped[bool] = mapped_column(Boolean, default=False)
    is_contact_card: Mapped[bool] = mapped_column(Boolean, default=False)
    associated_message_guid: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    associated_message_type: Mapped[int | None] = mapped_column(Integer, nullable=True)
    thread_originator_guid: Mapped[str | None] = mapped_column(String, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    date_delivered: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    date_read: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
