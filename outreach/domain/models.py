"""Domain models for the dispatch engine."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Enums
# ============================================================================


class Direction(str, Enum):
    """Which side of the conversation produced a message."""

    outbound = "outbound"
    inbound = "inbound"


class DeliveryStatus(str, Enum):
    """Delivery lifecycle of a message.

    Outbound rows move sending -> sent -> delivered -> read, with failed as a
    terminal branch from sending or sent. Inbound rows start at delivered.
    """

    sending = "sending"
    sent = "sent"
    delivered = "delivered"
    read = "read"
    failed = "failed"


STATUS_RANK: dict[DeliveryStatus, int] = {
    DeliveryStatus.sending: 0,
    DeliveryStatus.sent: 1,
    DeliveryStatus.delivered: 2,
    DeliveryStatus.read: 3,
}


class Transport(str, Enum):
    primary = "primary"
    secondary = "secondary"


class EventType(str, Enum):
    """Events pushed to WebSocket subscribers."""

    broadcast_progress = "broadcast.progress"
    broadcast_completed = "broadcast.completed"
    message_inbound = "message.inbound"
    message_status = "message.status"


# Tapback names accepted by the gateway and the numeric codes stored on reaction rows.
REACTION_CODES: dict[str, int] = {
    "love": 2000,
    "like": 2001,
    "dislike": 2002,
    "laugh": 2003,
    "emphasize": 2004,
    "question": 2005,
    "-love": 3000,
    "-like": 3001,
    "-dislike": 3002,
    "-laugh": 3003,
    "-emphasize": 3004,
    "-question": 3005,
}

ATTACHMENT_PLACEHOLDER = "￼"


# ============================================================================
# Persistent records
# ============================================================================


class Conversation(BaseModel):
    """One conversation per member."""

    id: str
    member_id: str
    chat_identifier: Optional[str] = None
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    status: str = "active"
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Message(BaseModel):
    """A stored message, outbound or inbound."""

    id: str
    conversation_id: str
    direction: Direction
    body: str = ""
    delivery_status: DeliveryStatus
    guid: str = Field(description="Durable gateway id, or a provisional 'temp-' id")
    sender_phone: Optional[str] = None
    media_url: Optional[str] = None
    has_attachments: bool = False
    is_contact_card: bool = False
    associated_message_guid: Optional[str] = None
    associated_message_type: Optional[int] = None
    thread_originator_guid: Optional[str] = None
    is_read: bool = False
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    date_delivered: Optional[datetime] = None
    date_read: Optional[datetime] = None


class Member(BaseModel):
    """Directory entry; owned by the member directory, read here."""

    id: str
    name: str
    phone_e164: str
    opted_out: bool = False


# ============================================================================
# Send requests (closed tagged union)
# ============================================================================


class _SendBase(BaseModel):
    routing: str = Field(description="Phone number or full chat id")
    member_id: Optional[str] = Field(default=None, description="Absent means the send is not persisted")


class TextSend(_SendBase):
    kind: Literal["text"] = "text"
    body: str


class AttachmentSend(_SendBase):
    kind: Literal["attachment"] = "attachment"
    data: bytes
    filename: str
    mime_type: str = "application/octet-stream"
    caption: Optional[str] = None
    reply_to_guid: Optional[str] = None
    part_index: int = 0
    is_contact_card: bool = False


class ReactionSend(_SendBase):
    kind: Literal["reaction"] = "reaction"
    reaction: str
    target_guid: Optional[str] = None
    part_index: int = 0


class ReplySend(_SendBase):
    kind: Literal["reply"] = "reply"
    body: str
    target_guid: Optional[str] = None
    part_index: int = 0


SendRequest = Annotated[
    Union[TextSend, AttachmentSend, ReactionSend, ReplySend],
    Field(discriminator="kind"),
]


class DispatchResult(BaseModel):
    """Outcome of one logical send as reported to the caller."""

    ok: bool
    guid: Optional[str] = None
    provisional: bool = False
    chat_guid: Optional[str] = None
    transport: Transport = Transport.primary
    note: Optional[str] = None
    error: Optional[str] = None
    status_code: int = 200


# ============================================================================
# Broadcasts
# ============================================================================


class Recipient(BaseModel):
    member_id: Optional[str] = None
    name: str = ""
    phone: str = ""


class RecipientOutcome(BaseModel):
    name: str
    phone: str
    ok: bool
    guid: Optional[str] = None
    note: Optional[str] = None
    error: Optional[str] = None


class BroadcastReport(BaseModel):
    broadcast_id: str
    total: int
    sent: int = 0
    failed: list[RecipientOutcome] = Field(default_factory=list)
    outcomes: list[RecipientOutcome] = Field(default_factory=list)
    status: Literal["running", "completed"] = "running"
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    def summary(self) -> str:
        return f"Successfully sent {self.sent} of {self.total} messages"


class BroadcastRequest(BaseModel):
    message: str
    recipients: list[Recipient]


class IntroRequest(BaseModel):
    recipients: list[Recipient]
    message: Optional[str] = None


# ============================================================================
# Gateway webhook payloads
# ============================================================================


class WebhookEnvelope(BaseModel):
    type: str
    data: dict[str, Any] = Field(default_factory=dict)


class GatewayHandle(BaseModel):
    model_config = ConfigDict(extra="ignore")

    address: Optional[str] = None


class GatewayChat(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    guid: Optional[str] = None
    chat_identifier: Optional[str] = Field(default=None, alias="chatIdentifier")


class GatewayAttachment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    guid: str


class GatewayMessage(BaseModel):
    """Message object as carried in new-message / updated-message events."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    guid: Optional[str] = None
    temp_guid: Optional[str] = Field(default=None, alias="tempGuid")
    text: Optional[str] = None
    is_from_me: bool = Field(default=False, alias="isFromMe")
    is_read: Optional[bool] = Field(default=None, alias="isRead")
    has_attachments: bool = Field(default=False, alias="hasAttachments")
    attachments: list[GatewayAttachment] = Field(default_factory=list)
    date_created: Optional[int] = Field(default=None, alias="dateCreated")
    date_delivered: Optional[int] = Field(default=None, alias="dateDelivered")
    date_read: Optional[int] = Field(default=None, alias="dateRead")
    associated_message_guid: Optional[str] = Field(default=None, alias="associatedMessageGuid")
    associated_message_type: Optional[Union[int, str]] = Field(default=None, alias="associatedMessageType")
    thread_originator_guid: Optional[str] = Field(default=None, alias="threadOriginatorGuid")
    handle: Optional[GatewayHandle] = None
    chats: list[GatewayChat] = Field(default_factory=list)
    error: Optional[Union[int, str]] = None


class Event(BaseModel):
    """Event published to the in-process bus."""

    seq: int
    type: EventType
    payload: dict[str, Any] = Field(default_factory=dict)
    ts: datetime = Field(default_factory=datetime.utcnow)
