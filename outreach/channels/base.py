from __future__ import annotations
import abc
from dataclasses import dataclass, replace
from typing import Union

@dataclass(frozen=True)
class TextPayload:
    chat_guid: str
    message: str
    temp_guid: str | None = None
    reply_to_guid: str | None = None
    part_index: int = 0

@dataclass(frozen=True)
class AttachmentPayload:
    chat_guid: str
    data: bytes
    filename: str
    mime_type: str = "application/octet-stream"
    caption: str | None = None
    temp_guid: str | None = None
    reply_to_guid: str | None = None
    part_index: int = 0

@dataclass(frozen=True)
class ReactionPayload:
    chat_guid: str
    target_guid: str
    reaction: str
    part_index: int = 0

GatewayPayload = Union[TextPayload, AttachmentPayload, ReactionPayload]

def retarget(payload: GatewayPayload, chat_guid: str) -> GatewayPayload:
    """Same payload, different chat."""
    return replace(payload, chat_guid=chat_guid)

# ---------- outcomes ----------

@dataclass(frozen=True)
class Acknowledged:
    guid: str

@dataclass(frozen=True)
class AcknowledgedNoId:
    pass

@dataclass(frozen=True)
class SoftTimeout:
    """The wait was aborted; the gateway most likely queued the request."""
    budget_s: float

@dataclass(frozen=True)
class HardFailure:
    reason: str
    status_code: int | None = None

    @property
    def server_side(self) -> bool:
        return self.status_code is not None and self.status_code >= 500

GatewayOutcome = Union[Acknowledged, AcknowledgedNoId, SoftTimeout, HardFailure]

class GatewayClient(abc.ABC):
    """Adapter between typed payloads and a remote messaging gateway.

    Implementations own the timeout policy of each call and never raise for
    gateway-side problems: every result is a GatewayOutcome. They never touch
    the message store.
    """

    @abc.abstractmethod
    async def submit(self, payload: GatewayPayload, timeout_s: float | None = None) -> GatewayOutcome:
        ...

    @abc.abstractmethod
    async def create_chat(self, address: str, service: str) -> str | None:
        """Ask the gateway for a chat on `service`; returns its guid when reported."""
        ...

    async def aclose(self) -> None:
        return
