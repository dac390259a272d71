"""Secondary-transport retry for attachment sends."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from outreach.channels.base import (
    AttachmentPayload, GatewayClient, GatewayOutcome, GatewayPayload, HardFailure, retarget,
)
from outreach.core.addressing import address_from_chat_guid, retarget_chat_guid, service_of
from outreach.observability import metrics
from outreach.observability.logging import get_logger

log = get_logger("fallback")

Sleep = Callable[[float], Awaitable[None]]


class FallbackPolicy:
    """Retargets a rejected primary-transport attachment at the secondary transport.

    There is exactly one fallback tier: a failure of the resubmission is final.
    """

    def __init__(
        self,
        client: GatewayClient,
        primary_service: str,
        secondary_service: str,
        settle_s: float = 2.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.client = client
        self.primary_service = primary_service
        self.secondary_service = secondary_service
        self.settle_s = settle_s
        self._sleep = sleep

    def applies(self, payload: GatewayPayload, outcome: GatewayOutcome) -> bool:
        return (
            isinstance(payload, AttachmentPayload)
            and isinstance(outcome, HardFailure)
            and outcome.server_side
            and service_of(payload.chat_guid) == self.primary_service
        )

    async def resolve_secondary_chat(self, chat_guid: str) -> str:
        address = address_from_chat_guid(chat_guid)
        created = await self.client.create_chat(address, self.secondary_service)
        if created:
            return created
        # gateway gave no id back; the transport tag swap is what it would have assigned
        return retarget_chat_guid(chat_guid, self.secondary_service)

    async def retry(self, payload: AttachmentPayload) -> tuple[AttachmentPayload, GatewayOutcome]:
        """Resubmit `payload` once on the secondary transport."""
        secondary_chat = await self.resolve_secondary_chat(payload.chat_guid)
        log.info(
            "fallback_retarget",
            from_chat=payload.chat_guid,
            to_chat=secondary_chat,
            settle_s=self.settle_s,
        )
        # the gateway provisions the new chat asynchronously
        await self._sleep(self.settle_s)

        moved = retarget(payload, secondary_chat)
        outcome = await self.client.submit(moved)
        result = "failed" if isinstance(outcome, HardFailure) else "accepted"
        metrics.fallback_attempts.labels(result=result).inc()
        return moved, outcome
