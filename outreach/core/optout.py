"""Opt-out / opt-in keyword handling for inbound texts."""
from __future__ import annotations

import re
from typing import TYPE_CHECKING, Literal, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from outreach.config import Settings
from outreach.domain.models import TextSend
from outreach.observability.logging import get_logger
from outreach.persistence.repo import MessageStore

if TYPE_CHECKING:
    from outreach.core.dispatcher import Dispatcher

log = get_logger("optout")

OPT_OUT_KEYWORDS = ("stop", "unsubscribe", "opt out", "optout", "opt-out", "cancel", "end", "quit")
OPT_IN_KEYWORDS = ("start", "yes", "subscribe", "opt in", "optin", "opt-in", "resume", "rejoin")

Intent = Literal["opt_out", "opt_in"]


def _keyword_pattern(words: tuple[str, ...]) -> re.Pattern[str]:
    alternatives = "|".join(re.escape(w) for w in words)
    return re.compile(rf"\b(?:{alternatives})\b", re.IGNORECASE)


_OPT_OUT = _keyword_pattern(OPT_OUT_KEYWORDS)
_OPT_IN = _keyword_pattern(OPT_IN_KEYWORDS)


def classify(text: Optional[str]) -> Optional[Intent]:
    """Opt-out wins when a text carries both kinds of keyword."""
    if not text or not text.strip():
        return None
    if _OPT_OUT.search(text):
        return "opt_out"
    if _OPT_IN.search(text):
        return "opt_in"
    return None


class OptOutHandler:
    def __init__(self, settings: Settings, session_factory: async_sessionmaker[AsyncSession], dispatcher: Dispatcher):
        self.settings = settings
        self.session_factory = session_factory
        self.dispatcher = dispatcher

    def confirmation_for(self, intent: Intent) -> str:
        template = self.settings.opt_out_confirmation if intent == "opt_out" else self.settings.opt_in_confirmation
        return template.replace("{org}", self.settings.organization_name)

    async def handle(self, member_id: str, phone: str, text: Optional[str]) -> Optional[Intent]:
        """Flip the member's opt-out flag and confirm; returns the detected intent."""
        intent = classify(text)
        if intent is None:
            return None

        async with self.session_factory() as s:
            found = await MessageStore(s).set_opted_out(member_id, intent == "opt_out")
            await s.commit()
        if not found:
            log.warning("optout_member_missing", member_id=member_id, intent=intent)
            return None
        log.info("optout_recorded", member_id=member_id, intent=intent)

        # confirmations are not part of the member's stored conversation
        result = await self.dispatcher.send(TextSend(routing=phone, body=self.confirmation_for(intent)))
        if not result.ok:
            log.warning("optout_confirmation_failed", member_id=member_id, intent=intent, err=result.error)
        return intent
