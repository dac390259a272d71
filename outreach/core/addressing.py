"""Chat-id resolution, phone normalization and provisional ids."""
from __future__ import annotations

import re
import uuid

PROVISIONAL_PREFIX = "temp-"
CHAT_SEPARATOR = ";-;"

_PHONE_NOISE = re.compile(r"[\s\-\(\)]")


def resolve_chat_guid(routing: str, service: str) -> str:
    """Reuse a routing value that already names a chat, else build one for `service`."""
    if ";" in routing:
        return routing
    return f"{service}{CHAT_SEPARATOR}{routing}"


def address_from_chat_guid(chat_guid: str) -> str:
    if CHAT_SEPARATOR in chat_guid:
        return chat_guid.split(CHAT_SEPARATOR, 1)[1]
    return chat_guid


def service_of(chat_guid: str) -> str | None:
    if ";" not in chat_guid:
        return None
    return chat_guid.split(";", 1)[0]


def retarget_chat_guid(chat_guid: str, service: str) -> str:
    """Swap the transport tag of a one-to-one chat id."""
    return f"{service}{CHAT_SEPARATOR}{address_from_chat_guid(chat_guid)}"


def normalize_phone(phone: str) -> str:
    """Normalize a North American number to E.164.

    Numbers already carrying a country code (leading '+') are only stripped of
    formatting characters.
    """
    digits = _PHONE_NOISE.sub("", phone)
    if digits.startswith("+"):
        return digits
    if digits.startswith("1") and len(digits) == 11:
        return "+" + digits
    return "+1" + digits


def new_provisional_guid() -> str:
    return f"{PROVISIONAL_PREFIX}{uuid.uuid4().hex}"


def is_provisional(guid: str | None) -> bool:
    return bool(guid) and guid.startswith(PROVISIONAL_PREFIX)


def strip_part_prefix(guid: str) -> str:
    """Drop the 'p:N/' part selector some gateways prepend to associated guids."""
    if guid.startswith("p:") and "/" in guid:
        return guid.split("/", 1)[1]
    return guid
