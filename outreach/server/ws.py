from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from fastapi import WebSocket
from fastapi.websockets import WebSocketDisconnect

from outreach.bus import EventBus
from outreach.domain.models import Event
from outreach.observability.logging import get_logger
from outreach.observability import metrics

log = get_logger("ws")


def now() -> datetime:
    return datetime.utcnow()


def ws_msg(
    type_: str,
    id_: str | None = None,
    payload: dict[str, Any] | None = None,
    ok: bool = True,
    err: dict[str, Any] | None = None,
) -> dict[str, Any]:
    base: dict[str, Any] = {
        "type": type_,
        "id": id_ or uuid.uuid4().hex,
        "ts": now().isoformat() + "Z",
        "payload": payload or {},
    }
    if type_.startswith("res:"):
        base["ok"] = ok
        base["err"] = err
    return base


def evt_msg(evt: Event) -> dict[str, Any]:
    return {
        "type": f"evt:{evt.type.value}",
        "id": f"evt_{evt.seq}",
        "ts": evt.ts.isoformat() + "Z",
        "payload": {"seq": evt.seq, **(evt.payload or {})},
    }


@dataclass
class ClientState:
    """
    Per-WebSocket connection state.
    If broadcast_ids is empty -> send ALL broadcast events.
    If it has values -> send broadcast events ONLY for those ids.
    Message events are never filtered.
    """
    broadcast_ids: set[str] = field(default_factory=set)

    def wants(self, evt: Event) -> bool:
        bid = (evt.payload or {}).get("broadcast_id")
        if bid is None or not self.broadcast_ids:
            return True
        return bid in self.broadcast_ids


async def pump_events(ws: WebSocket, bus: EventBus, stop_event: asyncio.Event, state: ClientState) -> None:
    """Server-push event stream of `evt:*` messages."""
    sub = bus.subscribe()
    try:
        async for evt in bus.iter(sub):
            if stop_event.is_set():
                break
            if not state.wants(evt):
                continue
            await ws.send_text(json.dumps(evt_msg(evt)))
    finally:
        bus.unsubscribe(sub)


def handle_client_message(raw: str, state: ClientState) -> dict[str, Any]:
    """Clients may narrow broadcast events with req:subscribe / req:unsubscribe."""
    try:
        data = json.loads(raw)
    except ValueError:
        return ws_msg("res:error", ok=False, err={"code": "bad_json", "message": "invalid json"})
    if not isinstance(data, dict):
        return ws_msg("res:error", ok=False, err={"code": "bad_request", "message": "expected an object"})

    type_ = str(data.get("type") or "")
    id_ = data.get("id")
    payload = data.get("payload") or {}
    bid = payload.get("broadcast_id") if isinstance(payload, dict) else None

    if type_ == "req:subscribe" and bid:
        state.broadcast_ids.add(str(bid))
        return ws_msg("res:subscribe", id_=id_, payload={"broadcast_ids": sorted(state.broadcast_ids)})
    if type_ == "req:unsubscribe" and bid:
        state.broadcast_ids.discard(str(bid))
        return ws_msg("res:unsubscribe", id_=id_, payload={"broadcast_ids": sorted(state.broadcast_ids)})
    return ws_msg("res:error", id_=id_, ok=False, err={"code": "no_such_method", "message": type_})


async def serve_ws(ws: WebSocket, bus: EventBus) -> None:
    await ws.accept()
    metrics.ws_connections.inc()

    stop = asyncio.Event()
    state = ClientState()
    pump_task = asyncio.create_task(pump_events(ws, bus, stop, state))

    try:
        while True:
            raw = await ws.receive_text()
            await ws.send_text(json.dumps(handle_client_message(raw, state)))
    except WebSocketDisconnect:
        return
    finally:
        stop.set()
        pump_task.cancel()
        metrics.ws_connections.dec()
