from __future__ import annotations
import asyncio
import json
import time
from typing import Any
import httpx
from outreach.channels.base import (
    Acknowledged, AcknowledgedNoId, AttachmentPayload, GatewayClient, GatewayOutcome,
    GatewayPayload, HardFailure, ReactionPayload, SoftTimeout, TextPayload,
)
from outreach.config import Settings
from outreach.observability.logging import get_logger
from outreach.observability import metrics

log = get_logger("bluebubbles")

TEXT_PATH = "/api/v1/message/text"
ATTACHMENT_PATH = "/api/v1/message/attachment"
REACT_PATH = "/api/v1/message/react"
CHAT_NEW_PATH = "/api/v1/chat/new"

def _error_reason(body: Any, text: str) -> str | None:
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            reason = err.get("message") or err.get("error")
            if reason:
                return str(reason)
        elif err:
            return str(err)
        if body.get("message"):
            return str(body["message"])
    return text[:200] if text else None

def parse_response(status_code: int, text: str) -> GatewayOutcome:
    """Classify a completed HTTP exchange with the gateway.

    The gateway wraps every answer as {status, message, data?, error?}; an
    HTTP 2xx whose embedded status is not 200 is still a rejection. A 2xx with
    a body we cannot parse counts as accepted without an id.
    """
    try:
        body = json.loads(text) if text else None
    except ValueError:
        body = None

    if not 200 <= status_code < 300:
        return HardFailure(
            reason=_error_reason(body, text) or f"gateway returned HTTP {status_code}",
            status_code=status_code,
        )
    if not isinstance(body, dict):
        return AcknowledgedNoId()

    embedded = body.get("status")
    if embedded is not None and embedded != 200:
        return HardFailure(
            reason=_error_reason(body, "") or f"gateway status {embedded}",
            status_code=embedded if isinstance(embedded, int) else None,
        )

    data = body.get("data")
    guid = data.get("guid") if isinstance(data, dict) else None
    if guid:
        return Acknowledged(guid=str(guid))
    return AcknowledgedNoId()

class BlueBubblesClient(GatewayClient):
    """GatewayClient for a BlueBubbles-style REST server.

    Every call is bounded by a budget picked from the payload weight. Running out
    of budget aborts the HTTP exchange and yields SoftTimeout, since the server
    keeps processing queued sends on its own.
    """
    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self._http = httpx.AsyncClient(base_url=settings.gateway_host.rstrip("/"), transport=transport)

    async def aclose(self) -> None:
        await self._http.aclose()

    def budget_for(self, payload: GatewayPayload) -> float:
        if isinstance(payload, AttachmentPayload):
            return self.settings.attachment_timeout_s
        return self.settings.text_timeout_s

    def _params(self) -> dict[str, str]:
        return {"password": self.settings.gateway_password}

    def _request_args(self, payload: GatewayPayload) -> tuple[str, dict[str, Any]]:
        method = self.settings.gateway_method
        if isinstance(payload, TextPayload):
            body: dict[str, Any] = {"chatGuid": payload.chat_guid, "message": payload.message, "method": method}
            if payload.temp_guid:
                body["tempGuid"] = payload.temp_guid
            if payload.reply_to_guid:
                body["selectedMessageGuid"] = payload.reply_to_guid
                body["partIndex"] = payload.part_index
            return TEXT_PATH, {"json": body}
        if isinstance(payload, AttachmentPayload):
            form: dict[str, str] = {"chatGuid": payload.chat_guid, "name": payload.filename, "method": method}
            if payload.temp_guid:
                form["tempGuid"] = payload.temp_guid
            if payload.caption and payload.caption.strip():
                form["message"] = payload.caption.strip()
            if payload.reply_to_guid:
                form["selectedMessageGuid"] = payload.reply_to_guid
                form["partIndex"] = str(payload.part_index)
            files = {"attachment": (payload.filename, payload.data, payload.mime_type)}
            return ATTACHMENT_PATH, {"data": form, "files": files}
        if isinstance(payload, ReactionPayload):
            body = {
                "chatGuid": payload.chat_guid,
                "selectedMessageGuid": payload.target_guid,
                "reaction": payload.reaction,
                "partIndex": payload.part_index,
                "method": method,
            }
            return REACT_PATH, {"json": body}
        raise TypeError(f"unsupported payload: {type(payload).__name__}")

    async def _post(self, path: str, budget: float, **kwargs: Any) -> GatewayOutcome:
        timeout = httpx.Timeout(budget, connect=min(self.settings.connect_timeout_s, budget))
        start = time.monotonic()
        try:
            resp = await asyncio.wait_for(
                self._http.post(path, params=self._params(), timeout=timeout, **kwargs),
                timeout=budget,
            )
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            log.error("gateway_unreachable", path=path, err=str(e))
            return HardFailure(reason=f"gateway unreachable: {type(e).__name__}")
        except (asyncio.TimeoutError, httpx.TimeoutException):
            log.warning("gateway_soft_timeout", path=path, budget_s=budget)
            return SoftTimeout(budget_s=budget)
        except httpx.HTTPError as e:
            log.error("gateway_http_error", path=path, err=str(e), error_type=type(e).__name__)
            return HardFailure(reason=str(e) or type(e).__name__)
        finally:
            metrics.gateway_latency.labels(endpoint=path).observe(time.monotonic() - start)

        outcome = parse_response(resp.status_code, resp.text)
        if isinstance(outcome, HardFailure):
            log.error("gateway_rejected", path=path, status=resp.status_code, reason=outcome.reason)
        else:
            log.info("gateway_accepted", path=path, status=resp.status_code, outcome=type(outcome).__name__)
        return outcome

    async def submit(self, payload: GatewayPayload, timeout_s: float | None = None) -> GatewayOutcome:
        path, kwargs = self._request_args(payload)
        return await self._post(path, timeout_s or self.budget_for(payload), **kwargs)

    async def create_chat(self, address: str, service: str) -> str | None:
        body = {"addresses": [address], "service": service, "method": self.settings.gateway_method}
        outcome = await self._post(CHAT_NEW_PATH, self.settings.text_timeout_s, json=body)
        if isinstance(outcome, Acknowledged):
            return outcome.guid
        return None
