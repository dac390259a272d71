from __future__ import annotations
import asyncio
from typing import Annotated, Any, Optional, Union
from fastapi import Body, FastAPI, File, Form, HTTPException, Request, UploadFile, WebSocket
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field, TypeAdapter, ValidationError
from outreach.channels.base import GatewayClient
from outreach.config import Settings
from outreach.core.contact_card import ContactCardSource, ContactCardUnavailable
from outreach.core.errors import SendValidationError
from outreach.core.service import OutreachService
from outreach.domain.models import (
    AttachmentSend, BroadcastRequest, DispatchResult, IntroRequest, ReactionSend, ReplySend, TextSend,
    WebhookEnvelope,
)
from outreach.persistence.db import make_engine, make_session_factory
from outreach.persistence.migrations import init_db
from outreach.server.ws import serve_ws
from outreach.observability.logging import configure_logging, get_logger
from outreach.observability import metrics

log = get_logger("app")

VERSION = "0.1.0"

# attachments arrive as multipart on their own endpoint
JsonSendRequest = Annotated[Union[TextSend, ReactionSend, ReplySend], Field(discriminator="kind")]
_json_send = TypeAdapter(JsonSendRequest)

class MemberUpsert(BaseModel):
    name: str
    phone: str

def _dispatch_response(result: DispatchResult) -> JSONResponse:
    return JSONResponse(status_code=200 if result.ok else result.status_code, content=result.model_dump(mode="json"))

def create_app(
    settings: Settings,
    client: GatewayClient | None = None,
    contact_card: ContactCardSource | None = None,
    sleep=asyncio.sleep,
) -> FastAPI:
    configure_logging(settings.log_level, settings.json_logs)
    app = FastAPI(title="Outreach Dispatch", version=VERSION)

    engine = make_engine(settings)
    session_factory = make_session_factory(engine)
    service = OutreachService(settings, engine, session_factory, client=client, contact_card=contact_card, sleep=sleep)
    app.state.service = service

    @app.on_event("startup")
    async def _startup():
        await init_db(engine)
        await service.start()
        log.info("outreach_started", host=settings.host, port=settings.port)

    @app.on_event("shutdown")
    async def _shutdown():
        await service.stop()
        await engine.dispose()

    @app.exception_handler(SendValidationError)
    async def _invalid(request: Request, exc: SendValidationError):
        return JSONResponse(status_code=400, content={"ok": False, "error": exc.message})

    # health/metrics
    @app.get(settings.health_path)
    async def healthz():
        return {"ok": True, "service": "outreach", "version": VERSION}

    @app.get(settings.metrics_path)
    async def metrics_endpoint():
        return PlainTextResponse(generate_latest().decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    # single sends
    @app.post("/api/messages")
    async def send_message(payload: dict[str, Any] = Body(...)):
        try:
            req = _json_send.validate_python(payload)
        except ValidationError as e:
            raise SendValidationError(f"Invalid send request: {e.errors()[0]['msg']}") from e
        return _dispatch_response(await service.send(req))

    @app.post("/api/attachments")
    async def send_attachment(
        file: Optional[UploadFile] = File(default=None),
        phone: str = Form(default=""),
        member_id: Optional[str] = Form(default=None),
        message: Optional[str] = Form(default=None),
        reply_to_guid: Optional[str] = Form(default=None),
        part_index: int = Form(default=0),
    ):
        if file is None:
            raise SendValidationError("No file provided")
        data = await file.read()
        req = AttachmentSend(
            routing=phone,
            member_id=member_id or None,
            data=data,
            filename=file.filename or "",
            mime_type=file.content_type or "application/octet-stream",
            caption=message,
            reply_to_guid=reply_to_guid or None,
            part_index=part_index,
        )
        return _dispatch_response(await service.send(req))

    # broadcast runs
    @app.post("/api/broadcasts", status_code=202)
    async def start_broadcast(body: BroadcastRequest):
        report = service.start_broadcast(body.message, body.recipients)
        return {"broadcast_id": report.broadcast_id, "total": report.total, "status": report.status}

    @app.post("/api/intros", status_code=202)
    async def start_intro(body: IntroRequest):
        try:
            report = service.start_intro(body.recipients, body.message)
        except ContactCardUnavailable as e:
            log.error("contact_card_unavailable", err=str(e))
            raise HTTPException(status_code=503, detail=str(e))
        return {"broadcast_id": report.broadcast_id, "total": report.total, "status": report.status}

    @app.get("/api/broadcasts/{broadcast_id}")
    async def get_broadcast(broadcast_id: str):
        report = service.get_report(broadcast_id)
        if report is None:
            raise HTTPException(status_code=404, detail="unknown broadcast")
        return {**report.model_dump(mode="json"), "failed_count": report.failed_count, "message": report.summary()}

    # history & directory
    @app.get("/api/members/{member_id}/messages")
    async def member_messages(member_id: str, limit: int = 500):
        msgs = await service.list_messages(member_id, limit=limit)
        return {"messages": [m.model_dump(mode="json") for m in msgs]}

    @app.put("/api/members/{member_id}")
    async def upsert_member(member_id: str, body: MemberUpsert):
        member = await service.upsert_member(member_id, body.name, body.phone)
        return {"member": member.model_dump(mode="json")}

    # gateway webhook; always 200 so the gateway does not redeliver forever
    @app.post(settings.webhook_path)
    async def gateway_webhook(request: Request):
        try:
            envelope = WebhookEnvelope.model_validate(await request.json())
            result = await service.ingest_webhook(envelope)
        except Exception as e:
            metrics.webhook_events.labels(type="unknown", result="error").inc()
            log.exception("webhook_failed", err=str(e))
            return {"ok": False}
        return {"ok": True, "result": result}

    # event stream
    @app.websocket(settings.ws_path)
    async def ws_endpoint(ws: WebSocket):
        await serve_ws(ws, service.bus)

    return app
