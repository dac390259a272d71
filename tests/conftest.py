import json
import re
from typing import Callable

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select

from outreach.channels.bluebubbles import BlueBubblesClient
from outreach.config import Settings
from outreach.core.dispatcher import Dispatcher
from outreach.core.fallback import FallbackPolicy
from outreach.domain.models import Member
from outreach.persistence.db import make_engine, make_session_factory
from outreach.persistence.migrations import init_db
from outreach.persistence.repo import MessageStore
from outreach.persistence.schema import MessageRow

Reply = Callable[[httpx.Request], httpx.Response]


def ok(guid: str | None = None) -> Reply:
    data = {"guid": guid} if guid else {}
    return lambda request: httpx.Response(200, json={"status": 200, "message": "Success", "data": data})


def error(status: int, message: str = "boom") -> Reply:
    body = {"status": status, "message": message, "error": {"type": "Server Error", "message": message}}
    return lambda request: httpx.Response(status, json=body)


def raising(exc_type: type[httpx.RequestError]) -> Reply:
    def reply(request: httpx.Request) -> httpx.Response:
        raise exc_type("gateway stub", request=request)
    return reply


class GatewayStub:
    """Scripted gateway: replies per path in order (the last one repeats) and records requests."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self._replies: dict[str, list] = {}
        self._n = 0

    def reply(self, path: str, *replies) -> None:
        self._replies.setdefault(path, []).extend(replies)

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        await request.aread()
        self.requests.append(request)
        queue = self._replies.get(request.url.path)
        if not queue:
            self._n += 1
            return ok(f"gw-{self._n}")(request)
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        out = reply(request)
        if hasattr(out, "__await__"):
            out = await out
        return out


def body_of(request: httpx.Request) -> dict:
    return json.loads(request.content)


def form_field(request: httpx.Request, name: str) -> str | None:
    text = request.content.decode("latin-1")
    m = re.search(rf'name="{re.escape(name)}"\r\n\r\n(.*?)\r\n--', text, re.S)
    return m.group(1) if m else None


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=str(tmp_path),
        sqlite_path=str(tmp_path / "outreach.sqlite"),
        gateway_host="http://gw.test",
        gateway_password="s3cret",
        contact_card_path=str(tmp_path / "contact.vcf"),
        organization_name="Test Org",
        json_logs=False,
    )


@pytest.fixture
def gateway():
    return GatewayStub()


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def session_factory(settings):
    engine = make_engine(settings)
    await init_db(engine)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def client(settings, gateway):
    c = BlueBubblesClient(settings, transport=httpx.MockTransport(gateway))
    yield c
    await c.aclose()


@pytest.fixture
def dispatcher(settings, client, session_factory, clock):
    fallback = FallbackPolicy(
        client,
        primary_service=settings.primary_service,
        secondary_service=settings.secondary_service,
        settle_s=settings.fallback_settle_s,
        sleep=clock.sleep,
    )
    return Dispatcher(settings, client, session_factory, fallback=fallback)


async def seed_member(session_factory, member_id: str = "m1", phone: str = "+15551234567", name: str = "Ada") -> Member:
    async with session_factory() as s:
        member = await MessageStore(s).upsert_member(Member(id=member_id, name=name, phone_e164=phone))
        await s.commit()
    return member


async def all_messages(session_factory) -> list[MessageRow]:
    async with session_factory() as s:
        res = await s.execute(select(MessageRow).order_by(MessageRow.created_at))
        return list(res.scalars().all())
