"""
Shared fixtures: an in-memory Tortoise database per test, a fake carrier
gateway and fake AI oracles, plus ASGI clients for the HTTP routes.
"""
import itertools
import json
from datetime import datetime, timezone
from typing import List, Optional

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from tortoise import Tortoise

from helpers import call_analysis, pipeline_jobs, stuck_sweeper, transcription
from helpers.provider_gateway import PlacedCall, set_gateway
from helpers.token_helper import get_current_user
from models.auth import User, VoipSettings

MODEL_MODULES = ["models.auth", "models.call_record", "models.message", "models.pipeline_job"]

OWNER_NUMBER = "+14155550100"
CONTACT_NUMBER = "+14155550123"


class FakeGateway:
    """Records what would have gone to the carrier; scripted failures via `errors`."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.submitted: List[int] = []
        self.errors: List[Exception] = []
        self.placed: List[dict] = []
        self.ended: List[str] = []
        self.recording = b"ID3-fake-mp3"
        self.recording_error: Optional[Exception] = None

    async def submit(self, msg) -> str:
        self.submitted.append(msg.id)
        if self.errors:
            raise self.errors.pop(0)
        return f"SM{next(self._ids):032d}"

    async def place_call(self, *, to_number, from_number, record) -> PlacedCall:
        sid = f"CA{next(self._ids):032d}"
        self.placed.append({"sid": sid, "to": to_number, "from": from_number, "record": record})
        return PlacedCall(sid=sid, status="queued")

    async def end_call(self, call_sid):
        self.ended.append(call_sid)

    async def fetch_recording(self, recording_url) -> bytes:
        if self.recording_error:
            raise self.recording_error
        return self.recording

    async def stream_recording(self, recording_url):
        if self.recording_error:
            raise self.recording_error
        yield self.recording[:4]
        yield self.recording[4:]


GOOD_ANALYSIS = {
    "sentiment_score": 0.6,
    "sentiment_label": "positive",
    "key_topics": ["pricing", "onboarding"],
    "action_items": ["Send proposal"],
    "summary": "Prospect is interested and wants a proposal.",
}


class FakeOracles:
    def __init__(self):
        self.transcript = "Hi, thanks for calling. Yes, please send the proposal."
        self.analysis_answer = json.dumps(GOOD_ANALYSIS)
        self.transcribe_calls = 0
        self.analyze_calls = 0

    async def transcribe(self, audio: bytes) -> str:
        self.transcribe_calls += 1
        return self.transcript

    async def analyze(self, text: str) -> str:
        self.analyze_calls += 1
        return self.analysis_answer


@pytest_asyncio.fixture
async def db():
    await Tortoise.init(
        db_url="sqlite://:memory:",
        modules={"models": MODEL_MODULES},
        use_tz=True,
        timezone="UTC",
    )
    await Tortoise.generate_schemas()
    pipeline_jobs.set_job_queue(None)
    stuck_sweeper.reset_throttle()
    yield
    await Tortoise.close_connections()


@pytest.fixture
def gateway():
    gw = FakeGateway()
    set_gateway(gw)
    yield gw
    set_gateway(None)


@pytest.fixture
def oracles():
    o = FakeOracles()
    transcription.set_transcriber(o.transcribe)
    call_analysis.set_analyzer(o.analyze)
    yield o
    transcription.set_transcriber(None)
    call_analysis.set_analyzer(None)


@pytest_asyncio.fixture
async def owner(db):
    user = await User.create(name="Sam Seller", email="sam@example.com", client_identity="sam-softphone")
    await VoipSettings.create(
        user=user,
        assigned_phone_number=OWNER_NUMBER,
        auto_record=True,
        auto_transcribe=True,
        sms_enabled=True,
        from_email="sam@example.com",
    )
    return user


@pytest_asyncio.fixture
async def admin(db):
    return await User.create(name="Ada Admin", email="ada@example.com", role="admin")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_app(*routers, user: Optional[User] = None) -> FastAPI:
    app = FastAPI()
    for r in routers:
        app.include_router(r, prefix="/api")
    if user is not None:
        app.dependency_overrides[get_current_user] = lambda: user
    return app


def asgi_client(app: FastAPI) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")
