"""Provider callbacks end to end through the ASGI app."""
import pytest

from controllers import twilio_webhooks
from models.call_record import CallRecord, CallStatus, RecordingState, TranscriptionState
from models.message import MessageChannel, MessageStatus, OutboundMessage
from models.pipeline_job import PipelineJob
from helpers.message_dispatcher import create_message
from tests.conftest import CONTACT_NUMBER, OWNER_NUMBER, asgi_client, make_app


@pytest.mark.asyncio
async def test_inbound_voice_to_known_number_bridges_to_softphone(owner):
    app = make_app(twilio_webhooks.router)
    async with asgi_client(app) as client:
        r = await client.post("/api/webhooks/twilio/voice", data={
            "CallSid": "CAin1", "CallStatus": "ringing", "Direction": "inbound",
            "From": CONTACT_NUMBER, "To": OWNER_NUMBER,
        })
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("application/xml")
    assert "<Client>sam-softphone</Client>" in r.text
    assert 'record="record-from-answer"' in r.text

    rec = await CallRecord.get(call_sid="CAin1")
    assert rec.user_id == owner.id
    assert rec.status == CallStatus.RINGING


@pytest.mark.asyncio
async def test_inbound_voice_to_unknown_number_is_rejected(owner):
    app = make_app(twilio_webhooks.router)
    async with asgi_client(app) as client:
        r = await client.post("/api/webhooks/twilio/voice", data={
            "CallSid": "CAx", "CallStatus": "ringing", "Direction": "inbound",
            "From": CONTACT_NUMBER, "To": "+12025550199",
        })
    assert r.status_code == 200
    assert "<Say" in r.text and "<Hangup" in r.text
    assert not await CallRecord.exists(call_sid="CAx")


@pytest.mark.asyncio
async def test_voice_with_garbage_payload_answers_error_twiml(db):
    app = make_app(twilio_webhooks.router)
    async with asgi_client(app) as client:
        r = await client.post("/api/webhooks/twilio/voice", data={"Nope": "1"})
    assert r.status_code == 200
    assert "<Hangup" in r.text


@pytest.mark.asyncio
async def test_ca123_through_status_and_recording_webhooks(owner):
    await CallRecord.create(call_sid="CA123", user=owner, from_number=OWNER_NUMBER, to_number=CONTACT_NUMBER)
    app = make_app(twilio_webhooks.router)
    base = {"CallSid": "CA123", "Direction": "outbound-api", "From": OWNER_NUMBER, "To": CONTACT_NUMBER}
    async with asgi_client(app) as client:
        for status in ("ringing", "in-progress"):
            r = await client.post("/api/webhooks/twilio/status", data={**base, "CallStatus": status})
            assert r.json()["success"] is True
        done = {**base, "CallStatus": "completed", "CallDuration": "61",
                "RecordingSid": "RE123", "RecordingUrl": "https://api.twilio.com/x/RE123"}
        await client.post("/api/webhooks/twilio/status", data=done)
        await client.post("/api/webhooks/twilio/status", data=done)
        r = await client.post("/api/webhooks/twilio/recording", data={
            "CallSid": "CA123", "RecordingSid": "RE123",
            "RecordingUrl": "https://api.twilio.com/x/RE123", "RecordingStatus": "completed",
        })
        assert r.status_code == 200

    rec = await CallRecord.get(call_sid="CA123")
    assert rec.status == CallStatus.COMPLETED
    assert rec.duration_seconds == 61
    assert rec.recording_state == RecordingState.AVAILABLE
    assert rec.transcription_state == TranscriptionState.PENDING
    assert await PipelineJob.filter(call_id=rec.id).count() == 1


@pytest.mark.asyncio
async def test_status_webhook_for_unknown_call_still_answers_2xx(owner):
    app = make_app(twilio_webhooks.router)
    async with asgi_client(app) as client:
        r = await client.post("/api/webhooks/twilio/status", data={
            "CallSid": "CAghost", "CallStatus": "completed", "Direction": "outbound-api",
            "From": "+12025550111", "To": "+12025550112",
        })
        bad = await client.post("/api/webhooks/twilio/status", data={"CallSid": "CA1", "CallStatus": "exploded"})
    assert r.status_code == 200
    assert r.json() == {"success": True, "known": False}
    assert bad.status_code == 200
    assert bad.json()["success"] is False


@pytest.mark.asyncio
async def test_sms_status_webhook_applies_rank(owner, gateway):
    msg = await create_message(owner, channel=MessageChannel.SMS, to=CONTACT_NUMBER, body="Hi")
    app = make_app(twilio_webhooks.router)
    async with asgi_client(app) as client:
        await client.post("/api/webhooks/twilio/sms-status",
                          data={"MessageSid": msg.provider_message_id, "MessageStatus": "delivered"})
        await client.post("/api/webhooks/twilio/sms-status",
                          data={"MessageSid": msg.provider_message_id, "MessageStatus": "sent"})
        r = await client.post("/api/webhooks/twilio/sms-status",
                              data={"MessageSid": "SMunknown", "MessageStatus": "delivered"})
    assert r.json() == {"success": True, "known": False}
    await msg.refresh_from_db()
    assert msg.status == MessageStatus.DELIVERED


@pytest.mark.asyncio
async def test_inbound_sms_answers_empty_twiml(owner):
    app = make_app(twilio_webhooks.router)
    form = {"MessageSid": "SMin9", "From": CONTACT_NUMBER, "To": OWNER_NUMBER, "Body": "yes please"}
    async with asgi_client(app) as client:
        r1 = await client.post("/api/webhooks/twilio/sms", data=form)
        r2 = await client.post("/api/webhooks/twilio/sms", data=form)
    assert r1.status_code == r2.status_code == 200
    assert "<Response />" in r1.text or "<Response/>" in r1.text
    assert await OutboundMessage.filter(provider_message_id="SMin9").count() == 1


@pytest.mark.asyncio
async def test_signature_is_enforced_when_enabled(owner, monkeypatch):
    monkeypatch.setattr(twilio_webhooks, "TWILIO_VALIDATE_SIGNATURE", True)
    monkeypatch.setattr(twilio_webhooks, "TWILIO_AUTH_TOKEN", "secret")
    app = make_app(twilio_webhooks.router)
    async with asgi_client(app) as client:
        r = await client.post("/api/webhooks/twilio/status", data={
            "CallSid": "CAin2", "CallStatus": "ringing", "Direction": "inbound",
            "From": CONTACT_NUMBER, "To": OWNER_NUMBER,
        }, headers={"X-Twilio-Signature": "forged"})
    assert r.status_code == 200
    assert r.json()["error"] == "twilio_signature_invalid"
    assert not await CallRecord.exists(call_sid="CAin2")
