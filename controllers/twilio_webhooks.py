# controllers/twilio_webhooks.py
"""
Provider → service callbacks. Every route answers 2xx, even on internal
errors, so the carrier never retries into a half-applied state; failures are
logged instead.
"""
from typing import Dict

from fastapi import APIRouter, Request
from fastapi.responses import Response
from twilio.request_validator import RequestValidator

from helpers.call_ledger import apply_call_event, apply_recording_event, resolve_owner_by_numbers
from helpers.config import TWILIO_AUTH_TOKEN, TWILIO_VALIDATE_SIGNATURE, get_logger, public_base_url
from helpers.errors import UnknownProviderIdError
from helpers.message_dispatcher import apply_delivery_status, store_inbound_sms
from helpers.provider_gateway import RECORDING_STATUS_PATH, webhook_url
from helpers.voice_markup import bridge_to_client, empty_messaging_response, error_response, reject_call
from helpers.webhook_events import (
    CallStatusEvent,
    InboundSmsEvent,
    MessageStatusEvent,
    RecordingStatusEvent,
    VoiceRequestEvent,
    parse_event,
)
from models.auth import User
from models.call_record import CallRecord

logger = get_logger("twilio_webhooks")

router = APIRouter()


def _xml(body: str) -> Response:
    return Response(content=body, media_type="application/xml")


def _validate_twilio_signature(request: Request, form_data: Dict[str, str]) -> bool:
    if not TWILIO_VALIDATE_SIGNATURE:
        return True
    if not TWILIO_AUTH_TOKEN:
        return False
    signature = request.headers.get("X-Twilio-Signature", "")
    validator = RequestValidator(TWILIO_AUTH_TOKEN)
    url = str(request.url)
    base_url = public_base_url()
    if base_url:
        path_q = request.url.path
        if request.url.query:
            path_q += f"?{request.url.query}"
        url = f"{base_url}{path_q}"
    return validator.validate(url, form_data, signature)


async def _form(request: Request) -> Dict[str, str]:
    form = await request.form()
    return {k: v for k, v in form.items() if isinstance(v, str)}


@router.post("/webhooks/twilio/voice")
async def voice_webhook(request: Request):
    try:
        form = await _form(request)
        if not _validate_twilio_signature(request, form):
            logger.warning("[voice] invalid signature; rejecting call")
            return _xml(error_response())

        evt = parse_event(VoiceRequestEvent, form)
        if evt is None:
            return _xml(error_response())

        if evt.is_inbound:
            settings = await resolve_owner_by_numbers("inbound", evt.from_number, evt.to_number)
            if settings is None:
                logger.info("[voice] inbound %s to unassigned number %s", evt.call_sid, evt.to_number)
                return _xml(reject_call())
            await apply_call_event(evt)
            owner = await User.get(id=settings.user_id)
            return _xml(bridge_to_client(
                owner.client_identity,
                caller_id=evt.from_number,
                record=settings.auto_record,
                recording_callback=webhook_url(RECORDING_STATUS_PATH),
            ))

        # answered leg of a call we placed: connect the owner's softphone
        rec = await CallRecord.get_or_none(call_sid=evt.call_sid)
        if rec is None or rec.user_id is None:
            logger.warning("[voice] outbound %s has no owned record", evt.call_sid)
            return _xml(reject_call("Sorry, this call cannot be connected."))
        await apply_call_event(evt)
        owner = await User.get(id=rec.user_id)
        return _xml(bridge_to_client(owner.client_identity, caller_id=rec.from_number))
    except Exception:
        logger.exception("[voice] webhook error")
        return _xml(error_response())


@router.post("/webhooks/twilio/status")
async def call_status_webhook(request: Request):
    try:
        form = await _form(request)
        if not _validate_twilio_signature(request, form):
            logger.warning("[status] invalid signature; ignored")
            return {"success": False, "error": "twilio_signature_invalid"}
        evt = parse_event(CallStatusEvent, form)
        if evt is None:
            return {"success": False, "error": "invalid_payload"}
        await apply_call_event(evt)
        return {"success": True, "known": True}
    except UnknownProviderIdError as e:
        logger.warning("[status] %s; dropped", e)
        return {"success": True, "known": False}
    except Exception as e:
        logger.exception("[status] webhook error")
        return {"success": False, "error": str(e)}


@router.post("/webhooks/twilio/recording")
async def recording_status_webhook(request: Request):
    try:
        form = await _form(request)
        if not _validate_twilio_signature(request, form):
            logger.warning("[recording] invalid signature; ignored")
            return {"success": False, "error": "twilio_signature_invalid"}
        evt = parse_event(RecordingStatusEvent, form)
        if evt is None:
            return {"success": False, "error": "invalid_payload"}
        await apply_recording_event(evt)
        return {"success": True, "known": True}
    except UnknownProviderIdError as e:
        logger.warning("[recording] %s; dropped", e)
        return {"success": True, "known": False}
    except Exception as e:
        logger.exception("[recording] webhook error")
        return {"success": False, "error": str(e)}


@router.post("/webhooks/twilio/sms-status")
async def sms_status_webhook(request: Request):
    try:
        form = await _form(request)
        if not _validate_twilio_signature(request, form):
            logger.warning("[sms-status] invalid signature; ignored")
            return {"success": False, "error": "twilio_signature_invalid"}
        evt = parse_event(MessageStatusEvent, form)
        if evt is None:
            return {"success": False, "error": "invalid_payload"}
        await apply_delivery_status(evt)
        return {"success": True, "known": True}
    except UnknownProviderIdError as e:
        logger.warning("[sms-status] %s; dropped", e)
        return {"success": True, "known": False}
    except Exception as e:
        logger.exception("[sms-status] webhook error")
        return {"success": False, "error": str(e)}


@router.post("/webhooks/twilio/sms")
async def inbound_sms_webhook(request: Request):
    try:
        form = await _form(request)
        if not _validate_twilio_signature(request, form):
            logger.warning("[inbound] invalid signature; ignored")
            return _xml(empty_messaging_response())
        evt = parse_event(InboundSmsEvent, form)
        if evt is not None:
            await store_inbound_sms(evt)
    except Exception:
        logger.exception("[inbound] webhook error")
    return _xml(empty_messaging_response())
