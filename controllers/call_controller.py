from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from tortoise.expressions import Q

from helpers.call_ledger import TranscriptionNotAllowed, register_placed_call, request_transcription
from helpers.config import get_logger
from helpers.errors import ProviderError, ProviderNotConfigured, ProviderRejected
from helpers.provider_gateway import get_gateway, issue_voice_token, to_e164
from helpers.token_helper import get_current_user
from models.auth import User, VoipSettings
from models.call_record import CallRecord, CallStatus, RecordingState

logger = get_logger("call_controller")

router = APIRouter()


class PlaceCallRequest(BaseModel):
    to_number: str = Field(..., min_length=3)
    lead_id: Optional[int] = None
    customer_id: Optional[int] = None
    deal_id: Optional[int] = None


def provider_http_error(e: ProviderError) -> HTTPException:
    if isinstance(e, ProviderNotConfigured):
        return HTTPException(status_code=400, detail=e.message)
    if isinstance(e, ProviderRejected):
        return HTTPException(status_code=400, detail={"provider_error": {"code": e.code, "message": e.message}})
    return HTTPException(status_code=502, detail=f"Provider unavailable: {e.message}")


def serialize_call(rec: CallRecord) -> dict:
    return {
        "id": rec.id,
        "call_sid": rec.call_sid,
        "direction": rec.direction.value,
        "from_number": rec.from_number,
        "to_number": rec.to_number,
        "status": rec.status.value,
        "duration_seconds": rec.duration_seconds,
        "lead_id": rec.lead_id,
        "customer_id": rec.customer_id,
        "deal_id": rec.deal_id,
        "recording_state": rec.recording_state.value,
        "recording_sid": rec.recording_sid,
        "recording_duration_seconds": rec.recording_duration_seconds,
        "transcription_state": rec.transcription_state.value,
        "transcription": rec.transcription,
        "analysis_state": rec.analysis_state.value,
        "sentiment_score": rec.sentiment_score,
        "sentiment_label": rec.sentiment_label,
        "key_topics": rec.key_topics,
        "action_items": rec.action_items,
        "ai_summary": rec.ai_summary,
        "error": rec.error,
        "created_at": rec.created_at.isoformat() if rec.created_at else None,
        "ended_at": rec.ended_at.isoformat() if rec.ended_at else None,
    }


async def _owned_call(call_sid: str, user: User) -> CallRecord:
    rec = await CallRecord.get_or_none(call_sid=call_sid)
    if not rec or (rec.user_id != user.id and not user.is_admin):
        raise HTTPException(status_code=404, detail="Call not found")
    return rec


@router.post("/calls")
async def place_call(payload: PlaceCallRequest, user: Annotated[User, Depends(get_current_user)]):
    to_number = to_e164(payload.to_number)
    if not to_number:
        raise HTTPException(status_code=400, detail="Invalid phone number")

    settings = await VoipSettings.get_or_none(user_id=user.id)
    if not settings or not settings.assigned_phone_number:
        raise HTTPException(
            status_code=400,
            detail="No phone number assigned to your account. Please contact an administrator.",
        )
    from_number = settings.outbound_caller_id

    try:
        placed = await get_gateway().place_call(to_number=to_number, from_number=from_number, record=settings.auto_record)
    except ProviderError as e:
        logger.warning("[call] place_call user=%s to=%s failed: %s", user.id, to_number, e.message)
        raise provider_http_error(e)

    rec = await register_placed_call(
        user,
        call_sid=placed.sid,
        from_number=from_number,
        to_number=to_number,
        auto_transcribe=settings.auto_transcribe,
        lead_id=payload.lead_id,
        customer_id=payload.customer_id,
        deal_id=payload.deal_id,
    )
    return {"success": True, "call_sid": placed.sid, "call_id": rec.id}


@router.post("/calls/{call_sid}/end")
async def end_call(call_sid: str, user: Annotated[User, Depends(get_current_user)]):
    rec = await _owned_call(call_sid, user)
    try:
        await get_gateway().end_call(rec.call_sid)
    except ProviderError as e:
        raise provider_http_error(e)
    # the terminal status itself arrives through the status webhook
    return {"success": True, "call_sid": rec.call_sid}


@router.get("/calls")
async def list_calls(
    user: Annotated[User, Depends(get_current_user)],
    status: Optional[CallStatus] = None,
    number: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> List[dict]:
    q = CallRecord.filter(user_id=user.id, archived_at__isnull=True)
    if status:
        q = q.filter(status=status)
    if number:
        n = to_e164(number) or number
        q = q.filter(Q(from_number=n) | Q(to_number=n))
    rows = await q.order_by("-created_at").offset(offset).limit(limit)
    return [serialize_call(r) for r in rows]


@router.get("/calls/token")
async def voice_token(user: Annotated[User, Depends(get_current_user)]):
    settings = await VoipSettings.get_or_none(user_id=user.id)
    try:
        token = issue_voice_token(user.client_identity)
    except ProviderError as e:
        raise provider_http_error(e)
    return {
        "token": token,
        "identity": user.client_identity,
        "phone_number": settings.assigned_phone_number if settings else None,
        "user_id": user.id,
    }


@router.get("/calls/{call_sid}")
async def get_call(call_sid: str, user: Annotated[User, Depends(get_current_user)]):
    return serialize_call(await _owned_call(call_sid, user))


@router.post("/calls/{call_sid}/transcription")
async def request_call_transcription(call_sid: str, user: Annotated[User, Depends(get_current_user)]):
    rec = await _owned_call(call_sid, user)
    try:
        rec, _ = await request_transcription(rec)
    except TranscriptionNotAllowed as e:
        raise HTTPException(status_code=409, detail=f"Transcription cannot be requested ({e.reason})")
    return {"success": True, "transcription_state": rec.transcription_state.value}


@router.get("/recordings/{sid}")
async def proxy_recording(sid: str, user: Annotated[User, Depends(get_current_user)]):
    """Streams a call recording through our credentials; accepts a recording SID or a call SID."""
    rec = await CallRecord.get_or_none(recording_sid=sid)
    if rec is None:
        rec = await CallRecord.get_or_none(call_sid=sid)
    if rec is None or rec.recording_state != RecordingState.AVAILABLE or not rec.recording_url:
        raise HTTPException(status_code=404, detail="Recording not found")
    if rec.user_id != user.id and not user.is_admin:
        raise HTTPException(status_code=403, detail="Not allowed to access this recording")

    stream = get_gateway().stream_recording(rec.recording_url)
    try:
        first = await stream.__anext__()
    except StopAsyncIteration:
        first = b""
    except ProviderError as e:
        logger.warning("[recording] proxy %s failed: %s", sid, e.message)
        raise HTTPException(status_code=502, detail="Failed to fetch recording")

    async def body():
        yield first
        async for chunk in stream:
            yield chunk

    return StreamingResponse(
        body(),
        media_type="audio/mpeg",
        headers={"Cache-Control": "private, max-age=3600"},
    )
