# helpers/call_ledger.py
"""
Applies call state-machine plans to `CallRecord` rows.

Every write is a compare-and-set on the columns the plan was computed from
(status, recording state, transcription state). When another webhook for the
same call got there first the update touches zero rows; we re-read, re-plan
and try again. Two concurrent deliveries therefore serialize into the same
result as delivering them one after the other.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Tuple

from tortoise.exceptions import IntegrityError

from helpers.call_state_machine import (
    CallPlan,
    CallSnapshot,
    plan_call_event,
    plan_recording_event,
    plan_transcription_request,
)
from helpers.config import get_logger
from helpers.errors import UnknownProviderIdError
from helpers.webhook_events import CallStatusEvent, RecordingStatusEvent
from models.auth import User, VoipSettings
from models.call_record import (
    AnalysisState,
    CallDirection,
    CallRecord,
    CallStatus,
    TranscriptionState,
)
from models.pipeline_job import JobKind

logger = get_logger("call_ledger")

MAX_CAS_ROUNDS = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TranscriptionNotAllowed(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


async def resolve_owner_by_numbers(
    direction: Optional[str], from_number: Optional[str], to_number: Optional[str]
) -> Optional[VoipSettings]:
    """
    Owner of a call we have never seen: the user whose assigned number is the
    local side (To for inbound, From for outbound).
    """
    inbound = (direction or "inbound").strip().lower() == "inbound"
    local = to_number if inbound else from_number
    if not local:
        return None
    return await VoipSettings.get_or_none(assigned_phone_number=local)


async def _enqueue_transcription(call_id: int) -> None:
    from helpers.pipeline_jobs import enqueue_job

    await enqueue_job(call_id, JobKind.TRANSCRIPTION)


async def _compare_and_set(rec: CallRecord, snap: CallSnapshot, plan: CallPlan, now: datetime) -> bool:
    n = await CallRecord.filter(
        id=rec.id,
        status=snap.status,
        recording_state=snap.recording_state,
        transcription_state=snap.transcription_state,
    ).update(**plan.updates, updated_at=now)
    return n == 1


async def apply_call_event(event: CallStatusEvent, now: Optional[datetime] = None) -> Optional[CallRecord]:
    """
    Fold one call-status webhook into the ledger and return the current record.
    Raises UnknownProviderIdError when the call is unknown and no owner can be
    resolved from its numbers.
    """
    now = now or _utcnow()

    for _ in range(MAX_CAS_ROUNDS):
        rec = await CallRecord.get_or_none(call_sid=event.call_sid)
        snap = CallSnapshot.from_record(rec) if rec else None

        owner: Optional[VoipSettings] = None
        if rec is None:
            owner = await resolve_owner_by_numbers(event.direction, event.from_number, event.to_number)
            if owner is None:
                raise UnknownProviderIdError("call", event.call_sid)

        plan = plan_call_event(
            snap,
            call_sid=event.call_sid,
            status=event.call_status,
            direction=event.direction,
            from_number=event.from_number,
            to_number=event.to_number,
            duration=event.call_duration,
            recording_sid=event.recording_sid,
            recording_url=event.recording_url,
            recording_duration=event.recording_duration,
            auto_transcribe=owner.auto_transcribe if owner else True,
            now=now,
        )

        if plan.create:
            try:
                rec = await CallRecord.create(user_id=owner.user_id, **plan.updates)
            except IntegrityError:
                logger.info("[call] %s created concurrently; re-planning", event.call_sid)
                continue
            logger.info("[call] created %s status=%s from webhook", rec.call_sid, rec.status.value)
        elif plan.is_noop:
            logger.debug("[call] %s %s ignored (%s)", event.call_sid, event.call_status, plan.reason)
            return rec
        elif not await _compare_and_set(rec, snap, plan, now):
            logger.info("[call] %s changed underneath us; re-planning", event.call_sid)
            continue
        else:
            logger.info("[call] %s %s", event.call_sid, plan.reason)

        if plan.enqueue_transcription:
            await _enqueue_transcription(rec.id)
        return await CallRecord.get(id=rec.id)

    logger.error("[call] %s gave up after %d contended updates", event.call_sid, MAX_CAS_ROUNDS)
    return await CallRecord.get_or_none(call_sid=event.call_sid)


async def apply_recording_event(event: RecordingStatusEvent, now: Optional[datetime] = None) -> Optional[CallRecord]:
    now = now or _utcnow()
    if not event.is_completed:
        logger.info("[recording] %s status=%s ignored", event.recording_sid, event.recording_status)
        return None

    for _ in range(MAX_CAS_ROUNDS):
        rec = await CallRecord.get_or_none(call_sid=event.call_sid)
        if rec is None:
            raise UnknownProviderIdError("call", event.call_sid)
        snap = CallSnapshot.from_record(rec)
        plan = plan_recording_event(
            snap,
            recording_sid=event.recording_sid,
            recording_url=event.recording_url,
            recording_duration=event.recording_duration,
        )
        if plan.is_noop:
            return rec
        if not await _compare_and_set(rec, snap, plan, now):
            continue
        logger.info("[recording] %s available for %s", event.recording_sid, event.call_sid)
        if plan.enqueue_transcription:
            await _enqueue_transcription(rec.id)
        return await CallRecord.get(id=rec.id)

    return await CallRecord.get_or_none(call_sid=event.call_sid)


async def register_placed_call(
    user: User,
    *,
    call_sid: str,
    from_number: str,
    to_number: str,
    auto_transcribe: bool,
    lead_id: Optional[int] = None,
    customer_id: Optional[int] = None,
    deal_id: Optional[int] = None,
) -> CallRecord:
    """
    Record an outbound call the provider just accepted. A status webhook may
    have beaten us here; in that case the existing row keeps its status and
    we only attach the owner and CRM links.
    """
    links = {"lead_id": lead_id, "customer_id": customer_id, "deal_id": deal_id}
    try:
        rec = await CallRecord.create(
            call_sid=call_sid,
            user_id=user.id,
            direction=CallDirection.OUTBOUND,
            from_number=from_number,
            to_number=to_number,
            status=CallStatus.INITIATED,
            auto_transcribe=auto_transcribe,
            **links,
        )
        logger.info("[call] placed %s user=%s to=%s", call_sid, user.id, to_number)
        return rec
    except IntegrityError:
        pass

    rec = await CallRecord.get(call_sid=call_sid)
    patch = {k: v for k, v in links.items() if v is not None and getattr(rec, k) is None}
    if rec.user_id is None:
        patch["user_id"] = user.id
    if patch:
        await CallRecord.filter(id=rec.id).update(**patch, updated_at=_utcnow())
        await rec.refresh_from_db()
    logger.info("[call] placed %s merged with webhook-created record", call_sid)
    return rec


async def request_transcription(rec: CallRecord, now: Optional[datetime] = None) -> Tuple[CallRecord, CallPlan]:
    """Manual transcription request. Raises TranscriptionNotAllowed when not in a startable state."""
    now = now or _utcnow()
    for _ in range(MAX_CAS_ROUNDS):
        await rec.refresh_from_db()
        snap = CallSnapshot.from_record(rec)
        plan = plan_transcription_request(snap)
        if plan.is_noop:
            raise TranscriptionNotAllowed(plan.reason)
        if await _compare_and_set(rec, snap, plan, now):
            await _enqueue_transcription(rec.id)
            await rec.refresh_from_db()
            return rec, plan
    raise TranscriptionNotAllowed("contended")


async def mark_stage_failed(call_id: int, kind: JobKind, reason: str) -> None:
    now = _utcnow()
    if kind == JobKind.TRANSCRIPTION:
        await CallRecord.filter(
            id=call_id,
            transcription_state__in=[TranscriptionState.PENDING, TranscriptionState.PROCESSING],
        ).update(transcription_state=TranscriptionState.FAILED, error=reason, updated_at=now)
    else:
        await CallRecord.filter(id=call_id, analysis_state=AnalysisState.NONE).update(
            analysis_state=AnalysisState.FAILED, error=reason, updated_at=now
        )
    logger.warning("[pipeline] %s failed for call_id=%s: %s", kind.value, call_id, reason)
