# helpers/message_dispatcher.py
"""
Outbound message queue: creation, submission to the carrier, delivery-status
updates and the periodic scheduler pass.

A message row is claimed before every submission with a compare-and-set on
(status, attempt_count), so the scheduler, the sweeper and an inline
send-now can never hand the same row to the carrier twice.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional

from tortoise.exceptions import IntegrityError
from tortoise.expressions import F, Q

from helpers.config import SCHEDULER_PAGE_SIZE, SMTP_USERNAME, get_logger
from helpers.errors import ProviderError, ProviderNotConfigured, ProviderRejected, UnknownProviderIdError
from helpers.message_state import is_final, map_provider_status, should_advance
from helpers.provider_gateway import get_gateway, to_e164
from helpers.webhook_events import InboundSmsEvent, MessageStatusEvent
from models.auth import User, VoipSettings
from models.message import MessageChannel, MessageDirection, MessageStatus, OutboundMessage

logger = get_logger("message_dispatcher")


class SubmitOutcome(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    REQUEUED = "requeued"
    SKIPPED = "skipped"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_recipient(channel: MessageChannel, raw: str) -> str:
    if channel == MessageChannel.SMS:
        num = to_e164(raw)
        if not num:
            raise ValueError(f"invalid phone number: {raw!r}")
        return num
    addr = (raw or "").strip().lower()
    if "@" not in addr or addr.startswith("@") or addr.endswith("@"):
        raise ValueError(f"invalid email address: {raw!r}")
    return addr


async def _sender_address(user: User, channel: MessageChannel) -> str:
    settings = await VoipSettings.get_or_none(user_id=user.id)
    if channel == MessageChannel.SMS:
        if not settings or not settings.assigned_phone_number:
            raise ProviderNotConfigured("No phone number assigned to your account.")
        if not settings.sms_enabled:
            raise ProviderNotConfigured("SMS is disabled for your account.")
        return settings.assigned_phone_number
    addr = (settings.from_email if settings else None) or SMTP_USERNAME
    if not addr:
        raise ProviderNotConfigured("No sender email address configured.")
    return addr


async def create_message(
    user: User,
    *,
    channel: MessageChannel,
    to: str,
    body: str,
    subject: Optional[str] = None,
    scheduled_for: Optional[datetime] = None,
    delay_minutes: Optional[int] = None,
    lead_id: Optional[int] = None,
    customer_id: Optional[int] = None,
    call_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> OutboundMessage:
    """
    Queue a message. Without a schedule it is submitted right away; with one
    it waits for the scheduler pass that finds it due.
    """
    now = now or _utcnow()
    channel = MessageChannel(channel)
    to_address = normalize_recipient(channel, to)
    from_address = await _sender_address(user, channel)

    if delay_minutes is not None:
        scheduled_for = now + timedelta(minutes=delay_minutes)
    if scheduled_for is not None and scheduled_for.tzinfo is None:
        scheduled_for = scheduled_for.replace(tzinfo=timezone.utc)
    deferred = scheduled_for is not None and scheduled_for > now

    msg = await OutboundMessage.create(
        user_id=user.id,
        channel=channel,
        direction=MessageDirection.OUTBOUND,
        from_address=from_address,
        to_address=to_address,
        subject=subject,
        body=body,
        conversation_key=to_address,
        status=MessageStatus.QUEUED,
        scheduled_for=scheduled_for,
        lead_id=lead_id,
        customer_id=customer_id,
        call_id=call_id,
    )
    logger.info("[queue] created %s #%s to=%s scheduled_for=%s", channel.value, msg.id, to_address,
                scheduled_for.isoformat() if scheduled_for else None)

    if not deferred:
        await submit_message(msg, now=now)
        await msg.refresh_from_db()
    return msg


async def _claim(msg: OutboundMessage, now: datetime) -> bool:
    n = await OutboundMessage.filter(
        id=msg.id,
        status=msg.status,
        attempt_count=msg.attempt_count,
        provider_message_id__isnull=True,
    ).update(
        status=MessageStatus.SENDING,
        attempt_count=F("attempt_count") + 1,
        last_attempt_at=now,
        updated_at=now,
    )
    return n == 1


async def submit_message(
    msg: OutboundMessage,
    *,
    now: Optional[datetime] = None,
    final_attempt: bool = False,
    extra_updates: Optional[Dict] = None,
) -> SubmitOutcome:
    """
    Claim `msg` as observed and hand it to the carrier once.
    With `final_attempt`, a transient error fails the row instead of requeueing it.
    """
    now = now or _utcnow()
    if msg.status not in (MessageStatus.QUEUED, MessageStatus.SENDING) or msg.provider_message_id:
        return SubmitOutcome.SKIPPED
    if not await _claim(msg, now):
        logger.info("[queue] #%s already claimed elsewhere; skipping", msg.id)
        return SubmitOutcome.SKIPPED

    extra = dict(extra_updates or {})
    try:
        provider_id = await get_gateway().submit(msg)
    except ProviderRejected as e:
        await OutboundMessage.filter(id=msg.id, status=MessageStatus.SENDING).update(
            status=MessageStatus.FAILED, error_code=e.code, error_message=e.message, updated_at=now, **extra
        )
        logger.warning("[queue] #%s rejected code=%s msg=%s", msg.id, e.code, e.message)
        return SubmitOutcome.FAILED
    except Exception as e:
        if isinstance(e, ProviderError):
            code, text = e.code, e.message
            logger.warning("[queue] #%s transient failure: %s", msg.id, text)
        else:
            # never leave the row stranded in `sending`
            code, text = None, f"{e.__class__.__name__}: {e}"
            logger.exception("[queue] #%s unexpected submission error", msg.id)
        status = MessageStatus.FAILED if final_attempt else MessageStatus.QUEUED
        await OutboundMessage.filter(id=msg.id, status=MessageStatus.SENDING).update(
            status=status, error_code=code, error_message=text, updated_at=now, **extra
        )
        return SubmitOutcome.FAILED if final_attempt else SubmitOutcome.REQUEUED

    await OutboundMessage.filter(id=msg.id, status=MessageStatus.SENDING).update(
        status=MessageStatus.SENT,
        provider_message_id=provider_id,
        sent_at=now,
        error_code=None,
        error_message=None,
        updated_at=now,
        **extra,
    )
    logger.info("[queue] #%s sent provider_id=%s", msg.id, provider_id)
    return SubmitOutcome.SENT


async def apply_delivery_status(event: MessageStatusEvent, now: Optional[datetime] = None) -> Optional[OutboundMessage]:
    now = now or _utcnow()
    incoming = map_provider_status(event.message_status)
    if incoming is None:
        logger.info("[status] %s unmapped provider status %s; ignored", event.message_sid, event.message_status)
        return None

    for _ in range(3):
        msg = await OutboundMessage.get_or_none(provider_message_id=event.message_sid)
        if msg is None:
            raise UnknownProviderIdError("message", event.message_sid)
        if not should_advance(msg.status, incoming):
            logger.debug("[status] %s %s→%s ignored", event.message_sid, msg.status.value, incoming.value)
            return msg

        updates: Dict = {"status": incoming, "updated_at": now}
        if incoming == MessageStatus.DELIVERED:
            updates["delivered_at"] = now
        if incoming == MessageStatus.FAILED:
            updates["error_code"] = event.error_code
            updates["error_message"] = event.error_message or event.message_status
        n = await OutboundMessage.filter(id=msg.id, status=msg.status).update(**updates)
        if n:
            logger.info("[status] %s %s→%s", event.message_sid, msg.status.value, incoming.value)
            await msg.refresh_from_db()
            return msg
    return await OutboundMessage.get_or_none(provider_message_id=event.message_sid)


async def store_inbound_sms(event: InboundSmsEvent) -> OutboundMessage:
    existing = await OutboundMessage.get_or_none(provider_message_id=event.message_sid)
    if existing:
        return existing

    from_number = to_e164(event.from_number) or event.from_number
    to_number = to_e164(event.to_number) or event.to_number
    settings = await VoipSettings.get_or_none(assigned_phone_number=to_number)
    if settings is None:
        logger.warning("[inbound] SMS %s to unassigned number %s; stored without owner", event.message_sid, to_number)

    try:
        msg = await OutboundMessage.create(
            user_id=settings.user_id if settings else None,
            channel=MessageChannel.SMS,
            direction=MessageDirection.INBOUND,
            from_address=from_number,
            to_address=to_number,
            body=event.body,
            conversation_key=from_number,
            status=MessageStatus.RECEIVED,
            provider_message_id=event.message_sid,
            is_read=False,
        )
    except IntegrityError:
        return await OutboundMessage.get(provider_message_id=event.message_sid)
    logger.info("[inbound] SMS %s from=%s stored as #%s", event.message_sid, from_number, msg.id)
    return msg


async def run_scheduler_pass(now: Optional[datetime] = None, page_size: int = SCHEDULER_PAGE_SIZE) -> Dict[str, int]:
    """Submit queued, never-attempted messages whose time has come."""
    now = now or _utcnow()
    due = await (
        OutboundMessage.filter(
            Q(scheduled_for__isnull=True) | Q(scheduled_for__lte=now),
            direction=MessageDirection.OUTBOUND,
            status=MessageStatus.QUEUED,
            attempt_count=0,
        )
        .order_by("scheduled_for", "created_at", "id")
        .limit(page_size)
    )

    counts = {"due": len(due), "sent": 0, "failed": 0, "requeued": 0, "skipped": 0}
    for msg in due:
        try:
            outcome = await submit_message(msg, now=now)
            counts[outcome.value] += 1
        except Exception:
            logger.exception("[scheduler] #%s submission crashed", msg.id)
    if due:
        logger.info("[scheduler] pass: %s", counts)
    return counts


def describe(msg: OutboundMessage) -> Dict:
    return {
        "id": msg.id,
        "channel": msg.channel.value,
        "direction": msg.direction.value,
        "from": msg.from_address,
        "to": msg.to_address,
        "subject": msg.subject,
        "body": msg.body,
        "status": msg.status.value,
        "final": is_final(msg.status) if msg.status != MessageStatus.RECEIVED else True,
        "provider_message_id": msg.provider_message_id,
        "scheduled_for": msg.scheduled_for.isoformat() if msg.scheduled_for else None,
        "attempt_count": msg.attempt_count,
        "error_code": msg.error_code,
        "error_message": msg.error_message,
        "created_at": msg.created_at.isoformat() if msg.created_at else None,
        "sent_at": msg.sent_at.isoformat() if msg.sent_at else None,
        "delivered_at": msg.delivered_at.isoformat() if msg.delivered_at else None,
    }
