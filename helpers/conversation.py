# helpers/conversation.py
"""Unified timeline of calls and messages with one external party."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from tortoise.expressions import Q

from helpers.config import get_logger
from helpers.provider_gateway import to_e164
from models.auth import User
from models.call_record import CallRecord
from models.message import OutboundMessage

logger = get_logger("conversation")

KIND_ORDER = {"call": 0, "sms": 1, "email": 2}


def normalize_contact_key(raw: str) -> str:
    s = (raw or "").strip()
    if "@" in s:
        return s.lower()
    return to_e164(s) or s


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _call_entry(rec: CallRecord) -> Dict[str, Any]:
    return {
        "kind": "call",
        "id": rec.id,
        "created_at": rec.created_at,
        "direction": rec.direction.value,
        "status": rec.status.value,
        "call_sid": rec.call_sid,
        "duration_seconds": rec.duration_seconds,
        "recording_available": rec.recording_state.value == "recording-available",
        "transcription_state": rec.transcription_state.value,
        "analysis_state": rec.analysis_state.value,
        "summary": rec.ai_summary,
        "sentiment_label": rec.sentiment_label,
    }


def _message_entry(msg: OutboundMessage) -> Dict[str, Any]:
    return {
        "kind": msg.channel.value,
        "id": msg.id,
        "created_at": msg.created_at,
        "direction": msg.direction.value,
        "status": msg.status.value,
        "subject": msg.subject,
        "body": msg.body,
        "scheduled_for": _iso(msg.scheduled_for),
        "error_message": msg.error_message,
    }


async def get_conversation(user: User, contact_key: str, *, limit: int = 200) -> List[Dict[str, Any]]:
    """
    Everything exchanged with `contact_key` (phone number or email address),
    oldest first. Ties on timestamp order calls before SMS before email, then by id.
    Admins see all users' items.
    """
    key = normalize_contact_key(contact_key)

    calls_q = CallRecord.filter(Q(from_number=key) | Q(to_number=key), archived_at__isnull=True)
    msgs_q = OutboundMessage.filter(conversation_key=key)
    if not user.is_admin:
        calls_q = calls_q.filter(user_id=user.id)
        msgs_q = msgs_q.filter(user_id=user.id)

    calls = await calls_q.order_by("-created_at").limit(limit)
    msgs = await msgs_q.order_by("-created_at").limit(limit)

    # a call matched on the local number is not part of this thread
    entries = [_call_entry(c) for c in calls if c.external_number == key]
    entries += [_message_entry(m) for m in msgs]
    entries.sort(key=lambda e: (e["created_at"], KIND_ORDER.get(e["kind"], 9), e["id"]))
    entries = entries[-limit:]

    for e in entries:
        e["created_at"] = _iso(e["created_at"])
    logger.debug("[conversation] user=%s key=%s items=%d", user.id, key, len(entries))
    return entries
