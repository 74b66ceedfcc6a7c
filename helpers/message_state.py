# helpers/message_state.py
"""Delivery-status ordering for outbound messages."""
from typing import Optional

from models.message import MessageStatus

MESSAGE_RANK = {
    MessageStatus.QUEUED: 0,
    MessageStatus.SENDING: 1,
    MessageStatus.SENT: 2,
    MessageStatus.DELIVERED: 3,
    MessageStatus.FAILED: 3,
}

# provider vocabulary → ours
PROVIDER_STATUS_MAP = {
    "accepted": MessageStatus.QUEUED,
    "scheduled": MessageStatus.QUEUED,
    "queued": MessageStatus.QUEUED,
    "sending": MessageStatus.SENDING,
    "sent": MessageStatus.SENT,
    "delivered": MessageStatus.DELIVERED,
    "read": MessageStatus.DELIVERED,
    "failed": MessageStatus.FAILED,
    "undelivered": MessageStatus.FAILED,
    "canceled": MessageStatus.FAILED,
}


def map_provider_status(raw: Optional[str]) -> Optional[MessageStatus]:
    return PROVIDER_STATUS_MAP.get((raw or "").strip().lower())


def is_final(status: MessageStatus) -> bool:
    return MESSAGE_RANK.get(MessageStatus(status), -1) == 3


def should_advance(current: MessageStatus, incoming: MessageStatus) -> bool:
    """
    True when `incoming` is strictly later than `current`. delivered and failed
    share the top rank, so whichever arrives first sticks.
    """
    cur = MESSAGE_RANK.get(MessageStatus(current))
    new = MESSAGE_RANK.get(MessageStatus(incoming))
    if cur is None or new is None:
        return False
    return new > cur
