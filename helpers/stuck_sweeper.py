# helpers/stuck_sweeper.py
"""
Recovery for outbound messages that never reached the carrier.

A row is stuck when it is `queued` or `sending`, has no provider ID, was
created more than STALE_MESSAGE_MINUTES ago and (if scheduled) became due
more than STALE_MESSAGE_MINUTES ago. A `sending` row also needs its last
claim to be that old, so a submission still in flight is left alone. Each
stuck row gets one resubmission per pass; once it has used MAX_SWEEP_ATTEMPTS
it is failed with the last error instead of being requeued.
"""
from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from tortoise.expressions import F, Q

from helpers.config import MAX_SWEEP_ATTEMPTS, STALE_MESSAGE_MINUTES, SWEEP_BATCH_LIMIT, SWEEP_MIN_INTERVAL_SECONDS, get_logger
from helpers.message_dispatcher import SubmitOutcome, submit_message
from models.message import MessageChannel, MessageDirection, MessageStatus, OutboundMessage

logger = get_logger("stuck_sweeper")

_last_run_monotonic: Optional[float] = None
_sweep_lock = asyncio.Lock()


async def find_stuck(channel: MessageChannel, now: datetime, limit: int = SWEEP_BATCH_LIMIT) -> List[OutboundMessage]:
    cutoff = now - timedelta(minutes=STALE_MESSAGE_MINUTES)
    # a `sending` row is only abandoned once its last claim is stale too
    abandoned = Q(status=MessageStatus.QUEUED) | (
        Q(status=MessageStatus.SENDING)
        & (Q(last_attempt_at__isnull=True) | Q(last_attempt_at__lt=cutoff))
    )
    return await (
        OutboundMessage.filter(
            Q(scheduled_for__isnull=True) | Q(scheduled_for__lt=cutoff),
            abandoned,
            channel=channel,
            direction=MessageDirection.OUTBOUND,
            provider_message_id__isnull=True,
            created_at__lt=cutoff,
        )
        .order_by("created_at", "id")
        .limit(limit)
    )


async def sweep_stuck_messages(now: Optional[datetime] = None, limit: int = SWEEP_BATCH_LIMIT) -> Dict[str, int]:
    now = now or datetime.now(timezone.utc)
    counts = {"processed": 0, "succeeded": 0, "failed": 0, "requeued": 0, "skipped": 0}

    for channel in MessageChannel:
        stuck = await find_stuck(channel, now, limit)
        if stuck:
            logger.info("[sweeper] %d stuck %s message(s)", len(stuck), channel.value)
        for msg in stuck:
            counts["processed"] += 1
            try:
                final = msg.sweep_attempts + 1 >= MAX_SWEEP_ATTEMPTS
                outcome = await submit_message(
                    msg,
                    now=now,
                    final_attempt=final,
                    extra_updates={"sweep_attempts": F("sweep_attempts") + 1},
                )
            except Exception:
                # one bad row must not stop the batch
                logger.exception("[sweeper] #%s retry crashed", msg.id)
                counts["failed"] += 1
                continue
            if outcome == SubmitOutcome.SENT:
                counts["succeeded"] += 1
            elif outcome == SubmitOutcome.FAILED:
                counts["failed"] += 1
            elif outcome == SubmitOutcome.REQUEUED:
                counts["requeued"] += 1
            else:
                counts["skipped"] += 1

    if counts["processed"]:
        logger.info("[sweeper] pass: %s", counts)
    return counts


async def sweep_opportunistically(now: Optional[datetime] = None) -> Optional[Dict[str, int]]:
    """
    Triggered by user activity. Runs at most once per SWEEP_MIN_INTERVAL_SECONDS;
    returns None when throttled or another sweep is in flight.
    """
    global _last_run_monotonic
    mono = time.monotonic()
    if _last_run_monotonic is not None and mono - _last_run_monotonic < SWEEP_MIN_INTERVAL_SECONDS:
        return None
    if _sweep_lock.locked():
        return None
    async with _sweep_lock:
        _last_run_monotonic = time.monotonic()
        return await sweep_stuck_messages(now)


def reset_throttle() -> None:
    global _last_run_monotonic
    _last_run_monotonic = None
