import asyncio
from datetime import timedelta

import pytest

from helpers import stuck_sweeper
from helpers.errors import ProviderTransientError
from helpers.message_dispatcher import create_message, run_scheduler_pass
from helpers.stuck_sweeper import find_stuck, sweep_opportunistically, sweep_stuck_messages
from models.message import MessageChannel, MessageStatus, OutboundMessage
from tests.conftest import CONTACT_NUMBER, utcnow


async def _age(msg, minutes, now):
    await OutboundMessage.filter(id=msg.id).update(created_at=now - timedelta(minutes=minutes))


async def _timed_out_sms(owner, gateway, now, body="Hello"):
    gateway.errors.append(ProviderTransientError("send_sms: ReadTimeout"))
    msg = await create_message(owner, channel=MessageChannel.SMS, to=CONTACT_NUMBER, body=body, now=now)
    assert msg.status == MessageStatus.QUEUED
    return msg


@pytest.mark.asyncio
async def test_six_minute_stuck_sms_retried_once_then_failed(owner, gateway):
    now = utcnow()
    msg = await _timed_out_sms(owner, gateway, now)
    await _age(msg, 6, now)

    gateway.errors.append(ProviderTransientError("send_sms: ConnectTimeout"))
    counts = await sweep_stuck_messages(now=now)
    assert counts["processed"] == 1
    assert counts["failed"] == 1

    await msg.refresh_from_db()
    assert msg.status == MessageStatus.FAILED
    assert msg.error_message == "send_sms: ConnectTimeout"
    assert msg.sweep_attempts == 1
    assert gateway.submitted == [msg.id, msg.id]

    # nothing left for the next pass
    assert (await sweep_stuck_messages(now=now + timedelta(minutes=1)))["processed"] == 0


@pytest.mark.asyncio
async def test_stuck_sms_retry_succeeds(owner, gateway):
    now = utcnow()
    msg = await _timed_out_sms(owner, gateway, now)
    await _age(msg, 6, now)

    counts = await sweep_stuck_messages(now=now)
    assert counts["succeeded"] == 1
    await msg.refresh_from_db()
    assert msg.status == MessageStatus.SENT
    assert msg.provider_message_id is not None
    assert msg.error_message is None


@pytest.mark.asyncio
async def test_row_stuck_in_sending_is_recovered(owner, gateway):
    now = utcnow()
    msg = await _timed_out_sms(owner, gateway, now)
    # e.g. the process died mid-submission
    await OutboundMessage.filter(id=msg.id).update(
        status=MessageStatus.SENDING, last_attempt_at=now - timedelta(minutes=10)
    )
    await _age(msg, 10, now)

    await sweep_stuck_messages(now=now)
    await msg.refresh_from_db()
    assert msg.status == MessageStatus.SENT


@pytest.mark.asyncio
async def test_recent_and_recently_due_rows_are_left_alone(owner, gateway):
    now = utcnow()
    fresh = await _timed_out_sms(owner, gateway, now, body="fresh")
    await _age(fresh, 2, now)

    scheduled = await create_message(owner, channel=MessageChannel.SMS, to=CONTACT_NUMBER, body="sched",
                                     scheduled_for=now + timedelta(minutes=1), now=now)
    await _age(scheduled, 30, now)
    await OutboundMessage.filter(id=scheduled.id).update(scheduled_for=now - timedelta(minutes=2))

    assert await find_stuck(MessageChannel.SMS, now) == []
    counts = await sweep_stuck_messages(now=now)
    assert counts["processed"] == 0


@pytest.mark.asyncio
async def test_one_bad_row_does_not_abort_the_batch(owner, gateway):
    now = utcnow()
    first = await _timed_out_sms(owner, gateway, now, body="one")
    second = await _timed_out_sms(owner, gateway, now, body="two")
    await _age(first, 7, now)
    await _age(second, 6, now)

    gateway.errors.append(RuntimeError("boom"))
    counts = await sweep_stuck_messages(now=now)
    assert counts["processed"] == 2

    await first.refresh_from_db()
    await second.refresh_from_db()
    assert first.status == MessageStatus.FAILED
    assert "boom" in first.error_message
    assert second.status == MessageStatus.SENT


@pytest.mark.asyncio
async def test_batch_is_limited_per_channel(owner, gateway):
    now = utcnow()
    msgs = [await _timed_out_sms(owner, gateway, now, body=f"m{i}") for i in range(4)]
    for m in msgs:
        await _age(m, 6, now)
    counts = await sweep_stuck_messages(now=now, limit=3)
    assert counts["processed"] == 3


@pytest.mark.asyncio
async def test_opportunistic_sweep_is_throttled(owner, gateway):
    first = await sweep_opportunistically()
    second = await sweep_opportunistically()
    assert first is not None
    assert second is None
    stuck_sweeper.reset_throttle()
    assert await sweep_opportunistically() is not None


@pytest.mark.asyncio
async def test_submission_in_flight_is_not_swept(owner, gateway):
    now = utcnow()
    msg = await create_message(owner, channel=MessageChannel.SMS, to=CONTACT_NUMBER, body="after downtime",
                               scheduled_for=now + timedelta(minutes=1), now=now)
    await _age(msg, 30, now)
    await OutboundMessage.filter(id=msg.id).update(scheduled_for=now - timedelta(minutes=10))

    entered, release = asyncio.Event(), asyncio.Event()

    async def slow_submit(m):
        gateway.submitted.append(m.id)
        entered.set()
        await release.wait()
        return "SMslow"

    gateway.submit = slow_submit
    scheduler = asyncio.create_task(run_scheduler_pass(now=now))
    await entered.wait()

    counts = await sweep_stuck_messages(now=now)
    assert counts["processed"] == 0

    release.set()
    assert (await scheduler)["sent"] == 1
    await msg.refresh_from_db()
    assert gateway.submitted == [msg.id]
    assert msg.status == MessageStatus.SENT
    assert msg.provider_message_id == "SMslow"
