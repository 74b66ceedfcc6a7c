from datetime import timedelta

import pytest

from helpers.errors import ProviderNotConfigured, ProviderRejected, ProviderTransientError, UnknownProviderIdError
from helpers.message_dispatcher import apply_delivery_status, create_message, run_scheduler_pass, store_inbound_sms
from helpers.message_state import map_provider_status, should_advance
from helpers.webhook_events import InboundSmsEvent, MessageStatusEvent
from models.auth import VoipSettings
from models.message import MessageChannel, MessageDirection, MessageStatus, OutboundMessage
from tests.conftest import CONTACT_NUMBER, OWNER_NUMBER, utcnow


def delivery(sid, status, **extra):
    return MessageStatusEvent.model_validate({"MessageSid": sid, "MessageStatus": status, **extra})


@pytest.mark.asyncio
async def test_send_now_is_submitted_inline(owner, gateway):
    msg = await create_message(owner, channel=MessageChannel.SMS, to="(415) 555-0123", body="Hello")
    assert msg.status == MessageStatus.SENT
    assert msg.to_address == CONTACT_NUMBER
    assert msg.from_address == OWNER_NUMBER
    assert msg.conversation_key == CONTACT_NUMBER
    assert msg.provider_message_id.startswith("SM")
    assert msg.sent_at is not None
    assert msg.attempt_count == 1
    assert gateway.submitted == [msg.id]


@pytest.mark.asyncio
async def test_provider_rejection_is_kept_verbatim(owner, gateway):
    gateway.errors.append(ProviderRejected("The 'To' number is not a valid phone number.", code="21211", status=400))
    msg = await create_message(owner, channel=MessageChannel.SMS, to=CONTACT_NUMBER, body="Hello")
    assert msg.status == MessageStatus.FAILED
    assert msg.error_code == "21211"
    assert msg.error_message == "The 'To' number is not a valid phone number."
    assert msg.provider_message_id is None


@pytest.mark.asyncio
async def test_transient_error_leaves_message_queued(owner, gateway):
    gateway.errors.append(ProviderTransientError("send_sms: ReadTimeout"))
    msg = await create_message(owner, channel=MessageChannel.SMS, to=CONTACT_NUMBER, body="Hello")
    assert msg.status == MessageStatus.QUEUED
    assert msg.attempt_count == 1
    assert "ReadTimeout" in msg.error_message

    # already attempted once: the scheduler leaves it to the sweeper
    counts = await run_scheduler_pass()
    assert counts["due"] == 0


@pytest.mark.asyncio
async def test_email_uses_sender_from_settings(owner, gateway):
    msg = await create_message(owner, channel=MessageChannel.EMAIL, to="Lead@Example.com",
                               subject="Proposal", body="Attached.")
    assert msg.status == MessageStatus.SENT
    assert msg.to_address == "lead@example.com"
    assert msg.from_address == "sam@example.com"


@pytest.mark.asyncio
async def test_invalid_recipient_is_rejected_before_queueing(owner, gateway):
    with pytest.raises(ValueError):
        await create_message(owner, channel=MessageChannel.SMS, to="not-a-number", body="x")
    with pytest.raises(ValueError):
        await create_message(owner, channel=MessageChannel.EMAIL, to="nobody", subject="s", body="x")
    assert await OutboundMessage.all().count() == 0


@pytest.mark.asyncio
async def test_sms_requires_an_assigned_number(owner, gateway):
    await VoipSettings.filter(user_id=owner.id).update(assigned_phone_number=None)
    with pytest.raises(ProviderNotConfigured):
        await create_message(owner, channel=MessageChannel.SMS, to=CONTACT_NUMBER, body="x")


@pytest.mark.asyncio
async def test_scheduled_sms_goes_out_on_the_tenth_minutely_pass(owner, gateway):
    t0 = utcnow()
    msg = await create_message(owner, channel=MessageChannel.SMS, to=CONTACT_NUMBER, body="Later",
                               delay_minutes=10, now=t0)
    assert msg.status == MessageStatus.QUEUED
    assert gateway.submitted == []

    for minute in range(1, 10):
        await run_scheduler_pass(now=t0 + timedelta(minutes=minute))
        assert gateway.submitted == [], f"submitted early on pass {minute}"

    await run_scheduler_pass(now=t0 + timedelta(minutes=10))
    await msg.refresh_from_db()
    assert gateway.submitted == [msg.id]
    assert msg.status == MessageStatus.SENT

    await run_scheduler_pass(now=t0 + timedelta(minutes=11))
    assert gateway.submitted == [msg.id]


@pytest.mark.asyncio
async def test_past_schedule_is_due_on_next_pass(owner, gateway):
    t0 = utcnow()
    msg = await create_message(owner, channel=MessageChannel.SMS, to=CONTACT_NUMBER, body="Late",
                               scheduled_for=t0 - timedelta(minutes=3), now=t0)
    # not deferred, so it went out inline
    assert msg.status == MessageStatus.SENT


@pytest.mark.asyncio
async def test_scheduler_respects_page_size_and_due_order(owner, gateway):
    t0 = utcnow()
    ids = []
    for delay in (3, 1, 2):
        m = await create_message(owner, channel=MessageChannel.SMS, to=CONTACT_NUMBER, body=f"d{delay}",
                                 delay_minutes=delay, now=t0)
        ids.append((delay, m.id))
    counts = await run_scheduler_pass(now=t0 + timedelta(minutes=5), page_size=2)
    assert counts["sent"] == 2
    expected = [i for _, i in sorted(ids)][:2]
    assert gateway.submitted == expected


@pytest.mark.asyncio
async def test_delivery_status_only_moves_forward(owner, gateway):
    msg = await create_message(owner, channel=MessageChannel.SMS, to=CONTACT_NUMBER, body="Hi")
    sid = msg.provider_message_id

    await apply_delivery_status(delivery(sid, "delivered"))
    stale = await apply_delivery_status(delivery(sid, "sent"))
    assert stale.status == MessageStatus.DELIVERED
    late_fail = await apply_delivery_status(delivery(sid, "undelivered", ErrorCode="30003"))
    assert late_fail.status == MessageStatus.DELIVERED
    assert late_fail.delivered_at is not None


@pytest.mark.asyncio
async def test_undelivered_maps_to_failed_with_provider_error(owner, gateway):
    msg = await create_message(owner, channel=MessageChannel.SMS, to=CONTACT_NUMBER, body="Hi")
    out = await apply_delivery_status(delivery(msg.provider_message_id, "undelivered",
                                               ErrorCode="30003", ErrorMessage="Unreachable destination handset"))
    assert out.status == MessageStatus.FAILED
    assert out.error_code == "30003"
    assert out.error_message == "Unreachable destination handset"


@pytest.mark.asyncio
async def test_status_for_unknown_message_is_dropped(owner):
    with pytest.raises(UnknownProviderIdError):
        await apply_delivery_status(delivery("SMdoesnotexist", "delivered"))


def test_status_vocabulary():
    assert map_provider_status("read") == MessageStatus.DELIVERED
    assert map_provider_status("canceled") == MessageStatus.FAILED
    assert map_provider_status("accepted") == MessageStatus.QUEUED
    assert map_provider_status("receiving") is None
    assert should_advance(MessageStatus.SENDING, MessageStatus.SENT)
    assert not should_advance(MessageStatus.FAILED, MessageStatus.DELIVERED)
    assert not should_advance(MessageStatus.SENT, MessageStatus.SENT)


@pytest.mark.asyncio
async def test_inbound_sms_is_stored_once(owner):
    evt = InboundSmsEvent.model_validate({
        "MessageSid": "SMin1", "From": CONTACT_NUMBER, "To": OWNER_NUMBER, "Body": "Call me back",
    })
    first = await store_inbound_sms(evt)
    second = await store_inbound_sms(evt)
    assert first.id == second.id
    assert first.direction == MessageDirection.INBOUND
    assert first.status == MessageStatus.RECEIVED
    assert first.user_id == owner.id
    assert first.conversation_key == CONTACT_NUMBER
    assert first.is_read is False
