# helpers/voice_markup.py
from typing import Optional

from twilio.twiml.messaging_response import MessagingResponse
from twilio.twiml.voice_response import Dial, VoiceResponse

from helpers.config import CALL_RING_TIMEOUT_SECONDS

UNKNOWN_NUMBER_MESSAGE = "Sorry, this number is not currently in service."
ERROR_MESSAGE = "Sorry, an error occurred. Please try again."


def reject_call(message: str = UNKNOWN_NUMBER_MESSAGE) -> str:
    vr = VoiceResponse()
    vr.say(message, voice="alice")
    vr.hangup()
    return str(vr)


def error_response() -> str:
    return reject_call(ERROR_MESSAGE)


def bridge_to_client(
    identity: str,
    *,
    caller_id: Optional[str] = None,
    record: bool = False,
    recording_callback: Optional[str] = None,
) -> str:
    """Ring the owner's softphone. Recording on the <Dial> is only used for inbound legs."""
    vr = VoiceResponse()
    kwargs = {"timeout": CALL_RING_TIMEOUT_SECONDS}
    if caller_id:
        kwargs["caller_id"] = caller_id
    if record:
        kwargs["record"] = "record-from-answer"
        if recording_callback:
            kwargs["recording_status_callback"] = recording_callback
            kwargs["recording_status_callback_event"] = "completed"
    dial = Dial(**kwargs)
    dial.client(identity)
    vr.append(dial)
    return str(vr)


def empty_messaging_response() -> str:
    return str(MessagingResponse())
