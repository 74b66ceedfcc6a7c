# helpers/webhook_events.py
"""
Typed envelopes for provider webhooks.

Twilio posts form-encoded bodies with CamelCase keys. Each webhook kind is
parsed into one of the models below at the route boundary; anything that
does not validate is logged and dropped by the caller instead of being
poked at field-by-field deeper in the pipeline.
"""
from __future__ import annotations

from typing import Any, Dict, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from helpers.config import get_logger

logger = get_logger("webhook_events")

CallStatusValue = Literal[
    "queued", "initiated", "ringing", "in-progress",
    "completed", "busy", "no-answer", "failed", "canceled",
]

MessageStatusValue = Literal[
    "accepted", "scheduled", "queued", "sending", "sent",
    "delivered", "undelivered", "failed", "read", "canceled",
    "receiving", "received",
]


def _blank_to_none(v: Any) -> Any:
    if isinstance(v, str) and not v.strip():
        return None
    return v


class _Envelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)


class CallStatusEvent(_Envelope):
    call_sid: str = Field(..., alias="CallSid", min_length=1)
    call_status: CallStatusValue = Field(..., alias="CallStatus")
    direction: Optional[str] = Field(None, alias="Direction")
    from_number: Optional[str] = Field(None, alias="From")
    to_number: Optional[str] = Field(None, alias="To")
    call_duration: Optional[int] = Field(None, alias="CallDuration", ge=0)
    recording_sid: Optional[str] = Field(None, alias="RecordingSid")
    recording_url: Optional[str] = Field(None, alias="RecordingUrl")
    recording_duration: Optional[int] = Field(None, alias="RecordingDuration", ge=0)

    @field_validator(
        "direction", "from_number", "to_number", "call_duration",
        "recording_sid", "recording_url", "recording_duration",
        mode="before",
    )
    @classmethod
    def none_if_blank(cls, v):
        return _blank_to_none(v)

    @field_validator("call_status", mode="before")
    @classmethod
    def lower_status(cls, v):
        return str(v or "").strip().lower()

    @property
    def is_inbound(self) -> bool:
        return (self.direction or "").lower() == "inbound"

    @property
    def has_recording(self) -> bool:
        return bool(self.recording_url)


class VoiceRequestEvent(CallStatusEvent):
    """The voice webhook Twilio fetches to learn what to do with a call."""
    call_status: CallStatusValue = Field("ringing", alias="CallStatus")


class RecordingStatusEvent(_Envelope):
    call_sid: str = Field(..., alias="CallSid", min_length=1)
    recording_sid: str = Field(..., alias="RecordingSid", min_length=1)
    recording_url: str = Field(..., alias="RecordingUrl", min_length=1)
    recording_status: str = Field("completed", alias="RecordingStatus")
    recording_duration: Optional[int] = Field(None, alias="RecordingDuration", ge=0)

    @field_validator("recording_duration", mode="before")
    @classmethod
    def none_if_blank(cls, v):
        return _blank_to_none(v)

    @property
    def is_completed(self) -> bool:
        return (self.recording_status or "").lower() == "completed"


class MessageStatusEvent(_Envelope):
    message_sid: str = Field(..., alias="MessageSid", min_length=1)
    message_status: MessageStatusValue = Field(..., alias="MessageStatus")
    error_code: Optional[str] = Field(None, alias="ErrorCode")
    error_message: Optional[str] = Field(None, alias="ErrorMessage")

    @field_validator("error_code", "error_message", mode="before")
    @classmethod
    def none_if_blank(cls, v):
        return _blank_to_none(v)

    @field_validator("message_status", mode="before")
    @classmethod
    def lower_status(cls, v):
        return str(v or "").strip().lower()


class InboundSmsEvent(_Envelope):
    message_sid: str = Field(..., alias="MessageSid", min_length=1)
    from_number: str = Field(..., alias="From", min_length=1)
    to_number: str = Field(..., alias="To", min_length=1)
    body: str = Field("", alias="Body")
    num_segments: int = Field(1, alias="NumSegments")
    num_media: int = Field(0, alias="NumMedia")

    @field_validator("num_segments", "num_media", mode="before")
    @classmethod
    def zero_if_blank(cls, v):
        return 0 if _blank_to_none(v) is None else v


def parse_event(model: type, form: Mapping[str, Any]):
    """
    Validate a webhook form into `model`. Returns None (and logs) when the
    payload does not have the expected shape.
    """
    data: Dict[str, Any] = {k: v for k, v in dict(form).items() if isinstance(v, str)}
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.warning("[webhook] rejected %s payload keys=%s errors=%s",
                       model.__name__, sorted(data.keys()), e.errors(include_url=False))
        return None
