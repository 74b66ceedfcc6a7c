# models/call_record.py
from enum import Enum
from tortoise import fields, models
from tortoise.indexes import Index


class CallDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class CallStatus(str, Enum):
    QUEUED = "queued"
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    BUSY = "busy"
    NO_ANSWER = "no-answer"
    FAILED = "failed"
    CANCELED = "canceled"


class RecordingState(str, Enum):
    NONE = "none"
    AVAILABLE = "recording-available"


class TranscriptionState(str, Enum):
    NONE = "none"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class AnalysisState(str, Enum):
    NONE = "none"
    COMPLETED = "completed"
    FAILED = "failed"


class CallRecord(models.Model):
    id = fields.IntField(primary_key=True)

    # provider call SID, assigned once
    call_sid = fields.CharField(max_length=64, unique=True)

    user = fields.ForeignKeyField("models.User", related_name="call_records", null=True, on_delete=fields.SET_NULL)

    # CRM links (owned by the CRUD layer)
    lead_id = fields.IntField(null=True)
    customer_id = fields.IntField(null=True)
    deal_id = fields.IntField(null=True)

    direction = fields.CharEnumField(CallDirection, default=CallDirection.OUTBOUND)
    from_number = fields.CharField(max_length=32, null=True)
    to_number = fields.CharField(max_length=32, null=True)

    status = fields.CharEnumField(CallStatus, default=CallStatus.INITIATED, max_length=16)
    duration_seconds = fields.IntField(null=True)

    # recording (stage 1)
    recording_state = fields.CharEnumField(RecordingState, default=RecordingState.NONE, max_length=24)
    recording_sid = fields.CharField(max_length=64, null=True, db_index=True)
    recording_url = fields.CharField(max_length=500, null=True)
    recording_duration_seconds = fields.IntField(null=True)

    # transcription (stage 2)
    auto_transcribe = fields.BooleanField(default=True)
    transcription_state = fields.CharEnumField(TranscriptionState, default=TranscriptionState.NONE, max_length=16)
    transcription = fields.TextField(null=True)

    # analysis (stage 3)
    analysis_state = fields.CharEnumField(AnalysisState, default=AnalysisState.NONE, max_length=16)
    sentiment_score = fields.FloatField(null=True)
    sentiment_label = fields.CharField(max_length=16, null=True)
    key_topics = fields.JSONField(null=True)
    action_items = fields.JSONField(null=True)
    ai_summary = fields.TextField(null=True)

    # last pipeline failure, shown on next read
    error = fields.TextField(null=True)

    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)
    ended_at = fields.DatetimeField(null=True)
    archived_at = fields.DatetimeField(null=True)

    class Meta:
        table = "call_records"
        indexes = [
            Index(fields=["user_id", "created_at"]),
            Index(fields=["to_number"]),
            Index(fields=["from_number"]),
        ]

    def __str__(self) -> str:
        return f"<CallRecord {self.call_sid} {self.status}>"

    @property
    def external_number(self):
        return self.from_number if self.direction == CallDirection.INBOUND else self.to_number
