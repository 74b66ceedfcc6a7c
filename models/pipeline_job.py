from enum import Enum
from tortoise import fields, models


class JobKind(str, Enum):
    TRANSCRIPTION = "transcription"
    ANALYSIS = "analysis"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PipelineJob(models.Model):
    """
    Work owed on a call record. One row per (call, kind); the queued → running
    claim is what keeps a stage from executing twice.
    """
    id = fields.IntField(primary_key=True)
    call = fields.ForeignKeyField("models.CallRecord", related_name="jobs", on_delete=fields.CASCADE)
    kind = fields.CharEnumField(JobKind, max_length=16)
    status = fields.CharEnumField(JobStatus, default=JobStatus.QUEUED, max_length=12)
    error = fields.TextField(null=True)

    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)
    started_at = fields.DatetimeField(null=True)
    finished_at = fields.DatetimeField(null=True)

    class Meta:
        table = "pipeline_jobs"
        unique_together = (("call", "kind"),)
        indexes = (("status", "created_at"),)
