# helpers/call_state_machine.py
"""
Call lifecycle rules as pure functions.

A webhook never writes columns directly. It is turned into a `CallPlan`
computed from an immutable `CallSnapshot` of the row; `helpers.call_ledger`
then applies the plan with one compare-and-set update. Nothing here touches
the database, so the ordering rules can be tested exhaustively.

Primary status only moves forward:

    queued/initiated (0) → ringing (1) → in-progress (2) → terminal (3)

Terminal statuses (completed, busy, no-answer, failed, canceled) are final;
a second terminal status is ignored just like a stale earlier one. Sub-state
tracks (recording, transcription, analysis) advance independently.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from models.call_record import (
    AnalysisState,
    CallDirection,
    CallRecord,
    CallStatus,
    RecordingState,
    TranscriptionState,
)

STATUS_RANK: Dict[CallStatus, int] = {
    CallStatus.QUEUED: 0,
    CallStatus.INITIATED: 0,
    CallStatus.RINGING: 1,
    CallStatus.IN_PROGRESS: 2,
    CallStatus.COMPLETED: 3,
    CallStatus.BUSY: 3,
    CallStatus.NO_ANSWER: 3,
    CallStatus.FAILED: 3,
    CallStatus.CANCELED: 3,
}

TERMINAL_STATUSES = frozenset(s for s, r in STATUS_RANK.items() if r == 3)

TRANSCRIPTION_RANK: Dict[TranscriptionState, int] = {
    TranscriptionState.NONE: 0,
    TranscriptionState.PENDING: 1,
    TranscriptionState.PROCESSING: 2,
    TranscriptionState.COMPLETED: 3,
    TranscriptionState.FAILED: 3,
}

# transcription may start only from these
TRANSCRIBABLE_STATES = frozenset({TranscriptionState.NONE, TranscriptionState.PENDING})


def status_rank(status) -> int:
    return STATUS_RANK[CallStatus(status)]


def is_terminal(status) -> bool:
    return CallStatus(status) in TERMINAL_STATUSES


def normalize_direction(raw: Optional[str]) -> Optional[CallDirection]:
    """Twilio reports inbound, outbound-api or outbound-dial."""
    v = (raw or "").strip().lower()
    if not v:
        return None
    return CallDirection.INBOUND if v == "inbound" else CallDirection.OUTBOUND


@dataclass(frozen=True)
class CallSnapshot:
    call_sid: str
    status: CallStatus
    direction: CallDirection = CallDirection.OUTBOUND
    from_number: Optional[str] = None
    to_number: Optional[str] = None
    duration_seconds: Optional[int] = None
    ended_at: Optional[datetime] = None
    recording_state: RecordingState = RecordingState.NONE
    recording_sid: Optional[str] = None
    recording_url: Optional[str] = None
    auto_transcribe: bool = True
    transcription_state: TranscriptionState = TranscriptionState.NONE
    analysis_state: AnalysisState = AnalysisState.NONE

    @classmethod
    def from_record(cls, rec: CallRecord) -> "CallSnapshot":
        return cls(
            call_sid=rec.call_sid,
            status=CallStatus(rec.status),
            direction=CallDirection(rec.direction),
            from_number=rec.from_number,
            to_number=rec.to_number,
            duration_seconds=rec.duration_seconds,
            ended_at=rec.ended_at,
            recording_state=RecordingState(rec.recording_state),
            recording_sid=rec.recording_sid,
            recording_url=rec.recording_url,
            auto_transcribe=bool(rec.auto_transcribe),
            transcription_state=TranscriptionState(rec.transcription_state),
            analysis_state=AnalysisState(rec.analysis_state),
        )


@dataclass(frozen=True)
class CallPlan:
    create: bool = False
    updates: Dict[str, Any] = field(default_factory=dict)
    enqueue_transcription: bool = False
    reason: str = ""

    @property
    def is_noop(self) -> bool:
        return not self.create and not self.updates


def _recording_updates(snap: Optional[CallSnapshot], recording_sid, recording_url, recording_duration) -> Dict[str, Any]:
    if not recording_url:
        return {}
    if snap is not None and snap.recording_state == RecordingState.AVAILABLE:
        # the first reference wins; later deliveries only fill gaps
        return {}
    out: Dict[str, Any] = {
        "recording_state": RecordingState.AVAILABLE,
        "recording_url": recording_url,
    }
    if recording_sid:
        out["recording_sid"] = recording_sid
    if recording_duration is not None:
        out["recording_duration_seconds"] = recording_duration
    return out


def _transcription_trigger(status: CallStatus, recording_state: RecordingState,
                           auto_transcribe: bool, transcription_state: TranscriptionState) -> bool:
    return (
        status in TERMINAL_STATUSES
        and recording_state == RecordingState.AVAILABLE
        and auto_transcribe
        and transcription_state == TranscriptionState.NONE
    )


def plan_call_event(
    snap: Optional[CallSnapshot],
    *,
    call_sid: str,
    status: str,
    direction: Optional[str] = None,
    from_number: Optional[str] = None,
    to_number: Optional[str] = None,
    duration: Optional[int] = None,
    recording_sid: Optional[str] = None,
    recording_url: Optional[str] = None,
    recording_duration: Optional[int] = None,
    auto_transcribe: bool = True,
    now: datetime,
) -> CallPlan:
    """
    Work out what a call-status event does to the record.
    `auto_transcribe` is only used when the record does not exist yet.
    """
    new_status = CallStatus(status)

    if snap is None:
        fields: Dict[str, Any] = {
            "call_sid": call_sid,
            "status": new_status,
            "direction": normalize_direction(direction) or CallDirection.INBOUND,
            "from_number": from_number,
            "to_number": to_number,
            "auto_transcribe": auto_transcribe,
        }
        if duration is not None:
            fields["duration_seconds"] = duration
        if new_status in TERMINAL_STATUSES:
            fields["ended_at"] = now
        fields.update(_recording_updates(None, recording_sid, recording_url, recording_duration))
        enqueue = _transcription_trigger(
            new_status,
            fields.get("recording_state", RecordingState.NONE),
            auto_transcribe,
            TranscriptionState.NONE,
        )
        if enqueue:
            fields["transcription_state"] = TranscriptionState.PENDING
        return CallPlan(create=True, updates=fields, enqueue_transcription=enqueue, reason="created")

    updates: Dict[str, Any] = {}
    effective_status = snap.status
    reason = "stale-or-duplicate"

    if STATUS_RANK[new_status] > STATUS_RANK[snap.status]:
        updates["status"] = new_status
        effective_status = new_status
        reason = f"{snap.status.value}->{new_status.value}"

    if effective_status in TERMINAL_STATUSES and snap.ended_at is None:
        updates["ended_at"] = now
    if duration is not None and snap.duration_seconds is None and effective_status in TERMINAL_STATUSES:
        updates["duration_seconds"] = duration
    if from_number and not snap.from_number:
        updates["from_number"] = from_number
    if to_number and not snap.to_number:
        updates["to_number"] = to_number

    rec_updates = _recording_updates(snap, recording_sid, recording_url, recording_duration)
    updates.update(rec_updates)
    effective_recording = rec_updates.get("recording_state", snap.recording_state)

    enqueue = _transcription_trigger(
        effective_status, effective_recording, snap.auto_transcribe, snap.transcription_state
    )
    if enqueue:
        updates["transcription_state"] = TranscriptionState.PENDING

    return CallPlan(updates=updates, enqueue_transcription=enqueue, reason=reason if updates else "noop")


def plan_recording_event(
    snap: CallSnapshot,
    *,
    recording_sid: str,
    recording_url: str,
    recording_duration: Optional[int] = None,
) -> CallPlan:
    """Stage 1: a recording became available for an existing call."""
    updates = _recording_updates(snap, recording_sid, recording_url, recording_duration)
    effective_recording = updates.get("recording_state", snap.recording_state)
    enqueue = _transcription_trigger(
        snap.status, effective_recording, snap.auto_transcribe, snap.transcription_state
    )
    if enqueue:
        updates["transcription_state"] = TranscriptionState.PENDING
    return CallPlan(updates=updates, enqueue_transcription=enqueue,
                    reason="recording-available" if updates else "noop")


def plan_transcription_request(snap: CallSnapshot) -> CallPlan:
    """A user asked for a transcript of a call that was not auto-transcribed."""
    if snap.recording_state != RecordingState.AVAILABLE:
        return CallPlan(reason="no-recording")
    if snap.transcription_state != TranscriptionState.NONE:
        return CallPlan(reason=f"transcription-{snap.transcription_state.value}")
    return CallPlan(
        updates={"transcription_state": TranscriptionState.PENDING},
        enqueue_transcription=True,
        reason="requested",
    )
