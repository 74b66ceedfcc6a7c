# helpers/transcription.py
"""
Stage 2 of the call chain: recording audio → transcript text.

The audio is fetched through the provider gateway (authenticated) and sent to
the OpenAI audio transcription endpoint. On success the analysis job is
enqueued; on any failure the call's transcription state becomes `failed`
with the error kept on the record, and the chain stops there.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import httpx

from helpers.config import (
    OPENAI_API_KEY,
    OPENAI_BASE_URL,
    OPENAI_TRANSCRIBE_MODEL,
    ORACLE_TIMEOUT_SECONDS,
    get_logger,
)
from helpers.errors import StageError
from helpers.provider_gateway import get_gateway
from models.call_record import CallRecord, TranscriptionState
from models.pipeline_job import JobKind, PipelineJob

logger = get_logger("transcription")

Transcriber = Callable[[bytes], Awaitable[str]]


def _require_openai() -> str:
    if not OPENAI_API_KEY:
        raise StageError("OPENAI_API_KEY missing")
    return OPENAI_API_KEY


async def openai_transcribe(audio: bytes, *, filename: str = "recording.mp3", language: str = "en") -> str:
    key = _require_openai()
    files = {"file": (filename, audio, "audio/mpeg")}
    data = {"model": OPENAI_TRANSCRIBE_MODEL, "language": language, "response_format": "json"}
    try:
        async with httpx.AsyncClient(timeout=ORACLE_TIMEOUT_SECONDS) as client:
            r = await client.post(
                f"{OPENAI_BASE_URL.rstrip('/')}/audio/transcriptions",
                headers={"Authorization": f"Bearer {key}"},
                data=data,
                files=files,
            )
    except httpx.HTTPError as e:
        raise StageError(f"transcription request failed: {e.__class__.__name__}: {e}") from e
    if r.status_code != 200:
        raise StageError(f"OpenAI transcription error {r.status_code}: {r.text[:500]}")
    try:
        return (r.json().get("text") or "").strip()
    except ValueError as e:
        raise StageError("OpenAI transcription returned non-JSON body") from e


_transcriber: Transcriber = openai_transcribe


def set_transcriber(fn: Optional[Transcriber]) -> None:
    global _transcriber
    _transcriber = fn or openai_transcribe


async def transcribe_call(call_id: int) -> CallRecord:
    now = datetime.now(timezone.utc)
    claimed = await CallRecord.filter(
        id=call_id,
        transcription_state__in=[TranscriptionState.NONE, TranscriptionState.PENDING],
    ).update(transcription_state=TranscriptionState.PROCESSING, updated_at=now)
    if not claimed:
        rec = await CallRecord.get_or_none(id=call_id)
        state = rec.transcription_state.value if rec else "missing"
        raise StageError(f"transcription not startable from state {state}")

    rec = await CallRecord.get(id=call_id)
    if not rec.recording_url:
        raise StageError("call has no recording")

    audio = await get_gateway().fetch_recording(rec.recording_url)
    logger.info("[transcription] call=%s fetched %d bytes", rec.call_sid, len(audio))
    text = await _transcriber(audio)

    n = await CallRecord.filter(id=call_id, transcription_state=TranscriptionState.PROCESSING).update(
        transcription=text,
        transcription_state=TranscriptionState.COMPLETED,
        error=None,
        updated_at=datetime.now(timezone.utc),
    )
    if not n:
        # timed out by job recovery while we were working
        raise StageError("transcription state changed while running")
    logger.info("[transcription] call=%s completed (%d chars)", rec.call_sid, len(text))
    await rec.refresh_from_db()
    return rec


async def run_transcription_job(job: PipelineJob) -> None:
    from helpers.call_ledger import mark_stage_failed
    from helpers.pipeline_jobs import enqueue_job

    try:
        await transcribe_call(job.call_id)
    except Exception as e:
        await mark_stage_failed(job.call_id, JobKind.TRANSCRIPTION, str(e) or e.__class__.__name__)
        raise
    await enqueue_job(job.call_id, JobKind.ANALYSIS)
