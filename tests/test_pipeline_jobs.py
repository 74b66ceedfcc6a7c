from datetime import timedelta

import pytest

from helpers import transcription
from helpers.call_analysis import parse_analysis
from helpers.errors import OracleOutputError, ProviderTransientError
from helpers.pipeline_jobs import JobQueue, enqueue_job, recover_jobs, run_job, set_job_queue
from models.call_record import AnalysisState, CallRecord, CallStatus, RecordingState, TranscriptionState
from models.pipeline_job import JobKind, JobStatus, PipelineJob
from tests.conftest import CONTACT_NUMBER, OWNER_NUMBER, utcnow


async def _completed_call(owner, sid="CA123"):
    return await CallRecord.create(
        call_sid=sid,
        user=owner,
        from_number=OWNER_NUMBER,
        to_number=CONTACT_NUMBER,
        status=CallStatus.COMPLETED,
        recording_state=RecordingState.AVAILABLE,
        recording_sid="RE" + sid[2:],
        recording_url=f"https://api.twilio.com/Recordings/RE{sid[2:]}",
        transcription_state=TranscriptionState.PENDING,
    )


@pytest.mark.asyncio
async def test_enqueue_is_idempotent(owner):
    rec = await _completed_call(owner)
    a = await enqueue_job(rec.id, JobKind.TRANSCRIPTION)
    b = await enqueue_job(rec.id, JobKind.TRANSCRIPTION)
    assert a.id == b.id
    assert await PipelineJob.filter(call_id=rec.id).count() == 1


@pytest.mark.asyncio
async def test_full_chain_transcribes_then_analyzes(owner, gateway, oracles):
    rec = await _completed_call(owner)
    job = await enqueue_job(rec.id, JobKind.TRANSCRIPTION)

    assert await run_job(job.id) == JobStatus.SUCCEEDED
    await rec.refresh_from_db()
    assert rec.transcription_state == TranscriptionState.COMPLETED
    assert rec.transcription == oracles.transcript

    analysis = await PipelineJob.get(call_id=rec.id, kind=JobKind.ANALYSIS)
    assert await run_job(analysis.id) == JobStatus.SUCCEEDED
    await rec.refresh_from_db()
    assert rec.analysis_state == AnalysisState.COMPLETED
    assert rec.sentiment_label == "positive"
    assert rec.sentiment_score == pytest.approx(0.6)
    assert rec.key_topics == ["pricing", "onboarding"]
    assert rec.action_items == ["Send proposal"]
    assert rec.ai_summary.startswith("Prospect")


@pytest.mark.asyncio
async def test_claimed_job_does_not_run_twice(owner, gateway, oracles):
    rec = await _completed_call(owner)
    job = await enqueue_job(rec.id, JobKind.TRANSCRIPTION)
    assert await run_job(job.id) == JobStatus.SUCCEEDED
    assert await run_job(job.id) is None
    assert oracles.transcribe_calls == 1


@pytest.mark.asyncio
async def test_transcription_failure_stops_the_chain(owner, gateway, oracles):
    gateway.recording_error = ProviderTransientError("fetch_recording: HTTP 503", status=503)
    rec = await _completed_call(owner)
    job = await enqueue_job(rec.id, JobKind.TRANSCRIPTION)

    assert await run_job(job.id) == JobStatus.FAILED
    await rec.refresh_from_db()
    assert rec.transcription_state == TranscriptionState.FAILED
    assert "503" in rec.error
    assert rec.status == CallStatus.COMPLETED
    assert not await PipelineJob.exists(call_id=rec.id, kind=JobKind.ANALYSIS)
    assert oracles.transcribe_calls == 0


@pytest.mark.asyncio
async def test_transcription_timed_out_mid_flight_does_not_owe_analysis(owner, gateway, oracles):
    rec = await _completed_call(owner)
    job = await enqueue_job(rec.id, JobKind.TRANSCRIPTION)

    async def slow_transcriber(audio):
        # job recovery gives up on the stage before the oracle answers
        await CallRecord.filter(id=rec.id).update(
            transcription_state=TranscriptionState.FAILED, error="stage timed out"
        )
        return "too late"

    transcription.set_transcriber(slow_transcriber)
    assert await run_job(job.id) == JobStatus.FAILED

    await rec.refresh_from_db()
    assert rec.transcription_state == TranscriptionState.FAILED
    assert rec.transcription is None
    assert rec.error == "stage timed out"
    assert rec.analysis_state == AnalysisState.NONE
    assert not await PipelineJob.exists(call_id=rec.id, kind=JobKind.ANALYSIS)


@pytest.mark.asyncio
async def test_malformed_analysis_output_fails_the_stage(owner, gateway, oracles):
    oracles.analysis_answer = "Sure! The call went great."
    rec = await _completed_call(owner)
    await run_job((await enqueue_job(rec.id, JobKind.TRANSCRIPTION)).id)
    analysis = await PipelineJob.get(call_id=rec.id, kind=JobKind.ANALYSIS)

    assert await run_job(analysis.id) == JobStatus.FAILED
    await rec.refresh_from_db()
    assert rec.analysis_state == AnalysisState.FAILED
    assert rec.transcription_state == TranscriptionState.COMPLETED
    assert rec.sentiment_label is None
    assert "non-JSON" in rec.error
    await analysis.refresh_from_db()
    assert analysis.status == JobStatus.FAILED


@pytest.mark.parametrize("content", [
    "",
    "[1, 2]",
    '{"sentiment_score": 3, "sentiment_label": "positive", "summary": "x"}',
    '{"sentiment_score": 0.1, "sentiment_label": "ecstatic", "summary": "x"}',
    '{"sentiment_score": 0.1, "sentiment_label": "neutral", "key_topics": ["a","b","c","d","e","f"], "summary": "x"}',
    '{"sentiment_score": 0.1, "sentiment_label": "neutral"}',
])
def test_parse_analysis_rejects_bad_shapes(content):
    with pytest.raises(OracleOutputError):
        parse_analysis(content)


def test_parse_analysis_accepts_label_case():
    result = parse_analysis('{"sentiment_score": -0.5, "sentiment_label": "Negative", "summary": "Upset."}')
    assert result.sentiment_label == "negative"
    assert result.key_topics == []


@pytest.mark.asyncio
async def test_recovery_fails_stale_running_and_runs_queued(owner, gateway, oracles):
    stale_call = await _completed_call(owner, sid="CA001")
    stale = await enqueue_job(stale_call.id, JobKind.TRANSCRIPTION)
    now = utcnow()
    await PipelineJob.filter(id=stale.id).update(status=JobStatus.RUNNING, started_at=now - timedelta(hours=2))
    await CallRecord.filter(id=stale_call.id).update(transcription_state=TranscriptionState.PROCESSING)

    fresh_call = await _completed_call(owner, sid="CA002")
    await enqueue_job(fresh_call.id, JobKind.TRANSCRIPTION)

    result = await recover_jobs(now=now)
    assert result["timed_out"] == 1
    assert result["dispatched"] == 1

    await stale.refresh_from_db()
    await stale_call.refresh_from_db()
    assert stale.status == JobStatus.FAILED
    assert stale_call.transcription_state == TranscriptionState.FAILED
    await fresh_call.refresh_from_db()
    assert fresh_call.transcription_state == TranscriptionState.COMPLETED


@pytest.mark.asyncio
async def test_worker_pool_drains_enqueued_jobs(owner, gateway, oracles):
    queue = JobQueue(workers=2)
    set_job_queue(queue)
    queue.start()
    try:
        rec = await _completed_call(owner)
        await enqueue_job(rec.id, JobKind.TRANSCRIPTION)
        await queue.join()
    finally:
        await queue.stop()
        set_job_queue(None)

    await rec.refresh_from_db()
    assert rec.transcription_state == TranscriptionState.COMPLETED
    assert rec.analysis_state == AnalysisState.COMPLETED
