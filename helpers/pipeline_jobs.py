# helpers/pipeline_jobs.py
"""
Explicit job queue for the recording → transcription → analysis chain.

Jobs are persisted as `PipelineJob` rows (one per call and kind) and fed to
a small pool of asyncio workers through an in-process queue. A periodic
recovery pass re-feeds rows still `queued` (e.g. after a restart) and fails
rows that have been `running` for too long. Stage failures are terminal: a
failed job is never run again.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from tortoise.exceptions import IntegrityError

from helpers.config import JOB_RECOVERY_BATCH, JOB_STALE_MINUTES, JOB_WORKERS, get_logger
from models.pipeline_job import JobKind, JobStatus, PipelineJob

logger = get_logger("pipeline_jobs")

JobHandler = Callable[[PipelineJob], Awaitable[Any]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _default_handlers() -> Dict[JobKind, JobHandler]:
    # Lazy imports to avoid circulars: the stages enqueue follow-up jobs
    from helpers.transcription import run_transcription_job
    from helpers.call_analysis import run_analysis_job

    return {
        JobKind.TRANSCRIPTION: run_transcription_job,
        JobKind.ANALYSIS: run_analysis_job,
    }


class JobQueue:
    def __init__(self, workers: int = JOB_WORKERS, handlers: Optional[Dict[JobKind, JobHandler]] = None):
        self.workers = workers
        self._handlers = handlers
        self._queue: "asyncio.Queue[int]" = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def handlers(self) -> Dict[JobKind, JobHandler]:
        if self._handlers is None:
            self._handlers = _default_handlers()
        return self._handlers

    def submit(self, job_id: int) -> None:
        self._queue.put_nowait(job_id)

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [asyncio.create_task(self._worker(i)) for i in range(self.workers)]
        logger.info("[jobs] started %d worker(s)", self.workers)

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
        for t in self._tasks:
            try:
                await t
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("[jobs] workers stopped")

    async def join(self) -> None:
        await self._queue.join()

    async def _worker(self, n: int) -> None:
        while True:
            job_id = await self._queue.get()
            try:
                await run_job(job_id, handlers=self.handlers())
            except Exception:
                logger.exception("[jobs] worker=%s job=%s crashed", n, job_id)
            finally:
                self._queue.task_done()


_job_queue: Optional[JobQueue] = None


def get_job_queue() -> JobQueue:
    global _job_queue
    if _job_queue is None:
        _job_queue = JobQueue()
    return _job_queue


def set_job_queue(queue: Optional[JobQueue]) -> None:
    global _job_queue
    _job_queue = queue


async def enqueue_job(call_id: int, kind: JobKind) -> PipelineJob:
    """
    Record that `kind` work is owed for a call. Idempotent: a second request
    for the same call and kind returns the existing row and dispatches nothing.
    """
    existing = await PipelineJob.get_or_none(call_id=call_id, kind=kind)
    if existing:
        logger.info("[jobs] %s already owed for call_id=%s (job=%s %s)", kind.value, call_id, existing.id, existing.status.value)
        return existing
    try:
        job = await PipelineJob.create(call_id=call_id, kind=kind)
    except IntegrityError:
        # a racing trigger inserted it first
        job = await PipelineJob.get(call_id=call_id, kind=kind)
        logger.info("[jobs] %s enqueue race for call_id=%s resolved to job=%s", kind.value, call_id, job.id)
        return job

    logger.info("[jobs] enqueued %s job=%s call_id=%s", kind.value, job.id, call_id)
    q = get_job_queue()
    if q.running:
        q.submit(job.id)
    return job


async def claim_job(job_id: int) -> bool:
    now = _utcnow()
    n = await PipelineJob.filter(id=job_id, status=JobStatus.QUEUED).update(
        status=JobStatus.RUNNING, started_at=now, updated_at=now
    )
    return n == 1


async def finish_job(job_id: int, *, ok: bool, error: Optional[str] = None) -> None:
    now = _utcnow()
    await PipelineJob.filter(id=job_id, status=JobStatus.RUNNING).update(
        status=JobStatus.SUCCEEDED if ok else JobStatus.FAILED,
        error=None if ok else (error or "")[:4000],
        finished_at=now,
        updated_at=now,
    )


async def run_job(job_id: int, handlers: Optional[Dict[JobKind, JobHandler]] = None) -> Optional[JobStatus]:
    """
    Claim and execute one job. Returns the final job status, or None when
    another worker owns it or it is already finished.
    """
    if not await claim_job(job_id):
        logger.debug("[jobs] job=%s not claimable; skipping", job_id)
        return None

    job = await PipelineJob.get(id=job_id)
    handler = (handlers or get_job_queue().handlers()).get(job.kind)
    if handler is None:
        await finish_job(job_id, ok=False, error=f"no handler for {job.kind}")
        return JobStatus.FAILED

    try:
        await handler(job)
    except Exception as e:
        logger.warning("[jobs] %s job=%s call_id=%s failed: %s", job.kind.value, job.id, job.call_id, e)
        await finish_job(job_id, ok=False, error=str(e) or e.__class__.__name__)
        return JobStatus.FAILED

    await finish_job(job_id, ok=True)
    logger.info("[jobs] %s job=%s call_id=%s succeeded", job.kind.value, job.id, job.call_id)
    return JobStatus.SUCCEEDED


async def recover_jobs(limit: int = JOB_RECOVERY_BATCH, now: Optional[datetime] = None) -> Dict[str, int]:
    """
    One recovery pass:
      - re-dispatch `queued` jobs nobody picked up
      - fail `running` jobs older than JOB_STALE_MINUTES (never re-run them)
    """
    now = now or _utcnow()
    stale_cutoff = now - timedelta(minutes=JOB_STALE_MINUTES)

    stale = await PipelineJob.filter(status=JobStatus.RUNNING, started_at__lt=stale_cutoff).limit(limit)
    failed = 0
    for job in stale:
        n = await PipelineJob.filter(id=job.id, status=JobStatus.RUNNING).update(
            status=JobStatus.FAILED, error="stage timed out", finished_at=now, updated_at=now
        )
        if n:
            failed += 1
            await _mark_stage_failed(job, "stage timed out")

    queued = await PipelineJob.filter(status=JobStatus.QUEUED).order_by("created_at").limit(limit)
    q = get_job_queue()
    dispatched = 0
    for job in queued:
        if q.running:
            q.submit(job.id)
        else:
            await run_job(job.id)
        dispatched += 1

    if failed or dispatched:
        logger.info("[jobs] recovery: dispatched=%d timed_out=%d", dispatched, failed)
    return {"dispatched": dispatched, "timed_out": failed}


async def _mark_stage_failed(job: PipelineJob, reason: str) -> None:
    from helpers.call_ledger import mark_stage_failed

    await mark_stage_failed(job.call_id, job.kind, reason)
