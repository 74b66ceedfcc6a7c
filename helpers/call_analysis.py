# helpers/call_analysis.py
"""
Stage 3 of the call chain: transcript → sentiment, topics, action items and
a short summary, produced by the OpenAI chat completions API in JSON mode.

The model's answer is validated against `CallAnalysisResult`. Anything that
is not JSON, or JSON of the wrong shape, fails the stage outright; partial
answers are never salvaged.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Literal, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from helpers.config import OPENAI_API_KEY, OPENAI_BASE_URL, OPENAI_MODEL, ORACLE_TIMEOUT_SECONDS, get_logger
from helpers.errors import OracleOutputError, StageError
from models.call_record import AnalysisState, CallRecord, TranscriptionState
from models.pipeline_job import JobKind, PipelineJob

logger = get_logger("call_analysis")

SYSTEM_MSG = "You are a sales call analyzer. Provide detailed, actionable analysis of sales calls."

ANALYSIS_PROMPT = """Analyze this sales call transcription and provide:
1. Sentiment score (-1.0 to 1.0, where -1 is very negative, 0 is neutral, 1 is very positive)
2. Sentiment label (positive, neutral, or negative)
3. Key topics discussed (max 5, as array)
4. Action items extracted (as array)
5. Brief summary (2-3 sentences)

Format your response as JSON with this structure:
{
  "sentiment_score": 0.0,
  "sentiment_label": "neutral",
  "key_topics": ["topic1", "topic2"],
  "action_items": ["action1", "action2"],
  "summary": "Summary text"
}

Transcription:
"""


class CallAnalysisResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sentiment_score: float = Field(..., ge=-1.0, le=1.0)
    sentiment_label: Literal["positive", "neutral", "negative"]
    key_topics: List[str] = Field(default_factory=list, max_length=5)
    action_items: List[str] = Field(default_factory=list)
    summary: str = Field(..., min_length=1)

    @field_validator("sentiment_label", mode="before")
    @classmethod
    def lower_label(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


def parse_analysis(content: Optional[str]) -> CallAnalysisResult:
    """Strict parse of the model's message content."""
    if not content or not content.strip():
        raise OracleOutputError("analysis oracle returned an empty answer")
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise OracleOutputError(f"analysis oracle returned non-JSON output: {e.msg}") from e
    if not isinstance(data, dict):
        raise OracleOutputError("analysis oracle returned JSON that is not an object")
    try:
        return CallAnalysisResult.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise OracleOutputError(f"analysis oracle output failed validation: {fields}") from e


async def openai_analyze(transcript: str) -> str:
    """Returns the raw message content; validation happens in parse_analysis."""
    if not OPENAI_API_KEY:
        raise StageError("OPENAI_API_KEY missing")
    headers = {
        "Authorization": f"Bearer {OPENAI_API_KEY}",
        "Content-Type": "application/json",
    }
    body = {
        "model": OPENAI_MODEL,
        "response_format": {"type": "json_object"},
        "temperature": 0.3,
        "messages": [
            {"role": "system", "content": SYSTEM_MSG},
            {"role": "user", "content": ANALYSIS_PROMPT + transcript},
        ],
    }
    try:
        async with httpx.AsyncClient(timeout=ORACLE_TIMEOUT_SECONDS) as client:
            r = await client.post(f"{OPENAI_BASE_URL.rstrip('/')}/chat/completions", headers=headers, json=body)
    except httpx.HTTPError as e:
        raise StageError(f"analysis request failed: {e.__class__.__name__}: {e}") from e
    if r.status_code != 200:
        raise StageError(f"OpenAI error {r.status_code}: {r.text[:500]}")
    data = r.json()
    return data["choices"][0]["message"]["content"] or ""


Analyzer = Callable[[str], Awaitable[str]]
_analyzer: Analyzer = openai_analyze


def set_analyzer(fn: Optional[Analyzer]) -> None:
    global _analyzer
    _analyzer = fn or openai_analyze


async def analyze_call(call_id: int) -> CallRecord:
    rec = await CallRecord.get(id=call_id)
    if rec.analysis_state != AnalysisState.NONE:
        raise StageError(f"analysis already {rec.analysis_state.value}")
    if rec.transcription_state != TranscriptionState.COMPLETED:
        raise StageError(f"transcription is {rec.transcription_state.value}, not completed")
    if not (rec.transcription or "").strip():
        raise StageError("empty transcription")

    result = parse_analysis(await _analyzer(rec.transcription))

    n = await CallRecord.filter(id=call_id, analysis_state=AnalysisState.NONE).update(
        analysis_state=AnalysisState.COMPLETED,
        sentiment_score=result.sentiment_score,
        sentiment_label=result.sentiment_label,
        key_topics=result.key_topics,
        action_items=result.action_items,
        ai_summary=result.summary,
        updated_at=datetime.now(timezone.utc),
    )
    if not n:
        raise StageError("analysis state changed while running")
    logger.info("[analysis] call=%s %s (%.2f)", rec.call_sid, result.sentiment_label, result.sentiment_score)
    await rec.refresh_from_db()
    return rec


async def run_analysis_job(job: PipelineJob) -> None:
    from helpers.call_ledger import mark_stage_failed

    try:
        await analyze_call(job.call_id)
    except Exception as e:
        await mark_stage_failed(job.call_id, JobKind.ANALYSIS, str(e) or e.__class__.__name__)
        raise
