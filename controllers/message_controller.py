import hmac
from datetime import datetime, timezone
from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field, model_validator

from controllers.call_controller import provider_http_error
from helpers.config import CRON_SECRET, SCHEDULER_PAGE_SIZE, get_logger
from helpers.errors import ProviderError
from helpers.message_dispatcher import create_message, describe, run_scheduler_pass
from helpers.stuck_sweeper import sweep_opportunistically
from helpers.token_helper import get_current_user
from models.auth import User
from models.message import MessageChannel, OutboundMessage

logger = get_logger("message_controller")

router = APIRouter()


class SendMessageRequest(BaseModel):
    channel: MessageChannel
    to: str = Field(..., min_length=3)
    body: str = Field(..., min_length=1, max_length=10000)
    subject: Optional[str] = Field(None, max_length=500)
    lead_id: Optional[int] = None
    customer_id: Optional[int] = None
    call_id: Optional[int] = None

    @model_validator(mode="after")
    def email_needs_subject(self):
        if self.channel == MessageChannel.EMAIL and not (self.subject or "").strip():
            raise ValueError("subject is required for email")
        return self


class ScheduleMessageRequest(SendMessageRequest):
    scheduled_for: Optional[datetime] = None
    delay_minutes: Optional[int] = Field(None, ge=0, le=60 * 24 * 90)

    @model_validator(mode="after")
    def needs_time(self):
        if self.scheduled_for is None and self.delay_minutes is None:
            raise ValueError("either scheduled_for or delay_minutes is required")
        return self


async def _create(user: User, payload: SendMessageRequest, **schedule) -> OutboundMessage:
    try:
        return await create_message(
            user,
            channel=payload.channel,
            to=payload.to,
            body=payload.body,
            subject=payload.subject,
            lead_id=payload.lead_id,
            customer_id=payload.customer_id,
            call_id=payload.call_id,
            **schedule,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProviderError as e:
        raise provider_http_error(e)


@router.post("/messages")
async def send_message(payload: SendMessageRequest, user: Annotated[User, Depends(get_current_user)]):
    msg = await _create(user, payload)
    return {"success": msg.status.value != "failed", "message": describe(msg)}


@router.post("/messages/schedule")
async def schedule_message(payload: ScheduleMessageRequest, user: Annotated[User, Depends(get_current_user)]):
    msg = await _create(user, payload, scheduled_for=payload.scheduled_for, delay_minutes=payload.delay_minutes)
    return {"success": True, "message": describe(msg)}


@router.get("/messages")
async def list_messages(
    user: Annotated[User, Depends(get_current_user)],
    channel: Optional[MessageChannel] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> List[dict]:
    q = OutboundMessage.filter(user_id=user.id)
    if channel:
        q = q.filter(channel=channel)
    rows = await q.order_by("-created_at").offset(offset).limit(limit)
    return [describe(m) for m in rows]


@router.get("/messages/{message_id}")
async def get_message(message_id: int, user: Annotated[User, Depends(get_current_user)]):
    msg = await OutboundMessage.get_or_none(id=message_id)
    if not msg or (msg.user_id != user.id and not user.is_admin):
        raise HTTPException(status_code=404, detail="Message not found")
    return describe(msg)


def _check_cron_secret(authorization: Optional[str]) -> None:
    if not CRON_SECRET:
        raise HTTPException(status_code=503, detail="CRON_SECRET is not configured")
    expected = f"Bearer {CRON_SECRET}"
    if not hmac.compare_digest((authorization or "").encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/messages/process-scheduled")
async def process_scheduled(authorization: Annotated[Optional[str], Header()] = None):
    """External cron entry point for the same pass the in-process scheduler runs every minute."""
    _check_cron_secret(authorization)
    counts = await run_scheduler_pass(page_size=SCHEDULER_PAGE_SIZE)
    return {"success": True, **counts, "timestamp": datetime.now(timezone.utc).isoformat()}


@router.post("/messages/process-background")
async def process_background(user: Annotated[User, Depends(get_current_user)]):
    counts = await sweep_opportunistically()
    if counts is None:
        return {"success": True, "throttled": True}
    return {"success": True, "throttled": False, **counts}
