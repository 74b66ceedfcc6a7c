from typing import Annotated

from fastapi import APIRouter, Depends, Query

from helpers.conversation import get_conversation, normalize_contact_key
from helpers.token_helper import get_current_user
from models.auth import User

router = APIRouter()


@router.get("/conversations/{contact_key}")
async def conversation_timeline(
    contact_key: str,
    user: Annotated[User, Depends(get_current_user)],
    limit: int = Query(200, ge=1, le=1000),
):
    items = await get_conversation(user, contact_key, limit=limit)
    return {"contact_key": normalize_contact_key(contact_key), "items": items}
