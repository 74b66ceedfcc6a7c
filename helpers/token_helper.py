import os
from datetime import datetime, timezone
from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from models.auth import User

security = HTTPBearer()


def _jwt_key() -> str:
    key = os.getenv("JWT_SECRET")
    if not key:
        raise HTTPException(status_code=500, detail="JWT_SECRET is not configured")
    return key


def generate_user_token(user: User) -> str:
    payload = {
        "id": user.id,
        "last_password_change": user.last_password_change.isoformat() if user.last_password_change else None,
        "iat": int(datetime.now(timezone.utc).timestamp()),
    }
    return jwt.encode(payload, _jwt_key(), algorithm="HS256")


async def decode_user_token(token: str) -> User:
    try:
        payload = jwt.decode(token, _jwt_key(), algorithms=["HS256"])
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user = await User.get_or_none(id=payload.get("id"))
    if not user:
        raise HTTPException(status_code=401, detail="User does not exist")

    token_password_change = payload.get("last_password_change")
    user_password_change = user.last_password_change.isoformat() if user.last_password_change else None
    if user_password_change and token_password_change != user_password_change:
        raise HTTPException(status_code=401, detail="Token invalidated due to password change")
    return user


async def get_current_user(credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)]) -> User:
    try:
        return await decode_user_token(credentials.credentials)
    except HTTPException as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.detail,
            headers={"WWW-Authenticate": "Bearer"},
        )
