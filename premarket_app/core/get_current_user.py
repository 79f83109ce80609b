import uuid

import jwt
from fastapi import Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from premarket_app.models.models import User

from .errors import UnauthorizedError
from .get_db import get_db_async
from .settings import settings


def decode_access_token(token: str) -> uuid.UUID:
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.ALGORITHM],
        )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token expired")
    except jwt.InvalidTokenError:
        raise UnauthorizedError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Token missing user ID")
    try:
        return uuid.UUID(str(user_id))
    except ValueError:
        raise UnauthorizedError("Invalid user ID format in token")


async def jwt_protect(request: Request) -> uuid.UUID:
    token = request.cookies.get("access_token")
    if not token:
        auth = request.headers.get("authorization", "")
        scheme, _, credentials = auth.partition(" ")
        if scheme.lower() == "bearer" and credentials:
            token = credentials.strip()
    if not token:
        raise UnauthorizedError("Not authenticated")
    return decode_access_token(token)


async def get_current_user(
    user_id: uuid.UUID = Depends(jwt_protect),
    db: AsyncSession = Depends(get_db_async),
) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalars().first()
    if not user or not user.is_active:
        raise UnauthorizedError("Not authenticated")
    return user
