import uuid
from typing import Optional, Sequence

from sqlalchemy import select

from premarket_app.models.enums import UserRole
from premarket_app.models.models import User


class UserRepo:
    def __init__(self, db):
        self.db = db

    async def get_by_id(self, user_id: uuid.UUID) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_active_admins(self) -> Sequence[User]:
        result = await self.db.execute(
            select(User).where(User.role == UserRole.ADMIN, User.is_active.is_(True))
        )
        return result.scalars().all()

    async def get_active_agents(self) -> Sequence[User]:
        result = await self.db.execute(
            select(User).where(User.role == UserRole.AGENT, User.is_active.is_(True))
        )
        return result.scalars().all()
