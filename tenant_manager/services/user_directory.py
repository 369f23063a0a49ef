"""
User Directory

Identity store access for the tenant layer. User creation and deletion commit
on their own, so callers spanning users and tenants must compensate rather
than rely on a single transaction.
"""

import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_manager.auth import hash_password
from tenant_manager.models.user import User
from tenant_manager.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


class UserDirectory:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_user(
        self,
        username: str,
        email: str,
        password: str,
        full_name: str | None = None,
        phone: str | None = None,
    ) -> User:
        user = User(
            username=username,
            email=email.lower(),
            hashed_password=hash_password(password),
            full_name=full_name,
            phone=phone,
        )
        self.db.add(user)
        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        await self.db.refresh(user)
        logger.info("User created: id=%d username=%s", user.id, user.username)
        return user

    async def delete_user(self, user_id: int) -> bool:
        user = await self.get_user(user_id)
        if user is None:
            return False
        await self.db.delete(user)
        await self.db.commit()
        logger.info("User deleted: id=%d", user_id)
        return True

    async def get_user(self, user_id: int) -> User | None:
        return await self.db.get(User, user_id)

    async def get_by_username(self, username: str) -> User | None:
        result = await self.db.execute(select(User).where(func.lower(User.username) == username.lower()))
        return result.scalars().first()

    async def get_by_email(self, email: str) -> User | None:
        result = await self.db.execute(select(User).where(User.email == email.lower()))
        return result.scalars().first()

    async def username_exists(self, username: str, exclude_user_id: int | None = None) -> bool:
        user = await self.get_by_username(username)
        return user is not None and user.id != exclude_user_id

    async def email_exists(self, email: str, exclude_user_id: int | None = None) -> bool:
        user = await self.get_by_email(email)
        return user is not None and user.id != exclude_user_id

    async def touch_last_login(self, user: User) -> None:
        user.last_login = utcnow()
        await self.db.commit()
