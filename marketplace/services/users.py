"""User lookups shared by the ledger, escrow and dispute services."""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.errors import ForbiddenError, NotFoundError
from marketplace.models.user import STAFF_ROLES, User, UserRole


async def get_user(db: AsyncSession, user_id: uuid.UUID) -> User:
    result = await db.execute(select(User).where(User.user_id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFoundError("User not found")
    return user


async def lock_user(db: AsyncSession, user_id: uuid.UUID) -> User:
    """Load the user row under ``FOR UPDATE``; serializes balance read-then-write."""
    result = await db.execute(
        select(User)
        .where(User.user_id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFoundError("User not found")
    return user


async def require_staff(db: AsyncSession, user_id: uuid.UUID) -> User:
    user = await get_user(db, user_id)
    if user.role not in STAFF_ROLES:
        raise ForbiddenError("Support or admin role required")
    return user


async def require_admin(db: AsyncSession, user_id: uuid.UUID) -> User:
    user = await get_user(db, user_id)
    if user.role != UserRole.ADMIN:
        raise ForbiddenError("Admin role required")
    return user
