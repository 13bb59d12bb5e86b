"""Acting-user resolution for FastAPI routes.

Authentication happens upstream (gateway/session layer); by the time a
request reaches this service the caller's id is in ``X-User-Id``.
"""

import uuid

from fastapi import Depends, Header, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.database import get_db
from marketplace.models.user import STAFF_ROLES, User


class AuthenticatedUser:
    """Container for the resolved acting user."""

    def __init__(self, user_id: uuid.UUID, user: User) -> None:
        self.user_id = user_id
        self.user = user

    @property
    def is_staff(self) -> bool:
        return self.user.role in STAFF_ROLES


async def current_user(
    x_user_id: str | None = Header(None),
    db: AsyncSession = Depends(get_db),
) -> AuthenticatedUser:
    if not x_user_id:
        raise HTTPException(status_code=403, detail="Missing X-User-Id header")
    try:
        user_id = uuid.UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=403, detail="Malformed X-User-Id header")

    result = await db.execute(select(User).where(User.user_id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(status_code=403, detail="User not found")
    return AuthenticatedUser(user_id=user_id, user=user)


async def staff_user(auth: AuthenticatedUser = Depends(current_user)) -> AuthenticatedUser:
    if not auth.is_staff:
        raise HTTPException(status_code=403, detail="Support or admin role required")
    return auth
