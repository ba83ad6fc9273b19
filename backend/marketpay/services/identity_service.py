"""
Identity Service

Maps identity-provider claims onto user rows.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import UserModel
from ..exceptions import NotAuthenticatedError, UnauthorizedError
from ..models.identity import Identity

logger = logging.getLogger(__name__)


async def get_user(db: AsyncSession, identity: Optional[Identity]) -> Optional[UserModel]:
    if identity is None:
        return None
    result = await db.execute(select(UserModel).where(UserModel.external_id == identity.subject))
    return result.scalar_one_or_none()


async def get_or_create_user(db: AsyncSession, identity: Optional[Identity]) -> UserModel:
    """
    Resolve the caller to a user row, creating a buyer on first sight.

    Concurrent first requests for the same subject both try to insert; the
    unique external_id lets exactly one succeed and the other re-reads it.

    Raises:
        NotAuthenticatedError: no identity supplied
    """
    if identity is None:
        raise NotAuthenticatedError()

    user = await get_user(db, identity)
    if user:
        return user

    user = UserModel(
        id=f"usr_{uuid.uuid4().hex[:16]}",
        external_id=identity.subject,
        email=identity.email,
        name=identity.name,
        role="buyer",
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        user = await get_user(db, identity)
        if user is None:
            raise
        return user

    logger.info(f"Created user {user.id} for subject {identity.subject}")
    return user


async def require_user(db: AsyncSession, identity: Optional[Identity]) -> UserModel:
    """Like get_user but the caller must already exist."""
    if identity is None:
        raise NotAuthenticatedError()
    user = await get_user(db, identity)
    if user is None:
        raise NotAuthenticatedError("User not found")
    return user


async def require_admin(db: AsyncSession, identity: Optional[Identity]) -> UserModel:
    user = await require_user(db, identity)
    if user.role != "admin":
        raise UnauthorizedError("Admin access required")
    return user
