"""User lookups. Authentication itself lives outside this service."""

from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import StandingInstruction, User


async def get_user_by_id(db: AsyncSession, user_id: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.email == email.lower()))
    return result.scalar_one_or_none()


async def create_user(
    db: AsyncSession,
    email: str,
    name: Optional[str] = None,
    google_access_token: Optional[str] = None,
    hubspot_access_token: Optional[str] = None,
) -> User:
    """Create a user record with optional provider tokens"""
    user = User(
        email=email.lower(),
        name=name,
        google_access_token=google_access_token,
        hubspot_access_token=hubspot_access_token,
        hubspot_connected=bool(hubspot_access_token),
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


async def get_users_with_active_instructions(db: AsyncSession) -> List[User]:
    """Active users owning at least one active standing instruction."""
    result = await db.execute(
        select(User)
        .where(
            User.is_active == True,
            User.id.in_(
                select(StandingInstruction.user_id).where(StandingInstruction.is_active == True)
            ),
        )
        .order_by(User.created_at.asc())
    )
    return list(result.scalars().all())
