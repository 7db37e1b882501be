"""Instruction Matcher: which standing instructions apply to an event."""

from typing import List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import StandingInstruction, TriggerType


async def match_instructions(
    db: AsyncSession, user_id: str, trigger_type: TriggerType
) -> List[StandingInstruction]:
    """
    Active instructions for (user, trigger type), newest first.

    Served by ix_instructions_user_trigger_active. An empty list means
    there is nothing to do for the event.
    """
    result = await db.execute(
        select(StandingInstruction)
        .where(
            StandingInstruction.user_id == user_id,
            StandingInstruction.trigger_type == TriggerType(trigger_type).value,
            StandingInstruction.is_active == True,
        )
        .order_by(StandingInstruction.created_at.desc(), StandingInstruction.id.desc())
    )
    return list(result.scalars().all())
