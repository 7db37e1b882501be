"""
Instruction Store: durable CRUD over standing instructions.

Instructions are soft-disabled, never deleted: agent runs keep a reference
to the instruction that produced them.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import StandingInstruction, TriggerType

logger = logging.getLogger(__name__)


class InstructionService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        user_id: str,
        instruction_text: str,
        trigger_type: TriggerType,
        conditions: Optional[Dict[str, Any]] = None,
    ) -> StandingInstruction:
        instruction = StandingInstruction(
            user_id=user_id,
            instruction_text=instruction_text.strip(),
            trigger_type=TriggerType(trigger_type).value,
            conditions_json=json.dumps(conditions) if conditions else None,
            is_active=True,
        )
        self.db.add(instruction)
        await self.db.commit()
        await self.db.refresh(instruction)
        logger.info(f"[INSTRUCTIONS] Saved {instruction.trigger_type} instruction {instruction.id} for {user_id}")
        return instruction

    async def get(self, user_id: str, instruction_id: str) -> Optional[StandingInstruction]:
        result = await self.db.execute(
            select(StandingInstruction).where(
                StandingInstruction.id == instruction_id,
                StandingInstruction.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_for_user(
        self,
        user_id: str,
        active_only: bool = True,
        trigger_type: Optional[TriggerType] = None,
    ) -> List[StandingInstruction]:
        query = select(StandingInstruction).where(StandingInstruction.user_id == user_id)
        if active_only:
            query = query.where(StandingInstruction.is_active == True)
        if trigger_type is not None:
            query = query.where(StandingInstruction.trigger_type == TriggerType(trigger_type).value)
        query = query.order_by(StandingInstruction.created_at.desc(), StandingInstruction.id.desc())
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def set_active(self, user_id: str, instruction_id: str, is_active: bool) -> Optional[StandingInstruction]:
        """Activate or deactivate; the only mutation an instruction supports."""
        instruction = await self.get(user_id, instruction_id)
        if instruction is None:
            return None
        if instruction.is_active != is_active:
            instruction.is_active = is_active
            await self.db.commit()
            await self.db.refresh(instruction)
            logger.info(
                f"[INSTRUCTIONS] {'Activated' if is_active else 'Deactivated'} instruction {instruction_id}"
            )
        return instruction
