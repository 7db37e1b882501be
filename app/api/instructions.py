"""Standing instruction endpoints"""

import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user
from app.db import StandingInstruction, TriggerType, get_db
from app.schemas import InstructionCreate, InstructionListResponse, InstructionResponse, InstructionUpdate
from app.services.instruction_service import InstructionService

router = APIRouter(prefix="/instructions", tags=["Instructions"])


def instruction_to_response(instruction: StandingInstruction) -> InstructionResponse:
    return InstructionResponse(
        id=instruction.id,
        instruction_text=instruction.instruction_text,
        trigger_type=instruction.trigger_type,
        is_active=instruction.is_active,
        conditions=json.loads(instruction.conditions_json) if instruction.conditions_json else None,
        created_at=instruction.created_at,
        updated_at=instruction.updated_at,
    )


@router.get("", response_model=InstructionListResponse)
async def list_instructions(
    include_inactive: bool = Query(False),
    trigger_type: Optional[TriggerType] = Query(None),
    current_user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List the caller's standing instructions, newest first."""
    instructions = await InstructionService(db).list_for_user(
        current_user.id, active_only=not include_inactive, trigger_type=trigger_type,
    )
    return InstructionListResponse(
        instructions=[instruction_to_response(i) for i in instructions],
        total=len(instructions),
    )


@router.post("", response_model=InstructionResponse, status_code=status.HTTP_201_CREATED)
async def create_instruction(
    body: InstructionCreate,
    current_user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if not body.instruction_text.strip():
        raise HTTPException(status_code=422, detail="instruction_text must not be blank")
    instruction = await InstructionService(db).create(
        current_user.id, body.instruction_text, body.trigger_type, body.conditions,
    )
    return instruction_to_response(instruction)


@router.patch("/{instruction_id}", response_model=InstructionResponse)
async def update_instruction(
    instruction_id: str,
    body: InstructionUpdate,
    current_user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Activate or deactivate an instruction"""
    instruction = await InstructionService(db).set_active(current_user.id, instruction_id, body.is_active)
    if instruction is None:
        raise HTTPException(status_code=404, detail="Instruction not found")
    return instruction_to_response(instruction)


@router.delete("/{instruction_id}", response_model=InstructionResponse)
async def delete_instruction(
    instruction_id: str,
    current_user=Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Soft-disable: the row stays so past agent runs keep their reference."""
    instruction = await InstructionService(db).set_active(current_user.id, instruction_id, False)
    if instruction is None:
        raise HTTPException(status_code=404, detail="Instruction not found")
    return instruction_to_response(instruction)
