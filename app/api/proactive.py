"""Manual trigger for the proactive poll"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from app.agent.errors import StoreUnavailableError
from app.api.deps import get_current_user, get_dispatcher
from app.schemas import PollResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/proactive", tags=["Proactive"])


@router.post("/poll", response_model=PollResponse)
async def poll_now(
    current_user=Depends(get_current_user),
    dispatcher=Depends(get_dispatcher),
):
    """
    Run one detect + dispatch cycle for the calling user.

    Same path the scheduler takes, scoped to one user. Useful right after
    connecting an account or adding an instruction.
    """
    try:
        result = await dispatcher.poll_and_dispatch(current_user.id)
    except StoreUnavailableError as e:
        logger.error(f"[DISPATCH] Manual poll aborted for {current_user.id}: {e}")
        raise HTTPException(status_code=503, detail="Storage unavailable")
    return PollResponse(**result.to_dict())
