"""
Dialogue Session Endpoints.

Read-only session snapshots for support tooling, and the inactivity sweep
run by a scheduler.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from slotbot.api.dependencies import get_dialogue_engine
from slotbot.core.dialogue.engine import DialogueEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["Sessions"])


class ExpireResponse(BaseModel):
    """Result of an inactivity sweep."""
    abandoned: int


@router.get(
    "/{business_id}/{customer_id}",
    response_model=dict[str, Any],
    summary="Get the live session for a customer",
    responses={404: {"description": "No live session"}},
)
async def get_session(
    business_id: str,
    customer_id: str,
    engine: DialogueEngine = Depends(get_dialogue_engine),
) -> dict[str, Any]:
    session = await engine.get_session(business_id, customer_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found",
        )
    return session.to_dict()


@router.post(
    "/expire",
    response_model=ExpireResponse,
    summary="Abandon inactive sessions",
)
async def expire_sessions(
    engine: DialogueEngine = Depends(get_dialogue_engine),
) -> ExpireResponse:
    abandoned = await engine.expire_sessions()
    return ExpireResponse(abandoned=abandoned)
