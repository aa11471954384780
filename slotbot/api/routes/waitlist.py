"""
Waitlist Endpoints.

The sweep is triggered by a scheduler and after cancellations; it returns
the notifications the transport should deliver.
"""

import logging
import datetime
from typing import Any

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from slotbot.api.dependencies import get_dialogue_engine
from slotbot.api.routes.events import ReplyModel
from slotbot.core.dialogue.engine import DialogueEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/waitlist", tags=["Waitlist"])


class SweepRequest(BaseModel):
    """Which queue to re-check."""

    business_id: str = Field(..., min_length=1, max_length=64)
    date: datetime.date


class SweepResponse(BaseModel):
    """Notifications produced by the sweep."""

    notified: int
    replies: list[ReplyModel]


class CancelResponse(BaseModel):
    booking: dict[str, Any]
    replies: list[ReplyModel]


@router.post(
    "/sweep",
    response_model=SweepResponse,
    status_code=status.HTTP_200_OK,
    summary="Run the waitlist sweep for one date",
    responses={404: {"description": "Unknown business"}},
)
async def run_sweep(
    request: SweepRequest,
    engine: DialogueEngine = Depends(get_dialogue_engine),
) -> SweepResponse:
    replies = await engine.run_waitlist_sweep(request.business_id, request.date)
    return SweepResponse(
        notified=len(replies),
        replies=[ReplyModel.from_reply(r) for r in replies],
    )


@router.post(
    "/bookings/{booking_id}/cancel",
    response_model=CancelResponse,
    summary="Cancel a booking and offer the freed time to the waitlist",
    responses={404: {"description": "Unknown booking"}},
)
async def cancel_booking(
    booking_id: str,
    engine: DialogueEngine = Depends(get_dialogue_engine),
) -> CancelResponse:
    booking, replies = await engine.cancel_booking(booking_id)
    logger.info(f"Booking {booking.booking_code} cancelled; {len(replies)} waitlist notification(s)")
    return CancelResponse(
        booking=booking.to_dict(),
        replies=[ReplyModel.from_reply(r) for r in replies],
    )
