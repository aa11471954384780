"""
Inbound Event Endpoint.

Accepts one customer message or button tap, already annotated with the
detected language and intent by the transport, and returns the replies to
send back.
"""

import logging
import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from slotbot.api.dependencies import get_dialogue_engine
from slotbot.core.dialogue.engine import DialogueEngine, EngineResponse
from slotbot.core.dialogue.events import (
    DetectedIntent,
    EventKind,
    InboundEvent,
    IntentType,
    OutboundReply,
)
from slotbot.core.dialogue.templates import render

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["Events"])


class IntentHints(BaseModel):
    """Structured hints from the upstream intent classifier."""

    intent: IntentType = IntentType.UNKNOWN
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    service_id: Optional[str] = None
    service_name: Optional[str] = None
    staff_id: Optional[str] = None
    staff_name: Optional[str] = None
    any_staff: bool = False
    date: Optional[datetime.date] = None
    time: Optional[datetime.time] = None


class InboundEventRequest(BaseModel):
    """Inbound event."""

    business_id: str = Field(..., min_length=1, max_length=64)
    customer_id: str = Field(
        ...,
        min_length=1,
        max_length=255,
        description="Channel identity of the customer",
        examples=["+15550001"],
    )
    kind: EventKind = Field(..., description="text or button")
    payload: str = Field(
        default="",
        max_length=2000,
        description="Message text or button payload",
        examples=["slot_3f2a9c1d"],
    )
    detected_language: Optional[str] = Field(default=None, max_length=16, examples=["ru"])
    language_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    detected_intent: Optional[IntentHints] = None

    def to_event(self) -> InboundEvent:
        hints = self.detected_intent
        return InboundEvent(
            business_id=self.business_id,
            customer_id=self.customer_id,
            kind=self.kind,
            payload=self.payload,
            detected_language=self.detected_language,
            language_confidence=self.language_confidence,
            detected_intent=DetectedIntent(**hints.model_dump()) if hints else None,
        )


class ReplyModel(BaseModel):
    """One outbound reply, with its text rendered in the reply language."""

    business_id: str
    customer_id: str
    template_key: str
    language: str
    text: str
    template_args: dict[str, Any] = Field(default_factory=dict)
    offers: Optional[list[dict[str, str]]] = None

    @classmethod
    def from_reply(cls, reply: OutboundReply) -> "ReplyModel":
        data = reply.to_dict()
        return cls(text=render(reply.template_key, reply.language, reply.template_args), **data)


class EventResponse(BaseModel):
    """Replies plus the resulting dialogue state."""

    replies: list[ReplyModel]
    state: Optional[str] = Field(default=None, description="Session state after the event")
    session: Optional[dict[str, Any]] = None
    booking: Optional[dict[str, Any]] = None
    waitlist_entry: Optional[dict[str, Any]] = None

    @classmethod
    def from_engine(cls, response: EngineResponse) -> "EventResponse":
        data = response.to_dict()
        data["replies"] = [ReplyModel.from_reply(r) for r in response.replies]
        return cls(**data)


@router.post(
    "",
    response_model=EventResponse,
    status_code=status.HTTP_200_OK,
    summary="Handle an inbound event",
    responses={
        404: {"description": "Unknown business"},
        422: {"description": "Malformed event"},
    },
)
async def handle_event(
    request: InboundEventRequest,
    engine: DialogueEngine = Depends(get_dialogue_engine),
) -> EventResponse:
    """
    Process one inbound event.

    Events for the same (business, customer) pair are processed one at a
    time in arrival order.
    """
    response = await engine.handle(request.to_event())
    logger.debug(
        f"Event from {request.business_id}/{request.customer_id} -> "
        f"{response.state.value if response.state else 'unchanged'}"
    )
    return EventResponse.from_engine(response)
