"""
Dialogue session model.

One live session per (business, customer). Stored as JSON in Redis (or in
process memory) and owned exclusively by the dialogue engine.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from uuid import uuid4

from slotbot.core.dialogue.state import DialogueState, can_transition, is_terminal_state
from slotbot.core.scheduling.types import SlotOffer

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class InvalidTransitionError(Exception):
    """Raised when a state change is not in the transition table."""

    def __init__(self, from_state: DialogueState, to_state: DialogueState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition {from_state.value} -> {to_state.value}")


@dataclass
class DialogueSession:
    """
    Per-customer booking dialogue.

    Collected fields (service, staff, date, time) are what the customer has
    told us so far; ``pending_offers`` is the exact list last shown, so a
    button tap resolves against what the customer actually saw.
    """

    business_id: str
    customer_id: str
    session_id: str = field(default_factory=lambda: str(uuid4()))

    state: DialogueState = DialogueState.IDLE
    previous_state: Optional[DialogueState] = None
    language: str = "en"

    # Collected fields
    service_id: Optional[str] = None
    staff_id: Optional[str] = None
    any_staff: bool = False
    desired_date: Optional[date] = None
    desired_time: Optional[time] = None

    # Offers
    pending_offers: list[SlotOffer] = field(default_factory=list)
    selected_offer: Optional[SlotOffer] = None

    # Outcome
    booking_id: Optional[str] = None
    waitlist_entry_id: Optional[str] = None

    # Metadata
    message_count: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    last_activity_at: datetime = field(default_factory=_utcnow)

    @property
    def key(self) -> tuple[str, str]:
        return (self.business_id, self.customer_id)

    @property
    def is_terminal(self) -> bool:
        return is_terminal_state(self.state)

    @property
    def has_staff_choice(self) -> bool:
        """Staff is known, or the customer is happy with anyone."""
        return self.staff_id is not None or self.any_staff

    def is_expired(self, now: datetime, timeout_seconds: int) -> bool:
        """True when no event arrived within the inactivity window."""
        return now - self.last_activity_at > timedelta(seconds=timeout_seconds)

    def touch(self, now: Optional[datetime] = None) -> None:
        self.last_activity_at = now or _utcnow()
        self.message_count += 1

    def transition_to(self, new_state: DialogueState) -> None:
        """
        Move to ``new_state``.

        Raises:
            InvalidTransitionError: If the transition table forbids it
        """
        if new_state == self.state:
            return
        if not can_transition(self.state, new_state):
            raise InvalidTransitionError(self.state, new_state)
        logger.debug(
            f"Session {self.business_id}/{self.customer_id}: "
            f"{self.state.value} -> {new_state.value}"
        )
        self.previous_state = self.state
        self.state = new_state

    def find_offer(self, offer_id: str) -> Optional[SlotOffer]:
        """Look up an offer id among the currently shown offers only."""
        for offer in self.pending_offers:
            if offer.offer_id == offer_id:
                return offer
        return None

    def clear_offers(self) -> None:
        self.pending_offers = []
        self.selected_offer = None

    def to_json(self) -> str:
        """Convert to JSON string for Redis storage."""
        data = {
            "session_id": self.session_id,
            "business_id": self.business_id,
            "customer_id": self.customer_id,
            "state": self.state.value,
            "previous_state": self.previous_state.value if self.previous_state else None,
            "language": self.language,
            "service_id": self.service_id,
            "staff_id": self.staff_id,
            "any_staff": self.any_staff,
            "desired_date": self.desired_date.isoformat() if self.desired_date else None,
            "desired_time": self.desired_time.strftime("%H:%M") if self.desired_time else None,
            "pending_offers": [o.to_dict() for o in self.pending_offers],
            "selected_offer": self.selected_offer.to_dict() if self.selected_offer else None,
            "booking_id": self.booking_id,
            "waitlist_entry_id": self.waitlist_entry_id,
            "message_count": self.message_count,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
        }
        return json.dumps(data)

    @classmethod
    def from_json(cls, json_str: str) -> "DialogueSession":
        """Create from JSON string."""
        data = json.loads(json_str)
        return cls(
            session_id=data["session_id"],
            business_id=data["business_id"],
            customer_id=data["customer_id"],
            state=DialogueState(data["state"]),
            previous_state=DialogueState(data["previous_state"]) if data.get("previous_state") else None,
            language=data.get("language", "en"),
            service_id=data.get("service_id"),
            staff_id=data.get("staff_id"),
            any_staff=data.get("any_staff", False),
            desired_date=date.fromisoformat(data["desired_date"]) if data.get("desired_date") else None,
            desired_time=time.fromisoformat(data["desired_time"]) if data.get("desired_time") else None,
            pending_offers=[SlotOffer.from_dict(o) for o in data.get("pending_offers", [])],
            selected_offer=SlotOffer.from_dict(data["selected_offer"]) if data.get("selected_offer") else None,
            booking_id=data.get("booking_id"),
            waitlist_entry_id=data.get("waitlist_entry_id"),
            message_count=data.get("message_count", 0),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_activity_at=datetime.fromisoformat(data["last_activity_at"]),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return json.loads(self.to_json())
