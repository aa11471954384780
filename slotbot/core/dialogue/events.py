"""Inbound events, outbound replies and the button payload grammar."""

from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Optional


class EventKind(str, Enum):
    """How the customer reached us."""

    TEXT = "text"
    BUTTON = "button"


class IntentType(str, Enum):
    """Intent categories produced by the external classifier."""

    BOOKING = "booking"                # "book a haircut tomorrow"
    CONFIRMATION = "confirmation"      # "yes", "sounds good"
    DECLINE = "decline"                # "no", "not that one"
    CHANGE_TIME = "change_time"
    CHANGE_SERVICE = "change_service"
    CHANGE_STAFF = "change_staff"
    PROVIDE_INFO = "provide_info"      # Answering our question
    GREETING = "greeting"
    UNKNOWN = "unknown"


@dataclass
class DetectedIntent:
    """
    Structured hints extracted upstream.

    Every field is optional; the dialogue validates each one against the
    business before accepting it.
    """

    intent: IntentType = IntentType.UNKNOWN
    confidence: float = 1.0

    service_id: Optional[str] = None
    service_name: Optional[str] = None     # "haircut"
    staff_id: Optional[str] = None
    staff_name: Optional[str] = None       # "Anna"
    any_staff: bool = False                # "whoever is free"
    date: Optional[date] = None
    time: Optional[time] = None

    @property
    def is_booking(self) -> bool:
        return self.intent == IntentType.BOOKING

    @property
    def has_service(self) -> bool:
        return bool(self.service_id or self.service_name)

    @property
    def has_staff(self) -> bool:
        return bool(self.staff_id or self.staff_name)

    @property
    def has_date(self) -> bool:
        return self.date is not None

    @property
    def has_time(self) -> bool:
        return self.time is not None

    def has_any(self) -> bool:
        """Check if any booking field was extracted."""
        return self.has_service or self.has_staff or self.any_staff or self.has_date or self.has_time

    def to_dict(self) -> dict:
        return {
            "intent": self.intent.value,
            "confidence": self.confidence,
            "service_id": self.service_id,
            "service_name": self.service_name,
            "staff_id": self.staff_id,
            "staff_name": self.staff_name,
            "any_staff": self.any_staff,
            "date": self.date.isoformat() if self.date else None,
            "time": self.time.strftime("%H:%M") if self.time else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DetectedIntent":
        """Build from classifier output. Unknown intents map to UNKNOWN."""
        try:
            intent = IntentType(data.get("intent") or IntentType.UNKNOWN.value)
        except ValueError:
            intent = IntentType.UNKNOWN

        raw_date = data.get("date")
        raw_time = data.get("time")
        return cls(
            intent=intent,
            confidence=float(data.get("confidence", 1.0)),
            service_id=data.get("service_id"),
            service_name=data.get("service_name"),
            staff_id=data.get("staff_id"),
            staff_name=data.get("staff_name"),
            any_staff=bool(data.get("any_staff", False)),
            date=date.fromisoformat(raw_date) if isinstance(raw_date, str) else raw_date,
            time=time.fromisoformat(raw_time) if isinstance(raw_time, str) else raw_time,
        )


@dataclass
class InboundEvent:
    """One customer message or button tap."""

    business_id: str
    customer_id: str
    kind: EventKind
    payload: str = ""
    detected_language: Optional[str] = None
    language_confidence: float = 0.0
    detected_intent: Optional[DetectedIntent] = None
    received_at: Optional[datetime] = None


@dataclass
class OfferChoice:
    """A tappable choice: the id the button carries and its label."""

    offer_id: str
    display_label: str
    payload: str = ""

    def to_dict(self) -> dict:
        return {
            "offer_id": self.offer_id,
            "display_label": self.display_label,
            "payload": self.payload,
        }


@dataclass
class OutboundReply:
    """A template-driven reply; the transport renders it in ``language``."""

    business_id: str
    customer_id: str
    template_key: str
    language: str
    template_args: dict[str, Any] = field(default_factory=dict)
    offers: Optional[list[OfferChoice]] = None

    def to_dict(self) -> dict:
        return {
            "business_id": self.business_id,
            "customer_id": self.customer_id,
            "template_key": self.template_key,
            "template_args": self.template_args,
            "language": self.language,
            "offers": [o.to_dict() for o in self.offers] if self.offers is not None else None,
        }


# =============================================================================
# Button payloads
# =============================================================================


class ButtonKind(str, Enum):
    """Kinds of button payload."""

    SLOT = "slot"
    CONFIRM_YES = "confirm_yes"
    CONFIRM_NO = "confirm_no"
    CHANGE_TIME = "change_time"
    CHANGE_SERVICE = "change_service"
    CHANGE_STAFF = "change_staff"
    WAITLIST_JOIN = "waitlist_join"
    WAITLIST_DECLINE = "waitlist_decline"
    WAITLIST_BOOK = "waitlist_book"
    WAITLIST_PASS = "waitlist_pass"
    SERVICE = "service"
    STAFF = "staff"
    STAFF_ANY = "staff_any"
    DATE = "date"
    UNKNOWN = "unknown"


# Payloads that carry no value
_EXACT = {
    "confirm_yes": ButtonKind.CONFIRM_YES,
    "confirm_no": ButtonKind.CONFIRM_NO,
    "change_time": ButtonKind.CHANGE_TIME,
    "change_service": ButtonKind.CHANGE_SERVICE,
    "change_staff": ButtonKind.CHANGE_STAFF,
    "waitlist_join": ButtonKind.WAITLIST_JOIN,
    "waitlist_decline": ButtonKind.WAITLIST_DECLINE,
    "staff_any": ButtonKind.STAFF_ANY,
}

# Prefixed payloads; longer prefixes first so "waitlist_book_" never
# matches as something shorter
_PREFIXED = (
    ("waitlist_book_", ButtonKind.WAITLIST_BOOK),
    ("waitlist_pass_", ButtonKind.WAITLIST_PASS),
    ("service_", ButtonKind.SERVICE),
    ("staff_", ButtonKind.STAFF),
    ("slot_", ButtonKind.SLOT),
    ("date_", ButtonKind.DATE),
)


@dataclass(frozen=True)
class ButtonAction:
    """A parsed button payload."""

    kind: ButtonKind
    value: Optional[str] = None

    @property
    def is_unknown(self) -> bool:
        return self.kind == ButtonKind.UNKNOWN


def parse_button(payload: str) -> ButtonAction:
    """
    Parse a button payload.

    Examples:
        parse_button("slot_3fa9c21b")      -> ButtonAction(SLOT, "3fa9c21b")
        parse_button("confirm_yes")        -> ButtonAction(CONFIRM_YES)
        parse_button("waitlist_book_42")   -> ButtonAction(WAITLIST_BOOK, "42")
        parse_button("garbage")            -> ButtonAction(UNKNOWN, "garbage")
    """
    raw = (payload or "").strip()
    if raw in _EXACT:
        return ButtonAction(_EXACT[raw])
    for prefix, kind in _PREFIXED:
        if raw.startswith(prefix) and len(raw) > len(prefix):
            value = raw[len(prefix):]
            if kind == ButtonKind.DATE:
                try:
                    date.fromisoformat(value)
                except ValueError:
                    return ButtonAction(ButtonKind.UNKNOWN, raw)
            return ButtonAction(kind, value)
    return ButtonAction(ButtonKind.UNKNOWN, raw)


def slot_payload(offer_id: str) -> str:
    return f"slot_{offer_id}"


def service_payload(service_id: str) -> str:
    return f"service_{service_id}"


def staff_payload(staff_id: str) -> str:
    return f"staff_{staff_id}"


def date_payload(day: date) -> str:
    return f"date_{day.isoformat()}"


def waitlist_book_payload(entry_id: str) -> str:
    return f"waitlist_book_{entry_id}"


def waitlist_pass_payload(entry_id: str) -> str:
    return f"waitlist_pass_{entry_id}"
