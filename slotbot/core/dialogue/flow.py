"""
Conversation Flow Manager.

Decides the next action for a booking dialogue from the current state and
the inbound event. Collected fields are validated against the business
catalog here; everything that touches storage (slot search, allocation,
waitlist) is left to the engine.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Optional

from slotbot.core.dialogue.events import (
    ButtonAction,
    ButtonKind,
    DetectedIntent,
    EventKind,
    InboundEvent,
    IntentType,
    parse_button,
)
from slotbot.core.dialogue.models import DialogueSession
from slotbot.core.dialogue.state import DialogueState
from slotbot.core.dialogue.templates import Templates
from slotbot.core.scheduling.errors import ErrorReason
from slotbot.core.scheduling.types import Business, ServiceSpec, SlotOffer, Staff

logger = logging.getLogger(__name__)


# Yes/no words for text replies without a structured intent
YES_WORDS = {
    "en": {"yes", "y", "yeah", "yep", "sure", "ok", "okay", "confirm", "book it"},
    "ru": {"да", "ага", "конечно", "подтверждаю", "ок", "хорошо"},
    "es": {"sí", "si", "claro", "vale", "ok", "confirmo"},
    "pt": {"sim", "claro", "pode", "ok", "confirmo"},
    "he": {"כן", "בטח", "אוקיי", "מאשר", "מאשרת"},
}
NO_WORDS = {
    "en": {"no", "n", "nope", "cancel", "no thanks"},
    "ru": {"нет", "не", "отмена", "не надо"},
    "es": {"no", "cancelar", "no gracias"},
    "pt": {"não", "nao", "cancelar", "não obrigado"},
    "he": {"לא", "ביטול", "לא תודה"},
}

_PUNCTUATION = re.compile(r"[.!?,;:¡¿]+")

_FIELD_BUTTONS = {ButtonKind.SERVICE, ButtonKind.STAFF, ButtonKind.STAFF_ANY, ButtonKind.DATE}
_CHANGE_BUTTONS = {
    ButtonKind.CHANGE_TIME: "date",
    ButtonKind.CHANGE_SERVICE: "service",
    ButtonKind.CHANGE_STAFF: "staff",
}
_CHANGE_INTENTS = {
    IntentType.CHANGE_TIME: "date",
    IntentType.CHANGE_SERVICE: "service",
    IntentType.CHANGE_STAFF: "staff",
}


def _normalize(text: str) -> str:
    return _PUNCTUATION.sub("", (text or "").strip().lower()).strip()


def is_yes(text: str, language: str) -> bool:
    """Check for an affirmative reply in the session language or English."""
    word = _normalize(text)
    return word in YES_WORDS.get(language, set()) or word in YES_WORDS["en"]


def is_no(text: str, language: str) -> bool:
    """Check for a negative reply in the session language or English."""
    word = _normalize(text)
    return word in NO_WORDS.get(language, set()) or word in NO_WORDS["en"]


@dataclass
class BusinessCatalog:
    """Active services and staff of one business, as seen by the dialogue."""

    business: Business
    services: list[ServiceSpec] = field(default_factory=list)
    staff: list[Staff] = field(default_factory=list)

    def service(self, service_id: Optional[str]) -> Optional[ServiceSpec]:
        return next((s for s in self.services if s.id == service_id), None)

    def staff_member(self, staff_id: Optional[str]) -> Optional[Staff]:
        return next((s for s in self.staff if s.id == staff_id), None)

    def match_service(self, service_id: Optional[str], name: Optional[str]) -> Optional[ServiceSpec]:
        """Resolve a service hint by id, then by exact or partial name."""
        if service_id:
            return self.service(service_id)
        return _match_by_name(self.services, name)

    def match_staff(self, staff_id: Optional[str], name: Optional[str]) -> Optional[Staff]:
        """Resolve a staff hint by id, then by exact or partial name."""
        if staff_id:
            return self.staff_member(staff_id)
        return _match_by_name(self.staff, name)

    def eligible_staff(self, service_id: Optional[str]) -> list[Staff]:
        return [s for s in self.staff if s.performs(service_id)]


def _match_by_name(items: list, name: Optional[str]):
    needle = _normalize(name or "")
    if not needle:
        return None
    exact = [item for item in items if _normalize(item.name) == needle]
    if exact:
        return exact[0]
    partial = [item for item in items if needle in _normalize(item.name) or _normalize(item.name) in needle]
    # Ambiguous partial matches are treated as no match
    return partial[0] if len(partial) == 1 else None


class ActionType(str, Enum):
    """What the engine should do next."""

    HELP = "help"                        # No booking intent yet
    COLLECT = "collect"                  # Ask for a missing field
    SEARCH = "search"                    # All fields known; find slots
    REOFFER = "reoffer"                  # Re-send the current offers
    SELECT = "select"                    # Offer chosen; ask for confirmation
    BOOK = "book"                        # Confirmed; allocate
    REPROMPT = "reprompt"                # Repeat the current question
    WAITLIST_JOIN = "waitlist_join"
    WAITLIST_DECLINE = "waitlist_decline"
    WAITLIST_BOOK = "waitlist_book"
    WAITLIST_PASS = "waitlist_pass"


@dataclass
class FlowAction:
    """Action determined by flow manager."""

    action_type: ActionType
    prompt_for: Optional[str] = None     # service, staff or date
    offer: Optional[SlotOffer] = None
    entry_id: Optional[str] = None
    error_key: Optional[str] = None      # Rejected hint, reported before the prompt
    template_key: Optional[str] = None   # Overrides the default reply for the action


class DialogueFlow:
    """
    State machine manager for booking dialogues.

    Determines the next action based on:
    - Current state
    - Button payload or detected intent
    - What information is still needed
    """

    def process(
        self,
        session: DialogueSession,
        event: InboundEvent,
        catalog: BusinessCatalog,
        today: date,
    ) -> FlowAction:
        """Process an inbound event and determine the next action.

        Args:
            session: Current session (collected fields are updated in place)
            event: Inbound event
            catalog: Active services and staff of the business
            today: Business-local date, for rejecting past dates

        Returns:
            FlowAction for the engine to execute
        """
        button = parse_button(event.payload) if event.kind == EventKind.BUTTON else None
        intent = event.detected_intent

        # Waitlist notifications can be answered whatever the session is doing
        if button and button.kind == ButtonKind.WAITLIST_BOOK:
            return FlowAction(ActionType.WAITLIST_BOOK, entry_id=button.value)
        if button and button.kind == ButtonKind.WAITLIST_PASS:
            return FlowAction(ActionType.WAITLIST_PASS, entry_id=button.value)

        state = session.state
        if state == DialogueState.IDLE:
            return self._from_idle(session, button, intent, catalog, today)
        if state == DialogueState.COLLECTING:
            return self._collecting(session, button, intent, catalog, today)
        if state == DialogueState.OFFERING:
            return self._offering(session, event, button, intent, catalog, today)
        if state == DialogueState.CONFIRMING:
            return self._confirming(session, event, button, intent, catalog, today)
        if state == DialogueState.WAITLIST_OFFERED:
            return self._waitlist_offered(session, event, button, intent, catalog, today)

        logger.warning(f"Event for session in terminal state {state.value}")
        return FlowAction(ActionType.HELP)

    # === Per-state handlers ===

    def _from_idle(
        self,
        session: DialogueSession,
        button: Optional[ButtonAction],
        intent: Optional[DetectedIntent],
        catalog: BusinessCatalog,
        today: date,
    ) -> FlowAction:
        hints = self._button_hints(button) if button else intent
        wants_booking = hints is not None and (hints.is_booking or hints.has_any())
        if not wants_booking:
            return FlowAction(ActionType.HELP)
        return self._fill(session, hints, catalog, today)

    def _collecting(
        self,
        session: DialogueSession,
        button: Optional[ButtonAction],
        intent: Optional[DetectedIntent],
        catalog: BusinessCatalog,
        today: date,
    ) -> FlowAction:
        change = self._change_target(button, intent)
        if change:
            self.clear_field(session, change)
        hints = self._button_hints(button) if button else intent
        return self._fill(session, hints, catalog, today)

    def _offering(
        self,
        session: DialogueSession,
        event: InboundEvent,
        button: Optional[ButtonAction],
        intent: Optional[DetectedIntent],
        catalog: BusinessCatalog,
        today: date,
    ) -> FlowAction:
        if button and button.kind == ButtonKind.SLOT:
            offer = session.find_offer(button.value)
            if offer is None:
                logger.info(f"Stale or unknown offer {button.value} for {session.customer_id}")
                return FlowAction(ActionType.REOFFER, template_key=Templates.OFFERS_PICK_AGAIN)
            return FlowAction(ActionType.SELECT, offer=offer)

        change = self._change_target(button, intent)
        if change:
            self.clear_field(session, change)
            return self._fill(session, None, catalog, today)

        if button and button.kind in _FIELD_BUTTONS:
            return self._fill(session, self._button_hints(button), catalog, today)

        if event.kind == EventKind.TEXT:
            offer = self._offer_by_number(session, event.payload)
            if offer is not None:
                return FlowAction(ActionType.SELECT, offer=offer)
            if intent is not None and intent.has_any():
                return self._fill(session, intent, catalog, today)

        return FlowAction(ActionType.REOFFER, template_key=Templates.OFFERS_PICK_AGAIN)

    def _confirming(
        self,
        session: DialogueSession,
        event: InboundEvent,
        button: Optional[ButtonAction],
        intent: Optional[DetectedIntent],
        catalog: BusinessCatalog,
        today: date,
    ) -> FlowAction:
        if button:
            if button.kind == ButtonKind.CONFIRM_YES:
                return FlowAction(ActionType.BOOK, offer=session.selected_offer)
            if button.kind == ButtonKind.CONFIRM_NO:
                return FlowAction(ActionType.REOFFER)
            if button.kind == ButtonKind.SLOT:
                offer = session.find_offer(button.value)
                if offer is not None:
                    return FlowAction(ActionType.SELECT, offer=offer)
                return FlowAction(ActionType.REPROMPT)
        else:
            if self._affirmative(event, intent, session.language):
                return FlowAction(ActionType.BOOK, offer=session.selected_offer)
            if self._negative(event, intent, session.language):
                return FlowAction(ActionType.REOFFER)

        change = self._change_target(button, intent)
        if change:
            self.clear_field(session, change)
            return self._fill(session, None, catalog, today)
        return FlowAction(ActionType.REPROMPT)

    def _waitlist_offered(
        self,
        session: DialogueSession,
        event: InboundEvent,
        button: Optional[ButtonAction],
        intent: Optional[DetectedIntent],
        catalog: BusinessCatalog,
        today: date,
    ) -> FlowAction:
        if button:
            if button.kind == ButtonKind.WAITLIST_JOIN:
                return FlowAction(ActionType.WAITLIST_JOIN)
            if button.kind == ButtonKind.WAITLIST_DECLINE:
                return FlowAction(ActionType.WAITLIST_DECLINE)
            if button.kind in _FIELD_BUTTONS:
                return self._fill(session, self._button_hints(button), catalog, today)
            if button.kind in _CHANGE_BUTTONS:
                self.clear_field(session, _CHANGE_BUTTONS[button.kind])
                return self._fill(session, None, catalog, today)
            return FlowAction(ActionType.REPROMPT)

        if self._affirmative(event, intent, session.language):
            return FlowAction(ActionType.WAITLIST_JOIN)
        if self._negative(event, intent, session.language):
            return FlowAction(ActionType.WAITLIST_DECLINE)
        if intent is not None and intent.has_any():
            # "what about Friday?" starts a new search instead
            return self._fill(session, intent, catalog, today)
        return FlowAction(ActionType.REPROMPT)

    # === Field collection ===

    def _fill(
        self,
        session: DialogueSession,
        hints: Optional[DetectedIntent],
        catalog: BusinessCatalog,
        today: date,
    ) -> FlowAction:
        error_key = self.apply_hints(session, hints, catalog, today) if hints else None
        missing = self.next_missing(session, catalog)
        if missing:
            return FlowAction(ActionType.COLLECT, prompt_for=missing, error_key=error_key)
        return FlowAction(ActionType.SEARCH, error_key=error_key)

    def apply_hints(
        self,
        session: DialogueSession,
        hints: DetectedIntent,
        catalog: BusinessCatalog,
        today: date,
    ) -> Optional[str]:
        """
        Validate classifier or button hints and copy the valid ones into the session.

        Returns:
            Message key for the first rejected hint, if any
        """
        error_key = None

        if hints.has_service:
            service = catalog.match_service(hints.service_id, hints.service_name)
            if service is None:
                error_key = error_key or f"error.{ErrorReason.SERVICE_NOT_FOUND.value}"
            elif service.id != session.service_id:
                session.service_id = service.id
                session.clear_offers()
                staff = catalog.staff_member(session.staff_id)
                if staff is not None and not staff.performs(service.id):
                    session.staff_id = None

        if hints.any_staff:
            session.any_staff = True
            session.staff_id = None
        elif hints.has_staff:
            staff = catalog.match_staff(hints.staff_id, hints.staff_name)
            if staff is None or not staff.performs(session.service_id):
                error_key = error_key or f"error.{ErrorReason.STAFF_NOT_FOUND.value}"
            else:
                session.staff_id = staff.id
                session.any_staff = False

        if hints.has_date:
            if hints.date < today:
                error_key = error_key or f"error.{ErrorReason.START_IN_PAST.value}"
            else:
                session.desired_date = hints.date

        if hints.has_time:
            session.desired_time = hints.time

        return error_key

    def next_missing(self, session: DialogueSession, catalog: BusinessCatalog) -> Optional[str]:
        """
        First field still needed, auto-filling single choices.

        A business with exactly one service, or one eligible staff member,
        never gets asked about it.
        """
        if session.service_id is None and catalog.services:
            if len(catalog.services) == 1:
                session.service_id = catalog.services[0].id
            else:
                return "service"

        if not session.has_staff_choice:
            eligible = catalog.eligible_staff(session.service_id)
            if len(eligible) == 1:
                session.staff_id = eligible[0].id
            elif not eligible:
                # Nobody can do it; the search comes back empty and offers the waitlist
                session.any_staff = True
            else:
                return "staff"

        if session.desired_date is None:
            return "date"
        return None

    def clear_field(self, session: DialogueSession, name: str) -> None:
        """Forget a collected field so it is asked again."""
        if name == "date":
            session.desired_date = None
            session.desired_time = None
        elif name == "service":
            session.service_id = None
        elif name == "staff":
            session.staff_id = None
            session.any_staff = False
        session.clear_offers()

    # === Helpers ===

    def _button_hints(self, button: ButtonAction) -> Optional[DetectedIntent]:
        if button.kind == ButtonKind.SERVICE:
            return DetectedIntent(IntentType.PROVIDE_INFO, service_id=button.value)
        if button.kind == ButtonKind.STAFF:
            return DetectedIntent(IntentType.PROVIDE_INFO, staff_id=button.value)
        if button.kind == ButtonKind.STAFF_ANY:
            return DetectedIntent(IntentType.PROVIDE_INFO, any_staff=True)
        if button.kind == ButtonKind.DATE:
            return DetectedIntent(IntentType.PROVIDE_INFO, date=date.fromisoformat(button.value))
        return None

    def _change_target(
        self,
        button: Optional[ButtonAction],
        intent: Optional[DetectedIntent],
    ) -> Optional[str]:
        if button is not None:
            return _CHANGE_BUTTONS.get(button.kind)
        if intent is not None:
            return _CHANGE_INTENTS.get(intent.intent)
        return None

    def _offer_by_number(self, session: DialogueSession, text: str) -> Optional[SlotOffer]:
        raw = _normalize(text)
        if not raw.isdigit():
            return None
        index = int(raw)
        if 1 <= index <= len(session.pending_offers):
            return session.pending_offers[index - 1]
        return None

    def _affirmative(self, event: InboundEvent, intent: Optional[DetectedIntent], language: str) -> bool:
        if intent is not None and intent.intent == IntentType.CONFIRMATION:
            return True
        return event.kind == EventKind.TEXT and is_yes(event.payload, language)

    def _negative(self, event: InboundEvent, intent: Optional[DetectedIntent], language: str) -> bool:
        if intent is not None and intent.intent == IntentType.DECLINE:
            return True
        return event.kind == EventKind.TEXT and is_no(event.payload, language)
