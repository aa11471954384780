"""Tests for dialogue flow decisions, button payloads and templates."""

from datetime import date, time, timedelta

import pytest

from slotbot.core.dialogue.events import (
    ButtonKind,
    DetectedIntent,
    EventKind,
    InboundEvent,
    IntentType,
    parse_button,
)
from slotbot.core.dialogue.flow import ActionType, BusinessCatalog, DialogueFlow, is_no, is_yes
from slotbot.core.dialogue.models import DialogueSession
from slotbot.core.dialogue.state import DialogueState
from slotbot.core.dialogue.templates import Templates, render, resolve_language
from slotbot.core.scheduling import SlotOffer
from tests.helpers import MONDAY, at


class TestButtonPayloads:
    """Test the button grammar."""

    def test_slot(self):
        action = parse_button("slot_3fa9c21b")
        assert action.kind == ButtonKind.SLOT
        assert action.value == "3fa9c21b"

    def test_exact_payloads(self):
        assert parse_button("confirm_yes").kind == ButtonKind.CONFIRM_YES
        assert parse_button("confirm_no").kind == ButtonKind.CONFIRM_NO
        assert parse_button("waitlist_join").kind == ButtonKind.WAITLIST_JOIN
        assert parse_button("staff_any").kind == ButtonKind.STAFF_ANY

    def test_waitlist_prefixes_win(self):
        assert parse_button("waitlist_book_42").kind == ButtonKind.WAITLIST_BOOK
        assert parse_button("waitlist_pass_42").value == "42"

    def test_date_must_parse(self):
        assert parse_button("date_2030-03-04").value == "2030-03-04"
        assert parse_button("date_tomorrow").is_unknown

    def test_garbage(self):
        assert parse_button("").is_unknown
        assert parse_button("slot_").is_unknown
        assert parse_button("hello").value == "hello"


class TestWords:

    def test_yes_no_in_session_language(self):
        assert is_yes("Да!", "ru")
        assert is_yes("sí", "es")
        assert is_no("לא", "he")

    def test_english_always_understood(self):
        assert is_yes("OK.", "pt")
        assert is_no("nope", "ru")

    def test_other_words(self):
        assert not is_yes("maybe", "en")
        assert not is_no("tomorrow", "en")


class TestTemplates:

    def test_resolve_language(self):
        assert resolve_language("pt-BR") == "pt"
        assert resolve_language("iw") == "he"
        assert resolve_language("fr", default="ru") == "ru"
        assert resolve_language(None) == "en"

    def test_render(self):
        text = render(Templates.WAITLIST_JOINED, "en", {"date": "04.03", "position": 2})
        assert "04.03" in text and "2" in text

    def test_missing_argument_left_as_placeholder(self):
        assert "{service_name}" in render(Templates.OFFERS, "en")

    def test_unknown_key_returns_key(self):
        assert render("no.such.key", "en") == "no.such.key"

    def test_every_template_renders(self):
        keys = [v for k, v in vars(Templates).items() if k.isupper()]
        for lang in ("en", "ru", "es", "pt", "he"):
            for key in keys:
                assert render(key, lang) != key


def _event(payload: str = "", kind: EventKind = EventKind.TEXT, intent: DetectedIntent = None) -> InboundEvent:
    return InboundEvent(business_id="salon-1", customer_id="c1", kind=kind, payload=payload, detected_intent=intent)


class TestDialogueFlow:
    """Test next-action decisions against the salon catalog."""

    @pytest.fixture
    def flow(self):
        return DialogueFlow()

    @pytest.fixture
    def catalog(self, repository):
        return BusinessCatalog(
            business=repository.businesses["salon-1"],
            services=[s for s in repository.services.values() if s.business_id == "salon-1"],
            staff=[s for s in repository.staff.values() if s.business_id == "salon-1"],
        )

    @pytest.fixture
    def session(self):
        return DialogueSession(business_id="salon-1", customer_id="c1")

    @pytest.fixture
    def offer(self):
        return SlotOffer(staff_id="anna", staff_name="Anna", start=at(MONDAY, "10:00"),
                         end=at(MONDAY, "11:00"), service_id="haircut")

    def test_greeting_gets_help(self, flow, catalog, session):
        action = flow.process(session, _event("hi", intent=DetectedIntent(IntentType.GREETING)), catalog, MONDAY)
        assert action.action_type == ActionType.HELP

    def test_booking_intent_asks_for_service(self, flow, catalog, session):
        action = flow.process(session, _event("book", intent=DetectedIntent(IntentType.BOOKING)), catalog, MONDAY)
        assert action.action_type == ActionType.COLLECT
        assert action.prompt_for == "service"

    def test_service_with_one_eligible_staff_skips_staff_question(self, flow, catalog, session):
        # Only Anna does color
        intent = DetectedIntent(IntentType.BOOKING, service_name="color", date=MONDAY)
        action = flow.process(session, _event("color", intent=intent), catalog, MONDAY)

        assert action.action_type == ActionType.SEARCH
        assert session.staff_id == "anna"

    def test_all_fields_known_searches(self, flow, catalog, session):
        intent = DetectedIntent(
            IntentType.BOOKING, service_name="Haircut", staff_name="boris", date=MONDAY, time=time(15, 0)
        )
        action = flow.process(session, _event("...", intent=intent), catalog, MONDAY)

        assert action.action_type == ActionType.SEARCH
        assert (session.service_id, session.staff_id) == ("haircut", "boris")
        assert session.desired_time == time(15, 0)

    def test_unknown_service_reported(self, flow, catalog, session):
        intent = DetectedIntent(IntentType.BOOKING, service_name="massage")
        action = flow.process(session, _event("massage", intent=intent), catalog, MONDAY)

        assert action.error_key == "error.service_not_found"
        assert action.prompt_for == "service"

    def test_staff_who_cannot_perform_service_rejected(self, flow, catalog, session):
        session.state = DialogueState.COLLECTING
        session.service_id = "color"
        intent = DetectedIntent(IntentType.PROVIDE_INFO, staff_name="Boris")
        action = flow.process(session, _event("boris", intent=intent), catalog, MONDAY)

        assert action.error_key == "error.staff_not_found"
        assert session.staff_id == "anna"  # auto-filled instead

    def test_past_date_rejected(self, flow, catalog, session):
        session.state = DialogueState.COLLECTING
        session.service_id = "haircut"
        session.any_staff = True
        intent = DetectedIntent(IntentType.PROVIDE_INFO, date=MONDAY - timedelta(days=1))
        action = flow.process(session, _event("yesterday", intent=intent), catalog, MONDAY)

        assert action.error_key == "error.start_in_past"
        assert action.prompt_for == "date"

    def test_buttons_fill_fields(self, flow, catalog, session):
        session.state = DialogueState.COLLECTING
        flow.process(session, _event("service_haircut", EventKind.BUTTON), catalog, MONDAY)
        flow.process(session, _event("staff_any", EventKind.BUTTON), catalog, MONDAY)
        action = flow.process(session, _event("date_2030-03-05", EventKind.BUTTON), catalog, MONDAY)

        assert action.action_type == ActionType.SEARCH
        assert session.any_staff
        assert session.desired_date == date(2030, 3, 5)

    def test_slot_button_selects_pending_offer(self, flow, catalog, session, offer):
        session.state = DialogueState.OFFERING
        session.pending_offers = [offer]
        action = flow.process(session, _event(f"slot_{offer.offer_id}", EventKind.BUTTON), catalog, MONDAY)

        assert action.action_type == ActionType.SELECT
        assert action.offer is offer

    def test_stale_slot_button_reoffers(self, flow, catalog, session, offer):
        session.state = DialogueState.OFFERING
        session.pending_offers = [offer]
        action = flow.process(session, _event("slot_00000000", EventKind.BUTTON), catalog, MONDAY)

        assert action.action_type == ActionType.REOFFER
        assert action.template_key == Templates.OFFERS_PICK_AGAIN

    def test_offer_by_number(self, flow, catalog, session, offer):
        session.state = DialogueState.OFFERING
        session.pending_offers = [offer]
        assert flow.process(session, _event("1"), catalog, MONDAY).action_type == ActionType.SELECT
        assert flow.process(session, _event("2"), catalog, MONDAY).action_type == ActionType.REOFFER

    def test_confirming_yes_and_no(self, flow, catalog, session, offer):
        session.state = DialogueState.CONFIRMING
        session.selected_offer = offer
        session.language = "ru"

        assert flow.process(session, _event("да"), catalog, MONDAY).action_type == ActionType.BOOK
        assert flow.process(session, _event("confirm_no", EventKind.BUTTON), catalog, MONDAY).action_type == ActionType.REOFFER
        assert flow.process(session, _event("what?"), catalog, MONDAY).action_type == ActionType.REPROMPT

    def test_change_time_asks_for_date(self, flow, catalog, session, offer):
        session.state = DialogueState.OFFERING
        session.service_id = "haircut"
        session.any_staff = True
        session.desired_date = MONDAY
        session.pending_offers = [offer]

        action = flow.process(session, _event("change_time", EventKind.BUTTON), catalog, MONDAY)

        assert action.action_type == ActionType.COLLECT
        assert action.prompt_for == "date"
        assert session.desired_date is None
        assert session.pending_offers == []

    def test_waitlist_offered(self, flow, catalog, session):
        session.state = DialogueState.WAITLIST_OFFERED
        assert flow.process(session, _event("yes"), catalog, MONDAY).action_type == ActionType.WAITLIST_JOIN
        assert flow.process(session, _event("waitlist_decline", EventKind.BUTTON), catalog, MONDAY).action_type == ActionType.WAITLIST_DECLINE

    def test_waitlist_buttons_work_from_any_state(self, flow, catalog, session):
        action = flow.process(session, _event("waitlist_book_e1", EventKind.BUTTON), catalog, MONDAY)
        assert action.action_type == ActionType.WAITLIST_BOOK
        assert action.entry_id == "e1"
