"""
Dialogue Engine - Main Orchestrator.

Coordinates all components to process inbound events and manage the
complete booking dialogue:

1. Serialize on the (business, customer) session lock
2. Load the live session (expired sessions are abandoned on load)
3. Ask the flow manager what to do
4. Execute it: slot search, allocation, waitlist
5. Save, or tear down terminal sessions

Storage failures leave the stored session untouched and reply with a
generic retry-later message. Any other failure falls back to the nearest
stable state; only inactivity abandons a session.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterable, Optional
from zoneinfo import ZoneInfo

from slotbot.config import settings
from slotbot.core.dialogue.events import (
    InboundEvent,
    OfferChoice,
    OutboundReply,
    date_payload,
    service_payload,
    slot_payload,
    staff_payload,
    waitlist_book_payload,
    waitlist_pass_payload,
)
from slotbot.core.dialogue.flow import ActionType, BusinessCatalog, DialogueFlow, FlowAction
from slotbot.core.dialogue.manager import SessionManager
from slotbot.core.dialogue.models import DialogueSession
from slotbot.core.dialogue.state import DialogueState, can_transition, is_terminal_state
from slotbot.core.dialogue.templates import (
    Buttons,
    Templates,
    format_when,
    offer_label,
    render,
    resolve_language,
)
from slotbot.core.scheduling.allocator import BookingAllocator
from slotbot.core.scheduling.alternatives import closest_offers
from slotbot.core.scheduling.errors import (
    BookingError,
    ConflictError,
    ErrorReason,
    NotFoundError,
    StorageError,
    ValidationError,
)
from slotbot.core.scheduling.repository import EventPublisher, SchedulingRepository
from slotbot.core.scheduling.slot_finder import SlotFinder
from slotbot.core.scheduling.types import Booking, SlotOffer, WaitlistEntry, as_utc
from slotbot.core.waitlist.service import WaitlistService

logger = logging.getLogger(__name__)

# Upper bound on slots scanned for one day when ranking by preferred time
MAX_DAY_SCAN = 500


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class EngineResponse:
    """Response from dialogue engine."""

    replies: list[OutboundReply]
    state: Optional[DialogueState]
    session: Optional[DialogueSession] = None
    booking: Optional[Booking] = None
    waitlist_entry: Optional[WaitlistEntry] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        result = {
            "replies": [r.to_dict() for r in self.replies],
            "state": self.state.value if self.state else None,
        }
        if self.session is not None:
            result["session"] = self.session.to_dict()
        if self.booking is not None:
            result["booking"] = self.booking.to_dict()
        if self.waitlist_entry is not None:
            result["waitlist_entry"] = self.waitlist_entry.to_dict()
        return result


@dataclass
class _Turn:
    """Working state for one inbound event."""

    session: DialogueSession
    catalog: BusinessCatalog
    replies: list[OutboundReply] = field(default_factory=list)
    booking: Optional[Booking] = None
    entry: Optional[WaitlistEntry] = None

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.catalog.business.timezone)

    def say(
        self,
        template_key: str,
        args: Optional[dict] = None,
        offers: Optional[list[OfferChoice]] = None,
    ) -> None:
        self.replies.append(
            OutboundReply(
                business_id=self.session.business_id,
                customer_id=self.session.customer_id,
                template_key=template_key,
                language=self.session.language,
                template_args=args or {},
                offers=offers,
            )
        )


class DialogueEngine:
    """
    Main orchestrator for booking dialogues.

    Coordinates:
    - Session storage and per-session serialization
    - Conversation flow
    - Slot search and alternative ranking
    - Booking allocation
    - Waitlist
    """

    def __init__(
        self,
        repository: SchedulingRepository,
        sessions: SessionManager,
        slot_finder: Optional[SlotFinder] = None,
        allocator: Optional[BookingAllocator] = None,
        waitlist: Optional[WaitlistService] = None,
        flow: Optional[DialogueFlow] = None,
        publisher: Optional[EventPublisher] = None,
        clock: Optional[Callable[[], datetime]] = None,
        offer_list_size: Optional[int] = None,
        confidence_threshold: Optional[float] = None,
        search_days_ahead: Optional[int] = None,
    ):
        """Initialize engine with optional dependencies.

        Args:
            repository: Scheduling (and waitlist) storage
            sessions: Dialogue session store
            slot_finder: Slot finder (built from repository if not provided)
            allocator: Booking allocator (built from repository if not provided)
            waitlist: Waitlist service (built from the above if not provided)
            flow: Conversation flow manager
            publisher: Booking-created event publisher for the default allocator
            clock: Injected "now"
        """
        self._repository = repository
        self._sessions = sessions
        self._clock = clock or _utcnow
        self._finder = slot_finder or SlotFinder(repository, clock=self._clock)
        self._allocator = allocator or BookingAllocator(repository, publisher, clock=self._clock)
        self._waitlist = waitlist or WaitlistService(
            repository, self._finder, self._allocator, clock=self._clock
        )
        self._flow = flow or DialogueFlow()
        self._offer_list_size = offer_list_size or settings.offer_list_size
        self._confidence_threshold = (
            confidence_threshold if confidence_threshold is not None else settings.language_confidence_threshold
        )
        self._search_days_ahead = search_days_ahead or settings.search_days_ahead

    @property
    def allocator(self) -> BookingAllocator:
        return self._allocator

    @property
    def waitlist(self) -> WaitlistService:
        return self._waitlist

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    # === Public API ===

    async def handle(self, event: InboundEvent) -> EngineResponse:
        """Process one inbound event.

        Events for the same (business, customer) are handled one at a time,
        in arrival order.

        Raises:
            NotFoundError: If the business does not exist
        """
        try:
            async with self._sessions.lock(event.business_id, event.customer_id):
                return await self._handle_locked(event)
        except StorageError as e:
            # Lock or session load failed; nothing was changed
            logger.error(
                f"Storage failure for {event.business_id}/{event.customer_id}: {e}",
                exc_info=True,
            )
            language = resolve_language(event.detected_language)
            reply = OutboundReply(
                business_id=event.business_id,
                customer_id=event.customer_id,
                template_key=Templates.RETRY_LATER,
                language=language,
            )
            return EngineResponse(replies=[reply], state=None)

    async def run_waitlist_sweep(self, business_id: str, day: date) -> list[OutboundReply]:
        """Run the waitlist sweep and build notifications for promoted entries."""
        catalog = await self._load_catalog(business_id)
        notified = await self._waitlist.run_sweep(business_id, day)
        return self._notification_replies(catalog, notified)

    async def cancel_booking(self, booking_id: str) -> tuple[Booking, list[OutboundReply]]:
        """Cancel a booking and offer the freed time to that day's waitlist."""
        booking = await self._allocator.cancel_booking(booking_id)
        catalog = await self._load_catalog(booking.business_id)
        day = as_utc(booking.start).astimezone(ZoneInfo(catalog.business.timezone)).date()
        notified = await self._waitlist.run_sweep(booking.business_id, day)
        return booking, self._notification_replies(catalog, notified)

    async def expire_sessions(self) -> int:
        """Abandon inactive sessions."""
        return await self._sessions.expire_sessions()

    async def get_session(self, business_id: str, customer_id: str) -> Optional[DialogueSession]:
        return await self._sessions.load(business_id, customer_id)

    # === Event handling ===

    async def _handle_locked(self, event: InboundEvent) -> EngineResponse:
        now = self._clock()
        catalog = await self._load_catalog(event.business_id)

        session = await self._sessions.load(event.business_id, event.customer_id)
        if session is None:
            session = self._sessions.new_session(
                event.business_id, event.customer_id, catalog.business.default_language
            )
        original_state = session.state

        self._update_language(session, event)
        session.touch(now)
        turn = _Turn(session=session, catalog=catalog)

        try:
            action = self._flow.process(session, event, catalog, self._today(catalog, now))
            logger.debug(
                f"{event.business_id}/{event.customer_id} in {session.state.value}: "
                f"{action.action_type.value}"
            )
            await self._execute(turn, action)
        except StorageError as e:
            logger.error(f"Storage failure in state {original_state.value}: {e}", exc_info=True)
            turn.replies = []
            turn.say(Templates.RETRY_LATER)
            return EngineResponse(replies=turn.replies, state=original_state)
        except Exception as e:
            logger.error(f"Error handling event in state {session.state.value}: {e}", exc_info=True)
            self._recover(session)
            turn.replies = []
            turn.say(Templates.RETRY_LATER)

        if session.state != DialogueState.IDLE:
            try:
                await self._sessions.save(session)
            except StorageError as e:
                logger.error(f"Failed to save session {session.session_id}: {e}", exc_info=True)
                if turn.booking is None:
                    turn.replies = []
                    turn.say(Templates.RETRY_LATER)
                    return EngineResponse(replies=turn.replies, state=original_state)

        return EngineResponse(
            replies=turn.replies,
            state=session.state,
            session=None if is_terminal_state(session.state) else session,
            booking=turn.booking,
            waitlist_entry=turn.entry,
        )

    async def _execute(self, turn: _Turn, action: FlowAction) -> None:
        """Execute the determined action."""
        session = turn.session
        action_type = action.action_type

        if action.error_key:
            turn.say(action.error_key)

        if action_type == ActionType.HELP:
            turn.say(Templates.HELP)
        elif action_type == ActionType.COLLECT:
            self._ask(turn, action.prompt_for)
        elif action_type == ActionType.SEARCH:
            await self._search_and_offer(turn, action.template_key or Templates.OFFERS)
        elif action_type == ActionType.REOFFER:
            await self._reoffer(turn, action.template_key or Templates.OFFERS)
        elif action_type == ActionType.SELECT:
            session.selected_offer = action.offer
            session.transition_to(DialogueState.CONFIRMING)
            self._ask_confirmation(turn)
        elif action_type == ActionType.BOOK:
            await self._book(turn)
        elif action_type == ActionType.REPROMPT:
            await self._reprompt(turn)
        elif action_type == ActionType.WAITLIST_JOIN:
            await self._join_waitlist(turn)
        elif action_type == ActionType.WAITLIST_DECLINE:
            session.transition_to(DialogueState.ABANDONED)
            turn.say(Templates.WAITLIST_DECLINED)
        elif action_type == ActionType.WAITLIST_BOOK:
            await self._waitlist_book(turn, action.entry_id)
        elif action_type == ActionType.WAITLIST_PASS:
            await self._waitlist_pass(turn, action.entry_id)

    # === Collecting ===

    def _ask(self, turn: _Turn, prompt_for: Optional[str]) -> None:
        session = turn.session
        if session.state != DialogueState.COLLECTING:
            session.clear_offers()
            session.transition_to(DialogueState.COLLECTING)

        catalog = turn.catalog
        if prompt_for == "service":
            choices = [
                OfferChoice(s.id, s.name, service_payload(s.id)) for s in catalog.services
            ]
            turn.say(Templates.ASK_SERVICE, offers=choices)
        elif prompt_for == "staff":
            choices = [
                OfferChoice(s.id, s.name, staff_payload(s.id))
                for s in catalog.eligible_staff(session.service_id)
            ]
            choices.append(OfferChoice("any", render(Buttons.ANY_STAFF, session.language), "staff_any"))
            turn.say(Templates.ASK_STAFF, offers=choices)
        else:
            turn.say(Templates.ASK_DATE, offers=self._date_choices(turn))

    def _date_choices(self, turn: _Turn) -> list[OfferChoice]:
        """Upcoming days the business is open."""
        today = self._today(turn.catalog, self._clock())
        schedule = turn.catalog.business.schedule
        days = (today + timedelta(days=i) for i in range(self._search_days_ahead))
        return [
            OfferChoice(day.isoformat(), day.strftime("%d.%m"), date_payload(day))
            for day in days
            if schedule.hours_for(day) is not None
        ]

    # === Offering ===

    async def _search_and_offer(
        self,
        turn: _Turn,
        template_key: str = Templates.OFFERS,
        exclude: Iterable[str] = (),
        preferred_staff_id: Optional[str] = None,
    ) -> None:
        session = turn.session
        if session.state in (DialogueState.IDLE, DialogueState.WAITLIST_OFFERED):
            session.transition_to(DialogueState.COLLECTING)

        offers = await self._search(turn, exclude, preferred_staff_id)
        if offers:
            session.pending_offers = offers
            session.selected_offer = None
            session.transition_to(DialogueState.OFFERING)
            turn.say(template_key, self._offer_args(turn), offers=self._offer_choices(offers))
            return

        logger.info(
            f"No slots for {session.customer_id} on {session.desired_date}; offering waitlist"
        )
        session.clear_offers()
        session.transition_to(DialogueState.WAITLIST_OFFERED)
        self._ask_waitlist(turn)

    async def _search(
        self, turn: _Turn, exclude: Iterable[str] = (), preferred_staff_id: Optional[str] = None
    ) -> list[SlotOffer]:
        session = turn.session
        day = session.desired_date
        preferred = (
            datetime.combine(day, session.desired_time, tzinfo=turn.zone)
            if session.desired_time
            else None
        )
        found = await self._finder.find_slots(
            business_id=session.business_id,
            staff_id=None if session.any_staff else session.staff_id,
            service_id=session.service_id,
            from_date=day,
            to_date=day,
            max_results=MAX_DAY_SCAN if preferred else self._offer_list_size,
            exclude_offer_ids=exclude,
        )
        return closest_offers(found, preferred, self._offer_list_size, preferred_staff_id)

    async def _reoffer(self, turn: _Turn, template_key: str) -> None:
        """Re-send the current offers unchanged."""
        session = turn.session
        if not session.pending_offers:
            await self._search_and_offer(turn)
            return
        session.selected_offer = None
        session.transition_to(DialogueState.OFFERING)
        turn.say(template_key, self._offer_args(turn), offers=self._offer_choices(session.pending_offers))

    def _offer_choices(self, offers: list[SlotOffer]) -> list[OfferChoice]:
        return [OfferChoice(o.offer_id, offer_label(o), slot_payload(o.offer_id)) for o in offers]

    def _offer_args(self, turn: _Turn) -> dict:
        service = turn.catalog.service(turn.session.service_id)
        return {"service_name": service.name if service else ""}

    # === Confirming ===

    def _ask_confirmation(self, turn: _Turn) -> None:
        session = turn.session
        offer = session.selected_offer
        lang = session.language
        args = dict(self._offer_args(turn), staff_name=offer.staff_name, when=format_when(offer.start))
        turn.say(
            Templates.CONFIRM,
            args,
            offers=[
                OfferChoice("yes", render(Buttons.YES, lang), "confirm_yes"),
                OfferChoice("no", render(Buttons.NO, lang), "confirm_no"),
                OfferChoice("change_time", render(Buttons.CHANGE_TIME, lang), "change_time"),
            ],
        )

    async def _book(self, turn: _Turn) -> None:
        session = turn.session
        offer = session.selected_offer
        if offer is None:
            await self._reoffer(turn, Templates.OFFERS_PICK_AGAIN)
            return

        try:
            booking = await self._allocator.allocate(
                staff_id=offer.staff_id,
                service_id=offer.service_id,
                customer_id=session.customer_id,
                requested_start=offer.start,
            )
        except ConflictError:
            logger.info(f"Offer {offer.offer_id} taken before {session.customer_id} confirmed; re-offering")
            # Prefer the staff member the customer had picked
            await self._search_and_offer(
                turn, Templates.OFFERS_REFRESHED, exclude={offer.offer_id}, preferred_staff_id=offer.staff_id
            )
            return
        except NotFoundError as e:
            turn.say(e.message_key)
            await self._recollect_after_not_found(turn, e, offer)
            return
        except ValidationError as e:
            turn.say(e.message_key)
            await self._search_and_offer(turn, Templates.OFFERS, exclude={offer.offer_id})
            return

        session.booking_id = booking.id
        session.transition_to(DialogueState.DONE)
        turn.booking = booking
        turn.say(
            Templates.BOOKED,
            dict(
                self._offer_args(turn),
                staff_name=offer.staff_name,
                when=format_when(offer.start),
                booking_code=booking.booking_code,
            ),
        )

        try:
            await self._waitlist.fulfil_for_customer(
                session.business_id, session.customer_id, session.desired_date, booking.id
            )
        except StorageError as e:
            logger.error(f"Failed to close waitlist entries for {session.customer_id}: {e}", exc_info=True)

    async def _recollect_after_not_found(self, turn: _Turn, error: NotFoundError, offer: SlotOffer) -> None:
        """Restart collection for the field that vanished."""
        catalog = turn.catalog
        if error.reason == ErrorReason.SERVICE_NOT_FOUND:
            catalog.services = [s for s in catalog.services if s.id != offer.service_id]
            self._flow.clear_field(turn.session, "service")
        else:
            catalog.staff = [s for s in catalog.staff if s.id != offer.staff_id]
            self._flow.clear_field(turn.session, "staff")

        missing = self._flow.next_missing(turn.session, catalog)
        if missing:
            self._ask(turn, missing)
        else:
            await self._search_and_offer(turn)

    async def _reprompt(self, turn: _Turn) -> None:
        session = turn.session
        if session.state == DialogueState.CONFIRMING and session.selected_offer:
            turn.say(Templates.NOT_UNDERSTOOD)
            self._ask_confirmation(turn)
        elif session.state == DialogueState.WAITLIST_OFFERED:
            turn.say(Templates.NOT_UNDERSTOOD)
            self._ask_waitlist(turn)
        elif session.state in (DialogueState.OFFERING, DialogueState.CONFIRMING):
            await self._reoffer(turn, Templates.OFFERS_PICK_AGAIN)
        elif session.state == DialogueState.COLLECTING:
            missing = self._flow.next_missing(session, turn.catalog)
            if missing:
                self._ask(turn, missing)
            else:
                await self._search_and_offer(turn)
        else:
            turn.say(Templates.HELP)

    # === Waitlist ===

    def _ask_waitlist(self, turn: _Turn) -> None:
        session = turn.session
        lang = session.language
        turn.say(
            Templates.WAITLIST_OFFER,
            {"date": session.desired_date.strftime("%d.%m") if session.desired_date else ""},
            offers=[
                OfferChoice("join", render(Buttons.JOIN_WAITLIST, lang), "waitlist_join"),
                OfferChoice("decline", render(Buttons.DECLINE_WAITLIST, lang), "waitlist_decline"),
                OfferChoice("change_time", render(Buttons.CHANGE_TIME, lang), "change_time"),
            ],
        )

    async def _join_waitlist(self, turn: _Turn) -> None:
        session = turn.session
        if session.desired_date is None:
            self._ask(turn, "date")
            return

        entry = await self._waitlist.enqueue(
            business_id=session.business_id,
            customer_id=session.customer_id,
            service_id=session.service_id,
            staff_id=None if session.any_staff else session.staff_id,
            desired_date=session.desired_date,
            language=session.language,
        )
        session.waitlist_entry_id = entry.id
        session.transition_to(DialogueState.WAITLISTED)
        turn.entry = entry
        turn.say(
            Templates.WAITLIST_JOINED,
            {"date": entry.desired_date.strftime("%d.%m"), "position": entry.position},
        )

    async def _waitlist_book(self, turn: _Turn, entry_id: Optional[str]) -> None:
        try:
            entry, booking = await self._waitlist.accept(entry_id, turn.session.customer_id)
        except StorageError:
            raise
        except BookingError as e:
            logger.info(f"Waitlist booking for {turn.session.customer_id} rejected: {e.reason.value}")
            turn.say(Templates.WAITLIST_UNAVAILABLE)
            return

        turn.booking = booking
        turn.entry = entry
        turn.say(
            Templates.WAITLIST_BOOKED,
            {
                "when": format_when(as_utc(booking.start).astimezone(turn.zone)),
                "booking_code": booking.booking_code,
            },
        )

    async def _waitlist_pass(self, turn: _Turn, entry_id: Optional[str]) -> None:
        try:
            entry, notified = await self._waitlist.pass_entry(entry_id, turn.session.customer_id)
        except StorageError:
            raise
        except BookingError as e:
            logger.info(f"Waitlist pass for {turn.session.customer_id} rejected: {e.reason.value}")
            turn.say(Templates.WAITLIST_UNAVAILABLE)
            return

        turn.entry = entry
        turn.say(Templates.WAITLIST_PASSED)
        turn.replies.extend(self._notification_replies(turn.catalog, notified))

    def _notification_replies(
        self,
        catalog: BusinessCatalog,
        entries: list[WaitlistEntry],
    ) -> list[OutboundReply]:
        zone = ZoneInfo(catalog.business.timezone)
        replies = []
        for entry in entries:
            staff = catalog.staff_member(entry.offered_staff_id)
            replies.append(
                OutboundReply(
                    business_id=entry.business_id,
                    customer_id=entry.customer_id,
                    template_key=Templates.WAITLIST_SLOT_AVAILABLE,
                    language=entry.language,
                    template_args={
                        "when": format_when(as_utc(entry.offered_start).astimezone(zone)),
                        "staff_name": staff.name if staff else "",
                        "minutes": self._waitlist.notification_minutes,
                    },
                    offers=[
                        OfferChoice(entry.id, render(Buttons.BOOK, entry.language), waitlist_book_payload(entry.id)),
                        OfferChoice(entry.id, render(Buttons.PASS, entry.language), waitlist_pass_payload(entry.id)),
                    ],
                )
            )
        return replies

    # === Helpers ===

    async def _load_catalog(self, business_id: str) -> BusinessCatalog:
        business = await self._repository.get_business(business_id)
        if business is None:
            raise NotFoundError(ErrorReason.BUSINESS_NOT_FOUND, f"business {business_id} not found")
        services = await self._repository.list_services(business_id, active_only=True)
        staff = await self._repository.list_staff(business_id, active_only=True)
        return BusinessCatalog(business=business, services=services, staff=staff)

    def _today(self, catalog: BusinessCatalog, now: datetime) -> date:
        return as_utc(now).astimezone(ZoneInfo(catalog.business.timezone)).date()

    def _update_language(self, session: DialogueSession, event: InboundEvent) -> None:
        """Follow the customer's language once detection is confident enough."""
        if not event.detected_language or event.language_confidence <= self._confidence_threshold:
            return
        language = resolve_language(event.detected_language, default=session.language)
        if language != session.language:
            logger.debug(f"Session {session.customer_id} language {session.language} -> {language}")
            session.language = language

    def _recover(self, session: DialogueSession) -> None:
        """Fall back to the nearest stable state after an unexpected error."""
        state = session.state
        if state not in (DialogueState.OFFERING, DialogueState.CONFIRMING):
            return
        session.selected_offer = None
        target = DialogueState.OFFERING if session.pending_offers else DialogueState.COLLECTING
        if target != state and can_transition(state, target):
            session.transition_to(target)
        logger.warning(f"Session {session.customer_id} recovered to {session.state.value}")
