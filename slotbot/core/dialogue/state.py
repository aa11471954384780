"""Booking dialogue state machine."""

from enum import Enum
from typing import Set


class DialogueState(str, Enum):
    """States in the booking dialogue."""

    # Initial
    IDLE = "idle"

    # Information gathering (service / staff / date)
    COLLECTING = "collecting"

    # Offers shown, awaiting selection
    OFFERING = "offering"

    # Offer selected, awaiting explicit yes/no
    CONFIRMING = "confirming"

    # No offers; customer asked whether to join the waitlist
    WAITLIST_OFFERED = "waitlist_offered"

    # Terminal states
    DONE = "done"
    WAITLISTED = "waitlisted"
    ABANDONED = "abandoned"


# Valid state transitions. Inactivity -> ABANDONED is allowed from every
# non-terminal state.
VALID_TRANSITIONS: dict[DialogueState, Set[DialogueState]] = {
    DialogueState.IDLE: {
        DialogueState.COLLECTING,
        DialogueState.ABANDONED,
    },
    DialogueState.COLLECTING: {
        DialogueState.OFFERING,
        DialogueState.WAITLIST_OFFERED,
        DialogueState.ABANDONED,
    },
    DialogueState.OFFERING: {
        DialogueState.CONFIRMING,
        DialogueState.COLLECTING,  # Change service / staff / date
        DialogueState.WAITLIST_OFFERED,  # Re-search came back empty
        DialogueState.ABANDONED,
    },
    DialogueState.CONFIRMING: {
        DialogueState.DONE,
        DialogueState.OFFERING,  # Declined, or slot taken meanwhile
        DialogueState.COLLECTING,
        DialogueState.WAITLIST_OFFERED,  # Slot taken and nothing else left
        DialogueState.ABANDONED,
    },
    DialogueState.WAITLIST_OFFERED: {
        DialogueState.WAITLISTED,
        DialogueState.ABANDONED,  # Declined
        DialogueState.COLLECTING,  # Try another date instead
    },
    DialogueState.DONE: set(),
    DialogueState.WAITLISTED: set(),
    DialogueState.ABANDONED: set(),
}


def can_transition(from_state: DialogueState, to_state: DialogueState) -> bool:
    """Check if a state transition is valid."""
    return to_state in VALID_TRANSITIONS.get(from_state, set())


def get_valid_transitions(state: DialogueState) -> Set[DialogueState]:
    """Get all valid transitions from a state."""
    return VALID_TRANSITIONS.get(state, set())


def is_terminal_state(state: DialogueState) -> bool:
    """Check if state is terminal (session is torn down)."""
    return state in {
        DialogueState.DONE,
        DialogueState.WAITLISTED,
        DialogueState.ABANDONED,
    }


def is_stable_state(state: DialogueState) -> bool:
    """States an errored event may fall back to."""
    return state in {
        DialogueState.COLLECTING,
        DialogueState.OFFERING,
    }
