"""
Dialogue module: per-customer booking conversations.

A session walks IDLE -> COLLECTING -> OFFERING -> CONFIRMING -> DONE, with
WAITLIST_OFFERED / WAITLISTED when a day is full and ABANDONED on decline
or inactivity.
"""

from .engine import DialogueEngine, EngineResponse
from .events import (
    ButtonAction,
    ButtonKind,
    DetectedIntent,
    EventKind,
    InboundEvent,
    IntentType,
    OfferChoice,
    OutboundReply,
    parse_button,
)
from .flow import ActionType, BusinessCatalog, DialogueFlow, FlowAction
from .manager import SessionManager, get_session_manager
from .models import DialogueSession, InvalidTransitionError
from .state import DialogueState, can_transition, is_terminal_state
from .templates import SUPPORTED_LANGUAGES, Templates, render, resolve_language

__all__ = [
    # Engine
    "DialogueEngine",
    "EngineResponse",
    # Events
    "ButtonAction",
    "ButtonKind",
    "DetectedIntent",
    "EventKind",
    "InboundEvent",
    "IntentType",
    "OfferChoice",
    "OutboundReply",
    "parse_button",
    # Flow
    "ActionType",
    "BusinessCatalog",
    "DialogueFlow",
    "FlowAction",
    # Sessions
    "DialogueSession",
    "DialogueState",
    "InvalidTransitionError",
    "SessionManager",
    "can_transition",
    "get_session_manager",
    "is_terminal_state",
    # Templates
    "SUPPORTED_LANGUAGES",
    "Templates",
    "render",
    "resolve_language",
]
