"""
Shared FastAPI dependencies.

The dialogue engine is built once per process on the SQL repository, the
Redis-backed session manager and the Redis event publisher. Tests swap it
out through ``app.dependency_overrides[get_dialogue_engine]``.
"""

from typing import Optional

from slotbot.core.dialogue.engine import DialogueEngine
from slotbot.core.dialogue.manager import SessionManager
from slotbot.infra.database import async_session_factory
from slotbot.infra.notifications import get_event_publisher
from slotbot.infra.repository import SqlRepository

_engine: Optional[DialogueEngine] = None


def get_dialogue_engine() -> DialogueEngine:
    """Get singleton DialogueEngine."""
    global _engine
    if _engine is None:
        _engine = DialogueEngine(
            repository=SqlRepository(async_session_factory),
            sessions=SessionManager(),
            publisher=get_event_publisher(),
        )
    return _engine
