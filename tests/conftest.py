"""Shared fixtures. The environment is set before anything imports settings."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SESSION_BACKEND", "memory")
os.environ.setdefault("APP_ENV", "development")

import pytest

from slotbot.core.dialogue.engine import DialogueEngine
from slotbot.core.dialogue.manager import SessionManager
from slotbot.core.scheduling import BookingAllocator, InMemoryRepository, SlotFinder
from slotbot.core.waitlist import WaitlistService
from tests.helpers import FrozenClock, seed_barber, seed_salon


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def repository():
    repo = InMemoryRepository()
    seed_salon(repo)
    seed_barber(repo)
    return repo


@pytest.fixture
def finder(repository, clock):
    return SlotFinder(repository, clock=clock, granularity_minutes=15)


@pytest.fixture
def allocator(repository, clock):
    return BookingAllocator(repository, clock=clock, retry_wait_seconds=0)


@pytest.fixture
def waitlist(repository, finder, allocator, clock):
    return WaitlistService(repository, finder, allocator, clock=clock, notification_minutes=15)


@pytest.fixture
def sessions(clock):
    return SessionManager(backend="memory", timeout_seconds=1800, clock=clock)


@pytest.fixture
def engine(repository, sessions, finder, allocator, waitlist, clock):
    return DialogueEngine(
        repository=repository,
        sessions=sessions,
        slot_finder=finder,
        allocator=allocator,
        waitlist=waitlist,
        clock=clock,
        offer_list_size=5,
        confidence_threshold=0.7,
        search_days_ahead=7,
    )
