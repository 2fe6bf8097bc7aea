import asyncio

import pytest

from _helper import RecordingNotifier
from rxdispatch.coordinator import AssignmentCoordinator
from rxdispatch.engine import TransitionEngine
from rxdispatch.ordering import OrderDesk
from rxdispatch.store import MemoryStore


@pytest.fixture
def loop():
    # One loop per test: the memory store's locks belong to the loop that first waits on them.
    loop = asyncio.new_event_loop()
    yield loop
    loop.close()


@pytest.fixture
def run(loop):
    return loop.run_until_complete


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def coordinator(store, notifier):
    return AssignmentCoordinator(store, notifier)


@pytest.fixture
def engine(store, notifier, coordinator):
    return TransitionEngine(store, notifier, coordinator)


@pytest.fixture
def desk(store, notifier):
    return OrderDesk(store, notifier)
