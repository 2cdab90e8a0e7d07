"""Shared fixtures."""

import pytest

from screentrail.daemon.bus import EventBus
from screentrail.daemon.capability import CapabilityGate
from screentrail.daemon.index import ReconcilingIndex
from screentrail.daemon.languages import LanguageRegistry
from screentrail.daemon.models import SessionState
from screentrail.daemon.store import DurableStore
from screentrail.tests.fakes import MemoryContainer


@pytest.fixture
def container():
    return MemoryContainer()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def session():
    return SessionState()


@pytest.fixture
def gate(container, bus):
    return CapabilityGate(container, bus, pending_limit=100, replay_limit=5)


@pytest.fixture
def store(container, gate):
    return DurableStore(container, gate)


@pytest.fixture
def index(store, bus, session):
    return ReconcilingIndex(store, bus, session, flush_interval_s=3600)


@pytest.fixture
def registry():
    return LanguageRegistry()
