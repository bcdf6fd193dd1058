from datetime import datetime, timedelta, timezone

import pytest

from intake_api.lifecycle.engine import LifecycleEngine
from intake_api.providers.base import ObservabilitySink
from intake_api.storage.memory import create_memory_storage


class RecordingSink(ObservabilitySink):
    def __init__(self):
        self.events = []

    @property
    def profile_family(self):
        return "test"

    def record(self, event, fields):
        self.events.append((event, dict(fields)))

    def named(self, event):
        return [fields for name, fields in self.events if name == event]


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def storage():
    return create_memory_storage()


@pytest.fixture
def engine(storage, sink, clock):
    return LifecycleEngine(storage, sink=sink, clock=clock)
