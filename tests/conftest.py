"""Pytest configuration and shared fixtures."""
from datetime import datetime, timedelta

import pytest

import schedule
import server
from store import Store, TIMEZONE


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 9, 0, 0, tzinfo=TIMEZONE))


@pytest.fixture
def store():
    return Store()


@pytest.fixture
def event(store, clock):
    """A planned service two hours ahead with three sections."""
    template = schedule.create_template(store, "Culte", items=[
        {"title": "Louange", "duration": 600, "type": "SONG"},
        {"title": "Annonces", "duration": 300, "type": "SPEECH"},
        {"title": "Message", "duration": 1800, "type": "SPEECH"},
    ])
    return schedule.create_event(store, "Culte du dimanche", clock() + timedelta(hours=2), template['id'])


@pytest.fixture
def client(store, clock):
    server.app.config.update(TESTING=True, STORE=store, CLOCK=clock)
    yield server.app.test_client()
    server.app.config.pop('STORE', None)
    server.app.config.pop('CLOCK', None)
