"""Shared fixtures: a controllable clock, recording timers and fake collaborators."""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Tuple

import pytest

from insider_threat_monitor import EngineConfig, InMemoryRepository, MonitoringService
from insider_threat_monitor.models import Location

START = datetime(2024, 3, 4, 14, 0)

NEW_YORK = Location(country="United States", city="New York", lat=40.7128, lon=-74.0060, ip="198.51.100.10")
BOSTON = Location(country="United States", city="Boston", lat=42.3601, lon=-71.0589, ip="198.51.100.20")
LONDON = Location(country="United Kingdom", city="London", lat=51.5074, lon=-0.1278, ip="203.0.113.30")
BEIJING = Location(country="China", city="Beijing", lat=39.9042, lon=116.4074, ip="203.0.113.40")


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingTimer:
    def __init__(self, name: str, interval: float, callback: Callable[[], None]):
        self.name = name
        self.interval = interval
        self.callback = callback
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.callback()


class RecordingTimerFactory:
    def __init__(self):
        self.timers: List[RecordingTimer] = []

    def __call__(self, name: str, interval: float, callback: Callable[[], None]) -> RecordingTimer:
        timer = RecordingTimer(name, interval, callback)
        self.timers.append(timer)
        return timer

    def named(self, name: str) -> RecordingTimer:
        return [timer for timer in self.timers if timer.name == name][-1]


class RecordingBroadcaster:
    def __init__(self):
        self.published: List[Tuple[str, Mapping[str, Any]]] = []

    def publish(self, category: str, snapshot: Mapping[str, Any]) -> None:
        self.published.append((category, snapshot))

    def events(self) -> List[str]:
        return [snapshot["event"] for _, snapshot in self.published]


class FakeResolver:
    def __init__(self, locations: Dict[str, Location] | None = None):
        self.locations = dict(locations or {})
        self.calls: List[str] = []

    def lookup(self, ip: str) -> Location:
        self.calls.append(ip)
        if ip not in self.locations:
            raise LookupError(f"IP lookup failed for {ip}")
        return self.locations[ip]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timers():
    return RecordingTimerFactory()


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def resolver():
    return FakeResolver({loc.ip: loc for loc in (NEW_YORK, BOSTON, LONDON, BEIJING)})


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def service(repository, resolver, broadcaster, clock, timers):
    monitoring = MonitoringService(
        repository,
        resolver=resolver,
        broadcaster=broadcaster,
        config=EngineConfig(),
        clock=clock,
        timer_factory=timers,
    )
    yield monitoring
    monitoring.stop()
