import random

import pytest

from flappy_engine import EventBus, FlappyEngine, GameConfig, ManualClock


class EventRecorder:
    """Collects every event emitted on a bus."""

    def __init__(self, bus):
        self.events = []
        bus.subscribe(self.events.append)

    def of_type(self, event_type):
        return [e for e in self.events if e.type == event_type]


@pytest.fixture
def config():
    return GameConfig()


@pytest.fixture
def steady_config():
    """No gravity and a gap pinned to [200, 400) so a centred bird never crashes."""
    return GameConfig(gravity=0.0, min_edge_margin=200)


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    return EventRecorder(bus)


@pytest.fixture
def engine(config, clock, rng, bus):
    return FlappyEngine(config, clock=clock, rng=rng, bus=bus)


@pytest.fixture
def steady_engine(steady_config, clock, rng, bus):
    return FlappyEngine(steady_config, clock=clock, rng=rng, bus=bus)
