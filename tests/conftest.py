"""
Shared fixtures: a small book catalog, an in-memory store, a controllable
clock and deterministic random sources.
"""

import random

import pytest

from shelfcast.core.engine import RecommendationEngine
from shelfcast.core.models import BehaviorEvent, Item
from shelfcast.core.preferences import PreferenceLearner
from shelfcast.serving.service import RecommendationService, ServiceConfig
from shelfcast.storage.catalog import InMemoryCatalog
from shelfcast.storage.store import EntityType, InMemoryStore
from shelfcast.streaming.behavior_tracker import BehaviorTracker, BehaviorTrackerConfig
from shelfcast.streaming.events import SignalBus


BASE_TIME = 1_700_000_000.0
DAY = 24 * 3600


class FakeClock:
    """Clock that only moves when told to"""

    def __init__(self, start: float = BASE_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FixedRandom(random.Random):
    """Random source whose ``random()`` always returns the same value"""

    def __init__(self, value: float):
        super().__init__(0)
        self.value = value

    def random(self) -> float:
        return self.value


def make_item(item_id, title, category, author, tags=None, rating=4.0, created_at=BASE_TIME - 365 * DAY):
    return Item(
        id=item_id,
        title=title,
        category=category,
        author=author,
        tags=list(tags or []),
        rating=rating,
        created_at=created_at
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fixed_random():
    """Factory for deterministic random sources"""
    return FixedRandom


@pytest.fixture
def items():
    return [
        make_item("s1", "Foundation", "SciFi", "Asimov", ["space", "empire"], 4.3),
        make_item("s2", "I, Robot", "SciFi", "Asimov", ["robots"], 4.1),
        make_item("s3", "Dune", "SciFi", "Herbert", ["desert", "space"], 4.4),
        make_item("s4", "The Caves of Steel", "SciFi", "Asimov", ["robots", "mystery"], 4.0),
        make_item("s5", "Hyperion", "SciFi", "Simmons", ["space"], 4.2),
        make_item("s6", "The Left Hand of Darkness", "SciFi", "Le Guin", ["gender"], 4.1),
        make_item("r1", "Pride and Prejudice", "Romance", "Austen", ["classic"], 4.8),
        make_item("r2", "Emma", "Romance", "Austen", ["classic"], 4.6),
        make_item("r3", "Jane Eyre", "Romance", "Bronte", ["gothic"], 4.7),
        make_item("r4", "Persuasion", "Romance", "Austen", ["classic"], 4.5),
        make_item("m1", "Murder on the Orient Express", "Mystery", "Christie", ["detective"], 4.5),
        make_item("m2", "And Then There Were None", "Mystery", "Christie", ["detective"], 4.6),
    ]


@pytest.fixture
def catalog(items):
    return InMemoryCatalog(items)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def learner(store, catalog, clock):
    return PreferenceLearner(store, catalog, clock)


@pytest.fixture
def bus():
    return SignalBus()


@pytest.fixture
def tracker_config():
    return BehaviorTrackerConfig(batch_size=5)


@pytest.fixture
def tracker(store, catalog, learner, bus, tracker_config, clock):
    # 0.99 never falls under the learning sample rate
    return BehaviorTracker(store, catalog, learner, bus, tracker_config, clock=clock, rng=FixedRandom(0.99))


@pytest.fixture
def engine(store, catalog, learner, clock):
    return RecommendationEngine(store, catalog, learner, clock=clock, rng=FixedRandom(0.99))


@pytest.fixture
def service(store, catalog, clock, tracker_config):
    return RecommendationService(
        store,
        catalog,
        config=ServiceConfig(enable_maintenance=False),
        tracker_config=tracker_config,
        clock=clock,
        rng=FixedRandom(0.99)
    )


@pytest.fixture
def seed_behavior(store, clock):
    """Write a behavior straight into the store, ``age_s`` seconds in the past"""

    async def seed(user_id, item_id, behavior_type="view", intensity=1.0, age_s=0.0, **fields):
        event = BehaviorEvent(
            user_id=user_id,
            item_id=item_id,
            behavior_type=behavior_type,
            intensity=intensity,
            created_at=clock.now - age_s,
            **fields
        )
        await store.create(EntityType.BEHAVIOR, event)
        return event

    return seed


@pytest.fixture
def warm_user(learner, store):
    """Give a user enough preference confidence to leave cold start"""

    async def warm(user_id, confidence=0.9, **changes):
        await learner.get_or_create(user_id)
        changes["confidence_score"] = confidence
        return await store.update(EntityType.PREFERENCE, user_id, changes)

    return warm
