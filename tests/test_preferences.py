"""
Tests for preference learning
"""

import asyncio
import gc

import pytest

from shelfcast.core.models import BehaviorEvent, BehaviorType, NegativePreferences
from shelfcast.core.preferences import ema, learning_rate
from shelfcast.storage.store import EntityType


def test_learning_rate_scales_with_intensity_and_multiplier():
    assert learning_rate(BehaviorType.CLICK, 3.0) == pytest.approx(0.05)
    assert learning_rate(BehaviorType.VIEW, 9.0) == pytest.approx(0.04)
    assert learning_rate(BehaviorType.BORROW, 5.0, multiplier=2.0) == pytest.approx(1.0)
    assert learning_rate(BehaviorType.SEARCH, 3.0) == pytest.approx(0.1)


def test_ema_step():
    assert ema(0.5, 1.0, 0.2) == pytest.approx(0.6)


@pytest.mark.asyncio
async def test_preference_row_created_lazily(learner, store, clock):
    assert await store.get(EntityType.PREFERENCE, "u1") is None

    preference = await learner.get_or_create("u1")

    assert preference.confidence_score == pytest.approx(0.1)
    assert preference.personalization_strength == pytest.approx(0.7)
    assert preference.created_at == clock.now
    assert await store.count(EntityType.PREFERENCE) == 1


@pytest.mark.asyncio
async def test_learn_from_behavior_moves_weights(learner):
    preference = await learner.learn_from_behavior("u1", "s1", BehaviorType.CLICK, 3.0)

    # rate 0.05 toward 3/5
    assert preference.category_weights["SciFi"] == pytest.approx(0.03)
    assert preference.author_weights["Asimov"] == pytest.approx(0.03)
    assert preference.confidence_score == pytest.approx(0.105)

    stored = await learner.get_or_create("u1")
    assert stored.category_weights == preference.category_weights


@pytest.mark.asyncio
async def test_negative_intensity_pushes_weights_down(learner):
    preference = await learner.learn_from_behavior("u1", "r1", BehaviorType.RECOMMENDATION_DISMISS, -1.0)
    assert preference.category_weights["Romance"] < 0


@pytest.mark.asyncio
async def test_unknown_item_is_ignored(learner, store):
    assert await learner.learn_from_behavior("u1", "nope", BehaviorType.BORROW, 5.0) is None
    assert await learner.learn_from_behavior("u1", None, BehaviorType.SEARCH, 1.5) is None
    assert await store.count(EntityType.PREFERENCE) == 0


@pytest.mark.asyncio
async def test_confidence_never_exceeds_one(learner):
    for _ in range(20):
        preference = await learner.learn_from_behavior("u1", "s1", BehaviorType.BORROW, 5.0, multiplier=2.0)

    assert preference.confidence_score == pytest.approx(1.0)
    assert preference.category_weights["SciFi"] == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_feedback_is_monotonic(learner):
    up = await learner.apply_feedback("u1", "s1", 0.5)
    assert up.category_weights["SciFi"] == pytest.approx(0.1)

    higher = await learner.apply_feedback("u1", "s1", 0.1)
    assert higher.category_weights["SciFi"] >= up.category_weights["SciFi"]

    down = await learner.apply_feedback("u1", "s1", -1.0)
    assert down.category_weights["SciFi"] < higher.category_weights["SciFi"]
    assert down.category_weights["SciFi"] >= -1.0


@pytest.mark.asyncio
async def test_zero_feedback_changes_nothing(learner, store):
    assert await learner.apply_feedback("u1", "s1", 0.0) is None
    assert await store.count(EntityType.PREFERENCE) == 0


@pytest.mark.asyncio
async def test_refresh_from_history_blends_normalised_vector(learner, clock):
    behaviors = [
        BehaviorEvent(user_id="u1", item_id="s1", behavior_type="read", intensity=4.0),
        BehaviorEvent(user_id="u1", item_id="s3", behavior_type="read", intensity=2.0),
        BehaviorEvent(user_id="u1", item_id="r1", behavior_type="view", intensity=1.0),
    ]

    preference = await learner.refresh_from_history("u1", behaviors)

    assert preference.category_weights["SciFi"] == pytest.approx(0.5)
    assert preference.category_weights["Romance"] == pytest.approx(0.5 / 6)
    assert preference.author_weights["Asimov"] == pytest.approx(0.5)
    assert preference.author_weights["Herbert"] == pytest.approx(0.25)
    assert preference.tag_weights["space"] == pytest.approx(0.5)
    assert preference.last_updated == clock.now


@pytest.mark.asyncio
async def test_explicit_updates(learner):
    preference = await learner.update_explicit(
        "u1",
        negative_preferences=NegativePreferences(disliked_categories=["Romance"]),
        personalization_strength=1.5,
        category_weights={"SciFi": 3.0}
    )

    assert preference.negative_preferences.disliked_categories == ["Romance"]
    assert preference.personalization_strength == 1.0
    assert preference.category_weights["SciFi"] == 1.0


@pytest.mark.asyncio
async def test_user_locks_are_released_after_updates(learner):
    await asyncio.gather(*[
        learner.learn_from_behavior(user_id, item_id, BehaviorType.CLICK, 3.0)
        for user_id in ("u1", "u2", "u3")
        for item_id in ("s1", "r1")
    ])
    gc.collect()

    assert learner.updates_applied == 6
    assert len(learner._locks) == 0
    assert learner.get_statistics()["users_updating"] == 0
