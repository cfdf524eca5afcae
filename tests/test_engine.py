"""
Tests for the recommendation engine pipeline
"""

import asyncio

import pytest

from shelfcast.core.algorithms import CandidateGenerator
from shelfcast.core.engine import (
    FALLBACK_ALGORITHM, EngineConfig, RecommendationEngine, default_algorithm_configs,
    hash_bucket_selector
)
from shelfcast.core.models import (
    AlgorithmType, Candidate, NegativePreferences, TrainingStatus, UserPreference
)
from shelfcast.storage.store import EntityType
from shelfcast.streaming.behavior_tracker import BehaviorTracker


class Exploding(CandidateGenerator):
    async def generate(self, ctx):
        raise RuntimeError("model file missing")

    async def train(self, config):
        raise RuntimeError("no training data")


class Sleepy(CandidateGenerator):
    async def generate(self, ctx):
        await asyncio.sleep(5)
        return []


class Empty(CandidateGenerator):
    async def generate(self, ctx):
        return []


def candidate(item, score):
    return Candidate(item=item, score=score, algorithm="test")


@pytest.fixture
def by_id(items):
    return {item.id: item for item in items}


class TestGenerateRecommendations:
    @pytest.mark.asyncio
    async def test_new_user_gets_popular_list(self, engine, store):
        await engine.create_default_algorithms()

        result = await engine.generate_recommendations("newbie", limit=5)

        assert result.algorithm == "popular"
        assert result.degraded is False
        assert result.error is None
        assert len(result.recommendations) == 5
        assert [r.rank for r in result.recommendations] == [1, 2, 3, 4, 5]
        assert len({r.batch_id for r in result.recommendations}) == 1
        assert await store.count(EntityType.RECOMMENDATION) == 5

    @pytest.mark.asyncio
    async def test_scifi_reader_sees_scifi_before_romance(
        self, engine, store, catalog, learner, bus, clock, by_id, fixed_random
    ):
        await engine.create_default_algorithms()
        tracker = BehaviorTracker(store, catalog, learner, bus, clock=clock, rng=fixed_random(0.99))
        for item_id in ("s1", "s2", "s3"):
            await tracker.track({"user_id": "u1", "item_id": item_id, "behavior_type": "borrow", "intensity": 5})

        preference = await learner.get_or_create("u1")
        assert preference.confidence_score == pytest.approx(0.4)

        result = await engine.generate_recommendations("u1", limit=10, diversity_factor=0.0)

        assert result.algorithm == "hybrid_default"
        categories = [by_id[r.item_id].category for r in result.recommendations]
        assert categories[0] == "SciFi"
        last_scifi = max(i for i, c in enumerate(categories) if c == "SciFi")
        first_romance = min(i for i, c in enumerate(categories) if c == "Romance")
        assert last_scifi < first_romance
        assert not {"s1", "s2", "s3"} & {r.item_id for r in result.recommendations}

    @pytest.mark.asyncio
    async def test_popular_list_leaves_out_what_the_reader_has(self, engine, seed_behavior):
        await engine.create_default_algorithms()
        for user_id in ("u2", "u3", "u4"):
            await seed_behavior(user_id, "s1", "view")
        await seed_behavior("reader", "s1", "borrow", intensity=5.0)
        await seed_behavior("reader", "r1", "view")

        result = await engine.generate_recommendations("reader", algorithm="popular", limit=10)

        ids = {r.item_id for r in result.recommendations}
        assert result.algorithm == "popular"
        assert len(ids) == 10
        assert not {"s1", "r1"} & ids

    @pytest.mark.asyncio
    async def test_scores_never_increase_down_the_list(self, engine):
        await engine.create_default_algorithms()
        result = await engine.generate_recommendations("u1", limit=8, diversity_factor=0.0)

        scores = [r.score for r in result.recommendations]
        assert scores == sorted(scores, reverse=True)

    @pytest.mark.asyncio
    async def test_exclusions_and_dislikes_are_respected(self, engine, learner):
        await engine.create_default_algorithms()
        await learner.update_explicit(
            "u1",
            negative_preferences=NegativePreferences(
                disliked_categories=["Romance"], blacklisted_keywords=["orient"]
            )
        )

        result = await engine.generate_recommendations("u1", limit=10, exclude_ids=["m2"])

        ids = {r.item_id for r in result.recommendations}
        assert ids
        assert not ids & {"r1", "r2", "r3", "r4", "m1", "m2"}

    @pytest.mark.asyncio
    async def test_requested_algorithm_falls_back_on_insufficient_data(self, engine):
        await engine.create_default_algorithms()

        result = await engine.generate_recommendations("u1", algorithm="user_cf", limit=5)

        assert result.algorithm == "content_based"
        assert result.degraded is False
        assert result.metadata["selected_algorithm"] == "user_cf"
        assert result.metadata["fallback_from"] == "user_cf"
        assert result.recommendations

    @pytest.mark.asyncio
    async def test_generator_failure_degrades_to_popularity(self, engine, store, catalog, warm_user):
        await engine.create_default_algorithms()
        await warm_user("u1")
        engine.registry.register(AlgorithmType.HYBRID, Exploding(store, catalog))

        result = await engine.generate_recommendations("u1", limit=5)

        assert result.algorithm == "popular"
        assert result.degraded is True
        assert result.error is None
        assert len(result.recommendations) == 5
        assert engine.get_statistics()["degraded_rate"] == 1.0

    @pytest.mark.asyncio
    async def test_empty_result_degrades_to_popularity(self, engine, store, catalog):
        await engine.create_default_algorithms()
        engine.registry.register(AlgorithmType.POPULARITY, Empty(store, catalog))
        engine.registry.register(AlgorithmType.TRENDING, Empty(store, catalog))

        result = await engine.generate_recommendations("u1", scenario="trending", limit=5)

        assert result.metadata["selected_algorithm"] == "trending"
        assert result.degraded is True
        assert result.recommendations == []

    @pytest.mark.asyncio
    async def test_slow_generator_times_out(self, store, catalog, learner, clock, warm_user, fixed_random):
        engine = RecommendationEngine(
            store, catalog, learner, config=EngineConfig(generation_timeout_s=0.05),
            clock=clock, rng=fixed_random(0.99)
        )
        await engine.create_default_algorithms()
        await warm_user("u1")
        engine.registry.register(AlgorithmType.HYBRID, Sleepy(store, catalog))

        result = await engine.generate_recommendations("u1", limit=3)

        assert result.degraded is True
        assert result.algorithm == "popular"
        assert result.metadata["fallback_from"] == "hybrid_default"
        assert len(result.recommendations) == 3

    @pytest.mark.asyncio
    async def test_pipeline_error_returns_fallback_popular(self, engine, store):
        await engine.create_default_algorithms()
        store.fail_operations("get")

        result = await engine.generate_recommendations("u1", limit=4)

        assert result.algorithm == FALLBACK_ALGORITHM
        assert result.degraded is True
        assert "get failed" in result.error
        assert len(result.recommendations) == 4
        assert engine.get_statistics()["error_rate"] == 1.0

    @pytest.mark.asyncio
    async def test_persist_failure_still_returns_list(self, engine, store):
        await engine.create_default_algorithms()
        store.fail_operations("create_many")

        result = await engine.generate_recommendations("u1", limit=3)

        assert len(result.recommendations) == 3
        assert "create_many failed" in result.metadata["persist_error"]
        assert result.error is None

    @pytest.mark.asyncio
    async def test_unseeded_store_still_answers(self, engine):
        result = await engine.generate_recommendations("u1", limit=3)

        assert result.algorithm == "popular"
        assert len(result.recommendations) == 3


class TestSelectAlgorithm:
    def usable(self, engine):
        return [c for c in default_algorithm_configs() if c.enabled]

    def test_cold_start_uses_mapping(self, engine):
        preference = UserPreference(user_id="u1", confidence_score=0.1)
        configs = self.usable(engine)

        assert engine.select_algorithm("u1", "homepage", "auto", preference, configs).name == "popular"
        assert engine.select_algorithm("u1", "trending", "auto", preference, configs).name == "trending"

    def test_scenario_specific_algorithms_win(self, engine):
        preference = UserPreference(user_id="u1", confidence_score=0.9)
        configs = self.usable(engine)

        assert engine.select_algorithm("u1", "homepage", "auto", preference, configs).name == "hybrid_default"
        assert engine.select_algorithm("u1", "continue_reading", "auto", preference, configs).name == "sequential"
        assert engine.select_algorithm("u1", "search", None, preference, configs).name == "contextual"

    def test_requested_algorithm_wins(self, engine):
        preference = UserPreference(user_id="u1", confidence_score=0.1)
        configs = self.usable(engine)

        assert engine.select_algorithm("u1", "homepage", "content_based", preference, configs).name == "content_based"
        # Unknown names fall through to normal selection
        assert engine.select_algorithm("u1", "homepage", "nope", preference, configs).name == "popular"

    def test_hash_bucket_selector_is_stable(self):
        configs = default_algorithm_configs()[:4]
        first = hash_bucket_selector("u42", "homepage", configs)

        assert all(hash_bucket_selector("u42", "homepage", configs) is first for _ in range(5))
        picks = {hash_bucket_selector(f"user{i}", "homepage", configs).name for i in range(50)}
        assert len(picks) > 1


class TestStages:
    def test_rank_blends_personalization_strength(self, engine, by_id):
        preference = UserPreference(user_id="u1", personalization_strength=0.7)
        ranked = engine.rank_candidates([candidate(by_id["s1"], 0.8)], preference)
        assert ranked[0].score == pytest.approx(0.8 * 0.7 + 0.8 * 0.5 * 0.3)

    def test_rank_ties_broken_by_affinity(self, engine, by_id):
        preference = UserPreference(user_id="u1", category_weights={"SciFi": 0.5})
        ranked = engine.rank_candidates(
            [candidate(by_id["r1"], 0.6), candidate(by_id["s1"], 0.6)], preference
        )
        assert [c.item_id for c in ranked] == ["s1", "r1"]

    def test_filter_drops_unwanted_candidates(self, engine, by_id):
        preference = UserPreference(
            user_id="u1",
            negative_preferences=NegativePreferences(
                disliked_authors=["Austen"], blacklisted_keywords=["DUNE"]
            )
        )
        kept = engine.filter_candidates([
            candidate(by_id["s1"], 0.9),
            candidate(by_id["s1"], 0.8),
            candidate(by_id["s2"], 0.9),
            candidate(by_id["s3"], 0.9),
            candidate(by_id["r1"], 0.9),
            candidate(by_id["r3"], 0.01),
            candidate(by_id["m1"], 0.5),
        ], preference, exclude_ids=["s2"])

        assert [c.item_id for c in kept] == ["s1", "m1"]

    def test_diversify_prefers_new_categories(self, store, catalog, learner, by_id, fixed_random):
        engine = RecommendationEngine(store, catalog, learner, rng=fixed_random(0.0))
        ranked = [
            candidate(by_id["s1"], 0.9),
            candidate(by_id["s2"], 0.8),
            candidate(by_id["s4"], 0.7),
            candidate(by_id["r1"], 0.6),
        ]

        picked = engine.diversify(ranked, 2, 1.0)

        assert [c.item_id for c in picked] == ["s1", "r1"]

    @pytest.mark.parametrize("limit,factor", [(0, 0.5), (3, 0.0), (3, 0.5), (10, 1.0)])
    def test_diversify_never_duplicates_or_overflows(self, store, catalog, learner, items, fixed_random, limit, factor):
        engine = RecommendationEngine(store, catalog, learner, rng=fixed_random(0.3))
        ranked = [candidate(item, 1.0 - i * 0.01) for i, item in enumerate(items)]

        picked = engine.diversify(ranked, limit, factor)

        ids = [c.item_id for c in picked]
        assert len(ids) == min(limit, len(items))
        assert len(ids) == len(set(ids))

    def test_explain_fills_templates(self, engine, by_id):
        candidates = [candidate(by_id["s1"], 0.9), candidate(by_id["s2"], 0.8)]
        candidates[1].explanation = "Keep me"

        engine.explain(candidates, AlgorithmType.CONTENT_BASED)

        assert candidates[0].explanation == "Matches your interest in SciFi"
        assert candidates[1].explanation == "Keep me"

    def test_diversity_score(self, engine, by_id):
        candidates = [candidate(by_id[i], 0.5) for i in ("s1", "s2", "r1", "m1")]
        assert engine.diversity_score(candidates) == pytest.approx(0.75)
        assert engine.diversity_score([]) == 0.0


class TestAlgorithmLifecycle:
    @pytest.mark.asyncio
    async def test_default_algorithms_seeded_once(self, engine):
        assert await engine.create_default_algorithms() == 8
        assert await engine.create_default_algorithms() == 0

        enabled = await engine.get_algorithms()
        assert [c.name for c in enabled][0] == "hybrid_default"
        assert "neural_cf" not in {c.name for c in enabled}
        assert len(await engine.get_algorithms(enabled_only=False)) == 8

    @pytest.mark.asyncio
    async def test_training_marks_status(self, engine, store, clock):
        await engine.create_default_algorithms()
        config = (await store.find_many(EntityType.ALGORITHM, {"name": "user_cf"}))[0]

        result = await engine.train_algorithm(config)

        assert result["status"] == "trained"
        stored = await store.get(EntityType.ALGORITHM, config.id)
        assert stored.training_status == TrainingStatus.TRAINED
        assert stored.last_trained_at == clock.now

    @pytest.mark.asyncio
    async def test_training_failure_is_recorded(self, engine, store, catalog):
        await engine.create_default_algorithms()
        engine.registry.register(AlgorithmType.POPULARITY, Exploding(store, catalog))
        config = (await store.find_many(EntityType.ALGORITHM, {"name": "popular"}))[0]

        result = await engine.train_algorithm(config)

        assert result == {"status": "failed", "error": "no training data"}
        stored = await store.get(EntityType.ALGORITHM, config.id)
        assert stored.training_status == TrainingStatus.FAILED

    @pytest.mark.asyncio
    async def test_stale_algorithms(self, engine, clock):
        await engine.create_default_algorithms()
        assert len(await engine.find_stale_algorithms()) == 7

        for config in await engine.find_stale_algorithms():
            await engine.train_algorithm(config)
        assert await engine.find_stale_algorithms() == []

        clock.advance(8 * 24 * 3600)
        assert len(await engine.find_stale_algorithms()) == 7

    @pytest.mark.asyncio
    async def test_health_check(self, engine, store):
        await engine.create_default_algorithms()
        health = await engine.health_check()
        assert health["status"] == "healthy"
        assert health["components"]["algorithm_hybrid_default"] == "healthy"

        store.fail_operations("count")
        assert (await engine.health_check())["status"] == "degraded"
