"""
Main Recommendation Engine

Staged pipeline turning a user's preference state and the behavior log into
a ranked, filtered, diversified and explained list of recommendations:

    select_algorithm -> generate_candidates -> filter_candidates ->
    rank_candidates -> diversify -> explain -> persist

The engine always answers: generator failures fall back to popularity and
unexpected errors degrade to a ``fallback_popular`` result.
"""

import asyncio
import hashlib
import logging
import random
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .algorithms import AlgorithmRegistry, CandidateGenerator, GenerationContext, explain_template
from .errors import AlgorithmNotFoundError, InsufficientDataError, PersistenceError
from .models import (
    AlgorithmConfig, AlgorithmType, Candidate, Recommendation, RecommendationResult,
    TrainingStatus, UserPreference, new_id
)
from .preferences import PreferenceLearner
from ..ml.algorithms import (
    CollaborativeFilteringGenerator, ContentBasedGenerator, ContextualGenerator,
    EmbeddingGenerator, EmbeddingProvider, PopularityGenerator, SequentialGenerator,
    TrendingGenerator, WeightedHybridGenerator
)
from ..storage.catalog import BaseCatalog
from ..storage.store import BaseStore, EntityType


FALLBACK_ALGORITHM = "fallback_popular"

Selector = Callable[[str, str, List[AlgorithmConfig]], AlgorithmConfig]


@dataclass
class EngineConfig:
    """Configuration for the recommendation engine"""
    cold_start_threshold: float = 0.3
    cold_start_algorithms: Dict[str, str] = None
    generation_timeout_s: float = 2.0
    candidate_multiplier: int = 3
    min_candidate_score: float = 0.05
    max_latency_ms: int = 500
    stale_model_days: int = 7

    def __post_init__(self):
        if self.cold_start_algorithms is None:
            self.cold_start_algorithms = {
                "default": "popular",
                "trending": "trending"
            }


def first_selector(user_id: str, scenario: str, candidates: List[AlgorithmConfig]) -> AlgorithmConfig:
    """Pick the highest-priority algorithm"""
    return candidates[0]


def hash_bucket_selector(user_id: str, scenario: str, candidates: List[AlgorithmConfig]) -> AlgorithmConfig:
    """
    Deterministic A/B split across the applicable algorithms

    The same user always lands in the same bucket for a scenario.
    """
    digest = hashlib.md5(f"{user_id}:{scenario}".encode()).hexdigest()
    return candidates[int(digest, 16) % len(candidates)]


def default_algorithm_configs() -> List[AlgorithmConfig]:
    """Algorithm rows seeded into an empty store"""
    return [
        AlgorithmConfig(
            name="hybrid_default", type=AlgorithmType.HYBRID, priority=100, is_default=True,
            hyperparameters={"weights": {
                AlgorithmType.COLLABORATIVE_FILTERING.value: 0.5,
                AlgorithmType.CONTENT_BASED.value: 0.3,
                AlgorithmType.POPULARITY.value: 0.2,
            }}
        ),
        AlgorithmConfig(
            name="user_cf", type=AlgorithmType.COLLABORATIVE_FILTERING, priority=80,
            hyperparameters={"user_based": True, "item_based": True, "neighbors": 20, "min_interactions": 5}
        ),
        AlgorithmConfig(
            name="content_based", type=AlgorithmType.CONTENT_BASED, priority=70,
            hyperparameters={"min_score": 0.1}
        ),
        AlgorithmConfig(
            name="popular", type=AlgorithmType.POPULARITY, priority=50,
            hyperparameters={"window_days": 30}
        ),
        AlgorithmConfig(
            name="trending", type=AlgorithmType.TRENDING, priority=40,
            hyperparameters={"window_days": 7, "min_interactions": 3},
            applicable_scenarios=["trending", "discover"]
        ),
        AlgorithmConfig(
            name="contextual", type=AlgorithmType.CONTEXTUAL, priority=30,
            applicable_scenarios=["search", "category", "browse"]
        ),
        AlgorithmConfig(
            name="sequential", type=AlgorithmType.SEQUENTIAL, priority=20,
            applicable_scenarios=["continue_reading", "item_detail"]
        ),
        AlgorithmConfig(
            name="neural_cf", type=AlgorithmType.DEEP_LEARNING, priority=10, enabled=False
        ),
    ]


def build_default_registry(
    store: BaseStore,
    catalog: BaseCatalog,
    clock: Callable[[], float] = time.time,
    embedding_provider: Optional[EmbeddingProvider] = None
) -> AlgorithmRegistry:
    """Registry with one generator per algorithm family"""
    registry = AlgorithmRegistry()

    components = {
        AlgorithmType.COLLABORATIVE_FILTERING: CollaborativeFilteringGenerator(store, catalog, clock),
        AlgorithmType.CONTENT_BASED: ContentBasedGenerator(store, catalog, clock),
        AlgorithmType.POPULARITY: PopularityGenerator(store, catalog, clock),
    }
    for algorithm_type, generator in components.items():
        registry.register(algorithm_type, generator)

    registry.register(AlgorithmType.TRENDING, TrendingGenerator(store, catalog, clock))
    registry.register(AlgorithmType.HYBRID, WeightedHybridGenerator(store, catalog, components, clock))
    registry.register(AlgorithmType.CONTEXTUAL, ContextualGenerator(store, catalog, clock))
    registry.register(AlgorithmType.SEQUENTIAL, SequentialGenerator(store, catalog, clock))
    registry.register(
        AlgorithmType.DEEP_LEARNING,
        EmbeddingGenerator(store, catalog, provider=embedding_provider, clock=clock)
    )
    return registry


class RecommendationEngine:
    """
    Recommendation engine with cold-start handling and layered fallbacks
    """

    def __init__(
        self,
        store: BaseStore,
        catalog: BaseCatalog,
        learner: PreferenceLearner,
        registry: Optional[AlgorithmRegistry] = None,
        config: Optional[EngineConfig] = None,
        selector: Selector = first_selector,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
        embedding_provider: Optional[EmbeddingProvider] = None
    ):
        """
        Initialize the recommendation engine

        Args:
            store: Persistent store for algorithms, behaviors and recommendations
            catalog: Catalog lookup
            learner: Preference learner owning the preference rows
            registry: Generator registry; the default registry is built if omitted
            config: Engine configuration
            selector: A/B selector over applicable algorithms
            clock: Time source (epoch seconds)
            rng: Random source used by diversification
            embedding_provider: Embeddings for the deep-learning slot
        """
        self.store = store
        self.catalog = catalog
        self.learner = learner
        self.config = config or EngineConfig()
        self.selector = selector
        self.clock = clock
        self.rng = rng or random.Random()
        self.registry = registry or build_default_registry(store, catalog, clock, embedding_provider)
        self.logger = logging.getLogger(__name__)

        # Performance tracking
        self.request_count = 0
        self.total_latency = 0.0
        self.error_count = 0
        self.degraded_count = 0
        self.algorithm_usage: Counter = Counter()
        self.start_time = time.time()

        self.logger.info(f"RecommendationEngine initialized with config: {self.config}")

    async def create_default_algorithms(self) -> int:
        """
        Seed the algorithm table with the default configurations

        Rows that already exist (by name) are left untouched.

        Returns:
            Number of rows created
        """
        created = 0
        for algorithm in default_algorithm_configs():
            if await self.store.count(EntityType.ALGORITHM, {"name": algorithm.name}):
                continue
            await self.store.create(EntityType.ALGORITHM, algorithm)
            created += 1

        if created:
            self.logger.info(f"Created {created} default algorithm configurations")
        return created

    async def get_algorithms(self, enabled_only: bool = True) -> List[AlgorithmConfig]:
        """Algorithm rows, highest priority first"""
        filters = {"enabled": True} if enabled_only else None
        return await self.store.find_many(
            EntityType.ALGORITHM, filters, order_by="priority", descending=True
        )

    async def generate_recommendations(
        self,
        user_id: str,
        scenario: str = "homepage",
        limit: int = 10,
        algorithm: str = "auto",
        diversity_factor: float = 0.3,
        exclude_ids: Optional[Iterable[str]] = None,
        context: Optional[Dict[str, Any]] = None,
        include_explanations: bool = True
    ) -> RecommendationResult:
        """
        Produce recommendations for a user

        Args:
            user_id: User identifier
            scenario: Placement the list is for (homepage, trending, ...)
            limit: Maximum number of recommendations
            algorithm: Algorithm name, or "auto" to let the engine choose
            diversity_factor: Probability of preferring a new category/author per slot
            exclude_ids: Items that must not be recommended
            context: Request context (category, author, time_of_day, ...)
            include_explanations: Fill template explanations

        Returns:
            Recommendation result; never raises
        """
        start_time = time.time()
        exclude = set(exclude_ids or ())
        context = context or {}
        self.request_count += 1

        try:
            preference = await self.learner.get_or_create(user_id)
            configs = await self.get_algorithms()
            selected = self.select_algorithm(user_id, scenario, algorithm, preference, configs)

            ctx = GenerationContext(
                user_id=user_id,
                scenario=scenario,
                limit=max(1, limit) * self.config.candidate_multiplier,
                preference=preference,
                config=selected,
                now=self.clock(),
                exclude_ids=exclude,
                context=context
            )
            candidates, used, degraded = await self.generate_candidates(ctx, configs)

            filtered = self.filter_candidates(candidates, preference, exclude)
            ranked = self.rank_candidates(filtered, preference)
            surfaced = self.diversify(ranked, limit, diversity_factor)
            if include_explanations:
                self.explain(surfaced, used.type)

            recommendations, persist_error = await self.persist(user_id, scenario, surfaced, used)

            metadata = {"scenario": scenario, "selected_algorithm": selected.name}
            if used.name != selected.name:
                metadata["fallback_from"] = selected.name
            if persist_error:
                metadata["persist_error"] = persist_error
            if recommendations:
                metadata["batch_id"] = recommendations[0].batch_id

            if degraded:
                self.degraded_count += 1
            self.algorithm_usage[used.name] += 1

            result = RecommendationResult(
                user_id=user_id,
                recommendations=recommendations,
                algorithm=used.name,
                total_candidates=len(candidates),
                processing_time_ms=self._record_latency(start_time),
                diversity=self.diversity_score(surfaced),
                degraded=degraded,
                metadata=metadata
            )

            if result.processing_time_ms > self.config.max_latency_ms:
                self.logger.warning(
                    f"Slow recommendation for {user_id}: {result.processing_time_ms:.2f}ms"
                )
            return result

        except Exception as e:
            self.error_count += 1
            self.logger.error(f"Error generating recommendations for user {user_id}: {e}")
            return await self._fallback_result(user_id, scenario, limit, exclude, str(e), start_time)

    def select_algorithm(
        self,
        user_id: str,
        scenario: str,
        requested: Optional[str],
        preference: UserPreference,
        configs: List[AlgorithmConfig]
    ) -> AlgorithmConfig:
        """
        Choose the algorithm serving a request

        Order: explicit request, cold-start mapping, A/B selection over
        applicable algorithms, the default algorithm, the first enabled one.
        """
        usable = [c for c in configs if self.registry.supports(c.type)]
        by_name = {c.name: c for c in usable}

        if requested and requested != "auto":
            if requested in by_name:
                return by_name[requested]
            self.logger.warning(str(AlgorithmNotFoundError(requested)))

        if preference.confidence_score < self.config.cold_start_threshold:
            cold_start = self.config.cold_start_algorithms
            name = cold_start.get(scenario, cold_start.get("default"))
            if name in by_name:
                self.logger.debug(f"Cold start for {user_id}, using {name}")
                return by_name[name]

        # Algorithms naming the scenario outrank the catch-all ones
        applicable = (
            [c for c in usable if scenario in c.applicable_scenarios]
            or [c for c in usable if c.applies_to(scenario)]
        )
        if applicable:
            return self.selector(user_id, scenario, applicable)

        for config in usable:
            if config.is_default:
                return config
        if usable:
            return usable[0]

        return self._fallback_config(AlgorithmType.POPULARITY, configs)

    @staticmethod
    def _fallback_config(algorithm_type: AlgorithmType, configs: List[AlgorithmConfig]) -> AlgorithmConfig:
        for config in configs:
            if config.type == algorithm_type:
                return config
        name = "popular" if algorithm_type == AlgorithmType.POPULARITY else algorithm_type.value
        return AlgorithmConfig(name=name, type=algorithm_type)

    async def _run(self, generator: CandidateGenerator, ctx: GenerationContext) -> List[Candidate]:
        return await asyncio.wait_for(generator.generate(ctx), timeout=self.config.generation_timeout_s)

    async def generate_candidates(
        self,
        ctx: GenerationContext,
        configs: List[AlgorithmConfig]
    ) -> Tuple[List[Candidate], AlgorithmConfig, bool]:
        """
        Run the selected generator with fallbacks

        ``InsufficientDataError`` falls back to content-based, then popularity,
        without marking the result degraded. Any other error, an empty result
        or a timeout goes straight to popularity and marks it degraded.

        Returns:
            (candidates, config that produced them, degraded)
        """
        config = ctx.config
        try:
            candidates = await self._run(self.registry.require(config), ctx)
            if candidates:
                return candidates, config, False
            self.logger.warning(f"{config.name} produced no candidates for {ctx.user_id}")

        except InsufficientDataError as e:
            self.logger.debug(f"Insufficient data, falling back: {e}")
            for algorithm_type in (AlgorithmType.CONTENT_BASED, AlgorithmType.POPULARITY):
                if algorithm_type == config.type:
                    continue
                fallback = self._fallback_config(algorithm_type, configs)
                try:
                    candidates = await self._run(self.registry.require(fallback), ctx.derive(fallback))
                except InsufficientDataError as inner:
                    self.logger.debug(f"Fallback {fallback.name} also lacks data: {inner}")
                    continue
                except Exception as inner:
                    self.logger.warning(f"Fallback {fallback.name} failed: {inner}")
                    break
                if candidates:
                    return candidates, fallback, False

        except asyncio.TimeoutError:
            self.logger.warning(
                f"{config.name} timed out after {self.config.generation_timeout_s}s for {ctx.user_id}"
            )
        except Exception as e:
            self.logger.warning(f"{config.name} failed for {ctx.user_id}: {e}")

        popular = self._fallback_config(AlgorithmType.POPULARITY, configs)
        generator = self.registry.require(popular)
        return await generator.generate(ctx.derive(popular)), popular, True

    def filter_candidates(
        self,
        candidates: List[Candidate],
        preference: UserPreference,
        exclude_ids: Iterable[str] = ()
    ) -> List[Candidate]:
        """
        Drop excluded, disliked, blacklisted, duplicate and low-score candidates
        """
        negative = preference.negative_preferences
        excluded = set(exclude_ids)
        disliked_categories = set(negative.disliked_categories)
        disliked_authors = set(negative.disliked_authors)
        keywords = [k.lower() for k in negative.blacklisted_keywords if k]

        kept = []
        seen = set()
        for candidate in candidates:
            item = candidate.item
            if item.id in excluded or item.id in seen:
                continue
            if item.category in disliked_categories or item.author in disliked_authors:
                continue
            text = f"{item.title} {item.description}".lower()
            if any(keyword in text for keyword in keywords):
                continue
            if candidate.score < self.config.min_candidate_score:
                continue

            seen.add(item.id)
            kept.append(candidate)

        return kept

    def rank_candidates(self, candidates: List[Candidate], preference: UserPreference) -> List[Candidate]:
        """
        Blend scores with personalization strength and sort

        ``final = score*strength + score*0.5*(1-strength)``; equal scores are
        ordered by the user's affinity for the item.
        """
        strength = preference.personalization_strength
        for candidate in candidates:
            candidate.score = candidate.score * strength + candidate.score * 0.5 * (1 - strength)

        return sorted(
            candidates,
            key=lambda c: (c.score, preference.affinity(c.item)),
            reverse=True
        )

    def diversify(self, candidates: List[Candidate], limit: int, diversity_factor: float) -> List[Candidate]:
        """
        Greedy diversification

        For each slot after the first, with probability ``diversity_factor``
        the next candidate bringing a new category or author is preferred.
        """
        if limit <= 0:
            return []
        if diversity_factor <= 0 or len(candidates) <= limit:
            return candidates[:limit]

        selected = [candidates[0]]
        remaining = list(candidates[1:])
        categories = {candidates[0].item.category}
        authors = {candidates[0].item.author}

        while len(selected) < limit and remaining:
            index = 0
            if self.rng.random() < diversity_factor:
                for i, candidate in enumerate(remaining):
                    if candidate.item.category not in categories or candidate.item.author not in authors:
                        index = i
                        break

            chosen = remaining.pop(index)
            selected.append(chosen)
            categories.add(chosen.item.category)
            authors.add(chosen.item.author)

        return selected

    def explain(self, candidates: List[Candidate], algorithm_type: AlgorithmType):
        for candidate in candidates:
            if not candidate.explanation:
                candidate.explanation = explain_template(algorithm_type, candidate.item)

    @staticmethod
    def diversity_score(candidates: List[Candidate]) -> float:
        """Share of distinct categories among the surfaced items"""
        if not candidates:
            return 0.0
        return len({c.item.category for c in candidates}) / len(candidates)

    async def persist(
        self,
        user_id: str,
        scenario: str,
        candidates: List[Candidate],
        config: AlgorithmConfig,
        algorithm_name: Optional[str] = None
    ) -> Tuple[List[Recommendation], Optional[str]]:
        """
        Store one recommendation row per surfaced item under a shared batch id

        Returns:
            (recommendations, persistence error message or None)
        """
        if not candidates:
            return [], None

        batch_id = new_id()
        now = self.clock()
        recommendations = [
            Recommendation(
                user_id=user_id,
                item_id=candidate.item_id,
                algorithm=algorithm_name or config.name,
                model_id=config.id,
                score=candidate.score,
                rank=rank,
                scenario=scenario,
                batch_id=batch_id,
                explanation=candidate.explanation or "",
                created_at=now,
                updated_at=now
            )
            for rank, candidate in enumerate(candidates, start=1)
        ]

        try:
            await self.store.create_many(EntityType.RECOMMENDATION, recommendations)
        except PersistenceError as e:
            self.logger.error(f"Failed to persist recommendations for {user_id}: {e}")
            return recommendations, str(e)

        return recommendations, None

    async def _fallback_result(
        self,
        user_id: str,
        scenario: str,
        limit: int,
        exclude: set,
        error: str,
        start_time: float
    ) -> RecommendationResult:
        """Plain popularity list used when the pipeline itself failed"""
        recommendations: List[Recommendation] = []
        try:
            popular = AlgorithmConfig(name=FALLBACK_ALGORITHM, type=AlgorithmType.POPULARITY)
            generator = self.registry.require(popular)
            ctx = GenerationContext(
                user_id=user_id,
                scenario=scenario,
                limit=max(1, limit) + len(exclude),
                preference=UserPreference(user_id=user_id),
                config=popular,
                now=self.clock()
            )
            candidates = [c for c in await generator.generate(ctx) if c.item_id not in exclude][:limit]
            self.explain(candidates, AlgorithmType.POPULARITY)
            recommendations, _ = await self.persist(user_id, scenario, candidates, popular)
        except Exception as e:
            self.logger.error(f"Fallback recommendations failed for user {user_id}: {e}")

        self.degraded_count += 1
        self.algorithm_usage[FALLBACK_ALGORITHM] += 1
        return RecommendationResult(
            user_id=user_id,
            recommendations=recommendations,
            algorithm=FALLBACK_ALGORITHM,
            total_candidates=len(recommendations),
            processing_time_ms=self._record_latency(start_time),
            degraded=True,
            error=error,
            metadata={"scenario": scenario}
        )

    async def train_algorithm(self, config: AlgorithmConfig) -> Dict[str, Any]:
        """
        Retrain one algorithm through its generator's ``train`` hook

        The algorithm row moves to TRAINING, then TRAINED or FAILED.

        Returns:
            Dictionary with the final status and training metadata
        """
        await self.store.update(
            EntityType.ALGORITHM, config.id, {"training_status": TrainingStatus.TRAINING}
        )

        try:
            metadata = await self.registry.require(config).train(config)
        except Exception as e:
            self.logger.error(f"Failed to train algorithm {config.name}: {e}")
            await self.store.update(
                EntityType.ALGORITHM, config.id, {"training_status": TrainingStatus.FAILED}
            )
            return {"status": TrainingStatus.FAILED.value, "error": str(e)}

        now = self.clock()
        await self.store.update(
            EntityType.ALGORITHM, config.id,
            {"training_status": TrainingStatus.TRAINED, "last_trained_at": now}
        )
        self.logger.info(f"Trained algorithm {config.name}: {metadata}")
        return {"status": TrainingStatus.TRAINED.value, "metadata": metadata}

    async def find_stale_algorithms(self) -> List[AlgorithmConfig]:
        """Enabled algorithms never trained or trained too long ago"""
        cutoff = self.clock() - self.config.stale_model_days * 24 * 3600
        return [
            config for config in await self.get_algorithms()
            if config.last_trained_at is None or config.last_trained_at < cutoff
        ]

    def _record_latency(self, start_time: float) -> float:
        """Record request latency for monitoring"""
        latency = time.time() - start_time
        self.total_latency += latency
        return latency * 1000

    def get_statistics(self) -> Dict[str, Any]:
        """Get engine performance statistics"""
        uptime = time.time() - self.start_time
        avg_latency = self.total_latency / max(1, self.request_count) * 1000

        return {
            "uptime_seconds": uptime,
            "total_requests": self.request_count,
            "average_latency_ms": avg_latency,
            "error_rate": self.error_count / max(1, self.request_count),
            "degraded_rate": self.degraded_count / max(1, self.request_count),
            "algorithm_usage": dict(self.algorithm_usage),
            "generators": self.registry.get_algorithm_stats()
        }

    async def health_check(self) -> Dict[str, Any]:
        """Perform health check"""
        health = {
            "status": "healthy",
            "timestamp": time.time(),
            "components": {}
        }

        if await self.store.ping():
            health["components"]["store"] = "healthy"
        else:
            health["components"]["store"] = "unhealthy"
            health["status"] = "degraded"

        enabled = await self.get_algorithms() if health["components"]["store"] == "healthy" else []
        for config in enabled:
            if self.registry.supports(config.type):
                health["components"][f"algorithm_{config.name}"] = "healthy"
            else:
                health["components"][f"algorithm_{config.name}"] = "no generator"
                health["status"] = "degraded"

        return health

    def __repr__(self) -> str:
        stats = self.get_statistics()
        return f"""RecommendationEngine(
    generators={[t.value for t in self.registry.list_algorithm_types()]},
    total_requests={stats['total_requests']},
    avg_latency_ms={stats['average_latency_ms']:.2f}
)"""
