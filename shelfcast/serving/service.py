"""
Recommendation Service

Orchestrates the engine, the behavior tracker, the preference learner and
the recommendation cache behind the operations the transport layer exposes,
and runs the periodic maintenance jobs.
"""

import asyncio
import logging
import random
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from ..core.engine import EngineConfig, RecommendationEngine
from ..core.errors import InvalidStateError, ItemNotFoundError, RecommendationNotFoundError
from ..core.models import (
    AlgorithmType, BehaviorEvent, BehaviorType, Candidate, FeedbackType, NegativePreferences,
    Recommendation, RecommendationFeedback, RecommendationResult, RecommendationStatus,
    UserPreference, can_transition
)
from ..core.preferences import PreferenceLearner
from ..ml.algorithms import DAY_SECONDS, build_interaction_matrix, cosine_similarities
from ..storage.cache import CacheConfig, CacheManager, recommendation_key
from ..storage.catalog import BaseCatalog
from ..storage.store import BaseStore, EntityType
from ..streaming.behavior_tracker import BehaviorTracker, BehaviorTrackerConfig
from ..streaming.events import AnomaliesDetected, HighPriorityBehavior, Signal, SignalBus


@dataclass
class ServiceConfig:
    """Configuration for the orchestration service"""
    cache_ttl_s: int = 300
    retention_days: int = 30
    cleanup_interval_s: float = 3600.0
    retrain_interval_s: float = 24 * 3600.0
    preference_refresh_interval_s: float = 6 * 3600.0
    stale_preference_days: int = 7
    preference_history_days: int = 90
    similarity_lookback_days: int = 180
    signal_queue_size: int = 1000
    enable_maintenance: bool = True


@dataclass
class RecommendationOptions:
    """Per-request options for ``get_user_recommendations``"""
    scenario: str = "homepage"
    algorithm: str = "auto"
    limit: int = 10
    use_cache: bool = True
    force_refresh: bool = False
    include_explanations: bool = True
    diversity_factor: float = 0.3
    exclude_items: List[str] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FeedbackInput:
    """Feedback submitted for a recommendation"""
    rating: Optional[float] = None
    relevance: Optional[float] = None
    satisfaction: Optional[float] = None
    interest: Optional[float] = None
    quality: Optional[float] = None
    comment: Optional[str] = None
    feedback_type: FeedbackType = FeedbackType.EXPLICIT
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def value(self) -> float:
        """
        Scalar feedback in [-1, 1]

        A 1-5 rating maps through ``(rating-3)/2``; without a rating the
        relevance dimension is used directly.
        """
        if self.rating is not None:
            raw = (float(self.rating) - 3.0) / 2.0
        elif self.relevance is not None:
            raw = float(self.relevance)
        else:
            raw = 0.0
        return max(-1.0, min(1.0, raw))

    @property
    def dimensions(self) -> Dict[str, Optional[float]]:
        return {
            "relevance": self.relevance,
            "satisfaction": self.satisfaction,
            "interest": self.interest,
            "quality": self.quality,
        }


class RecommendationService:
    """
    Serving surface of the recommendation core
    """

    def __init__(
        self,
        store: BaseStore,
        catalog: BaseCatalog,
        config: Optional[ServiceConfig] = None,
        engine_config: Optional[EngineConfig] = None,
        tracker_config: Optional[BehaviorTrackerConfig] = None,
        cache_config: Optional[CacheConfig] = None,
        learner: Optional[PreferenceLearner] = None,
        engine: Optional[RecommendationEngine] = None,
        tracker: Optional[BehaviorTracker] = None,
        cache: Optional[CacheManager] = None,
        bus: Optional[SignalBus] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None
    ):
        self.store = store
        self.catalog = catalog
        self.config = config or ServiceConfig()
        self.clock = clock
        rng = rng or random.Random()

        self.learner = learner or PreferenceLearner(store, catalog, clock)
        self.bus = bus or SignalBus()
        self.engine = engine or RecommendationEngine(
            store, catalog, self.learner, config=engine_config, clock=clock, rng=rng
        )
        self.tracker = tracker or BehaviorTracker(
            store, catalog, self.learner, self.bus, tracker_config, clock=clock, rng=rng
        )
        self.cache = cache or CacheManager(
            cache_config or CacheConfig(default_ttl_s=self.config.cache_ttl_s), clock=clock
        )

        self.signals = self.bus.subscribe(self.config.signal_queue_size)
        self._tasks: List[asyncio.Task] = []
        self.is_running = False
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_settings(cls, settings, store: BaseStore, catalog: BaseCatalog, **kwargs) -> "RecommendationService":
        """Build a service from a ``shelfcast.config.Settings`` aggregate"""
        return cls(
            store,
            catalog,
            config=settings.service,
            engine_config=settings.engine,
            tracker_config=settings.tracker,
            cache_config=settings.cache,
            **kwargs
        )

    async def start(self):
        """Seed algorithms and start the tracker, signal consumer and maintenance jobs"""
        if self.is_running:
            return

        self.logger.info("Starting recommendation service...")
        await self.engine.create_default_algorithms()
        await self.tracker.start()
        self.is_running = True

        self._tasks = [asyncio.create_task(self._consume_signals())]
        if self.config.enable_maintenance:
            self._tasks.extend([
                asyncio.create_task(self._run_periodically(
                    "cleanup", self.config.cleanup_interval_s, self.cleanup_expired_recommendations
                )),
                asyncio.create_task(self._run_periodically(
                    "retrain", self.config.retrain_interval_s, self.retrain_stale_models
                )),
                asyncio.create_task(self._run_periodically(
                    "preference_refresh", self.config.preference_refresh_interval_s,
                    self.refresh_stale_preferences
                )),
            ])
        self.logger.info("Recommendation service started")

    async def stop(self):
        """Stop background jobs and flush pending events"""
        self.logger.info("Stopping recommendation service...")
        self.is_running = False

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        await self.tracker.stop()
        await self.process_signals()
        await self.cache.close()
        self.logger.info("Recommendation service stopped")

    # Recommendations

    async def get_user_recommendations(
        self,
        user_id: str,
        options: Optional[RecommendationOptions] = None
    ) -> RecommendationResult:
        """
        Serve recommendations for a user, through the cache

        Args:
            user_id: User identifier
            options: Request options

        Returns:
            Recommendation result; freshly generated items are marked displayed
        """
        options = options or RecommendationOptions()
        key = recommendation_key(user_id, options.scenario, options.algorithm, options.limit)

        if options.use_cache and not options.force_refresh:
            cached = await self.cache.get(key)
            if cached is not None:
                cached.cache_hit = True
                self.logger.debug(f"Cache hit for {key}")
                return cached

        result = await self.engine.generate_recommendations(
            user_id,
            scenario=options.scenario,
            limit=options.limit,
            algorithm=options.algorithm,
            diversity_factor=options.diversity_factor,
            exclude_ids=options.exclude_items,
            context=options.context,
            include_explanations=options.include_explanations
        )

        await self._mark_displayed(result.recommendations)

        if options.use_cache and result.recommendations and result.error is None:
            await self.cache.set(key, result, ttl=self.config.cache_ttl_s, user_id=user_id)

        return result

    async def _mark_displayed(self, recommendations: List[Recommendation]):
        now = self.clock()
        for rec in recommendations:
            if rec.status != RecommendationStatus.DISPLAYED and can_transition(
                rec.status, RecommendationStatus.DISPLAYED
            ):
                rec.status = RecommendationStatus.DISPLAYED
            rec.display_count += 1
            rec.last_displayed_at = now
            rec.updated_at = now

            try:
                await self.store.update(EntityType.RECOMMENDATION, rec.id, {
                    "status": rec.status,
                    "display_count": rec.display_count,
                    "last_displayed_at": now,
                    "updated_at": now,
                })
            except Exception as e:
                self.logger.error(f"Failed to mark recommendation {rec.id} displayed: {e}")

    async def _owned_recommendation(self, user_id: str, recommendation_id: str) -> Recommendation:
        rec = await self.store.get(EntityType.RECOMMENDATION, recommendation_id)
        if rec is None:
            raise RecommendationNotFoundError(recommendation_id)
        if rec.user_id != user_id:
            raise InvalidStateError(f"Recommendation {recommendation_id} belongs to another user")
        return rec

    async def _transition(
        self,
        rec: Recommendation,
        target: RecommendationStatus,
        changes: Optional[Dict[str, Any]] = None
    ) -> Recommendation:
        if rec.status.is_terminal or not can_transition(rec.status, target):
            raise InvalidStateError(
                f"Recommendation {rec.id} cannot move from {rec.status.value} to {target.value}"
            )

        updates = dict(changes or {})
        updates["status"] = target
        updates["updated_at"] = self.clock()
        updated = await self.store.update(EntityType.RECOMMENDATION, rec.id, updates)
        if updated is None:
            raise RecommendationNotFoundError(rec.id)
        return updated

    def _event_context(self, rec: Recommendation, context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        event_context = dict(context or {})
        event_context.update({
            "algorithm": rec.algorithm,
            "scenario": rec.scenario,
            "rank": rec.rank,
        })
        return event_context

    async def track_click(
        self,
        user_id: str,
        recommendation_id: str,
        context: Optional[Dict[str, Any]] = None
    ) -> Recommendation:
        """
        Record a click on a recommendation

        Raises:
            RecommendationNotFoundError: unknown recommendation id
            InvalidStateError: another user's or a terminal recommendation
        """
        rec = await self._owned_recommendation(user_id, recommendation_id)
        if rec.status.is_terminal:
            raise InvalidStateError(f"Recommendation {recommendation_id} is already {rec.status.value}")

        now = self.clock()
        updated = await self._transition(rec, RecommendationStatus.CLICKED, {
            "click_count": rec.click_count + 1,
            "last_clicked_at": now,
        })

        await self.tracker.track(BehaviorEvent(
            user_id=user_id,
            item_id=rec.item_id,
            behavior_type=BehaviorType.RECOMMENDATION_CLICK,
            intensity=0.5,
            recommendation_id=rec.id,
            context=self._event_context(rec, context)
        ))
        await self._record_implicit_feedback(rec, 0.5, context)

        self.logger.info(f"User {user_id} clicked recommendation {recommendation_id}")
        return updated

    async def track_dismiss(
        self,
        user_id: str,
        recommendation_id: str,
        context: Optional[Dict[str, Any]] = None
    ) -> Recommendation:
        """Record that the user dismissed a recommendation"""
        rec = await self._owned_recommendation(user_id, recommendation_id)
        updated = await self._transition(rec, RecommendationStatus.DISMISSED)

        await self.tracker.track(BehaviorEvent(
            user_id=user_id,
            item_id=rec.item_id,
            behavior_type=BehaviorType.RECOMMENDATION_DISMISS,
            intensity=-1.0,
            recommendation_id=rec.id,
            context=self._event_context(rec, context)
        ))
        await self._record_implicit_feedback(rec, -0.5, context)
        await self.cache.invalidate_user_cache(user_id)
        return updated

    async def track_borrow(
        self,
        user_id: str,
        recommendation_id: str,
        context: Optional[Dict[str, Any]] = None
    ) -> Recommendation:
        """Record that a recommended item was borrowed"""
        rec = await self._owned_recommendation(user_id, recommendation_id)
        updated = await self._transition(rec, RecommendationStatus.BORROWED)

        await self.tracker.track(BehaviorEvent(
            user_id=user_id,
            item_id=rec.item_id,
            behavior_type=BehaviorType.BORROW,
            intensity=5.0,
            recommendation_id=rec.id,
            context=self._event_context(rec, context)
        ))
        return updated

    async def _record_implicit_feedback(
        self,
        rec: Recommendation,
        value: float,
        context: Optional[Dict[str, Any]]
    ) -> RecommendationFeedback:
        feedback = RecommendationFeedback(
            user_id=rec.user_id,
            recommendation_id=rec.id,
            item_id=rec.item_id,
            feedback_type=FeedbackType.IMPLICIT,
            feedback_value=value,
            context=dict(context or {}),
            created_at=self.clock()
        )
        await self.store.create(EntityType.FEEDBACK, feedback)
        return await self.apply_feedback(feedback.id)

    async def record_feedback(
        self,
        user_id: str,
        recommendation_id: str,
        feedback: Union[FeedbackInput, Mapping[str, Any]]
    ) -> RecommendationFeedback:
        """
        Store feedback on a recommendation and learn from it

        Negative feedback also dismisses the recommendation when its status
        still allows that.

        Raises:
            RecommendationNotFoundError: unknown recommendation id
            InvalidStateError: another user's recommendation
            PersistenceError: the feedback could not be stored
        """
        if not isinstance(feedback, FeedbackInput):
            data = dict(feedback)
            if isinstance(data.get("feedback_type"), str):
                data["feedback_type"] = FeedbackType(data["feedback_type"])
            feedback = FeedbackInput(**data)

        rec = await self._owned_recommendation(user_id, recommendation_id)
        now = self.clock()
        value = feedback.value

        row = RecommendationFeedback(
            user_id=user_id,
            recommendation_id=rec.id,
            item_id=rec.item_id,
            feedback_type=feedback.feedback_type,
            feedback_value=value,
            dimensions=feedback.dimensions,
            comment=feedback.comment,
            context=dict(feedback.context),
            created_at=now
        )
        await self.store.create(EntityType.FEEDBACK, row)

        changes: Dict[str, Any] = {
            "feedback_summary": {
                "feedback_id": row.id,
                "feedback_type": row.feedback_type.value,
                "feedback_value": value,
                "rating": feedback.rating,
                "dimensions": feedback.dimensions,
                "comment": feedback.comment,
                "recorded_at": now,
            },
            "updated_at": now,
        }
        if value < 0 and rec.status != RecommendationStatus.DISMISSED and can_transition(
            rec.status, RecommendationStatus.DISMISSED
        ):
            changes["status"] = RecommendationStatus.DISMISSED
        await self.store.update(EntityType.RECOMMENDATION, rec.id, changes)

        row = await self.apply_feedback(row.id)
        await self.cache.invalidate_user_cache(user_id)
        self.logger.info(f"Recorded feedback {value:+.2f} from {user_id} on {recommendation_id}")
        return row

    async def apply_feedback(self, feedback_id: str) -> RecommendationFeedback:
        """
        Feed a stored feedback row into preference learning once

        Rows already marked processed are returned unchanged.
        """
        row = await self.store.get(EntityType.FEEDBACK, feedback_id)
        if row is None or row.processed:
            return row

        if row.feedback_value != 0:
            await self.learner.apply_feedback(row.user_id, row.item_id, row.feedback_value)

        row.processed = True
        await self.store.update(EntityType.FEEDBACK, row.id, {"processed": True})
        return row

    async def process_pending_feedback(self) -> int:
        """Apply every feedback row not yet processed"""
        pending = await self.store.find_many(EntityType.FEEDBACK, {"processed": False})
        for row in pending:
            await self.apply_feedback(row.id)
        return len(pending)

    # Item-centric lists

    async def get_similar_items(
        self,
        item_id: str,
        user_id: Optional[str] = None,
        limit: int = 10
    ) -> List[Candidate]:
        """
        Items similar to a given item

        Content similarity (Jaccard over category, author and tags) is merged
        with co-interaction similarity; with a user, disliked items are
        dropped and the user's affinity nudges the order.

        Raises:
            ItemNotFoundError: the item is not in the catalog
        """
        item = await self.catalog.get_item(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)

        def features(other) -> set:
            values = {f"category:{other.category}", f"author:{other.author}"}
            values.update(f"tag:{tag}" for tag in other.tags)
            return values

        source_features = features(item)
        content: Dict[str, float] = {}
        for other in await self.catalog.query_items(exclude_ids=[item.id]):
            other_features = features(other)
            union = source_features | other_features
            score = len(source_features & other_features) / len(union) if union else 0.0
            if score > 0:
                content[other.id] = score

        since = self.clock() - self.config.similarity_lookback_days * DAY_SECONDS
        behaviors = await self.store.find_many(EntityType.BEHAVIOR, {
            "item_id": {"ne": None}, "is_anomaly": False, "created_at": {"gte": since}
        })
        co_interaction: Dict[str, float] = {}
        matrix, _, item_index = build_interaction_matrix(behaviors)
        if item.id in item_index:
            item_ids = list(item_index.keys())
            sims = cosine_similarities(matrix.T[item_index[item.id]], matrix.T)
            co_interaction = {
                item_ids[i]: float(sims[i]) for i in range(len(item_ids))
                if item_ids[i] != item.id and sims[i] > 0
            }

        merged = {
            other_id: 0.6 * content.get(other_id, 0.0) + 0.4 * co_interaction.get(other_id, 0.0)
            for other_id in set(content) | set(co_interaction)
        }
        items = await self.catalog.get_items(merged)

        candidates = []
        for other_id, score in merged.items():
            if other_id not in items:
                continue
            reason = (
                f"Readers of {item.title} also read this"
                if co_interaction.get(other_id, 0.0) > content.get(other_id, 0.0)
                else f"Similar to {item.title}"
            )
            candidates.append(Candidate(item=items[other_id], score=score, algorithm="similar_items", explanation=reason))

        if user_id:
            preference = await self.learner.get_or_create(user_id)
            candidates = self.engine.filter_candidates(candidates, preference)
            for candidate in candidates:
                affinity = max(-1.0, min(1.0, preference.affinity(candidate.item)))
                candidate.score *= 1.0 + 0.2 * affinity

        candidates.sort(key=lambda c: c.score, reverse=True)
        return candidates[:limit]

    async def get_trending_recommendations(
        self,
        user_id: Optional[str] = None,
        time_range_days: int = 7,
        category: Optional[str] = None,
        limit: int = 20,
        include_global: bool = True
    ) -> List[Candidate]:
        """
        Trending items, optionally personalised

        Args:
            user_id: Personalise for this user (drops disliked and already seen items)
            time_range_days: Length of the trend window
            category: Restrict to one category
            limit: Maximum number of items
            include_global: Backfill with globally popular items when the
                trend list is short
        """
        now = self.clock()
        trending = self.engine.registry.get_generator(AlgorithmType.TRENDING)
        trends = await trending.trending_scores(now, window_days=time_range_days, category=category)

        scores = {item_id: max(0.1, min(1.0, trend / 2.0)) for item_id, trend, _ in trends}
        items = await self.catalog.get_items(scores)
        candidates = [
            Candidate(item=items[item_id], score=score, algorithm="trending", explanation="Trending this week")
            for item_id, score in scores.items() if item_id in items
        ]

        if include_global and len(candidates) < limit:
            popularity = self.engine.registry.get_generator(AlgorithmType.POPULARITY)
            popular_ids = await popularity.popular_item_ids(now - 30 * DAY_SECONDS, category)
            known = {c.item_id for c in candidates}
            popular_items = await self.catalog.get_items(i for i in popular_ids if i not in known)
            for index, item_id in enumerate(i for i in popular_ids if i in popular_items):
                candidates.append(Candidate(
                    item=popular_items[item_id],
                    score=max(0.05, 0.1 - 0.001 * index),
                    algorithm="popular",
                    explanation="Popular with readers right now"
                ))

        if user_id:
            preference = await self.learner.get_or_create(user_id)
            seen = await trending.seen_item_ids(user_id)
            candidates = self.engine.filter_candidates(candidates, preference, seen)
            candidates = sorted(
                candidates, key=lambda c: (c.score, preference.affinity(c.item)), reverse=True
            )
        else:
            candidates.sort(key=lambda c: c.score, reverse=True)

        return candidates[:limit]

    async def get_new_items_recommendations(
        self,
        user_id: Optional[str] = None,
        days_range: int = 30,
        limit: int = 20,
        min_rating: float = 3.5
    ) -> List[Candidate]:
        """
        Recently added, well-rated items

        ``score = freshness*0.6 + rating/5*0.4`` with
        ``freshness = max(0.1, 1 - age_days/30)``.
        """
        now = self.clock()
        items = await self.catalog.query_items(
            created_after=now - days_range * DAY_SECONDS, min_rating=min_rating
        )

        candidates = []
        for item in items:
            age_days = max(0.0, (now - item.created_at) / DAY_SECONDS)
            freshness = max(0.1, 1.0 - age_days / 30.0)
            score = freshness * 0.6 + ((item.rating or 0.0) / 5.0) * 0.4
            explanation = f"New arrival in {item.category}" if item.category else "New arrival"
            candidates.append(Candidate(item=item, score=score, algorithm="new_items", explanation=explanation))

        if user_id:
            preference = await self.learner.get_or_create(user_id)
            history = await self.store.find_many(EntityType.BEHAVIOR, {"user_id": user_id})
            seen = {b.item_id for b in history if b.item_id}
            candidates = self.engine.filter_candidates(candidates, preference, seen)
            candidates.sort(key=lambda c: (c.score, preference.affinity(c.item)), reverse=True)
        else:
            candidates.sort(key=lambda c: c.score, reverse=True)

        return candidates[:limit]

    # Preferences and analysis

    async def get_user_preferences(self, user_id: str) -> UserPreference:
        return await self.learner.get_or_create(user_id)

    async def update_user_preferences(self, user_id: str, updates: Mapping[str, Any]) -> UserPreference:
        """
        Apply explicit preference settings

        Accepted keys: ``negative_preferences`` (mapping),
        ``personalization_strength``, ``category_weights``,
        ``author_weights``, ``tag_weights``.
        """
        negative = updates.get("negative_preferences")
        if isinstance(negative, Mapping):
            negative = NegativePreferences(
                disliked_categories=list(negative.get("disliked_categories", [])),
                disliked_authors=list(negative.get("disliked_authors", [])),
                blacklisted_keywords=list(negative.get("blacklisted_keywords", []))
            )

        preference = await self.learner.update_explicit(
            user_id,
            negative_preferences=negative,
            personalization_strength=updates.get("personalization_strength"),
            category_weights=updates.get("category_weights"),
            author_weights=updates.get("author_weights"),
            tag_weights=updates.get("tag_weights")
        )
        await self.cache.invalidate_user_cache(user_id)
        return preference

    async def get_recommendation_explanation(self, recommendation_id: str) -> Dict[str, Any]:
        """Why a recommendation was made, with the preference weights that matched"""
        rec = await self.store.get(EntityType.RECOMMENDATION, recommendation_id)
        if rec is None:
            raise RecommendationNotFoundError(recommendation_id)

        item = await self.catalog.get_item(rec.item_id)
        preference = await self.learner.get_or_create(rec.user_id)

        matching: Dict[str, Any] = {}
        if item is not None:
            matching = {
                "category": {item.category: preference.category_weights.get(item.category, 0.0)},
                "author": {item.author: preference.author_weights.get(item.author, 0.0)},
                "tags": {tag: preference.tag_weights[tag] for tag in item.tags if tag in preference.tag_weights},
            }

        return {
            "recommendation_id": rec.id,
            "user_id": rec.user_id,
            "item": item.to_dict() if item else None,
            "algorithm": rec.algorithm,
            "scenario": rec.scenario,
            "score": rec.score,
            "rank": rec.rank,
            "status": rec.status.value,
            "explanation": rec.explanation,
            "matching_preferences": matching,
            "personalization_strength": preference.personalization_strength,
            "preference_confidence": preference.confidence_score
        }

    async def get_user_behavior_analysis(self, user_id: str, time_range_days: int = 30) -> Dict[str, Any]:
        """Behavior statistics, top preferences and recommendation outcomes for one user"""
        behavior = await self.tracker.get_user_behavior_stats(user_id, time_range_days)
        preference = await self.learner.get_or_create(user_id)

        since = self.clock() - time_range_days * DAY_SECONDS
        recs = await self.store.find_many(
            EntityType.RECOMMENDATION, {"user_id": user_id, "created_at": {"gte": since}}
        )
        statuses = Counter(rec.status.value for rec in recs)

        def top(weights: Dict[str, float], n: int = 5) -> List[Dict[str, Any]]:
            ranked = sorted(weights.items(), key=lambda kv: kv[1], reverse=True)[:n]
            return [{"name": name, "weight": weight} for name, weight in ranked]

        return {
            "user_id": user_id,
            "time_range_days": time_range_days,
            "behavior": behavior,
            "preferences": {
                "top_categories": top(preference.category_weights),
                "top_authors": top(preference.author_weights),
                "top_tags": top(preference.tag_weights),
                "confidence_score": preference.confidence_score,
            },
            "recommendations": {
                "total": len(recs),
                "by_status": dict(statuses),
                "clicks": sum(rec.click_count for rec in recs),
            }
        }

    async def get_statistics(self, time_range_days: int = 30) -> Dict[str, Any]:
        """
        System-wide recommendation statistics over a time range

        Returns:
            Status overview, per-algorithm click-through, feedback quality,
            diversity, catalog coverage and component statistics
        """
        since = self.clock() - time_range_days * DAY_SECONDS
        recs = await self.store.find_many(EntityType.RECOMMENDATION, {"created_at": {"gte": since}})
        feedback = await self.store.find_many(EntityType.FEEDBACK, {"created_at": {"gte": since}})

        per_algorithm: Dict[str, Dict[str, float]] = defaultdict(
            lambda: {"total": 0, "displayed": 0, "clicked": 0}
        )
        for rec in recs:
            stats = per_algorithm[rec.algorithm]
            stats["total"] += 1
            if rec.display_count > 0:
                stats["displayed"] += 1
            if rec.click_count > 0:
                stats["clicked"] += 1
        for stats in per_algorithm.values():
            stats["click_through_rate"] = stats["clicked"] / max(1, stats["displayed"])

        values = [row.feedback_value for row in feedback]
        unique_items = {rec.item_id for rec in recs}
        catalog_size = await self.catalog.count()

        return {
            "time_range_days": time_range_days,
            "overview": {
                "total_recommendations": len(recs),
                "by_status": dict(Counter(rec.status.value for rec in recs)),
            },
            "algorithms": dict(per_algorithm),
            "feedback": {
                "total": len(feedback),
                "explicit": sum(1 for row in feedback if row.feedback_type == FeedbackType.EXPLICIT),
                "average_value": sum(values) / len(values) if values else 0.0,
                "positive_share": sum(1 for v in values if v > 0) / len(values) if values else 0.0,
            },
            "diversity": len(unique_items) / len(recs) if recs else 0.0,
            "catalog_coverage": len(unique_items) / catalog_size if catalog_size else 0.0,
            "behavior_effectiveness": await self.tracker.get_recommendation_effectiveness(time_range_days),
            "engine": self.engine.get_statistics(),
            "tracker": self.tracker.get_statistics(),
            "cache": self.cache.get_stats()
        }

    # Signals and maintenance

    async def handle_signal(self, signal: Signal):
        if isinstance(signal, HighPriorityBehavior):
            removed = await self.cache.invalidate_user_cache(signal.user_id)
            self.logger.debug(
                f"{signal.behavior_type.value} by {signal.user_id} invalidated {removed} cache entries"
            )
        elif isinstance(signal, AnomaliesDetected):
            users = sorted({anomaly.user_id for anomaly in signal.anomalies})
            self.logger.warning(f"Anomalous activity reported for users: {users}")

    async def process_signals(self) -> int:
        """Handle every signal already queued, without waiting for more"""
        handled = 0
        while not self.signals.empty():
            await self.handle_signal(self.signals.get_nowait())
            handled += 1
        return handled

    async def _consume_signals(self):
        while self.is_running:
            try:
                signal = await self.signals.get()
                await self.handle_signal(signal)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"Error handling signal: {e}")

    async def _run_periodically(self, name: str, interval: float, job: Callable[[], Awaitable[Any]]):
        while self.is_running:
            try:
                await asyncio.sleep(interval)
                result = await job()
                self.logger.info(f"Maintenance job {name} finished: {result}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"Maintenance job {name} failed: {e}")

    async def cleanup_expired_recommendations(self) -> int:
        """
        Delete recommendations older than the retention period that are
        finished (borrowed, dismissed) or were never acted on

        Clicked rows are kept until they resolve.
        """
        cutoff = self.clock() - self.config.retention_days * DAY_SECONDS
        statuses = [
            status for status in RecommendationStatus
            if status.is_terminal or status in (RecommendationStatus.GENERATED, RecommendationStatus.DISPLAYED)
        ]
        deleted = await self.store.delete_many(
            EntityType.RECOMMENDATION,
            {"created_at": {"lt": cutoff}, "status": {"in": statuses}}
        )
        if deleted:
            self.logger.info(f"Deleted {deleted} expired recommendations")
        return deleted

    async def retrain_stale_models(self) -> Dict[str, Dict[str, Any]]:
        """Retrain enabled algorithms that are untrained or trained too long ago"""
        results = {}
        for config in await self.engine.find_stale_algorithms():
            results[config.name] = await self.engine.train_algorithm(config)
        return results

    async def refresh_stale_preferences(self) -> int:
        """Rebuild preferences not updated recently from the behavior history"""
        now = self.clock()
        stale = await self.store.find_many(EntityType.PREFERENCE, {
            "last_updated": {"lt": now - self.config.stale_preference_days * DAY_SECONDS}
        })

        refreshed = 0
        for preference in stale:
            try:
                behaviors = await self.store.find_many(EntityType.BEHAVIOR, {
                    "user_id": preference.user_id,
                    "item_id": {"ne": None},
                    "is_anomaly": False,
                    "created_at": {"gte": now - self.config.preference_history_days * DAY_SECONDS},
                })
                await self.learner.refresh_from_history(preference.user_id, behaviors)
                refreshed += 1
            except Exception as e:
                self.logger.error(f"Preference refresh failed for user {preference.user_id}: {e}")

        return refreshed

    async def health_check(self) -> Dict[str, Any]:
        """Perform health check"""
        engine_health = await self.engine.health_check()
        tracker_health = await self.tracker.health_check()
        cache_ok = await self.cache.ping()

        status = "healthy"
        if engine_health["status"] != "healthy" or tracker_health["status"] == "degraded" or not cache_ok:
            status = "degraded"
        if not self.is_running:
            status = "stopped"

        return {
            "status": status,
            "timestamp": time.time(),
            "components": {
                "engine": engine_health,
                "tracker": tracker_health,
                "cache": "healthy" if cache_ok else "unhealthy",
            }
        }
