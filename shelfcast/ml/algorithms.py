"""
Candidate Generation Strategies

One generator per algorithm family. Similarity work is done with numpy over
interaction matrices built from the stored behavior log.
"""

import time
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from ..core.algorithms import CandidateGenerator, GenerationContext
from ..core.errors import InsufficientDataError
from ..core.models import (
    AlgorithmConfig, AlgorithmType, BehaviorEvent, Candidate, Item
)


DAY_SECONDS = 24 * 3600


def build_interaction_matrix(
    behaviors: List[BehaviorEvent]
) -> Tuple[np.ndarray, Dict[str, int], Dict[str, int]]:
    """
    Build a user x item matrix of summed intensities

    Args:
        behaviors: Behaviors that reference an item

    Returns:
        (matrix, user index, item index)
    """
    user_index: Dict[str, int] = {}
    item_index: Dict[str, int] = {}
    for behavior in behaviors:
        user_index.setdefault(behavior.user_id, len(user_index))
        item_index.setdefault(behavior.item_id, len(item_index))

    matrix = np.zeros((len(user_index), len(item_index)), dtype=np.float64)
    for behavior in behaviors:
        matrix[user_index[behavior.user_id], item_index[behavior.item_id]] += behavior.intensity

    return matrix, user_index, item_index


def cosine_similarities(vector: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``vector`` against every row of ``matrix``"""
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(vector)
    dots = matrix @ vector
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(norms > 0, dots / norms, 0.0)
    return sims


def rank_score(index: int) -> float:
    """Position-decayed score used by the popularity-style generators"""
    return max(0.1, 1.0 - 0.02 * index)


class CollaborativeFilteringGenerator(CandidateGenerator):
    """
    User-based and item-based collaborative filtering

    Hyperparameters:
        user_based / item_based: which variants to run (both by default)
        neighbors: number of nearest users considered (20)
        min_interactions: history needed before CF is attempted (5)
        min_source_intensity: intensity for an item to seed item-based CF (2.0)
        lookback_days: behavior window used to build the matrix (180)
    """

    async def _load_matrix(self, ctx_now: float, lookback_days: float):
        behaviors = await self.recent_behaviors(since=ctx_now - lookback_days * DAY_SECONDS)
        return build_interaction_matrix(behaviors)

    async def generate(self, ctx: GenerationContext) -> List[Candidate]:
        min_interactions = ctx.param("min_interactions", 5)
        history = await self.recent_behaviors(user_id=ctx.user_id)
        if len(history) < min_interactions:
            raise InsufficientDataError(
                ctx.config.name,
                f"user {ctx.user_id} has {len(history)} interactions, needs {min_interactions}"
            )

        matrix, user_index, item_index = await self._load_matrix(ctx.now, ctx.param("lookback_days", 180))
        if ctx.user_id not in user_index:
            raise InsufficientDataError(ctx.config.name, f"user {ctx.user_id} has no recent interactions")

        item_ids = list(item_index.keys())
        user_row = matrix[user_index[ctx.user_id]]
        seen = {item_ids[i] for i in np.nonzero(user_row)[0]}

        scores: Dict[str, float] = {}
        if ctx.param("user_based", True):
            self._merge(scores, self._user_based(matrix, user_index, item_ids, ctx))
        if ctx.param("item_based", True):
            self._merge(scores, self._item_based(matrix, user_row, item_ids, ctx))

        return await self.to_candidates(scores, ctx, skip=seen)

    @staticmethod
    def _merge(target: Dict[str, float], scores: Dict[str, float]):
        for item_id, score in scores.items():
            if score > target.get(item_id, 0.0):
                target[item_id] = score

    def _user_based(
        self,
        matrix: np.ndarray,
        user_index: Dict[str, int],
        item_ids: List[str],
        ctx: GenerationContext
    ) -> Dict[str, float]:
        row = user_index[ctx.user_id]
        sims = cosine_similarities(matrix[row], matrix)
        sims[row] = 0.0

        k = ctx.param("neighbors", 20)
        neighbours = [i for i in np.argsort(-sims)[:k] if sims[i] > 0]

        scores: Dict[str, float] = {}
        for neighbour in neighbours:
            similarity = float(sims[neighbour])
            for col in np.nonzero(matrix[neighbour] > 0)[0]:
                score = float(matrix[neighbour, col]) * similarity
                item_id = item_ids[col]
                if score > scores.get(item_id, 0.0):
                    scores[item_id] = score

        self.logger.debug(f"User-based CF for {ctx.user_id}: {len(neighbours)} neighbours, {len(scores)} items")
        return scores

    def _item_based(
        self,
        matrix: np.ndarray,
        user_row: np.ndarray,
        item_ids: List[str],
        ctx: GenerationContext
    ) -> Dict[str, float]:
        threshold = ctx.param("min_source_intensity", 2.0)
        sources = np.nonzero(user_row >= threshold)[0]
        if len(sources) == 0:
            return {}

        item_vectors = matrix.T
        scores: Dict[str, float] = {}
        for source in sources:
            sims = cosine_similarities(item_vectors[source], item_vectors)
            sims[source] = 0.0
            intensity = float(user_row[source])
            for col in np.nonzero(sims > 0)[0]:
                score = intensity * float(sims[col])
                item_id = item_ids[col]
                if score > scores.get(item_id, 0.0):
                    scores[item_id] = score

        return scores

    async def train(self, config: AlgorithmConfig) -> Dict[str, Any]:
        matrix, user_index, item_index = await self._load_matrix(
            self.clock(), config.hyperparameters.get("lookback_days", 180)
        )
        density = float(np.count_nonzero(matrix)) / max(1, matrix.size)

        self.is_trained = True
        self.last_update = self.clock()
        return {"users": len(user_index), "items": len(item_index), "density": density}


CONTENT_WEIGHTS = {"category": 0.4, "author": 0.3, "tag": 0.1, "rating": 0.2}


def content_score(item: Item, category_weights: Dict[str, float],
                  author_weights: Dict[str, float], tag_weights: Dict[str, float]) -> float:
    """
    Weighted overlap between an item and a preference vector

    Each matching attribute contributes its weight times the user's weight;
    the sum is divided by the total weight of the attributes that matched.
    Items with nothing to compare get a neutral 0.3.
    """
    score = 0.0
    factors = 0.0

    if item.category in category_weights:
        score += category_weights[item.category] * CONTENT_WEIGHTS["category"]
        factors += CONTENT_WEIGHTS["category"]
    if item.author in author_weights:
        score += author_weights[item.author] * CONTENT_WEIGHTS["author"]
        factors += CONTENT_WEIGHTS["author"]
    for tag in item.tags:
        if tag in tag_weights:
            score += tag_weights[tag] * CONTENT_WEIGHTS["tag"]
            factors += CONTENT_WEIGHTS["tag"]
    if item.rating:
        score += (item.rating / 5.0) * CONTENT_WEIGHTS["rating"]
        factors += CONTENT_WEIGHTS["rating"]

    return score / factors if factors > 0 else 0.3


class ContentBasedGenerator(CandidateGenerator):
    """Scores catalog items by overlap with the user's preference vector"""

    async def generate(self, ctx: GenerationContext) -> List[Candidate]:
        preference = ctx.preference
        preferred = [
            category for category, weight in preference.category_weights.items()
            if weight > ctx.param("preferred_category_threshold", 0.3)
        ]
        pool_size = ctx.param("pool_size", 500)

        seen = await self.seen_item_ids(ctx.user_id)

        if preferred:
            pool: List[Item] = []
            for category in preferred:
                pool.extend(await self.catalog.query_items(
                    category=category, exclude_ids=seen, limit=pool_size
                ))
        else:
            pool = await self.catalog.query_items(exclude_ids=seen, limit=pool_size)

        min_score = ctx.param("min_score", 0.1)
        candidates = []
        for item in pool:
            score = content_score(
                item,
                preference.category_weights,
                preference.author_weights,
                preference.tag_weights
            )
            if score > min_score:
                candidates.append(Candidate(item=item, score=score, algorithm=ctx.config.name))

        candidates.sort(key=lambda c: c.score, reverse=True)
        return candidates[:ctx.limit]


class PopularityGenerator(CandidateGenerator):
    """Most interacted-with items over a recent window, backfilled by rating"""

    async def popular_item_ids(self, since: float, category: Optional[str] = None) -> List[str]:
        """
        Item ids ordered by interaction count, unique users, then intensity

        Args:
            since: Window start (epoch seconds)
            category: Restrict to items in this category
        """
        behaviors = await self.recent_behaviors(since=since)

        counts: Dict[str, int] = defaultdict(int)
        users: Dict[str, set] = defaultdict(set)
        intensity: Dict[str, float] = defaultdict(float)
        for behavior in behaviors:
            counts[behavior.item_id] += 1
            users[behavior.item_id].add(behavior.user_id)
            intensity[behavior.item_id] += behavior.intensity

        ordered = sorted(
            counts,
            key=lambda item_id: (
                counts[item_id],
                len(users[item_id]),
                intensity[item_id] / counts[item_id]
            ),
            reverse=True
        )

        if category is None:
            return ordered

        items = await self.catalog.get_items(ordered)
        return [item_id for item_id in ordered if item_id in items and items[item_id].category == category]

    async def generate(self, ctx: GenerationContext) -> List[Candidate]:
        window_days = ctx.param("window_days", 30)
        category = ctx.context.get("category") if ctx.param("respect_category", False) else None

        seen = await self.seen_item_ids(ctx.user_id)
        ordered = [
            item_id for item_id in await self.popular_item_ids(ctx.now - window_days * DAY_SECONDS, category)
            if item_id not in seen
        ]
        items = await self.catalog.get_items(ordered[:ctx.limit])
        ranked = [items[item_id] for item_id in ordered[:ctx.limit] if item_id in items]

        if len(ranked) < ctx.limit:
            # Backfill from the catalog when there is too little activity
            known = {item.id for item in ranked} | seen
            extra = await self.catalog.query_items(category=category, exclude_ids=known)
            extra.sort(key=lambda item: item.rating or 0.0, reverse=True)
            ranked.extend(extra[:ctx.limit - len(ranked)])

        return [
            Candidate(item=item, score=rank_score(index), algorithm=ctx.config.name)
            for index, item in enumerate(ranked)
        ]


class TrendingGenerator(CandidateGenerator):
    """Items whose activity grew the most versus the previous window"""

    async def trending_scores(
        self,
        now: float,
        window_days: float = 7,
        min_recent: int = 3,
        category: Optional[str] = None
    ) -> List[Tuple[str, float, int]]:
        """
        Compute growth per item

        Returns:
            (item id, trend, recent count) tuples, strongest trend first.
            An item with no activity in the previous window has trend 2.0.
        """
        window = window_days * DAY_SECONDS
        recent_start = now - window
        behaviors = await self.recent_behaviors(since=recent_start - window)

        recent: Dict[str, int] = defaultdict(int)
        previous: Dict[str, int] = defaultdict(int)
        for behavior in behaviors:
            if behavior.created_at >= recent_start:
                recent[behavior.item_id] += 1
            else:
                previous[behavior.item_id] += 1

        trends = []
        for item_id, count in recent.items():
            if count < min_recent:
                continue
            prior = previous.get(item_id, 0)
            trend = (count - prior) / prior if prior > 0 else 2.0
            trends.append((item_id, trend, count))

        if category is not None:
            items = await self.catalog.get_items(item_id for item_id, _, _ in trends)
            trends = [t for t in trends if t[0] in items and items[t[0]].category == category]

        trends.sort(key=lambda t: (t[1], t[2]), reverse=True)
        return trends

    async def generate(self, ctx: GenerationContext) -> List[Candidate]:
        trends = await self.trending_scores(
            ctx.now,
            window_days=ctx.param("window_days", 7),
            min_recent=ctx.param("min_interactions", 3),
            category=ctx.context.get("category")
        )

        scores = {item_id: max(0.1, min(1.0, trend / 2.0)) for item_id, trend, _ in trends}
        return await self.to_candidates(scores, ctx, skip=await self.seen_item_ids(ctx.user_id))


class WeightedHybridGenerator(CandidateGenerator):
    """
    Weighted blend of other generators

    Each component's scores are normalised to its own maximum before the
    weighted sum, so no family dominates just because of its score scale.
    """

    DEFAULT_WEIGHTS = {
        AlgorithmType.COLLABORATIVE_FILTERING.value: 0.5,
        AlgorithmType.CONTENT_BASED.value: 0.3,
        AlgorithmType.POPULARITY.value: 0.2,
    }

    def __init__(self, store, catalog, components: Dict[AlgorithmType, CandidateGenerator], clock=time.time):
        super().__init__(store, catalog, clock)
        self.components = components

    async def generate(self, ctx: GenerationContext) -> List[Candidate]:
        weights = ctx.param("weights", self.DEFAULT_WEIGHTS)

        totals: Dict[str, float] = defaultdict(float)
        best_part: Dict[str, Tuple[float, Candidate]] = {}

        for type_name, weight in weights.items():
            algorithm_type = AlgorithmType(type_name)
            generator = self.components.get(algorithm_type)
            if generator is None or weight <= 0:
                continue

            component_ctx = ctx.derive(AlgorithmConfig(name=type_name, type=algorithm_type))
            try:
                candidates = await generator.generate(component_ctx)
            except InsufficientDataError as e:
                self.logger.debug(f"Hybrid component skipped: {e}")
                continue

            if not candidates:
                continue

            peak = max(c.score for c in candidates)
            if peak <= 0:
                continue

            for candidate in candidates:
                part = weight * candidate.score / peak
                totals[candidate.item_id] += part
                if candidate.item_id not in best_part or part > best_part[candidate.item_id][0]:
                    best_part[candidate.item_id] = (part, candidate)

        ranked = sorted(totals.items(), key=lambda pair: pair[1], reverse=True)[:ctx.limit]
        return [
            Candidate(
                item=best_part[item_id][1].item,
                score=score,
                algorithm=ctx.config.name,
                explanation=best_part[item_id][1].explanation
            )
            for item_id, score in ranked
        ]


TIME_OF_DAY_BUCKETS = (
    ("night", 0, 5),
    ("morning", 5, 12),
    ("afternoon", 12, 17),
    ("evening", 17, 22),
    ("night", 22, 24),
)


def time_of_day(timestamp: float) -> str:
    hour = time.gmtime(timestamp).tm_hour
    for name, start, end in TIME_OF_DAY_BUCKETS:
        if start <= hour < end:
            return name
    return "night"


class ContextualGenerator(CandidateGenerator):
    """
    Time-of-day aware popularity with boosts for the browsing context

    ``context["category"]`` and ``context["author"]`` boost matching items;
    ``context["time_of_day"]`` overrides the bucket derived from the clock.
    """

    async def generate(self, ctx: GenerationContext) -> List[Candidate]:
        window_days = ctx.param("window_days", 30)
        bucket = ctx.context.get("time_of_day") or time_of_day(ctx.now)

        behaviors = await self.recent_behaviors(since=ctx.now - window_days * DAY_SECONDS)
        counts: Dict[str, int] = defaultdict(int)
        for behavior in behaviors:
            if time_of_day(behavior.created_at) == bucket:
                counts[behavior.item_id] += 1

        ordered = sorted(counts, key=lambda item_id: counts[item_id], reverse=True)
        scores = {item_id: rank_score(index) for index, item_id in enumerate(ordered)}

        category = ctx.context.get("category")
        author = ctx.context.get("author")
        if category:
            for item in await self.catalog.query_items(category=category, limit=ctx.limit):
                scores.setdefault(item.id, 0.3)

        items = await self.catalog.get_items(scores)
        category_boost = ctx.param("category_boost", 1.5)
        author_boost = ctx.param("author_boost", 1.3)

        for item_id, item in items.items():
            boost = 1.0
            if category and item.category == category:
                boost *= category_boost
            if author and item.author == author:
                boost *= author_boost
            scores[item_id] = min(1.0, scores[item_id] * boost)

        explanations = {
            item_id: f"Popular in the {bucket}" for item_id in scores
        }
        return await self.to_candidates(
            {item_id: score for item_id, score in scores.items() if item_id in items},
            ctx,
            explanations,
            skip=await self.seen_item_ids(ctx.user_id)
        )


class SequentialGenerator(CandidateGenerator):
    """
    First-order Markov chain over readers' time-ordered item sequences

    The user's most recent items seed the chain; more recent seeds count more.
    """

    async def _transitions(self, since: Optional[float]) -> Dict[str, Dict[str, int]]:
        behaviors = await self.recent_behaviors(since=since)

        sequences: Dict[str, List[str]] = defaultdict(list)
        for behavior in behaviors:
            sequence = sequences[behavior.user_id]
            if not sequence or sequence[-1] != behavior.item_id:
                sequence.append(behavior.item_id)

        transitions: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        for sequence in sequences.values():
            for prev, nxt in zip(sequence, sequence[1:]):
                transitions[prev][nxt] += 1
        return transitions

    async def generate(self, ctx: GenerationContext) -> List[Candidate]:
        history = await self.recent_behaviors(user_id=ctx.user_id)
        if not history:
            raise InsufficientDataError(ctx.config.name, f"user {ctx.user_id} has no history")

        seeds: List[str] = []
        for behavior in reversed(history):
            if behavior.item_id not in seeds:
                seeds.append(behavior.item_id)
            if len(seeds) >= ctx.param("seed_items", 3):
                break

        lookback = ctx.param("lookback_days", 180)
        transitions = await self._transitions(ctx.now - lookback * DAY_SECONDS)

        scores: Dict[str, float] = defaultdict(float)
        strongest: Dict[str, Tuple[float, str]] = {}
        for position, seed in enumerate(seeds):
            outgoing = transitions.get(seed)
            if not outgoing:
                continue
            total = sum(outgoing.values())
            recency = 0.5 ** position
            for nxt, count in outgoing.items():
                contribution = recency * count / total
                scores[nxt] += contribution
                if nxt not in strongest or contribution > strongest[nxt][0]:
                    strongest[nxt] = (contribution, seed)

        sources = {item_id: seed for item_id, (_, seed) in strongest.items()}

        seen = {b.item_id for b in history}
        seed_items = await self.catalog.get_items(set(sources.values()))
        explanations = {
            item_id: f"Often read after {seed_items[seed].title}"
            for item_id, seed in sources.items()
            if seed in seed_items and seed_items[seed].title
        }
        return await self.to_candidates(dict(scores), ctx, explanations, skip=seen)


class EmbeddingProvider(ABC):
    """Source of externally trained user and item embeddings"""

    @abstractmethod
    async def get_user_embedding(self, user_id: str) -> Optional[List[float]]:
        pass

    @abstractmethod
    async def get_item_embeddings(self) -> Dict[str, List[float]]:
        pass


class StaticEmbeddingProvider(EmbeddingProvider):
    """Embeddings held in memory, loaded by whoever trained them"""

    def __init__(self, user_embeddings=None, item_embeddings=None):
        self.user_embeddings: Dict[str, List[float]] = dict(user_embeddings or {})
        self.item_embeddings: Dict[str, List[float]] = dict(item_embeddings or {})

    async def get_user_embedding(self, user_id: str) -> Optional[List[float]]:
        return self.user_embeddings.get(user_id)

    async def get_item_embeddings(self) -> Dict[str, List[float]]:
        return self.item_embeddings


class EmbeddingGenerator(CandidateGenerator):
    """Cosine similarity between a user embedding and item embeddings"""

    def __init__(self, store, catalog, provider: Optional[EmbeddingProvider] = None, clock=time.time):
        super().__init__(store, catalog, clock)
        self.provider = provider

    async def generate(self, ctx: GenerationContext) -> List[Candidate]:
        if self.provider is None:
            raise InsufficientDataError(ctx.config.name, "no embedding provider configured")

        user_vector = await self.provider.get_user_embedding(ctx.user_id)
        item_vectors = await self.provider.get_item_embeddings()
        if user_vector is None or not item_vectors:
            raise InsufficientDataError(ctx.config.name, f"no embeddings for user {ctx.user_id}")

        item_ids = list(item_vectors.keys())
        matrix = np.asarray([item_vectors[item_id] for item_id in item_ids], dtype=np.float64)
        sims = cosine_similarities(np.asarray(user_vector, dtype=np.float64), matrix)

        scores = {item_id: float(sim) for item_id, sim in zip(item_ids, sims) if sim > 0}
        return await self.to_candidates(scores, ctx, skip=await self.seen_item_ids(ctx.user_id))

    async def train(self, config: AlgorithmConfig) -> Dict[str, Any]:
        # Embeddings are trained outside this process; only check they are reachable
        if self.provider is None:
            raise InsufficientDataError(config.name, "no embedding provider configured")

        item_vectors = await self.provider.get_item_embeddings()
        self.is_trained = bool(item_vectors)
        self.last_update = self.clock()
        return {"items": len(item_vectors)}
