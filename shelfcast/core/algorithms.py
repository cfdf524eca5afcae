"""
Algorithm Registry for Candidate Generation

Maps each algorithm family to the strategy that produces its candidates and
manages the training lifecycle of those strategies.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional, Set, Callable, Iterable
import logging
from dataclasses import dataclass, field
import time

from .errors import AlgorithmNotFoundError
from .models import (
    AlgorithmConfig, AlgorithmType, BehaviorEvent, Candidate, Item, UserPreference
)
from ..storage.catalog import BaseCatalog
from ..storage.store import BaseStore, EntityType


@dataclass
class GenerationContext:
    """Everything a generator needs to produce candidates for one request"""
    user_id: str
    scenario: str
    limit: int
    preference: UserPreference
    config: AlgorithmConfig
    now: float
    exclude_ids: Set[str] = field(default_factory=set)
    context: Dict[str, Any] = field(default_factory=dict)

    def param(self, name: str, default: Any) -> Any:
        """Read a hyperparameter with a fallback"""
        return self.config.hyperparameters.get(name, default)

    def derive(self, config: AlgorithmConfig) -> "GenerationContext":
        """Copy of this context running under another algorithm config"""
        return GenerationContext(
            user_id=self.user_id,
            scenario=self.scenario,
            limit=self.limit,
            preference=self.preference,
            config=config,
            now=self.now,
            exclude_ids=set(self.exclude_ids),
            context=dict(self.context)
        )


class CandidateGenerator(ABC):
    """
    Base class for all candidate generation strategies
    """

    def __init__(
        self,
        store: BaseStore,
        catalog: BaseCatalog,
        clock: Callable[[], float] = time.time
    ):
        self.store = store
        self.catalog = catalog
        self.clock = clock
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self.is_trained = False
        self.last_update: Optional[float] = None

    @abstractmethod
    async def generate(self, ctx: GenerationContext) -> List[Candidate]:
        """
        Generate scored candidates for a user

        Args:
            ctx: Request-scoped generation context

        Returns:
            Candidates, best first

        Raises:
            InsufficientDataError: the strategy cannot serve this user
        """
        pass

    async def train(self, config: AlgorithmConfig) -> Dict[str, Any]:
        """
        Refresh any model state the strategy keeps

        Strategies that compute everything per request only record the
        training time.

        Returns:
            Training metadata
        """
        self.is_trained = True
        self.last_update = self.clock()
        return {}

    async def recent_behaviors(
        self,
        since: Optional[float] = None,
        user_id: Optional[str] = None,
        until: Optional[float] = None
    ) -> List[BehaviorEvent]:
        """Stored, non-anomalous behaviors that reference an item"""
        filters: Dict[str, Any] = {"item_id": {"ne": None}, "is_anomaly": False}
        window: Dict[str, float] = {}
        if since is not None:
            window["gte"] = since
        if until is not None:
            window["lt"] = until
        if window:
            filters["created_at"] = window
        if user_id is not None:
            filters["user_id"] = user_id

        return await self.store.find_many(EntityType.BEHAVIOR, filters, order_by="created_at")

    async def seen_item_ids(self, user_id: str) -> Set[str]:
        """Items the user has already interacted with"""
        return {b.item_id for b in await self.recent_behaviors(user_id=user_id)}

    async def to_candidates(
        self,
        scores: Dict[str, float],
        ctx: GenerationContext,
        explanations: Optional[Dict[str, str]] = None,
        skip: Iterable[str] = ()
    ) -> List[Candidate]:
        """Turn an item score map into catalog-backed candidates, best first"""
        skipped = set(skip)
        ranked = sorted(
            ((item_id, score) for item_id, score in scores.items() if item_id not in skipped),
            key=lambda pair: pair[1],
            reverse=True
        )[:ctx.limit]

        items = await self.catalog.get_items(item_id for item_id, _ in ranked)
        explanations = explanations or {}

        return [
            Candidate(
                item=items[item_id],
                score=score,
                algorithm=ctx.config.name,
                explanation=explanations.get(item_id)
            )
            for item_id, score in ranked
            if item_id in items
        ]

    def get_metadata(self) -> Dict[str, Any]:
        """Get generator metadata"""
        return {
            "name": self.__class__.__name__,
            "is_trained": self.is_trained,
            "last_update": self.last_update
        }


class AlgorithmRegistry:
    """
    Registry mapping algorithm families to candidate generators
    """

    def __init__(self):
        self.generators: Dict[AlgorithmType, CandidateGenerator] = {}
        self.logger = logging.getLogger(__name__)

    def register(self, algorithm_type: AlgorithmType, generator: CandidateGenerator):
        """
        Register the generator serving an algorithm family

        Args:
            algorithm_type: Algorithm family
            generator: Generator instance
        """
        self.generators[algorithm_type] = generator
        self.logger.info(f"Registered generator for {algorithm_type.value}: {generator.__class__.__name__}")

    def get_generator(self, algorithm_type: AlgorithmType) -> Optional[CandidateGenerator]:
        return self.generators.get(algorithm_type)

    def require(self, config: AlgorithmConfig) -> CandidateGenerator:
        """Generator for a config, or AlgorithmNotFoundError"""
        generator = self.generators.get(config.type)
        if generator is None:
            raise AlgorithmNotFoundError(config.name)
        return generator

    def supports(self, algorithm_type: AlgorithmType) -> bool:
        return algorithm_type in self.generators

    def get_algorithm_stats(self) -> Dict[str, Dict[str, Any]]:
        """Get metadata for all registered generators"""
        return {
            algorithm_type.value: generator.get_metadata()
            for algorithm_type, generator in self.generators.items()
        }

    def list_algorithm_types(self) -> List[AlgorithmType]:
        return list(self.generators.keys())


def explain_template(algorithm_type: AlgorithmType, item: Item) -> str:
    """Default English explanation for a candidate of a given family"""
    if algorithm_type == AlgorithmType.COLLABORATIVE_FILTERING:
        return "Readers with similar taste also enjoyed this"
    if algorithm_type == AlgorithmType.CONTENT_BASED:
        if item.category:
            return f"Matches your interest in {item.category}"
        return "Matches your reading interests"
    if algorithm_type == AlgorithmType.POPULARITY:
        return "Popular with readers right now"
    if algorithm_type == AlgorithmType.TRENDING:
        return "Trending this week"
    if algorithm_type == AlgorithmType.HYBRID:
        return "Recommended based on your activity and what is popular"
    if algorithm_type == AlgorithmType.CONTEXTUAL:
        return "Picked for what you are browsing right now"
    if algorithm_type == AlgorithmType.SEQUENTIAL:
        return "Often read next by readers like you"
    if algorithm_type == AlgorithmType.DEEP_LEARNING:
        return "Close to your reading profile"
    return "Recommended for you"
