"""
Preference Learning

Maintains the per-user preference vector (category, author and tag weights)
with exponential-moving-average updates driven by behaviors and feedback.
"""

import asyncio
import logging
import time
import weakref
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from .models import BehaviorEvent, BehaviorType, NegativePreferences, UserPreference
from ..storage.catalog import BaseCatalog
from ..storage.store import BaseStore, EntityType


BASE_LEARNING_RATES: Dict[BehaviorType, float] = {
    BehaviorType.BORROW: 0.3,
    BehaviorType.RATE: 0.25,
    BehaviorType.REVIEW: 0.2,
    BehaviorType.BOOKMARK: 0.15,
    BehaviorType.SHARE: 0.15,
    BehaviorType.READ: 0.1,
    BehaviorType.CLICK: 0.05,
    BehaviorType.VIEW: 0.02,
}
DEFAULT_LEARNING_RATE = 0.1

FEEDBACK_LEARNING_RATE = 0.2
REFRESH_BLEND_RATE = 0.5
CONFIDENCE_GAIN = 0.1


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def ema(old: float, target: float, rate: float) -> float:
    """Exponential moving average step: ``old*(1-rate) + target*rate``"""
    return old * (1 - rate) + target * rate


def learning_rate(behavior_type: BehaviorType, intensity: float, multiplier: float = 1.0) -> float:
    """
    Learning rate for a behavior

    Args:
        behavior_type: Type of the behavior being learned from
        intensity: Behavior intensity; only its magnitude matters here
        multiplier: Extra factor (2.0 for high-priority behaviors)

    Returns:
        Rate in [0, 1]
    """
    base = BASE_LEARNING_RATES.get(behavior_type, DEFAULT_LEARNING_RATE)
    return clamp(base * min(2.0, abs(intensity) / 3.0) * multiplier, 0.0, 1.0)


class PreferenceLearner:
    """
    Owns reads and writes of ``UserPreference`` rows

    Updates for one user are serialised by a per-user lock so concurrent
    events cannot lose each other's EMA steps.
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

        # Entries vanish once no update holds the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self.updates_applied = 0

        self.logger = logging.getLogger(__name__)

    def _lock(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    async def _load(self, user_id: str) -> UserPreference:
        preference = await self.store.get(EntityType.PREFERENCE, user_id)
        if preference is None:
            now = self.clock()
            preference = UserPreference(user_id=user_id, last_updated=now, created_at=now)
            await self.store.create(EntityType.PREFERENCE, preference)
            self.logger.debug(f"Created preference row for user {user_id}")
        return preference

    async def get_or_create(self, user_id: str) -> UserPreference:
        """Return the user's preference row, creating it on first use"""
        async with self._lock(user_id):
            return await self._load(user_id)

    async def _save(self, preference: UserPreference, fields: List[str]):
        preference.last_updated = self.clock()
        changes = {name: getattr(preference, name) for name in fields + ["last_updated"]}
        await self.store.update(EntityType.PREFERENCE, preference.user_id, changes)
        self.updates_applied += 1

    def _step(self, preference: UserPreference, category: str, author: str, target: float, rate: float):
        if category:
            old = preference.category_weights.get(category, 0.0)
            preference.category_weights[category] = ema(old, target, rate)
        if author:
            old = preference.author_weights.get(author, 0.0)
            preference.author_weights[author] = ema(old, target, rate)

        preference.confidence_score = min(1.0, preference.confidence_score + rate * CONFIDENCE_GAIN)

    async def learn_from_behavior(
        self,
        user_id: str,
        item_id: Optional[str],
        behavior_type: BehaviorType,
        intensity: float,
        multiplier: float = 1.0
    ) -> Optional[UserPreference]:
        """
        Move the user's category and author weights toward a behavior

        Args:
            user_id: User identifier
            item_id: Item the behavior was on; unknown items are ignored
            behavior_type: Behavior type, selects the base learning rate
            intensity: Behavior intensity; ``intensity/5`` is the EMA target
            multiplier: Learning-rate multiplier

        Returns:
            Updated preference, or None when nothing was learned
        """
        if not item_id:
            return None

        item = await self.catalog.get_item(item_id)
        if item is None:
            self.logger.debug(f"Skipping learning for unknown item {item_id}")
            return None

        rate = learning_rate(behavior_type, intensity, multiplier)
        target = clamp(intensity / 5.0, -1.0, 1.0)

        async with self._lock(user_id):
            preference = await self._load(user_id)
            self._step(preference, item.category, item.author, target, rate)
            await self._save(preference, ["category_weights", "author_weights", "confidence_score"])

        self.logger.debug(
            f"Learned {behavior_type.value} for user {user_id} on {item_id} (lr={rate:.3f})"
        )
        return preference

    async def apply_feedback(self, user_id: str, item_id: str, feedback_value: float) -> Optional[UserPreference]:
        """
        Move weights toward the sign of a feedback value

        Positive feedback never lowers a weight and negative feedback never
        raises one, since the target is +1 or -1 and weights stay in [-1, 1].
        """
        if feedback_value == 0:
            return None

        item = await self.catalog.get_item(item_id)
        if item is None:
            self.logger.debug(f"Skipping feedback learning for unknown item {item_id}")
            return None

        rate = clamp(FEEDBACK_LEARNING_RATE * abs(feedback_value), 0.0, 1.0)
        target = 1.0 if feedback_value > 0 else -1.0

        async with self._lock(user_id):
            preference = await self._load(user_id)
            self._step(preference, item.category, item.author, target, rate)
            await self._save(preference, ["category_weights", "author_weights", "confidence_score"])

        return preference

    async def refresh_from_history(self, user_id: str, behaviors: List[BehaviorEvent]) -> UserPreference:
        """
        Rebuild a preference vector from recent behaviors and blend it in

        Intensity sums per category, author and tag are normalised to [0, 1]
        and blended into the stored weights at ``REFRESH_BLEND_RATE``.
        """
        items = await self.catalog.get_items(b.item_id for b in behaviors if b.item_id)

        sums: Dict[str, Dict[str, float]] = {
            "category_weights": defaultdict(float),
            "author_weights": defaultdict(float),
            "tag_weights": defaultdict(float),
        }
        for behavior in behaviors:
            item = items.get(behavior.item_id)
            if item is None:
                continue
            if item.category:
                sums["category_weights"][item.category] += behavior.intensity
            if item.author:
                sums["author_weights"][item.author] += behavior.intensity
            for tag in item.tags:
                sums["tag_weights"][tag] += behavior.intensity

        async with self._lock(user_id):
            preference = await self._load(user_id)

            if items:
                for field_name, totals in sums.items():
                    peak = max([v for v in totals.values() if v > 0], default=0.0)
                    vector = {
                        key: max(0.0, total) / peak for key, total in totals.items()
                    } if peak > 0 else {}

                    weights = getattr(preference, field_name)
                    for key in set(weights) | set(vector):
                        weights[key] = ema(weights.get(key, 0.0), vector.get(key, 0.0), REFRESH_BLEND_RATE)

            await self._save(preference, ["category_weights", "author_weights", "tag_weights"])

        self.logger.debug(f"Refreshed preferences for user {user_id} from {len(behaviors)} behaviors")
        return preference

    async def update_explicit(
        self,
        user_id: str,
        negative_preferences: Optional[NegativePreferences] = None,
        personalization_strength: Optional[float] = None,
        category_weights: Optional[Dict[str, float]] = None,
        author_weights: Optional[Dict[str, float]] = None,
        tag_weights: Optional[Dict[str, float]] = None
    ) -> UserPreference:
        """Apply settings the user chose explicitly"""
        fields = []

        async with self._lock(user_id):
            preference = await self._load(user_id)

            if negative_preferences is not None:
                preference.negative_preferences = negative_preferences
                fields.append("negative_preferences")
            if personalization_strength is not None:
                preference.personalization_strength = clamp(float(personalization_strength), 0.0, 1.0)
                fields.append("personalization_strength")

            explicit_weights: Dict[str, Any] = {
                "category_weights": category_weights,
                "author_weights": author_weights,
                "tag_weights": tag_weights,
            }
            for field_name, weights in explicit_weights.items():
                if weights is None:
                    continue
                getattr(preference, field_name).update(
                    {key: clamp(float(value), -1.0, 1.0) for key, value in weights.items()}
                )
                fields.append(field_name)

            await self._save(preference, fields)

        self.logger.info(f"Updated explicit preferences for user {user_id}: {fields}")
        return preference

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "updates_applied": self.updates_applied,
            "users_updating": len(self._locks)
        }
