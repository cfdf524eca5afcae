"""Candidate generation algorithms"""

from .algorithms import (
    CollaborativeFilteringGenerator, ContentBasedGenerator, PopularityGenerator,
    TrendingGenerator, WeightedHybridGenerator, EmbeddingGenerator
)

__all__ = [
    "CollaborativeFilteringGenerator",
    "ContentBasedGenerator",
    "PopularityGenerator",
    "TrendingGenerator",
    "WeightedHybridGenerator",
    "EmbeddingGenerator"
]
