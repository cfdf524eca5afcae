"""
FastAPI Serving Layer for Shelfcast Recommendations

Thin HTTP adapter over ``RecommendationService``. Request bodies are
validated with pydantic; domain errors map to 400/404/409/500.
"""

import logging
import time
from typing import List, Dict, Any, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from .. import __version__
from ..config import Settings, load_settings
from ..core.errors import (
    InvalidEventError, InvalidStateError, ItemNotFoundError, PersistenceError,
    RecommendationNotFoundError, ShelfcastError
)
from ..logging_config import setup_logging
from ..storage.catalog import InMemoryCatalog
from ..storage.store import InMemoryStore
from .service import RecommendationOptions, RecommendationService


logger = logging.getLogger(__name__)


# Pydantic models for API
class BehaviorModel(BaseModel):
    """Model for a tracked behavior"""
    user_id: str = Field(..., description="User identifier")
    behavior_type: str = Field(..., description="Type of behavior")
    item_id: Optional[str] = Field(None, description="Item identifier")
    intensity: float = Field(1.0, description="Behavior intensity")
    duration_seconds: Optional[int] = Field(None, ge=0)
    context: Dict[str, Any] = Field(default_factory=dict, description="Behavior context")
    session_id: Optional[str] = None
    recommendation_id: Optional[str] = None


class BehaviorBatchModel(BaseModel):
    events: List[BehaviorModel] = Field(..., min_length=1, max_length=1000)


class SearchModel(BaseModel):
    user_id: str
    query: str
    results: List[str] = Field(default_factory=list)
    search_type: str = "keyword"
    context: Dict[str, Any] = Field(default_factory=dict)


class ReadingSessionModel(BaseModel):
    user_id: str
    item_id: str
    start_time: float
    end_time: Optional[float] = None
    pages_read: int = Field(0, ge=0)
    progress_percentage: float = Field(0.0, ge=0, le=100)
    interruptions: int = Field(0, ge=0)
    reading_speed: Optional[float] = None
    device: Optional[str] = None


class RecommendationActionModel(BaseModel):
    """Click, dismiss or borrow on a recommendation"""
    user_id: str
    context: Dict[str, Any] = Field(default_factory=dict)


class FeedbackModel(BaseModel):
    """Feedback on a recommendation"""
    user_id: str
    rating: Optional[float] = Field(None, ge=1, le=5, description="Rating (1-5)")
    relevance: Optional[float] = Field(None, ge=-1, le=1)
    satisfaction: Optional[float] = Field(None, ge=-1, le=1)
    interest: Optional[float] = Field(None, ge=-1, le=1)
    quality: Optional[float] = Field(None, ge=-1, le=1)
    comment: Optional[str] = Field(None, max_length=2000)
    feedback_type: str = "explicit"
    context: Dict[str, Any] = Field(default_factory=dict)


class NegativePreferencesModel(BaseModel):
    disliked_categories: List[str] = Field(default_factory=list)
    disliked_authors: List[str] = Field(default_factory=list)
    blacklisted_keywords: List[str] = Field(default_factory=list)


class PreferencesUpdateModel(BaseModel):
    negative_preferences: Optional[NegativePreferencesModel] = None
    personalization_strength: Optional[float] = Field(None, ge=0, le=1)
    category_weights: Optional[Dict[str, float]] = None
    author_weights: Optional[Dict[str, float]] = None
    tag_weights: Optional[Dict[str, float]] = None


def _error(status_code: int, exc: Exception, request: Request) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": str(exc),
            "type": type(exc).__name__,
            "timestamp": time.time(),
            "path": str(request.url)
        }
    )


def _default_service(settings: Settings) -> RecommendationService:
    return RecommendationService.from_settings(settings, InMemoryStore(), InMemoryCatalog())


def create_app(service: Optional[RecommendationService] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application around a service

    Args:
        service: Service to expose; an in-memory one is built when omitted
        settings: Settings used for the default service and logging

    Returns:
        FastAPI application
    """
    if service is None:
        settings = settings or load_settings()
        setup_logging(settings.log_level)
        service = _default_service(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifespan"""
        logger.info("Starting Shelfcast recommendation API...")
        await service.start()
        yield
        logger.info("Shutting down API...")
        await service.stop()
        logger.info("API shutdown complete")

    app = FastAPI(
        title="Shelfcast Recommendations",
        description="Book recommendations with real-time preference learning",
        version=__version__,
        lifespan=lifespan
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    @app.exception_handler(InvalidEventError)
    async def invalid_event_handler(request, exc):
        return _error(400, exc, request)

    @app.exception_handler(RecommendationNotFoundError)
    async def recommendation_not_found_handler(request, exc):
        return _error(404, exc, request)

    @app.exception_handler(ItemNotFoundError)
    async def item_not_found_handler(request, exc):
        return _error(404, exc, request)

    @app.exception_handler(InvalidStateError)
    async def invalid_state_handler(request, exc):
        return _error(409, exc, request)

    @app.exception_handler(PersistenceError)
    async def persistence_handler(request, exc):
        logger.error(f"Persistence failure on {request.url}: {exc}")
        return _error(500, exc, request)

    @app.exception_handler(ShelfcastError)
    async def domain_error_handler(request, exc):
        return _error(400, exc, request)

    @app.exception_handler(ValueError)
    async def value_error_handler(request, exc):
        return _error(400, exc, request)

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "service": "Shelfcast Recommendations",
            "version": __version__,
            "status": "running",
            "docs": "/docs"
        }

    @app.get("/users/{user_id}/recommendations")
    async def get_user_recommendations(
        user_id: str,
        scenario: str = Query("homepage"),
        algorithm: str = Query("auto"),
        limit: int = Query(10, ge=1, le=100),
        use_cache: bool = Query(True),
        force_refresh: bool = Query(False),
        include_explanations: bool = Query(True),
        diversity_factor: float = Query(0.3, ge=0, le=1),
        exclude: Optional[str] = Query(None, description="Comma-separated item ids"),
        category: Optional[str] = Query(None),
        author: Optional[str] = Query(None)
    ):
        """Get personalized recommendations for a user"""
        context = {key: value for key, value in {"category": category, "author": author}.items() if value}
        options = RecommendationOptions(
            scenario=scenario,
            algorithm=algorithm,
            limit=limit,
            use_cache=use_cache,
            force_refresh=force_refresh,
            include_explanations=include_explanations,
            diversity_factor=diversity_factor,
            exclude_items=[i.strip() for i in exclude.split(",") if i.strip()] if exclude else [],
            context=context
        )
        result = await service.get_user_recommendations(user_id, options)
        return result.to_dict()

    @app.get("/users/{user_id}/preferences")
    async def get_user_preferences(user_id: str):
        return (await service.get_user_preferences(user_id)).to_dict()

    @app.put("/users/{user_id}/preferences")
    async def update_user_preferences(user_id: str, body: PreferencesUpdateModel):
        preference = await service.update_user_preferences(user_id, body.model_dump(exclude_none=True))
        return preference.to_dict()

    @app.get("/users/{user_id}/behavior-analysis")
    async def get_user_behavior_analysis(user_id: str, time_range_days: int = Query(30, ge=1, le=365)):
        return await service.get_user_behavior_analysis(user_id, time_range_days)

    @app.get("/items/{item_id}/similar")
    async def get_similar_items(
        item_id: str,
        user_id: Optional[str] = Query(None),
        limit: int = Query(10, ge=1, le=100)
    ):
        candidates = await service.get_similar_items(item_id, user_id=user_id, limit=limit)
        return {"item_id": item_id, "items": [c.to_dict() for c in candidates]}

    @app.get("/recommendations/trending")
    async def get_trending(
        user_id: Optional[str] = Query(None),
        time_range_days: int = Query(7, ge=1, le=90),
        category: Optional[str] = Query(None),
        limit: int = Query(20, ge=1, le=100),
        include_global: bool = Query(True)
    ):
        candidates = await service.get_trending_recommendations(
            user_id=user_id,
            time_range_days=time_range_days,
            category=category,
            limit=limit,
            include_global=include_global
        )
        return {"items": [c.to_dict() for c in candidates]}

    @app.get("/recommendations/new")
    async def get_new_items(
        user_id: Optional[str] = Query(None),
        days_range: int = Query(30, ge=1, le=365),
        limit: int = Query(20, ge=1, le=100),
        min_rating: float = Query(3.5, ge=0, le=5)
    ):
        candidates = await service.get_new_items_recommendations(
            user_id=user_id, days_range=days_range, limit=limit, min_rating=min_rating
        )
        return {"items": [c.to_dict() for c in candidates]}

    @app.get("/recommendations/{recommendation_id}/explanation")
    async def get_explanation(recommendation_id: str):
        return await service.get_recommendation_explanation(recommendation_id)

    @app.post("/recommendations/{recommendation_id}/click")
    async def track_click(recommendation_id: str, body: RecommendationActionModel):
        rec = await service.track_click(body.user_id, recommendation_id, body.context)
        return rec.to_dict()

    @app.post("/recommendations/{recommendation_id}/dismiss")
    async def track_dismiss(recommendation_id: str, body: RecommendationActionModel):
        rec = await service.track_dismiss(body.user_id, recommendation_id, body.context)
        return rec.to_dict()

    @app.post("/recommendations/{recommendation_id}/borrow")
    async def track_borrow(recommendation_id: str, body: RecommendationActionModel):
        rec = await service.track_borrow(body.user_id, recommendation_id, body.context)
        return rec.to_dict()

    @app.post("/recommendations/{recommendation_id}/feedback")
    async def record_feedback(recommendation_id: str, body: FeedbackModel):
        data = body.model_dump(exclude={"user_id"})
        feedback = await service.record_feedback(body.user_id, recommendation_id, data)
        return feedback.to_dict()

    @app.post("/behaviors")
    async def track_behavior(body: BehaviorModel):
        """
        Record a user behavior

        High-priority behaviors are persisted immediately; the rest are
        batched.
        """
        result = await service.tracker.track(body.model_dump())
        return result.to_dict()

    @app.post("/behaviors/batch")
    async def track_behavior_batch(body: BehaviorBatchModel):
        result = await service.tracker.track_batch([event.model_dump() for event in body.events])
        return result.to_dict()

    @app.post("/behaviors/search")
    async def track_search(body: SearchModel):
        result = await service.tracker.track_search(
            body.user_id, body.query, body.results, body.context, body.search_type
        )
        return result.to_dict()

    @app.post("/behaviors/reading-session")
    async def track_reading_session(body: ReadingSessionModel):
        session = body.model_dump(exclude={"user_id", "item_id"})
        result = await service.tracker.track_reading_session(body.user_id, body.item_id, session)
        return result.to_dict()

    @app.get("/statistics")
    async def get_statistics(time_range_days: int = Query(30, ge=1, le=365)):
        """
        Recommendation statistics

        Includes status overview, per-algorithm click-through, feedback
        quality, diversity, coverage and component statistics.
        """
        return await service.get_statistics(time_range_days)

    @app.get("/health")
    async def health_check():
        """Health of the engine, tracker and cache"""
        return await service.health_check()

    return app


def main():
    """Main entry point for running the API server"""
    import argparse

    parser = argparse.ArgumentParser(description="Shelfcast recommendation API")
    parser.add_argument("--host", default=None, help="Host to bind to")
    parser.add_argument("--port", type=int, default=None, help="Port to bind to")
    parser.add_argument("--config", default=None, help="Path to a YAML settings file")

    args = parser.parse_args()
    settings = load_settings(args.config)

    uvicorn.run(
        create_app(settings=settings),
        host=args.host or settings.host,
        port=args.port or settings.port,
        log_level=settings.log_level.lower(),
        access_log=True
    )


if __name__ == "__main__":
    main()
