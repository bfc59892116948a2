"""Recommendations router – collaborative-filtering recommendations.

GET  /recommendations/{user_id}
    Ranked item recommendations.

GET  /recommendations/{user_id}/explain/{item_id}
    Human-readable reasons for one recommendation.

POST /interactions
    Record an interaction and invalidate dependent caches.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from ..lib.collaborative.engine import CollaborativeFilteringEngine
from ..lib.collaborative.models import RecommendationMethod, RecommendationResult
from ..lib.errors import ConfigurationError
from ..models import InteractionType
from ..security import verify_api_key

router = APIRouter(tags=["recommendations"], dependencies=[Depends(verify_api_key)])

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------

class RecommendationsResponse(BaseModel):
    user_id: str
    recommendations: list[RecommendationResult]


class ExplanationResponse(BaseModel):
    user_id: str
    item_id: str
    method: RecommendationMethod
    reasons: list[str]


class InteractionRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    item_id: str = Field(..., min_length=1)
    interaction_type: InteractionType
    weight: float = Field(1.0, ge=0.0, description="Multiplier applied to the implicit rating")
    metadata: dict[str, Any] = Field(default_factory=dict)


class InteractionResponse(BaseModel):
    id: str
    status: str = "accepted"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _engine(request: Request) -> CollaborativeFilteringEngine:
    return request.app.state.cf_engine


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/recommendations/{user_id}", response_model=RecommendationsResponse)
async def get_recommendations(
    request: Request,
    user_id: str,
    method: str | None = Query(None, description="user_based, item_based, blended (or ncf) or hybrid"),
    limit: int = Query(50, ge=1, le=1000),
    exclude: list[str] | None = Query(None, description="Item ids to leave out"),
) -> RecommendationsResponse:
    overrides: dict[str, Any] = {"max_recommendations": limit}
    if method is not None:
        overrides["method"] = method
    try:
        recommendations = await _engine(request).generate_recommendations(user_id, exclude or (), overrides)
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return RecommendationsResponse(user_id=user_id, recommendations=recommendations)


@router.get(
    "/recommendations/{user_id}/explain/{item_id}",
    response_model=ExplanationResponse,
)
async def explain_recommendation(
    request: Request,
    user_id: str,
    item_id: str,
    method: RecommendationMethod = RecommendationMethod.HYBRID,
) -> ExplanationResponse:
    reasons = await _engine(request).explain_recommendation(user_id, item_id, method)
    return ExplanationResponse(user_id=user_id, item_id=item_id, method=method, reasons=reasons)


@router.post("/interactions", response_model=InteractionResponse, status_code=status.HTTP_202_ACCEPTED)
async def post_interaction(request: Request, payload: InteractionRequest) -> InteractionResponse:
    record = await _engine(request).update_user_interaction(
        payload.user_id,
        payload.item_id,
        payload.interaction_type,
        payload.weight,
        payload.metadata,
    )
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Interaction could not be stored",
        )
    return InteractionResponse(id=record.id)
