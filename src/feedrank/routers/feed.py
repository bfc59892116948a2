"""Feed router – ranked feeds, feedback and experiments.

GET  /feed/{user_id}
    Ranked feed in the display shape.

POST /feed/{user_id}/ranked
    Ranked feed with full scoring detail, under an optional configuration
    override.

POST /feed/{user_id}/feedback
    Record feedback against a served item.

POST /experiments/{experiment_name}/run
    Serve the feed under the user's assigned experiment variant.
"""

import logging
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from ..lib.errors import ConfigurationError
from ..lib.ranking.models import ExperimentResult, FeedAlgorithm, RankedContent
from ..lib.ranking.ranker import HybridFeedRanker
from ..models import FeedbackType, FeedItem
from ..security import verify_api_key

router = APIRouter(tags=["feed"], dependencies=[Depends(verify_api_key)])

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------

class FeedResponse(BaseModel):
    items: list[FeedItem]


class RankedFeedRequest(BaseModel):
    config: dict[str, Any] | None = Field(
        None, description="Partial FeedConfiguration merged into the defaults"
    )
    device_type: Literal["mobile", "desktop", "tablet", "unknown"] = "unknown"


class RankedFeedResponse(BaseModel):
    items: list[RankedContent]


class FeedbackRequest(BaseModel):
    post_id: str = Field(..., min_length=1)
    interaction_type: FeedbackType
    time_spent_ms: int | None = Field(None, ge=0, description="Dwell time on the item")
    scroll_position: int | None = None
    feed_position: int | None = Field(None, ge=0)
    session_id: str | None = None


class FeedbackResponse(BaseModel):
    id: str
    status: str = "accepted"


class ExperimentRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    variants: dict[str, dict[str, Any]] = Field(
        ..., min_length=1, description="Variant name → partial FeedConfiguration"
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _ranker(request: Request) -> HybridFeedRanker:
    # Attached to app.state by the lifespan in main.py; tests set it directly.
    return request.app.state.ranker


def _unprocessable(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/feed/{user_id}", response_model=FeedResponse)
async def get_feed(
    request: Request,
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    algorithm: FeedAlgorithm = "hybrid",
    device_type: Literal["mobile", "desktop", "tablet", "unknown"] = "unknown",
) -> FeedResponse:
    ranker = _ranker(request)
    overrides: dict[str, Any] = {"algorithm": algorithm, "final_feed_size": limit}
    if limit > ranker.config.candidate_pool_size:
        overrides["candidate_pool_size"] = limit
    try:
        feed = await ranker.generate_feed(user_id, overrides, device_type=device_type)
    except ConfigurationError as exc:
        raise _unprocessable(exc) from exc
    return FeedResponse(items=[item.to_feed_item() for item in feed])


@router.post("/feed/{user_id}/ranked", response_model=RankedFeedResponse)
async def get_ranked_feed(
    request: Request,
    user_id: str,
    payload: RankedFeedRequest,
) -> RankedFeedResponse:
    try:
        feed = await _ranker(request).generate_feed(user_id, payload.config, device_type=payload.device_type)
    except ConfigurationError as exc:
        raise _unprocessable(exc) from exc
    return RankedFeedResponse(items=feed)


@router.post(
    "/feed/{user_id}/feedback",
    response_model=FeedbackResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def post_feedback(
    request: Request,
    user_id: str,
    payload: FeedbackRequest,
) -> FeedbackResponse:
    metadata = payload.model_dump(exclude={"post_id", "interaction_type"}, exclude_none=True)
    record = await _ranker(request).record_feedback(
        user_id, payload.post_id, payload.interaction_type, metadata
    )
    return FeedbackResponse(id=record.id)


@router.post("/experiments/{experiment_name}/run", response_model=ExperimentResult)
async def run_experiment(
    request: Request,
    experiment_name: str,
    payload: ExperimentRequest,
) -> ExperimentResult:
    try:
        return await _ranker(request).run_experiment(payload.user_id, experiment_name, payload.variants)
    except ConfigurationError as exc:
        raise _unprocessable(exc) from exc
