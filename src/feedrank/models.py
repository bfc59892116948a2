"""Store-level data shapes shared by the engines and the API layer."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


AuthorType = Literal["user", "persona"]


class InteractionType(str, Enum):
    """Raw interaction kinds, ordered weakest to strongest signal."""

    VIEW = "VIEW"
    CLICK = "CLICK"
    LIKE = "LIKE"
    REPOST = "REPOST"
    REPLY = "REPLY"


class FeedbackType(str, Enum):
    VIEW = "view"
    LIKE = "like"
    SKIP = "skip"
    REPORT = "report"
    SHARE = "share"


class EngagementCounts(BaseModel):
    likes: int = Field(0, ge=0)
    reposts: int = Field(0, ge=0)
    replies: int = Field(0, ge=0)
    views: int = Field(0, ge=0)

    @property
    def total(self) -> int:
        return self.likes + self.reposts + self.replies + self.views


class Post(BaseModel):
    """A post as held by the content store."""

    id: str
    author_id: str
    author_type: AuthorType = "user"
    content: str = ""
    content_embedding: list[float] | None = Field(
        None, description="Dense semantic embedding of the post text"
    )
    created_at: datetime
    engagement: EngagementCounts = Field(default_factory=EngagementCounts)
    tags: list[str] = Field(default_factory=list)
    thread_id: str | None = None
    parent_id: str | None = None
    visibility: str = "PUBLIC"


class Interaction(BaseModel):
    """A raw user → content interaction event."""

    id: str
    user_id: str
    target_id: str
    target_type: str = "POST"
    interaction_type: InteractionType
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class FeedbackRecord(BaseModel):
    """User feedback captured against a served feed item."""

    id: str
    user_id: str
    post_id: str
    interaction_type: FeedbackType
    time_spent_ms: int = Field(0, ge=0)
    scroll_position: int | None = None
    feed_position: int = 0
    session_id: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class TrendingTopic(BaseModel):
    topic: str
    velocity: float = Field(0.0, ge=0)
    post_count: int = 0


class FeedItemMetrics(BaseModel):
    likes: int
    reposts: int
    replies: int
    views: int


class FeedItemMetadata(BaseModel):
    author_id: str
    author_type: str = Field(..., description="Upper-cased author kind (USER or PERSONA)")
    content: str
    parent_id: str | None = None
    thread_id: str | None = None
    visibility: str = "PUBLIC"
    updated_at: datetime


class FeedItem(BaseModel):
    """The shape the presentation layer renders for one feed entry."""

    content_id: str
    timestamp: datetime
    metrics: FeedItemMetrics
    metadata: FeedItemMetadata
    explanation: list[str] = Field(default_factory=list)
    experiment_group: str | None = None
