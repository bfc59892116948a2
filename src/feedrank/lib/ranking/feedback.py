"""Feed feedback: persistence, the per-user preference list and retraining signals.

The preference list ``user_prefs:{user}`` is a bounded, expiring list of
compact feedback events.  The ranker reads it back on the next feed request
and folds it into the social signal, decayed by age.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ValidationError

from ...models import FeedbackRecord, FeedbackType, utcnow
from ..errors import StoreError
from ..stores.base import BackgroundQueue, Cache, InteractionStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Tunables
# ---------------------------------------------------------------------------

PREFERENCE_LIST_LENGTH = 100
PREFERENCE_LIST_TTL = 86400          # 24 hours

RETRAINING_QUEUE = "model_training:queue"
MIN_TRAINING_SAMPLES = 100
RETRAINING_INTERVAL = 50

# Per-hour decay applied to preference-list entries.
FEEDBACK_DECAY = 0.95
# Decayed weight at which the feedback signal saturates.
FEEDBACK_SATURATION = 10.0

FEEDBACK_WEIGHTS = {
    FeedbackType.LIKE: 1.0,
    FeedbackType.SHARE: 1.0,
    FeedbackType.VIEW: 0.2,
    FeedbackType.SKIP: -0.5,
    FeedbackType.REPORT: -1.0,
}


def preference_key(user_id: str) -> str:
    return f"user_prefs:{user_id}"


class PreferenceEntry(BaseModel):
    post_id: str
    type: FeedbackType
    time_spent_ms: int = 0
    timestamp: datetime


def parse_preference_entries(raw: list[bytes]) -> list[PreferenceEntry]:
    entries = []
    for item in raw:
        try:
            entries.append(PreferenceEntry.model_validate_json(item))
        except ValidationError:
            logger.debug("Skipping undecodable preference entry")
    return entries


def feedback_signal(entries: list[PreferenceEntry], now: datetime) -> float:
    """Recency-decayed net positive feedback, in ``[0, 1]``."""
    total = 0.0
    for entry in entries:
        age_hours = max((now - entry.timestamp).total_seconds() / 3600.0, 0.0)
        total += FEEDBACK_WEIGHTS[entry.type] * FEEDBACK_DECAY ** age_hours
    return max(0.0, min(1.0, total / FEEDBACK_SATURATION))


def needs_retraining(sample_count: int) -> bool:
    return sample_count > MIN_TRAINING_SAMPLES and sample_count % RETRAINING_INTERVAL == 0


class FeedbackRecorder:
    """Best-effort feedback ingestion; nothing here raises on store failure."""

    def __init__(
        self,
        interactions: InteractionStore,
        cache: Cache,
        queue: BackgroundQueue,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._interactions = interactions
        self._cache = cache
        self._queue = queue
        self._clock = clock

    async def record(self, record: FeedbackRecord) -> None:
        try:
            await self._interactions.create_feedback(record)
        except Exception:
            logger.exception("Failed to persist feedback %s for user %s", record.id, record.user_id)

        entry = PreferenceEntry(
            post_id=record.post_id,
            type=record.interaction_type,
            time_spent_ms=record.time_spent_ms,
            timestamp=record.created_at,
        )
        try:
            await self._cache.push_bounded(
                preference_key(record.user_id),
                entry.model_dump_json().encode("utf-8"),
                PREFERENCE_LIST_LENGTH,
                PREFERENCE_LIST_TTL,
            )
        except StoreError:
            logger.warning("Failed to update preference list for user %s", record.user_id, exc_info=True)

    async def check_retraining(self, user_id: str) -> bool:
        """Queue a retraining signal when the user's sample count crosses a threshold."""
        try:
            count = await self._interactions.count_feedback(user_id)
        except Exception:
            logger.warning("Could not count feedback for user %s", user_id, exc_info=True)
            return False
        if not needs_retraining(count):
            return False
        payload: dict[str, Any] = {
            "user_id": user_id,
            "sample_count": count,
            "queued_at": self._clock().isoformat(),
        }
        await self._queue.enqueue(RETRAINING_QUEUE, payload)
        logger.info("Queued retraining signal for user %s at %d samples", user_id, count)
        return True

    async def load_signal(self, user_id: str) -> float:
        try:
            raw = await self._cache.list_range(preference_key(user_id), 0, PREFERENCE_LIST_LENGTH - 1)
        except StoreError:
            logger.warning("Preference list unavailable for user %s", user_id, exc_info=True)
            return 0.0
        return feedback_signal(parse_preference_entries(raw), self._clock())
