"""Implicit ratings derived from interaction events."""

from ...models import Interaction, InteractionType

# Base rating per interaction kind; strictly increasing with signal strength.
BASE_RATINGS: dict[InteractionType, float] = {
    InteractionType.VIEW: 0.1,
    InteractionType.CLICK: 0.3,
    InteractionType.LIKE: 0.7,
    InteractionType.REPOST: 0.8,
    InteractionType.REPLY: 0.9,
}

# Dwell time adds up to this much, at one full point per minute.
MAX_DWELL_BONUS = 0.3
DWELL_MS_PER_POINT = 60_000


def parse_interaction_type(value: InteractionType | str) -> InteractionType:
    """Accept enum members or case-insensitive names (``"like"``, ``"LIKE"``)."""
    if isinstance(value, InteractionType):
        return value
    try:
        return InteractionType(str(value).upper())
    except ValueError:
        raise ValueError(f"Unsupported interaction type: {value!r}") from None


def interaction_to_rating(
    interaction_type: InteractionType | str,
    weight: float = 1.0,
    time_spent_ms: float | None = None,
) -> float:
    """Map an interaction to an implicit rating in ``[0, 1]``."""
    rating = BASE_RATINGS[parse_interaction_type(interaction_type)]
    if time_spent_ms:
        rating += min(max(time_spent_ms, 0) / DWELL_MS_PER_POINT, MAX_DWELL_BONUS)
    return max(0.0, min(rating * max(weight, 0.0), 1.0))


def rating_for(interaction: Interaction) -> float:
    """Rating of a stored interaction, honouring the weight/dwell it was recorded with."""
    meta = interaction.metadata or {}
    weight = meta.get("weight", 1.0)
    dwell = meta.get("time_spent_ms")
    try:
        weight = float(weight)
    except (TypeError, ValueError):
        weight = 1.0
    try:
        dwell = float(dwell) if dwell is not None else None
    except (TypeError, ValueError):
        dwell = None
    return interaction_to_rating(interaction.interaction_type, weight, dwell)


def ratings_by(interactions: list[Interaction], key: str) -> dict[str, float]:
    """Collapse interactions into ``{key value: strongest rating}``.

    *key* is ``"target_id"`` for a user's item ratings or ``"user_id"`` for
    an item's rater map.
    """
    ratings: dict[str, float] = {}
    for interaction in interactions:
        k = getattr(interaction, key)
        rating = rating_for(interaction)
        if rating > ratings.get(k, -1.0):
            ratings[k] = rating
    return ratings
