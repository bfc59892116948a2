"""Shared vector utilities (cosine similarity, averaging).

Dense vectors are plain ``list[float]``; sparse vectors are ``dict`` keyed by
entity id.  These helpers are used by the collaborative-filtering engine,
the ranking signals and the candidate generators.
"""

import math
from collections.abc import Iterable, Mapping, Sequence


def cosine_similarity(a: Sequence[float] | None, b: Sequence[float] | None) -> float:
    """Cosine similarity of two dense vectors in ``[-1, 1]``.

    Returns ``0.0`` when either vector is missing, empty, all-zero, or the
    dimensions differ.
    """
    if not a or not b or len(a) != len(b):
        return 0.0

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    if norm_a == 0 or norm_b == 0:
        return 0.0
    sim = dot / (math.sqrt(norm_a) * math.sqrt(norm_b))
    # Guard against float drift just outside the valid range.
    return max(-1.0, min(1.0, sim))


def sparse_cosine_similarity(
    a: Mapping[str, float],
    b: Mapping[str, float],
    keys: Iterable[str],
) -> float:
    """Cosine similarity of two sparse vectors restricted to *keys*.

    Missing entries count as ``0``.  Restricting both vectors to the shared
    support is what collaborative filtering wants: items only one side rated
    say nothing about agreement.
    """
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for key in keys:
        x = a.get(key, 0.0)
        y = b.get(key, 0.0)
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    if norm_a == 0 or norm_b == 0:
        return 0.0
    return max(-1.0, min(1.0, dot / (math.sqrt(norm_a) * math.sqrt(norm_b))))


def average_vectors(vectors: list[list[float]]) -> list[float]:
    """Compute the element-wise mean of a list of equal-length vectors."""
    if not vectors:
        raise ValueError("No vectors to average")

    dim = len(vectors[0])
    avg = [0.0] * dim
    for v in vectors:
        if len(v) != dim:
            raise ValueError("Vector dimension mismatch")
        for i, val in enumerate(v):
            avg[i] += val
    n = len(vectors)
    return [x / n for x in avg]


def weighted_average_vectors(vectors: list[list[float]], weights: list[float]) -> list[float]:
    """Element-wise mean of *vectors* weighted by *weights*.

    Falls back to the unweighted mean when the weights sum to zero.
    """
    if len(vectors) != len(weights):
        raise ValueError("vectors and weights must have the same length")
    total = sum(weights)
    if total <= 0:
        return average_vectors(vectors)

    dim = len(vectors[0])
    acc = [0.0] * dim
    for v, w in zip(vectors, weights):
        if len(v) != dim:
            raise ValueError("Vector dimension mismatch")
        for i, val in enumerate(v):
            acc[i] += val * w
    return [x / total for x in acc]


def clamp01(value: float) -> float:
    """Clamp *value* into ``[0, 1]``; NaN maps to ``0``."""
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(1.0, value))
