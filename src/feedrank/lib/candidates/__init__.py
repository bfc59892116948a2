"""Candidate generation for the feed ranker.

Each generator retrieves a bounded pool of posts for one user from one
angle (following, interests, trending, discovery).  The ranker runs them
concurrently and merges their output.
"""

from collections.abc import Callable
from datetime import datetime

from ...models import utcnow
from .base import CandidateGenerator, CandidateResult
from .discovery import DiscoveryCandidateGenerator
from .following import FollowingCandidateGenerator
from .interests import InterestCandidateGenerator
from .trending import TrendingCandidateGenerator


def default_generators(clock: Callable[[], datetime] = utcnow) -> list[CandidateGenerator]:
    """The standard generators, in merge-priority order."""
    return [
        FollowingCandidateGenerator(clock),
        InterestCandidateGenerator(clock),
        TrendingCandidateGenerator(clock),
        DiscoveryCandidateGenerator(clock),
    ]


__all__ = [
    "CandidateGenerator",
    "CandidateResult",
    "DiscoveryCandidateGenerator",
    "FollowingCandidateGenerator",
    "InterestCandidateGenerator",
    "TrendingCandidateGenerator",
    "default_generators",
]
