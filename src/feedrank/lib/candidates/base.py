"""Base abstraction for candidate generators.

Each generator has a unique name, an upper bound on how many candidates it
contributes, and an async ``generate`` method that returns a
``CandidateResult``.  Generators are plain objects handed to the ranker at
construction time; there is no process-wide registry.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from ..ranking.models import ContentCandidate, FeedConfiguration, UserContext
from ..stores.base import ContentStore


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class CandidateResult(BaseModel):
    """The output of a candidate generator invocation."""

    generator_name: str = Field(..., description="Name of the generator that produced these candidates")
    candidates: list[ContentCandidate] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Abstract base
# ---------------------------------------------------------------------------

class CandidateGenerator(ABC):
    """Abstract base class for named candidate generators.

    Subclasses must implement `name`, `max_candidates` (properties) and
    `generate`.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique name identifying this generator (e.g. ``following``)."""
        ...

    @property
    @abstractmethod
    def max_candidates(self) -> int:
        """Most candidates this generator contributes to one ranking pass."""
        ...

    @abstractmethod
    async def generate(
        self,
        store: ContentStore,
        context: UserContext,
        config: FeedConfiguration,
        limit: int,
    ) -> CandidateResult:
        """Produce candidate posts for the user described by *context*.

        Parameters
        ----------
        store:
            Content store to retrieve posts from.
        context:
            The requesting user's ranking context.
        config:
            Effective feed configuration (freshness window etc.).
        limit:
            Maximum number of candidates to return; never more than
            ``max_candidates``.

        Returns
        -------
        CandidateResult
        """
        ...

    def _result(self, candidates: list[ContentCandidate]) -> CandidateResult:
        return CandidateResult(generator_name=self.name, candidates=candidates)


def freshness_cutoff(config: FeedConfiguration, now: datetime) -> datetime:
    return now - timedelta(hours=config.freshness_window_hours)
