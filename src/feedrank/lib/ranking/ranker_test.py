"""Tests for the hybrid feed ranker."""

import asyncio
from collections import Counter
from datetime import timedelta

import pytest

from ...conftest import NOW, FakeTrendingSource, fixed_clock, make_post
from ...models import FeedbackType, TrendingTopic
from ..candidates import CandidateGenerator, FollowingCandidateGenerator
from ..errors import ConfigurationError, StoreError
from .experiments import assign_variant
from .feedback import RETRAINING_QUEUE, preference_key
from .models import ContentCandidate, FeedConfiguration, RankedContent
from .ranker import (
    FALLBACK_EXPLANATION,
    FEED_LOG_QUEUE,
    HybridFeedRanker,
    apply_author_diversity,
)


class StaticGenerator(CandidateGenerator):
    def __init__(self, name, posts=(), delay=0.0, error=None):
        self._name = name
        self._posts = list(posts)
        self._delay = delay
        self._error = error

    @property
    def name(self):
        return self._name

    @property
    def max_candidates(self):
        return 100

    async def generate(self, store, context, config, limit):
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error is not None:
            raise self._error
        return self._result([ContentCandidate.from_post(p, source=self.name) for p in self._posts])


class BrokenTrending(FakeTrendingSource):
    async def get_trending_topics(self, limit=10, window="6h"):
        raise StoreError("trending index unavailable")


@pytest.fixture
def make_ranker(content_store, interaction_store, user_store, cache, trending_source, queue):
    def build(**kwargs):
        kwargs.setdefault("clock", fixed_clock)
        return HybridFeedRanker(
            content_store, interaction_store, user_store, cache, trending_source, queue, **kwargs
        )

    return build


@pytest.fixture
def ranker(make_ranker):
    return make_ranker()


@pytest.fixture
def followed_posts(content_store, user_store):
    user_store.following["u"] = ["alice", "bob"]
    content_store.add(
        make_post("viral", "alice", likes=30, views=20, age=timedelta(minutes=30)),
        make_post("quiet", "bob", views=50, age=timedelta(hours=20)),
        make_post("middling", "bob", likes=2, views=10, age=timedelta(hours=2)),
        make_post("stranger", "carol", age=timedelta(hours=3)),
    )


# ---------------------------------------------------------------------------
# Feed generation
# ---------------------------------------------------------------------------

class TestGenerateFeed:
    @pytest.mark.asyncio
    async def test_ranks_merged_candidates(self, ranker, followed_posts):
        feed = await ranker.generate_feed("u")

        # stranger is fresher than quiet and outweighs bob's follow boost
        assert [item.candidate.id for item in feed] == ["viral", "middling", "stranger", "quiet"]
        assert [item.rank for item in feed] == list(range(1, len(feed) + 1))
        scores = [item.final_score for item in feed]
        assert scores == sorted(scores, reverse=True)
        assert feed[0].candidate.source == "following"
        assert "Recent content" in feed[0].explanation
        assert "High engagement expected" in feed[0].explanation

    @pytest.mark.asyncio
    async def test_deterministic(self, ranker, followed_posts, cache):
        first = await ranker.generate_feed("u")
        cache.values.clear()
        second = await ranker.generate_feed("u")
        assert [(i.candidate.id, i.final_score) for i in first] == [(i.candidate.id, i.final_score) for i in second]

    @pytest.mark.asyncio
    async def test_truncated_to_feed_size(self, ranker, followed_posts):
        feed = await ranker.generate_feed("u", {"final_feed_size": 2})
        assert [item.candidate.id for item in feed] == ["viral", "middling"]

    @pytest.mark.asyncio
    async def test_duplicates_keep_first_generator(self, make_ranker, content_store):
        post = make_post("shared", "alice")
        content_store.add(post)
        ranker = make_ranker(generators=[StaticGenerator("first", [post]), StaticGenerator("second", [post])])

        feed = await ranker.generate_feed("u")

        assert [(i.candidate.id, i.candidate.source) for i in feed] == [("shared", "first")]

    @pytest.mark.asyncio
    async def test_min_engagement_threshold(self, ranker, followed_posts):
        feed = await ranker.generate_feed("u", {"min_engagement_threshold": 40})
        assert [item.candidate.id for item in feed] == ["viral", "quiet"]

    @pytest.mark.asyncio
    async def test_invalid_configuration_raises(self, ranker):
        with pytest.raises(ConfigurationError):
            await ranker.generate_feed("u", {"final_feed_size": 0})

    @pytest.mark.asyncio
    async def test_empty_user_raises(self, ranker):
        with pytest.raises(ValueError):
            await ranker.generate_feed("")


class TestAuthorDiversity:
    @pytest.mark.asyncio
    async def test_cap_applies_beyond_exempt_head(self, ranker, content_store, user_store):
        authors = ["a", "b", "c", "d", "e"]
        user_store.following["u"] = authors
        content_store.add(
            *(make_post(f"a{i}", "a", likes=20, views=10, age=timedelta(minutes=10 + i)) for i in range(20))
        )
        for author in authors[1:]:
            content_store.add(*(make_post(f"{author}{i}", author, age=timedelta(hours=5 + i)) for i in range(4)))

        feed = await ranker.generate_feed("u", {"final_feed_size": 20})

        assert len(feed) == 20
        assert all(item.candidate.author_id == "a" for item in feed[:10])
        seen: Counter[str] = Counter()
        for position, item in enumerate(feed, start=1):
            seen[item.candidate.author_id] += 1
            if position > 10:
                assert seen[item.candidate.author_id] <= 3

    def test_exempt_head_is_untouched(self):
        items = [
            RankedContent(candidate=ContentCandidate.from_post(make_post(f"p{i}", "same")), final_score=1.0)
            for i in range(15)
        ]
        kept = apply_author_diversity(items, FeedConfiguration())
        assert [item.candidate.id for item in kept] == [f"p{i}" for i in range(10)]


class TestFallback:
    @pytest.mark.asyncio
    async def test_empty_pool_serves_chronological_fallback(self, ranker, content_store, cache):
        content_store.add(*(make_post(f"p{i:02d}", f"author-{i}", age=timedelta(minutes=i)) for i in range(25)))
        # Every generator query is time-bounded; the fallback query is not.
        content_store.fail_when = lambda post_filter: post_filter.since is not None

        feed = await ranker.generate_feed("u")

        assert [item.candidate.id for item in feed] == [f"p{i:02d}" for i in range(20)]
        assert feed[0].final_score == pytest.approx(1.0)
        assert feed[19].final_score == pytest.approx(0.05)
        assert all(item.signals is None for item in feed)
        assert all(item.explanation == [FALLBACK_EXPLANATION] for item in feed)
        assert not any(key.startswith("feed:") for key in cache.values)

    @pytest.mark.asyncio
    async def test_unexpected_failure_serves_fallback(self, ranker, followed_posts, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("scoring bug")

        monkeypatch.setattr(ranker, "_rank", explode)
        feed = await ranker.generate_feed("u")
        assert feed and all(item.explanation == [FALLBACK_EXPLANATION] for item in feed)

    @pytest.mark.asyncio
    async def test_total_outage_returns_empty(self, ranker, content_store):
        content_store.fail = True
        assert await ranker.generate_feed("u") == []


class TestGenerators:
    @pytest.mark.asyncio
    async def test_slow_generator_is_dropped(self, make_ranker, followed_posts):
        ranker = make_ranker(
            generators=[
                StaticGenerator("slow", [make_post("late", "zed")], delay=1.0),
                FollowingCandidateGenerator(fixed_clock),
            ],
            candidate_timeout=0.05,
        )
        feed = await ranker.generate_feed("u")
        ids = {item.candidate.id for item in feed}
        assert "late" not in ids
        assert "viral" in ids

    @pytest.mark.asyncio
    async def test_slow_affinity_does_not_stall_feed(self, make_ranker, followed_posts):
        async def slow_affinity(user_id):
            await asyncio.sleep(2.0)
            return {"alice": 1.0}

        ranker = make_ranker(affinity=slow_affinity, candidate_timeout=0.05)
        loop = asyncio.get_running_loop()
        started = loop.time()
        feed = await ranker.generate_feed("u")

        assert loop.time() - started < 1.0
        assert [item.candidate.id for item in feed] == ["viral", "middling", "stranger", "quiet"]

    @pytest.mark.asyncio
    async def test_failing_generator_is_dropped(self, make_ranker, followed_posts):
        ranker = make_ranker(
            generators=[StaticGenerator("broken", error=RuntimeError("boom")), FollowingCandidateGenerator(fixed_clock)]
        )
        feed = await ranker.generate_feed("u")
        assert {item.candidate.source for item in feed} == {"following"}

    @pytest.mark.asyncio
    async def test_following_only_algorithm(self, ranker, followed_posts):
        feed = await ranker.generate_feed("u", {"algorithm": "following_only"})
        assert {item.candidate.id for item in feed} == {"viral", "middling", "quiet"}

    @pytest.mark.asyncio
    async def test_trending_algorithm(self, ranker, content_store, trending_source):
        trending_source.topics = [TrendingTopic(topic="eclipse", velocity=9)]
        content_store.add(make_post("sky", "zed", content="Eclipse tonight"), make_post("other", "zed"))
        feed = await ranker.generate_feed("u", {"algorithm": "trending"})
        assert [item.candidate.id for item in feed] == ["sky"]
        assert "Trending topic" in feed[0].explanation

    @pytest.mark.asyncio
    async def test_chronological_algorithm(self, ranker, followed_posts):
        feed = await ranker.generate_feed("u", {"algorithm": "chronological"})
        assert [item.candidate.id for item in feed] == ["viral", "middling", "stranger", "quiet"]
        assert [item.final_score for item in feed] == pytest.approx([1.0, 0.75, 0.5, 0.25])
        assert all(item.candidate.source == "chronological" for item in feed)


class TestCaching:
    @pytest.mark.asyncio
    async def test_feed_is_cached_for_five_minutes(self, ranker, followed_posts, content_store, cache):
        first = await ranker.generate_feed("u")
        content_store.fail = True
        second = await ranker.generate_feed("u")

        assert [i.candidate.id for i in second] == [i.candidate.id for i in first]
        [key] = [k for k in cache.values if k.startswith("feed:u:")]
        assert cache.ttls[key] == 300

    @pytest.mark.asyncio
    async def test_configurations_are_cached_separately(self, ranker, followed_posts, cache):
        await ranker.generate_feed("u")
        await ranker.generate_feed("u", {"final_feed_size": 2})
        assert len([k for k in cache.values if k.startswith("feed:u:")]) == 2

    @pytest.mark.asyncio
    async def test_generation_is_logged(self, ranker, followed_posts, queue):
        feed = await ranker.generate_feed("u")
        await ranker.background.drain()

        [log] = queue.on(FEED_LOG_QUEUE)
        assert log["user_id"] == "u"
        assert log["feed_size"] == len(feed)
        assert log["algorithm"] == "hybrid"
        assert log["timestamp"] == NOW.isoformat()
        assert log["top_scores"] == [item.final_score for item in feed[:5]]


# ---------------------------------------------------------------------------
# Feedback, experiments, trending
# ---------------------------------------------------------------------------

class TestRecordFeedback:
    @pytest.mark.asyncio
    async def test_records_and_invalidates_feed(self, ranker, followed_posts, interaction_store, cache):
        await ranker.generate_feed("u")
        cache.values["feed:u2:abc"] = b"[]"

        record = await ranker.record_feedback(
            "u", "viral", "LIKE", {"time_spent_ms": 1500, "feed_position": 2, "session_id": "s1"}
        )

        assert record.id.startswith("feedback_")
        assert record.interaction_type is FeedbackType.LIKE
        assert (record.time_spent_ms, record.feed_position, record.session_id) == (1500, 2, "s1")
        assert interaction_store.feedback == [record]
        assert len(cache.lists[preference_key("u")]) == 1
        assert [k for k in cache.values if k.startswith("feed:")] == ["feed:u2:abc"]

    @pytest.mark.asyncio
    async def test_retraining_signal_at_threshold(self, ranker, interaction_store, queue):
        interaction_store.feedback_count = 150
        await ranker.record_feedback("u", "p1", FeedbackType.VIEW)
        await ranker.background.drain()
        assert [m["sample_count"] for m in queue.on(RETRAINING_QUEUE)] == [150]

    @pytest.mark.asyncio
    async def test_store_failure_is_not_raised(self, ranker, interaction_store):
        interaction_store.fail = True
        record = await ranker.record_feedback("u", "p1", "skip")
        await ranker.background.drain()
        assert record.interaction_type is FeedbackType.SKIP

    @pytest.mark.asyncio
    async def test_malformed_metadata_is_dropped(self, ranker, interaction_store):
        meta = {"time_spent_ms": "lots", "scroll_position": {"y": 3}, "feed_position": "4", "session_id": 7}
        record = await ranker.record_feedback("u", "p1", "like", meta)

        assert (record.time_spent_ms, record.scroll_position) == (0, None)
        assert (record.feed_position, record.session_id) == (4, "7")
        assert record.metadata == meta
        assert interaction_store.feedback == [record]

    @pytest.mark.asyncio
    async def test_negative_time_spent_is_dropped(self, ranker):
        record = await ranker.record_feedback("u", "p1", "view", {"time_spent_ms": -20})
        assert record.time_spent_ms == 0

    @pytest.mark.asyncio
    async def test_unknown_type_raises(self, ranker):
        with pytest.raises(ValueError):
            await ranker.record_feedback("u", "p1", "bookmark")


class TestRunExperiment:
    VARIANTS = {
        "control": {},
        "fresh": {"weights": {"freshness": 0.8}},
    }

    @pytest.mark.asyncio
    async def test_tags_feed_and_records_assignment(self, ranker, followed_posts, cache):
        result = await ranker.run_experiment("u", "freshness-test", self.VARIANTS)

        expected = assign_variant("u", "freshness-test", list(self.VARIANTS))
        assert result.variant == expected
        assert result.feed
        assert all(item.experiment_group == f"freshness-test:{expected}" for item in result.feed)
        assert cache.hashes["experiments:freshness-test"] == {"u": expected}
        assert cache.ttls["experiments:freshness-test"] == 7 * 24 * 3600

    @pytest.mark.asyncio
    async def test_assignment_is_stable(self, ranker, followed_posts):
        first = await ranker.run_experiment("u", "freshness-test", self.VARIANTS)
        second = await ranker.run_experiment("u", "freshness-test", self.VARIANTS)
        assert first.variant == second.variant

    @pytest.mark.asyncio
    async def test_disabled_experiments_are_not_tagged(self, ranker, followed_posts, cache):
        variants = {"off": {"experiment_enabled": False}}
        result = await ranker.run_experiment("u", "dark-launch", variants)
        assert result.variant == "off"
        assert all(item.experiment_group is None for item in result.feed)
        assert cache.hashes == {}

    @pytest.mark.asyncio
    async def test_invalid_variant_configuration_raises(self, ranker):
        with pytest.raises(ConfigurationError):
            await ranker.run_experiment("u", "bad", {"only": {"final_feed_size": -1}})


class TestTrendingTopics:
    @pytest.mark.asyncio
    async def test_passes_through(self, ranker, trending_source):
        trending_source.topics = [TrendingTopic(topic="a", velocity=1), TrendingTopic(topic="b", velocity=5)]
        topics = await ranker.get_trending_topics(limit=1, window="1h")
        assert [t.topic for t in topics] == ["b"]
        assert trending_source.calls == [(1, "1h")]

    @pytest.mark.asyncio
    async def test_failure_returns_empty(self, content_store, interaction_store, user_store, cache, queue):
        ranker = HybridFeedRanker(content_store, interaction_store, user_store, cache, BrokenTrending(), queue)
        assert await ranker.get_trending_topics() == []
