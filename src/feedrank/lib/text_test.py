"""Tests for keyword extraction."""

from .text import keywords, tokenize, topic_matches


def test_tokenize_strips_hashtags_and_mentions():
    assert tokenize("Hello #World @alice!") == ["hello", "world", "alice"]


def test_tokenize_empty():
    assert tokenize(None) == []
    assert tokenize("") == []


def test_keywords_drop_stopwords_and_short_tokens():
    assert keywords("The AI of the future is here") == {"future", "here"}


def test_topic_matches_requires_every_topic_keyword():
    tokens = keywords("Climate policy debate heats up")
    assert topic_matches("climate policy", tokens)
    assert not topic_matches("climate summit", tokens)


def test_topic_of_only_stopwords_never_matches():
    assert not topic_matches("the and", {"the", "and"})
