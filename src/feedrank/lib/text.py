"""Keyword extraction used for trending matches and topic diversity."""

import re

_TOKEN_RE = re.compile(r"[a-z0-9#@][a-z0-9_#@'-]*")

# Short function words carry no topical signal.
STOPWORDS = frozenset(
    {
        "the", "and", "for", "are", "but", "not", "you", "your", "with",
        "this", "that", "from", "have", "has", "was", "were", "they", "them",
        "their", "what", "when", "where", "which", "who", "will", "would",
        "about", "into", "just", "than", "then", "there", "these", "those",
        "been", "being", "can", "could", "should", "our", "out", "all", "any",
        "its", "it's", "i'm", "very", "more", "most", "some", "such", "only",
    }
)

MIN_KEYWORD_LENGTH = 3


def tokenize(text: str | None) -> list[str]:
    """Lower-case word tokens with leading ``#``/``@`` stripped."""
    if not text:
        return []
    return [tok.lstrip("#@") for tok in _TOKEN_RE.findall(text.lower()) if tok.lstrip("#@")]


def keywords(text: str | None) -> set[str]:
    """Distinct topical tokens of *text* (no stopwords, no short tokens)."""
    return {
        tok for tok in tokenize(text)
        if len(tok) >= MIN_KEYWORD_LENGTH and tok not in STOPWORDS
    }


def topic_matches(topic: str, content_tokens: set[str]) -> bool:
    """True when every keyword of *topic* appears in *content_tokens*.

    A topic made only of stopwords or short tokens never matches.
    """
    topic_tokens = keywords(topic)
    return bool(topic_tokens) and topic_tokens <= content_tokens
