"""Exception types shared by the ranking and recommendation engines."""


class FeedRankError(Exception):
    """Base class for errors raised by feedrank."""


class StoreError(FeedRankError):
    """A backing store or cache could not serve a request.

    Adapters raise this for transport failures and malformed responses.
    Engine entry points recover from it locally; it should never reach an
    API caller.
    """


class ConfigurationError(FeedRankError, ValueError):
    """A feed or recommendation configuration failed validation."""
