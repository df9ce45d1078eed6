"""
Exception hierarchy for the fetch orchestration engine.

Only the HTTP layer turns these into response envelopes; everything below it
raises and lets RetryPolicy decide whether another attempt is worth making.
"""


class FetchError(Exception):
    """Base class for every error raised while serving a fetch."""


class ValidationError(FetchError):
    """Missing or conflicting request parameters. Never retried."""


class MissingParameterError(ValidationError):
    """A required query parameter was not supplied."""


class SelectorTimeoutError(FetchError):
    def __init__(self, selector: str, url: str, strategy: str | None = None):
        self.selector = selector
        self.url = url
        self.strategy = strategy
        prefix = f"({strategy}): " if strategy else ""
        super().__init__(f'{prefix}Timeout waiting for selector "{selector}" on page {url}')


class PageClosedError(FetchError):
    """The page was closed while a strategy was still waiting on it."""


class NoResponseError(FetchError):
    """Navigation finished without a main-document response (raw mode)."""


class BrowserIOError(FetchError):
    """Navigation or browser transport failure."""


class PermitError(RuntimeError):
    """A permit was released that the limiter never handed out."""
