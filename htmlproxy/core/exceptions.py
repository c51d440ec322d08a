"""Error taxonomy for the fetch engine.

Every failure a caller can observe is a ``FetchError`` subclass carrying a
stable ``kind`` (reported to clients) and the HTTP status the front-end
answers with.
"""


class FetchError(Exception):
    """Base class for fetch failures."""

    kind = "FetchError"
    status_code = 500

    def __init__(self, message: str = ""):
        self.message = message or self.kind
        super().__init__(self.message)


class InvalidUrl(FetchError):
    """Target is not a valid absolute URL; rejected before any navigation."""

    kind = "InvalidUrl"
    status_code = 400

    def __init__(self, url: str, reason: str = "Invalid URL format"):
        self.url = url
        super().__init__(reason)


class NavigationFailed(FetchError):
    """Network error or navigation timeout; retried by the fetch task."""

    kind = "NavigationFailed"

    def __init__(self, url: str, reason: str = ""):
        self.url = url
        super().__init__(f"Navigation to {url} failed: {reason}" if reason else f"Navigation to {url} failed")


class ContentExtractionFailed(FetchError):
    """DOM content could not be read even after the in-place retry."""

    kind = "ContentExtractionFailed"

    def __init__(self, url: str, reason: str = ""):
        self.url = url
        super().__init__(f"Failed to extract page content from {url}: {reason}".rstrip(": "))


class ChallengeResolutionFailed(FetchError):
    """No DOM capture was obtained on a challenge-protected host."""

    kind = "ChallengeResolutionFailed"

    def __init__(self, url: str, reason: str = ""):
        self.url = url
        super().__init__(f"Failed to retrieve HTML from {url}: {reason}".rstrip(": "))


class FetchFailed(FetchError):
    """Retry budget exhausted."""

    kind = "FetchFailed"

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Failed to fetch {url}")


class FetchTimeout(FetchError):
    """The overall per-request timeout fired before the run completed."""

    kind = "FetchTimeout"
    status_code = 504

    def __init__(self, url: str, timeout_ms: int):
        self.url = url
        self.timeout_ms = timeout_ms
        super().__init__(f"Timeout fetching URL after {timeout_ms}ms")


class ModeNotApplicable(FetchError):
    """Operation only exists in persistent lifecycle mode."""

    kind = "ModeNotApplicable"
    status_code = 400

    def __init__(self, message: str = "Persistent crawler mode is disabled"):
        super().__init__(message)


_STATUS_BY_KIND = {
    cls.kind: cls.status_code
    for cls in (
        FetchError,
        InvalidUrl,
        NavigationFailed,
        ContentExtractionFailed,
        ChallengeResolutionFailed,
        FetchFailed,
        FetchTimeout,
        ModeNotApplicable,
    )
}


def status_for_kind(kind: str | None) -> int:
    """HTTP status for a reported error kind (500 when unknown)."""
    return _STATUS_BY_KIND.get(kind or "", 500)
