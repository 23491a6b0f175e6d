"""Error taxonomy for the check pipeline.

Every error raised while checking a target derives from ``CheckError`` and
carries a short ``kind`` that ends up in the ``error_kind`` column of the
history record.
"""

from typing import Optional


class CheckError(Exception):
    """Base class for failures surfaced at the pipeline boundary."""

    kind = "internal"


class NavigationError(CheckError):
    """Page failed to load."""

    kind = "navigation_error"

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Failed to load {url}: {reason}")


class NavigationTimeout(NavigationError):
    """Navigation exceeded its timeout and nothing usable could be extracted."""

    kind = "navigation_timeout"

    def __init__(self, url: str, timeout_seconds: float, detail: Optional[str] = None):
        self.timeout_seconds = timeout_seconds
        reason = f"navigation timed out after {timeout_seconds:.0f}s"
        if detail:
            reason = f"{reason} ({detail})"
        super().__init__(url, reason)


class ElementNotFound(CheckError):
    """The selector never matched within the configured attempts."""

    kind = "element_not_found"

    def __init__(self, selector: str, url: str, attempts: int):
        self.selector = selector
        self.url = url
        self.attempts = attempts
        super().__init__(
            f"Selector {selector!r} not found on {url} after {attempts} attempt(s)"
        )


class ExtractionEmpty(CheckError):
    """The page loaded but yielded no usable content."""

    kind = "extraction_empty"

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Nothing extracted from {url}: {reason}")


class RenderingEngineUnavailable(CheckError):
    """No browser session could be obtained from the pool."""

    kind = "rendering_engine_unavailable"


class CheckInternalError(CheckError):
    """Unexpected failure inside the pipeline."""

    kind = "internal"
