from __future__ import annotations

from typing import Any, Optional


class BenchmarkError(Exception):
    """Base class for every error raised by the benchmark."""


class RequestError(BenchmarkError):
    """A single profiled HTTP request did not complete successfully."""

    def __init__(self, message: str, url: str, http_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.url = url
        self.http_status = http_status


class ManifestQueryError(BenchmarkError):
    """Querying or parsing the study instance list failed; the iteration is aborted."""


class FrameRequestError(BenchmarkError):
    """Retrieving one frame failed. Sibling frames are unaffected."""

    def __init__(self, frame: Any, cause: BaseException) -> None:
        super().__init__(f"{frame}: {cause}")
        self.frame = frame
        self.cause = cause


class CapacityExceeded(BenchmarkError):
    """More observations were added to a metric series than it was sized for."""


class MissingMilestone(BenchmarkError):
    """A milestone was read but no frame request of the iteration ever succeeded."""
