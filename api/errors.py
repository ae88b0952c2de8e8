"""
Exceptions raised across the download pipeline.

Job-level code catches these at the job boundary and turns them into a
persisted failure; routers map them to HTTP errors.
"""


class TrackDownloaderError(Exception):
    """Base exception for all application-specific errors."""


class NotFoundError(TrackDownloaderError):
    """Raised when a track or job cannot be found."""


class ConfigError(TrackDownloaderError):
    """Raised when a credential or tool path needed at this point is not configured."""


class SearchError(TrackDownloaderError):
    """Raised when the YouTube search provider rejects or fails a request."""


class ResolutionError(TrackDownloaderError):
    """Raised when no YouTube video could be determined for a track."""

    reason = "resolution failed"

    def __init__(self, message: str, reason: str | None = None):
        super().__init__(message)
        if reason:
            self.reason = reason


class NoResultsError(ResolutionError):
    reason = "no results"


class UnparseableResponseError(ResolutionError):
    reason = "unparseable response"


class TurnBudgetExceededError(ResolutionError):
    reason = "turn budget exceeded"


class MissingVideoIdError(ResolutionError):
    reason = "missing video id"


class ProcessError(TrackDownloaderError):
    """Base class for failures of an external command."""


class ProcessSpawnError(ProcessError):
    """Raised when the executable cannot be launched at all."""


class ProcessExitError(ProcessError):
    """Raised when the command exits with a non-zero status."""

    def __init__(self, message: str, code: int):
        super().__init__(message)
        self.code = code


class ProcessOutputError(ProcessError):
    """Raised when captured output is not the expected JSON document."""


class ProcessTimeoutError(ProcessError):
    """Raised when the command runs past its allotted time and is killed."""
