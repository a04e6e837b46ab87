"""
Defines custom exceptions used throughout the application.

These exceptions allow for more specific error handling than built-in exceptions.
"""

from typing import Optional


class MediaCoreError(Exception):
    """Base class for all application errors."""
    pass


class InvalidRequestError(MediaCoreError):
    """A caller supplied a missing or malformed path, URL, or option."""
    pass


class ProbeError(MediaCoreError):
    """The probing engine could not analyze a file."""
    pass


class ProcessFailedError(MediaCoreError):
    """An engine process exited with an error that was not a cancellation."""

    def __init__(self, detail: str, returncode: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        self.returncode = returncode


class URLExtractionError(MediaCoreError):
    """Custom exception for URL processing failures."""
    pass


class NetworkStreamError(MediaCoreError):
    """A non-local source could not be opened or read."""
    pass


class JobCancelledError(MediaCoreError):
    """Custom exception for cancelled jobs."""
    pass


class UnknownJobError(MediaCoreError):
    """No job is registered under the given id."""
    pass
