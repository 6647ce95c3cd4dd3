"""
Error taxonomy for build polling.

Fetch errors are classified so the stream producer can decide whether a
failure is benign (caller cancellation), job-scoped, or build-scoped.
"""

from typing import Any


class BuildWatchError(Exception):
    """Base class for all buildwatch errors."""


class ConfigInvalid(BuildWatchError):
    """Configuration is missing required values or has a malformed filter."""


class AlreadyInitialized(BuildWatchError):
    """An adapter was initialized more than once."""


class AdapterNotInitialized(BuildWatchError):
    """A query was issued before the adapter was initialized."""


class AdapterDisposed(BuildWatchError):
    """A query was issued after the adapter was disposed."""


class FetchError(BuildWatchError):
    """Base class for failures fetching a resource from the build server."""


class TransientCancel(FetchError):
    """The transport dropped or timed out the request without caller intent."""


class QueryCancelled(FetchError):
    """The caller cancelled the query."""


class AuthenticationCancelled(FetchError):
    """
    The server challenged the request and no credentials were granted.

    The message is the reason phrase of the challenged response.
    """


class RequestFailed(FetchError):
    """The server answered with a failure status that has no auth remedy."""

    def __init__(self, reason: str, status_code: int | None = None):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code is None:
            return self.reason
        return f"{self.status_code} {self.reason}"


class ParseError(BuildWatchError):
    """A build document is malformed or lacks a required field."""


class JobDiscoveryFailed(BuildWatchError):
    """Resolving the build list of one job failed."""

    def __init__(self, target: Any, cause: Exception):
        super().__init__(f"Discovery failed for job {target.name}: {cause}")
        self.target = target
        self.cause = cause
