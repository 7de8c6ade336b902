"""Exception hierarchy shared by the client, the cache and the sync engine."""

from typing import Optional


class ReflectiveError(Exception):
    """Base class for every recoverable failure in the sync subsystem."""


class APIError(ReflectiveError):
    """A call to the journal server failed."""


class TransportError(APIError):
    """The request never produced a response (connection refused, timeout...)."""


class InvalidResponseError(APIError):
    """The server answered with a non-2xx status or a body we could not parse."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StorageError(ReflectiveError):
    """Committing to or reading from the local database failed."""


class ConsistencyError(ReflectiveError):
    """An entity or association disappeared in the middle of an operation."""


class SearchError(ReflectiveError):
    """A search could not be completed; no query record was kept."""
