from __future__ import annotations


class StatsError(Exception):
    """Base class for failures raised by the stats subsystem."""


class UpstreamError(StatsError):
    """A non-success upstream response or a transport failure.

    Aborts the refresh of the package (or repository) being fetched. Not-found
    and rate-limited responses are handled by the clients and never surface as
    this error from the npm downloads fetcher.
    """

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ConfigurationError(StatsError):
    """A credential or setting required by the operation is missing."""
