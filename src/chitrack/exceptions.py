"""Exception types raised by ChiTrack."""

from typing import Optional


class ChiTrackError(Exception):
    """Base class for all ChiTrack errors."""


class ArrivalFetchError(ChiTrackError):
    """A single arrivals fetch failed."""

    def __init__(self, station_id: str, message: str):
        super().__init__(message)
        self.station_id = station_id


class FetchTimeout(ArrivalFetchError):
    """The request was aborted or exceeded its deadline."""


class UpstreamStatusError(ArrivalFetchError):
    """The arrivals endpoint answered with a non-success HTTP status."""

    def __init__(self, station_id: str, status_code: int, reason: Optional[str] = None):
        super().__init__(station_id, f"HTTP {status_code} - {reason or 'upstream error'}")
        self.status_code = status_code
        self.reason = reason

    @property
    def is_gateway_timeout(self) -> bool:
        return self.status_code == 504


class NetworkError(ArrivalFetchError):
    """Connectivity failure: DNS, connection refused, offline."""


class FeedError(ArrivalFetchError):
    """The feed answered but the payload was an error or could not be read."""

    def __init__(self, station_id: str, message: str, error_code: Optional[str] = None):
        super().__init__(station_id, message)
        self.error_code = error_code


class DirectoryUnavailable(ChiTrackError):
    """The station list could not be loaded after all attempts."""

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts
