"""Failure classification and retry policy for arrivals fetches."""

import asyncio
import socket
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import requests

from .exceptions import FetchTimeout, NetworkError, UpstreamStatusError
from .models import FailureKind

GATEWAY_TIMEOUT = 504


@dataclass(frozen=True)
class RetryPolicy:
    """User-facing message and backoff for one failure kind."""
    message: str
    retryable: bool
    backoff: float  # seconds before the next automatic attempt


DEFAULT_POLICIES: Dict[FailureKind, RetryPolicy] = {
    FailureKind.TIMEOUT: RetryPolicy(
        message="Request timed out - please try again",
        retryable=True,
        backoff=2.0,
    ),
    FailureKind.UPSTREAM_OVERLOAD: RetryPolicy(
        message="The server is taking too long to respond - please try again",
        retryable=True,
        backoff=5.0,
    ),
    FailureKind.NETWORK: RetryPolicy(
        message="Network error - please check your connection",
        retryable=True,
        backoff=2.0,
    ),
    FailureKind.UNKNOWN: RetryPolicy(
        message="Error fetching arrivals",
        retryable=True,
        backoff=2.0,
    ),
}

_TIMEOUT_ERRORS = (FetchTimeout, requests.Timeout, TimeoutError, asyncio.TimeoutError)
_NETWORK_ERRORS = (NetworkError, requests.ConnectionError, ConnectionError, socket.gaierror)


class RetryClassifier:
    """
    Maps a raw fetch error onto a FailureKind.

    Classification looks only at exception types and HTTP status codes, never
    at message text, so the same error always yields the same kind. Rules are
    checked in order and the first match wins:

    1. aborted or past its deadline -> TIMEOUT
    2. HTTP 504 gateway timeout -> UPSTREAM_OVERLOAD
    3. DNS / refused / offline -> NETWORK
    4. anything else -> UNKNOWN
    """

    def __init__(self, policies: Optional[Dict[FailureKind, RetryPolicy]] = None):
        self._policies = dict(DEFAULT_POLICIES)
        if policies:
            self._policies.update(policies)

    def classify(self, error: BaseException) -> FailureKind:
        if isinstance(error, _TIMEOUT_ERRORS):
            return FailureKind.TIMEOUT
        if _status_code(error) == GATEWAY_TIMEOUT:
            return FailureKind.UPSTREAM_OVERLOAD
        if isinstance(error, _NETWORK_ERRORS):
            return FailureKind.NETWORK
        return FailureKind.UNKNOWN

    def policy(self, kind: FailureKind) -> RetryPolicy:
        return self._policies[kind]

    def describe(self, error: BaseException) -> Tuple[FailureKind, RetryPolicy]:
        kind = self.classify(error)
        return kind, self._policies[kind]


def _status_code(error: BaseException) -> Optional[int]:
    if isinstance(error, UpstreamStatusError):
        return error.status_code
    if isinstance(error, requests.HTTPError) and error.response is not None:
        return error.response.status_code
    return None
