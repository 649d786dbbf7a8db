"""ChiTrack - Real-time CTA 'L' arrival tracker."""

__version__ = "0.1.0"

from .models import (
    ArrivalPrediction,
    ArrivalSet,
    ArrivalSnapshot,
    FailureKind,
    Phase,
    Station,
    StationListing,
    StationStop,
)
from .exceptions import (
    ArrivalFetchError,
    ChiTrackError,
    DirectoryUnavailable,
    FeedError,
    FetchTimeout,
    NetworkError,
    UpstreamStatusError,
)
from .arrival_cache import ArrivalCache
from .arrival_fetcher import ArrivalFetcher
from .retry_classifier import RetryClassifier, RetryPolicy
from .selection_bus import SearchQueryChanged, SelectionBus, StationSelected, default_bus
from .station_directory import StationDirectory
from .orchestrator import ArrivalOrchestrator, MAX_RETRIES
from .station_tracker import StationTracker

__all__ = [
    "StationTracker",
    "ArrivalOrchestrator",
    "MAX_RETRIES",
    "StationDirectory",
    "ArrivalFetcher",
    "ArrivalCache",
    "RetryClassifier",
    "RetryPolicy",
    "SelectionBus",
    "StationSelected",
    "SearchQueryChanged",
    "default_bus",
    "Station",
    "StationStop",
    "StationListing",
    "ArrivalPrediction",
    "ArrivalSet",
    "ArrivalSnapshot",
    "FailureKind",
    "Phase",
    "ChiTrackError",
    "ArrivalFetchError",
    "FetchTimeout",
    "UpstreamStatusError",
    "NetworkError",
    "FeedError",
    "DirectoryUnavailable",
]
