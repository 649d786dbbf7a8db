"""Main ChiTrack station tracker class."""

import logging
from typing import Callable, Dict, List, Optional

from .arrival_cache import ArrivalCache
from .arrival_fetcher import ArrivalFetcher
from .config import Settings, get_settings
from .models import ArrivalPrediction, ArrivalSet, Station, StationListing
from .orchestrator import ArrivalOrchestrator
from .retry_classifier import RetryClassifier
from .selection_bus import SearchQueryChanged, SelectionBus, StationSelected, default_bus
from .station_directory import StationDirectory

logger = logging.getLogger(__name__)


class StationTracker:
    """
    Wires the station directory, fetcher, cache and orchestrator together.

    This class provides methods to:
    - List and search stations
    - Publish station selections on the selection bus
    - Follow live arrivals for the selected station
    - Look up arrivals once, reusing fresh cached data
    - Look up the next arrivals at a single platform
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        directory: Optional[StationDirectory] = None,
        fetcher: Optional[ArrivalFetcher] = None,
        cache: Optional[ArrivalCache] = None,
        bus: Optional[SelectionBus] = None,
    ):
        """
        Initialize the tracker.

        Args:
            settings: Configuration; read from the environment if omitted.
            directory: Station directory. Built from settings if omitted.
            fetcher: Arrivals fetcher. Built from settings if omitted.
            cache: Arrival cache shared by the orchestrator and one-shot lookups.
            bus: Selection bus; the process-wide bus if omitted.

        Raises:
            ValueError: No fetcher was given and CTA_TRAIN_API_KEY is not set.
        """
        self.settings = settings or get_settings()
        self.directory = directory or StationDirectory(
            gtfs_url=self.settings.CTA_GTFS_URL,
            attempts=self.settings.DIRECTORY_ATTEMPTS,
            retry_delay=self.settings.DIRECTORY_RETRY_DELAY,
        )
        if fetcher is None:
            if not self.settings.CTA_TRAIN_API_KEY:
                raise ValueError("CTA_TRAIN_API_KEY is not set")
            fetcher = ArrivalFetcher(
                api_key=self.settings.CTA_TRAIN_API_KEY,
                base_url=self.settings.CTA_ARRIVALS_URL,
                timeout=self.settings.HTTP_TIMEOUT,
            )
        self.fetcher = fetcher
        self.cache = cache if cache is not None else ArrivalCache(max_entries=self.settings.CACHE_MAX_ENTRIES)
        self.bus = bus or default_bus
        self.orchestrator = ArrivalOrchestrator(
            fetcher=self.fetcher,
            cache=self.cache,
            classifier=RetryClassifier(),
            max_retries=self.settings.MAX_RETRIES,
            refresh_interval=self.settings.REFRESH_INTERVAL,
            freshness_window=self.settings.FRESHNESS_WINDOW,
        )
        self.orchestrator.attach(self.bus)

    def stations(self) -> StationListing:
        """All stations, or an empty listing with an error if the directory is down."""
        return self.directory.listing()

    def get_station(self, station_input: str) -> Station:
        """
        Get a station by map id or name.

        Args:
            station_input: Either a map id (e.g., "40380") or a name (e.g., "Clark/Lake").

        Returns:
            Station object.

        Raises:
            ValueError: If station not found.
        """
        # Try as map id first
        try:
            return self.directory.get_station(station_input)
        except ValueError:
            pass

        stations = self.directory.find_stations_by_name(station_input)
        if not stations:
            raise ValueError(f"No station found matching '{station_input}'")
        return stations[0]

    def search(self, query: str) -> List[Station]:
        """Announce a new search query on the bus and return matching stations."""
        self.bus.publish(SearchQueryChanged(query))
        return self.directory.find_stations_by_name(query)

    def select(self, station: Station) -> None:
        """Announce a station selection. Must run on the orchestrator's event loop."""
        self.bus.publish(StationSelected(station))

    def get_arrivals(self, station_id: str, max_age: Optional[float] = None) -> ArrivalSet:
        """
        Get arrivals once, without the retry cycle.

        Args:
            station_id: Station map id.
            max_age: Reuse a cached set at most this many seconds old.
                Defaults to the configured freshness window.

        Returns:
            ArrivalSet for the station.
        """
        return self._cached_or_fetch(station_id, self.fetcher.fetch, max_age)

    def get_board(self, station_id: str) -> Dict[str, List[ArrivalPrediction]]:
        """Arrivals grouped by platform, capped per platform."""
        arrival_set = self.get_arrivals(station_id)
        return arrival_set.by_stop(limit=self.settings.ARRIVALS_PER_STOP)

    def get_stop_arrivals(self, stop_id: str, max_age: Optional[float] = None) -> List[ArrivalPrediction]:
        """
        Get the next arrivals at a single platform.

        Args:
            stop_id: Platform stop id, one of a station's ``stops``.
            max_age: Reuse a cached set at most this many seconds old.

        Returns:
            The soonest predictions, at most ARRIVALS_PER_STOP of them.
        """
        arrival_set = self._cached_or_fetch(stop_id, self.fetcher.fetch_stop, max_age)
        return list(arrival_set.predictions[: self.settings.ARRIVALS_PER_STOP])

    def _cached_or_fetch(
        self,
        key: str,
        fetch: Callable[[str], ArrivalSet],
        max_age: Optional[float],
    ) -> ArrivalSet:
        # stop ids (3xxxx) and map ids (4xxxx) never collide in the cache
        if max_age is None:
            max_age = self.settings.FRESHNESS_WINDOW
        if self.cache.is_fresh(key, max_age):
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug(f"Using cached arrivals for {key}")
                return cached

        arrival_set = fetch(key)
        self.cache.put(key, arrival_set)
        return arrival_set

    async def close(self) -> None:
        """Stop the orchestrator and release HTTP resources."""
        await self.orchestrator.close()
        self.cleanup()

    def cleanup(self) -> None:
        """Release resources and clear caches."""
        self.orchestrator.detach()
        self.cache.clear()
        close = getattr(self.fetcher, "close", None)
        if close is not None:
            close()
        logger.info("Cleaned up tracker resources")
