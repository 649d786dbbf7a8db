"""In-memory cache of the latest arrivals per station."""

import logging
import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from .models import ArrivalSet

logger = logging.getLogger(__name__)

MaxAge = Union[float, int, timedelta]


class ArrivalCache:
    """
    Holds the most recent successful ArrivalSet for each station.

    Entries are replaced wholesale and the stored sets are frozen, so a reader
    never sees a partially written value. The cache is bounded: once
    ``max_entries`` is reached the least recently used station is dropped.
    """

    def __init__(self, max_entries: int = 32, clock: Callable[[], datetime] = datetime.now):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._entries: "OrderedDict[str, ArrivalSet]" = OrderedDict()
        self._max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()

    def get(self, station_id: str) -> Optional[ArrivalSet]:
        """Return the last known set for a station, however old it is."""
        with self._lock:
            arrival_set = self._entries.get(station_id)
            if arrival_set is not None:
                self._entries.move_to_end(station_id)
            return arrival_set

    def is_fresh(self, station_id: str, max_age: MaxAge) -> bool:
        """
        Check whether the cached set for a station is recent enough.

        Args:
            station_id: Station map id.
            max_age: Seconds, or a timedelta.

        Returns:
            True iff an entry exists and its age is at most ``max_age``.
        """
        if not isinstance(max_age, timedelta):
            max_age = timedelta(seconds=max_age)
        with self._lock:
            arrival_set = self._entries.get(station_id)
        if arrival_set is None:
            return False
        return self._clock() - arrival_set.fetched_at <= max_age

    def put(self, station_id: str, arrival_set: ArrivalSet) -> None:
        """Replace the entry for a station."""
        with self._lock:
            self._entries[station_id] = arrival_set
            self._entries.move_to_end(station_id)
            while len(self._entries) > self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted cached arrivals for station {evicted}")

    def evict(self, station_id: str) -> None:
        with self._lock:
            self._entries.pop(station_id, None)

    def clear(self) -> None:
        """Manually clear the cache."""
        with self._lock:
            self._entries.clear()

    def __contains__(self, station_id: str) -> bool:
        with self._lock:
            return station_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
