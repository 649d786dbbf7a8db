"""CTA station directory built from static GTFS data."""

import io
import logging
import time
import zipfile
from typing import Callable, Dict, List, Optional

import pandas as pd
import requests

from .exceptions import DirectoryUnavailable
from .models import Station, StationListing, StationStop

logger = logging.getLogger(__name__)

# CTA GTFS static data URL
CTA_GTFS_URL = "https://www.transitchicago.com/downloads/sch_data/google_transit.zip"

LOCATION_STOP = 0
LOCATION_STATION = 1


class StationDirectory:
    """Loads and caches the list of 'L' stations for the life of the process."""

    def __init__(
        self,
        gtfs_url: str = CTA_GTFS_URL,
        attempts: int = 3,
        retry_delay: float = 1.0,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the directory.

        Args:
            gtfs_url: URL of the GTFS zip containing stops.txt.
            attempts: Download attempts before giving up.
            retry_delay: Seconds to wait between attempts.
            timeout: Per-request timeout in seconds.
            session: Optional requests session to reuse.
            sleep: Sleep function, replaceable in tests.
        """
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self.gtfs_url = gtfs_url
        self.attempts = attempts
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._session = session or requests.Session()
        self._sleep = sleep
        self._stations: Optional[List[Station]] = None
        self._by_id: Dict[str, Station] = {}

    def load(self) -> List[Station]:
        """
        Return all stations, downloading them on first use.

        Raises:
            DirectoryUnavailable: The GTFS source could not be read after all attempts.
        """
        if self._stations is not None:
            return list(self._stations)

        last_error: Optional[Exception] = None
        for attempt in range(1, self.attempts + 1):
            try:
                stops_csv = self._download_stops()
                self._set_stations(self._parse_stops(stops_csv))
                logger.info(f"Loaded {len(self._stations)} stations from {self.gtfs_url}")
                return list(self._stations)
            except (requests.RequestException, zipfile.BadZipFile, KeyError, ValueError) as e:
                last_error = e
                logger.warning(f"Station directory attempt {attempt}/{self.attempts} failed: {e}")
                if attempt < self.attempts and self.retry_delay > 0:
                    self._sleep(self.retry_delay)

        logger.error(f"Station directory unavailable after {self.attempts} attempts")
        raise DirectoryUnavailable(f"Could not load stations: {last_error}", attempts=self.attempts)

    def load_from_file(self, stops_path: str) -> List[Station]:
        """Load stations from a local GTFS stops.txt."""
        logger.info(f"Loading stations from {stops_path}")
        with open(stops_path, "r", encoding="utf-8") as f:
            self._set_stations(self._parse_stops(f.read()))
        return list(self._stations)

    def listing(self) -> StationListing:
        """Stations for display; an empty listing with an error if the directory is down."""
        try:
            return StationListing(stations=tuple(self.load()))
        except DirectoryUnavailable as e:
            return StationListing(stations=(), error=str(e))

    def invalidate(self) -> None:
        """Forget the cached stations so the next load() downloads them again."""
        self._stations = None
        self._by_id = {}

    def get_station(self, station_id: str) -> Station:
        """Get station by map id."""
        self.load()
        if station_id not in self._by_id:
            raise ValueError(f"Station {station_id} not found")
        return self._by_id[station_id]

    def find_stations_by_name(self, query: str) -> List[Station]:
        """Find stations by name (case-insensitive partial match)."""
        needle = query.strip().lower()
        if not needle:
            return []
        return [s for s in self.load() if needle in s.station_name.lower()]

    def _download_stops(self) -> str:
        logger.info(f"Downloading GTFS data from {self.gtfs_url}")
        response = self._session.get(self.gtfs_url, timeout=self.timeout)
        response.raise_for_status()
        with zipfile.ZipFile(io.BytesIO(response.content)) as zip_file:
            return zip_file.read("stops.txt").decode("utf-8")

    def _set_stations(self, stations: List[Station]) -> None:
        self._stations = stations
        self._by_id = {s.station_id: s for s in stations}

    @staticmethod
    def _parse_stops(csv_content: str) -> List[Station]:
        """Parse stops.txt into parent stations with their platforms attached."""
        stops = pd.read_csv(io.StringIO(csv_content), dtype=str, keep_default_na=False)
        for column in ("stop_id", "stop_name", "location_type"):
            if column not in stops.columns:
                raise ValueError(f"stops.txt is missing column '{column}'")

        for column in ("parent_station", "stop_desc", "stop_lat", "stop_lon"):
            if column not in stops.columns:
                stops[column] = ""

        location_type = pd.to_numeric(stops["location_type"], errors="coerce").fillna(LOCATION_STOP)
        parents = stops[location_type == LOCATION_STATION]
        platforms = stops[(location_type == LOCATION_STOP) & (stops["parent_station"] != "")]

        stops_by_parent: Dict[str, List[StationStop]] = {}
        for row in platforms.itertuples(index=False):
            stops_by_parent.setdefault(row.parent_station, []).append(
                StationStop(
                    stop_id=row.stop_id,
                    direction_name=row.stop_desc or "Unknown Direction",
                )
            )

        stations: List[Station] = []
        for row in parents.itertuples(index=False):
            stations.append(
                Station(
                    station_id=row.stop_id,
                    station_name=row.stop_name,
                    coordinates=_coordinates(row.stop_lat, row.stop_lon),
                    stops=tuple(stops_by_parent.get(row.stop_id, [])),
                )
            )
        return stations


def _coordinates(lat: str, lon: str):
    try:
        return (float(lat), float(lon))
    except (TypeError, ValueError):
        return None
