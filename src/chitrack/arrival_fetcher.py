"""CTA Train Tracker arrivals fetcher and parser."""

import asyncio
import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from .exceptions import FeedError, FetchTimeout, NetworkError, UpstreamStatusError
from .models import ArrivalPrediction, ArrivalSet

logger = logging.getLogger(__name__)

CTA_ARRIVALS_URL = "https://lapi.transitchicago.com/api/1.0/ttarrivals.aspx"

# ctatt.errCd values that are not failures
CTA_OK = "0"
CTA_NO_ARRIVALS = "106"  # "No arrival times"

ARRIVAL_TIME_FORMATS = ("%Y-%m-%dT%H:%M:%S", "%Y%m%d %H:%M:%S")


class ArrivalFetcher:
    """Fetches arrival predictions for one station or platform, one request at a time."""

    def __init__(
        self,
        api_key: str,
        base_url: str = CTA_ARRIVALS_URL,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the fetcher.

        Args:
            api_key: CTA Train Tracker API key.
            base_url: Arrivals endpoint.
            timeout: Seconds before a request is abandoned.
            session: Optional requests session to reuse.
        """
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"Cache-Control": "no-cache"})
        # requests.Session is not thread-safe and fetch_async runs on worker threads
        self._session_lock = threading.Lock()

    def fetch(self, station_id: str) -> ArrivalSet:
        """
        Get arrival predictions for a station. Single attempt, no retry.

        Args:
            station_id: Parent station map id (e.g., "40380").

        Returns:
            ArrivalSet with predictions sorted by arrival time.

        Raises:
            FetchTimeout: The request exceeded ``timeout``.
            UpstreamStatusError: Non-success HTTP status.
            NetworkError: The endpoint could not be reached.
            FeedError: The payload was an error or unreadable.
        """
        return self._request(station_id, {"mapid": station_id})

    def fetch_stop(self, stop_id: str) -> ArrivalSet:
        """
        Get arrival predictions for a single platform.

        Args:
            stop_id: Platform stop id (e.g., "30074").

        Returns:
            ArrivalSet keyed by the stop id. Raises the same errors as ``fetch``.
        """
        return self._request(stop_id, {"stpid": stop_id})

    async def fetch_async(self, station_id: str) -> ArrivalSet:
        """Run ``fetch`` on a worker thread so the event loop is not blocked."""
        return await asyncio.to_thread(self.fetch, station_id)

    async def fetch_stop_async(self, stop_id: str) -> ArrivalSet:
        return await asyncio.to_thread(self.fetch_stop, stop_id)

    def _request(self, target_id: str, query: Dict[str, str]) -> ArrivalSet:
        params = {"key": self.api_key, **query, "outputType": "JSON"}
        logger.debug(f"Fetching arrivals for {target_id}")
        try:
            with self._session_lock:
                response = self._session.get(self.base_url, params=params, timeout=self.timeout)
        except requests.Timeout as e:
            raise FetchTimeout(target_id, f"Request timed out after {self.timeout}s") from e
        except requests.ConnectionError as e:
            raise NetworkError(target_id, f"Could not reach arrivals endpoint: {e}") from e

        if not response.ok:
            raise UpstreamStatusError(target_id, response.status_code, response.reason)

        try:
            payload = response.json()
        except ValueError as e:
            raise FeedError(target_id, "Arrivals response was not valid JSON") from e

        return self.parse(target_id, payload, fetched_at=datetime.now())

    @staticmethod
    def parse(station_id: str, payload: Dict[str, Any], fetched_at: datetime) -> ArrivalSet:
        """
        Build an ArrivalSet from a decoded ``ttarrivals`` response.

        Args:
            station_id: Station the request was issued for.
            payload: Decoded JSON body.
            fetched_at: Timestamp to stamp on the set.

        Returns:
            ArrivalSet, possibly with no predictions.
        """
        ctatt = payload.get("ctatt") if isinstance(payload, dict) else None
        if not isinstance(ctatt, dict):
            raise FeedError(station_id, "Arrivals response is missing 'ctatt'")

        error_code = str(ctatt.get("errCd", CTA_OK))
        if error_code == CTA_NO_ARRIVALS:
            return ArrivalSet(station_id=station_id, predictions=(), fetched_at=fetched_at)
        if error_code != CTA_OK:
            message = ctatt.get("errNm") or f"CTA error {error_code}"
            raise FeedError(station_id, message, error_code=error_code)

        rows = ctatt.get("eta") or []
        if isinstance(rows, dict):
            # a single arrival comes back as an object rather than a list
            rows = [rows]

        predictions: List[ArrivalPrediction] = []
        for row in rows:
            arrival_time = _parse_arrival_time(row.get("arrT", ""))
            if arrival_time is None:
                logger.warning(f"Skipping arrival with unreadable time {row.get('arrT')!r} at {station_id}")
                continue
            predictions.append(
                ArrivalPrediction(
                    route_code=row.get("rt", ""),
                    destination=row.get("destNm", ""),
                    predicted_arrival_time=arrival_time,
                    is_delayed=row.get("isDly") == "1",
                    stop_id=row.get("stpId"),
                    stop_description=row.get("stpDe"),
                    is_approaching=row.get("isApp") == "1",
                    run_number=row.get("rn"),
                    is_scheduled=row.get("isSch") == "1",
                )
            )

        logger.debug(f"Parsed {len(predictions)} arrivals for station {station_id}")
        return ArrivalSet(station_id=station_id, predictions=tuple(predictions), fetched_at=fetched_at)

    def close(self) -> None:
        """Release the HTTP session."""
        self._session.close()


def _parse_arrival_time(value: str) -> Optional[datetime]:
    for fmt in ARRIVAL_TIME_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except (TypeError, ValueError):
            continue
    return None
