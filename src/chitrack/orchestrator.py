"""Arrival fetch lifecycle: selection, retries, stale display and refresh."""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Set

from .arrival_cache import ArrivalCache
from .models import (
    ArrivalSet,
    ArrivalSnapshot,
    FetchAttempt,
    OrchestratorState,
    Outcome,
    Phase,
)
from .retry_classifier import RetryClassifier
from .selection_bus import SelectionBus, StationSelected, Subscription, default_bus

logger = logging.getLogger(__name__)

# Automatic retries after the first failed attempt (3 attempts in total)
MAX_RETRIES = 2

Listener = Callable[[ArrivalSnapshot], None]


class ArrivalOrchestrator:
    """
    Owns the active station and drives its arrivals through
    Idle -> Fetching -> Settled.

    Every state change is published to listeners as an immutable
    ArrivalSnapshot. Previously fetched data stays in the snapshot while a
    refresh is running or after it fails. Each fetch cycle is tagged with the
    station id and a generation number; a result that arrives after the
    station changed (or after a manual refresh restarted the cycle) is dropped.

    All methods must be called from the event loop that runs the
    orchestrator. The fetcher's ``fetch_async`` is the only place the
    network is touched.
    """

    def __init__(
        self,
        fetcher,
        cache: Optional[ArrivalCache] = None,
        classifier: Optional[RetryClassifier] = None,
        max_retries: int = MAX_RETRIES,
        refresh_interval: Optional[float] = 30.0,
        freshness_window: float = 15.0,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the orchestrator.

        Args:
            fetcher: Object with ``async fetch_async(station_id) -> ArrivalSet``.
            cache: Shared arrival cache. A private one is created if omitted.
            classifier: Failure classifier.
            max_retries: Automatic retries before the error is final.
            refresh_interval: Seconds between refreshes after a success; None disables.
            freshness_window: A cached set younger than this is reused on refresh.
            clock: Source of the current time.
            sleep: Coroutine used for backoff and refresh waits.
        """
        if max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        self._fetcher = fetcher
        self._cache = cache if cache is not None else ArrivalCache(clock=clock)
        self._classifier = classifier or RetryClassifier()
        self.max_retries = max_retries
        self.refresh_interval = refresh_interval
        self.freshness_window = freshness_window
        self._clock = clock
        self._sleep = sleep

        self._state = OrchestratorState()
        self._snapshot = ArrivalSnapshot.from_state(self._state)
        self._listeners: List[Listener] = []
        self._waiters: List[asyncio.Future] = []
        self._generation = 0
        self._cycles: Set[asyncio.Task] = set()
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._subscription: Optional[Subscription] = None
        self._closed = False

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def snapshot(self) -> ArrivalSnapshot:
        return self._snapshot

    @property
    def active_station_id(self) -> Optional[str]:
        return self._state.active_station_id

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register a snapshot listener. Returns a function that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def attach(self, bus: SelectionBus = default_bus) -> Subscription:
        """Start following StationSelected events on a bus."""
        self.detach()
        self._subscription = bus.subscribe(StationSelected, self._on_station_selected)
        return self._subscription

    def detach(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def select_station(self, station_id: str) -> None:
        """
        Make a station active and start fetching its arrivals.

        Selecting the station that is already active does nothing. Cached
        arrivals for the new station are shown immediately, but a fetch is
        always started since the feed is real-time.

        Raises:
            RuntimeError: The orchestrator is closed or no event loop is
                running. The state is left untouched in that case.
        """
        self._ensure_open()
        if station_id == self._state.active_station_id:
            logger.debug(f"Station {station_id} already active")
            return
        loop = self._running_loop()

        logger.info(f"Selected station {station_id}")
        self._state = OrchestratorState(
            active_station_id=station_id,
            current_arrival_set=self._cache.get(station_id),
        )
        self._start_cycle(loop, station_id)

    def manual_refresh(self) -> None:
        """
        Fetch again now, resetting the failure count.

        Raises:
            RuntimeError: No station is selected, or no event loop is running.
        """
        self._ensure_open()
        station_id = self._state.active_station_id
        if station_id is None:
            raise RuntimeError("Cannot refresh before a station is selected")
        loop = self._running_loop()

        logger.info(f"Manual refresh for station {station_id}")
        self._state = replace(self._state, consecutive_failures=0, user_visible_error=None)
        self._start_cycle(loop, station_id)

    async def wait_until_settled(self) -> ArrivalSnapshot:
        """Wait until the current cycle stops fetching, then return the snapshot."""
        if self._state.phase is Phase.FETCHING:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            await waiter
        return self._snapshot

    async def close(self) -> None:
        """Stop all cycles. In-flight requests finish but their results are ignored."""
        if self._closed:
            return
        self._closed = True
        self._generation += 1
        self.detach()
        cycles = list(self._cycles)
        for task in cycles:
            task.cancel()
        if cycles:
            await asyncio.gather(*cycles, return_exceptions=True)
        self._release_waiters()
        logger.info("Arrival orchestrator closed")

    def _on_station_selected(self, event: StationSelected) -> None:
        self.select_station(event.station.station_id)

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("Orchestrator is closed")

    @staticmethod
    def _running_loop() -> asyncio.AbstractEventLoop:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            raise RuntimeError("Arrival orchestrator must be driven from its running event loop") from None

    def _start_cycle(self, loop: asyncio.AbstractEventLoop, station_id: str) -> None:
        self._generation += 1
        generation = self._generation
        task = loop.create_task(self._run_cycle(generation, station_id))
        self._cycles.add(task)
        task.add_done_callback(self._cycle_done)
        self._begin_attempt(station_id)

    def _cycle_done(self, task: asyncio.Task) -> None:
        self._cycles.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Fetch cycle crashed", exc_info=task.exception())

    def _is_current(self, generation: int, station_id: str) -> bool:
        return (
            not self._closed
            and generation == self._generation
            and station_id == self._state.active_station_id
        )

    async def _run_cycle(self, generation: int, station_id: str) -> None:
        while True:
            arrival_set = await self._fetch_with_retries(generation, station_id)
            if arrival_set is None or self.refresh_interval is None:
                return

            while True:
                await self._sleep(self.refresh_interval)
                if not self._is_current(generation, station_id):
                    return
                if not self._cache.is_fresh(station_id, self.freshness_window):
                    break
                cached = self._cache.get(station_id)
                if cached is not None and cached is not self._state.current_arrival_set:
                    logger.debug(f"Using fresh cached arrivals for station {station_id}")
                    self._update(current_arrival_set=cached)

            self._begin_attempt(station_id)

    async def _fetch_with_retries(self, generation: int, station_id: str) -> Optional[ArrivalSet]:
        """Run attempts until success, exhaustion or abandonment. None unless it succeeded."""
        while True:
            try:
                arrival_set = await self._fetch_shared(station_id)
            except Exception as e:
                if not self._is_current(generation, station_id):
                    logger.debug(f"Ignoring late failure for station {station_id}: {e}")
                    return None
                backoff = self._record_failure(station_id, e)
                if backoff is None:
                    return None
                await self._sleep(backoff)
                if not self._is_current(generation, station_id):
                    return None
                self._begin_attempt(station_id)
                continue

            if not self._is_current(generation, station_id):
                logger.debug(f"Ignoring late arrivals for station {station_id}")
                return None
            self._record_success(station_id, arrival_set)
            return arrival_set

    async def _fetch_shared(self, station_id: str) -> ArrivalSet:
        # one request per station at a time; later cycles await the same one
        task = self._in_flight.get(station_id)
        if task is None:
            task = asyncio.ensure_future(self._fetcher.fetch_async(station_id))
            self._in_flight[station_id] = task
            task.add_done_callback(lambda t: self._forget_in_flight(station_id, t))
        return await asyncio.shield(task)

    def _forget_in_flight(self, station_id: str, task: asyncio.Task) -> None:
        if self._in_flight.get(station_id) is task:
            del self._in_flight[station_id]
        if not task.cancelled():
            task.exception()  # mark as retrieved when every waiter was abandoned

    def _begin_attempt(self, station_id: str) -> None:
        attempt = FetchAttempt(
            station_id=station_id,
            attempt_number=self._state.consecutive_failures + 1,
            started_at=self._clock(),
        )
        self._update(attempt=attempt, phase=Phase.FETCHING)

    def _record_success(self, station_id: str, arrival_set: ArrivalSet) -> None:
        self._cache.put(station_id, arrival_set)
        attempt = self._state.attempt
        if attempt is not None:
            attempt = replace(attempt, outcome=Outcome.SUCCESS, arrival_set=arrival_set)
        logger.info(f"Fetched {len(arrival_set.predictions)} arrivals for station {station_id}")
        self._update(
            current_arrival_set=arrival_set,
            attempt=attempt,
            consecutive_failures=0,
            user_visible_error=None,
            phase=Phase.SETTLED,
        )

    def _record_failure(self, station_id: str, error: Exception) -> Optional[float]:
        """Apply a failed attempt. Returns the backoff before the next attempt, or None when final."""
        kind, policy = self._classifier.describe(error)
        failures = self._state.consecutive_failures + 1
        attempt = self._state.attempt
        if attempt is not None:
            attempt = replace(attempt, outcome=Outcome.FAILURE, failure_kind=kind)

        if policy.retryable and failures <= self.max_retries:
            logger.warning(
                f"Arrivals for station {station_id} failed ({kind.value}): {error}; "
                f"retry {failures}/{self.max_retries} in {policy.backoff}s"
            )
            self._update(
                attempt=attempt,
                consecutive_failures=failures,
                user_visible_error=f"{policy.message} (Retry {failures}/{self.max_retries})",
            )
            return policy.backoff

        logger.error(f"Arrivals for station {station_id} failed ({kind.value}) after {failures} attempts: {error}")
        self._update(
            attempt=attempt,
            consecutive_failures=failures,
            user_visible_error=policy.message,
            phase=Phase.SETTLED,
        )
        return None

    def _update(self, **changes) -> None:
        self._state = replace(self._state, **changes)
        self._snapshot = ArrivalSnapshot.from_state(self._state)
        for listener in list(self._listeners):
            try:
                listener(self._snapshot)
            except Exception:
                logger.exception("Snapshot listener failed")
        if self._state.phase is not Phase.FETCHING:
            self._release_waiters()

    def _release_waiters(self) -> None:
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)
