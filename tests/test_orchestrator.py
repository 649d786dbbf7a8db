"""Tests for ArrivalOrchestrator."""

import asyncio
import unittest
from datetime import datetime, timedelta
import sys
from pathlib import Path

# Add src to path so we can import chitrack
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from chitrack.arrival_cache import ArrivalCache
from chitrack.exceptions import FetchTimeout, NetworkError, UpstreamStatusError
from chitrack.models import ArrivalPrediction, ArrivalSet, Outcome, Phase, Station
from chitrack.orchestrator import MAX_RETRIES, ArrivalOrchestrator
from chitrack.selection_bus import SelectionBus, StationSelected

T0 = datetime(2024, 5, 1, 8, 0, 0)

OVERLOAD_MESSAGE = "The server is taking too long to respond - please try again"


def arrivals(station_id: str, destination: str = "95th/Dan Ryan", fetched_at: datetime = T0) -> ArrivalSet:
    prediction = ArrivalPrediction(
        route_code="Red",
        destination=destination,
        predicted_arrival_time=fetched_at + timedelta(minutes=4),
        is_delayed=False,
    )
    return ArrivalSet(station_id=station_id, predictions=(prediction,), fetched_at=fetched_at)


class ScriptedFetcher:
    """Fetcher that plays back a list of results or exceptions."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def fetch_async(self, station_id):
        self.calls.append(station_id)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class ControlledFetcher:
    """Fetcher whose requests stay outstanding until the test resolves them."""

    def __init__(self):
        self.calls = []
        self.futures = []

    def fetch_async(self, station_id):
        self.calls.append(station_id)
        future = asyncio.get_running_loop().create_future()
        self.futures.append(future)
        return future


class FakeSleep:
    """Records delays; returns at once until ``block_after`` calls, then never returns."""

    def __init__(self, block_after=None, on_sleep=None):
        self.delays = []
        self.block_after = block_after
        self.on_sleep = on_sleep

    async def __call__(self, delay):
        self.delays.append(delay)
        if self.on_sleep is not None:
            self.on_sleep(delay)
        if self.block_after is not None and len(self.delays) > self.block_after:
            await asyncio.get_running_loop().create_future()
        await asyncio.sleep(0)


async def drain(rounds: int = 50):
    for _ in range(rounds):
        await asyncio.sleep(0)


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):

    def make(self, fetcher, **kwargs):
        kwargs.setdefault("refresh_interval", None)
        kwargs.setdefault("sleep", FakeSleep())
        orchestrator = ArrivalOrchestrator(fetcher, **kwargs)
        self.snapshots = []
        orchestrator.add_listener(self.snapshots.append)
        self.addAsyncCleanup(orchestrator.close)
        return orchestrator


class TestFetchLifecycle(OrchestratorTestCase):
    """Test success, retry and exhaustion paths."""

    async def test_idle_until_station_selected(self):
        orchestrator = self.make(ScriptedFetcher())
        self.assertIs(orchestrator.state.phase, Phase.IDLE)
        self.assertIsNone(orchestrator.snapshot.station_id)
        snapshot = await orchestrator.wait_until_settled()
        self.assertFalse(snapshot.loading)

    async def test_single_successful_fetch(self):
        """Test select -> one Red line arrival -> settled snapshot."""
        fetcher = ScriptedFetcher(arrivals("40380"))
        orchestrator = self.make(fetcher)

        orchestrator.select_station("40380")
        self.assertTrue(orchestrator.snapshot.loading)
        snapshot = await orchestrator.wait_until_settled()

        self.assertEqual(len(snapshot.data), 1)
        self.assertEqual(snapshot.data[0].route_code, "Red")
        self.assertEqual(snapshot.data[0].destination, "95th/Dan Ryan")
        self.assertFalse(snapshot.loading)
        self.assertIsNone(snapshot.error)
        self.assertEqual(snapshot.last_updated, T0)
        self.assertIs(orchestrator.state.phase, Phase.SETTLED)
        self.assertIs(orchestrator.state.attempt.outcome, Outcome.SUCCESS)

    async def test_success_is_cached(self):
        cache = ArrivalCache()
        fetcher = ScriptedFetcher(arrivals("40380"))
        orchestrator = self.make(fetcher, cache=cache)

        orchestrator.select_station("40380")
        await orchestrator.wait_until_settled()

        self.assertEqual(cache.get("40380"), arrivals("40380"))

    async def test_gateway_timeouts_then_success(self):
        """Test 504 twice then success shows Retry 1/2 and Retry 2/2 along the way."""
        sleep = FakeSleep()
        fetcher = ScriptedFetcher(
            UpstreamStatusError("40380", 504),
            UpstreamStatusError("40380", 504),
            arrivals("40380"),
        )
        orchestrator = self.make(fetcher, sleep=sleep)

        orchestrator.select_station("40380")
        snapshot = await orchestrator.wait_until_settled()

        errors = [s.error for s in self.snapshots if s.error]
        self.assertEqual(errors[0], f"{OVERLOAD_MESSAGE} (Retry 1/2)")
        self.assertEqual(errors[-1], f"{OVERLOAD_MESSAGE} (Retry 2/2)")
        self.assertIsNone(snapshot.error)
        self.assertEqual(len(snapshot.data), 1)
        self.assertFalse(snapshot.loading)
        self.assertEqual(len(fetcher.calls), 3)
        self.assertEqual(sleep.delays, [5.0, 5.0])
        self.assertEqual(orchestrator.state.consecutive_failures, 0)

    async def test_retry_cap(self):
        """Test the third failure is final and only a manual refresh tries again."""
        fetcher = ScriptedFetcher(
            FetchTimeout("40380", "slow"),
            FetchTimeout("40380", "slow"),
            FetchTimeout("40380", "slow"),
            arrivals("40380"),
        )
        orchestrator = self.make(fetcher)

        orchestrator.select_station("40380")
        snapshot = await orchestrator.wait_until_settled()
        await drain()

        self.assertEqual(len(fetcher.calls), MAX_RETRIES + 1)
        self.assertEqual(snapshot.error, "Request timed out - please try again")
        self.assertNotIn("Retry", snapshot.error)
        self.assertFalse(snapshot.loading)
        self.assertEqual(orchestrator.state.consecutive_failures, 3)
        self.assertIs(orchestrator.state.phase, Phase.SETTLED)

        orchestrator.manual_refresh()
        self.assertIsNone(orchestrator.snapshot.error)
        self.assertEqual(orchestrator.state.consecutive_failures, 0)
        snapshot = await orchestrator.wait_until_settled()

        self.assertEqual(len(fetcher.calls), 4)
        self.assertIsNone(snapshot.error)
        self.assertEqual(len(snapshot.data), 1)

    async def test_stale_data_stays_visible(self):
        """Test a failed refresh keeps the last good data next to the error."""
        good = arrivals("40380")
        fetcher = ScriptedFetcher(good, NetworkError("40380", "offline"))
        orchestrator = self.make(fetcher, max_retries=0)

        orchestrator.select_station("40380")
        await orchestrator.wait_until_settled()

        orchestrator.manual_refresh()
        refreshing = orchestrator.snapshot
        self.assertTrue(refreshing.loading)
        self.assertEqual(refreshing.data, good.predictions)

        snapshot = await orchestrator.wait_until_settled()
        self.assertEqual(snapshot.data, good.predictions)
        self.assertEqual(snapshot.error, "Network error - please check your connection")
        self.assertEqual(snapshot.last_updated, T0)

    async def test_attempt_numbers(self):
        fetcher = ScriptedFetcher(NetworkError("40380", "offline"), arrivals("40380"))
        orchestrator = self.make(fetcher)
        attempts = []
        orchestrator.add_listener(lambda s: attempts.append(orchestrator.state.attempt.attempt_number))

        orchestrator.select_station("40380")
        await orchestrator.wait_until_settled()

        self.assertEqual(attempts[0], 1)
        self.assertIn(2, attempts)

    async def test_manual_refresh_requires_station(self):
        orchestrator = self.make(ScriptedFetcher())
        with self.assertRaises(RuntimeError):
            orchestrator.manual_refresh()

    async def test_closed_orchestrator_rejects_selection(self):
        orchestrator = self.make(ScriptedFetcher())
        await orchestrator.close()
        with self.assertRaises(RuntimeError):
            orchestrator.select_station("40380")

    async def test_broken_listener_is_isolated(self):
        orchestrator = self.make(ScriptedFetcher(arrivals("40380")))
        orchestrator.add_listener(lambda s: 1 / 0)

        with self.assertLogs("chitrack.orchestrator", level="ERROR"):
            orchestrator.select_station("40380")
            snapshot = await orchestrator.wait_until_settled()

        self.assertEqual(len(snapshot.data), 1)

    async def test_remove_listener(self):
        orchestrator = self.make(ScriptedFetcher(arrivals("40380")))
        received = []
        remove = orchestrator.add_listener(received.append)
        remove()

        orchestrator.select_station("40380")
        await orchestrator.wait_until_settled()

        self.assertEqual(received, [])


class TestStationSwitching(OrchestratorTestCase):
    """Test selection semantics and the stale-response guard."""

    async def test_late_success_for_previous_station_is_dropped(self):
        """Test A's late result never reaches the display once B is active."""
        fetcher = ControlledFetcher()
        orchestrator = self.make(fetcher)

        orchestrator.select_station("A")
        await drain()
        orchestrator.select_station("B")
        await drain()
        self.assertEqual(fetcher.calls, ["A", "B"])

        fetcher.futures[0].set_result(arrivals("A", destination="Howard"))
        await drain()

        self.assertEqual(orchestrator.snapshot.station_id, "B")
        self.assertEqual(orchestrator.snapshot.data, ())
        self.assertIsNone(orchestrator.state.current_arrival_set)
        self.assertTrue(orchestrator.snapshot.loading)

        fetcher.futures[1].set_result(arrivals("B"))
        snapshot = await orchestrator.wait_until_settled()
        self.assertEqual(snapshot.data[0].destination, "95th/Dan Ryan")
        self.assertEqual(orchestrator.state.current_arrival_set.station_id, "B")

    async def test_late_failure_for_previous_station_is_dropped(self):
        fetcher = ControlledFetcher()
        orchestrator = self.make(fetcher)

        orchestrator.select_station("A")
        await drain()
        orchestrator.select_station("B")
        await drain()

        fetcher.futures[0].set_exception(UpstreamStatusError("A", 504))
        await drain()

        self.assertIsNone(orchestrator.snapshot.error)
        self.assertEqual(orchestrator.state.consecutive_failures, 0)
        self.assertEqual(fetcher.calls, ["A", "B"])

    async def test_reselecting_active_station_is_noop(self):
        """Test selecting A twice while A is outstanding issues one request."""
        fetcher = ControlledFetcher()
        orchestrator = self.make(fetcher)

        orchestrator.select_station("A")
        orchestrator.select_station("A")
        await drain()

        self.assertEqual(fetcher.calls, ["A"])

    async def test_returning_to_station_shares_outstanding_request(self):
        """Test A -> B -> A while A is outstanding does not request A again."""
        fetcher = ControlledFetcher()
        orchestrator = self.make(fetcher)

        orchestrator.select_station("A")
        await drain()
        orchestrator.select_station("B")
        await drain()
        orchestrator.select_station("A")
        await drain()
        self.assertEqual(fetcher.calls, ["A", "B"])

        fetcher.futures[0].set_result(arrivals("A"))
        snapshot = await orchestrator.wait_until_settled()

        self.assertEqual(snapshot.station_id, "A")
        self.assertEqual(len(snapshot.data), 1)

    async def test_manual_refresh_during_fetch_shares_request(self):
        fetcher = ControlledFetcher()
        orchestrator = self.make(fetcher)

        orchestrator.select_station("A")
        await drain()
        orchestrator.manual_refresh()
        await drain()

        self.assertEqual(fetcher.calls, ["A"])
        fetcher.futures[0].set_result(arrivals("A"))
        snapshot = await orchestrator.wait_until_settled()
        self.assertEqual(len(snapshot.data), 1)

    async def test_switch_resets_failures_and_error(self):
        """Test a station switch clears the previous station's failures."""
        fetcher = ScriptedFetcher(
            NetworkError("A", "offline"),
            NetworkError("A", "offline"),
            NetworkError("A", "offline"),
        )
        orchestrator = self.make(fetcher)
        orchestrator.select_station("A")
        await orchestrator.wait_until_settled()
        self.assertEqual(orchestrator.state.consecutive_failures, 3)

        fetcher.outcomes.append(arrivals("B"))
        orchestrator.select_station("B")

        self.assertEqual(orchestrator.state.consecutive_failures, 0)
        self.assertIsNone(orchestrator.snapshot.error)
        await orchestrator.wait_until_settled()

    async def test_cached_data_shown_immediately_and_refetched(self):
        """Test a cached set for the new station is visible while it is fetched again."""
        cache = ArrivalCache()
        cached = arrivals("B", destination="Loop")
        cache.put("B", cached)
        fetcher = ControlledFetcher()
        orchestrator = self.make(fetcher, cache=cache)

        orchestrator.select_station("B")

        self.assertEqual(orchestrator.snapshot.data, cached.predictions)
        self.assertTrue(orchestrator.snapshot.loading)
        await drain()
        self.assertEqual(fetcher.calls, ["B"])

        fresh = arrivals("B", destination="Kimball", fetched_at=T0 + timedelta(seconds=30))
        fetcher.futures[0].set_result(fresh)
        snapshot = await orchestrator.wait_until_settled()
        self.assertEqual(snapshot.data, fresh.predictions)

    async def test_switch_without_cache_clears_previous_data(self):
        fetcher = ScriptedFetcher(arrivals("A"))
        orchestrator = self.make(fetcher)
        orchestrator.select_station("A")
        await orchestrator.wait_until_settled()

        fetcher.outcomes.append(arrivals("B"))
        orchestrator.select_station("B")

        self.assertEqual(orchestrator.snapshot.data, ())
        self.assertIsNone(orchestrator.snapshot.last_updated)
        await orchestrator.wait_until_settled()

    async def test_bus_selection(self):
        """Test StationSelected events drive the orchestrator."""
        bus = SelectionBus()
        orchestrator = self.make(ScriptedFetcher(arrivals("40380")))
        orchestrator.attach(bus)

        bus.publish(StationSelected(Station(station_id="40380", station_name="Clark/Lake")))

        self.assertEqual(orchestrator.active_station_id, "40380")
        await orchestrator.wait_until_settled()

        orchestrator.detach()
        self.assertEqual(bus.subscriber_count(StationSelected), 0)

    async def test_close_unsubscribes_from_bus(self):
        bus = SelectionBus()
        orchestrator = self.make(ScriptedFetcher())
        orchestrator.attach(bus)
        await orchestrator.close()
        self.assertEqual(bus.subscriber_count(StationSelected), 0)


class TestPeriodicRefresh(OrchestratorTestCase):
    """Test refreshing after a successful fetch."""

    async def test_refreshes_after_interval(self):
        sleep = FakeSleep(block_after=1)
        second = arrivals("40380", destination="Howard", fetched_at=T0 + timedelta(seconds=30))
        fetcher = ScriptedFetcher(arrivals("40380"), second)
        orchestrator = self.make(fetcher, refresh_interval=30.0, sleep=sleep)

        orchestrator.select_station("40380")
        await drain()

        self.assertEqual(fetcher.calls, ["40380", "40380"])
        self.assertEqual(sleep.delays, [30.0, 30.0])
        self.assertEqual(orchestrator.snapshot.data, second.predictions)
        self.assertFalse(orchestrator.snapshot.loading)

    async def test_fresh_cache_skips_network(self):
        """Test a refresh reuses a set another caller cached within the freshness window."""
        now = T0 + timedelta(minutes=5)
        cache = ArrivalCache(clock=lambda: now)
        fresh = arrivals("40380", destination="Kimball", fetched_at=now)

        def publish_fresh(delay):
            if len(sleep.delays) == 1:
                cache.put("40380", fresh)

        sleep = FakeSleep(block_after=1, on_sleep=publish_fresh)
        fetcher = ScriptedFetcher(arrivals("40380"))
        orchestrator = self.make(
            fetcher,
            cache=cache,
            refresh_interval=30.0,
            freshness_window=15.0,
            sleep=sleep,
            clock=lambda: now,
        )

        orchestrator.select_station("40380")
        await drain()

        self.assertEqual(fetcher.calls, ["40380"])
        self.assertEqual(orchestrator.snapshot.data, fresh.predictions)

    async def test_no_refresh_after_exhaustion(self):
        sleep = FakeSleep()
        fetcher = ScriptedFetcher(*[NetworkError("40380", "offline")] * 3)
        orchestrator = self.make(fetcher, refresh_interval=30.0, sleep=sleep)

        orchestrator.select_station("40380")
        await orchestrator.wait_until_settled()
        await drain()

        self.assertEqual(len(fetcher.calls), 3)
        self.assertNotIn(30.0, sleep.delays)


class TestWithoutEventLoop(unittest.TestCase):
    """Test selection attempted from synchronous code."""

    def test_select_outside_loop_leaves_state_untouched(self):
        """Test a failed selection can be repeated once a loop is running."""
        fetcher = ScriptedFetcher(arrivals("40380"))
        orchestrator = ArrivalOrchestrator(fetcher, refresh_interval=None, sleep=FakeSleep())
        snapshots = []
        orchestrator.add_listener(snapshots.append)

        with self.assertRaises(RuntimeError):
            orchestrator.select_station("40380")

        self.assertIsNone(orchestrator.active_station_id)
        self.assertIs(orchestrator.state.phase, Phase.IDLE)
        self.assertEqual(snapshots, [])

        async def select_and_settle():
            orchestrator.select_station("40380")
            snapshot = await asyncio.wait_for(orchestrator.wait_until_settled(), 2)
            await orchestrator.close()
            return snapshot

        snapshot = asyncio.run(select_and_settle())

        self.assertEqual(fetcher.calls, ["40380"])
        self.assertEqual(snapshot.station_id, "40380")
        self.assertEqual(len(snapshot.data), 1)
        self.assertFalse(snapshot.loading)


if __name__ == "__main__":
    unittest.main()
