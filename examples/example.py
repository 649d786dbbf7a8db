"""Example usage of StationTracker: a live console arrival board."""

import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path

# Add src to path so we can import chitrack
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from chitrack import ArrivalSnapshot, StationTracker

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def print_snapshot(snapshot: ArrivalSnapshot):
    """Render one snapshot to the console."""
    now = datetime.now()
    print(f"\n{'='*70}")
    status = "refreshing..." if snapshot.loading else "up to date"
    print(f"Station {snapshot.station_id} ({status})")
    if snapshot.last_updated:
        print(f"Last updated: {snapshot.last_updated.strftime('%H:%M:%S')}")
    if snapshot.error:
        print(f"! {snapshot.error}")
    print("-" * 70)

    if snapshot.data:
        for arrival in snapshot.data:
            due = "Due" if arrival.is_approaching else f"{arrival.minutes_away(now)} min"
            delayed = " (delayed)" if arrival.is_delayed else ""
            scheduled = " (scheduled)" if arrival.is_scheduled else ""
            print(f"  {arrival.route_code:5s} {arrival.destination:30s} {due}{delayed}{scheduled}")
    elif not snapshot.loading:
        print("  No upcoming arrivals")


async def watch(station_input: str, minutes: float):
    """
    Follow arrivals for a station for a while.

    Args:
        station_input: Station name or map id (e.g., "Clark/Lake" or "40380")
        minutes: How long to keep refreshing.
    """
    tracker = StationTracker()
    try:
        # the station download blocks and retries with time.sleep
        listing = await asyncio.to_thread(tracker.stations)
        if listing.unavailable:
            print(f"Station list unavailable: {listing.error}")
            return

        station = tracker.get_station(station_input)
        print(f"Watching {station.station_name} ({station.station_id})")

        tracker.orchestrator.add_listener(print_snapshot)
        tracker.select(station)
        await asyncio.sleep(minutes * 60)
    except ValueError as e:
        print(f"Error: {e}")
        matching = tracker.search(station_input)
        if matching:
            print("\nDid you mean:")
            for candidate in matching[:5]:
                print(f"  - {candidate.station_name} ({candidate.station_id})")
    finally:
        await tracker.close()


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python examples/example.py <station name or id>")
        sys.exit(1)
    try:
        asyncio.run(watch(" ".join(sys.argv[1:]), minutes=5))
    except KeyboardInterrupt:
        print("\nGoodbye!")
