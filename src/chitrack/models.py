"""Data models for the ChiTrack arrival tracker."""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class StationStop:
    """A platform within a station, e.g. "Service toward Loop"."""
    stop_id: str
    direction_name: str


@dataclass(frozen=True)
class Station:
    """Represents a CTA 'L' station (the parent of its platforms)."""
    station_id: str  # 4xxxx map id
    station_name: str
    coordinates: Optional[Tuple[float, float]] = None  # (lat, lon)
    stops: Tuple[StationStop, ...] = ()


@dataclass(frozen=True)
class ArrivalPrediction:
    """A single predicted train arrival at a station."""
    route_code: str  # Red, Blue, Brn, G, Org, P, Pink, Y
    destination: str
    predicted_arrival_time: datetime
    is_delayed: bool = False
    stop_id: Optional[str] = None
    stop_description: Optional[str] = None
    is_approaching: bool = False
    run_number: Optional[str] = None
    is_scheduled: bool = False  # timetable estimate, no live tracking

    def minutes_away(self, now: Optional[datetime] = None) -> int:
        """Whole minutes until arrival, rounded up; 0 once the train is due."""
        now = now or datetime.now()
        seconds_away = (self.predicted_arrival_time - now).total_seconds()
        if seconds_away <= 0:
            return 0
        return math.ceil(seconds_away / 60)


@dataclass(frozen=True)
class ArrivalSet:
    """All predictions fetched for one station in one request."""
    station_id: str
    predictions: Tuple[ArrivalPrediction, ...]
    fetched_at: datetime

    def __post_init__(self):
        ordered = tuple(sorted(self.predictions, key=lambda p: p.predicted_arrival_time))
        object.__setattr__(self, "predictions", ordered)

    def by_stop(self, limit: Optional[int] = None) -> Dict[str, List[ArrivalPrediction]]:
        """
        Group predictions by platform.

        Args:
            limit: Keep at most this many predictions per platform.

        Returns:
            Dictionary keyed by platform description (or stop id), each list
            in arrival order.
        """
        grouped: Dict[str, List[ArrivalPrediction]] = {}
        for prediction in self.predictions:
            key = prediction.stop_description or prediction.stop_id or ""
            bucket = grouped.setdefault(key, [])
            if limit is None or len(bucket) < limit:
                bucket.append(prediction)
        return grouped


class FailureKind(Enum):
    """Classification of a failed arrivals fetch."""
    TIMEOUT = "timeout"
    UPSTREAM_OVERLOAD = "upstream_overload"
    NETWORK = "network"
    UNKNOWN = "unknown"


class Outcome(Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


class Phase(Enum):
    """Orchestrator lifecycle phase."""
    IDLE = "idle"
    FETCHING = "fetching"
    SETTLED = "settled"


@dataclass(frozen=True)
class FetchAttempt:
    """One attempt of one fetch cycle. Never persisted."""
    station_id: str
    attempt_number: int
    started_at: datetime
    outcome: Outcome = Outcome.PENDING
    arrival_set: Optional[ArrivalSet] = None
    failure_kind: Optional[FailureKind] = None


@dataclass(frozen=True)
class OrchestratorState:
    active_station_id: Optional[str] = None
    current_arrival_set: Optional[ArrivalSet] = None
    attempt: Optional[FetchAttempt] = None
    consecutive_failures: int = 0
    user_visible_error: Optional[str] = None
    phase: Phase = Phase.IDLE


@dataclass(frozen=True)
class ArrivalSnapshot:
    """What the display layer renders. Data and error may both be present."""
    station_id: Optional[str]
    data: Tuple[ArrivalPrediction, ...] = ()
    loading: bool = False
    error: Optional[str] = None
    last_updated: Optional[datetime] = None

    @classmethod
    def from_state(cls, state: OrchestratorState) -> "ArrivalSnapshot":
        arrival_set = state.current_arrival_set
        return cls(
            station_id=state.active_station_id,
            data=arrival_set.predictions if arrival_set else (),
            loading=state.phase is Phase.FETCHING,
            error=state.user_visible_error,
            last_updated=arrival_set.fetched_at if arrival_set else None,
        )


@dataclass(frozen=True)
class StationListing:
    """Station list as shown to the user, with an error when the directory is down."""
    stations: Tuple[Station, ...] = field(default_factory=tuple)
    error: Optional[str] = None

    @property
    def unavailable(self) -> bool:
        return self.error is not None
