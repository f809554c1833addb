"""Plain value objects passed between the engine and its collaborators.

Everything the computation needs is fetched up front into these objects, so
segmentation, aggregation and status evaluation never trigger hidden I/O.
"""

from dataclasses import dataclass, field, asdict
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class GpsSample:
    """A single GPS report.

    Attributes:
        lat: Latitude in decimal degrees.
        lon: Longitude in decimal degrees.
        speed_kph: Reported speed in km/h, never negative.
        powered_on: Engine/device power flag reported with the sample.
        timestamp: When the sample was taken.
    """

    lat: float
    lon: float
    speed_kph: float
    powered_on: bool
    timestamp: datetime

    @property
    def coordinate(self) -> Tuple[float, float]:
        return (self.lat, self.lon)


class SegmentKind(str, Enum):
    MOVING = "moving"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Segment:
    """A run of consecutive sample pairs sharing kind, zone and power state."""

    kind: SegmentKind
    in_zone: bool
    powered_on: bool
    start_ts: datetime
    end_ts: datetime
    distance_meters: float = 0.0

    @property
    def duration_sec(self) -> float:
        return (self.end_ts - self.start_ts).total_seconds()


def _window(day: date, start: time, end: time) -> Tuple[datetime, datetime]:
    start_dt = datetime.combine(day, start)
    end_dt = datetime.combine(day, end)
    # Windows whose end precedes their start finish on the following day
    if end_dt < start_dt:
        end_dt += timedelta(days=1)
    return start_dt, end_dt


@dataclass(frozen=True)
class Vehicle:
    id: int
    device_id: Optional[str] = None
    name: Optional[str] = None
    expected_daily_work_hours: Optional[float] = None
    start_work_time: Optional[time] = None
    end_work_time: Optional[time] = None

    def work_window(self, day: date) -> Tuple[datetime, datetime]:
        """Daily summary window: the configured work hours, else the whole day."""
        if self.start_work_time is not None and self.end_work_time is not None:
            return _window(day, self.start_work_time, self.end_work_time)
        return datetime.combine(day, time.min), datetime.combine(day, time.max)

    def expected_daily_work_seconds(self, default_hours: float) -> float:
        hours = self.expected_daily_work_hours
        if hours is None:
            hours = default_hours
        return hours * 3600.0


class TaskState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    STOPPED = "stopped"
    DONE = "done"
    NOT_DONE = "not_done"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.DONE, TaskState.NOT_DONE)


@dataclass(frozen=True)
class Task:
    """A work assignment: one vehicle, one zone, one time window on one date."""

    id: int
    vehicle_id: int
    name: str
    date: date
    start_time: time
    end_time: time
    status: TaskState = TaskState.NOT_STARTED
    zone: Optional[List[Tuple[float, float]]] = None

    def window(self) -> Tuple[datetime, datetime]:
        return _window(self.date, self.start_time, self.end_time)

    def window_seconds(self) -> float:
        start, end = self.window()
        return (end - start).total_seconds()


@dataclass(frozen=True)
class MetricsKey:
    vehicle_id: int
    date: date
    task_id: Optional[int] = None


@dataclass(frozen=True)
class MetricsRecord:
    """The durable aggregate for one (vehicle, date, task-or-null) key."""

    key: MetricsKey
    traveled_distance_km: float = 0.0
    work_duration_sec: float = 0.0
    stoppage_count: int = 0
    stoppage_duration_sec: float = 0.0
    stoppage_duration_while_on_sec: float = 0.0
    stoppage_duration_while_off_sec: float = 0.0
    average_speed_kph: float = 0.0
    efficiency_percent: float = 0.0
    timings: Dict[str, Optional[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        data = asdict(self)
        key = data.pop("key")
        data["vehicle_id"] = key["vehicle_id"]
        data["date"] = key["date"].isoformat()
        data["task_id"] = key["task_id"]
        return data


@dataclass(frozen=True)
class EfficiencyChart:
    vehicle_id: int
    date: date
    total_efficiency: float
    task_based_efficiency: float
