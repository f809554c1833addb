import threading
import pytest
from dataclasses import replace
from datetime import datetime, timedelta
from fleetmetrics.db import make_session_factory
from fleetmetrics.entities import GpsSample, TaskState
from fleetmetrics.errors import TaskNotFoundError, TransientIOError, VehicleNotFoundError
from fleetmetrics.events import RecordingEventPublisher
from fleetmetrics.geofence import Polygon

# Roughly 2.2 km square around the test track
ZONE = [(35.69, 51.39), (35.69, 51.41), (35.71, 51.41), (35.71, 51.39)]
# Same size, far away from the test track
FAR_ZONE = [(36.69, 52.39), (36.69, 52.41), (36.71, 52.41), (36.71, 52.39)]

def make_track(start, rows, lat=35.70, lon=51.40, step=0.0005):
    """Build samples from (offset_sec, speed_kph, powered_on) rows.

    Each row moves the position ``step`` degrees east of the previous one.
    """
    samples = []
    for index, (offset, speed, powered_on) in enumerate(rows):
        samples.append(GpsSample(
            lat=lat,
            lon=lon + index * step,
            speed_kph=speed,
            powered_on=powered_on,
            timestamp=start + timedelta(seconds=offset)
        ))
    return samples


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeFleet:
    """In-memory vehicle directory, point source, task provider and metrics sink."""

    def __init__(self):
        self.vehicles = {}
        self.samples = {}
        self.tasks = {}
        self.records = {}
        self.charts = {}
        self.upsert_count = 0
        self.point_calls = {}
        self.failures = {}
        self.on_points = None
        self.listed_ids = None
        self._lock = threading.Lock()

    def add_vehicle(self, vehicle, samples=()):
        self.vehicles[vehicle.id] = vehicle
        self.samples[vehicle.id] = list(samples)

    def add_task(self, task):
        self.tasks[task.id] = task

    def fail_points(self, vehicle_id, times=None):
        """Make point reads for a vehicle raise TransientIOError (forever when times is None)."""
        self.failures[vehicle_id] = times

    # Vehicle directory

    def vehicle_ids(self):
        if self.listed_ids is not None:
            return list(self.listed_ids)
        return sorted(self.vehicles)

    def get_vehicle(self, vehicle_id):
        if vehicle_id not in self.vehicles:
            raise VehicleNotFoundError(vehicle_id)
        return self.vehicles[vehicle_id]

    # Point source

    def points(self, vehicle_id, window_start, window_end):
        with self._lock:
            self.point_calls[vehicle_id] = self.point_calls.get(vehicle_id, 0) + 1
            if vehicle_id in self.failures:
                remaining = self.failures[vehicle_id]
                if remaining is None or remaining > 0:
                    if remaining is not None:
                        self.failures[vehicle_id] = remaining - 1
                    raise TransientIOError(f"point source down for vehicle {vehicle_id}")
        if self.on_points is not None:
            self.on_points(vehicle_id)
        return iter([s for s in self.samples.get(vehicle_id, [])
                     if window_start <= s.timestamp <= window_end])

    # Task / zone provider

    def get_task(self, task_id):
        if task_id not in self.tasks:
            raise TaskNotFoundError(task_id)
        return self.tasks[task_id]

    def tasks_for_date(self, vehicle_id, day):
        return sorted((t for t in self.tasks.values() if t.vehicle_id == vehicle_id and t.date == day),
                      key=lambda t: (t.start_time, t.id))

    def current_task(self, vehicle_id, as_of):
        for task in self.tasks.values():
            start, end = task.window()
            if task.vehicle_id == vehicle_id and start <= as_of < end:
                return task
        return None

    def zone_of(self, task):
        if task is None:
            return None
        return Polygon.from_coordinates(task.zone)

    def update_task_status(self, task_id, status: TaskState):
        self.tasks[task_id] = replace(self.tasks[task_id], status=status)

    # Metrics sink

    def upsert(self, record):
        with self._lock:
            self.records[record.key] = record
            self.upsert_count += 1

    def delete(self, key):
        with self._lock:
            self.records.pop(key, None)

    def upsert_efficiency_chart(self, chart):
        with self._lock:
            self.charts[(chart.vehicle_id, chart.date)] = chart


@pytest.fixture
def fleet():
    return FakeFleet()

@pytest.fixture
def publisher():
    return RecordingEventPublisher()

@pytest.fixture
def session_factory():
    """Fresh in-memory database per test."""
    return make_session_factory("sqlite:///:memory:")
