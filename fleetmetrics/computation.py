"""Per-vehicle and per-task metrics computations.

Each computation fetches plain value objects from its collaborators, runs the
pure segmentation and aggregation pipeline, and only writes once every record
for the unit has been computed, so a cancelled or timed-out unit never leaves
a partial result behind.
"""

import logging
import threading
import time
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Iterable, List, Optional, Tuple

from .aggregation import aggregate, build_metrics_record
from .config import (CANCEL_CHECK_EVERY, DEFAULT_EXPECTED_DAILY_WORK_HOURS, LOCK_EXPIRE_SECONDS,
                     LOCK_WAIT_SECONDS, MAX_GAP_SECONDS)
from .entities import (EfficiencyChart, GpsSample, MetricsKey, MetricsRecord, Task,
                       TaskState, Vehicle)
from .errors import ComputationCancelled, UnitTimeoutError, VehicleNotFoundError
from .events import EventPublisher, safe_publish, zone_status
from .geofence import Polygon, contains
from .locks import LockProvider, vehicle_lock
from .segmentation import SegmentationSummary, segment
from .task_status import TaskStatusEvaluator, TaskTransition

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag plus an optional wall-clock deadline.

    Tokens derived with ``with_timeout`` share the cancel flag of their parent,
    so cancelling a fleet run reaches every unit attempt spawned from it.
    """

    def __init__(self, event: Optional[threading.Event] = None,
                 deadline: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        self._event = event if event is not None else threading.Event()
        self.deadline = deadline
        self.clock = clock

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        self._event.set()

    def with_timeout(self, seconds: Optional[float]) -> "CancellationToken":
        deadline = self.clock() + seconds if seconds else None
        return CancellationToken(self._event, deadline, self.clock)

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise ComputationCancelled("computation cancelled")
        if self.deadline is not None and self.clock() >= self.deadline:
            raise UnitTimeoutError("computation ran past its deadline")

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True early if cancelled meanwhile."""
        return self._event.wait(seconds)


@dataclass
class VehicleDayResult:
    vehicle_id: int
    date: date
    daily: Optional[MetricsRecord] = None
    tasks: List[MetricsRecord] = field(default_factory=list)
    chart: Optional[EfficiencyChart] = None
    transitions: List[TaskTransition] = field(default_factory=list)


@dataclass
class TaskResult:
    task_id: int
    record: Optional[MetricsRecord]
    transition: TaskTransition


@dataclass
class ReportCycleResult:
    vehicle_id: int
    task: Optional[Task] = None
    record: Optional[MetricsRecord] = None
    is_in_zone: Optional[bool] = None
    transition: Optional[TaskTransition] = None


def _zone_occupancy(summary: SegmentationSummary, zone: Optional[Polygon]) -> Optional[bool]:
    if summary.latest_coordinate is None or zone is None:
        return None
    return contains(summary.latest_coordinate, zone)


class _MetricsComputation:
    """Shared wiring: collaborators and the segment → aggregate → record pipeline."""

    def __init__(self, vehicles, points, tasks, sink,
                 evaluator: Optional[TaskStatusEvaluator] = None,
                 clock: Callable[[], datetime] = datetime.now,
                 max_gap_seconds: float = MAX_GAP_SECONDS,
                 default_expected_hours: float = DEFAULT_EXPECTED_DAILY_WORK_HOURS,
                 check_every: int = CANCEL_CHECK_EVERY):
        self.vehicles = vehicles
        self.points = points
        self.tasks = tasks
        self.sink = sink
        self.evaluator = evaluator or TaskStatusEvaluator(clock=clock)
        self.clock = clock
        self.max_gap_seconds = max_gap_seconds
        self.default_expected_hours = default_expected_hours
        self.check_every = check_every

    def _compute(self, key: MetricsKey, samples: Iterable[GpsSample], zone: Optional[Polygon],
                 expected_sec: float, token: CancellationToken
                 ) -> Tuple[Optional[MetricsRecord], SegmentationSummary]:
        segments, summary = segment(
            samples,
            zone=zone,
            max_gap_seconds=self.max_gap_seconds,
            checkpoint=token.raise_if_cancelled,
            check_every=self.check_every
        )
        if summary.total_records == 0:
            return None, summary

        distance = aggregate(segments)
        del segments
        return build_metrics_record(key, summary, distance, expected_sec), summary

    def _compute_task(self, vehicle: Vehicle, task: Task, token: CancellationToken,
                      until: Optional[datetime] = None
                      ) -> Tuple[Optional[MetricsRecord], SegmentationSummary, Optional[bool]]:
        zone = self.tasks.zone_of(task)
        if zone is None:
            logger.warning("Task %s has no zone; no in-zone credit", task.id)
            return None, SegmentationSummary(), None

        start, end = task.window()
        if until is not None:
            end = min(end, until)
        record, summary = self._compute(
            task_key(task),
            self.points.points(vehicle.id, start, end),
            zone,
            vehicle.expected_daily_work_seconds(self.default_expected_hours),
            token
        )
        return record, summary, _zone_occupancy(summary, zone)

    def _store(self, key: MetricsKey, record: Optional[MetricsRecord]):
        """Replace whatever is stored under ``key``; no record clears a stale one."""
        if record is not None:
            self.sink.upsert(record)
        else:
            self.sink.delete(key)


def task_key(task: Task) -> MetricsKey:
    return MetricsKey(vehicle_id=task.vehicle_id, date=task.date, task_id=task.id)


class VehicleDayComputation(_MetricsComputation):
    """One fleet unit: the daily record, every task record and the efficiency chart.

    The caller holds the vehicle's lease; fleet units take it in the orchestrator.
    """

    def __init__(self, vehicles, points, tasks, sink, chart_sink=None, **kwargs):
        super().__init__(vehicles, points, tasks, sink, **kwargs)
        self.chart_sink = chart_sink

    def run(self, vehicle_id: int, day: date,
            token: Optional[CancellationToken] = None) -> VehicleDayResult:
        token = token or CancellationToken()
        token.raise_if_cancelled()

        vehicle = self.vehicles.get_vehicle(vehicle_id)
        expected_sec = vehicle.expected_daily_work_seconds(self.default_expected_hours)
        result = VehicleDayResult(vehicle_id=vehicle_id, date=day)

        daily_key = MetricsKey(vehicle_id=vehicle_id, date=day)
        start, end = vehicle.work_window(day)
        result.daily, _ = self._compute(
            daily_key,
            self.points.points(vehicle_id, start, end),
            None,
            expected_sec,
            token
        )

        writes = [(daily_key, result.daily)]
        evaluations = []
        for task in self.tasks.tasks_for_date(vehicle_id, day):
            record, summary, is_in_zone = self._compute_task(vehicle, task, token)
            if record is not None:
                result.tasks.append(record)
            writes.append((task_key(task), record))
            evaluations.append((task, is_in_zone, summary.in_zone_movement_sec))

        result.chart = self._chart(vehicle_id, day, result)

        # Last chance to abort before anything is written
        token.raise_if_cancelled()

        if result.daily is None:
            logger.info("No samples for vehicle %s on %s; daily record skipped", vehicle_id, day)
        for key, record in writes:
            self._store(key, record)
        if self.chart_sink is not None:
            self.chart_sink.upsert_efficiency_chart(result.chart)

        for task, is_in_zone, in_zone_sec in evaluations:
            result.transitions.append(self.evaluator.evaluate(
                task, is_in_zone=is_in_zone, in_zone_movement_sec=in_zone_sec, vehicle=vehicle
            ))
        return result

    @staticmethod
    def _chart(vehicle_id: int, day: date, result: VehicleDayResult) -> EfficiencyChart:
        total = round(result.daily.efficiency_percent, 2) if result.daily is not None else 0.0
        worked = [r.efficiency_percent for r in result.tasks if r.work_duration_sec > 0]
        task_based = round(sum(worked) / len(worked), 2) if worked else 0.0
        return EfficiencyChart(
            vehicle_id=vehicle_id,
            date=day,
            total_efficiency=total,
            task_based_efficiency=task_based
        )


class _LockedComputation(_MetricsComputation):
    """On-demand computations that take the vehicle's lease themselves."""

    def __init__(self, vehicles, points, tasks, sink,
                 lock_provider: Optional[LockProvider] = None,
                 lock_expire_seconds: float = LOCK_EXPIRE_SECONDS,
                 lock_wait_seconds: float = LOCK_WAIT_SECONDS,
                 **kwargs):
        super().__init__(vehicles, points, tasks, sink, **kwargs)
        self.lock_provider = lock_provider
        self.lock_expire_seconds = lock_expire_seconds
        self.lock_wait_seconds = lock_wait_seconds

    def _vehicle_lock(self, vehicle_id):
        if self.lock_provider is None:
            return nullcontext()
        return vehicle_lock(self.lock_provider, vehicle_id,
                            self.lock_expire_seconds, self.lock_wait_seconds)


class TaskMetricsComputation(_LockedComputation):
    """On-demand recompute of a single task."""

    def run(self, task_id: int, token: Optional[CancellationToken] = None) -> TaskResult:
        token = token or CancellationToken()
        token.raise_if_cancelled()
        vehicle_id = self.tasks.get_task(task_id).vehicle_id

        with self._vehicle_lock(vehicle_id):
            # Re-read under the lease
            task = self.tasks.get_task(task_id)
            return self._recompute(task, token)

    def _recompute(self, task: Task, token: CancellationToken) -> TaskResult:
        try:
            vehicle = self.vehicles.get_vehicle(task.vehicle_id)
        except VehicleNotFoundError:
            logger.warning("No vehicle found for task %s", task.id)
            self._store(task_key(task), None)
            transition = self.evaluator.evaluate(task, in_zone_movement_sec=0.0)
            return TaskResult(task_id=task.id, record=None, transition=transition)

        record, summary, is_in_zone = self._compute_task(vehicle, task, token)
        token.raise_if_cancelled()
        if record is None:
            logger.info("No usable samples for task %s", task.id)
        self._store(task_key(task), record)

        transition = self.evaluator.evaluate(
            task,
            is_in_zone=is_in_zone,
            in_zone_movement_sec=summary.in_zone_movement_sec,
            vehicle=vehicle
        )
        return TaskResult(task_id=task.id, record=record, transition=transition)

    def finalize_ended_tasks(self, vehicle_id: int, day: date) -> List[TaskResult]:
        """Recompute and settle every open task of the date whose window has elapsed."""
        now = self.clock()
        results = []
        for task in self.tasks.tasks_for_date(vehicle_id, day):
            if TaskState(task.status).is_terminal:
                continue
            _, end = task.window()
            if end > now:
                continue
            results.append(self.run(task.id))
        return results


class ReportCycleProcessor(_LockedComputation):
    """Live ingestion hook: refresh the current task and its zone status."""

    def __init__(self, vehicles, points, tasks, sink,
                 publisher: Optional[EventPublisher] = None, **kwargs):
        super().__init__(vehicles, points, tasks, sink, **kwargs)
        self.publisher = publisher

    def process(self, vehicle_id: int) -> ReportCycleResult:
        now = self.clock()
        with self._vehicle_lock(vehicle_id):
            vehicle = self.vehicles.get_vehicle(vehicle_id)
            task = self.tasks.current_task(vehicle_id, now)
            if task is None:
                logger.debug("Vehicle %s has no active task at %s", vehicle_id, now)
                return ReportCycleResult(vehicle_id=vehicle_id)

            record, summary, is_in_zone = self._compute_task(
                vehicle, task, CancellationToken(), until=now
            )
            self._store(task_key(task), record)

            transition = self.evaluator.evaluate(
                task,
                is_in_zone=is_in_zone,
                in_zone_movement_sec=summary.in_zone_movement_sec,
                vehicle=vehicle,
                now=now
            )
        if not transition.changed and is_in_zone is not None:
            safe_publish(self.publisher, zone_status(
                vehicle, task, is_in_zone, summary.in_zone_movement_sec
            ))
        return ReportCycleResult(
            vehicle_id=vehicle_id,
            task=task,
            record=record,
            is_in_zone=is_in_zone,
            transition=transition
        )
