"""Task lifecycle driven by zone occupancy and the task's time window.

    not_started -> in_progress <-> stopped -> done | not_done

``done`` and ``not_done`` are terminal. Every status change emits one
status-changed event; entering ``in_progress`` or ``stopped`` also emits a
zone-status event carrying the in-zone work duration so far.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .config import MIN_PRESENCE_PERCENT
from .entities import Task, TaskState, Vehicle
from .events import EventPublisher, safe_publish, task_status_changed, zone_status

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskTransition:
    task_id: int
    previous: TaskState
    status: TaskState

    @property
    def changed(self) -> bool:
        return self.previous is not self.status


class TaskStatusEvaluator:
    """Applies the transition rules and publishes the resulting events.

    ``status_writer`` persists a new status (e.g. ``SqlStore.update_task_status``);
    it is only called when the status actually changes.
    """

    def __init__(self, publisher: Optional[EventPublisher] = None,
                 status_writer: Optional[Callable[[int, TaskState], None]] = None,
                 clock: Callable[[], datetime] = datetime.now,
                 min_presence_percent: float = MIN_PRESENCE_PERCENT):
        self.publisher = publisher
        self.status_writer = status_writer
        self.clock = clock
        self.min_presence_percent = min_presence_percent

    def determine(self, task: Task, now: datetime, is_in_zone: Optional[bool],
                  in_zone_movement_sec: float) -> TaskState:
        """Pure transition function; ``is_in_zone`` is None when unknown."""
        current = TaskState(task.status)
        if current.is_terminal:
            return current

        start, end = task.window()
        if now < start:
            return TaskState.NOT_STARTED

        if now < end:
            if is_in_zone is True:
                return TaskState.IN_PROGRESS
            if is_in_zone is False and current is TaskState.IN_PROGRESS:
                return TaskState.STOPPED
            return current

        if in_zone_movement_sec <= 0:
            return TaskState.NOT_DONE
        if self.min_presence_percent > 0:
            window = task.window_seconds()
            presence = in_zone_movement_sec / window * 100 if window > 0 else 0.0
            if presence < self.min_presence_percent:
                return TaskState.NOT_DONE
        return TaskState.DONE

    def evaluate(self, task: Task, is_in_zone: Optional[bool] = None,
                 in_zone_movement_sec: float = 0.0,
                 vehicle: Optional[Vehicle] = None,
                 now: Optional[datetime] = None) -> TaskTransition:
        now = now if now is not None else self.clock()
        previous = TaskState(task.status)
        status = self.determine(task, now, is_in_zone, in_zone_movement_sec)
        transition = TaskTransition(task_id=task.id, previous=previous, status=status)
        if not transition.changed:
            return transition

        if self.status_writer is not None:
            self.status_writer(task.id, status)
        logger.info("Task %s (vehicle %s) moved from %s to %s",
                    task.id, task.vehicle_id, previous.value, status.value)

        safe_publish(self.publisher, task_status_changed(task, status, is_in_zone))
        if status in (TaskState.IN_PROGRESS, TaskState.STOPPED):
            safe_publish(self.publisher, zone_status(
                vehicle or Vehicle(id=task.vehicle_id),
                task,
                status is TaskState.IN_PROGRESS,
                in_zone_movement_sec,
            ))
        return transition
