"""Status and zone notifications handed to downstream subscribers."""

import logging
from typing import Dict, List, Optional, Protocol

from .entities import Task, TaskState, Vehicle

logger = logging.getLogger(__name__)

TASK_STATUS_CHANGED = "task_status_changed"
ZONE_STATUS = "zone_status"


def format_duration(seconds: float) -> str:
    """Format seconds as HH:MM:SS."""
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def task_status_changed(task: Task, status: TaskState, is_in_zone: Optional[bool] = None) -> Dict:
    return {
        "type": TASK_STATUS_CHANGED,
        "payload": {
            "task_id": task.id,
            "vehicle_id": task.vehicle_id,
            "status": status.value,
            "is_in_zone": is_in_zone,
        }
    }


def zone_status(vehicle: Vehicle, task: Optional[Task], is_in_zone: bool,
                work_duration_in_zone_sec: float) -> Dict:
    return {
        "type": ZONE_STATUS,
        "payload": {
            "vehicle_id": vehicle.id,
            "device_id": vehicle.device_id,
            "is_in_zone": is_in_zone,
            "task_id": task.id if task else None,
            "task_name": task.name if task else None,
            "work_duration_in_zone_sec": work_duration_in_zone_sec if is_in_zone else None,
            "work_duration_in_zone": format_duration(work_duration_in_zone_sec) if is_in_zone else None,
        }
    }


class EventPublisher(Protocol):
    def publish(self, message: Dict) -> None:
        ...


class RecordingEventPublisher:
    """Keeps every published message in memory, in order."""

    def __init__(self):
        self.messages: List[Dict] = []

    def publish(self, message: Dict) -> None:
        self.messages.append(message)

    def of_type(self, message_type: str) -> List[Dict]:
        return [m for m in self.messages if m["type"] == message_type]


def safe_publish(publisher: Optional[EventPublisher], message: Dict):
    """Fire-and-forget: a failing transport never fails the computation."""
    if publisher is None:
        return
    try:
        publisher.publish(message)
    except Exception:
        logger.warning("Failed to publish %s event", message.get("type"), exc_info=True)
