"""Distance, speed and efficiency aggregation over classified segments."""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from .entities import MetricsKey, MetricsRecord, Segment, SegmentKind

EARTH_RADIUS_M = 6_371_000.0  # mean Earth radius in meters


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two lat/lon points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    c = 2.0 * math.asin(min(1.0, math.sqrt(a)))
    return EARTH_RADIUS_M * c


@dataclass(frozen=True)
class DistanceSummary:
    distance_km: float
    average_speed_kph: float
    moving_duration_sec: float


def average_speed_kph(distance_km: float, moving_duration_sec: float) -> float:
    """Distance over moving time, so irregular sampling does not bias the mean."""
    if moving_duration_sec <= 0:
        return 0.0
    return distance_km / (moving_duration_sec / 3600.0)


def aggregate(segments: Iterable[Segment]) -> DistanceSummary:
    """Sum distance and duration across Moving segments only.

    Stopped segments contribute nothing, whatever GPS jitter moved their
    coordinates.
    """
    distance_m = 0.0
    duration = 0.0
    for segment in segments:
        if segment.kind is not SegmentKind.MOVING:
            continue
        distance_m += segment.distance_meters
        duration += segment.duration_sec

    distance_km = distance_m / 1000.0
    return DistanceSummary(
        distance_km=distance_km,
        average_speed_kph=average_speed_kph(distance_km, duration),
        moving_duration_sec=duration,
    )


def efficiency_percent(work_duration_sec: float, expected_daily_work_sec: float) -> float:
    """Moving time as a percentage of the expected daily workload."""
    if expected_daily_work_sec <= 0:
        return 0.0
    return work_duration_sec / expected_daily_work_sec * 100


def _time_string(ts: Optional[datetime]) -> Optional[str]:
    return ts.time().isoformat() if ts is not None else None


def build_metrics_record(key: MetricsKey, summary, distance: DistanceSummary,
                         expected_daily_work_sec: float) -> MetricsRecord:
    """Assemble the durable record from a segmentation summary."""
    work = summary.movement_duration_sec
    return MetricsRecord(
        key=key,
        traveled_distance_km=round(distance.distance_km, 3),
        work_duration_sec=work,
        stoppage_count=summary.stoppage_count,
        stoppage_duration_sec=summary.stoppage_duration_sec,
        stoppage_duration_while_on_sec=summary.stoppage_while_on_sec,
        stoppage_duration_while_off_sec=summary.stoppage_while_off_sec,
        average_speed_kph=round(distance.average_speed_kph, 2),
        efficiency_percent=efficiency_percent(work, expected_daily_work_sec),
        timings={
            "device_on_time": _time_string(summary.device_on_time),
            "first_movement_time": _time_string(summary.first_movement_time),
        },
    )
