"""Movement/stoppage segmentation of an ordered GPS sample stream.

Each consecutive pair of samples is one interval. The interval takes the
state reported by the sample that closes it: it is Moving when that sample is
powered on with a positive speed, otherwise Stopped, and stoppage time is
split into "while on" and "while off" by the same sample's power flag.

When a zone is given, samples outside it are zeroed (speed 0, power off)
before classification. They still advance the timeline, so out-of-zone time
shows up as parked time instead of disappearing from the window.

Intervals longer than ``max_gap_seconds`` are sensor silence: they are
credited neither as movement nor as stoppage, and they end any stoppage run.
Zero-length intervals (duplicate timestamps) carry no duration and leave the
current state untouched.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

from .aggregation import haversine_m
from .config import MAX_GAP_SECONDS
from .entities import GpsSample, Segment, SegmentKind
from .errors import UnorderedSamplesError
from .geofence import Polygon, contains


@dataclass(frozen=True)
class SegmentationSummary:
    movement_duration_sec: float = 0.0
    stoppage_duration_sec: float = 0.0
    stoppage_count: int = 0
    stoppage_while_on_sec: float = 0.0
    stoppage_while_off_sec: float = 0.0
    device_on_time: Optional[datetime] = None
    first_movement_time: Optional[datetime] = None
    distance_km: float = 0.0
    gap_duration_sec: float = 0.0
    max_speed_kph: float = 0.0
    total_records: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    latest_powered_on: Optional[bool] = None
    latest_coordinate: Optional[Tuple[float, float]] = None

    @property
    def in_zone_movement_sec(self) -> float:
        # Out-of-zone samples are zeroed, so every moving second is in-zone
        return self.movement_duration_sec

    @property
    def window_duration_sec(self) -> float:
        if self.start_time is None or self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()


@dataclass(frozen=True)
class _Effective:
    sample: GpsSample
    in_zone: bool
    speed_kph: float
    powered_on: bool

    @property
    def moving(self) -> bool:
        return self.powered_on and self.speed_kph > 0


class MovementSegmenter:
    """Incremental segmenter: ``feed`` samples in timestamp order, then ``finish``.

    Memory stays proportional to the number of state changes, not the number
    of samples, unless ``keep_segments`` is False, in which case segments are
    not retained at all.
    """

    def __init__(self, zone: Optional[Polygon] = None,
                 max_gap_seconds: float = MAX_GAP_SECONDS,
                 keep_segments: bool = True):
        self.zone = zone
        self.max_gap_seconds = max_gap_seconds
        self.keep_segments = keep_segments
        self.segments: List[Segment] = []

        self._prev: Optional[_Effective] = None
        self._prev_raw_on = False
        self._open: Optional[Tuple[SegmentKind, bool, bool]] = None
        self._open_start: Optional[datetime] = None
        self._open_end: Optional[datetime] = None
        self._open_distance = 0.0
        self._in_stop_run = False

        self._movement = 0.0
        self._stoppage = 0.0
        self._stoppage_on = 0.0
        self._stoppage_off = 0.0
        self._stoppage_count = 0
        self._gap = 0.0
        self._distance_m = 0.0
        self._max_speed = 0.0
        self._records = 0
        self._device_on_time: Optional[datetime] = None
        self._first_movement_time: Optional[datetime] = None
        self._start_time: Optional[datetime] = None

    def _effective(self, sample: GpsSample) -> _Effective:
        in_zone = True if self.zone is None else contains(sample.coordinate, self.zone)
        if in_zone:
            return _Effective(sample, True, max(0.0, sample.speed_kph), sample.powered_on)
        return _Effective(sample, False, 0.0, False)

    def _close_segment(self):
        if self._open is not None and self.keep_segments:
            kind, in_zone, powered_on = self._open
            self.segments.append(Segment(
                kind=kind,
                in_zone=in_zone,
                powered_on=powered_on,
                start_ts=self._open_start,
                end_ts=self._open_end,
                distance_meters=self._open_distance,
            ))
        self._open = None
        self._open_distance = 0.0

    def _extend_segment(self, state: Tuple[SegmentKind, bool, bool],
                        start: datetime, end: datetime, distance_m: float):
        if self._open != state:
            self._close_segment()
            self._open = state
            self._open_start = start
        self._open_end = end
        self._open_distance += distance_m

    def feed(self, sample: GpsSample):
        current = self._effective(sample)
        self._records += 1
        self._max_speed = max(self._max_speed, current.speed_kph)

        if self._device_on_time is None and sample.powered_on and not self._prev_raw_on:
            self._device_on_time = sample.timestamp
        self._prev_raw_on = sample.powered_on

        previous = self._prev
        self._prev = current
        if previous is None:
            self._start_time = sample.timestamp
            return

        delta = (sample.timestamp - previous.sample.timestamp).total_seconds()
        if delta < 0:
            raise UnorderedSamplesError(
                f"sample at {sample.timestamp.isoformat()} precedes "
                f"{previous.sample.timestamp.isoformat()}"
            )
        if delta == 0:
            return
        if delta > self.max_gap_seconds:
            self._gap += delta
            self._close_segment()
            self._in_stop_run = False
            return

        if current.moving:
            distance_m = haversine_m(previous.sample.lat, previous.sample.lon,
                                     sample.lat, sample.lon)
            self._movement += delta
            self._distance_m += distance_m
            if self._first_movement_time is None:
                self._first_movement_time = previous.sample.timestamp
            self._in_stop_run = False
            self._extend_segment((SegmentKind.MOVING, current.in_zone, current.powered_on),
                                 previous.sample.timestamp, sample.timestamp, distance_m)
        else:
            self._stoppage += delta
            if current.powered_on:
                self._stoppage_on += delta
            else:
                self._stoppage_off += delta
            if not self._in_stop_run:
                self._stoppage_count += 1
                self._in_stop_run = True
            self._extend_segment((SegmentKind.STOPPED, current.in_zone, current.powered_on),
                                 previous.sample.timestamp, sample.timestamp, 0.0)

    def finish(self) -> SegmentationSummary:
        self._close_segment()
        last = self._prev.sample if self._prev is not None else None
        return SegmentationSummary(
            movement_duration_sec=self._movement,
            stoppage_duration_sec=self._stoppage,
            stoppage_count=self._stoppage_count,
            stoppage_while_on_sec=self._stoppage_on,
            stoppage_while_off_sec=self._stoppage_off,
            device_on_time=self._device_on_time,
            first_movement_time=self._first_movement_time,
            distance_km=self._distance_m / 1000.0,
            gap_duration_sec=self._gap,
            max_speed_kph=self._max_speed,
            total_records=self._records,
            start_time=self._start_time,
            end_time=last.timestamp if last is not None else None,
            latest_powered_on=last.powered_on if last is not None else None,
            latest_coordinate=last.coordinate if last is not None else None,
        )


def segment(points: Iterable[GpsSample], zone: Optional[Polygon] = None,
            max_gap_seconds: float = MAX_GAP_SECONDS,
            checkpoint: Optional[Callable[[], None]] = None,
            check_every: int = 500) -> Tuple[List[Segment], SegmentationSummary]:
    """Classify an ordered sample stream into segments plus a summary.

    ``checkpoint`` is called before the first sample and then every
    ``check_every`` samples; it aborts the walk by raising.
    """
    segmenter = MovementSegmenter(zone=zone, max_gap_seconds=max_gap_seconds)
    if checkpoint is not None:
        checkpoint()
    for index, sample in enumerate(points, start=1):
        segmenter.feed(sample)
        if checkpoint is not None and index % check_every == 0:
            checkpoint()
    summary = segmenter.finish()
    return segmenter.segments, summary
