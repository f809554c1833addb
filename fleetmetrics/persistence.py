import logging
from datetime import date, datetime, timedelta
from typing import Iterator, List, Optional
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from .config import STREAM_BATCH_SIZE
from .entities import (EfficiencyChart, GpsSample, MetricsKey, MetricsRecord, Task,
                       TaskState, Vehicle as VehicleEntity)
from .errors import TaskNotFoundError, TransientIOError, VehicleNotFoundError
from .geofence import Polygon
from .models import EfficiencyChartRow, GpsPoint, MetricsRecordRow, Vehicle, WorkTask

logger = logging.getLogger(__name__)

def _to_vehicle(row: Vehicle) -> VehicleEntity:
    return VehicleEntity(
        id=row.id,
        device_id=row.device_id,
        name=row.name,
        expected_daily_work_hours=row.expected_daily_work_hours,
        start_work_time=row.start_work_time,
        end_work_time=row.end_work_time
    )

def _to_task(row: WorkTask) -> Task:
    return Task(
        id=row.id,
        vehicle_id=row.vehicle_id,
        name=row.name or "",
        date=row.date,
        start_time=row.start_time,
        end_time=row.end_time,
        status=TaskState(row.status),
        zone=[tuple(pair) for pair in row.zone] if row.zone else None
    )

def _to_record(row: MetricsRecordRow) -> MetricsRecord:
    return MetricsRecord(
        key=MetricsKey(vehicle_id=row.vehicle_id, date=row.date, task_id=row.task_id),
        traveled_distance_km=row.traveled_distance_km,
        work_duration_sec=row.work_duration_sec,
        stoppage_count=row.stoppage_count,
        stoppage_duration_sec=row.stoppage_duration_sec,
        stoppage_duration_while_on_sec=row.stoppage_duration_while_on_sec,
        stoppage_duration_while_off_sec=row.stoppage_duration_while_off_sec,
        average_speed_kph=row.average_speed_kph,
        efficiency_percent=row.efficiency_percent,
        timings=dict(row.timings or {})
    )

def iter_gps_samples(
    db: Session,
    vehicle_id: int,
    window_start: datetime,
    window_end: datetime,
    batch_size: int = STREAM_BATCH_SIZE
) -> Iterator[GpsSample]:
    """Stream samples for a vehicle window in timestamp order, one fetch batch at a time."""
    query = db.query(
        GpsPoint.lat,
        GpsPoint.lon,
        GpsPoint.speed_kph,
        GpsPoint.powered_on,
        GpsPoint.timestamp
    ).filter(
        GpsPoint.vehicle_id == vehicle_id,
        GpsPoint.timestamp >= window_start,
        GpsPoint.timestamp <= window_end
    ).order_by(
        GpsPoint.timestamp, GpsPoint.id
    ).yield_per(batch_size)

    for lat, lon, speed_kph, powered_on, timestamp in query:
        yield GpsSample(
            lat=lat,
            lon=lon,
            speed_kph=speed_kph or 0.0,
            powered_on=bool(powered_on),
            timestamp=timestamp
        )

def _metrics_query(db: Session, key: MetricsKey):
    query = db.query(MetricsRecordRow).filter(
        MetricsRecordRow.vehicle_id == key.vehicle_id,
        MetricsRecordRow.date == key.date
    )
    if key.task_id is None:
        return query.filter(MetricsRecordRow.task_id.is_(None))
    return query.filter(MetricsRecordRow.task_id == key.task_id)

def upsert_metrics_record(db: Session, record: MetricsRecord) -> MetricsRecordRow:
    """Replace every field of the record stored under the record's key."""
    key = record.key
    query = _metrics_query(db, key)

    try:
        row = query.first()
        if row is None:
            row = MetricsRecordRow(vehicle_id=key.vehicle_id, date=key.date, task_id=key.task_id)
            db.add(row)

        row.traveled_distance_km = record.traveled_distance_km
        row.work_duration_sec = record.work_duration_sec
        row.stoppage_count = record.stoppage_count
        row.stoppage_duration_sec = record.stoppage_duration_sec
        row.stoppage_duration_while_on_sec = record.stoppage_duration_while_on_sec
        row.stoppage_duration_while_off_sec = record.stoppage_duration_while_off_sec
        row.average_speed_kph = record.average_speed_kph
        row.efficiency_percent = record.efficiency_percent
        row.timings = dict(record.timings)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(row)
    return row

def delete_metrics_record(db: Session, key: MetricsKey) -> int:
    """Remove the record stored under a key; returns the number of rows removed."""
    try:
        removed = _metrics_query(db, key).delete(synchronize_session=False)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return removed

def get_metrics_records(db: Session, vehicle_id: int, day: Optional[date] = None) -> List[MetricsRecordRow]:
    """Get metrics records for a vehicle, optionally for one date."""
    query = db.query(MetricsRecordRow).filter(MetricsRecordRow.vehicle_id == vehicle_id)
    if day is not None:
        query = query.filter(MetricsRecordRow.date == day)
    return query.order_by(MetricsRecordRow.date.desc(), MetricsRecordRow.task_id).all()

def upsert_efficiency_chart(db: Session, chart: EfficiencyChart) -> EfficiencyChartRow:
    """Upsert the efficiency chart point for a vehicle and date."""
    try:
        row = db.query(EfficiencyChartRow).filter(
            EfficiencyChartRow.vehicle_id == chart.vehicle_id,
            EfficiencyChartRow.date == chart.date
        ).first()
        if row is None:
            row = EfficiencyChartRow(vehicle_id=chart.vehicle_id, date=chart.date)
            db.add(row)
        row.total_efficiency = chart.total_efficiency
        row.task_based_efficiency = chart.task_based_efficiency
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(row)
    return row

def update_task_status(db: Session, task_id: int, status: TaskState):
    """Persist a task status change."""
    task = db.query(WorkTask).filter(WorkTask.id == task_id).first()
    if task is None:
        raise TaskNotFoundError(task_id)
    task.status = status.value
    db.commit()


class SqlStore:
    """Database-backed vehicle directory, point source, task provider and metrics sink.

    Every call opens its own short-lived session, so one store can be shared by
    all worker threads of a fleet run.
    """

    def __init__(self, session_factory, batch_size: int = STREAM_BATCH_SIZE):
        self.session_factory = session_factory
        self.batch_size = batch_size

    # Vehicle directory

    def vehicle_ids(self) -> List[int]:
        with self.session_factory() as db:
            return [vehicle_id for (vehicle_id,) in db.query(Vehicle.id).order_by(Vehicle.id)]

    def get_vehicle(self, vehicle_id: int) -> VehicleEntity:
        with self.session_factory() as db:
            row = db.query(Vehicle).filter(Vehicle.id == vehicle_id).first()
            if row is None:
                raise VehicleNotFoundError(vehicle_id)
            return _to_vehicle(row)

    # Point source

    def points(self, vehicle_id: int, window_start: datetime, window_end: datetime) -> Iterator[GpsSample]:
        try:
            with self.session_factory() as db:
                yield from iter_gps_samples(db, vehicle_id, window_start, window_end, self.batch_size)
        except OperationalError as exc:
            logger.warning("Point read for vehicle %s failed: %s", vehicle_id, exc)
            raise TransientIOError(f"reading points for vehicle {vehicle_id} failed: {exc}") from exc

    # Task / zone provider

    def get_task(self, task_id: int) -> Task:
        with self.session_factory() as db:
            row = db.query(WorkTask).filter(WorkTask.id == task_id).first()
            if row is None:
                raise TaskNotFoundError(task_id)
            return _to_task(row)

    def tasks_for_date(self, vehicle_id: int, day: date) -> List[Task]:
        with self.session_factory() as db:
            rows = db.query(WorkTask).filter(
                WorkTask.vehicle_id == vehicle_id,
                WorkTask.date == day
            ).order_by(WorkTask.start_time, WorkTask.id).all()
            return [_to_task(row) for row in rows]

    def current_task(self, vehicle_id: int, as_of: datetime) -> Optional[Task]:
        """The task whose window contains ``as_of`` (yesterday's tasks may run past midnight)."""
        day = as_of.date()
        candidates = self.tasks_for_date(vehicle_id, day - timedelta(days=1)) + \
            self.tasks_for_date(vehicle_id, day)
        for task in candidates:
            start, end = task.window()
            if start <= as_of < end:
                return task
        return None

    def zone_of(self, task: Optional[Task]) -> Optional[Polygon]:
        if task is None:
            return None
        return Polygon.from_coordinates(task.zone)

    def update_task_status(self, task_id: int, status: TaskState):
        with self.session_factory() as db:
            update_task_status(db, task_id, status)

    # Metrics sink

    def upsert(self, record: MetricsRecord):
        try:
            with self.session_factory() as db:
                upsert_metrics_record(db, record)
        except OperationalError as exc:
            logger.warning("Metrics write for %s failed: %s", record.key, exc)
            raise TransientIOError(f"writing metrics for {record.key} failed: {exc}") from exc

    def delete(self, key: MetricsKey):
        try:
            with self.session_factory() as db:
                if delete_metrics_record(db, key):
                    logger.info("Cleared stale metrics for %s", key)
        except OperationalError as exc:
            logger.warning("Metrics delete for %s failed: %s", key, exc)
            raise TransientIOError(f"clearing metrics for {key} failed: {exc}") from exc

    def get_metrics(self, vehicle_id: int, day: Optional[date] = None) -> List[MetricsRecord]:
        with self.session_factory() as db:
            return [_to_record(row) for row in get_metrics_records(db, vehicle_id, day)]

    def upsert_efficiency_chart(self, chart: EfficiencyChart):
        with self.session_factory() as db:
            upsert_efficiency_chart(db, chart)
