from sqlalchemy import (Column, Integer, String, Float, Boolean, Date, DateTime, Time,
                        ForeignKey, JSON, Index, UniqueConstraint, text)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()

class Vehicle(Base):
    __tablename__ = "vehicles"
    id = Column(Integer, primary_key=True)
    device_id = Column(String(128), unique=True)
    name = Column(String(255))
    expected_daily_work_hours = Column(Float)
    start_work_time = Column(Time)
    end_work_time = Column(Time)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class GpsPoint(Base):
    __tablename__ = "gps_points"
    id = Column(Integer, primary_key=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False)
    timestamp = Column(DateTime, nullable=False)
    lat = Column(Float, nullable=False)
    lon = Column(Float, nullable=False)
    speed_kph = Column(Float, default=0.0)
    powered_on = Column(Boolean, default=False)

    __table_args__ = (
        Index("ix_gps_points_vehicle_timestamp", "vehicle_id", "timestamp"),
    )

class WorkTask(Base):
    __tablename__ = "work_tasks"
    id = Column(Integer, primary_key=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False)
    name = Column(String(255))
    date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    status = Column(String(32), nullable=False, default="not_started")
    zone = Column(JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    vehicle = relationship("Vehicle")

class MetricsRecordRow(Base):
    __tablename__ = "gps_metrics"
    id = Column(Integer, primary_key=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False)
    date = Column(Date, nullable=False)
    task_id = Column(Integer, ForeignKey("work_tasks.id"))
    traveled_distance_km = Column(Float, default=0.0)
    work_duration_sec = Column(Float, default=0.0)
    stoppage_count = Column(Integer, default=0)
    stoppage_duration_sec = Column(Float, default=0.0)
    stoppage_duration_while_on_sec = Column(Float, default=0.0)
    stoppage_duration_while_off_sec = Column(Float, default=0.0)
    average_speed_kph = Column(Float, default=0.0)
    efficiency_percent = Column(Float, default=0.0)
    timings = Column(JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("vehicle_id", "date", "task_id", name="uq_gps_metrics_key"),
        # NULL task ids never collide in the constraint above
        Index("uq_gps_metrics_daily_key", "vehicle_id", "date", unique=True,
              sqlite_where=text("task_id IS NULL"), postgresql_where=text("task_id IS NULL")),
    )

class EfficiencyChartRow(Base):
    __tablename__ = "efficiency_charts"
    id = Column(Integer, primary_key=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False)
    date = Column(Date, nullable=False)
    total_efficiency = Column(Float, default=0.0)
    task_based_efficiency = Column(Float, default=0.0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("vehicle_id", "date", name="uq_efficiency_charts_key"),
    )
