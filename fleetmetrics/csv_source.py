"""Replay point source over an exported telemetry CSV.

Expected columns: ``vehicle_id, time, lat, lon, speed_kph, powered_on``.
Rows must be exported sorted by time within each vehicle; the file is read in
chunks so a large export is never held in memory at once.
"""

import logging
from datetime import datetime
from typing import Iterator

import pandas as pd

from .config import STREAM_BATCH_SIZE
from .entities import GpsSample

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ["vehicle_id", "time", "lat", "lon"]

_TRUTHY = {"1", "true", "yes", "on", "t", "y"}


def _powered_on(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    if pd.isna(value):
        return False
    return bool(value)


class CsvPointSource:
    def __init__(self, csv_path: str, chunksize: int = STREAM_BATCH_SIZE):
        self.csv_path = csv_path
        self.chunksize = chunksize

    def points(self, vehicle_id, window_start: datetime, window_end: datetime) -> Iterator[GpsSample]:
        with pd.read_csv(self.csv_path, chunksize=self.chunksize) as reader:
            for chunk in reader:
                missing = [column for column in REQUIRED_COLUMNS if column not in chunk.columns]
                if missing:
                    raise ValueError(f"{self.csv_path} is missing columns: {', '.join(missing)}")

                chunk['time'] = pd.to_datetime(chunk['time'])
                rows = chunk[
                    (chunk['vehicle_id'].astype(str) == str(vehicle_id))
                    & (chunk['time'] >= window_start)
                    & (chunk['time'] <= window_end)
                ]
                if 'speed_kph' not in rows.columns:
                    rows = rows.assign(speed_kph=0.0)
                if 'powered_on' not in rows.columns:
                    rows = rows.assign(powered_on=False)

                for _, row in rows.iterrows():
                    speed = row['speed_kph']
                    yield GpsSample(
                        lat=float(row['lat']),
                        lon=float(row['lon']),
                        speed_kph=0.0 if pd.isna(speed) else max(0.0, float(speed)),
                        powered_on=_powered_on(row['powered_on']),
                        timestamp=row['time'].to_pydatetime()
                    )
