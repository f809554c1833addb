import pytest
import pandas as pd
from datetime import datetime
from fleetmetrics.csv_source import CsvPointSource
from fleetmetrics.segmentation import segment

class TestCsvPointSource:
    """Test replaying points from an exported CSV."""

    def create_test_csv(self, tmp_path, rows):
        path = tmp_path / "points.csv"
        pd.DataFrame(rows).to_csv(path, index=False)
        return str(path)

    def test_filters_vehicle_and_window(self, tmp_path):
        """Test that only the vehicle's samples inside the window are yielded, across chunks."""
        rows = [
            {"vehicle_id": 1, "time": "2024-05-01 07:59:00", "lat": 35.70, "lon": 51.400, "speed_kph": 5.0, "powered_on": True},
            {"vehicle_id": 1, "time": "2024-05-01 08:00:00", "lat": 35.70, "lon": 51.401, "speed_kph": 10.0, "powered_on": True},
            {"vehicle_id": 2, "time": "2024-05-01 08:00:30", "lat": 36.00, "lon": 52.000, "speed_kph": 50.0, "powered_on": True},
            {"vehicle_id": 1, "time": "2024-05-01 08:01:00", "lat": 35.70, "lon": 51.402, "speed_kph": 10.0, "powered_on": True},
            {"vehicle_id": 1, "time": "2024-05-01 08:02:00", "lat": 35.70, "lon": 51.403, "speed_kph": 0.0, "powered_on": False},
            {"vehicle_id": 1, "time": "2024-05-01 08:03:00", "lat": 35.70, "lon": 51.404, "speed_kph": 0.0, "powered_on": False},
        ]
        source = CsvPointSource(self.create_test_csv(tmp_path, rows), chunksize=2)

        samples = list(source.points(1, datetime(2024, 5, 1, 8, 0), datetime(2024, 5, 1, 8, 2)))

        assert [s.timestamp for s in samples] == [
            datetime(2024, 5, 1, 8, 0), datetime(2024, 5, 1, 8, 1), datetime(2024, 5, 1, 8, 2)
        ]
        assert [s.powered_on for s in samples] == [True, True, False]
        assert samples[0].speed_kph == 10.0
        assert samples[0].coordinate == (35.70, 51.401)

    def test_feeds_segmenter(self, tmp_path):
        """Test that replayed samples drive the segmenter."""
        rows = [
            {"vehicle_id": "T1", "time": "2024-05-01 08:00:00", "lat": 35.70, "lon": 51.400, "speed_kph": 10.0, "powered_on": "true"},
            {"vehicle_id": "T1", "time": "2024-05-01 08:01:00", "lat": 35.70, "lon": 51.401, "speed_kph": 10.0, "powered_on": "true"},
            {"vehicle_id": "T1", "time": "2024-05-01 08:02:00", "lat": 35.70, "lon": 51.402, "speed_kph": 0.0, "powered_on": "false"},
        ]
        source = CsvPointSource(self.create_test_csv(tmp_path, rows))

        _, summary = segment(source.points("T1", datetime(2024, 5, 1), datetime(2024, 5, 2)))

        assert summary.movement_duration_sec == 60
        assert summary.stoppage_while_off_sec == 60

    def test_optional_columns(self, tmp_path):
        """Test that speed and power default when not exported."""
        rows = [{"vehicle_id": 1, "time": "2024-05-01 08:00:00", "lat": 35.7, "lon": 51.4}]
        source = CsvPointSource(self.create_test_csv(tmp_path, rows))

        samples = list(source.points(1, datetime(2024, 5, 1), datetime(2024, 5, 2)))
        assert samples[0].speed_kph == 0.0
        assert samples[0].powered_on is False

    def test_missing_columns(self, tmp_path):
        """Test that an export without coordinates is rejected."""
        rows = [{"vehicle_id": 1, "time": "2024-05-01 08:00:00"}]
        source = CsvPointSource(self.create_test_csv(tmp_path, rows))

        with pytest.raises(ValueError):
            list(source.points(1, datetime(2024, 5, 1), datetime(2024, 5, 2)))

    def test_reader_closed_when_abandoned(self, tmp_path, monkeypatch):
        """Test that stopping early closes the underlying CSV reader."""
        rows = [
            {"vehicle_id": 1, "time": f"2024-05-01 08:0{minute}:00", "lat": 35.70, "lon": 51.40,
             "speed_kph": 10.0, "powered_on": True}
            for minute in range(5)
        ]
        source = CsvPointSource(self.create_test_csv(tmp_path, rows), chunksize=2)

        closed = []
        read_csv = pd.read_csv

        def tracking_read_csv(*args, **kwargs):
            reader = read_csv(*args, **kwargs)
            close = reader.close

            def close_and_record():
                closed.append(True)
                close()

            reader.close = close_and_record
            return reader

        monkeypatch.setattr(pd, "read_csv", tracking_read_csv)

        samples = source.points(1, datetime(2024, 5, 1), datetime(2024, 5, 2))
        assert next(samples).timestamp == datetime(2024, 5, 1, 8, 0)
        samples.close()

        assert closed
