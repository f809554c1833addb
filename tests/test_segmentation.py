import pytest
from datetime import datetime, timedelta
from conftest import FAR_ZONE, ZONE, make_track
from fleetmetrics.aggregation import aggregate, efficiency_percent
from fleetmetrics.entities import GpsSample, SegmentKind
from fleetmetrics.errors import ComputationCancelled, UnorderedSamplesError
from fleetmetrics.geofence import Polygon
from fleetmetrics.segmentation import MovementSegmenter, segment

START = datetime(2024, 5, 1, 8, 0, 0)

def scenario_samples():
    """Moving at 0s and 60s, parked at 120s."""
    return make_track(START, [(0, 10.0, True), (60, 10.0, True), (120, 0.0, False)])

class TestScenarios:
    """Test the reference movement scenarios."""

    def test_in_zone_track(self):
        """Test a short track fully inside its zone."""
        segments, summary = segment(scenario_samples(), zone=Polygon(ZONE))
        distance = aggregate(segments)

        assert summary.movement_duration_sec == 60
        assert summary.stoppage_duration_sec == 60
        assert summary.stoppage_while_off_sec == 60
        assert summary.stoppage_while_on_sec == 0
        assert distance.distance_km > 0
        assert efficiency_percent(summary.movement_duration_sec, 3600) == pytest.approx(1.67, abs=0.01)

    def test_track_outside_zone(self):
        """Test that a zone excluding every point zeroes movement and distance."""
        segments, summary = segment(scenario_samples(), zone=Polygon(FAR_ZONE))
        distance = aggregate(segments)

        assert summary.movement_duration_sec == 0
        assert summary.distance_km == 0
        assert distance.distance_km == 0
        # The timeline is kept as parked time
        assert summary.stoppage_duration_sec == 120
        assert summary.stoppage_while_off_sec == 120

    def test_segments_follow_state_changes(self):
        """Test that segments are emitted per state run."""
        segments, _ = segment(scenario_samples(), zone=Polygon(ZONE))

        assert [s.kind for s in segments] == [SegmentKind.MOVING, SegmentKind.STOPPED]
        assert all(s.in_zone for s in segments)
        assert segments[0].start_ts == START
        assert segments[0].end_ts == START + timedelta(seconds=60)
        assert segments[0].distance_meters > 0
        assert segments[1].distance_meters == 0
        assert segments[1].powered_on is False

class TestEdgeCases:
    """Test degenerate inputs."""

    def test_empty_input(self):
        """Test that no samples gives an all-zero summary."""
        segments, summary = segment([])
        assert segments == []
        assert summary.movement_duration_sec == 0
        assert summary.stoppage_duration_sec == 0
        assert summary.stoppage_count == 0
        assert summary.device_on_time is None
        assert summary.first_movement_time is None
        assert summary.total_records == 0

    def test_single_sample(self):
        """Test that one sample has no duration."""
        _, summary = segment(make_track(START, [(0, 30.0, True)]))
        assert summary.movement_duration_sec == 0
        assert summary.stoppage_duration_sec == 0
        assert summary.stoppage_count == 0
        assert summary.total_records == 1

    def test_unordered_samples(self):
        """Test that out-of-order samples are rejected."""
        samples = make_track(START, [(60, 10.0, True), (0, 10.0, True)])
        with pytest.raises(UnorderedSamplesError):
            segment(samples)
        with pytest.raises(ValueError):
            segment(samples)

    def test_duplicate_timestamps_do_not_double_count(self):
        """Test that repeated timestamps add no duration."""
        samples = make_track(START, [(0, 10.0, True), (60, 10.0, True), (60, 10.0, True), (120, 10.0, True)])
        _, summary = segment(samples)
        assert summary.movement_duration_sec == 120
        assert summary.stoppage_duration_sec == 0

    def test_sensor_gap_is_excluded(self):
        """Test that intervals longer than the max gap are credited to neither bucket."""
        samples = make_track(START, [(0, 0.0, True), (60, 0.0, True), (3660, 0.0, True), (3720, 0.0, True)])
        _, summary = segment(samples, max_gap_seconds=1800)

        assert summary.stoppage_duration_sec == 120
        assert summary.gap_duration_sec == 3600
        assert summary.movement_duration_sec == 0
        # The gap splits the stoppage into two runs
        assert summary.stoppage_count == 2

class TestSummary:
    """Test summary accounting."""

    def test_stoppage_count_counts_runs(self):
        """Test that consecutive stopped intervals count as one stoppage."""
        rows = [(0, 10.0, True), (60, 10.0, True), (120, 0.0, True), (180, 0.0, True),
                (240, 10.0, True), (300, 0.0, False)]
        _, summary = segment(make_track(START, rows))

        assert summary.stoppage_count == 2
        assert summary.stoppage_duration_sec == 180
        assert summary.movement_duration_sec == 120

    def test_stoppage_split(self):
        """Test that idling and parked time add up to total stoppage."""
        rows = [(0, 0.0, True), (60, 0.0, True), (120, 0.0, False), (200, 0.0, False), (260, 5.0, False)]
        _, summary = segment(make_track(START, rows))

        assert summary.stoppage_while_on_sec == 60
        assert summary.stoppage_while_off_sec == 200
        assert summary.stoppage_while_on_sec + summary.stoppage_while_off_sec == summary.stoppage_duration_sec

    def test_speed_without_power_is_stopped(self):
        """Test that a positive speed with power off is not movement."""
        _, summary = segment(make_track(START, [(0, 20.0, False), (60, 20.0, False)]))
        assert summary.movement_duration_sec == 0
        assert summary.distance_km == 0

    def test_duration_conservation(self):
        """Test that movement, stoppage and gaps cover the whole window."""
        rows = [(0, 10.0, True), (30, 0.0, True), (90, 12.0, True), (4000, 12.0, True), (4010, 0.0, False)]
        _, summary = segment(make_track(START, rows), max_gap_seconds=1800)

        covered = summary.movement_duration_sec + summary.stoppage_duration_sec
        assert covered <= summary.window_duration_sec
        assert covered + summary.gap_duration_sec == summary.window_duration_sec

    def test_device_on_and_first_movement_times(self):
        """Test the timing markers."""
        rows = [(0, 0.0, False), (60, 0.0, True), (120, 15.0, True), (180, 15.0, True)]
        _, summary = segment(make_track(START, rows))

        assert summary.device_on_time == START + timedelta(seconds=60)
        assert summary.first_movement_time == START + timedelta(seconds=60)

    def test_extras(self):
        """Test the additional summary fields."""
        rows = [(0, 10.0, True), (60, 25.0, True), (120, 0.0, False)]
        _, summary = segment(make_track(START, rows))

        assert summary.max_speed_kph == 25.0
        assert summary.total_records == 3
        assert summary.start_time == START
        assert summary.end_time == START + timedelta(seconds=120)
        assert summary.latest_powered_on is False
        assert summary.latest_coordinate == (35.70, 51.40 + 2 * 0.0005)
        assert summary.in_zone_movement_sec == summary.movement_duration_sec

    def test_deterministic(self):
        """Test that the same input gives the same output."""
        first = segment(scenario_samples(), zone=Polygon(ZONE))
        second = segment(scenario_samples(), zone=Polygon(ZONE))
        assert first == second

class TestCheckpoints:
    """Test cooperative cancellation hooks."""

    def test_checkpoint_before_and_during_walk(self):
        """Test that the checkpoint runs first and then every N samples."""
        calls = []
        samples = make_track(START, [(i * 10, 5.0, True) for i in range(10)])
        segment(samples, checkpoint=lambda: calls.append(1), check_every=4)
        assert len(calls) == 3

    def test_checkpoint_aborts(self):
        """Test that a raising checkpoint stops the walk."""
        def cancelled():
            raise ComputationCancelled("stop")

        with pytest.raises(ComputationCancelled):
            segment(scenario_samples(), checkpoint=cancelled)

    def test_segmenter_without_segments(self):
        """Test that the incremental segmenter can skip keeping segments."""
        segmenter = MovementSegmenter(keep_segments=False)
        for sample in scenario_samples():
            segmenter.feed(sample)
        summary = segmenter.finish()
        assert segmenter.segments == []
        assert summary.movement_duration_sec == 60
