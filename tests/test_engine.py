import math

import pytest

from ble_indoor_locator.calculator import PositionSolver, estimate_distance
from ble_indoor_locator.engine import EngineSettings, LocatingEngine
from ble_indoor_locator.errors import ConfigurationError, ScannerUnavailableError
from ble_indoor_locator.models import (
    CalibrationState,
    ConfiguredBeacon,
    DropReason,
    PositionMethod,
    ScannerState,
)

from .conftest import A, B, C, UNKNOWN, ranged, reading


# RSSI roughly matching a receiver at (3, 4) in the triangle fixture
RSSI = {A: -77, B: -82, C: -80}


def batch(timestamp, rssi=None):
    rssi = rssi or RSSI
    return [reading(identity, value, timestamp) for identity, value in rssi.items()]


@pytest.fixture
def updates():
    return []


@pytest.fixture
def make_engine(clock, triangle_beacons, updates):
    def factory(beacons=None, **settings):
        return LocatingEngine(
            EngineSettings(**settings),
            triangle_beacons if beacons is None else beacons,
            clock=clock,
            on_position_update=updates.append,
        )

    return factory


class TestLifecycle:
    def test_start_without_beacons(self, clock):
        engine = LocatingEngine(clock=clock)
        with pytest.raises(ConfigurationError):
            engine.start_locating()
        assert not engine.is_locating

    def test_start_and_stop_are_idempotent(self, make_engine):
        engine = make_engine()
        engine.start_locating()
        engine.start_locating()
        assert engine.is_locating
        assert engine.calibration_state is CalibrationState.CALIBRATING
        engine.stop_locating()
        engine.stop_locating()
        assert not engine.is_locating
        assert engine.calibration_state is CalibrationState.IDLE

    def test_ignores_readings_when_stopped(self, make_engine):
        engine = make_engine()
        assert engine.ingest(batch(0.0)) == []
        assert engine.flush(1.0) is None

    def test_stop_discards_session_state(self, make_engine, clock):
        engine = make_engine()
        engine.start_locating()
        engine.ingest(batch(0.5))
        assert engine.calibration.accumulator
        engine.stop_locating()
        assert engine.calibration.accumulator == {}
        assert engine.buffered_samples() == []
        assert len(engine.conditioner) == 0
        assert not engine.smoother.is_seeded

    def test_invalid_beacons_skipped(self, clock):
        engine = LocatingEngine(clock=clock)
        count = engine.set_beacons([ConfiguredBeacon(A, 0.0, 0.0, -59), ConfiguredBeacon(B, float("nan"), 0.0, -59)])
        assert count == 1
        assert [b.identity for b in engine.beacons] == [A]


class TestCalibration:
    def test_seeds_once_from_window(self, make_engine, clock, updates):
        engine = make_engine()
        engine.start_locating()
        seeds = []
        original_seed = engine.smoother.seed

        def spy(estimate):
            seeds.append(estimate)
            original_seed(estimate)

        engine.smoother.seed = spy

        for ts in (0.5, 1.0, 1.5):
            engine.ingest(batch(ts))
        assert engine.flush(1.0) is None
        assert engine.flush(2.0) is None
        assert updates == []

        update = engine.flush(3.0)
        assert engine.calibration_state is CalibrationState.SEEDED
        assert len(seeds) == 1
        assert update.estimate == update.raw == seeds[0]

        expected = PositionSolver().solve(
            [ranged(b.x, b.y, estimate_distance(RSSI[b.identity], b.tx_power)) for b in engine.beacons]
        )
        assert update.estimate.x == pytest.approx(expected.x)
        assert update.estimate.y == pytest.approx(expected.y)
        assert math.hypot(update.estimate.x - 3.0, update.estimate.y - 4.0) < 0.2

        engine.ingest(batch(3.5))
        engine.flush(4.0)
        assert len(seeds) == 1
        assert len(updates) == 2

    def test_underrun_solves_normally(self, make_engine, clock):
        engine = make_engine()
        engine.start_locating()
        engine.ingest([reading(A, -70, 0.5), reading(B, -80, 0.5)])
        update = engine.flush(3.0)
        assert engine.calibration_state is CalibrationState.UNSEEDED
        assert engine.drop_counts[DropReason.CALIBRATION_UNDERRUN] == 1
        assert update.estimate.method is PositionMethod.WEIGHTED_CENTROID
        assert engine.smoother.is_seeded

    def test_detected_callback_during_calibration(self, clock, triangle_beacons):
        detected = []
        engine = LocatingEngine(EngineSettings(), triangle_beacons, clock=clock, on_beacons_detected=detected.append)
        engine.start_locating()
        engine.ingest(batch(0.5))
        assert len(detected) == 1
        assert {s.identity for s in detected[0]} == {A, B, C}


class TestProcessing:
    def test_unmatched_readings_dropped(self, make_engine):
        engine = make_engine(calibration_ms=0)
        engine.start_locating()
        assert engine.ingest([reading(UNKNOWN, -60, 0.0)]) == []
        assert engine.drop_counts[DropReason.UNMATCHED_BEACON] == 1
        assert engine.buffered_samples() == []

    def test_buffer_keeps_latest_sample(self, make_engine):
        engine = make_engine(calibration_ms=0)
        engine.start_locating()
        engine.ingest([reading(A, -70, 0.0)])
        engine.ingest([reading(A, -70, 1.0)])
        samples = engine.buffered_samples()
        assert len(samples) == 1
        assert samples[0].timestamp == 1.0

    def test_stale_samples_evicted(self, make_engine):
        engine = make_engine(calibration_ms=0)
        engine.start_locating()
        engine.ingest([reading(A, -70, 0.0), reading(B, -70, 0.0)])
        engine.ingest([reading(C, -70, 4.0)])
        update = engine.flush(6.0)
        assert engine.drop_counts[DropReason.STALE_SAMPLE] == 2
        assert [s.identity for s in update.samples] == [C]
        assert (update.estimate.x, update.estimate.y) == (0.0, 10.0)

    def test_sample_at_threshold_is_fresh(self, make_engine):
        engine = make_engine(calibration_ms=0)
        engine.start_locating()
        engine.ingest([reading(A, -70, 0.0)])
        update = engine.flush(5.0)
        assert update is not None
        assert [s.identity for s in update.samples] == [A]
        assert engine.drop_counts[DropReason.STALE_SAMPLE] == 0
        assert engine.flush(5.001) is None
        assert engine.drop_counts[DropReason.STALE_SAMPLE] == 1

    def test_non_finite_rssi_dropped(self, make_engine):
        engine = make_engine(calibration_ms=0)
        engine.start_locating()
        assert engine.ingest([reading(A, float("nan"), 0.0), reading(B, float("inf"), 0.0)]) == []
        assert engine.drop_counts[DropReason.INVALID_DISTANCE] == 2
        accepted = engine.ingest([reading(A, -70, 0.5)])
        assert [s.rssi for s in accepted] == [-70]

    def test_samples_ordered_by_distance(self, make_engine):
        engine = make_engine(calibration_ms=0)
        engine.start_locating()
        engine.ingest(batch(0.0))
        update = engine.flush(1.0)
        distances = [s.distance for s in update.samples]
        assert distances == sorted(distances)

    def test_no_samples_keeps_previous_position(self, make_engine, updates):
        engine = make_engine(calibration_ms=0)
        engine.start_locating()
        engine.ingest(batch(0.0))
        first = engine.flush(1.0)
        assert engine.flush(10.0) is None
        assert engine.drop_counts[DropReason.INSUFFICIENT_BEACONS] == 1
        assert engine.current_position == first.estimate
        assert updates == [first]

    def test_smoothing_after_seed(self, make_engine):
        engine = make_engine(calibration_ms=0)
        engine.start_locating()
        engine.ingest(batch(0.0))
        first = engine.flush(1.0)
        assert first.estimate == first.raw

        engine.ingest(batch(1.5, {A: -60, B: -90, C: -90}))
        second = engine.flush(2.0)
        prev = first.estimate
        moved = math.hypot(second.estimate.x - prev.x, second.estimate.y - prev.y)
        wanted = math.hypot(second.raw.x - prev.x, second.raw.y - prev.y)
        assert 0 < moved < wanted
        assert len(engine.position_history()) == 2
        assert engine.position_history(limit=1) == [second]

    def test_degenerate_geometry_counted(self, make_engine, collinear_beacons):
        engine = make_engine(beacons=collinear_beacons, calibration_ms=0)
        engine.start_locating()
        engine.ingest(batch(0.0))
        update = engine.flush(1.0)
        assert update.estimate.method is PositionMethod.LEAST_SQUARES
        assert engine.drop_counts[DropReason.DEGENERATE_GEOMETRY] == 1

    def test_removed_beacon_filtered_on_flush(self, make_engine, triangle_beacons):
        engine = make_engine(calibration_ms=0)
        engine.start_locating()
        engine.ingest(batch(0.0))
        engine.set_beacons(triangle_beacons[:2])
        update = engine.flush(1.0)
        assert {s.identity for s in update.samples} == {A, B}

    def test_invalid_distance_dropped(self, clock):
        engine = LocatingEngine(
            EngineSettings(calibration_ms=0),
            [ConfiguredBeacon(A, 0.0, 0.0, -59)],
            clock=clock,
        )
        engine.start_locating()
        assert engine.ingest([reading(A, -10**6, 0.0)]) == []
        assert engine.drop_counts[DropReason.INVALID_DISTANCE] == 1


class TestScannerState:
    def test_unavailable_stops_session(self, clock, triangle_beacons):
        errors = []
        engine = LocatingEngine(EngineSettings(), triangle_beacons, clock=clock, on_error=errors.append)
        engine.start_locating()
        assert engine.handle_scanner_state(ScannerState.CLOSED)
        assert not engine.is_locating
        assert isinstance(errors[0], ScannerUnavailableError)
        assert errors[0].state == "closed"

    def test_available_is_ignored(self, make_engine):
        engine = make_engine()
        engine.start_locating()
        assert not engine.handle_scanner_state("available")
        assert engine.is_locating

    def test_unavailable_when_stopped_reports_nothing(self, clock, triangle_beacons):
        errors = []
        engine = LocatingEngine(EngineSettings(), triangle_beacons, clock=clock, on_error=errors.append)
        assert not engine.handle_scanner_state("unauthorized")
        engine.start_locating()
        assert engine.stop_locating()
        assert not engine.stop_locating()
        assert not engine.handle_scanner_state(ScannerState.UNSUPPORTED)
        assert errors == []


class TestManualPosition:
    def test_set_position_overrides_and_seeds(self, make_engine, clock, updates):
        engine = make_engine(calibration_ms=0)
        engine.start_locating()
        clock.now = 2.0
        update = engine.set_position(4.0, 6.0)
        assert update.estimate.method is PositionMethod.MANUAL
        assert update.timestamp == 2.0
        assert update.samples == []
        assert updates == [update]
        assert engine.current_position == update.estimate
        assert engine.smoother.kf_x.x == 4.0
        assert engine.smoother.kf_y.x == 6.0

    def test_set_position_rejects_invalid(self, make_engine, updates):
        engine = make_engine()
        assert engine.set_position(float("nan"), 1.0) is None
        assert engine.set_position("x", 1.0) is None
        assert updates == []
        assert not engine.smoother.is_seeded

    def test_manual_is_not_a_solver_method(self, make_engine):
        engine = make_engine()
        with pytest.raises(ConfigurationError):
            engine.configure(method="manual")


class TestDebugInfo:
    def test_reports_last_solve(self, make_engine):
        engine = make_engine(calibration_ms=0)
        engine.start_locating()
        engine.ingest([reading(UNKNOWN, -60, 0.0)] + batch(0.0))
        engine.flush(1.0)
        info = engine.debug_info()
        assert info["locating"] is True
        assert info["calibration_state"] == "done_unseeded"
        assert info["buffered_beacons"] == 3
        assert info["last_method"] == "trilateration"
        assert info["calculation_ms"] >= 0
        assert info["drops"] == {"unmatched_beacon": 1}

    def test_cleared_on_stop(self, make_engine):
        engine = make_engine(calibration_ms=0)
        engine.start_locating()
        engine.ingest(batch(0.0))
        engine.flush(1.0)
        engine.stop_locating()
        info = engine.debug_info()
        assert info["last_method"] is None
        assert info["calculation_ms"] is None
        assert info["drops"] == {}


class TestConfigure:
    def test_rejects_invalid_values(self, make_engine):
        engine = make_engine()
        with pytest.raises(ConfigurationError):
            engine.configure(path_loss_exponent=0)
        with pytest.raises(ConfigurationError):
            engine.configure(window_size=0)
        with pytest.raises(ConfigurationError):
            engine.configure(bogus=1)
        assert engine.settings.path_loss_exponent == 2.5

    def test_applies_changes(self, make_engine):
        engine = make_engine()
        settings = engine.configure(window_size=3, method="least_squares", measurement_noise=2.0)
        assert settings.method is PositionMethod.LEAST_SQUARES
        assert engine.conditioner.window_size == 3
        assert engine.smoother.kf_x.Q == 2.0
