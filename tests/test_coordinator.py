#!/usr/bin/env python3
"""
═══════════════════════════════════════════════════════════════════════════════
robo-ident - COORDINATOR INTEGRATION TESTS
═══════════════════════════════════════════════════════════════════════════════

Drives the Coordinator through bootstrap, calibration, tracking and stop
transitions with hand-built sensor frames.

Run with: pytest tests/test_coordinator.py -v
═══════════════════════════════════════════════════════════════════════════════
"""

import sys
import os
import threading

import numpy as np
import pytest
from numpy.testing import assert_allclose

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from robo_ident.association import PermutationAssociator
from robo_ident.config import CoordinatorConfig, RobotConfig
from robo_ident.coordinator import Coordinator, _Throttle, compensate_radius
from robo_ident.models import (
    CoordinatorPhase,
    DegenerateGeometryWarning,
    OperatingCondition,
    StalledCalibrationWarning,
)

BIAS = np.array([0.1, 0.0, 0.0])
STARTS = np.array([[1.0, 0.0, 2.5], [-1.0, 0.0, 2.5]])


# =============================================================================
# FIXTURES
# =============================================================================

class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def config():
    return CoordinatorConfig(
        number_robots=2,
        robots=[RobotConfig(start_position=tuple(s)) for s in STARTS],
        calibration_samples=3,
        max_partial_frames=4,
        compensate_radius=False,
    )


@pytest.fixture
def events():
    return {"assignments": [], "offsets": [], "stalled": []}


@pytest.fixture
def coord(config, events):
    return Coordinator(
        config,
        on_assignment=events["assignments"].append,
        on_offset=events["offsets"].append,
        on_stalled=events["stalled"].append,
        clock=FakeClock(),
    )


def observed(reverse=True):
    """Parked robots as the biased sensor reports them."""
    points = STARTS - BIAS
    return points[::-1] if reverse else points


def calibrate(coord):
    coord.on_tick()
    coord.set_operating_condition(OperatingCondition.CALIBRATING)
    for i in range(1 + coord.config.calibration_samples):
        coord.on_detections(observed(), timestamp=float(i))


# =============================================================================
# BOOTSTRAP
# =============================================================================

class TestBootstrap:

    def test_tick_fixes_reference_order(self, coord):
        assert coord.phase is CoordinatorPhase.BOOTSTRAPPING
        coord.on_tick()
        assert coord.reference_order == (1, 2)
        assert coord.phase is CoordinatorPhase.AWAITING_CALIBRATION

    def test_waits_for_start_poses(self, config):
        config.robots[1] = RobotConfig()
        coord = Coordinator(config, clock=FakeClock())
        coord.on_tick()
        coord.on_tick()
        assert coord.phase is CoordinatorPhase.BOOTSTRAPPING
        assert coord.reference_order is None

        coord.set_start_pose(2, (3.0, 0.0, 2.5))
        coord.on_tick()
        assert coord.reference_order == (2, 1)

    def test_reference_order_never_changes(self, coord):
        coord.on_tick()
        coord.set_start_pose(2, (5.0, 0.0, 2.5))
        coord.on_tick()
        assert coord.reference_order == (1, 2)

    def test_frames_before_order_become_baseline(self, coord, events):
        assert coord.on_detections(observed(), timestamp=0.0) is None
        assert coord.baseline is not None
        assert len(coord.baseline) == 2
        assert events["assignments"] == []

    def test_unknown_slot(self, coord):
        with pytest.raises(KeyError):
            coord.set_start_pose(3, (0.0, 0.0, 0.0))


# =============================================================================
# CALIBRATION
# =============================================================================

class TestCalibration:

    def test_calibrates_to_bias(self, coord, events):
        calibrate(coord)
        assert coord.calibrated
        assert coord.phase is CoordinatorPhase.TRACKING
        assert len(events["offsets"]) == 1
        assert_allclose(coord.offset.translation, BIAS)

    def test_idle_condition_does_not_calibrate(self, coord, events):
        coord.on_tick()
        for i in range(10):
            coord.on_detections(observed(), timestamp=float(i))
        assert not coord.calibrated
        assert coord.phase is CoordinatorPhase.AWAITING_CALIBRATION
        assert events["offsets"] == []

    def test_calibration_frames_become_ordered_baseline(self, coord):
        coord.on_tick()
        coord.set_operating_condition(OperatingCondition.CALIBRATING)
        coord.on_detections(observed(), timestamp=0.0)
        coord.on_detections(observed(), timestamp=1.0)
        assert_allclose(coord.baseline.positions, STARTS - BIAS)

    def test_partial_frames_stall(self, coord, events):
        coord.on_tick()
        coord.set_operating_condition(OperatingCondition.CALIBRATING)
        coord.on_detections(observed(), timestamp=0.0)
        with pytest.warns(StalledCalibrationWarning):
            for i in range(4):
                coord.on_detections(observed()[:1], timestamp=1.0 + i)
        assert len(events["stalled"]) == 1
        assert coord.phase is CoordinatorPhase.CALIBRATING
        assert coord.calibrator.n_samples_collected == 0

    def test_offset_emitted_once(self, coord, events):
        calibrate(coord)
        for i in range(5):
            coord.on_detections(observed(), timestamp=10.0 + i)
        assert len(events["offsets"]) == 1


# =============================================================================
# TRACKING
# =============================================================================

class TestTracking:

    def test_identity_follows_motion(self, coord, events):
        calibrate(coord)
        result = coord.on_detections([(-1.0, 0.0, 2.5), (0.95, 0.0, 2.5)], timestamp=10.0)
        assert_allclose(result.position(1), [0.95, 0.0, 2.5])
        assert_allclose(result.position(2), [-1.0, 0.0, 2.5])

        event = events["assignments"][-1]
        assert event.timestamp == 10.0
        assert event.positions[1] == pytest.approx((0.95, 0.0, 2.5))
        assert event.missing == {1: False, 2: False}

    def test_occluded_robot_flagged_missing(self, coord, events):
        calibrate(coord)
        result = coord.on_detections([(0.92, 0.0, 2.5)], timestamp=10.0)
        assert result.missing.tolist() == [False, True]
        assert events["assignments"][-1].positions[2] is None
        assert coord.current_assignment is result

        back = coord.on_detections([(-1.05, 0.0, 2.5), (0.93, 0.0, 2.5)], timestamp=11.0)
        assert not back.missing.any()
        assert_allclose(back.position(1), [0.93, 0.0, 2.5])

    def test_previous_chains_frames(self, coord):
        calibrate(coord)
        x1, x2 = 0.9, -1.1
        for i in range(20):
            # robots cross slowly towards each other but never meet
            x1 -= 0.04
            x2 += 0.04
            result = coord.on_detections([(x2, 0.0, 2.5), (x1, 0.0, 2.5)], timestamp=20.0 + i)
        assert result.position(1)[0] == pytest.approx(x1)
        assert result.position(2)[0] == pytest.approx(x2)

    def test_missing_baseline_adopts_frame(self, config):
        class ForgetfulAssociator(PermutationAssociator):
            """Loses its baseline once, as after a restart of the engine."""
            forgot = False

            def find_best_assignment(self, previous, frame):
                if not self.forgot:
                    self.forgot = True
                    previous = None
                return super().find_best_assignment(previous, frame)

        coord = Coordinator(config, associator=ForgetfulAssociator(2))
        calibrate(coord)
        assert coord.on_detections([(0.9, 0.0, 2.5), (-1.1, 0.0, 2.5)], timestamp=10.0) is None
        assert coord.baseline.timestamp == 10.0
        result = coord.on_detections([(-1.1, 0.0, 2.5), (0.9, 0.0, 2.5)], timestamp=11.0)
        assert_allclose(result.position(1), [0.9, 0.0, 2.5])

    def test_excess_detections_discarded(self, coord, events):
        calibrate(coord)
        n_before = len(events["assignments"])
        assert coord.on_detections([(0, 0, 2), (1, 0, 2), (2, 0, 2)], timestamp=10.0) is None
        assert len(events["assignments"]) == n_before

    def test_non_finite_detection_dropped(self, coord):
        calibrate(coord)
        with pytest.warns(DegenerateGeometryWarning):
            result = coord.on_detections([(np.nan, 0.0, 2.5), (0.9, 0.0, 2.5)], timestamp=10.0)
        assert result.n_missing == 1
        assert_allclose(result.position(1), [0.9, 0.0, 2.5])


# =============================================================================
# OPERATING CONDITION
# =============================================================================

class TestOperatingCondition:

    @pytest.mark.parametrize("condition", [OperatingCondition.IDLE,
                                           OperatingCondition.STOPPED,
                                           OperatingCondition.EMERGENCY_STOP])
    def test_stop_invalidates_calibration(self, coord, condition):
        calibrate(coord)
        coord.set_operating_condition(condition)
        assert not coord.calibrated
        assert coord.offset is None
        assert coord.phase is CoordinatorPhase.AWAITING_CALIBRATION
        assert coord.calibrator.n_samples_collected == 0
        assert coord.current_assignment is None

    def test_running_keeps_calibration(self, coord):
        calibrate(coord)
        coord.set_operating_condition(OperatingCondition.RUNNING)
        assert coord.calibrated

    def test_recalibrates_after_stop(self, coord, events):
        calibrate(coord)
        coord.set_operating_condition(OperatingCondition.STOPPED)
        coord.set_operating_condition(OperatingCondition.RUNNING)
        for i in range(4):
            coord.on_detections(observed() + 0.05, timestamp=50.0 + i)
        assert coord.calibrated
        assert len(events["offsets"]) == 2
        assert_allclose(coord.offset.translation, BIAS - 0.05)

    def test_accepts_legacy_integer(self, coord):
        coord.set_operating_condition(2)
        assert coord.operating_condition is OperatingCondition.RUNNING

    def test_invalid_condition(self, coord):
        with pytest.raises(ValueError):
            coord.set_operating_condition(7)

    def test_tick_during_emergency_stop(self, coord):
        coord.on_tick()
        coord.set_operating_condition(OperatingCondition.EMERGENCY_STOP)
        coord.on_tick()
        coord.on_tick()
        assert coord.phase is CoordinatorPhase.AWAITING_CALIBRATION


# =============================================================================
# CONCURRENCY
# =============================================================================

class TestConcurrency:

    def test_tick_and_frames_from_two_threads(self, config):
        config.calibration_samples = 30
        coord = Coordinator(config)
        coord.on_tick()
        coord.set_operating_condition(OperatingCondition.CALIBRATING)
        errors = []

        def ticker():
            try:
                for _ in range(500):
                    coord.on_tick()
            except Exception as exc:  # pragma: no cover
                errors.append(exc)

        def sensor():
            try:
                for i in range(200):
                    coord.on_detections(observed(reverse=i % 2 == 0), timestamp=float(i))
            except Exception as exc:  # pragma: no cover
                errors.append(exc)

        threads = [threading.Thread(target=ticker), threading.Thread(target=sensor)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert coord.calibrated
        assert_allclose(coord.offset.translation, BIAS)

    def test_throttle_admits_one_caller_per_period(self):
        throttle = _Throttle(1.0, clock=lambda: 5.0)
        barrier = threading.Barrier(8)
        admitted = []

        def worker():
            barrier.wait()
            for _ in range(200):
                if throttle.ready("excess"):
                    admitted.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(admitted) == 1


# =============================================================================
# RADIUS COMPENSATION
# =============================================================================

class TestRadiusCompensation:

    def test_pushes_along_sensor_ray(self):
        assert_allclose(compensate_radius(np.array([[0.0, 0.0, 2.0]]), 0.5), [[0.0, 0.0, 2.5]])

    def test_zero_length_left_unchanged(self):
        with pytest.warns(DegenerateGeometryWarning):
            out = compensate_radius(np.array([[0.0, 0.0, 0.0], [3.0, 4.0, 0.0]]), 1.0)
        assert_allclose(out, [[0.0, 0.0, 0.0], [3.6, 4.8, 0.0]])

    def test_empty_frame(self):
        assert compensate_radius(np.zeros((0, 3)), 0.1).shape == (0, 3)

    def test_coordinator_applies_radius(self, config):
        config.compensate_radius = True
        config.robots = [RobotConfig(start_position=tuple(s), radius=0.5) for s in STARTS]
        coord = Coordinator(config)
        coord.on_detections([(0.0, 0.0, 2.0)], timestamp=0.0)
        assert_allclose(coord.baseline.positions[0], [0.0, 0.0, 2.5])
