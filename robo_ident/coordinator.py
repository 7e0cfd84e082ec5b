"""
Multi-robot coordinator.

Owns all identity state and drives it from two event sources:

  on_tick()        periodic timer: bootstraps the reference order, reports
                   the operating condition
  on_detections()  sensor frames: baseline → calibration → association

  BOOTSTRAPPING ──order known──▶ AWAITING_CALIBRATION
                                   │ condition CALIBRATING / RUNNING
                                   ▼
                                 CALIBRATING ──offset──▶ TRACKING
        condition IDLE / STOPPED / EMERGENCY_STOP resets to AWAITING_CALIBRATION

One lock serialises both event sources; output callbacks run after the
lock is released.
"""

import logging
import threading
import time
import warnings
from typing import Callable, Dict, Iterable, Optional, Sequence, Union

import numpy as np

from .association import Associator, make_associator
from .calibration import CalibrationAccumulator
from .config import CoordinatorConfig
from .models import (
    AssociationUnavailable,
    CalibrationOffset,
    CalibrationResult,
    CalibrationStatus,
    CanonicalAssignmentEvent,
    CoordinatorPhase,
    DegenerateGeometryWarning,
    DetectionFrame,
    OperatingCondition,
    ReferenceOrder,
    SortedAssignment,
    as_point,
)
from .ordering import bootstrap_reference_order, sort_with_reference_order
from .permutations import generate_permutation_table

logger = logging.getLogger(__name__)


class _Throttle:
    """Allow a message through at most once per period."""

    def __init__(self, period: float = 1.0, clock: Callable[[], float] = time.monotonic):
        self.period = period
        self.clock = clock
        self._last: Dict[str, float] = {}
        self._lock = threading.Lock()

    def ready(self, key: str) -> bool:
        now = self.clock()
        with self._lock:
            last = self._last.get(key)
            if last is not None and now - last < self.period:
                return False
            self._last[key] = now
            return True


class Coordinator:
    """Identity tracking and calibration for N robots seen by one sensor.

    Args:
        config: Validated coordinator configuration.
        associator: Association engine; built from config.engine if omitted.
        on_assignment: Called with every live CanonicalAssignmentEvent.
        on_offset: Called once per completed calibration.
        on_stalled: Called with the CalibrationResult when calibration stalls.
        clock: Time source for default timestamps and log throttling.
    """

    def __init__(self, config: CoordinatorConfig,
                 associator: Optional[Associator] = None,
                 on_assignment: Optional[Callable[[CanonicalAssignmentEvent], None]] = None,
                 on_offset: Optional[Callable[[CalibrationOffset], None]] = None,
                 on_stalled: Optional[Callable[[CalibrationResult], None]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config.validate()
        self.n_robots = config.number_robots
        self.clock = clock

        if associator is None:
            table = None
            if config.engine == "permutation":
                table = generate_permutation_table(self.n_robots)
            associator = make_associator(config.engine, self.n_robots,
                                         config.sentinel, table=table)
        self.associator = associator
        self.calibrator = CalibrationAccumulator(
            self.n_robots,
            n_samples=config.calibration_samples,
            max_partial_frames=config.max_partial_frames,
        )

        self.on_assignment = on_assignment
        self.on_offset = on_offset
        self.on_stalled = on_stalled

        self._lock = threading.Lock()
        self._throttle = _Throttle(1.0, clock)
        self._start_positions: Dict[int, Optional[np.ndarray]] = {
            s.slot: None if s.start_position is None else as_point(s.start_position)
            for s in config.slots()
        }
        self._radius = float(np.mean([r.radius for r in config.robots]))

        self._phase = CoordinatorPhase.BOOTSTRAPPING
        self._condition = OperatingCondition.IDLE
        self._reference_order: Optional[ReferenceOrder] = None
        self._previous: Optional[SortedAssignment] = None
        self._current: Optional[SortedAssignment] = None

        logger.info("coordinator created for %d robots (%s association)",
                    self.n_robots, type(self.associator).__name__)

    # ----- read-only state -----

    @property
    def phase(self) -> CoordinatorPhase:
        return self._phase

    @property
    def operating_condition(self) -> OperatingCondition:
        return self._condition

    @property
    def reference_order(self) -> Optional[ReferenceOrder]:
        return self._reference_order

    @property
    def calibrated(self) -> bool:
        return self._phase is CoordinatorPhase.TRACKING

    @property
    def offset(self) -> Optional[CalibrationOffset]:
        return self.calibrator.offset if self.calibrated else None

    @property
    def current_assignment(self) -> Optional[SortedAssignment]:
        """Last live assignment produced while tracking."""
        return self._current

    @property
    def baseline(self) -> Optional[SortedAssignment]:
        """Assignment the next frame will be associated against."""
        return self._previous

    # ----- external control -----

    def set_operating_condition(self, condition: Union[OperatingCondition, int]) -> None:
        """Update the operating condition. Any stop invalidates calibration."""
        try:
            condition = OperatingCondition(condition)
        except ValueError:
            logger.error("invalid operating condition %r", condition)
            raise
        with self._lock:
            previous, self._condition = self._condition, condition
            if condition != previous:
                logger.info("operating condition %s -> %s", previous.name, condition.name)
            if not condition.is_active:
                self._reset_calibration()

    def set_start_pose(self, slot: int, position: Sequence[float]) -> None:
        """Supply or change the configured start pose of a 1-based slot."""
        if slot not in self._start_positions:
            raise KeyError(f"unknown slot {slot}")
        point = as_point(position)
        if not np.all(np.isfinite(point)):
            raise ValueError(f"start pose of slot {slot} must be finite, got {position!r}")
        with self._lock:
            self._start_positions[slot] = point

    def reset_calibration(self) -> None:
        with self._lock:
            self._reset_calibration()

    def _reset_calibration(self) -> None:
        if self._phase in (CoordinatorPhase.CALIBRATING, CoordinatorPhase.TRACKING):
            logger.info("calibration cleared")
        self.calibrator.reset()
        self._current = None
        if self._reference_order is not None:
            self._phase = CoordinatorPhase.AWAITING_CALIBRATION

    # ----- periodic tick -----

    def on_tick(self) -> None:
        with self._lock:
            if self._reference_order is None:
                self._try_bootstrap()
                return

            condition = self._condition
            if condition.is_active:
                return
            if condition is OperatingCondition.EMERGENCY_STOP:
                if self._throttle.ready("estop"):
                    logger.warning("emergency stop requested")
            elif self._throttle.ready("idle"):
                logger.debug("coordinator idle (%s)", condition.name)

    def _try_bootstrap(self) -> None:
        order = bootstrap_reference_order(self._start_positions)
        if order is None:
            if self._throttle.ready("order"):
                logger.warning("cannot determine robot ordering: start poses incomplete")
            return
        self._reference_order = order
        self._phase = CoordinatorPhase.AWAITING_CALIBRATION

    # ----- sensor frames -----

    def on_detections(self, frame: Union[DetectionFrame, Iterable[Sequence[float]]],
                      timestamp: Optional[float] = None) -> Optional[SortedAssignment]:
        """Process one sensor frame.

        Returns:
            The live assignment while tracking, otherwise None.
        """
        if not isinstance(frame, DetectionFrame):
            stamp = self.clock() if timestamp is None else timestamp
            frame = DetectionFrame.from_points(frame, timestamp=stamp)

        frame = self._preprocess(frame)
        if frame is None:
            return None

        emit_offset = None
        stalled = None
        with self._lock:
            if self._phase is CoordinatorPhase.TRACKING:
                result = self._associate(frame)
            else:
                result = None
                cal = self._route_uncalibrated(frame)
                if cal is not None and cal.transitioned:
                    emit_offset = cal.offset
                elif cal is not None and cal.status is CalibrationStatus.STALLED:
                    stalled = cal

        if stalled is not None and self.on_stalled is not None:
            self.on_stalled(stalled)
        if emit_offset is not None and self.on_offset is not None:
            self.on_offset(emit_offset)
        if result is not None and self.on_assignment is not None:
            self.on_assignment(result.to_event())
        return result

    def _route_uncalibrated(self, frame: DetectionFrame) -> Optional[CalibrationResult]:
        if self._reference_order is None or not self._condition.is_active:
            self._adopt_baseline(frame)
            return None

        if self._phase is CoordinatorPhase.AWAITING_CALIBRATION:
            start = self._start_array()
            if start is None:
                if self._throttle.ready("start"):
                    logger.warning("cannot calibrate: start poses incomplete")
                self._adopt_baseline(frame)
                return None
            self.calibrator.begin(start)
            self._phase = CoordinatorPhase.CALIBRATING
            self._adopt_baseline(frame)
            return None

        cal = self.calibrator.accumulate(frame, self._reference_order)
        if self.calibrator.last_sorted is not None and len(frame) == self.n_robots:
            self._previous = SortedAssignment(frame.timestamp, self.calibrator.last_sorted)
        if cal.transitioned:
            self._phase = CoordinatorPhase.TRACKING
        return cal

    def _associate(self, frame: DetectionFrame) -> Optional[SortedAssignment]:
        try:
            assignment = self.associator.find_best_assignment(self._previous, frame)
        except AssociationUnavailable:
            logger.info("no association baseline yet, adopting current frame")
            self._adopt_baseline(frame)
            return None
        self._previous = assignment
        self._current = assignment
        return assignment

    def _adopt_baseline(self, frame: DetectionFrame) -> None:
        """Store the frame as the next association baseline without associating."""
        if self._reference_order is not None and len(frame) == self.n_robots:
            positions = sort_with_reference_order(frame.points, self._reference_order)
            self._previous = SortedAssignment(frame.timestamp, positions)
            return
        padded = self.associator.pad(frame)
        missing = np.arange(self.n_robots) >= len(frame)
        self._previous = SortedAssignment(frame.timestamp, padded, missing)

    def _start_array(self) -> Optional[np.ndarray]:
        rows = [self._start_positions[slot] for slot in sorted(self._start_positions)]
        if any(r is None for r in rows):
            return None
        return np.vstack(rows)

    # ----- preprocessing -----

    def _preprocess(self, frame: DetectionFrame) -> Optional[DetectionFrame]:
        points = frame.points
        finite = np.all(np.isfinite(points), axis=1)
        if not finite.all():
            msg = f"dropped {int((~finite).sum())} non-finite detections"
            logger.warning(msg)
            warnings.warn(msg, DegenerateGeometryWarning, stacklevel=3)
            points = points[finite]

        if len(points) > self.n_robots:
            if self._throttle.ready("excess"):
                logger.warning("frame with %d detections for %d robots discarded",
                               len(points), self.n_robots)
            return None

        if self.config.compensate_radius and self._radius > 0:
            points = compensate_radius(points, self._radius)
        return DetectionFrame(frame.timestamp, points)


def compensate_radius(points: np.ndarray, radius: float) -> np.ndarray:
    """Move each detection outward along the sensor ray by the robot radius.

    The sensor sees the near surface of a robot; this shifts the point to the
    robot's centre. Zero-length points are left unchanged.
    """
    points = np.asarray(points, dtype=float)
    if len(points) == 0:
        return points.copy()
    norms = np.linalg.norm(points, axis=1)
    zero = norms == 0.0
    if zero.any():
        msg = f"{int(zero.sum())} zero-length detections not radius-compensated"
        logger.warning(msg)
        warnings.warn(msg, DegenerateGeometryWarning, stacklevel=2)
    scale = np.ones_like(norms)
    scale[~zero] = 1.0 + radius / norms[~zero]
    return points * scale[:, np.newaxis]
