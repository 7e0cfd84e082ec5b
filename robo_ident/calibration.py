"""
Sensor-to-world calibration by averaging.

Assumes the sensor differs from the configured frame by a pure translation.
With every robot parked at its configured start pose, a fixed number of
fully visible frames are ordered by the reference order and averaged per
slot; the per-slot differences (configured - observed) are then averaged
into one shared offset.

  IDLE ──begin()──▶ ACCUMULATING ──n_samples full frames──▶ DONE
    ▲                    │                                  │
    └──────────────── reset() ◀─────────────────────────────┘
"""

import logging
import warnings
from typing import Optional

import numpy as np

from .models import (
    CalibrationOffset,
    CalibrationPhase,
    CalibrationResult,
    CalibrationStatus,
    DetectionFrame,
    ReferenceOrder,
    StalledCalibrationWarning,
)
from .ordering import sort_with_reference_order

logger = logging.getLogger(__name__)

NUM_CALIBRATES = 30
MAX_PARTIAL_FRAMES = 90  # ~3 s at the sensor rate


class CalibrationAccumulator:
    """Online estimate of the sensor offset from initial full-visibility frames.

    Args:
        n_robots: Number of slots N.
        n_samples: Qualifying frames to average before the offset is fixed.
        max_partial_frames: Consecutive partial frames that flag a stall.
    """

    def __init__(self, n_robots: int, n_samples: int = NUM_CALIBRATES,
                 max_partial_frames: int = MAX_PARTIAL_FRAMES):
        if n_samples < 1:
            raise ValueError(f"n_samples must be >= 1, got {n_samples}")
        if max_partial_frames < 1:
            raise ValueError(f"max_partial_frames must be >= 1, got {max_partial_frames}")
        self.n_robots = n_robots
        self.n_samples = n_samples
        self.max_partial_frames = max_partial_frames
        self.reset()

    # ----- state -----

    @property
    def phase(self) -> CalibrationPhase:
        return self._phase

    @property
    def n_samples_collected(self) -> int:
        return self._count

    @property
    def offset(self) -> Optional[CalibrationOffset]:
        return self._offset

    @property
    def last_sorted(self) -> Optional[np.ndarray]:
        """Most recent accepted frame in slot order."""
        return self._last_sorted

    def reset(self) -> None:
        """Drop every sample and any computed offset."""
        self._phase = CalibrationPhase.IDLE
        self._start = None
        self._sum = np.zeros((self.n_robots, 3))
        self._count = 0
        self._rejected_streak = 0
        self._offset = None
        self._last_sorted = None

    def begin(self, start_positions: np.ndarray) -> None:
        """Snapshot configured start poses and start a fresh accumulation."""
        start = np.asarray(start_positions, dtype=float)
        if start.shape != (self.n_robots, 3):
            raise ValueError(
                f"start positions must be ({self.n_robots}, 3), got {start.shape}"
            )
        self.reset()
        self._start = start.copy()
        self._phase = CalibrationPhase.ACCUMULATING
        logger.info("calibration started (%d samples)", self.n_samples)

    # ----- update -----

    def accumulate(self, frame: DetectionFrame, reference_order: ReferenceOrder,
                   start_positions: Optional[np.ndarray] = None) -> CalibrationResult:
        """Feed one frame.

        In IDLE the frame only opens the session (start_positions required)
        and is not counted. In DONE the frozen offset is returned unchanged.
        """
        if self._phase is CalibrationPhase.DONE:
            return self._result(CalibrationStatus.DONE)

        if self._phase is CalibrationPhase.IDLE:
            if start_positions is None:
                raise ValueError("start positions are required to open a calibration")
            self.begin(start_positions)
            return self._result(CalibrationStatus.CONTINUE)

        if len(frame) != self.n_robots:
            return self._reject(len(frame))

        sorted_points = sort_with_reference_order(frame.points, reference_order)
        self._last_sorted = sorted_points
        self._sum += sorted_points
        self._count += 1
        self._rejected_streak = 0
        logger.debug("calibration sample %d/%d", self._count, self.n_samples)

        if self._count < self.n_samples:
            return self._result(CalibrationStatus.CONTINUE)

        self._finish()
        return self._result(CalibrationStatus.DONE, transitioned=True)

    def _reject(self, n_seen: int) -> CalibrationResult:
        self._rejected_streak += 1
        logger.debug("calibration frame rejected: %d of %d robots visible",
                     n_seen, self.n_robots)
        if self._rejected_streak % self.max_partial_frames == 0:
            msg = (f"calibration stalled: {self._rejected_streak} consecutive frames "
                   f"without all {self.n_robots} robots visible")
            logger.warning(msg)
            warnings.warn(msg, StalledCalibrationWarning, stacklevel=3)
            return self._result(CalibrationStatus.STALLED)
        return self._result(CalibrationStatus.CONTINUE)

    def _finish(self) -> None:
        mean_observed = self._sum / self._count
        per_slot = self._start - mean_observed
        translation = per_slot.mean(axis=0)
        translation.flags.writeable = False
        self._offset = CalibrationOffset(translation=translation, n_samples=self._count)
        self._phase = CalibrationPhase.DONE
        logger.info("calibration offset: %.4f, %.4f, %.4f", *translation)

    def _result(self, status: CalibrationStatus, transitioned: bool = False) -> CalibrationResult:
        return CalibrationResult(
            status=status,
            n_samples=self._count,
            rejected_streak=self._rejected_streak,
            offset=self._offset,
            transitioned=transitioned,
        )
