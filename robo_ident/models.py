"""
robo-ident data model
=====================

Shared types for the identity-tracking core:

  Slots & frames
    ├── RobotSlot          configured identity (1..N)
    ├── DetectionFrame     unordered sensor points for one timestamp
    └── SortedAssignment   slot-ordered points, always length N
  Calibration
    ├── CalibrationPhase / CalibrationStatus / CalibrationResult
    └── CalibrationOffset  single rigid translation
  Control signals
    ├── OperatingCondition external run/stop signal
    └── CoordinatorPhase   coordinator state machine
  Errors & warnings
"""

import numpy as np
from typing import Dict, Iterable, Optional, Sequence, Tuple
from dataclasses import dataclass, field
from enum import Enum, IntEnum, auto


Point3 = np.ndarray
ReferenceOrder = Tuple[int, ...]


# ===== ERRORS =====

class RoboIdentError(Exception):
    """Base class for all robo-ident errors."""


class ConfigError(RoboIdentError, ValueError):
    """Invalid configuration (robot count, start poses, unknown keys)."""


class ResourceExhausted(RoboIdentError):
    """Robot count too large for the factorial permutation search."""


class AssociationUnavailable(RoboIdentError):
    """No previous assignment exists to associate against."""


class StalledCalibrationWarning(RuntimeWarning):
    """Calibration is not progressing because robots are occluded."""


class DegenerateGeometryWarning(RuntimeWarning):
    """A detection was dropped or clamped (NaN, inf or zero-length)."""


# ===== CONTROL SIGNALS =====

class OperatingCondition(IntEnum):
    """External operating condition. Values match the legacy parameter."""
    IDLE = 0
    CALIBRATING = 1
    RUNNING = 2
    STOPPED = 3
    EMERGENCY_STOP = 4

    @property
    def is_active(self) -> bool:
        return self in (OperatingCondition.CALIBRATING, OperatingCondition.RUNNING)


class CoordinatorPhase(Enum):
    BOOTSTRAPPING = auto()          # no reference order yet
    AWAITING_CALIBRATION = auto()   # order known, condition not active
    CALIBRATING = auto()            # accumulator collecting samples
    TRACKING = auto()               # offset known, associating every frame


class CalibrationPhase(Enum):
    IDLE = auto()
    ACCUMULATING = auto()
    DONE = auto()


class CalibrationStatus(Enum):
    CONTINUE = auto()
    STALLED = auto()
    DONE = auto()


# ===== SLOTS & FRAMES =====

def as_point(value: Sequence[float]) -> Point3:
    """Convert a 3-sequence to a float Point3."""
    p = np.asarray(value, dtype=float).reshape(-1)
    if p.shape != (3,):
        raise ValueError(f"expected a 3D point, got shape {p.shape}")
    return p


@dataclass(frozen=True)
class RobotSlot:
    """Canonical robot identity.

    Attributes:
        slot: 1-based identity, stable for the process lifetime.
        start_position: Configured start pose, None until supplied.
        radius: Robot radius [m] used for detection compensation.
    """
    slot: int
    start_position: Optional[Tuple[float, float, float]]
    radius: float

    def __post_init__(self):
        if self.slot < 1:
            raise ConfigError(f"slot must be >= 1, got {self.slot}")
        if self.radius < 0.0:
            raise ConfigError(f"radius must be >= 0, got {self.radius}")


@dataclass
class DetectionFrame:
    """Unordered detections reported by the sensor at one timestamp."""
    timestamp: float
    points: np.ndarray  # (M, 3)

    def __post_init__(self):
        pts = np.asarray(self.points, dtype=float)
        if pts.size == 0:
            pts = np.zeros((0, 3))
        if pts.ndim != 2 or pts.shape[1] != 3:
            raise ValueError(f"points must be (M, 3), got shape {pts.shape}")
        self.points = pts

    @classmethod
    def from_points(cls, points: Iterable[Sequence[float]],
                    timestamp: float = 0.0) -> "DetectionFrame":
        return cls(timestamp=timestamp, points=np.array([as_point(p) for p in points]))

    def __len__(self) -> int:
        return len(self.points)


@dataclass(frozen=True)
class CanonicalAssignmentEvent:
    """Externally consumable per-slot positions for one frame."""
    timestamp: float
    positions: Dict[int, Optional[Tuple[float, float, float]]]
    missing: Dict[int, bool]


@dataclass
class SortedAssignment:
    """Slot-ordered detections. Row j belongs to slot j + 1.

    Missing slots keep their last known coordinates (the sentinel if the
    slot was never seen) so the next association cost stays defined; read
    them through position() or the missing mask.
    """
    timestamp: float
    positions: np.ndarray                 # (N, 3)
    missing: np.ndarray = field(default=None)  # (N,) bool

    def __post_init__(self):
        self.positions = np.asarray(self.positions, dtype=float).reshape(-1, 3)
        if self.missing is None:
            self.missing = np.zeros(len(self.positions), dtype=bool)
        else:
            self.missing = np.asarray(self.missing, dtype=bool).reshape(-1)
        if len(self.missing) != len(self.positions):
            raise ValueError("missing mask length must match positions")

    def __len__(self) -> int:
        return len(self.positions)

    @property
    def n_missing(self) -> int:
        return int(self.missing.sum())

    def position(self, slot: int) -> Optional[Point3]:
        """Position of a 1-based slot, None when the slot is missing."""
        if self.missing[slot - 1]:
            return None
        return self.positions[slot - 1].copy()

    def to_event(self) -> CanonicalAssignmentEvent:
        positions = {}
        missing = {}
        for j, (p, m) in enumerate(zip(self.positions, self.missing)):
            positions[j + 1] = None if m else tuple(float(v) for v in p)
            missing[j + 1] = bool(m)
        return CanonicalAssignmentEvent(self.timestamp, positions, missing)


# ===== CALIBRATION =====

@dataclass(frozen=True)
class CalibrationOffset:
    """Rigid translation from sensor space into the configured frame."""
    translation: np.ndarray
    n_samples: int = 0

    def apply(self, points: np.ndarray) -> np.ndarray:
        """Map sensor-space point(s) into reference space."""
        return np.asarray(points, dtype=float) + self.translation

    def as_tuple(self) -> Tuple[float, float, float]:
        return tuple(float(v) for v in self.translation)


@dataclass(frozen=True)
class CalibrationResult:
    status: CalibrationStatus
    n_samples: int
    rejected_streak: int = 0
    offset: Optional[CalibrationOffset] = None
    transitioned: bool = False  # True only on the frame that completed calibration
