"""robo-ident: identity tracking and calibration for small robot teams.

An overhead sensor reports unordered, occasionally incomplete robot
positions. robo-ident bootstraps a canonical slot for every configured
robot, calibrates the sensor against the configured start poses and keeps
each slot on the same physical robot frame after frame.

Quick Start::

    from robo_ident import Coordinator, load_config, OperatingCondition
    coord = Coordinator(load_config("config/coordinator.yaml"),
                        on_assignment=publish)
    coord.on_tick()                       # periodic timer
    coord.set_operating_condition(OperatingCondition.CALIBRATING)
    coord.on_detections(points, timestamp=t)   # every sensor frame
"""

__version__ = "1.0.0"
__license__ = "AGPL-3.0-or-later"

# ---------------------------------------------------------------------------
# Data model & errors
# ---------------------------------------------------------------------------
from .models import (
    RobotSlot,
    DetectionFrame,
    SortedAssignment,
    CanonicalAssignmentEvent,
    CalibrationOffset,
    CalibrationPhase,
    CalibrationStatus,
    CalibrationResult,
    OperatingCondition,
    CoordinatorPhase,
    RoboIdentError,
    ConfigError,
    ResourceExhausted,
    AssociationUnavailable,
    StalledCalibrationWarning,
    DegenerateGeometryWarning,
)

# ---------------------------------------------------------------------------
# Core components
# ---------------------------------------------------------------------------
from .permutations import MAX_ROBOTS, factorial_feasible, generate_permutation_table
from .ordering import bootstrap_reference_order, sort_with_reference_order
from .calibration import CalibrationAccumulator
from .association import (
    Associator,
    PermutationAssociator,
    HungarianAssociator,
    make_associator,
)

# ---------------------------------------------------------------------------
# Orchestration & configuration
# ---------------------------------------------------------------------------
from .config import CoordinatorConfig, RobotConfig, config_from_dict, load_config
from .coordinator import Coordinator, compensate_radius

__all__ = [
    "RobotSlot", "DetectionFrame", "SortedAssignment", "CanonicalAssignmentEvent",
    "CalibrationOffset", "CalibrationPhase", "CalibrationStatus", "CalibrationResult",
    "OperatingCondition", "CoordinatorPhase",
    "RoboIdentError", "ConfigError", "ResourceExhausted", "AssociationUnavailable",
    "StalledCalibrationWarning", "DegenerateGeometryWarning",
    "MAX_ROBOTS", "factorial_feasible", "generate_permutation_table",
    "bootstrap_reference_order", "sort_with_reference_order",
    "CalibrationAccumulator",
    "Associator", "PermutationAssociator", "HungarianAssociator", "make_associator",
    "CoordinatorConfig", "RobotConfig", "config_from_dict", "load_config",
    "Coordinator", "compensate_radius",
]
