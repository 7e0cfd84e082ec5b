"""
Coordinator configuration.

One explicit configuration object replaces scattered parameter lookups.
It can be built in code or loaded from YAML:

    number_robots: 3
    tick_interval: 0.033
    calibration_samples: 30
    robots:
      - {x0: 1.0, y0: 0.0, z0: 2.5}
      - {x0: 0.0, y0: 0.0, z0: 2.5, radius: 0.1}
      - {x0: -1.0, y0: 0.0, z0: 2.5}
"""

import math
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import yaml

from .association import ENGINES, SENTINEL
from .calibration import MAX_PARTIAL_FRAMES, NUM_CALIBRATES
from .models import ConfigError, ResourceExhausted, RobotSlot
from .permutations import MAX_ROBOTS, factorial_feasible


ROBOT_CIRCUMFERENCE = 57.5  # centimeters
DEFAULT_RADIUS = ROBOT_CIRCUMFERENCE / math.pi / 2.0 / 100.0  # meters


@dataclass
class RobotConfig:
    """Per-robot settings. start_position stays None until supplied."""
    start_position: Optional[Tuple[float, float, float]] = None
    radius: float = DEFAULT_RADIUS


@dataclass
class CoordinatorConfig:
    """Coordinator settings.

    robots may be shorter than number_robots; missing entries get defaults
    from validate().
    """
    number_robots: int = 1
    robots: List[RobotConfig] = field(default_factory=list)

    tick_interval: float = 0.033          # seconds
    calibration_samples: int = NUM_CALIBRATES
    max_partial_frames: int = MAX_PARTIAL_FRAMES

    sentinel: float = SENTINEL
    compensate_radius: bool = True
    engine: str = "permutation"

    def validate(self) -> "CoordinatorConfig":
        """Check values and pad robots to number_robots. Returns self."""
        n = self.number_robots
        if isinstance(n, bool) or not isinstance(n, int) or n < 1:
            raise ConfigError(f"number_robots must be a positive integer, got {n!r}")
        if self.engine not in ENGINES:
            raise ConfigError(f"engine must be one of {sorted(ENGINES)}, got {self.engine!r}")
        if self.engine == "permutation" and not factorial_feasible(n):
            raise ResourceExhausted(
                f"number_robots={n} exceeds the permutation search limit of {MAX_ROBOTS}"
            )
        if len(self.robots) > n:
            raise ConfigError(f"{len(self.robots)} robot entries for number_robots={n}")

        self.tick_interval = _as_float("tick_interval", self.tick_interval)
        self.sentinel = _as_float("sentinel", self.sentinel)
        self.calibration_samples = _as_int("calibration_samples", self.calibration_samples)
        self.max_partial_frames = _as_int("max_partial_frames", self.max_partial_frames)
        if not isinstance(self.compensate_radius, bool):
            raise ConfigError(f"compensate_radius must be true or false, got {self.compensate_radius!r}")

        if self.tick_interval <= 0:
            raise ConfigError(f"tick_interval must be > 0, got {self.tick_interval}")
        if self.calibration_samples < 1:
            raise ConfigError(f"calibration_samples must be >= 1, got {self.calibration_samples}")
        if self.max_partial_frames < 1:
            raise ConfigError(f"max_partial_frames must be >= 1, got {self.max_partial_frames}")
        if not np.isfinite(self.sentinel):
            raise ConfigError(f"sentinel must be finite, got {self.sentinel}")

        self.robots = list(self.robots) + [RobotConfig() for _ in range(n - len(self.robots))]
        for i, robot in enumerate(self.robots):
            robot.radius = _as_float(f"robot {i + 1} radius", robot.radius)
            if robot.radius < 0:
                raise ConfigError(f"robot {i + 1}: radius must be >= 0, got {robot.radius}")
            if robot.start_position is not None:
                try:
                    pos = tuple(float(v) for v in robot.start_position)
                except (TypeError, ValueError) as exc:
                    raise ConfigError(
                        f"robot {i + 1}: invalid start position {robot.start_position!r}"
                    ) from exc
                if len(pos) != 3 or not all(math.isfinite(v) for v in pos):
                    raise ConfigError(f"robot {i + 1}: invalid start position {robot.start_position!r}")
                robot.start_position = pos
        return self

    def slots(self) -> List[RobotSlot]:
        return [RobotSlot(slot=i + 1, start_position=r.start_position, radius=r.radius)
                for i, r in enumerate(self.robots)]


def _as_float(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}") from exc


def _as_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    return int(value)


# =============================================================================
# LOADING
# =============================================================================

_ROBOT_KEYS = {"x0", "y0", "z0", "radius"}


def _robot_from_dict(index: int, data: Dict[str, Any]) -> RobotConfig:
    unknown = set(data) - _ROBOT_KEYS
    if unknown:
        raise ConfigError(f"robot {index + 1}: unknown keys {sorted(unknown)}")
    coords = [data.get(k) for k in ("x0", "y0", "z0")]
    if all(c is None for c in coords):
        start = None
    elif any(c is None for c in coords):
        raise ConfigError(f"robot {index + 1}: x0, y0 and z0 must be given together")
    else:
        start = tuple(float(c) for c in coords)
    return RobotConfig(start_position=start,
                       radius=float(data.get("radius", DEFAULT_RADIUS)))


def config_from_dict(data: Optional[Dict[str, Any]]) -> CoordinatorConfig:
    """Build and validate a CoordinatorConfig from a plain mapping."""
    data = dict(data or {})
    known = {f.name for f in fields(CoordinatorConfig)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"unknown configuration keys {sorted(unknown)}")

    robots = data.pop("robots", None) or []
    if not isinstance(robots, list):
        raise ConfigError("robots must be a list")
    try:
        config = CoordinatorConfig(
            robots=[_robot_from_dict(i, r or {}) for i, r in enumerate(robots)],
            **data,
        )
    except (TypeError, ValueError) as exc:
        if isinstance(exc, ConfigError):
            raise
        raise ConfigError(str(exc)) from exc
    return config.validate()


def load_config(path: Union[str, Path]) -> CoordinatorConfig:
    """Load a YAML configuration file."""
    with open(path, 'r') as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigError(f"{path}: {exc}") from exc
    if data is not None and not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return config_from_dict(data)
