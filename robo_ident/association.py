"""
Frame-to-frame slot association.

Every sensor frame arrives unordered and possibly short. The associator
pads it with far-away sentinel points to exactly N rows and picks the
slot -> detection bijection with the smallest total Euclidean displacement
from the previous assignment. Slots that receive a sentinel or a
non-finite detection are flagged missing and keep their previous position
as the reference for the next frame, so a robot that reappears is matched
against where it was last seen.

Two engines share the Associator interface:

  PermutationAssociator   exhaustive search over the N! permutation table,
                          O(N!·N) per frame, limited to small N
  HungarianAssociator     scipy linear_sum_assignment, O(N³), same optimum
                          (tie-breaks may differ) for larger N
"""

import logging
import warnings
from abc import ABC, abstractmethod
from typing import Optional

import numpy as np
from scipy.optimize import linear_sum_assignment

from .models import (
    AssociationUnavailable,
    DegenerateGeometryWarning,
    DetectionFrame,
    SortedAssignment,
)
from .permutations import generate_permutation_table

logger = logging.getLogger(__name__)

SENTINEL = 10000.0
DEGENERATE_COST = 1e12


class Associator(ABC):
    """Slot association interface.

    Args:
        n_robots: Number of slots N.
        sentinel: Coordinate used on every axis for padding points.
    """

    def __init__(self, n_robots: int, sentinel: float = SENTINEL):
        self.n_robots = n_robots
        self.sentinel = float(sentinel)

    def find_best_assignment(self, previous: Optional[SortedAssignment],
                             frame: DetectionFrame) -> SortedAssignment:
        """Assign the frame's detections to slots, continuing `previous`.

        Raises:
            AssociationUnavailable: no previous assignment exists yet.
            ValueError: the frame holds more detections than slots.
        """
        if previous is None:
            raise AssociationUnavailable("no previous assignment to associate against")
        if len(previous) != self.n_robots:
            raise ValueError(
                f"previous assignment has {len(previous)} slots, expected {self.n_robots}"
            )

        n_real = len(frame)
        padded = self.pad(frame)
        distances = self.distance_matrix(previous.positions, padded)
        perm = self._solve(distances)

        positions = padded[perm]
        missing = (perm >= n_real) | ~np.all(np.isfinite(positions), axis=1)
        # missing slots coast on their last known position
        positions[missing] = previous.positions[missing]
        assignment = SortedAssignment(
            timestamp=frame.timestamp,
            positions=positions,
            missing=missing,
        )
        if assignment.n_missing:
            logger.debug("%d of %d slots missing at t=%.3f",
                         assignment.n_missing, self.n_robots, frame.timestamp)
        return assignment

    def pad(self, frame: DetectionFrame) -> np.ndarray:
        """Frame points followed by sentinel rows, shape (N, 3)."""
        n_real = len(frame)
        if n_real > self.n_robots:
            raise ValueError(
                f"frame holds {n_real} detections but only {self.n_robots} robots exist"
            )
        fill = np.full((self.n_robots - n_real, 3), self.sentinel)
        return np.vstack([frame.points, fill])

    @staticmethod
    def distance_matrix(previous: np.ndarray, detections: np.ndarray) -> np.ndarray:
        """D[j, k] = |detections[k] - previous[j]|, non-finite entries clamped."""
        diff = detections[np.newaxis, :, :] - previous[:, np.newaxis, :]
        dist = np.linalg.norm(diff, axis=2)
        bad = ~np.isfinite(dist)
        if bad.any():
            msg = f"{int(bad.sum())} non-finite association distances clamped"
            logger.warning(msg)
            warnings.warn(msg, DegenerateGeometryWarning, stacklevel=3)
            dist[bad] = DEGENERATE_COST
        return dist

    @abstractmethod
    def _solve(self, distances: np.ndarray) -> np.ndarray:
        """Return perm with perm[j] = detection index assigned to slot j."""


class PermutationAssociator(Associator):
    """Exhaustive minimum-cost search over a precomputed permutation table.

    Ties resolve to the first minimum in table order.
    """

    def __init__(self, n_robots: int, sentinel: float = SENTINEL,
                 table: Optional[np.ndarray] = None):
        super().__init__(n_robots, sentinel)
        if table is None:
            table = generate_permutation_table(n_robots)
        if table.ndim != 2 or table.shape[1] != n_robots:
            raise ValueError(
                f"permutation table shape {table.shape} does not match {n_robots} robots"
            )
        self.table = table
        self._slots = np.arange(n_robots)

    def costs(self, distances: np.ndarray) -> np.ndarray:
        """Total displacement of every permutation in the table, shape (N!,)."""
        return distances[self._slots, self.table].sum(axis=1)

    def _solve(self, distances: np.ndarray) -> np.ndarray:
        best = int(np.argmin(self.costs(distances)))
        return self.table[best]


class HungarianAssociator(Associator):
    """Polynomial-time optimal matching via scipy.optimize.linear_sum_assignment."""

    def _solve(self, distances: np.ndarray) -> np.ndarray:
        row_ind, col_ind = linear_sum_assignment(distances)
        perm = np.empty(self.n_robots, dtype=np.intp)
        perm[row_ind] = col_ind
        return perm


ENGINES = {
    "permutation": PermutationAssociator,
    "hungarian": HungarianAssociator,
}


def make_associator(engine: str, n_robots: int, sentinel: float = SENTINEL,
                    table: Optional[np.ndarray] = None) -> Associator:
    """Build an associator by name ('permutation' or 'hungarian')."""
    if engine not in ENGINES:
        raise ValueError(f"unknown association engine {engine!r}, "
                         f"expected one of {sorted(ENGINES)}")
    if engine == "permutation":
        return PermutationAssociator(n_robots, sentinel, table=table)
    return ENGINES[engine](n_robots, sentinel)
