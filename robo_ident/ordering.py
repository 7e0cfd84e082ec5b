"""
Reference ordering of robot slots.

Before any calibration exists the only way to name detections is by where
the robots were told to start: slots are ranked by descending configured x,
and a full frame is ranked the same way so the k-th detection lands in the
k-th ranked slot.
"""

import logging
from typing import Mapping, Optional, Sequence

import numpy as np

from .models import ReferenceOrder, as_point

logger = logging.getLogger(__name__)

SORT_AXIS = 0  # x


def _rank_descending(values: Sequence[float]) -> list:
    """Indices ordered by descending value; equal values keep input order."""
    # sorted() is stable, so negating the key keeps ties in input order
    return sorted(range(len(values)), key=lambda i: -values[i])


def bootstrap_reference_order(
        positions: Mapping[int, Optional[Sequence[float]]]) -> Optional[ReferenceOrder]:
    """Derive the slot ranking from configured start positions.

    Args:
        positions: 1-based slot -> configured start position (None if unknown).

    Returns:
        Tuple of slots, highest x first, or None when any slot has no start
        position yet (the caller retries on its next tick).
    """
    slots = sorted(positions)
    xs = []
    for slot in slots:
        p = positions[slot]
        if p is None:
            logger.debug("start position of slot %d unknown, cannot order", slot)
            return None
        xs.append(float(as_point(p)[SORT_AXIS]))

    order = tuple(slots[i] for i in _rank_descending(xs))
    logger.info("reference order fixed: %s", order)
    return order


def sort_with_reference_order(points: np.ndarray, order: ReferenceOrder) -> np.ndarray:
    """Arrange a full frame into slot order using the reference order.

    Args:
        points: (N, 3) unordered detections.
        order: Reference order from bootstrap_reference_order().

    Returns:
        (N, 3) array where row j holds the detection for slot j + 1.

    Raises:
        ValueError: the frame does not hold exactly one point per slot.
    """
    points = np.asarray(points, dtype=float)
    n = len(order)
    if len(points) != n:
        raise ValueError(
            f"cannot order {len(points)} detections by a {n}-slot reference order"
        )

    ranked = _rank_descending(points[:, SORT_AXIS].tolist())
    sorted_points = np.empty((n, 3))
    for k, slot in enumerate(order):
        sorted_points[slot - 1] = points[ranked[k]]
    return sorted_points
