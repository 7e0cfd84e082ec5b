"""
Permutation table for brute-force slot association.

The table is built once at startup and shared read-only. Its size is N!,
so the robot count is bounded by MAX_ROBOTS (9! = 362880 rows, ~26 MB as
int64 and still inside one sensor period for the vectorised cost search).
"""

import itertools
import math

import numpy as np

from .models import ConfigError, ResourceExhausted


MAX_ROBOTS = 9


def factorial_feasible(n: int, max_robots: int = MAX_ROBOTS) -> bool:
    """True when an n-robot permutation table stays inside the bound."""
    return 1 <= n <= max_robots


def generate_permutation_table(n: int, max_robots: int = MAX_ROBOTS) -> np.ndarray:
    """Build every permutation of the 0-based slot indices {0..n-1}.

    Row i maps slot j to detection index table[i, j]. Rows are emitted in
    lexicographic order; the order carries no meaning beyond breaking ties
    between equal-cost assignments.

    Args:
        n: Number of robots (>= 1).
        max_robots: Feasibility bound, checked before any allocation.

    Returns:
        Read-only int array of shape (n!, n).

    Raises:
        ConfigError: n < 1 or not an integer.
        ResourceExhausted: n > max_robots.
    """
    if isinstance(n, bool) or not isinstance(n, (int, np.integer)):
        raise ConfigError(f"number of robots must be an integer, got {n!r}")
    if n < 1:
        raise ConfigError(f"number of robots must be >= 1, got {n}")
    if n > max_robots:
        raise ResourceExhausted(
            f"{n} robots need {math.factorial(n)} permutations; "
            f"brute-force association is limited to {max_robots} robots"
        )

    table = np.fromiter(
        itertools.chain.from_iterable(itertools.permutations(range(n))),
        dtype=np.intp,
        count=math.factorial(n) * n,
    ).reshape(math.factorial(n), n)
    table.flags.writeable = False
    return table
