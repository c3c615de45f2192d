"""Worker sizing for the pairwise scoring pass.

Scoring candidate pairs is pure CPU work, so workers are sized on physical
cores; CI runners get a small fixed pool and a higher threshold before a pool
is used at all.
"""

import multiprocessing
import os
from typing import Optional

try:
    import psutil
    HAS_PSUTIL = True
except ImportError:
    HAS_PSUTIL = False

CI_ENV_VARS = ("CI", "GITHUB_ACTIONS", "TRAVIS", "JENKINS")


def is_ci() -> bool:
    return any(env in os.environ for env in CI_ENV_VARS)


def physical_cores() -> int:
    if HAS_PSUTIL:
        return psutil.cpu_count(logical=False) or 1
    # Rough estimate: assume two hardware threads per core
    return max(1, (multiprocessing.cpu_count() or 1) // 2)


def get_optimal_workers(max_workers: Optional[int] = None) -> int:
    """Return how many scoring workers to start.

    Args:
        max_workers: Optional maximum to cap the result

    Returns:
        At least 1; 2 under CI, otherwise one per physical core.
    """
    workers = 2 if is_ci() else physical_cores()
    if max_workers is not None:
        workers = min(workers, max_workers)
    return max(1, workers)


def get_optimal_batch_size(
    total_items: int,
    num_workers: int,
    min_batch: int = 50,
    max_batch: int = 5000,
) -> int:
    """Calculate how many outer-loop QSOs each scoring task should cover.

    Aims for about three tasks per worker so that uneven time windows
    (busy contest hours) still balance across the pool.
    """
    if total_items < min_batch:
        return max(1, total_items)
    ideal_batch = max(min_batch, total_items // (num_workers * 3))
    return min(max_batch, ideal_batch)


def should_use_parallel(
    item_count: int,
    threshold: int = 2000,
    force_parallel: Optional[bool] = None,
) -> bool:
    """Decide whether the scoring pass is large enough to pay for a pool."""
    if force_parallel is not None:
        return force_parallel
    if is_ci():
        threshold = max(threshold, 5000)
    return item_count >= threshold
