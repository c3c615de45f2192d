"""Candidate generation for the probabilistic fallback.

Every pair of still-unmatched QSOs could be the same contact, so the pass is
quadratic. Two things keep it tractable:

- QSOs are sorted by (adjusted) time and each one is only compared with the
  ones that follow it inside the zero-score time window. `impossible_match`
  rejects anything at or beyond that window, so no surviving pair is lost.
- The outer loop is split into chunks scored on a process pool (a thread
  pool under CI), falling back to sequential scoring if no pool can start.
"""

from __future__ import annotations

import concurrent.futures
import pickle
from datetime import timedelta
from typing import List, Optional, Sequence, Tuple

from loguru import logger

from .comparator import (
    CandidateOrder,
    MatchCandidate,
    QSOView,
    impossible_match,
    probability_score,
    rank_candidates,
)
from .config import DEFAULT_SETTINGS, MatchSettings
from .parallel_utils import (
    get_optimal_batch_size,
    get_optimal_workers,
    is_ci,
    should_use_parallel,
)


def _score_chunk(
    args: Tuple[Sequence[QSOView], int, int, MatchSettings]
) -> List[MatchCandidate]:
    """Score pairs (i, j) for i in [start, stop) and every later j inside the window."""
    views, start, stop, settings = args
    window = timedelta(minutes=settings.time_zero)
    found: List[MatchCandidate] = []
    for i in range(start, stop):
        q1 = views[i]
        for j in range(i + 1, len(views)):
            q2 = views[j]
            if q2.time - q1.time >= window:
                break
            if impossible_match(q1, q2, settings):
                continue
            metric, metric2 = probability_score(q1, q2, settings)
            if metric > settings.probability_floor:
                found.append(MatchCandidate(q1, q2, metric, metric2))
    return found


def _chunks(views: Sequence[QSOView], settings: MatchSettings, workers: int):
    size = get_optimal_batch_size(len(views), workers)
    return [(views, i, min(i + size, len(views)), settings) for i in range(0, len(views), size)]


def score_candidates(
    views: Sequence[QSOView],
    settings: MatchSettings = DEFAULT_SETTINGS,
    force_parallel: Optional[bool] = None,
) -> List[MatchCandidate]:
    """Return every pair scoring above the probability floor, best first."""
    timed = sorted((v for v in views if v.time is not None), key=lambda v: (v.time, v.id))
    if not timed:
        return []
    if not should_use_parallel(len(timed), force_parallel=force_parallel):
        return rank_candidates(_score_chunk((timed, 0, len(timed), settings)), CandidateOrder.by_probability)

    workers = get_optimal_workers()
    chunks = _chunks(timed, settings, workers)
    executor_cls = (
        concurrent.futures.ThreadPoolExecutor if is_ci() else concurrent.futures.ProcessPoolExecutor
    )
    try:
        with executor_cls(max_workers=min(workers, len(chunks))) as executor:
            results = list(executor.map(_score_chunk, chunks))
    except (OSError, RuntimeError, pickle.PicklingError) as e:
        logger.warning(f"Parallel scoring unavailable ({e}); scoring sequentially")
        results = [_score_chunk(chunk) for chunk in chunks]
    candidates = [c for chunk in results for c in chunk]
    return rank_candidates(candidates, CandidateOrder.by_probability)
