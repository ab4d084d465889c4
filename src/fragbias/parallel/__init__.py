"""Parallelization utilities for fragbias.

Enumeration, per-sample fitting and per-gene estimation are fanned out
with ParallelExecutor, one task per transcript, sample or gene.

Example:
    >>> from fragbias.parallel import ParallelExecutor
    >>> executor = ParallelExecutor(n_workers=4, backend="threads")
    >>> results, stats = executor.map_items(func, items)
"""

from fragbias.parallel.executor import (
    ExecutionStats,
    ExecutorBackend,
    ParallelExecutor,
    TaskResult,
)

__all__ = [
    "ExecutionStats",
    "ExecutorBackend",
    "ParallelExecutor",
    "TaskResult",
]
