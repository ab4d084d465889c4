"""Local parallel execution of independent tasks.

Enumeration, fitting and estimation are data-parallel: one task per
transcript, per sample or per gene. Every task reads immutable inputs and
returns an independent record, so tasks can run on any backend without
locking.

Features:
    - Multiple execution backends (serial, threads, processes)
    - Per-task timing and error capture
    - Continue-on-error by default

Example:
    >>> from fragbias.parallel.executor import ParallelExecutor
    >>> executor = ParallelExecutor(n_workers=8)
    >>> results, stats = executor.map_items(fit_one_sample, samples)
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import (
    Future,
    ProcessPoolExecutor,
    ThreadPoolExecutor,
    as_completed,
)
from enum import Enum
from typing import Any, Callable, Sequence, TypeVar

import attrs

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


# =============================================================================
# Enums
# =============================================================================


class ExecutorBackend(Enum):
    """Available execution backends."""

    SERIAL = "serial"
    THREADS = "threads"
    PROCESSES = "processes"


# =============================================================================
# Data Structures
# =============================================================================


@attrs.define(slots=True)
class TaskResult:
    """Result from a parallel task."""

    task_id: str
    success: bool
    result: Any | None = None
    error: str | None = None
    error_type: str | None = None
    duration_seconds: float = 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "task_id": self.task_id,
            "success": self.success,
            "error": self.error,
            "error_type": self.error_type,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@attrs.define(slots=True)
class ExecutionStats:
    """Statistics from parallel execution."""

    total_tasks: int
    successful: int
    failed: int
    total_duration: float
    mean_task_duration: float
    max_task_duration: float

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "total_tasks": self.total_tasks,
            "successful": self.successful,
            "failed": self.failed,
            "total_duration": round(self.total_duration, 3),
            "mean_task_duration": round(self.mean_task_duration, 3),
            "max_task_duration": round(self.max_task_duration, 3),
        }


def _timed_call(func: Callable[[Any], Any], task_id: str, item: Any) -> TaskResult:
    """Run one task and capture its outcome.

    Module level so that process pools can pickle it.
    """
    start_time = time.time()
    try:
        result = func(item)
    except Exception as e:
        return TaskResult(
            task_id=task_id,
            success=False,
            error=str(e),
            error_type=type(e).__name__,
            duration_seconds=time.time() - start_time,
        )
    return TaskResult(
        task_id=task_id,
        success=True,
        result=result,
        duration_seconds=time.time() - start_time,
    )


# =============================================================================
# Parallel Executor
# =============================================================================


class ParallelExecutor:
    """Execute independent tasks in parallel.

    Results are returned in input order regardless of completion order.

    Example:
        >>> executor = ParallelExecutor(n_workers=4, backend="processes")
        >>> results, stats = executor.map_items(estimate_gene, genes, ids=gene_ids)
        >>> print(f"Processed {stats.successful}/{stats.total_tasks} genes")
    """

    def __init__(
        self,
        n_workers: int = 1,
        backend: ExecutorBackend | str = ExecutorBackend.PROCESSES,
        progress_callback: Callable[[int, int, str], None] | None = None,
    ) -> None:
        """Initialize executor.

        Args:
            n_workers: Number of parallel workers (1 = serial).
            backend: Execution backend.
            progress_callback: Called with (completed, total, task_id).
        """
        self.n_workers = max(1, n_workers)
        self.backend = (
            ExecutorBackend(backend) if isinstance(backend, str) else backend
        )
        self.progress_callback = progress_callback

        # Auto-select serial if n_workers=1
        if self.n_workers == 1:
            self.backend = ExecutorBackend.SERIAL

    def map_items(
        self,
        func: Callable[[T], R],
        items: Sequence[T],
        ids: Sequence[str] | None = None,
        continue_on_error: bool = True,
    ) -> tuple[list[TaskResult], ExecutionStats]:
        """Apply a function to every item.

        Args:
            func: Function to apply; must be picklable for the process backend.
            items: Items to process.
            ids: Task identifiers, defaults to ``item_000000``-style ids.
            continue_on_error: If False, the first failure raises RuntimeError.

        Returns:
            Tuple of (results in input order, execution stats).
        """
        items = list(items)
        if ids is None:
            ids = [f"item_{i:06d}" for i in range(len(items))]
        elif len(ids) != len(items):
            raise ValueError("ids and items must have the same length")

        if not items:
            return [], ExecutionStats(0, 0, 0, 0.0, 0.0, 0.0)

        logger.debug(
            f"Processing {len(items)} tasks with {self.n_workers} workers "
            f"(backend={self.backend.value})"
        )
        start_time = time.time()

        if self.backend == ExecutorBackend.SERIAL:
            results = self._execute_serial(func, items, ids, continue_on_error)
        else:
            pool_class = (
                ThreadPoolExecutor
                if self.backend == ExecutorBackend.THREADS
                else ProcessPoolExecutor
            )
            results = self._execute_pool(pool_class, func, items, ids, continue_on_error)

        total_duration = time.time() - start_time
        successful = sum(1 for r in results if r.success)
        durations = [r.duration_seconds for r in results]
        stats = ExecutionStats(
            total_tasks=len(results),
            successful=successful,
            failed=len(results) - successful,
            total_duration=total_duration,
            mean_task_duration=sum(durations) / len(durations),
            max_task_duration=max(durations),
        )

        logger.debug(
            f"Completed: {successful}/{len(items)} tasks, duration={total_duration:.1f}s"
        )
        return results, stats

    def _report(self, completed: int, total: int, result: TaskResult, continue_on_error: bool) -> None:
        if self.progress_callback:
            self.progress_callback(completed, total, result.task_id)
        if not result.success:
            logger.debug(f"Task {result.task_id} failed: {result.error}")
            if not continue_on_error:
                logger.error(f"Task {result.task_id} failed: {result.error}")
                raise RuntimeError(f"Task {result.task_id} failed: {result.error}")

    def _execute_serial(
        self,
        func: Callable,
        items: list,
        ids: Sequence[str],
        continue_on_error: bool,
    ) -> list[TaskResult]:
        """Serial execution with progress tracking."""
        results = []
        for i, (task_id, item) in enumerate(zip(ids, items)):
            result = _timed_call(func, task_id, item)
            results.append(result)
            self._report(i + 1, len(items), result, continue_on_error)
        return results

    def _execute_pool(
        self,
        pool_class: type,
        func: Callable,
        items: list,
        ids: Sequence[str],
        continue_on_error: bool,
    ) -> list[TaskResult]:
        """Execution on a thread or process pool."""
        results: list[TaskResult | None] = [None] * len(items)
        completed = 0

        with pool_class(max_workers=self.n_workers) as executor:
            futures: dict[Future, int] = {
                executor.submit(_timed_call, func, task_id, item): i
                for i, (task_id, item) in enumerate(zip(ids, items))
            }
            for future in as_completed(futures):
                index = futures[future]
                completed += 1
                try:
                    result = future.result()
                except Exception as e:
                    # Worker died or the task could not be pickled
                    result = TaskResult(
                        task_id=ids[index],
                        success=False,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                results[index] = result
                try:
                    self._report(completed, len(items), result, continue_on_error)
                except RuntimeError:
                    executor.shutdown(wait=False, cancel_futures=True)
                    raise

        return [r for r in results if r is not None]
