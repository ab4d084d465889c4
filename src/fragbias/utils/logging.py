"""Logging configuration for fragbias.

Console output goes through rich; an optional file handler always records
DEBUG messages so that long fitting runs can be inspected afterwards.

Example:
    >>> from fragbias.utils.logging import setup_logging, Timer
    >>> setup_logging(verbosity=2)
    >>> with Timer("Fitting sample s1", logger):
    ...     fitter.fit_sample(...)
"""

import logging
import time
from pathlib import Path
from typing import Any

# =============================================================================
# Constants
# =============================================================================

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

RICH_FORMAT = "%(message)s"

ROOT_LOGGER = "fragbias"

VERBOSITY_LEVELS = {
    0: logging.WARNING,
    1: logging.INFO,
    2: logging.DEBUG,
}


# =============================================================================
# Setup Functions
# =============================================================================


def setup_logging(
    verbosity: int = 1,
    log_file: Path | str | None = None,
    use_rich: bool = True,
) -> logging.Logger:
    """Configure the fragbias logger hierarchy.

    Args:
        verbosity: Verbosity level (0=warning, 1=info, 2=debug).
        log_file: Optional file to log to.
        use_rich: Use rich for console output.

    Returns:
        The configured package logger.
    """
    level = VERBOSITY_LEVELS.get(verbosity, logging.DEBUG)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(logging.DEBUG if log_file is not None else level)
    logger.handlers.clear()

    if use_rich:
        from rich.logging import RichHandler

        console_handler: logging.Handler = RichHandler(
            rich_tracebacks=True,
            show_time=False,
            show_path=False,
        )
        console_handler.setFormatter(logging.Formatter(RICH_FORMAT))
    else:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))

    console_handler.setLevel(level)
    logger.addHandler(console_handler)

    if log_file is not None:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
        file_handler.setLevel(logging.DEBUG)
        logger.addHandler(file_handler)

    return logger


# =============================================================================
# Progress Logging
# =============================================================================


class ProgressLogger:
    """Periodic progress messages for loops over many genes or transcripts.

    Example:
        >>> progress = ProgressLogger(logger, total=len(genes), description="Estimating")
        >>> for gene in genes:
        ...     estimate(gene)
        ...     progress.update()
    """

    def __init__(
        self,
        logger: logging.Logger,
        total: int,
        interval: int = 100,
        description: str = "Processing",
    ) -> None:
        self.logger = logger
        self.total = total
        self.interval = max(1, interval)
        self.description = description
        self.count = 0

    def update(self, n: int = 1) -> None:
        """Advance the counter and log every ``interval`` items."""
        before = self.count // self.interval
        self.count += n
        if self.count // self.interval > before or self.count == self.total:
            pct = 100 * self.count / self.total if self.total > 0 else 100
            self.logger.info(f"{self.description}: {self.count}/{self.total} ({pct:.1f}%)")

    def finish(self) -> None:
        """Mark progress as complete."""
        self.logger.info(f"{self.description}: complete ({self.count} items)")


# =============================================================================
# Timing Utilities
# =============================================================================


class Timer:
    """Context manager that logs the wall time of a block at DEBUG level."""

    def __init__(self, description: str, logger: logging.Logger | None = None) -> None:
        self.description = description
        self.logger = logger or logging.getLogger(ROOT_LOGGER)
        self.start_time: float = 0.0
        self.elapsed: float = 0.0

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        self.elapsed = time.perf_counter() - self.start_time
        self.logger.debug(f"{self.description} completed in {self.elapsed:.2f}s")
