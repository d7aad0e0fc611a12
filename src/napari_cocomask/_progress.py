"""
Progress indication utilities for napari-cocomask plugin.

This module provides progress tracking during long-running operations such
as loading large COCO files or rendering images with many masks.
"""

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
import logging

logger = logging.getLogger(__name__)


@dataclass
class ProgressState:
    """Represents the current state of a progress operation."""
    current: int = 0
    total: int = 0
    message: str = ""
    started_at: float = field(default_factory=time.time)

    @property
    def progress_percent(self) -> float:
        """Get progress as percentage (0-100)."""
        if self.total <= 0:
            return 0.0
        return min(100.0, (self.current / self.total) * 100)

    @property
    def elapsed_time(self) -> float:
        return time.time() - self.started_at


class ProgressReporter:
    """Base progress reporter interface; reports nothing."""

    def __init__(self):
        self.state = ProgressState()

    def update(self, current: int, total: int, message: str = "") -> None:
        self.state.current = current
        self.state.total = total
        self.state.message = message

    def finish(self, success: bool = True, message: str = "") -> None:
        pass


class LoggingProgressReporter(ProgressReporter):
    """Progress reporter that writes debug records instead of printing."""

    def __init__(self, title: str = "Processing..."):
        super().__init__()
        self.title = title

    def update(self, current: int, total: int, message: str = "") -> None:
        super().update(current, total, message)
        logger.debug(f"{self.title} {self.state.progress_percent:5.1f}% "
                     f"({current}/{total}) {message}".rstrip())

    def finish(self, success: bool = True, message: str = "") -> None:
        level = logging.DEBUG if success else logging.WARNING
        logger.log(level, f"{self.title} {'finished' if success else 'failed'} "
                          f"in {self.state.elapsed_time:.2f}s {message}".rstrip())


def create_reporter(title: str = "Processing...", reporter_type: str = "log") -> ProgressReporter:
    """Create a progress reporter by type: ``log`` or ``none``."""
    if reporter_type == "log":
        return LoggingProgressReporter(title)
    if reporter_type == "none":
        return ProgressReporter()
    logger.warning(f"Unknown reporter type: {reporter_type}, using log")
    return LoggingProgressReporter(title)


@contextmanager
def progress_context(title: str = "Processing...", reporter_type: str = "log"):
    """Context manager for progress reporting."""
    reporter = create_reporter(title, reporter_type)
    try:
        yield reporter
    except Exception as e:
        reporter.finish(success=False, message=f"Error: {e}")
        raise
    reporter.finish(success=True)
