"""Logging configuration for coderecall.

Everything goes to stderr; stdout is reserved for CLI JSON output.
"""

import logging
import os
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from tqdm import tqdm

logger = logging.getLogger("coderecall")
logger.setLevel(logging.INFO)

# Attach the stderr handler once, even if this module is reloaded
if not logger.handlers:
    _handler = logging.StreamHandler(sys.stderr)
    _handler.setFormatter(
        logging.Formatter("[coderecall] %(asctime)s %(levelname)s: %(message)s", datefmt="%H:%M:%S")
    )
    logger.addHandler(_handler)


def _progress_disabled() -> bool:
    """CODERECALL_DISABLE_PROGRESS or a non-TTY stderr turns bars off (read per call)."""
    flag = os.getenv("CODERECALL_DISABLE_PROGRESS", "").lower()
    return flag in ("1", "true", "yes") or not sys.stderr.isatty()


class TimingContext:
    """Wall-clock duration of a logged operation, filled in when it ends."""

    def __init__(self) -> None:
        self.started_at = time.perf_counter()
        self.elapsed = 0.0

    @property
    def elapsed_ms(self) -> float:
        return self.elapsed * 1000

    def finish(self) -> float:
        self.elapsed = time.perf_counter() - self.started_at
        return self.elapsed


@contextmanager
def log_operation(
    operation: str,
    details: dict[str, Any] | None = None,
    level: int = logging.INFO,
) -> Iterator[TimingContext]:
    """Log the start and end of an operation and time it.

    Failures are logged at ERROR with the time spent and re-raised.

    Example:
        with log_operation("search", {"k": 10}, level=logging.DEBUG) as timing:
            ...
        stats.search_time_ms = timing.elapsed_ms
    """
    suffix = "".join(f" {key}={value}" for key, value in (details or {}).items())
    logger.log(level, "▶ %s%s", operation, suffix)

    timing = TimingContext()
    try:
        yield timing
    except Exception as e:
        logger.error("✗ %s failed after %.2fs: %s", operation, timing.finish(), e)
        raise
    logger.log(level, "✓ %s done in %.2fs", operation, timing.finish())


def embedding_progress(total: int, desc: str = "Embedding texts") -> tqdm:
    """Progress bar for a bulk embedding call; use as a context manager."""
    return tqdm(
        total=total,
        desc=f"  {desc}",
        unit="texts",
        file=sys.stderr,
        leave=False,
        disable=_progress_disabled(),
    )
