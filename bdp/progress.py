"""
Progress reporting utilities for bdp.

Progress goes to stderr and only when stderr is a terminal (or when
forced with -v), so stdout stays clean JSONL for pipes.
"""

import os
import sys
import time
from contextlib import contextmanager
from typing import Callable, Generator, Optional


class ProgressReporter:
    """Handles progress reporting to stderr while keeping stdout clean for data."""

    def __init__(self, enabled: Optional[bool] = None, use_colors: Optional[bool] = None):
        """
        Initialize progress reporter.

        Args:
            enabled: Explicitly enable/disable progress. None = auto-detect
            use_colors: Use ANSI colors in output. None = auto-detect
        """
        if enabled is None:
            self.enabled = sys.stderr.isatty()
        else:
            self.enabled = enabled

        if use_colors is None:
            self.use_colors = sys.stderr.isatty() and os.environ.get('NO_COLOR') is None
        else:
            self.use_colors = use_colors

        self.min_update_interval = 0.1
        self._last_update = 0.0

    def _colorize(self, text: str, code: str) -> str:
        if self.use_colors:
            return f"\033[{code}m{text}\033[0m"
        return text

    def __call__(self, message: str, force: bool = False):
        """Output a progress message to stderr if enabled."""
        if force or self.enabled:
            print(message, file=sys.stderr, flush=True)

    def error(self, message: str):
        """Always output errors to stderr."""
        print(self._colorize(f"ERROR: {message}", '31'), file=sys.stderr, flush=True)

    def warning(self, message: str):
        if self.enabled:
            print(self._colorize(f"WARNING: {message}", '33'), file=sys.stderr, flush=True)

    def success(self, message: str):
        if self.enabled:
            print(self._colorize(f"✓ {message}", '32'), file=sys.stderr, flush=True)

    @contextmanager
    def task(self, description: str, total: Optional[int] = None) -> Generator[Callable[[int, str], None], None, None]:
        """
        Track a task with an optional item count.

        Example:
            with progress.task("Downloading", total=len(files)) as update:
                for i, f in enumerate(files):
                    update(i + 1, f.name)
        """
        start = time.time()
        tty = sys.stderr.isatty()
        if self.enabled:
            suffix = f" ({total} items)" if total else ""
            print(f"{description}{suffix}...", file=sys.stderr, flush=True)

        def update(current: int, item: str = ""):
            if not (self.enabled and total):
                return
            now = time.time()
            if current < total and now - self._last_update < self.min_update_interval:
                return
            self._last_update = now
            elapsed = now - start
            rate = current / elapsed if elapsed > 0 else 0.0
            msg = f"  [{current}/{total}] {item} ({rate:.1f}/s)"
            if tty:
                print(f"\r{msg[:120]:<120}", end="", file=sys.stderr, flush=True)
            else:
                print(msg, file=sys.stderr, flush=True)

        try:
            yield update
        finally:
            if self.enabled:
                if tty and total:
                    print(file=sys.stderr)
                print(f"Completed in {time.time() - start:.1f}s", file=sys.stderr, flush=True)


_progress: Optional[ProgressReporter] = None


def get_progress(enabled: Optional[bool] = None) -> ProgressReporter:
    """
    Get the global progress reporter.

    BDP_PROGRESS=0/1 forces progress off/on when ``enabled`` is not given.
    """
    global _progress
    if enabled is None:
        env = os.environ.get('BDP_PROGRESS')
        if env == '0':
            enabled = False
        elif env == '1':
            enabled = True
    if _progress is None or enabled is not None:
        _progress = ProgressReporter(enabled)
    return _progress
