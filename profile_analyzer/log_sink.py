"""Console log sink for Profile Analyzer.

Components receive a LogSink explicitly instead of printing directly, so the
amount of symbol-loading chatter can be tuned in one place.
"""
from __future__ import annotations

import sys
from typing import Iterable, Optional, Set, TextIO


def safe_print(msg: str, stream: Optional[TextIO] = None, end: str = "\n"):
    """Print message safely, handling unicode encoding issues on Windows."""
    stream = stream or sys.stdout
    try:
        stream.write(msg + end)
    except UnicodeEncodeError:
        encoding = getattr(stream, "encoding", None) or "utf-8"
        stream.write(msg.encode(encoding, errors="replace").decode(encoding, errors="replace") + end)
    stream.flush()


class LogSink:
    """Prefixed console output with verbosity and per-category filtering."""

    DEBUG = 10
    INFO = 20
    WARNING = 30

    # Categories that only show up with --verbose
    DEFAULT_SUPPRESSED = frozenset({"provider"})

    def __init__(self, verbose: bool = False, stream: Optional[TextIO] = None,
                 suppressed: Optional[Iterable[str]] = None):
        self.verbose = verbose
        self.stream = stream
        self.suppressed: Set[str] = set(self.DEFAULT_SUPPRESSED if suppressed is None else suppressed)
        self._progress_width = 0

    def enabled(self, category: str, level: int) -> bool:
        if self.verbose:
            return True
        if level < self.INFO:
            return False
        return level >= self.WARNING or category not in self.suppressed

    def emit(self, category: str, message: str, level: int = INFO):
        if not self.enabled(category, level):
            return
        self.clear_progress()
        safe_print(f"[{category.upper()}] {message}", self.stream)

    def debug(self, category: str, message: str):
        self.emit(category, message, self.DEBUG)

    def info(self, category: str, message: str):
        self.emit(category, message, self.INFO)

    def warning(self, category: str, message: str):
        self.emit(category, message, self.WARNING)

    def progress(self, text: str):
        """Overwrite the current progress line."""
        pad = max(0, self._progress_width - len(text))
        safe_print("\r" + text + " " * pad, self.stream, end="")
        self._progress_width = len(text)

    def clear_progress(self):
        if self._progress_width:
            safe_print("\r" + " " * self._progress_width + "\r", self.stream, end="")
            self._progress_width = 0


class NullSink(LogSink):
    """Sink that drops everything. Used as the default for library callers."""

    def enabled(self, category: str, level: int) -> bool:
        return False

    def progress(self, text: str):
        pass

    def clear_progress(self):
        pass
