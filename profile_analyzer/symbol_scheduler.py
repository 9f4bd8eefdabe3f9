"""Bounded symbol loading.

Symbol downloads for a single module can take minutes or pull hundreds of
megabytes. The scheduler runs one module load on a worker thread and keeps
waiting only while the symbol cache keeps growing, with an optional hard
cap on how much a single module may add to the cache.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional

from .log_sink import LogSink, NullSink


class LoadState(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    SKIPPED_TIMEOUT = "skipped_timeout"
    SKIPPED_SIZE_CAP = "skipped_size_cap"
    FAILED = "failed"


@dataclass
class SymbolLoadOutcome:
    """Terminal result of one scheduled module load."""
    state: LoadState
    reason: Optional[str] = None
    loaded_mb: float = 0.0
    module_name: Optional[str] = None
    elapsed_seconds: float = 0.0

    @property
    def completed(self) -> bool:
        return self.state is LoadState.COMPLETED

    @property
    def skipped(self) -> bool:
        return self.state in (LoadState.SKIPPED_TIMEOUT, LoadState.SKIPPED_SIZE_CAP)


def format_skip_reason(reason: str, module_name: Optional[str]) -> str:
    return f"{reason} ({module_name})" if module_name else reason


class _LoadWorker:
    """Runs the load callable on a daemon thread and keeps its result."""

    def __init__(self, load: Callable[[], Any], name: str):
        self.load = load
        self.done = threading.Event()
        self.error: Optional[BaseException] = None
        self.result: Any = None
        self.thread = threading.Thread(target=self._run, name=name, daemon=True)

    def _run(self):
        try:
            self.result = self.load()
        except Exception as e:
            self.error = e
        finally:
            self.done.set()

    def start(self):
        self.thread.start()


class SymbolLoadScheduler:
    """
    Wait for a module's symbol load with a stall timeout and a size cap.

    Poll cycle (every ``check_interval`` seconds while running):
    finished -> COMPLETED; cache growth above ``max_size_mb`` ->
    SKIPPED_SIZE_CAP; no growth of at least 0.01 MB for ``timeout_seconds``
    -> SKIPPED_TIMEOUT; and after ``3 * timeout_seconds`` with less than
    0.01 MB loaded in total -> SKIPPED_TIMEOUT as well.

    Skipping only stops the progress indicator. The load thread is left to
    finish on its own and is kept in ``orphaned_loads``.
    """

    CHECK_INTERVAL_SECONDS = 2.0
    MIN_PROGRESS_MB = 0.01
    TRICKLE_FACTOR = 3
    SPINNER = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"
    SPINNER_DELAY = 0.1

    def __init__(self, cache_size_mb: Callable[[], float],
                 timeout_seconds: float = 30,
                 max_size_mb: Optional[float] = None,
                 check_interval: float = CHECK_INTERVAL_SECONDS,
                 sink: Optional[LogSink] = None,
                 show_progress: bool = False,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            cache_size_mb: Returns the current symbol cache size in MB.
            timeout_seconds: Stall timeout; the load is skipped once the cache
                stops growing for this long.
            max_size_mb: Optional cap on how much one module may add.
            check_interval: Seconds between polls.
            sink: Where progress and skip messages go.
            show_progress: Run a spinner showing the MB loaded so far.
            clock: Monotonic time source, in seconds.
        """
        self.cache_size_mb = cache_size_mb
        self.timeout_seconds = timeout_seconds
        self.max_size_mb = max_size_mb
        self.check_interval = check_interval
        self.sink = sink or NullSink()
        self.show_progress = show_progress
        self._clock = clock
        self.orphaned_loads: List[threading.Thread] = []

    def _measure(self) -> float:
        try:
            return float(self.cache_size_mb())
        except Exception as e:
            self.sink.debug("symbol", f"Could not measure symbol cache: {e}")
            return 0.0

    def _start_progress(self, initial_mb: float, cancel: threading.Event) -> Optional[threading.Thread]:
        if not self.show_progress:
            return None

        def spin():
            index = 0
            while not cancel.is_set():
                loaded = max(0.0, self._measure() - initial_mb)
                self.sink.progress(f"{self.SPINNER[index % len(self.SPINNER)]} {loaded:.2f} MB")
                index += 1
                cancel.wait(self.SPINNER_DELAY)
            self.sink.clear_progress()

        thread = threading.Thread(target=spin, name="symbol-progress", daemon=True)
        thread.start()
        return thread

    def run(self, load: Callable[[], Any], module_name: Optional[str] = None) -> SymbolLoadOutcome:
        """Run ``load`` on a worker and wait for a terminal outcome."""
        initial_mb = self._measure()
        start = self._clock()
        cancel = threading.Event()

        worker = _LoadWorker(load, name=f"symbol-load-{module_name or 'module'}")
        worker.start()
        spinner = self._start_progress(initial_mb, cancel)

        try:
            outcome = self._wait(worker, initial_mb, start, module_name)
        finally:
            cancel.set()
            if spinner is not None:
                spinner.join(1.0)

        outcome.elapsed_seconds = self._clock() - start
        if outcome.state is LoadState.COMPLETED and worker.error is not None:
            outcome.state = LoadState.FAILED
            outcome.reason = format_skip_reason(f"load failed: {worker.error}", module_name)
        if outcome.state in (LoadState.COMPLETED, LoadState.FAILED):
            outcome.loaded_mb = max(0.0, self._measure() - initial_mb)
        else:
            self.orphaned_loads.append(worker.thread)
        return outcome

    def _wait(self, worker: _LoadWorker, initial_mb: float, start: float,
              module_name: Optional[str]) -> SymbolLoadOutcome:
        last_progress = start
        last_size_mb = initial_mb

        while not worker.done.is_set():
            if worker.done.wait(self.check_interval):
                break

            now = self._clock()
            current_mb = self._measure()
            loaded_mb = max(0.0, current_mb - initial_mb)

            if self.max_size_mb is not None and loaded_mb > self.max_size_mb:
                reason = f"size {loaded_mb:.2f} MB exceeds limit {self.max_size_mb:.0f} MB"
                return SymbolLoadOutcome(LoadState.SKIPPED_SIZE_CAP,
                                         format_skip_reason(reason, module_name),
                                         loaded_mb, module_name)

            if current_mb - last_size_mb >= self.MIN_PROGRESS_MB:
                last_progress = now
                last_size_mb = current_mb
            elif current_mb < last_size_mb:
                # Cache was pruned; measure further growth from the new size
                last_size_mb = current_mb

            if now - last_progress >= self.timeout_seconds:
                reason = f"no progress for {self.timeout_seconds:g}s"
                return SymbolLoadOutcome(LoadState.SKIPPED_TIMEOUT,
                                         format_skip_reason(reason, module_name),
                                         loaded_mb, module_name)

            total = now - start
            if total >= self.timeout_seconds * self.TRICKLE_FACTOR and loaded_mb < self.MIN_PROGRESS_MB:
                reason = f"no progress for {total:.0f}s"
                return SymbolLoadOutcome(LoadState.SKIPPED_TIMEOUT,
                                         format_skip_reason(reason, module_name),
                                         loaded_mb, module_name)

        return SymbolLoadOutcome(LoadState.COMPLETED, None, 0.0, module_name)

    def pending_orphans(self) -> List[threading.Thread]:
        """Skipped loads that are still running in the background."""
        return [t for t in self.orphaned_loads if t.is_alive()]
