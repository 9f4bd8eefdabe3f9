"""Analysis driver for Profile Analyzer.

Feeds trace events into the aggregations, loads symbols for hot modules
first, resolves names that the trace did not carry, and hands back a
ReportAssembler.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .aggregation import CallForest, FunctionIndex, StackFrame
from .config import AnalyzerConfig
from .log_sink import LogSink, NullSink
from .report import ReportAssembler
from .symbol_provider import SymbolProvider, SymbolServerProvider, module_stem
from .symbol_resolver import SymbolResolver
from .symbol_scheduler import SymbolLoadOutcome, SymbolLoadScheduler
from .trace_source import (
    DEFAULT_PROFILE_INTERVAL_MS,
    CodeAddressEvent,
    ModuleLoadEvent,
    ProcessEvent,
    SampleEvent,
    StackWalkEvent,
    TraceEvent,
    TraceHeader,
    TraceReader,
    estimate_profile_interval_ms,
)


@dataclass
class AnalysisResult:
    """Everything a caller needs after a run."""
    report: ReportAssembler
    total_samples: int = 0
    stack_events: int = 0
    sample_events: int = 0
    filtered_events: int = 0
    hot_modules: List[Tuple[str, float]] = field(default_factory=list)
    load_outcomes: Dict[str, SymbolLoadOutcome] = field(default_factory=dict)
    resolution: Dict[str, int] = field(default_factory=dict)
    malformed_lines: int = 0


class ProfileAnalyzer:
    """
    One analysis run over a stream of trace events.

    Ingestion is single threaded: each event is fully applied before the
    next is read. The only background work is the symbol load bounded by
    the scheduler.
    """

    INTERVAL_SAMPLE_LIMIT = 100

    def __init__(self, config: Optional[AnalyzerConfig] = None,
                 provider: Optional[SymbolProvider] = None,
                 sink: Optional[LogSink] = None):
        self.config = config or AnalyzerConfig()
        self.sink = sink or NullSink()

        if provider is None and (self.config.symbol_path or self.config.symbol_cache):
            provider = SymbolServerProvider.from_symbol_path(
                self.config.symbol_path, cache_dir=self.config.symbol_cache, sink=self.sink)
        self.provider = provider

        scheduler = None
        if provider is not None:
            scheduler = SymbolLoadScheduler(
                provider.cache_size_mb,
                timeout_seconds=self.config.timeout_seconds,
                max_size_mb=self.config.max_size_mb,
                sink=self.sink,
                show_progress=self.config.show_progress,
            )
        self.scheduler = scheduler
        self.resolver = SymbolResolver(provider, scheduler, self.sink)

        self.index = FunctionIndex()
        self.forest = CallForest(self.index)
        self.process_names: Dict[int, str] = {}
        self.header = TraceHeader()

        self.module_metrics: Counter = Counter()
        self.module_names: Dict[str, str] = {}  # stem -> name as first seen
        self._sample_timestamps: List[float] = []

        self.total_samples = 0
        self.stack_events = 0
        self.sample_events = 0
        self.filtered_events = 0

    # -- event handling --------------------------------------------------

    def _accepts(self, process_id: int) -> bool:
        pid = self.config.filter_pid
        if pid is not None and process_id != pid:
            self.filtered_events += 1
            return False
        self.total_samples += 1
        if self.total_samples % 10000 == 0:
            self.sink.debug("trace", f"Processed {self.total_samples:,} stack traces...")
        return True

    def _frame(self, address: int) -> StackFrame:
        name, module = self.resolver.catalog_entry(address)
        return StackFrame(address, name, module or self.resolver.module_for_address(address))

    def _count_modules(self, frames: Iterable[StackFrame]):
        seen = set()
        for frame in frames:
            if not frame.resolved_module:
                continue
            stem = module_stem(frame.resolved_module)
            if stem and stem not in seen:
                seen.add(stem)
                self.module_names.setdefault(stem, frame.resolved_module)
        self.module_metrics.update(seen)

    def _ingest_stack(self, process_id: int, leaf_to_root: List[int]):
        frames = [self._frame(a) for a in leaf_to_root if a]
        self._count_modules(frames)
        self.forest.add_walked_stack(process_id, frames, self.process_names.get(process_id))

    def on_stack_walk(self, event: StackWalkEvent):
        self.stack_events += 1
        if not self._accepts(event.process_id):
            return
        self._ingest_stack(event.process_id, event.frames)

    def on_sample(self, event: SampleEvent):
        self.sample_events += 1
        if not self._accepts(event.process_id):
            return
        if len(self._sample_timestamps) < self.INTERVAL_SAMPLE_LIMIT:
            self._sample_timestamps.append(event.timestamp_ticks / self.header.ticks_per_ms)

        if event.frames:
            self._ingest_stack(event.process_id, event.frames)
        elif event.instruction_pointer:
            frame = self._frame(event.instruction_pointer)
            self.index.add_sample(event.process_id, frame.address,
                                  frame.resolved_name, frame.resolved_module)

    def handle(self, event: TraceEvent):
        """Dispatch one trace event."""
        if isinstance(event, StackWalkEvent):
            self.on_stack_walk(event)
        elif isinstance(event, SampleEvent):
            self.on_sample(event)
        elif isinstance(event, CodeAddressEvent):
            self.resolver.add_code_address(event.address, event.name, event.module)
        elif isinstance(event, ModuleLoadEvent):
            self.resolver.register_module(event.name, event.base_address, event.size, event.debug_id)
        elif isinstance(event, ProcessEvent):
            if event.name:
                self.process_names[event.process_id] = event.name
        elif isinstance(event, TraceHeader):
            self.header = event

    # -- post processing -------------------------------------------------

    def hot_modules(self) -> List[Tuple[str, float]]:
        """Modules seen on more than the configured share of stacks, hottest first."""
        if not self.total_samples:
            return []
        hot = []
        for stem, count in self.module_metrics.items():
            percent = count * 100.0 / self.total_samples
            if percent > self.config.hot_module_percent:
                hot.append((self.module_names.get(stem, stem), percent))
        hot.sort(key=lambda m: m[1], reverse=True)
        return hot

    def warm_symbol_lookup(self) -> List[Tuple[str, float]]:
        """Load symbols for hot modules before resolving individual addresses."""
        hot = self.hot_modules()
        if self.provider is None or not hot:
            return hot
        self.sink.info("symbol", f"Loading symbols for {len(hot)} hot module(s)")
        for name, percent in hot:
            self.sink.info("symbol", f"Loading symbols for {name} ({percent:.1f}%)...")
            self.resolver.load_module_symbols(name)
        return hot

    def profile_interval_ms(self) -> float:
        if self.header.profile_interval_ms:
            return self.header.profile_interval_ms
        return estimate_profile_interval_ms(self._sample_timestamps,
                                            max_samples=self.INTERVAL_SAMPLE_LIMIT,
                                            default=DEFAULT_PROFILE_INTERVAL_MS)

    def finish(self) -> AnalysisResult:
        """Resolve names and build the report. Call once after all events."""
        hot = self.warm_symbol_lookup()
        resolution = self.resolver.resolve_function_names(self.index)
        interval = self.profile_interval_ms()
        self.sink.debug("trace", f"Profile interval: {interval:.3f} ms")

        report = ReportAssembler(self.index, self.forest, self.total_samples, interval, self.process_names)
        return AnalysisResult(
            report=report,
            total_samples=self.total_samples,
            stack_events=self.stack_events,
            sample_events=self.sample_events,
            filtered_events=self.filtered_events,
            hot_modules=hot,
            load_outcomes=dict(self.resolver.load_outcomes),
            resolution=resolution,
        )

    def run(self, events: Iterable[TraceEvent]) -> AnalysisResult:
        for event in events:
            self.handle(event)
        self.sink.info("trace", f"Processed {self.total_samples:,} stack traces")
        self.sink.info("trace", f"Found {len(self.index):,} unique functions")
        return self.finish()


def analyze_trace(config: AnalyzerConfig, provider: Optional[SymbolProvider] = None,
                  sink: Optional[LogSink] = None) -> AnalysisResult:
    """Read ``config.trace_path`` and analyze it. Raises TraceSourceError if unreadable."""
    analyzer = ProfileAnalyzer(config, provider, sink)
    reader = TraceReader(config.trace_path, sink)
    result = analyzer.run(reader)
    result.malformed_lines = reader.malformed_lines
    return result
