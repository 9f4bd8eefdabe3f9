"""Trace event source for Profile Analyzer.

Reads a JSON-lines export of a sampling trace, one record per line::

    {"type": "header", "profile_interval": 10000, "ticks_per_ms": 10000}
    {"type": "process", "pid": 4036, "name": "game.exe"}
    {"type": "module", "name": "C:\\\\app\\\\mod.dll", "base": "0x7ff600000000", "size": 1048576, "debug_id": "..."}
    {"type": "code_address", "address": "0x7ff600001000", "module": "mod.dll", "name": "Foo::Bar"}
    {"type": "stack", "pid": 4036, "tid": 12, "timestamp": 123456, "frames": ["0x...", "0x..."]}
    {"type": "sample", "pid": 4036, "tid": 12, "timestamp": 123466, "ip": "0x...", "frames": [...]}

Stack frames are listed leaf first, the way a stack walk produces them.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from .errors import TraceSourceError
from .log_sink import LogSink, NullSink

DEFAULT_TICKS_PER_MS = 10000.0  # 100 ns ticks
DEFAULT_PROFILE_INTERVAL_MS = 1.0


@dataclass
class TraceHeader:
    profile_interval_ms: Optional[float] = None
    ticks_per_ms: float = DEFAULT_TICKS_PER_MS


@dataclass
class ProcessEvent:
    process_id: int
    name: str


@dataclass
class ModuleLoadEvent:
    name: str
    base_address: int
    size: int
    debug_id: str = ""
    process_id: Optional[int] = None


@dataclass
class CodeAddressEvent:
    address: int
    module: Optional[str] = None
    name: Optional[str] = None


@dataclass
class StackWalkEvent:
    process_id: int
    thread_id: int
    timestamp_ticks: int
    frames: List[int] = field(default_factory=list)  # leaf to root


@dataclass
class SampleEvent:
    process_id: int
    thread_id: int
    timestamp_ticks: int
    instruction_pointer: int
    frames: Optional[List[int]] = None  # leaf to root, when the sample carries a stack


TraceEvent = Union[TraceHeader, ProcessEvent, ModuleLoadEvent, CodeAddressEvent, StackWalkEvent, SampleEvent]


def parse_address(value: Any) -> int:
    """Accept ints, decimal strings and ``0x`` hex strings."""
    if isinstance(value, bool):
        raise ValueError(f"not an address: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 0)
    raise ValueError(f"not an address: {value!r}")


def convert_interval_to_ms(value: Any) -> float:
    """
    Normalize a sampling interval to milliseconds.

    Values above 10000 are taken as 100 ns ticks, values above 10 as
    microseconds, anything else as milliseconds. Returns 0 when the value
    is not usable.
    """
    try:
        interval = float(value)
    except (TypeError, ValueError):
        return 0.0
    if interval > 10000:
        return interval / 10000.0
    if interval > 10:
        return interval / 1000.0
    if interval > 0:
        return interval
    return 0.0


def estimate_profile_interval_ms(timestamps_ms: Sequence[float],
                                 max_samples: int = 100,
                                 default: float = DEFAULT_PROFILE_INTERVAL_MS) -> float:
    """Median gap between consecutive samples, from the first ``max_samples``."""
    intervals = []
    last = None
    for ts in list(timestamps_ms)[:max_samples]:
        if last is not None and ts > last:
            delta = ts - last
            if 0.1 <= delta <= 100:
                intervals.append(delta)
        last = ts
    if len(intervals) > 10:
        intervals.sort()
        return intervals[len(intervals) // 2]
    return default


class TraceReader:
    """Iterates typed events from a JSON-lines trace file."""

    def __init__(self, path: str, sink: Optional[LogSink] = None):
        self.path = path
        self.sink = sink or NullSink()
        self.header = TraceHeader()
        self.malformed_lines = 0

    def _frames(self, raw: Optional[list]) -> Optional[List[int]]:
        if raw is None:
            return None
        return [parse_address(f) for f in raw]

    def _parse(self, record: Dict[str, Any]) -> Optional[TraceEvent]:
        kind = record.get('type')
        if kind == 'stack':
            return StackWalkEvent(
                process_id=int(record['pid']),
                thread_id=int(record.get('tid', 0)),
                timestamp_ticks=int(record.get('timestamp', 0)),
                frames=self._frames(record.get('frames')) or [],
            )
        if kind == 'sample':
            return SampleEvent(
                process_id=int(record['pid']),
                thread_id=int(record.get('tid', 0)),
                timestamp_ticks=int(record.get('timestamp', 0)),
                instruction_pointer=parse_address(record.get('ip', 0)),
                frames=self._frames(record.get('frames')),
            )
        if kind == 'code_address':
            return CodeAddressEvent(
                address=parse_address(record['address']),
                module=record.get('module') or None,
                name=record.get('name') or None,
            )
        if kind == 'module':
            pid = record.get('pid')
            return ModuleLoadEvent(
                name=record['name'],
                base_address=parse_address(record['base']),
                size=parse_address(record.get('size', 0)),
                debug_id=str(record.get('debug_id') or ""),
                process_id=int(pid) if pid is not None else None,
            )
        if kind == 'process':
            return ProcessEvent(process_id=int(record['pid']), name=str(record.get('name') or ""))
        if kind == 'header':
            if 'ticks_per_ms' in record:
                self.header.ticks_per_ms = float(record['ticks_per_ms']) or DEFAULT_TICKS_PER_MS
            if 'profile_interval' in record:
                self.header.profile_interval_ms = convert_interval_to_ms(record['profile_interval']) or None
            return self.header
        return None

    def __iter__(self) -> Iterator[TraceEvent]:
        try:
            handle = open(self.path, 'rb')
        except OSError as e:
            raise TraceSourceError(f"cannot open trace {self.path}: {e}") from e

        with handle:
            try:
                for line_no, raw in enumerate(handle, 1):
                    # Decoded per line so one bad byte only costs its own line
                    try:
                        line = raw.decode('utf-8').strip()
                        if not line or line.startswith('#'):
                            continue
                        record = json.loads(line)
                        event = self._parse(record) if isinstance(record, dict) else None
                    except (ValueError, KeyError, TypeError) as e:
                        self.malformed_lines += 1
                        self.sink.debug("trace", f"Skipping malformed line {line_no}: {e}")
                        continue
                    if event is not None:
                        yield event
            except OSError as e:
                raise TraceSourceError(f"cannot read trace {self.path}: {e}") from e


def read_trace(path: str, sink: Optional[LogSink] = None) -> TraceReader:
    return TraceReader(path, sink)
