"""Profile Analyzer package.

This package turns sampled call stacks from a system tracer into:
- Per-process call trees with inclusive/exclusive sample counts
- Flat leaderboards of the hottest functions by samples and CPU time
- Best-effort symbol names, with bounded symbol loading for hot modules
"""
from .aggregation import (
    CallForest,
    CallTreeNode,
    FunctionIndex,
    FunctionKey,
    FunctionRecord,
    StackFrame,
)
from .analyzer import AnalysisResult, ProfileAnalyzer, analyze_trace
from .config import AnalyzerConfig, load_config
from .errors import ProfileAnalyzerError, SymbolLoadError, TraceSourceError
from .log_sink import LogSink, NullSink
from .report import ReportAssembler, TreeEntry, render_report
from .symbol_provider import SymbolProvider, SymbolServerProvider
from .symbol_resolver import ModuleAddressRange, SymbolResolver
from .symbol_scheduler import LoadState, SymbolLoadOutcome, SymbolLoadScheduler

__all__ = [
    # Aggregation
    "CallForest",
    "CallTreeNode",
    "FunctionIndex",
    "FunctionKey",
    "FunctionRecord",
    "StackFrame",
    # Driver
    "AnalysisResult",
    "ProfileAnalyzer",
    "analyze_trace",
    "AnalyzerConfig",
    "load_config",
    # Errors and logging
    "ProfileAnalyzerError",
    "SymbolLoadError",
    "TraceSourceError",
    "LogSink",
    "NullSink",
    # Reports
    "ReportAssembler",
    "TreeEntry",
    "render_report",
    # Symbols
    "SymbolProvider",
    "SymbolServerProvider",
    "ModuleAddressRange",
    "SymbolResolver",
    "LoadState",
    "SymbolLoadOutcome",
    "SymbolLoadScheduler",
]

__version__ = "1.0.0"
