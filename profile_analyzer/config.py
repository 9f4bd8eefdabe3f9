"""Run configuration for Profile Analyzer.

Command-line values win over environment variables. A ``.env`` file in the
working directory is loaded first, so symbol paths can live there.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Optional

from dotenv import load_dotenv

SYMBOL_PATH_VARS = ("PROFILE_ANALYZER_SYMBOL_PATH", "_NT_SYMBOL_PATH")
SYMBOL_CACHE_VAR = "PROFILE_ANALYZER_SYMBOL_CACHE"
TIMEOUT_VAR = "PROFILE_ANALYZER_TIMEOUT"


@dataclass
class AnalyzerConfig:
    """Settings for one analysis run."""
    trace_path: str = ""
    top_count: int = 50
    filter_pid: Optional[int] = None
    symbol_path: Optional[str] = None
    symbol_cache: Optional[str] = None
    verbose: bool = False
    timeout_seconds: float = 30
    max_size_mb: Optional[float] = None
    tree_depth: int = 10
    hot_module_percent: float = 2.0  # modules above this share of stacks get symbols first
    show_progress: bool = True
    output: Optional[str] = None


def _env_float(name: str) -> Optional[float]:
    value = os.environ.get(name)
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def symbol_path_from_env() -> Optional[str]:
    for name in SYMBOL_PATH_VARS:
        value = os.environ.get(name)
        if value:
            return value
    return None


def load_config(args: Any = None, dotenv: bool = True) -> AnalyzerConfig:
    """Build a config from parsed CLI arguments plus the environment."""
    if dotenv:
        load_dotenv()

    config = AnalyzerConfig()
    config.symbol_path = symbol_path_from_env()
    config.symbol_cache = os.environ.get(SYMBOL_CACHE_VAR) or None
    env_timeout = _env_float(TIMEOUT_VAR)
    if env_timeout is not None and env_timeout > 0:
        config.timeout_seconds = env_timeout

    if args is None:
        return config

    config.trace_path = getattr(args, "trace_file", "") or ""
    if getattr(args, "top", None) is not None:
        config.top_count = args.top
    config.filter_pid = getattr(args, "pid", None)
    if getattr(args, "symbols", None):
        config.symbol_path = args.symbols
    if getattr(args, "symbol_cache", None):
        config.symbol_cache = args.symbol_cache
    config.verbose = bool(getattr(args, "verbose", False))
    if getattr(args, "timeout", None) is not None:
        config.timeout_seconds = args.timeout
    config.max_size_mb = getattr(args, "skip_size", None)
    if getattr(args, "depth", None) is not None:
        config.tree_depth = args.depth
    config.show_progress = not getattr(args, "no_progress", False)
    config.output = getattr(args, "output", None)
    return config
