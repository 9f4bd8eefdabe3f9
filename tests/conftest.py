"""Shared fixtures for Profile Analyzer tests."""
import json
import os
import sys

import pytest

# Add the project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from profile_analyzer.symbol_provider import SymbolProvider, module_stem


class FakeClock:
    """Monotonic clock that advances a fixed step on every read."""

    def __init__(self, step=2.0):
        self.now = 0.0
        self.step = step

    def __call__(self):
        value = self.now
        self.now += self.step
        return value


class FakeProvider(SymbolProvider):
    """In-memory provider: ``load`` makes a module's symbols visible."""

    def __init__(self, symbols_by_module=None, fail_modules=()):
        self.symbols_by_module = symbols_by_module or {}
        self.fail_modules = {module_stem(m) for m in fail_modules}
        self.loaded = set()
        self.load_calls = []
        self.registered = []

    def register_module(self, name, base_address, size, debug_id=""):
        self.registered.append((name, base_address, size, debug_id))

    def load(self, module_name):
        self.load_calls.append(module_name)
        if module_stem(module_name) in self.fail_modules:
            raise RuntimeError(f"cannot find {module_name}")
        self.loaded.add(module_stem(module_name))
        return True

    def lookup(self, address):
        for module, symbols in self.symbols_by_module.items():
            if module_stem(module) in self.loaded and address in symbols:
                return symbols[address]
        return None

    def cache_size_mb(self):
        return 0.0


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def write_trace(tmp_path):
    """Write a list of records (dicts or raw strings) as a JSON-lines trace."""
    def _write(records, name="trace.jsonl"):
        path = tmp_path / name
        lines = [r if isinstance(r, str) else json.dumps(r) for r in records]
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return str(path)
    return _write
