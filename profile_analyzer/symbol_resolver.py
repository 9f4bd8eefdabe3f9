"""Address to symbol resolution for Profile Analyzer.

Resolution is tiered:

1. exact: the resolved-address catalog, then the symbol provider;
2. lazy load: with a provider, fetch the hinted module's symbols once
   (bounded by the scheduler) and retry the exact tier;
3. nearest match: the closest known symbol below the address, within
   1 MiB, first inside the hinted module and then across all modules.
   These names carry a ``+0x<offset>`` suffix.
"""
from __future__ import annotations

import bisect
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .aggregation import FunctionIndex
from .log_sink import LogSink, NullSink
from .symbol_provider import SymbolProvider, module_stem
from .symbol_scheduler import LoadState, SymbolLoadOutcome, SymbolLoadScheduler

Resolution = Tuple[Optional[str], Optional[str]]


@dataclass
class ModuleAddressRange:
    """Estimated extent of a known symbol, used for nearest matching only."""
    module_name: str
    range_start: int
    range_end_estimate: int
    function_name: str


@dataclass
class LoadedModule:
    """A module mapped into a traced process."""
    name: str
    base_address: int
    size: int

    def contains(self, address: int) -> bool:
        return self.base_address <= address < self.base_address + self.size


class SymbolResolver:
    """
    Best-effort resolver from code addresses to (function, module) pairs.

    The resolver owns the catalog of addresses the trace already named and
    the ranges derived from it. Symbol files are fetched through a
    SymbolProvider, each module at most once, bounded by a
    SymbolLoadScheduler.
    """

    # Nearest matches further away than this are not trusted
    NEAREST_MATCH_LIMIT = 0x100000
    # Assumed size of a function when only its start address is known
    RANGE_SPAN_ESTIMATE = 0x1000

    def __init__(self, provider: Optional[SymbolProvider] = None,
                 scheduler: Optional[SymbolLoadScheduler] = None,
                 sink: Optional[LogSink] = None):
        self.provider = provider
        self.scheduler = scheduler
        self.sink = sink or NullSink()

        self._catalog: Dict[int, Tuple[Optional[str], Optional[str]]] = {}
        self._ranges: Dict[str, List[ModuleAddressRange]] = {}  # module key -> ranges sorted by start
        self._range_starts: Dict[str, List[int]] = {}
        self._modules: List[LoadedModule] = []
        self._module_bases: List[int] = []

        self.load_outcomes: Dict[str, SymbolLoadOutcome] = {}
        self.stats = {
            'exact_matches': 0,
            'nearest_matches': 0,
            'unresolved': 0,
        }

    # -- catalog ---------------------------------------------------------

    def add_code_address(self, address: int, name: Optional[str] = None,
                         module: Optional[str] = None):
        """Record an address the trace already associated with a symbol."""
        known_name, known_module = self._catalog.get(address, (None, None))
        name = known_name or name or None
        module = known_module or module or None
        self._catalog[address] = (name, module)
        if name and module and not known_name:
            self._add_range(module, address, name)

    def _add_range(self, module: str, start: int, name: str):
        key = module_stem(module)
        starts = self._range_starts.setdefault(key, [])
        ranges = self._ranges.setdefault(key, [])
        idx = bisect.bisect_left(starts, start)
        starts.insert(idx, start)
        ranges.insert(idx, ModuleAddressRange(module, start, start + self.RANGE_SPAN_ESTIMATE, name))

    def catalog_entry(self, address: int) -> Resolution:
        return self._catalog.get(address, (None, None))

    def ranges(self, module: Optional[str] = None) -> List[ModuleAddressRange]:
        if module is not None:
            return list(self._ranges.get(module_stem(module), []))
        return [r for ranges in self._ranges.values() for r in ranges]

    # -- modules ---------------------------------------------------------

    def register_module(self, name: str, base_address: int, size: int, debug_id: str = ""):
        """Record a module mapping and pass it on to the provider."""
        idx = bisect.bisect_right(self._module_bases, base_address)
        self._module_bases.insert(idx, base_address)
        self._modules.insert(idx, LoadedModule(name, base_address, size))
        if self.provider is not None:
            self.provider.register_module(name, base_address, size, debug_id)

    def module_for_address(self, address: int) -> Optional[str]:
        """Name of the registered module containing ``address``."""
        idx = bisect.bisect_right(self._module_bases, address)
        if idx == 0:
            return None
        mod = self._modules[idx - 1]
        return mod.name if mod.contains(address) else None

    def module_hint(self, address: int) -> Optional[str]:
        """Best module guess for an address: catalog first, then mappings."""
        return self._catalog.get(address, (None, None))[1] or self.module_for_address(address)

    # -- symbol loading --------------------------------------------------

    def has_attempted(self, module_name: str) -> bool:
        return module_stem(module_name) in self.load_outcomes

    def load_module_symbols(self, module_name: str) -> SymbolLoadOutcome:
        """Fetch symbols for one module, at most once per run."""
        key = module_stem(module_name)
        outcome = self.load_outcomes.get(key)
        if outcome is not None:
            return outcome

        if self.provider is None:
            outcome = SymbolLoadOutcome(LoadState.FAILED, "no symbol provider", module_name=module_name)
        elif self.scheduler is None:
            # Unbounded, synchronous load
            try:
                self.provider.load(module_name)
                outcome = SymbolLoadOutcome(LoadState.COMPLETED, module_name=module_name)
            except Exception as e:
                outcome = SymbolLoadOutcome(LoadState.FAILED, f"load failed: {e}", module_name=module_name)
        else:
            provider = self.provider
            outcome = self.scheduler.run(lambda: provider.load(module_name), module_name)

        self.load_outcomes[key] = outcome
        if outcome.completed:
            self.sink.debug("symbol", f"Loaded symbols for {module_name} ({outcome.loaded_mb:.2f} MB)")
        else:
            self.sink.info("symbol", f"Skipping symbols for {module_name}: {outcome.reason or outcome.state.value}")
        return outcome

    # -- resolution ------------------------------------------------------

    def _exact(self, address: int, module_hint: Optional[str]) -> Resolution:
        name, module = self._catalog.get(address, (None, None))
        if name:
            return name, module or module_hint

        if self.provider is not None:
            try:
                name = self.provider.lookup(address)
            except Exception as e:
                self.sink.debug("symbol", f"Provider lookup failed for 0x{address:016X}: {e}")
                name = None
            if name:
                module = module or module_hint or self.module_for_address(address)
                self.add_code_address(address, name, module)
                return name, module
        return None, None

    def _nearest_in(self, key: str, address: int) -> Optional[ModuleAddressRange]:
        starts = self._range_starts.get(key)
        if not starts:
            return None
        idx = bisect.bisect_right(starts, address)
        if idx == 0:
            return None
        candidate = self._ranges[key][idx - 1]
        if address - candidate.range_start < self.NEAREST_MATCH_LIMIT:
            return candidate
        return None

    def nearest_range(self, address: int, module_hint: Optional[str] = None) -> Optional[ModuleAddressRange]:
        """Closest range at or below ``address``, hinted module first."""
        if module_hint:
            found = self._nearest_in(module_stem(module_hint), address)
            if found is not None:
                return found

        best = None
        for key in self._ranges:
            candidate = self._nearest_in(key, address)
            if candidate is not None and (best is None or candidate.range_start > best.range_start):
                best = candidate
        return best

    def resolve(self, address: int, process_id: Optional[int] = None,
                module_hint: Optional[str] = None) -> Resolution:
        """
        Resolve an address to (function name, module name).

        Returns (None, module_hint) when nothing matches; callers render
        the raw address in that case.
        """
        name, module = self._exact(address, module_hint)
        if name:
            self.stats['exact_matches'] += 1
            return name, module

        if module_hint and self.provider is not None and not self.has_attempted(module_hint):
            outcome = self.load_module_symbols(module_hint)
            if outcome.completed:
                name, module = self._exact(address, module_hint)
                if name:
                    self.stats['exact_matches'] += 1
                    return name, module

        found = self.nearest_range(address, module_hint)
        if found is not None:
            self.stats['nearest_matches'] += 1
            distance = address - found.range_start
            return f"{found.function_name}+0x{distance:X}", found.module_name

        self.stats['unresolved'] += 1
        if process_id is not None:
            self.sink.debug("symbol", f"Unresolved 0x{address:016X} in PID {process_id}")
        return None, module_hint

    def resolve_function_names(self, index: FunctionIndex) -> Dict[str, int]:
        """Fill in names for every record in ``index`` that has none."""
        resolved = exact = nearest = 0
        for record in index.unresolved():
            before_nearest = self.stats['nearest_matches']
            hint = record.module_name or self.module_hint(record.address)
            name, module = self.resolve(record.address, record.process_id, hint)
            if module and not record.module_name:
                record.module_name = module
            if not name:
                continue
            record.function_name = name
            resolved += 1
            if self.stats['nearest_matches'] > before_nearest:
                nearest += 1
            else:
                exact += 1

        if resolved:
            self.sink.info("symbol", f"Resolved {resolved:,} function names from symbols "
                                     f"({exact} exact, {nearest} nearest)")
        else:
            self.sink.info("symbol", "No function names resolved (symbols may not be available)")
        return {'resolved': resolved, 'exact': exact, 'nearest': nearest}
