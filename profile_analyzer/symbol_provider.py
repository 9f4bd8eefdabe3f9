"""Symbol providers for Profile Analyzer.

The resolver only talks to the narrow SymbolProvider interface. The shipped
SymbolServerProvider finds per-module symbol maps on local disk, in a cache
directory, or on HTTP symbol servers, and answers address lookups from them.

Symbol maps are plain text in ``nm -n`` layout, one symbol per line, with
module-relative addresses::

    0000000000001000 T Foo::Bar
    0000000000001200 t helper
"""
from __future__ import annotations

import bisect
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import SymbolLoadError
from .log_sink import LogSink, NullSink

BYTES_PER_MB = 1024.0 * 1024.0


def directory_size_mb(path) -> float:
    """Total size of all files under ``path`` in megabytes (0 on errors)."""
    total = 0
    if not path:
        return 0.0
    root = Path(path)
    if not root.is_dir():
        return 0.0
    try:
        for entry in root.rglob('*'):
            try:
                if entry.is_file():
                    total += entry.stat().st_size
            except OSError:
                continue
    except OSError:
        pass
    return total / BYTES_PER_MB


@dataclass
class SymbolPath:
    """Parsed ``srv*cache*server;dir`` symbol path."""
    cache_dir: Optional[str] = None
    servers: List[str] = field(default_factory=list)
    local_dirs: List[str] = field(default_factory=list)


def parse_symbol_path(symbol_path: Optional[str]) -> SymbolPath:
    """
    Parse a symbol path in the usual debugger format.

    ``srv*C:\\symbols*https://server/`` entries give the cache directory and
    the servers; any other entry is a local directory with symbol maps.
    """
    parsed = SymbolPath()
    if not symbol_path:
        return parsed
    for part in symbol_path.split(';'):
        part = part.strip()
        if not part:
            continue
        if part.lower().startswith('srv*'):
            pieces = part.split('*')[1:]
            urls = [p for p in pieces if p.lower().startswith(('http://', 'https://'))]
            dirs = [p for p in pieces if p and p not in urls]
            if dirs and parsed.cache_dir is None:
                parsed.cache_dir = dirs[0]
            parsed.servers.extend(u for u in urls if u not in parsed.servers)
        else:
            parsed.local_dirs.append(part)
    return parsed


def module_stem(name: str) -> str:
    """``C:\\Windows\\ntdll.dll`` -> ``ntdll``."""
    base = name.replace('\\', '/').rsplit('/', 1)[-1]
    return os.path.splitext(base)[0].lower()


def parse_symbol_map(text: str) -> List[Tuple[int, str]]:
    """Parse ``nm -n`` output into a sorted list of (rva, name)."""
    symbols = []
    for line in text.splitlines():
        parts = line.strip().split(None, 2)
        if len(parts) < 3:
            continue
        try:
            rva = int(parts[0], 16)
        except ValueError:
            continue
        symbols.append((rva, parts[2]))
    symbols.sort(key=lambda s: s[0])
    return symbols


@dataclass
class ModuleSymbolInfo:
    """Symbol information for a loaded module."""
    name: str
    base_address: int
    size: int
    debug_id: str = ""
    symbol_file: Optional[str] = None
    symbols_loaded: bool = False
    symbol_rvas: List[int] = field(default_factory=list)
    symbol_names: List[str] = field(default_factory=list)

    @property
    def stem(self) -> str:
        return module_stem(self.name)

    def contains(self, address: int) -> bool:
        return self.base_address <= address < self.base_address + self.size

    def set_symbols(self, symbols: List[Tuple[int, str]]):
        self.symbol_rvas = [rva for rva, _ in symbols]
        self.symbol_names = [name for _, name in symbols]
        self.symbols_loaded = True


class SymbolProvider:
    """Interface the resolver and scheduler use to obtain symbols."""

    def load(self, module_name: str) -> bool:
        """Fetch symbols for a module. May block for a long time."""
        raise NotImplementedError

    def lookup(self, address: int) -> Optional[str]:
        """Name of the function containing ``address``, if known."""
        raise NotImplementedError

    def cache_size_mb(self) -> float:
        """Current on-disk size of the symbol cache."""
        return 0.0

    def register_module(self, name: str, base_address: int, size: int, debug_id: str = ""):
        """Tell the provider where a module is mapped. Optional."""


class SymbolServerProvider(SymbolProvider):
    """
    Symbol maps from local directories, a cache, and HTTP symbol servers.

    Server and cache layout: ``{stem}.sym/{DEBUGID}/{stem}.sym``.
    """

    SYMBOL_EXTENSION = ".sym"
    DOWNLOAD_TIMEOUT = 30

    def __init__(self, cache_dir: Optional[str] = None,
                 servers: Optional[List[str]] = None,
                 local_dirs: Optional[List[str]] = None,
                 sink: Optional[LogSink] = None):
        """
        Initialize the provider.

        Args:
            cache_dir: Directory to cache downloaded symbols. Defaults to temp directory.
            servers: Symbol server base URLs, tried in order.
            local_dirs: Directories searched for ``{stem}.sym`` before any download.
            sink: Log sink for download diagnostics.
        """
        if cache_dir:
            self.cache_dir = Path(cache_dir)
        else:
            self.cache_dir = Path(tempfile.gettempdir()) / "profile_symbols"
        self.cache_dir.mkdir(parents=True, exist_ok=True)

        self.servers = list(servers or [])
        self.local_dirs = list(local_dirs or [])
        self.sink = sink or NullSink()
        self._modules: Dict[int, ModuleSymbolInfo] = {}  # base_address -> ModuleSymbolInfo
        self._bases: List[int] = []
        self._lock = threading.Lock()
        self._session: Optional[requests.Session] = None

        self.stats = {
            'symbols_downloaded': 0,
            'symbols_cached': 0,
            'symbols_failed': 0,
            'addresses_resolved': 0,
        }

    @classmethod
    def from_symbol_path(cls, symbol_path: Optional[str], cache_dir: Optional[str] = None,
                         sink: Optional[LogSink] = None) -> "SymbolServerProvider":
        parsed = parse_symbol_path(symbol_path)
        return cls(cache_dir=cache_dir or parsed.cache_dir, servers=parsed.servers,
                   local_dirs=parsed.local_dirs, sink=sink)

    def _get_session(self) -> requests.Session:
        """Get or create HTTP session with retry configuration."""
        if self._session is None:
            self._session = requests.Session()
            retry_strategy = Retry(
                total=3,
                backoff_factor=0.5,
                status_forcelist=[429, 500, 502, 503, 504],
            )
            adapter = HTTPAdapter(max_retries=retry_strategy)
            self._session.mount("http://", adapter)
            self._session.mount("https://", adapter)
            self._session.headers.update({
                'User-Agent': 'ProfileAnalyzer/1.0 (Symbol Download)'
            })
        return self._session

    def register_module(self, name: str, base_address: int, size: int, debug_id: str = "") -> ModuleSymbolInfo:
        """Register a module so its addresses can be looked up after loading."""
        mod = ModuleSymbolInfo(name=name, base_address=base_address, size=size, debug_id=debug_id)
        with self._lock:
            if base_address not in self._modules:
                bisect.insort(self._bases, base_address)
            self._modules[base_address] = mod
        return mod

    def modules(self) -> List[ModuleSymbolInfo]:
        return [self._modules[b] for b in self._bases]

    def find_module(self, module_name: str) -> Optional[ModuleSymbolInfo]:
        """Match a module by full name, file stem, or stem prefix."""
        wanted = module_stem(module_name)
        lowered = module_name.lower()
        prefix_match = None
        for mod in self.modules():
            if mod.name.lower() == lowered or mod.stem == wanted:
                return mod
            if prefix_match is None and wanted and mod.stem.startswith(wanted):
                prefix_match = mod
        return prefix_match

    def _module_for_address(self, address: int) -> Optional[ModuleSymbolInfo]:
        idx = bisect.bisect_right(self._bases, address)
        if idx == 0:
            return None
        mod = self._modules[self._bases[idx - 1]]
        return mod if mod.contains(address) else None

    def _relative_path(self, mod: ModuleSymbolInfo) -> str:
        file_name = mod.stem + self.SYMBOL_EXTENSION
        signature = mod.debug_id.replace('-', '').upper() or "0"
        return f"{file_name}/{signature}/{file_name}"

    def _get_cached_path(self, mod: ModuleSymbolInfo) -> Path:
        return self.cache_dir / self._relative_path(mod)

    def _find_local(self, mod: ModuleSymbolInfo) -> Optional[Path]:
        file_name = mod.stem + self.SYMBOL_EXTENSION
        for directory in self.local_dirs:
            candidate = Path(directory) / file_name
            if candidate.is_file():
                return candidate
        cached = self._get_cached_path(mod)
        if cached.is_file():
            self.stats['symbols_cached'] += 1
            return cached
        return None

    def download_symbol(self, mod: ModuleSymbolInfo) -> Optional[Path]:
        """Download a module's symbol map into the cache. None if no server has it."""
        if not self.servers:
            return None

        relative = self._relative_path(mod)
        cached_path = self._get_cached_path(mod)
        partial = cached_path.with_suffix(cached_path.suffix + ".part")
        session = self._get_session()
        attempts = []

        for server_idx, server in enumerate(self.servers, 1):
            url = f"{server.rstrip('/')}/{relative}"
            self.sink.debug("provider", f"Try {server_idx}/{len(self.servers)}: {url[:100]}")
            try:
                response = session.get(url, stream=True, timeout=self.DOWNLOAD_TIMEOUT)
                attempts.append((url[:100], response.status_code))
                self.sink.debug("provider", f"  -> HTTP {response.status_code}")
                if response.status_code != 200:
                    continue

                cached_path.parent.mkdir(parents=True, exist_ok=True)
                with open(partial, 'wb') as f:
                    for chunk in response.iter_content(chunk_size=8192):
                        if chunk:
                            f.write(chunk)
                partial.replace(cached_path)

                self.stats['symbols_downloaded'] += 1
                self.sink.info("provider", f"+ Downloaded {mod.stem}{self.SYMBOL_EXTENSION} "
                                           f"({cached_path.stat().st_size} bytes)")
                return cached_path
            except (requests.RequestException, OSError) as e:
                # No .part file may outlive its download
                try:
                    partial.unlink(missing_ok=True)
                except OSError as cleanup_error:
                    self.sink.debug("provider", f"  -> Could not remove {partial}: {cleanup_error}")
                error_msg = str(e)[:60]
                attempts.append((url[:100], f"Exception: {error_msg}"))
                self.sink.debug("provider", f"  -> Exception: {error_msg}")
                continue

        self.stats['symbols_failed'] += 1
        self.sink.debug("provider", f"- Failed to download symbols for {mod.name}: {attempts}")
        return None

    def load(self, module_name: str) -> bool:
        """Locate, download if needed, and parse the symbol map for a module."""
        mod = self.find_module(module_name)
        if mod is None:
            raise SymbolLoadError(f"module not registered: {module_name}")
        if mod.symbols_loaded:
            return True

        path = self._find_local(mod) or self.download_symbol(mod)
        if path is None:
            return False

        try:
            text = Path(path).read_text(encoding='utf-8', errors='replace')
        except OSError as e:
            raise SymbolLoadError(f"cannot read {path}: {e}") from e

        symbols = parse_symbol_map(text)
        with self._lock:
            mod.symbol_file = str(path)
            mod.set_symbols(symbols)
        self.sink.info("provider", f"Symbols loaded for {mod.name} ({len(symbols)} symbols)")
        return True

    def lookup(self, address: int) -> Optional[str]:
        """Closest symbol at or before ``address`` inside its module."""
        mod = self._module_for_address(address)
        if mod is None or not mod.symbols_loaded:
            return None
        rva = address - mod.base_address
        idx = bisect.bisect_right(mod.symbol_rvas, rva)
        if idx == 0:
            return None
        self.stats['addresses_resolved'] += 1
        return mod.symbol_names[idx - 1]

    def cache_size_mb(self) -> float:
        return directory_size_mb(self.cache_dir)

    def get_statistics(self) -> Dict[str, int]:
        """Get symbol loading statistics."""
        return {
            'modules_registered': len(self._modules),
            'modules_with_symbols': sum(1 for m in self._modules.values() if m.symbols_loaded),
            **self.stats
        }
