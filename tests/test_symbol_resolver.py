"""Tests for tiered address resolution."""
from profile_analyzer.aggregation import CallForest, FunctionIndex
from profile_analyzer.symbol_resolver import SymbolResolver
from profile_analyzer.symbol_scheduler import LoadState, SymbolLoadScheduler

from conftest import FakeProvider


def test_exact_nearest_and_miss():
    """Exact hit, +offset nearest match, and a miss beyond 1 MiB."""
    resolver = SymbolResolver()
    resolver.add_code_address(0x1000, "Foo::Bar", "mod.dll")

    assert resolver.resolve(0x1000, 1, "mod.dll") == ("Foo::Bar", "mod.dll")
    assert resolver.resolve(0x1050, 1, "mod.dll") == ("Foo::Bar+0x50", "mod.dll")
    assert resolver.resolve(0x200000, 1, "mod.dll") == (None, "mod.dll")


def test_exact_hit_without_hint_keeps_catalog_module():
    resolver = SymbolResolver()
    resolver.add_code_address(0x4000, "main", "app.exe")
    assert resolver.resolve(0x4000) == ("main", "app.exe")


def test_unnamed_catalog_entry_is_not_a_hit():
    """A catalog address without a name falls through to later tiers."""
    resolver = SymbolResolver()
    resolver.add_code_address(0x1000, "Foo::Bar", "mod.dll")
    resolver.add_code_address(0x1100, None, "mod.dll")
    assert resolver.resolve(0x1100, module_hint="mod.dll") == ("Foo::Bar+0x100", "mod.dll")


def test_nearest_match_bound_is_exclusive():
    resolver = SymbolResolver()
    resolver.add_code_address(0x100000, "start", "a.dll")
    assert resolver.resolve(0x100000 + 0xFFFFF, module_hint="a.dll")[0] == "start+0xFFFFF"
    assert resolver.resolve(0x200000, module_hint="a.dll") == (None, "a.dll")


def test_hinted_module_preferred_over_closer_cross_module_match():
    """A match inside the known module wins even if another module is closer."""
    resolver = SymbolResolver()
    resolver.add_code_address(0x10000, "inHint", "hint.dll")
    resolver.add_code_address(0x18000, "closer", "other.dll")

    assert resolver.resolve(0x18100, module_hint="hint.dll") == ("inHint+0x8100", "hint.dll")
    # Without a hint the closest range across modules wins
    assert resolver.resolve(0x18100) == ("closer+0x100", "other.dll")


def test_cross_module_fallback_when_hint_has_no_ranges():
    resolver = SymbolResolver()
    resolver.add_code_address(0x5000, "helper", "other.dll")
    assert resolver.resolve(0x5010, module_hint="unknown.dll") == ("helper+0x10", "other.dll")


def test_module_hint_matching_ignores_path_and_case():
    resolver = SymbolResolver()
    resolver.add_code_address(0x1000, "Foo::Bar", r"C:\App\Mod.DLL")
    assert resolver.resolve(0x1020, module_hint="mod.dll")[0] == "Foo::Bar+0x20"


def test_lazy_load_then_exact_retry(fake_clock):
    """An unnamed address in a hinted module triggers one bounded load."""
    provider = FakeProvider({"mod.dll": {0x2000: "Loaded::Fn"}})
    scheduler = SymbolLoadScheduler(provider.cache_size_mb, timeout_seconds=30,
                                    check_interval=0.5, clock=fake_clock)
    resolver = SymbolResolver(provider, scheduler)

    assert resolver.resolve(0x2000, 1, "mod.dll") == ("Loaded::Fn", "mod.dll")
    assert provider.load_calls == ["mod.dll"]
    assert resolver.load_outcomes["mod"].state is LoadState.COMPLETED

    # Cached in the catalog, no further loads
    assert resolver.resolve(0x2000, 1, "mod.dll") == ("Loaded::Fn", "mod.dll")
    resolver.resolve(0x2400, 1, "mod.dll")
    assert provider.load_calls == ["mod.dll"]


def test_failed_load_falls_back_to_nearest():
    """Provider failures are absorbed and resolution continues."""
    provider = FakeProvider(fail_modules={"bad.dll"})
    resolver = SymbolResolver(provider, SymbolLoadScheduler(provider.cache_size_mb, check_interval=0.5))
    resolver.add_code_address(0x3000, "known", "bad.dll")

    assert resolver.resolve(0x3008, 1, "bad.dll") == ("known+0x8", "bad.dll")
    assert resolver.load_outcomes["bad"].state is LoadState.FAILED
    assert provider.load_calls == ["bad.dll"]


def test_no_provider_records_no_load_outcomes():
    """Without a provider the lazy tier is skipped entirely."""
    resolver = SymbolResolver()
    resolver.add_code_address(0x1000, "Foo::Bar", "mod.dll")

    assert resolver.resolve(0x1050, 1, "mod.dll") == ("Foo::Bar+0x50", "mod.dll")
    assert resolver.resolve(0x900000, 1, "other.dll") == (None, "other.dll")
    assert resolver.load_outcomes == {}


def test_no_load_without_hint():
    provider = FakeProvider({"mod.dll": {0x2000: "Loaded::Fn"}})
    resolver = SymbolResolver(provider)
    assert resolver.resolve(0x2000) == (None, None)
    assert provider.load_calls == []


def test_module_for_address_uses_registered_modules():
    provider = FakeProvider()
    resolver = SymbolResolver(provider)
    resolver.register_module("a.dll", 0x10000, 0x1000)
    resolver.register_module("b.dll", 0x20000, 0x1000)

    assert resolver.module_for_address(0x10010) == "a.dll"
    assert resolver.module_for_address(0x20FFF) == "b.dll"
    assert resolver.module_for_address(0x15000) is None
    assert resolver.module_for_address(0x100) is None
    assert provider.registered[0][:3] == ("a.dll", 0x10000, 0x1000)


def test_ranges_are_estimates():
    resolver = SymbolResolver()
    resolver.add_code_address(0x9000, "fn", "m.dll")
    (rng,) = resolver.ranges("m.dll")
    assert rng.range_start == 0x9000
    assert rng.range_end_estimate == 0x9000 + SymbolResolver.RANGE_SPAN_ESTIMATE


def test_resolve_function_names_fills_index():
    """Batch resolution names records and counts exact and nearest matches."""
    index = FunctionIndex()
    forest = CallForest(index)
    forest.add_stack(1, [0x1000, 0x1050, 0x900000])

    resolver = SymbolResolver()
    resolver.add_code_address(0x1000, "Foo::Bar", "mod.dll")
    resolver.register_module("mod.dll", 0x0, 0x10000)
    counts = resolver.resolve_function_names(index)

    assert counts == {'resolved': 2, 'exact': 1, 'nearest': 1}
    assert index.get(1, 0x1000).function_name == "Foo::Bar"
    assert index.get(1, 0x1050).function_name == "Foo::Bar+0x50"
    assert index.get(1, 0x1050).module_name == "mod.dll"
    assert index.get(1, 0x900000).function_name is None
