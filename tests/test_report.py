"""Tests for leaderboards, the bounded call tree and text rendering."""
from profile_analyzer.aggregation import CallForest, FunctionIndex, StackFrame
from profile_analyzer.report import ReportAssembler, display_name, render_report

A, B, C, D = 0xA000, 0xB000, 0xC000, 0xD000
PID = 4036


def _report(stacks, pid=PID, interval=1.0, names=None):
    index = FunctionIndex()
    forest = CallForest(index)
    for stack in stacks:
        forest.add_stack(pid, stack, (names or {}).get(pid))
    return ReportAssembler(index, forest, total_samples=len(stacks),
                           profile_interval_ms=interval, process_names=names)


def test_top_by_samples_and_time_agree():
    """Time rankings scale sample counts, so the order is the same."""
    report = _report([[A, B, C], [A, B, C], [A, B, D]], interval=0.5)

    by_excl = report.top_by_exclusive_samples(2)
    assert [r.address for r in by_excl] == [C, D]

    by_time = report.top_by_exclusive_time_ms(2)
    assert [r.address for r in by_time] == [C, D]
    assert by_time[0].exclusive_samples * report.profile_interval_ms == 1.0

    incl = report.top_by_inclusive_samples(3)
    assert {r.address for r in incl[:2]} == {A, B}
    assert incl[2].address == C


def test_rankings_limit_and_zero():
    report = _report([[A], [B], [C]])
    assert len(report.top_by_exclusive_samples(2)) == 2
    assert report.top_by_exclusive_samples(0) == []
    assert len(report.top_by_inclusive_time_ms(10)) == 3


def test_ties_keep_insertion_order():
    report = _report([[C], [A], [B]])
    assert [r.address for r in report.top_by_exclusive_samples(3)] == [C, A, B]


def test_rankings_filter_by_process():
    index = FunctionIndex()
    forest = CallForest(index)
    forest.add_stack(1, [A])
    forest.add_stack(2, [B])
    forest.add_stack(2, [B])
    report = ReportAssembler(index, forest, total_samples=3)

    assert [r.process_id for r in report.top_by_exclusive_samples(10, process_id=1)] == [1]
    assert report.top_by_inclusive_time_ms(10, process_id=2)[0].address == B


def test_queries_do_not_modify_counts():
    """Asking for the same report twice gives the same answer."""
    report = _report([[A, B, C], [A, B], [D]])
    first = report.to_dict(10)
    report.tree(PID, 3)
    report.top_by_inclusive_time_ms(5, interval_ms=2.0)
    assert report.to_dict(10) == first


def test_tree_depth_is_bounded():
    """Rows stop at max_depth below the root."""
    report = _report([[A, B, C, D]])

    rows = report.tree(PID, max_depth=2)
    assert [row.depth for row in rows] == [0, 1, 2]
    assert [row.address for row in rows[1:]] == [A, B]
    assert rows[0].is_root

    assert len(report.tree(PID, max_depth=10)) == 5


def test_tree_children_hottest_first():
    report = _report([[A, C], [B, C], [B, D], [B]])

    rows = report.tree(PID)
    assert [row.address for row in rows[1:]] == [B, C, D, A, C]
    assert [row.depth for row in rows] == [0, 1, 2, 2, 1, 2]
    assert rows[0].inclusive_samples == 4
    # The last sibling under each parent is flagged for the tree connectors
    assert rows[1].is_last is False
    assert rows[3].is_last is True
    assert rows[4].is_last is True


def test_tree_for_unknown_process_is_empty():
    assert _report([[A]]).tree(999) == []


def test_tree_uses_names_resolved_after_aggregation():
    report = _report([[A]])
    report.index.get(PID, A).function_name = "late::name"
    rows = report.tree(PID)
    assert rows[1].function_name == "late::name"


def test_percent_handles_zero_total():
    report = ReportAssembler(FunctionIndex(), CallForest(), total_samples=0)
    assert report.percent(5) == 0.0
    assert report.percent(1, 4) == 25.0


def test_module_statistics_group_by_module_basename():
    report = _report([
        [StackFrame(A, "f", r"C:\bin\app.exe"), StackFrame(B, "g", r"C:\bin\lib.dll")],
        [StackFrame(C, "h", r"C:\bin\lib.dll")],
    ])
    stats = {m.module: m for m in report.module_statistics()}
    assert stats["lib.dll"].functions == 2
    assert stats["lib.dll"].exclusive_samples == 2
    assert stats["app.exe"].exclusive_samples == 0


def test_display_name_variants():
    assert display_name("Foo::Bar", "mod.dll", A) == "Foo::Bar [mod.dll]"
    assert display_name(None, "mod.dll", A) == "[mod.dll]"
    assert display_name(None, None, 0x1234) == "0x0000000000001234"


def test_render_report_sections():
    """The rendered report contains the leaderboards and the filtered tree."""
    names = {PID: r"C:\Games\game.exe"}
    report = _report([
        [StackFrame(A, "main", "game.exe"), StackFrame(B, "tick", "game.exe")],
        [StackFrame(A, "main", "game.exe")],
    ], names=names)

    text = render_report(report, top=5, process_id=PID, tree_depth=4)

    assert "=== Top 5 Functions by Exclusive Samples ===" in text
    assert "=== Top 5 Functions by Inclusive Samples ===" in text
    assert "Functions from game.exe (PID 4036)" in text
    assert "=== Call Tree for game.exe (PID 4036) ===" in text
    assert "game.exe (PID: 4036)" in text
    assert "└─ tick [game.exe]" in text
    assert "Total stack samples: 2" in text
    assert "Self CPU Time (ms)" in text


def test_render_report_without_process_filter_has_no_tree():
    text = render_report(_report([[A]]), top=3)
    assert "Call Tree" not in text
    assert "0x000000000000A000" in text
