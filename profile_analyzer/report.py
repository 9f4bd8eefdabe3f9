"""Ranked views over aggregated samples, plus their text rendering."""
from __future__ import annotations

import ntpath
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .aggregation import CallForest, CallTreeNode, FunctionIndex, FunctionRecord


@dataclass
class TreeEntry:
    """One row of a flattened call tree, in display order."""
    depth: int
    node: CallTreeNode
    function_name: Optional[str]
    module_name: Optional[str]
    inclusive_samples: int
    exclusive_samples: int
    is_last: bool = False

    @property
    def address(self) -> int:
        return self.node.address

    @property
    def is_root(self) -> bool:
        return self.node.is_root


@dataclass
class ModuleStats:
    module: str
    functions: int
    exclusive_samples: int
    inclusive_samples: int


def display_name(name: Optional[str], module: Optional[str], address: int,
                 fallback: Optional[str] = None) -> str:
    """``Foo::Bar [mod.dll]``, ``[mod.dll]`` or the raw address."""
    if name:
        return f"{name} [{ntpath.basename(module or 'Unknown')}]"
    if module:
        return f"[{ntpath.basename(module)}]"
    return fallback or f"0x{address:016X}"


class ReportAssembler:
    """
    Read-only queries over a FunctionIndex and CallForest.

    Rankings sort descending on a single key. Ties keep the index's
    insertion order.
    """

    def __init__(self, index: FunctionIndex, forest: CallForest,
                 total_samples: int = 0, profile_interval_ms: float = 1.0,
                 process_names: Optional[Dict[int, str]] = None):
        self.index = index
        self.forest = forest
        self.total_samples = total_samples
        self.profile_interval_ms = profile_interval_ms
        self.process_names = dict(process_names or {})

    def percent(self, count: float, total: Optional[float] = None) -> float:
        total = self.total_samples if total is None else total
        return count * 100.0 / total if total > 0 else 0.0

    def _ranked(self, key, n: int, process_id: Optional[int]) -> List[FunctionRecord]:
        records = self.index.records(process_id)
        return sorted(records, key=key, reverse=True)[:max(0, n)]

    def top_by_exclusive_samples(self, n: int, process_id: Optional[int] = None) -> List[FunctionRecord]:
        return self._ranked(lambda r: r.exclusive_samples, n, process_id)

    def top_by_inclusive_samples(self, n: int, process_id: Optional[int] = None) -> List[FunctionRecord]:
        return self._ranked(lambda r: r.inclusive_samples, n, process_id)

    def top_by_exclusive_time_ms(self, n: int, interval_ms: Optional[float] = None,
                                 process_id: Optional[int] = None) -> List[FunctionRecord]:
        interval = self.profile_interval_ms if interval_ms is None else interval_ms
        return self._ranked(lambda r: r.exclusive_samples * interval, n, process_id)

    def top_by_inclusive_time_ms(self, n: int, interval_ms: Optional[float] = None,
                                 process_id: Optional[int] = None) -> List[FunctionRecord]:
        interval = self.profile_interval_ms if interval_ms is None else interval_ms
        return self._ranked(lambda r: r.inclusive_samples * interval, n, process_id)

    def process_name(self, process_id: int) -> str:
        name = self.process_names.get(process_id)
        return ntpath.basename(name) if name else f"PID {process_id}"

    def _names_for(self, node: CallTreeNode):
        if node.is_root:
            return node.function_name, None
        record = self.index.get(node.key.process_id, node.key.address)
        if record is not None:
            return record.function_name or node.function_name, record.module_name or node.module_name
        return node.function_name, node.module_name

    def tree(self, process_id: int, max_depth: int = 10) -> List[TreeEntry]:
        """Pre-order rows of a process's call tree, hottest children first."""
        root = self.forest.roots.get(process_id)
        if root is None:
            return []

        entries: List[TreeEntry] = []

        def walk(node: CallTreeNode, depth: int, is_last: bool):
            if depth > max_depth:
                return
            name, module = self._names_for(node)
            entries.append(TreeEntry(depth, node, name, module,
                                     node.inclusive_samples, node.exclusive_samples, is_last))
            children = sorted(node.children.values(), key=lambda c: c.inclusive_samples, reverse=True)
            for i, child in enumerate(children):
                walk(child, depth + 1, i == len(children) - 1)

        walk(root, 0, True)
        return entries

    def module_statistics(self, process_id: Optional[int] = None) -> List[ModuleStats]:
        grouped: Dict[str, ModuleStats] = {}
        for record in self.index.records(process_id):
            module = ntpath.basename(record.module_name or "Unknown")
            stats = grouped.get(module)
            if stats is None:
                stats = grouped[module] = ModuleStats(module, 0, 0, 0)
            stats.functions += 1
            stats.exclusive_samples += record.exclusive_samples
            stats.inclusive_samples += record.inclusive_samples
        return sorted(grouped.values(), key=lambda m: m.exclusive_samples, reverse=True)

    def summary(self) -> Dict[str, Any]:
        records = self.index.records()
        with_exclusive = [r for r in records if r.exclusive_samples > 0]
        average_depth = None
        if with_exclusive:
            average_depth = sum(r.inclusive_samples / max(1, r.exclusive_samples) for r in records) / len(records)
        return {
            'unique_functions': len(records),
            'total_samples': self.total_samples,
            'profile_interval_ms': self.profile_interval_ms,
            'average_stack_depth': average_depth,
            'processes': {pid: self.process_name(pid) for pid in self.forest.process_ids()},
        }

    def to_dict(self, top: int = 50) -> Dict[str, Any]:
        """JSON-friendly snapshot of the leaderboards."""
        def rows(records: List[FunctionRecord]):
            return [{
                'process_id': r.process_id,
                'address': f"0x{r.address:016X}",
                'function': r.function_name,
                'module': r.module_name,
                'exclusive_samples': r.exclusive_samples,
                'inclusive_samples': r.inclusive_samples,
                'exclusive_ms': r.exclusive_samples * self.profile_interval_ms,
                'inclusive_ms': r.inclusive_samples * self.profile_interval_ms,
            } for r in records]

        return {
            'summary': self.summary(),
            'top_exclusive': rows(self.top_by_exclusive_samples(top)),
            'top_inclusive': rows(self.top_by_inclusive_samples(top)),
        }


# -- text rendering ---------------------------------------------------------

def _record_label(report: ReportAssembler, record: FunctionRecord) -> str:
    return display_name(record.function_name, record.module_name, record.address,
                        fallback=report.process_name(record.process_id))


def format_sample_table(report: ReportAssembler, records: List[FunctionRecord], title: str,
                        total: Optional[int] = None) -> List[str]:
    lines = [f"=== {title} ===", ""]
    lines.append(f"{'Rank':<6} {'Exclusive':<12} {'Inclusive':<12} {'Excl %':<10} {'Incl %':<10} "
                 f"{'Address':<18} {'Function / Module':<60}")
    lines.append('-' * 130)
    for rank, r in enumerate(records, 1):
        excl = report.percent(r.exclusive_samples, total)
        incl = report.percent(r.inclusive_samples, total)
        lines.append(f"{rank:<6} {r.exclusive_samples:<12,} {r.inclusive_samples:<12,} "
                     f"{excl:<9.2f}% {incl:<9.2f}% 0x{r.address:016X} {_record_label(report, r):<60}")
    lines.append("")
    return lines


def format_time_table(report: ReportAssembler, records: List[FunctionRecord], title: str) -> List[str]:
    interval = report.profile_interval_ms
    lines = [f"=== {title} ===", "", f"Profile interval: {interval:.3f} ms", ""]
    lines.append(f"{'Rank':<6} {'Self CPU':<12} {'Total CPU':<12} {'Self %':<10} {'Total %':<10} "
                 f"{'Address':<18} {'Function / Module':<60}")
    lines.append('-' * 130)
    for rank, r in enumerate(records, 1):
        lines.append(f"{rank:<6} {r.exclusive_samples * interval:<12.2f} {r.inclusive_samples * interval:<12.2f} "
                     f"{report.percent(r.exclusive_samples):<9.2f}% {report.percent(r.inclusive_samples):<9.2f}% "
                     f"0x{r.address:016X} {_record_label(report, r):<60}")
    lines.append("")
    return lines


def format_call_tree(report: ReportAssembler, process_id: int, max_depth: int = 10) -> List[str]:
    entries = report.tree(process_id, max_depth)
    if not entries:
        return []
    root = entries[0]
    total = root.inclusive_samples or report.total_samples
    interval = report.profile_interval_ms

    lines = [f"=== Call Tree for {report.process_name(process_id)} (PID {process_id}) ===", ""]
    lines.append(f"{'Function Name':<70} {'Total CPU':<20} {'Self CPU':<20} {'Total %':<15} {'Self %':<15}")
    lines.append('-' * 140)

    # child_prefixes[d] is the indentation for children of the last node seen at depth d
    child_prefixes: Dict[int, str] = {}
    for entry in entries:
        if entry.is_root:
            prefix, connector = "", "+ "
            child_prefixes[entry.depth] = "  "
            label = entry.function_name or "Unknown Process"
        else:
            prefix = child_prefixes[entry.depth - 1]
            connector = "└─ " if entry.is_last else "├─ "
            child_prefixes[entry.depth] = prefix + ("   " if entry.is_last else "│  ")
            label = display_name(entry.function_name, entry.module_name, entry.address)
        lines.append(f"{prefix}{connector}{label:<70} "
                     f"{entry.inclusive_samples * interval:<15.2f} {entry.exclusive_samples * interval:<15.2f} "
                     f"{report.percent(entry.inclusive_samples, total):<11.2f}% "
                     f"{report.percent(entry.exclusive_samples, total):<11.2f}%")
    lines.append("")
    return lines


def render_report(report: ReportAssembler, top: int = 50, process_id: Optional[int] = None,
                  tree_depth: int = 10) -> str:
    """Full text report in the layout of the console tool."""
    lines: List[str] = []

    if process_id is not None and report.index.records(process_id):
        name = report.process_name(process_id)
        records = report.top_by_exclusive_samples(top, process_id=process_id)
        lines += format_sample_table(
            report, records,
            f"Top {min(top, len(records))} Functions from {name} (PID {process_id}) by Exclusive Samples")

        modules = report.module_statistics(process_id)
        if modules:
            lines += [f"=== Module Statistics for {name} ===", ""]
            lines.append(f"{'Module':<40} {'Functions':<12} {'Exclusive':<12} {'Inclusive':<12}")
            lines.append('-' * 80)
            for m in modules:
                lines.append(f"{m.module:<40} {m.functions:<12,} {m.exclusive_samples:<12,} {m.inclusive_samples:<12,}")
            lines.append("")
        lines += format_call_tree(report, process_id, tree_depth)

    lines += format_sample_table(report, report.top_by_exclusive_samples(top),
                                 f"Top {top} Functions by Exclusive Samples")
    lines += format_sample_table(report, report.top_by_inclusive_samples(top),
                                 f"Top {top} Functions by Inclusive Samples")

    summary = report.summary()
    lines += ["=== Statistics ===", "",
              f"Total unique functions: {summary['unique_functions']:,}",
              f"Total stack samples: {summary['total_samples']:,}"]
    if summary['average_stack_depth'] is not None:
        lines.append(f"Average stack depth: {summary['average_stack_depth']:.2f}")
    lines.append("")

    lines += format_time_table(report, report.top_by_exclusive_time_ms(top),
                               f"Top {top} Functions by Self CPU Time (ms)")
    lines += format_time_table(report, report.top_by_inclusive_time_ms(top),
                               f"Top {top} Functions by Total CPU Time (ms)")
    return "\n".join(lines)
