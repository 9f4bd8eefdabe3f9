"""Sample aggregation for Profile Analyzer.

Every walked stack updates two independent aggregations:

- FunctionIndex: flat, path-insensitive counts per (process, address).
- CallForest: one call tree per process with path-local counts, so the same
  function reached from two callers shows up as two nodes.

Neither is derived from the other. Leaderboards read the index, the tree
view reads the forest.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Union


@dataclass(frozen=True)
class StackFrame:
    """One frame of a walked stack."""
    address: int
    resolved_name: Optional[str] = None
    resolved_module: Optional[str] = None


@dataclass(frozen=True)
class FunctionKey:
    """Identifies one aggregation bucket."""
    process_id: int
    address: int

    def __str__(self) -> str:
        return f"{self.process_id:08X}:{self.address:016X}"


@dataclass
class FunctionRecord:
    """Cumulative counts for one function key across all stacks."""
    address: int
    process_id: int
    exclusive_samples: int = 0
    inclusive_samples: int = 0
    function_name: Optional[str] = None
    module_name: Optional[str] = None

    @property
    def key(self) -> FunctionKey:
        return FunctionKey(self.process_id, self.address)

    def absorb_names(self, name: Optional[str], module: Optional[str]):
        """Fill in a name or module that was unknown so far."""
        if name and not self.function_name:
            self.function_name = name
        if module and not self.module_name:
            self.module_name = module


@dataclass
class CallTreeNode:
    """A node of a per-process call tree. Counts are local to this path."""
    key: Union[FunctionKey, str]
    address: int = 0
    function_name: Optional[str] = None
    module_name: Optional[str] = None
    exclusive_samples: int = 0
    inclusive_samples: int = 0
    children: Dict[FunctionKey, "CallTreeNode"] = field(default_factory=dict)
    parent: Optional["CallTreeNode"] = field(default=None, repr=False, compare=False)

    @property
    def is_root(self) -> bool:
        return isinstance(self.key, str)

    def child(self, key: FunctionKey, record: FunctionRecord) -> "CallTreeNode":
        node = self.children.get(key)
        if node is None:
            node = CallTreeNode(
                key=key,
                address=key.address,
                function_name=record.function_name,
                module_name=record.module_name,
                parent=self,
            )
            self.children[key] = node
        return node

    def path(self) -> List["CallTreeNode"]:
        """Nodes from the root down to this node."""
        nodes = []
        node = self
        while node is not None:
            nodes.append(node)
            node = node.parent
        nodes.reverse()
        return nodes


def root_key(process_id: int) -> str:
    return f"ROOT_{process_id}"


def _as_frame(frame: Union[int, StackFrame]) -> StackFrame:
    if isinstance(frame, StackFrame):
        return frame
    return StackFrame(int(frame))


class FunctionIndex:
    """Flat map of FunctionKey -> FunctionRecord."""

    def __init__(self):
        self._records: Dict[FunctionKey, FunctionRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[FunctionRecord]:
        return iter(self._records.values())

    def __contains__(self, key: FunctionKey) -> bool:
        return key in self._records

    def get(self, process_id: int, address: int) -> Optional[FunctionRecord]:
        return self._records.get(FunctionKey(process_id, address))

    def get_or_create(self, process_id: int, address: int,
                      name: Optional[str] = None,
                      module: Optional[str] = None) -> FunctionRecord:
        key = FunctionKey(process_id, address)
        record = self._records.get(key)
        if record is None:
            record = FunctionRecord(address=address, process_id=process_id,
                                    function_name=name or None, module_name=module or None)
            self._records[key] = record
        else:
            record.absorb_names(name, module)
        return record

    def add_sample(self, process_id: int, address: int,
                   name: Optional[str] = None,
                   module: Optional[str] = None) -> FunctionRecord:
        """Count a sample that came without a stack.

        Only the instruction pointer is known, so it is both the innermost
        frame and the only frame.
        """
        record = self.get_or_create(process_id, address, name, module)
        record.exclusive_samples += 1
        record.inclusive_samples += 1
        return record

    def records(self, process_id: Optional[int] = None) -> List[FunctionRecord]:
        if process_id is None:
            return list(self._records.values())
        return [r for r in self._records.values() if r.process_id == process_id]

    def unresolved(self) -> List[FunctionRecord]:
        return [r for r in self._records.values() if not r.function_name]


class CallForest:
    """One call tree per observed process, built from walked stacks."""

    def __init__(self, index: Optional[FunctionIndex] = None):
        self.index = index if index is not None else FunctionIndex()
        self.roots: Dict[int, CallTreeNode] = {}

    def root(self, process_id: int, process_name: Optional[str] = None) -> CallTreeNode:
        node = self.roots.get(process_id)
        if node is None:
            label = process_name or f"PID {process_id}"
            node = CallTreeNode(key=root_key(process_id),
                                function_name=f"{label} (PID: {process_id})")
            self.roots[process_id] = node
        return node

    def add_stack(self, process_id: int, frames: Sequence[Union[int, StackFrame]],
                  process_name: Optional[str] = None) -> CallTreeNode:
        """Add one stack, ordered from the outermost caller to the leaf.

        Returns the node of the innermost frame (the root for an empty stack).
        """
        root = self.root(process_id, process_name)
        root.inclusive_samples += 1

        current = root
        last = len(frames) - 1
        for i, raw in enumerate(frames):
            frame = _as_frame(raw)
            record = self.index.get_or_create(process_id, frame.address,
                                              frame.resolved_name, frame.resolved_module)
            node = current.child(record.key, record)
            record.inclusive_samples += 1
            node.inclusive_samples += 1
            if i == last:
                record.exclusive_samples += 1
                node.exclusive_samples += 1
            current = node
        return current

    def add_walked_stack(self, process_id: int, leaf_to_root: Iterable[Union[int, StackFrame]],
                         process_name: Optional[str] = None) -> CallTreeNode:
        """Add a stack in stack-walk order (leaf first). Zero addresses are dropped."""
        frames = [f for f in (_as_frame(x) for x in leaf_to_root) if f.address]
        frames.reverse()
        return self.add_stack(process_id, frames, process_name)

    def process_ids(self) -> List[int]:
        return list(self.roots)
