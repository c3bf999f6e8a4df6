"""Process tree model: hierarchy, sorting, filtering and selection."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

from pulsedash.models import ProcessRecord

NO_PARENT = 0
KILL_CHORD_WINDOW = 0.5  # seconds between the two presses of the terminate chord
PAGE_SIZE = 10


class SortKey(Enum):
    """Sort keys for the process table."""

    CPU = "cpu"
    MEM = "mem"
    PID = "pid"
    NAME = "name"


# Natural direction per key: CPU and memory descending, PID and name ascending.
_SORT_KEYS: dict[SortKey, Callable[[ProcessRecord], object]] = {
    SortKey.CPU: lambda r: -r.cpu_percent,
    SortKey.MEM: lambda r: -r.memory_rss,
    SortKey.PID: lambda r: r.pid,
    SortKey.NAME: lambda r: r.name.lower(),
}


def sort_records(
    records: Iterable[ProcessRecord], key: SortKey, reverse: bool = False
) -> list[ProcessRecord]:
    """Stable sort by ``key`` in its natural direction, flipped by ``reverse``."""
    return sorted(records, key=_SORT_KEYS[key], reverse=reverse)


def matches_filter(record: ProcessRecord, needle: str) -> bool:
    """Case-insensitive substring match on name, PID and command line."""
    if not needle:
        return True
    needle = needle.lower()
    return (
        needle in record.name.lower()
        or needle in str(record.pid)
        or needle in record.command_line.lower()
    )


@dataclass(slots=True)
class ProcessNode:
    """Arena slot. ``parent`` and ``children`` are indices into the arena."""

    record: ProcessRecord
    parent: int | None = None
    children: list[int] = field(default_factory=list)
    matched: bool = True


@dataclass(slots=True, frozen=True)
class ProcessRow:
    """One visible line of the process table."""

    record: ProcessRecord
    depth: int


class ProcessTree:
    """
    A process forest stored as an arena of nodes linked by index.

    Rebuilt wholesale from every snapshot; never mutated incrementally.
    """

    def __init__(self, nodes: list[ProcessNode], roots: list[int], total: int) -> None:
        self.nodes = nodes
        self.roots = roots
        self.total = total  # unfiltered record count

    def __len__(self) -> int:
        return len(self.nodes)

    def walk(self) -> list[ProcessRow]:
        """Depth-first rows; siblings are already in sort order."""
        rows: list[ProcessRow] = []
        stack = [(idx, 0) for idx in reversed(self.roots)]
        while stack:
            idx, depth = stack.pop()
            node = self.nodes[idx]
            rows.append(ProcessRow(node.record, depth))
            stack.extend((child, depth + 1) for child in reversed(node.children))
        return rows

    def matched_rows(self) -> list[ProcessRow]:
        """Flat rows for the nodes that matched the filter, in sort order."""
        return [ProcessRow(node.record, 0) for node in self.nodes if node.matched]


def build_tree(
    records: Iterable[ProcessRecord],
    sort_key: SortKey = SortKey.CPU,
    reverse: bool = False,
    filter_text: str = "",
) -> ProcessTree:
    """
    Build a sorted, filtered process forest from a flat snapshot.

    A record is a root when its parent is the no-parent sentinel, itself, or
    absent from the snapshot. A parent chain that loops is broken by promoting
    the record where the loop closes to a root. With a filter,
    non-matching nodes survive only as ancestors of a match.
    """
    unique: dict[int, ProcessRecord] = {}
    for record in records:
        unique.setdefault(record.pid, record)
    ordered = sort_records(unique.values(), sort_key, reverse)
    total = len(ordered)

    # Parent links over the full set, breaking cycles.
    parent_of: dict[int, int | None] = {}
    for record in ordered:
        ppid = record.ppid
        is_root = ppid == NO_PARENT or ppid == record.pid or ppid not in unique
        parent_of[record.pid] = None if is_root else ppid

    resolved: set[int] = set()
    for record in ordered:
        chain: list[int] = []
        on_chain: set[int] = set()
        pid: int | None = record.pid
        while pid is not None and pid not in resolved:
            if pid in on_chain:
                parent_of[pid] = None
                break
            chain.append(pid)
            on_chain.add(pid)
            pid = parent_of[pid]
        resolved.update(chain)

    # Keep matches plus their ancestors.
    matched = {r.pid for r in ordered if matches_filter(r, filter_text)}
    keep: set[int] = set()
    for pid in matched:
        current: int | None = pid
        while current is not None and current not in keep:
            keep.add(current)
            current = parent_of[current]

    nodes: list[ProcessNode] = []
    index_of: dict[int, int] = {}
    for record in ordered:
        if record.pid in keep:
            index_of[record.pid] = len(nodes)
            nodes.append(ProcessNode(record, matched=record.pid in matched))

    roots: list[int] = []
    for idx, node in enumerate(nodes):
        ppid = parent_of[node.record.pid]
        if ppid is None:
            roots.append(idx)
        else:
            parent_idx = index_of[ppid]
            node.parent = parent_idx
            nodes[parent_idx].children.append(idx)

    return ProcessTree(nodes, roots, total)


class ProcessModel:
    """
    Process table state: sort, filter, tree mode and the selection cursor.

    The selection is re-clamped after every rebuild, sort or filter change
    so it never points past the end of the visible rows.
    """

    def __init__(self) -> None:
        self.sort_key: SortKey = SortKey.CPU
        self.reverse: bool = False
        self.filter_text: str = ""
        self.tree_mode: bool = False
        self.show_command: bool = False
        self.selected: int = 0
        self._records: list[ProcessRecord] = []
        self.tree: ProcessTree = build_tree([])
        self.rows: list[ProcessRow] = []

    @property
    def total_count(self) -> int:
        return self.tree.total

    def rebuild(self, records: Iterable[ProcessRecord] | None = None) -> None:
        if records is not None:
            self._records = list(records)
        self.tree = build_tree(self._records, self.sort_key, self.reverse, self.filter_text)
        self.rows = self.tree.walk() if self.tree_mode else self.tree.matched_rows()
        self._clamp()

    def set_sort(self, key: SortKey) -> None:
        self.sort_key = key
        self.rebuild()

    def toggle_reverse(self) -> None:
        self.reverse = not self.reverse
        self.rebuild()

    def set_filter(self, text: str) -> None:
        self.filter_text = text
        self.selected = 0
        self.rebuild()

    def toggle_tree(self) -> None:
        self.tree_mode = not self.tree_mode
        self.rebuild()

    def toggle_command(self) -> None:
        self.show_command = not self.show_command

    def move(self, delta: int) -> None:
        self.selected += delta
        self._clamp()

    def page(self, pages: int) -> None:
        self.move(pages * PAGE_SIZE)

    def home(self) -> None:
        self.selected = 0

    def end(self) -> None:
        self.selected = max(0, len(self.rows) - 1)

    def selected_record(self) -> ProcessRecord | None:
        if not self.rows:
            return None
        return self.rows[self.selected].record

    def _clamp(self) -> None:
        self.selected = max(0, min(self.selected, len(self.rows) - 1))


class KillChord:
    """Tracks the two-press terminate chord (``d`` then ``d``)."""

    def __init__(
        self,
        window: float = KILL_CHORD_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window = window
        self._clock = clock
        self._armed_at: float | None = None

    @property
    def armed(self) -> bool:
        return self._armed_at is not None

    def press(self) -> bool:
        """Register a press. True when it completes the chord."""
        now = self._clock()
        if self._armed_at is not None and now - self._armed_at < self.window:
            self._armed_at = None
            return True
        self._armed_at = now
        return False

    def cancel(self) -> None:
        self._armed_at = None
