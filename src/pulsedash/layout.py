"""Layout engine: widget geometry from tab, terminal size and data shape.

``compute`` is a pure function. It allocates each column top-down, drops the
lowest-priority panels when even their minimum sizes do not fit, shrinks
lower-priority panels before higher-priority ones, and never produces a
region smaller than ``MIN_PANEL_WIDTH`` x ``MIN_PANEL_HEIGHT``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

WIDE_BREAKPOINT = 120  # columns; inclusive on the wide side
MIN_PANEL_WIDTH = 10
MIN_PANEL_HEIGHT = 3  # border + one line
TAB_BAR = "tabs"
STATUS_BAR = "status"
HELP = "help"
HELP_WIDTH = 58
HELP_HEIGHT = 34


class Tab(Enum):
    """Dashboard tabs, in tab-bar order."""

    DASHBOARD = "Dashboard"
    SYSTEM = "System"
    NETWORK = "Network"
    BILLING = "Billing"

    @property
    def title(self) -> str:
        return self.value


class Arrangement(Enum):
    WIDE = "wide"
    NARROW = "narrow"


@dataclass(frozen=True)
class Rect:
    x: int
    y: int
    width: int
    height: int


@dataclass(frozen=True)
class DataShape:
    """The parts of application state that influence geometry."""

    image: bool = False  # image panel wanted
    cpu_cores: int = 1
    expanded: str | None = None  # single panel filling the screen
    help: bool = False


@dataclass(frozen=True)
class Slot:
    """
    One band of a column: one panel, or several side by side.

    ``height`` 0 means the slot fills leftover space (shared by ``weight``).
    Lower ``priority`` is shrunk first and dropped first.
    """

    panels: tuple[str, ...]
    height: int = 0
    min_height: int = MIN_PANEL_HEIGHT
    priority: int = 0
    weight: int = 1
    needs: str | None = None  # "image" / "no-image"
    grows_with_cores: bool = False


@dataclass(frozen=True)
class Column:
    percent: int
    slots: tuple[Slot, ...]


@dataclass(frozen=True)
class LayoutPlan:
    tab: Tab
    arrangement: Arrangement
    width: int
    height: int
    regions: dict[str, Rect] = field(default_factory=dict)

    def __contains__(self, name: object) -> bool:
        return name in self.regions

    def get(self, name: str) -> Rect | None:
        return self.regions.get(name)

    @property
    def panels(self) -> list[str]:
        return [n for n in self.regions if n not in (TAB_BAR, STATUS_BAR, HELP)]


def _s(*panels: str, **kwargs) -> Slot:
    return Slot(tuple(panels), **kwargs)


TAB_LAYOUTS: dict[tuple[Tab, Arrangement], tuple[Column, ...]] = {
    (Tab.DASHBOARD, Arrangement.WIDE): (
        Column(55, (
            _s("host", height=9, min_height=5, priority=5),
            _s("cpu_spark", "mem_spark", "swap_spark", height=5, priority=4),
            _s("cpu_bars", height=8, min_height=4, priority=2),
            _s("memory", height=6, min_height=4, priority=3),
            _s("disks", min_height=4, priority=1),
        )),
        Column(45, (
            _s("image", weight=3, min_height=6, priority=1, needs="image"),
            _s("mesh", height=8, min_height=4, priority=4, needs="image"),
            _s("mesh", height=10, min_height=4, priority=4, needs="no-image"),
            _s("cluster", height=8, min_height=4, priority=2, needs="no-image"),
            _s("usage", "billing", weight=2, min_height=5, priority=3),
        )),
    ),
    (Tab.DASHBOARD, Arrangement.NARROW): (
        Column(100, (
            _s("host", height=8, min_height=5, priority=5),
            _s("cpu_spark", "mem_spark", height=4, priority=4),
            _s("memory", height=4, priority=3),
            _s("disks", height=4, priority=1),
            _s("image", height=10, min_height=6, priority=2, needs="image"),
            _s("mesh", height=6, min_height=4, priority=3),
            _s("billing", min_height=3, priority=2),
        )),
    ),
    (Tab.SYSTEM, Arrangement.WIDE): (
        Column(50, (
            _s("cpu_spark", "mem_spark", "swap_spark", "load_spark", "temp_spark", height=5, priority=4),
            _s("cpu_cores", min_height=4, priority=3, grows_with_cores=True),
            _s("memory", height=6, min_height=4, priority=3),
            _s("disks", "temps", min_height=4, priority=1),
        )),
        Column(50, (
            _s("net_rx", "net_tx", height=5, priority=3),
            _s("processes", weight=3, min_height=6, priority=5),
            _s("network", weight=2, min_height=5, priority=2),
        )),
    ),
    (Tab.SYSTEM, Arrangement.NARROW): (
        Column(100, (
            _s("cpu_spark", "mem_spark", "temp_spark", height=4, priority=3),
            _s("cpu_bars", height=10, min_height=4, priority=2),
            _s("memory", height=6, min_height=4, priority=3),
            _s("net_rx", "net_tx", height=4, priority=1),
            _s("processes", height=10, min_height=6, priority=5),
            _s("disks", height=6, min_height=4, priority=1),
            _s("temps", height=6, min_height=4, priority=0),
            _s("network", min_height=4, priority=1),
        )),
    ),
    (Tab.NETWORK, Arrangement.WIDE): (
        Column(50, (
            _s("net_rx", "net_tx", height=5, priority=3),
            _s("network", min_height=5, priority=2),
        )),
        Column(50, (
            _s("mesh", min_height=5, priority=4),
            _s("cluster", min_height=5, priority=3),
        )),
    ),
    (Tab.NETWORK, Arrangement.NARROW): (
        Column(100, (
            _s("net_rx", "net_tx", height=5, priority=3),
            _s("network", height=10, min_height=4, priority=2),
            _s("mesh", weight=2, min_height=5, priority=4),
            _s("cluster", min_height=6, priority=1),
        )),
    ),
    (Tab.BILLING, Arrangement.WIDE): (
        Column(40, (
            _s("personal", height=5, priority=4),
            _s("usage", min_height=5, priority=3),
        )),
        Column(60, (
            _s("billing", min_height=5, priority=3),
        )),
    ),
    (Tab.BILLING, Arrangement.NARROW): (
        Column(100, (
            _s("personal", height=5, priority=4),
            _s("usage", min_height=5, priority=3),
            _s("billing", min_height=5, priority=2),
        )),
    ),
}


def arrangement_for(width: int) -> Arrangement:
    return Arrangement.WIDE if width >= WIDE_BREAKPOINT else Arrangement.NARROW


def cores_height(cores: int) -> int:
    """Rows for the per-core panel: two cores per row, plus the border."""
    return min((max(cores, 1) + 1) // 2, 12) + 2


def compute(tab: Tab, width: int, height: int, shape: DataShape = DataShape()) -> LayoutPlan:
    """Compute the layout plan for one frame."""
    arrangement = arrangement_for(width)
    regions: dict[str, Rect] = {}

    if width < 1 or height < 1:
        return LayoutPlan(tab, arrangement, width, height, regions)

    if shape.expanded:
        regions[shape.expanded] = Rect(0, 0, width, height)
        return LayoutPlan(tab, arrangement, width, height, regions)

    top, content_height = 0, height
    if height >= MIN_PANEL_HEIGHT + 2:
        regions[TAB_BAR] = Rect(0, 0, width, 1)
        top, content_height = 1, height - 2

    columns = TAB_LAYOUTS[(tab, arrangement)]
    x = 0
    for i, column in enumerate(columns):
        col_width = width - x if i == len(columns) - 1 else width * column.percent // 100
        regions.update(_allocate_column(column.slots, x, top, col_width, content_height, shape))
        x += col_width

    if TAB_BAR in regions:
        regions[STATUS_BAR] = Rect(0, height - 1, width, 1)

    if shape.help:
        w = min(HELP_WIDTH, width - 4)
        h = min(HELP_HEIGHT, height - 4)
        if w >= MIN_PANEL_WIDTH and h >= MIN_PANEL_HEIGHT:
            regions[HELP] = Rect((width - w) // 2, (height - h) // 2, w, h)

    return LayoutPlan(tab, arrangement, width, height, regions)


def _slot_applies(slot: Slot, shape: DataShape) -> bool:
    if slot.needs == "image":
        return shape.image
    if slot.needs == "no-image":
        return not shape.image
    return True


def _fit_panels(panels: tuple[str, ...], width: int) -> tuple[str, ...]:
    """Drop trailing panels until every remaining one gets MIN_PANEL_WIDTH."""
    count = len(panels)
    while count and width // count < MIN_PANEL_WIDTH:
        count -= 1
    return panels[:count]


def _allocate_column(
    slots: tuple[Slot, ...], x: int, y: int, width: int, height: int, shape: DataShape
) -> dict[str, Rect]:
    # (slot, panels that fit the width)
    live: list[tuple[Slot, tuple[str, ...]]] = []
    for slot in slots:
        if not _slot_applies(slot, shape):
            continue
        panels = _fit_panels(slot.panels, width)
        if panels:
            live.append((slot, panels))

    # Drop lowest priority (latest first on ties) until minimums fit.
    def drop_order(item: tuple[int, tuple[Slot, tuple[str, ...]]]) -> tuple[int, int]:
        index, (slot, _) = item
        return (slot.priority, -index)

    while live and sum(s.min_height for s, _ in live) > height:
        victim, _ = min(enumerate(live), key=drop_order)
        live.pop(victim)

    if not live:
        return {}

    heights: list[int] = []
    for slot, _ in live:
        if slot.grows_with_cores:
            heights.append(max(slot.min_height, cores_height(shape.cpu_cores)))
        elif slot.height:
            heights.append(max(slot.min_height, slot.height))
        else:
            heights.append(slot.min_height)

    # Shrink lowest priority first, towards each slot's minimum.
    overflow = sum(heights) - height
    if overflow > 0:
        for index, _ in sorted(enumerate(live), key=drop_order):
            give = min(overflow, heights[index] - live[index][0].min_height)
            heights[index] -= give
            overflow -= give
            if overflow == 0:
                break

    # Leftover goes to fill slots by weight, or to the last slot.
    leftover = height - sum(heights)
    fills = [i for i, (slot, _) in enumerate(live) if slot.height == 0 and not slot.grows_with_cores]
    if leftover > 0:
        if fills:
            total_weight = sum(live[i][0].weight for i in fills)
            given = 0
            for i in fills:
                share = leftover * live[i][0].weight // total_weight
                heights[i] += share
                given += share
            heights[fills[0]] += leftover - given
        else:
            heights[-1] += leftover

    regions: dict[str, Rect] = {}
    cursor = y
    for (slot, panels), h in zip(live, heights):
        each = width // len(panels)
        px = x
        for j, name in enumerate(panels):
            w = width - (px - x) if j == len(panels) - 1 else each
            regions[name] = Rect(px, cursor, w, h)
            px += w
        cursor += h
    return regions
