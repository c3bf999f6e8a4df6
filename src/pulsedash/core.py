"""Aggregation core: the tick loop, application state and input handling.

``Dashboard`` owns every piece of mutable state (history, process model,
collector snapshots, gallery) and is only touched from the event loop. The
presentation layer reads it between ticks; it never writes to it.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any, Protocol

from pulsedash.collectors import SYSMETRICS, CachedSnapshot, CollectorSet
from pulsedash.config import MAX_REFRESH_MS, MIN_REFRESH_MS, DashboardConfig, clamp_refresh
from pulsedash.errors import SignalError
from pulsedash.history import HistoryBuffer
from pulsedash.imaging import ImagePipeline
from pulsedash.layout import DataShape, LayoutPlan, Tab, compute
from pulsedash.models import ProcessRecord
from pulsedash.monitor import SignalKind, SystemSnapshot
from pulsedash.proctree import KillChord, ProcessModel, SortKey

logger = logging.getLogger(__name__)

REFRESH_STEP_MS = 250
STATUS_TTL = 4.0  # seconds a transient message stays on the status line
WHEEL_STEP = 3
HELP_PAGE_COUNT = 4

TABS = list(Tab)

# History series ids.
CPU = "cpu"
CPU_CORES = "cpu_cores"
MEM = "mem"
SWAP = "swap"
LOAD = "load"
TEMP = "temp"
NET = "net"  # lanes: rx, tx


class ProcessControl(Protocol):
    def list_processes(self) -> list[ProcessRecord]: ...

    def send_signal(self, pid: int, kind: SignalKind) -> None: ...


Spawner = Callable[[Coroutine[Any, Any, None]], object]


@dataclass(slots=True)
class StatusMessage:
    text: str
    error: bool
    expires_at: float


class Dashboard:
    """
    Application state plus every operation that changes it.

    Two modes: running, where ``tick`` polls collectors and advances
    history, and frozen, where ``tick`` only applies finished image fetches.
    Input operations work in both modes.
    """

    def __init__(
        self,
        config: DashboardConfig,
        collectors: CollectorSet,
        control: ProcessControl,
        pipeline: ImagePipeline | None = None,
        *,
        spawn: Spawner | None = None,
        history: HistoryBuffer | None = None,
        clock: Callable[[], float] = time.monotonic,
        expanded: str | None = None,
    ) -> None:
        """Initialize Dashboard."""
        self.config = config
        self.collectors = collectors
        self.control = control
        self.pipeline = pipeline or ImagePipeline()
        self.history = history or HistoryBuffer()
        self.processes = ProcessModel()
        self.chord = KillChord(clock=clock)
        self.spawn = spawn
        self._clock = clock

        self.refresh_ms = clamp_refresh(config.refresh_ms)
        self.frozen = False
        self.active_tab = Tab.DASHBOARD
        self.show_help = False
        self.help_page = 0
        self.filter_mode = False
        self.expanded = expanded
        self.status: StatusMessage | None = None
        self.tick_count = 0
        self.quit_requested = False

    # ── Tick ────────────────────────────────────────────────────────────────

    def tick(self) -> bool:
        """One timer tick. Returns True when anything visible may have changed."""
        changed = self._drain_fetches()
        changed = self._expire_status() or changed
        if self.frozen:
            return changed

        started = self._clock()
        updated = self.collectors.run_due()
        if SYSMETRICS in updated:
            snapshot: SystemSnapshot = self.collectors.snapshot(SYSMETRICS).data
            self._record_history(snapshot)
            self.processes.rebuild(snapshot.processes)
        self.tick_count += 1
        logger.debug(
            "tick %d: updated=%s in %.1fms",
            self.tick_count,
            updated,
            (self._clock() - started) * 1000,
        )
        return True

    def _record_history(self, snapshot: SystemSnapshot) -> None:
        history = self.history
        history.push(CPU, snapshot.cpu_total)
        history.push(CPU_CORES, tuple(snapshot.cpu_percent_per_core))
        history.push(MEM, snapshot.memory_percent)
        history.push(SWAP, snapshot.swap_percent)
        history.push(LOAD, snapshot.load_avg[0])
        history.push(TEMP, snapshot.max_temperature)
        history.push(NET, (snapshot.net_rx_rate, snapshot.net_tx_rate))

    def _drain_fetches(self) -> bool:
        if not self.pipeline.inbox:
            return False
        for error in self.pipeline.drain():
            self.set_status(error, error=True)
        if self.pipeline.wants_prefetch():
            self._start_fetch(prefetch=True)
        return True

    # ── Read-only views ─────────────────────────────────────────────────────

    def snapshot(self, name: str) -> CachedSnapshot[Any]:
        """Snapshot of collector ``name``."""
        return self.collectors.snapshot(name)

    @property
    def system(self) -> SystemSnapshot | None:
        """Latest local metrics, or None before the first successful poll."""
        return self.collectors.snapshot(SYSMETRICS).data

    @property
    def image_visible(self) -> bool:
        """True when the image panel has something to show."""
        return self.config.image.enabled and (self.pipeline.has_image or self.pipeline.live)

    def shape(self) -> DataShape:
        """What data is present, for the layout."""
        system = self.system
        return DataShape(
            image=self.image_visible,
            cpu_cores=len(system.cpu_percent_per_core) if system else 1,
            expanded=self.expanded,
            help=self.show_help,
        )

    def plan(self, width: int, height: int) -> LayoutPlan:
        """Layout for a terminal of ``width`` x ``height`` cells."""
        return compute(self.active_tab, width, height, self.shape())

    # ── Status line ─────────────────────────────────────────────────────────

    def set_status(self, text: str, error: bool = False) -> None:
        """Show a transient message in the status bar."""
        self.status = StatusMessage(text, error, self._clock() + STATUS_TTL)

    def dismiss_status(self) -> None:
        """Clear the status message early."""
        self.status = None

    def _expire_status(self) -> bool:
        if self.status is not None and self._clock() >= self.status.expires_at:
            self.status = None
            return True
        return False

    # ── Modes and tabs ──────────────────────────────────────────────────────

    def toggle_freeze(self) -> None:
        """Pause or resume polling."""
        self.frozen = not self.frozen
        logger.info("frozen" if self.frozen else "resumed")

    def select_tab(self, tab: Tab) -> None:
        """Switch to ``tab``."""
        self.active_tab = tab

    def next_tab(self) -> None:
        """Switch to the next tab, wrapping."""
        self.active_tab = TABS[(TABS.index(self.active_tab) + 1) % len(TABS)]

    def prev_tab(self) -> None:
        """Switch to the previous tab, wrapping."""
        self.active_tab = TABS[(TABS.index(self.active_tab) - 1) % len(TABS)]

    def click_tab(self, x: int, width: int) -> bool:
        """Select the tab under column ``x`` of a tab bar ``width`` wide."""
        slot = max(1, width // len(TABS))
        index = x // slot
        if 0 <= index < len(TABS):
            self.active_tab = TABS[index]
            return True
        return False

    def faster(self) -> bool:
        """Shorten the tick interval. False when already at the bound."""
        return self._set_refresh(self.refresh_ms - REFRESH_STEP_MS)

    def slower(self) -> bool:
        """Lengthen the tick interval. False when already at the bound."""
        return self._set_refresh(self.refresh_ms + REFRESH_STEP_MS)

    def _set_refresh(self, ms: int) -> bool:
        ms = max(MIN_REFRESH_MS, min(MAX_REFRESH_MS, ms))
        if ms == self.refresh_ms:
            return False
        self.refresh_ms = ms
        return True

    def toggle_help(self) -> None:
        """Show or hide the help overlay."""
        self.show_help = not self.show_help
        self.help_page = 0

    def leave_expand(self) -> None:
        """Return from the expanded panel to the tabbed view."""
        self.expanded = None

    # ── Process table ───────────────────────────────────────────────────────

    def begin_filter(self) -> None:
        """Start typing a process filter."""
        self.filter_mode = True
        self.processes.set_filter("")

    def filter_input(self, text: str) -> None:
        """Append ``text`` to the filter being typed."""
        self.processes.set_filter(self.processes.filter_text + text)

    def filter_backspace(self) -> None:
        """Delete the last filter character."""
        self.processes.set_filter(self.processes.filter_text[:-1])

    def end_filter(self, keep: bool = True) -> None:
        """Leave filter mode, keeping the filter unless ``keep`` is False."""
        self.filter_mode = False
        if not keep:
            self.processes.set_filter("")

    def sort_by(self, key: SortKey) -> None:
        """Sort processes by ``key``."""
        self.processes.set_sort(key)

    def toggle_reverse(self) -> None:
        """Reverse the process sort order."""
        self.processes.toggle_reverse()

    def scroll(self, delta: int) -> None:
        """Move the process selection by ``delta`` rows."""
        self.processes.move(delta)

    def terminate_chord(self) -> None:
        """First press arms the chord; a second one within the window terminates."""
        if self.chord.press():
            self._signal_selected(SignalKind.TERMINATE)

    def force_kill(self) -> None:
        """Send SIGKILL to the selected process."""
        self.chord.cancel()
        self._signal_selected(SignalKind.KILL)

    def _signal_selected(self, kind: SignalKind) -> None:
        record = self.processes.selected_record()
        if record is None:
            return
        try:
            self.control.send_signal(record.pid, kind)
        except SignalError as e:
            logger.warning("%s", e)
            self.set_status(str(e), error=True)
            return
        self.set_status(f"sent {kind.value} to {record.pid} ({record.name})")

    # ── Image panel ─────────────────────────────────────────────────────────

    def image_next(self) -> None:
        """Show the next gallery image."""
        self.pipeline.gallery.next()

    def image_previous(self) -> None:
        """Show the previous gallery image."""
        self.pipeline.gallery.previous()

    def image_random(self) -> None:
        """Jump to a random gallery image."""
        self.pipeline.gallery.random()

    def image_toggle_info(self) -> None:
        """Show or hide the image caption."""
        self.pipeline.show_info = not self.pipeline.show_info

    def image_fetch(self) -> None:
        """Fetch a new image unless one is already on its way."""
        if self.pipeline.pending:
            return
        if not self._start_fetch(prefetch=False):
            self.set_status("image fetch unavailable: no endpoint configured", error=True)

    def _start_fetch(self, prefetch: bool) -> bool:
        if self.spawn is None:
            return False
        ticket = self.pipeline.begin_fetch(prefetch=prefetch)
        if ticket is None:
            return False
        self.spawn(self.pipeline.run_fetch(ticket))
        return True

    # ── Key dispatch ────────────────────────────────────────────────────────

    def handle_key(self, key: str, character: str | None = None) -> bool:
        """Apply one key press. Returns False when the key means nothing here."""
        if key != "d":
            self.chord.cancel()

        if self.filter_mode:
            return self._filter_key(key, character)

        if key == "question_mark":
            self.toggle_help()
            return True
        if self.show_help:
            self._help_key(key)
            return True

        if self.expanded:
            return self._expanded_key(key)

        if key == "escape":
            self.dismiss_status()
            return True

        # n/p/r drive the image instead of sorting while one is on screen.
        if self.active_tab is Tab.DASHBOARD and self.image_visible and self.pipeline.has_image:
            action = self._image_keys.get(key)
            if action is not None:
                action(self)
                return True

        action = self._keys.get(key)
        if action is None:
            return False
        action(self)
        return True

    def _filter_key(self, key: str, character: str | None) -> bool:
        if key == "escape":
            self.end_filter(keep=False)
        elif key == "enter":
            self.end_filter(keep=True)
        elif key == "backspace":
            self.filter_backspace()
        elif character and character.isprintable():
            self.filter_input(character)
        else:
            return False
        return True

    def _help_key(self, key: str) -> None:
        if key in ("tab", "right"):
            self.help_page = (self.help_page + 1) % HELP_PAGE_COUNT
        elif key in ("shift+tab", "left"):
            self.help_page = (self.help_page - 1) % HELP_PAGE_COUNT
        elif key in ("1", "2", "3", "4"):
            self.help_page = int(key) - 1
        else:
            self.show_help = False

    def _expanded_key(self, key: str) -> bool:
        if key == "escape":
            self.leave_expand()
            return True
        action = self._image_keys.get(key)
        if action is not None:
            action(self)
        return True

    _image_keys: dict[str, Callable[[Dashboard], None]] = {
        "n": image_next,
        "p": image_previous,
        "r": image_random,
        "i": image_toggle_info,
        "f": image_fetch,
    }

    _keys: dict[str, Callable[[Dashboard], None]] = {
        "q": lambda d: setattr(d, "quit_requested", True),
        "space": toggle_freeze,
        "slash": begin_filter,
        "tab": next_tab,
        "right": next_tab,
        "shift+tab": prev_tab,
        "left": prev_tab,
        "1": lambda d: d.select_tab(Tab.DASHBOARD),
        "2": lambda d: d.select_tab(Tab.SYSTEM),
        "3": lambda d: d.select_tab(Tab.NETWORK),
        "4": lambda d: d.select_tab(Tab.BILLING),
        "j": lambda d: d.scroll(1),
        "down": lambda d: d.scroll(1),
        "k": lambda d: d.scroll(-1),
        "up": lambda d: d.scroll(-1),
        "pagedown": lambda d: d.processes.page(1),
        "pageup": lambda d: d.processes.page(-1),
        "g": lambda d: d.processes.home(),
        "home": lambda d: d.processes.home(),
        "G": lambda d: d.processes.end(),
        "shift+g": lambda d: d.processes.end(),
        "end": lambda d: d.processes.end(),
        "c": lambda d: d.sort_by(SortKey.CPU),
        "m": lambda d: d.sort_by(SortKey.MEM),
        "p": lambda d: d.sort_by(SortKey.PID),
        "n": lambda d: d.sort_by(SortKey.NAME),
        "r": toggle_reverse,
        "t": lambda d: d.processes.toggle_tree(),
        "e": lambda d: d.processes.toggle_command(),
        "d": terminate_chord,
        "D": force_kill,
        "shift+d": force_kill,
        "f": image_fetch,
        "plus": faster,
        "equals_sign": faster,
        "minus": slower,
    }
