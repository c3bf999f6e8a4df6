"""pulsedash - Main Textual application."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

from textual import events
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.timer import Timer

from pulsedash.collectors import CollectorSet, LocalMetricsCollector, cache_collectors
from pulsedash.config import DashboardConfig, dump_default_config, load_config
from pulsedash.core import Dashboard
from pulsedash.errors import StartupError
from pulsedash.imaging import (
    Gallery,
    HttpImageTransport,
    ImagePipeline,
    ImageRenderer,
    ProtocolPicker,
    load_bundled,
)
from pulsedash.layout import HELP, STATUS_BAR, TAB_BAR, TAB_LAYOUTS
from pulsedash.monitor import SystemProbe
from pulsedash.widgets import PANEL_TYPES, HelpPanel, ImagePanel, Panel, StatusBar, TabBar

logger = logging.getLogger(__name__)

THEMES = {"default": "textual-dark", "dark": "textual-dark", "light": "textual-light"}
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class PulsedashApp(App):
    """Main pulsedash application."""

    TITLE = "pulsedash"
    SUB_TITLE = "Terminal telemetry dashboard"

    CSS = """
    Screen {
        layers: base overlay;
        overflow: hidden;
    }
    """

    # Tab would otherwise move focus before the key reaches on_key.
    BINDINGS = [
        Binding("tab", "dispatch('tab')", show=False, priority=True),
        Binding("shift+tab", "dispatch('shift+tab')", show=False, priority=True),
    ]

    def __init__(self, dashboard: Dashboard, renderer: ImageRenderer | None = None) -> None:
        """Initialize the PulsedashApp."""
        super().__init__()
        self.dashboard = dashboard
        self.renderer = renderer or ImageRenderer(ProtocolPicker("halfblocks", query=None))
        if dashboard.spawn is None:
            dashboard.spawn = self._spawn_fetch
        self._timer: Timer | None = None
        self._interval_ms = dashboard.refresh_ms

    def compose(self) -> ComposeResult:
        """Compose every panel hidden; refresh_view places the visible ones."""
        for name, panel_type in PANEL_TYPES.items():
            yield panel_type(id=name)
        yield ImagePanel(self.renderer, id="image")
        yield TabBar(id=TAB_BAR)
        yield StatusBar(id=STATUS_BAR)
        yield HelpPanel(id=HELP)

    def on_mount(self) -> None:
        """Start the tick timer when the app is mounted."""
        theme = self.dashboard.config.theme
        name = THEMES.get(theme, theme)
        if name not in self.available_themes:
            logger.warning("unknown theme %r, using default", theme)
            name = THEMES["default"]
        self.theme = name
        self._start_timer()
        self.dashboard.tick()
        pipeline = self.dashboard.pipeline
        if self.dashboard.config.image.enabled and pipeline.live and not pipeline.has_image:
            self.dashboard.image_fetch()
        self.refresh_view()

    def _start_timer(self) -> None:
        if self._timer is not None:
            self._timer.stop()
        self._interval_ms = self.dashboard.refresh_ms
        self._timer = self.set_interval(self._interval_ms / 1000, self._on_tick)

    def _on_tick(self) -> None:
        if self.dashboard.tick():
            self.refresh_view()

    def _spawn_fetch(self, work: Coroutine[Any, Any, None]) -> None:
        self.run_worker(work, group="image-fetch", exit_on_error=False)

    def refresh_view(self) -> None:
        """Lay out and redraw every widget from the current dashboard state."""
        plan = self.dashboard.plan(self.size.width, self.size.height)
        for widget in self.query(Panel):
            rect = plan.get(widget.id or "")
            if rect is None:
                widget.display = False
            else:
                widget.sync(self.dashboard, rect)
        for bar in (self.query_one(TabBar), self.query_one(StatusBar)):
            rect = plan.get(bar.id or "")
            if rect is None:
                bar.display = False
            else:
                bar.sync(self.dashboard, rect)

    def on_resize(self, event: events.Resize) -> None:
        self.refresh_view()

    def on_key(self, event: events.Key) -> None:
        if self.dashboard.handle_key(event.key, event.character):
            event.stop()
            event.prevent_default()
            self._after_input()

    def action_dispatch(self, key: str) -> None:
        self.dashboard.handle_key(key)
        self._after_input()

    def _after_input(self) -> None:
        if self.dashboard.quit_requested:
            self.exit()
            return
        if self.dashboard.refresh_ms != self._interval_ms:
            self._start_timer()
        self.refresh_view()


# ── CLI ────────────────────────────────────────────────────────────────────


def panel_names() -> set[str]:
    names = {"image"}
    for columns in TAB_LAYOUTS.values():
        for column in columns:
            for slot in column.slots:
                names.update(slot.panels)
    return names


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pulsedash",
        description="Live terminal dashboard for system, mesh, cluster, billing and usage telemetry.",
    )
    parser.add_argument("--config", type=Path, default=None, metavar="PATH", help="Path to TOML config file")
    parser.add_argument(
        "--expand",
        metavar="PANEL",
        default=None,
        help="Start with a single panel filling the screen (e.g. image)",
    )
    parser.add_argument("--log-file", type=Path, default=None, metavar="PATH", help="Write logs to this file")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: $PULSEDASH_LOG or WARNING)",
    )
    parser.add_argument("--print-config", action="store_true", help="Print the default config and exit")
    return parser


def setup_logging(log_file: Path | None, level_name: str | None) -> None:
    """Route logs to a file; the terminal belongs to the TUI."""
    level_name = (level_name or os.environ.get("PULSEDASH_LOG") or "WARNING").upper()
    level = getattr(logging, level_name, logging.WARNING)
    if log_file is None:
        logging.getLogger().addHandler(logging.NullHandler())
        logging.getLogger().setLevel(level)
        return
    logging.basicConfig(filename=str(log_file), level=level, format=LOG_FORMAT)


def build_dashboard(config: DashboardConfig, expand: str | None = None) -> tuple[Dashboard, ImageRenderer]:
    """Wire collectors, image pipeline and state for one session."""
    if expand is not None and expand not in panel_names():
        raise StartupError(f"unknown panel for --expand: {expand}")

    probe = SystemProbe()
    collectors = []
    if config.collector_enabled("sysmetrics"):
        collectors.append(LocalMetricsCollector(probe))
    collectors.extend(cache_collectors(config.cache_dir, config.collector_enabled))

    image = config.image
    pipeline = ImagePipeline(
        gallery=Gallery(load_bundled(config.cache_dir / "waifu") if image.enabled else [], image.max_images),
        transport=HttpImageTransport() if image.enabled and image.live else None,
        endpoint=image.endpoint,
        category=image.category,
    )
    picker = ProtocolPicker(image.protocol)
    if image.enabled:
        # Negotiate while we still own the terminal.
        picker.select()

    dashboard = Dashboard(config, CollectorSet(collectors), probe, pipeline, expanded=expand)
    return dashboard, ImageRenderer(picker)


def main(argv: list[str] | None = None) -> int:
    """Entry point for pulsedash application."""
    args = create_parser().parse_args(argv)
    if args.print_config:
        print(dump_default_config())
        return 0

    setup_logging(args.log_file, args.log_level)
    try:
        if not (sys.stdin.isatty() and sys.stdout.isatty()):
            raise StartupError("not a terminal")
        config = load_config(args.config)
        dashboard, renderer = build_dashboard(config, args.expand)
    except StartupError as e:
        logger.error("startup failed: %s", e)
        print(f"pulsedash: {e}", file=sys.stderr)
        return 1

    PulsedashApp(dashboard, renderer).run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
