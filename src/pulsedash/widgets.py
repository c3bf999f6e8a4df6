"""Panel widgets. Each one renders a slice of ``Dashboard`` state into a rect."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

from rich.console import RenderableType
from rich.text import Text
from textual import events
from textual.widgets import Static

from pulsedash import collectors as names
from pulsedash.core import CPU, CPU_CORES, LOAD, MEM, NET, SWAP, TABS, TEMP, WHEEL_STEP, Dashboard
from pulsedash.imaging import FetchStatus, ImageRenderer
from pulsedash.layout import Rect
from pulsedash.models import (
    BillingReport,
    ClusterStatus,
    MeshStatus,
    PersonalUsageReport,
    UsageReport,
)
from pulsedash.proctree import SortKey

if TYPE_CHECKING:
    from pulsedash.app import PulsedashApp

SPARK = " ▁▂▃▄▅▆▇█"
BAR_FILL = "█"
BAR_EMPTY = "░"


# ── Formatting helpers ─────────────────────────────────────────────────────


def format_bytes(size: int | float) -> str:
    """Format bytes as human-readable string."""
    value = float(size)
    for unit in ("B", "K", "M", "G", "T"):
        if abs(value) < 1024:
            return f"{value:.0f}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1024
    return f"{value:.1f}P"


def format_rate(bps: float) -> str:
    return f"{format_bytes(bps)}/s"


def format_uptime(seconds: float) -> str:
    days = int(seconds // 86400)
    hours = int((seconds % 86400) // 3600)
    minutes = int((seconds % 3600) // 60)
    if days > 0:
        return f"{days}d {hours:02d}:{minutes:02d}"
    return f"{hours:02d}:{minutes:02d}"


def sparkline(values: list[float], width: int, max_value: float | None = None) -> str:
    """Render the newest ``width`` values as block characters."""
    values = values[-width:] if width > 0 else []
    if not values:
        return ""
    top = max_value if max_value else max(max(values), 1e-9)
    chars = []
    for v in values:
        idx = int(min(max(v, 0.0) / top, 1.0) * (len(SPARK) - 1))
        chars.append(SPARK[idx])
    return "".join(chars).rjust(width)


def sparkline_rows(values: list[float], width: int, height: int, max_value: float | None = None) -> list[str]:
    """A sparkline ``height`` rows tall, top row first, eighths per cell."""
    values = values[-width:] if width > 0 else []
    height = max(height, 1)
    if not values:
        return [""] * height
    top = max_value if max_value else max(max(values), 1e-9)
    steps = len(SPARK) - 1
    levels = [int(min(max(v, 0.0) / top, 1.0) * steps * height) for v in values]
    rows = []
    for row in range(height - 1, -1, -1):
        floor = row * steps
        rows.append("".join(SPARK[min(max(level - floor, 0), steps)] for level in levels).rjust(width))
    return rows


def severity(percent: float) -> str:
    if percent >= 90:
        return "red"
    if percent >= 70:
        return "yellow"
    return "green"


def bar(percent: float, width: int) -> Text:
    width = max(width, 1)
    filled = int(width * min(max(percent, 0.0), 100.0) / 100.0)
    text = Text(BAR_FILL * filled, style=severity(percent))
    text.append(BAR_EMPTY * (width - filled), style="dim")
    return text


def lines_to_text(lines: list[Text | str], height: int) -> Text:
    return Text("\n").join(Text(line) if isinstance(line, str) else line for line in lines[:height])


# ── Base panel ─────────────────────────────────────────────────────────────


class Panel(Static):
    """A bordered, absolutely positioned panel driven by ``sync``."""

    DEFAULT_CSS = """
    Panel {
        position: absolute;
        border: round $primary;
        border-title-color: $text;
        padding: 0 1;
        overflow: hidden;
    }
    Panel.-stale {
        border: round $warning;
    }
    Panel.-error {
        border: round $error;
    }
    """

    TITLE = ""
    SOURCE: str | None = None  # collector whose health decorates the border

    def sync(self, dashboard: Dashboard, rect: Rect) -> None:
        """Place the panel at ``rect`` and redraw it from ``dashboard``."""
        self.display = True
        self.styles.offset = (rect.x, rect.y)
        self.styles.width = rect.width
        self.styles.height = rect.height
        self.border_title = self.title_for(dashboard)
        inner_w = max(rect.width - 4, 1)
        inner_h = max(rect.height - 2, 1)
        self.update(self.render_body(dashboard, inner_w, inner_h))

    def title_for(self, dashboard: Dashboard) -> str:
        title = self.TITLE
        self.remove_class("-stale", "-error")
        if self.SOURCE is None:
            return title
        snap = dashboard.snapshot(self.SOURCE)
        if snap.healthy:
            return title
        if snap.has_data and snap.updated_at is not None:
            self.add_class("-stale")
            return f"{title} [stale {time.strftime('%H:%M:%S', time.localtime(snap.updated_at))}]"
        self.add_class("-error")
        return f"{title} [error]"

    def render_body(self, dashboard: Dashboard, width: int, height: int) -> RenderableType:
        return ""

    def no_data(self, dashboard: Dashboard) -> Text:
        assert self.SOURCE is not None
        snap = dashboard.snapshot(self.SOURCE)
        text = Text("no data", style="dim")
        if snap.last_error:
            text.append(f"\n{snap.last_error}", style="red")
        return text


# ── System panels ──────────────────────────────────────────────────────────


class HostPanel(Panel):
    TITLE = "Host"
    SOURCE = names.SYSMETRICS

    def render_body(self, dashboard: Dashboard, width: int, height: int) -> RenderableType:
        s = dashboard.system
        if s is None:
            return self.no_data(dashboard)
        lines: list[Text | str] = [
            Text(s.hostname, style="bold"),
            f"{s.os_name} {s.arch}",
            f"{s.cpu_brand} @ {s.cpu_freq_mhz:.0f}MHz",
            f"up {format_uptime(s.uptime_seconds)}  load {s.load_avg[0]:.2f} {s.load_avg[1]:.2f} {s.load_avg[2]:.2f}",
            f"{len(s.processes)} processes  {len(s.cpu_percent_per_core)} cores",
        ]
        if s.battery is not None:
            state = "charging" if s.battery.charging else "battery"
            lines.append(f"{state} {s.battery.percent:.0f}%")
        return lines_to_text(lines, height)


class SparkPanel(Panel):
    """Title shows the latest value; body is the history as a sparkline."""

    SOURCE = names.SYSMETRICS
    SERIES = CPU
    LANE = 0
    MAX_VALUE: float | None = 100.0
    STYLE = "cyan"

    def label(self, value: float) -> str:
        return f"{self.TITLE} {value:.1f}%"

    def title_for(self, dashboard: Dashboard) -> str:
        title = super().title_for(dashboard)
        values = dashboard.history.lane(self.SERIES, self.LANE)
        if values and title == self.TITLE:
            return self.label(values[-1])
        return title

    def render_body(self, dashboard: Dashboard, width: int, height: int) -> RenderableType:
        values = dashboard.history.lane(self.SERIES, self.LANE)
        rows = sparkline_rows(values, width, height, self.MAX_VALUE)
        return lines_to_text([Text(row, style=self.STYLE) for row in rows], height)


class CpuSpark(SparkPanel):
    TITLE = "CPU"


class MemSpark(SparkPanel):
    TITLE = "Mem"
    SERIES = MEM
    STYLE = "magenta"


class SwapSpark(SparkPanel):
    TITLE = "Swap"
    SERIES = SWAP
    STYLE = "yellow"


class LoadSpark(SparkPanel):
    TITLE = "Load"
    SERIES = LOAD
    MAX_VALUE = None
    STYLE = "blue"

    def label(self, value: float) -> str:
        return f"Load {value:.2f}"


class TempSpark(SparkPanel):
    TITLE = "Temp"
    SERIES = TEMP
    STYLE = "red"

    def label(self, value: float) -> str:
        return f"Temp {value:.0f}°C"


class NetRxSpark(SparkPanel):
    TITLE = "RX"
    SERIES = NET
    LANE = 0
    MAX_VALUE = None
    STYLE = "green"

    def label(self, value: float) -> str:
        return f"{self.TITLE} {format_rate(value)}"


class NetTxSpark(NetRxSpark):
    TITLE = "TX"
    LANE = 1
    STYLE = "blue"


class CpuBarsPanel(Panel):
    """Total plus per-core usage bars."""

    TITLE = "CPU"
    SOURCE = names.SYSMETRICS

    def render_body(self, dashboard: Dashboard, width: int, height: int) -> RenderableType:
        s = dashboard.system
        if s is None:
            return self.no_data(dashboard)
        bar_width = max(width - 14, 1)
        lines: list[Text | str] = []
        total = Text("total  ")
        total.append(bar(s.cpu_total, bar_width))
        total.append(f" {s.cpu_total:5.1f}%")
        lines.append(total)
        for i, pct in enumerate(s.cpu_percent_per_core):
            line = Text(f"cpu{i:<3}")
            line.append(bar(pct, bar_width))
            line.append(f" {pct:5.1f}%")
            lines.append(line)
        return lines_to_text(lines, height)


class CpuCoresPanel(Panel):
    """Per-core sparklines, two cores to a row."""

    TITLE = "Cores"
    SOURCE = names.SYSMETRICS

    def render_body(self, dashboard: Dashboard, width: int, height: int) -> RenderableType:
        series = dashboard.history.series(CPU_CORES)
        if series.lane_count == 0:
            return self.no_data(dashboard)
        cell = max(width // 2 - 1, 8)
        spark_w = max(cell - 11, 1)
        lines: list[Text | str] = []
        for first in range(0, series.lane_count, 2):
            line = Text()
            for core in range(first, min(first + 2, series.lane_count)):
                values = series.lane(core)
                latest = values[-1] if values else 0.0
                line.append(f"{core:>2} ")
                line.append(sparkline(values, spark_w, 100.0), style=severity(latest))
                line.append(f" {latest:5.1f}% ")
            lines.append(line)
        return lines_to_text(lines, height)


class MemoryPanel(Panel):
    TITLE = "Memory"
    SOURCE = names.SYSMETRICS

    def render_body(self, dashboard: Dashboard, width: int, height: int) -> RenderableType:
        s = dashboard.system
        if s is None:
            return self.no_data(dashboard)
        bar_width = max(width - 24, 1)
        mem = Text("mem  ")
        mem.append(bar(s.memory_percent, bar_width))
        mem.append(f" {format_bytes(s.memory_used)}/{format_bytes(s.memory_total)}")
        swap = Text("swap ")
        swap.append(bar(s.swap_percent, bar_width))
        swap.append(f" {format_bytes(s.swap_used)}/{format_bytes(s.swap_total)}")
        avail = Text(f"available {format_bytes(s.memory_available)}", style="dim")
        return lines_to_text([mem, swap, avail], height)


class DisksPanel(Panel):
    TITLE = "Disks"
    SOURCE = names.SYSMETRICS

    def render_body(self, dashboard: Dashboard, width: int, height: int) -> RenderableType:
        s = dashboard.system
        if s is None:
            return self.no_data(dashboard)
        if not s.disks:
            return Text("no disks", style="dim")
        bar_width = max(width - 30, 1)
        lines: list[Text | str] = []
        for disk in s.disks:
            line = Text(f"{disk.mount[:12]:<12} ")
            line.append(bar(disk.percent, bar_width))
            line.append(f" {format_bytes(disk.used)}/{format_bytes(disk.total)}")
            lines.append(line)
        return lines_to_text(lines, height)


class TempsPanel(Panel):
    TITLE = "Temperatures"
    SOURCE = names.SYSMETRICS

    def render_body(self, dashboard: Dashboard, width: int, height: int) -> RenderableType:
        s = dashboard.system
        if s is None:
            return self.no_data(dashboard)
        if not s.temperatures:
            return Text("no sensors", style="dim")
        label_w = max(width - 8, 1)
        lines: list[Text | str] = []
        for t in sorted(s.temperatures, key=lambda t: -t.current):
            hot = t.high is not None and t.current >= t.high
            lines.append(Text(f"{t.label[:label_w]:<{label_w}} {t.current:5.1f}°", style="red" if hot else ""))
        return lines_to_text(lines, height)


class NetworkPanel(Panel):
    TITLE = "Network"
    SOURCE = names.SYSMETRICS

    def render_body(self, dashboard: Dashboard, width: int, height: int) -> RenderableType:
        s = dashboard.system
        if s is None:
            return self.no_data(dashboard)
        lines: list[Text | str] = [Text(f"{'if':<12} {'kind':<4} {'rx':>10} {'tx':>10}", style="bold")]
        for n in s.networks:
            lines.append(
                f"{n.name[:12]:<12} {n.kind.value:<4} {format_rate(n.rx_rate):>10} {format_rate(n.tx_rate):>10}"
            )
        return lines_to_text(lines, height)


class ProcessPanel(Panel):
    """The process table. Keeps its scroll offset between frames."""

    TITLE = "Processes"
    SOURCE = names.SYSMETRICS

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._top = 0

    def title_for(self, dashboard: Dashboard) -> str:
        title = super().title_for(dashboard)
        model = dashboard.processes
        arrow = "▲" if model.reverse else "▼"
        parts = [title, f"sort {model.sort_key.value}{arrow}"]
        if model.tree_mode:
            parts.append("tree")
        if model.filter_text or dashboard.filter_mode:
            cursor = "_" if dashboard.filter_mode else ""
            parts.append(f"/{model.filter_text}{cursor} {len(model.rows)}/{model.total_count}")
        return "  ".join(parts)

    def render_body(self, dashboard: Dashboard, width: int, height: int) -> RenderableType:
        model = dashboard.processes
        rows = model.rows
        counts: dict[str, int] = {}
        for row in rows:
            counts[row.record.status] = counts.get(row.record.status, 0) + 1
        summary = Text(
            f"{counts.get('R', 0)} running  {counts.get('S', 0) + counts.get('I', 0)} sleeping  "
            f"{counts.get('Z', 0)} zombie",
            style="dim",
        )
        header = Text(f"{'PID':>7} {'USER':<9} S {'CPU%':>5} {'MEM':>7} {'THR':>4} ", style="bold")
        header.append("COMMAND" if model.show_command else "NAME")
        marker = {SortKey.CPU: "CPU%", SortKey.MEM: "MEM", SortKey.PID: "PID", SortKey.NAME: "NAME"}
        header.highlight_words([marker[model.sort_key]], style="bold reverse")

        visible = max(height - 2, 1)
        if model.selected < self._top:
            self._top = model.selected
        elif model.selected >= self._top + visible:
            self._top = model.selected - visible + 1
        self._top = max(0, min(self._top, max(len(rows) - visible, 0)))

        lines: list[Text | str] = [summary, header]
        for index in range(self._top, min(self._top + visible, len(rows))):
            row = rows[index]
            r = row.record
            label = r.command_line if model.show_command else r.name
            if model.tree_mode and row.depth:
                label = "  " * (row.depth - 1) + "└ " + label
            line = Text(
                f"{r.pid:>7} {r.username[:9]:<9} {r.status} {r.cpu_percent:5.1f} "
                f"{format_bytes(r.memory_rss):>7} {r.threads:>4} {label}",
                no_wrap=True,
                overflow="ellipsis",
            )
            line.truncate(width, overflow="ellipsis")
            if index == model.selected:
                line.stylize("reverse")
            lines.append(line)
        if not rows:
            lines.append(Text("no matching processes" if model.filter_text else "no data", style="dim"))
        return lines_to_text(lines, height)

    def _after_scroll(self) -> None:
        app: PulsedashApp = self.app  # type: ignore[assignment]
        app.refresh_view()

    def on_mouse_scroll_down(self, event: events.MouseScrollDown) -> None:
        self.app.dashboard.scroll(WHEEL_STEP)  # type: ignore[attr-defined]
        event.stop()
        self._after_scroll()

    def on_mouse_scroll_up(self, event: events.MouseScrollUp) -> None:
        self.app.dashboard.scroll(-WHEEL_STEP)  # type: ignore[attr-defined]
        event.stop()
        self._after_scroll()


# ── Cache-backed panels ────────────────────────────────────────────────────


class MeshPanel(Panel):
    TITLE = "Tailscale"
    SOURCE = names.MESH

    def render_body(self, dashboard: Dashboard, width: int, height: int) -> RenderableType:
        mesh: MeshStatus | None = dashboard.snapshot(names.MESH).data
        if mesh is None:
            return self.no_data(dashboard)
        online = mesh.online_peers_sorted()
        lines: list[Text | str] = [
            Text(f"{len(online)}/{len(mesh.peers)} online  {mesh.tailnet_name}", style="bold")
        ]
        for peer in online:
            ip = peer.tailscale_ips[0] if peer.tailscale_ips else ""
            line = Text("● ", style="green")
            line.append(f"{peer.hostname[:20]:<20} {ip:<16} {peer.os}")
            if peer.exit_node:
                line.append(" exit", style="yellow")
            lines.append(line)
        return lines_to_text(lines, height)


class ClusterPanel(Panel):
    TITLE = "Kubernetes"
    SOURCE = names.CLUSTER

    def render_body(self, dashboard: Dashboard, width: int, height: int) -> RenderableType:
        status: ClusterStatus | None = dashboard.snapshot(names.CLUSTER).data
        if status is None:
            return self.no_data(dashboard)
        if not status.clusters:
            return Text("no clusters", style="dim")
        lines: list[Text | str] = []
        for cluster in status.clusters:
            head = Text("● " if cluster.connected else "○ ", style="green" if cluster.connected else "red")
            head.append(cluster.context, style="bold")
            lines.append(head)
            if cluster.error:
                lines.append(Text(f"  {cluster.error}", style="red"))
                continue
            ready = sum(1 for n in cluster.nodes if n.ready)
            lines.append(f"  nodes {ready}/{len(cluster.nodes)} ready")
            lines.append(
                f"  pods {cluster.running_pods} running  {cluster.pending_pods} pending  "
                f"{cluster.failed_pods} failed"
            )
        return lines_to_text(lines, height)


class BillingPanel(Panel):
    TITLE = "Billing"
    SOURCE = names.BILLING

    def render_body(self, dashboard: Dashboard, width: int, height: int) -> RenderableType:
        report: BillingReport | None = dashboard.snapshot(names.BILLING).data
        if report is None:
            return self.no_data(dashboard)
        lines: list[Text | str] = [Text(f"${report.total_monthly_usd:,.2f} / month", style="bold")]
        if report.budget_usd:
            line = Text("budget ")
            line.append(bar(report.budget_percent, max(width - 16, 1)))
            line.append(f" {report.budget_percent:.0f}%")
            lines.append(line)
        for provider in report.providers:
            if provider.error:
                lines.append(Text(f"{provider.name}: {provider.error}", style="red"))
                continue
            lines.append(f"{provider.name:<14} mtd ${provider.month_to_date:,.2f}")
            for resource in provider.resources:
                lines.append(
                    Text(f"  {resource.name[:18]:<18} {resource.resource_type:<8} ${resource.monthly_cost:,.2f}", style="dim")
                )
        return lines_to_text(lines, height)


class UsagePanel(Panel):
    TITLE = "API Usage"
    SOURCE = names.USAGE

    def render_body(self, dashboard: Dashboard, width: int, height: int) -> RenderableType:
        report: UsageReport | None = dashboard.snapshot(names.USAGE).data
        if report is None:
            return self.no_data(dashboard)
        lines: list[Text | str] = [Text(f"${report.total_cost_usd:,.2f} this month", style="bold")]
        for account in report.accounts:
            if account.error:
                lines.append(Text(f"{account.name}: {account.error}", style="red"))
                continue
            month = account.current_month
            lines.append(f"{account.name:<16} ${month.cost_usd:,.2f}")
            lines.append(
                Text(
                    f"  in {month.input_tokens:,} out {month.output_tokens:,}  "
                    f"${account.daily_burn_rate:,.2f}/day → ${account.projected_monthly:,.2f}",
                    style="dim",
                )
            )
            for model in account.models:
                lines.append(Text(f"  {model.model[:24]:<24} ${model.cost_usd:,.2f}", style="dim"))
        return lines_to_text(lines, height)


class PersonalPanel(Panel):
    TITLE = "Personal plan"
    SOURCE = names.PERSONAL

    def render_body(self, dashboard: Dashboard, width: int, height: int) -> RenderableType:
        report: PersonalUsageReport | None = dashboard.snapshot(names.PERSONAL).data
        if report is None:
            return self.no_data(dashboard)
        pct = 100.0 * report.messages_in_window / report.message_limit if report.message_limit else 0.0
        line = Text(f"{report.messages_in_window}/{report.message_limit} ")
        line.append(bar(pct, max(width - 12, 1)))
        lines: list[Text | str] = [line, Text(f"rolling {report.window_hours}h window", style="dim")]
        if report.next_slot_secs:
            minutes, seconds = divmod(report.next_slot_secs, 60)
            lines.append(Text(f"next slot in {minutes}m{seconds:02d}s", style="yellow"))
        return lines_to_text(lines, height)


# ── Image ──────────────────────────────────────────────────────────────────


class ImagePanel(Panel):
    """
    The gallery's current image.

    Half blocks render as styled text. Graphics protocols leave the body
    blank and write their escape sequence over it after the next refresh.
    """

    TITLE = "Image"

    def __init__(self, renderer: ImageRenderer, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.renderer = renderer
        self._emitted: tuple[int, int, int] | None = None

    def sync(self, dashboard: Dashboard, rect: Rect) -> None:
        super().sync(dashboard, rect)
        pipeline = dashboard.pipeline
        subtitle = ""
        if pipeline.status is FetchStatus.PENDING:
            subtitle = "fetching…"
        elif pipeline.show_info and pipeline.gallery.current is not None:
            entry = pipeline.gallery.current
            subtitle = f"{entry.title}  {pipeline.gallery.cursor + 1}/{len(pipeline.gallery)}"
        self.border_subtitle = subtitle

    def render_body(self, dashboard: Dashboard, width: int, height: int) -> RenderableType:
        entry = dashboard.pipeline.gallery.current
        if entry is None:
            self._emitted = None
            hint = "press f to fetch" if dashboard.pipeline.live else "no images"
            if dashboard.pipeline.last_error:
                return Text(f"{hint}\n{dashboard.pipeline.last_error}", style="dim")
            return Text(hint, style="dim")

        rendered = self.renderer.render(entry, width, height)
        if isinstance(rendered, Text):
            return rendered

        key = (id(rendered), width, height)
        if key != self._emitted:
            self._emitted = key
            self.call_after_refresh(self._emit, rendered)
        return ""

    def _emit(self, payload: str) -> None:
        driver = self.app._driver
        if driver is None:
            return
        region = self.content_region
        driver.write(f"\x1b7\x1b[{region.y + 1};{region.x + 1}H{payload}\x1b8")
        driver.flush()


# ── Chrome ─────────────────────────────────────────────────────────────────


class TabBar(Static):
    DEFAULT_CSS = """
    TabBar {
        position: absolute;
        height: 1;
        background: $panel;
    }
    """

    def sync(self, dashboard: Dashboard, rect: Rect) -> None:
        self.display = True
        self.styles.offset = (rect.x, rect.y)
        self.styles.width = rect.width
        self.styles.height = 1
        slot = max(1, rect.width // len(TABS))
        text = Text(no_wrap=True, overflow="crop")
        for i, tab in enumerate(TABS):
            label = f"{i + 1} {tab.title}".center(slot)
            style = "bold reverse" if tab is dashboard.active_tab else "dim"
            text.append(label, style=style)
        self.update(text)

    def on_click(self, event: events.Click) -> None:
        app: PulsedashApp = self.app  # type: ignore[assignment]
        if app.dashboard.click_tab(event.x, self.size.width):
            app.refresh_view()


class StatusBar(Static):
    DEFAULT_CSS = """
    StatusBar {
        position: absolute;
        height: 1;
        background: $panel;
    }
    """

    def sync(self, dashboard: Dashboard, rect: Rect) -> None:
        self.display = True
        self.styles.offset = (rect.x, rect.y)
        self.styles.width = rect.width
        self.styles.height = 1
        text = Text(no_wrap=True, overflow="crop")
        if dashboard.frozen:
            text.append(" FROZEN ", style="bold black on yellow")
        text.append(f" {dashboard.refresh_ms}ms ", style="bold")
        if dashboard.filter_mode:
            text.append(f" filter: {dashboard.processes.filter_text}_ ", style="cyan")
        if dashboard.status is not None:
            text.append(f" {dashboard.status.text} ", style="red" if dashboard.status.error else "green")
        hints = " ?:help  tab:next  space:freeze  q:quit "
        pad = rect.width - text.cell_len - len(hints)
        if pad > 0:
            text.append(" " * pad)
            text.append(hints, style="dim")
        self.update(text)


HELP_PAGES: list[tuple[str, list[tuple[str, str]]]] = [
    (
        "General",
        [
            ("1-4", "jump to tab"),
            ("tab / →", "next tab"),
            ("shift+tab / ←", "previous tab"),
            ("space", "freeze / resume"),
            ("+ / -", "faster / slower refresh"),
            ("esc", "dismiss message"),
            ("?", "toggle this help"),
            ("q", "quit"),
        ],
    ),
    (
        "Processes",
        [
            ("j / k, ↓ / ↑", "move selection"),
            ("pgdn / pgup", "move 10 rows"),
            ("g / G", "first / last"),
            ("/", "filter (enter keeps, esc clears)"),
            ("c m p n", "sort by cpu, mem, pid, name"),
            ("r", "reverse sort"),
            ("t", "tree view"),
            ("e", "full command"),
            ("d d", "terminate selected"),
            ("D", "kill selected"),
        ],
    ),
    (
        "Image",
        [
            ("n / p", "next / previous image"),
            ("r", "random image"),
            ("f", "fetch a new image"),
            ("i", "image info"),
            ("esc", "leave expanded view"),
        ],
    ),
    (
        "Mouse",
        [
            ("wheel", "scroll process table"),
            ("click tab", "switch tab"),
        ],
    ),
]


class HelpPanel(Panel):
    DEFAULT_CSS = """
    HelpPanel {
        layer: overlay;
        background: $surface;
        border: round $accent;
    }
    """

    TITLE = "Help"

    def render_body(self, dashboard: Dashboard, width: int, height: int) -> RenderableType:
        text = Text()
        for i, (name, _) in enumerate(HELP_PAGES):
            text.append(f" {name} ", style="bold reverse" if i == dashboard.help_page else "dim")
        lines: list[Text | str] = [text, ""]
        _, entries = HELP_PAGES[dashboard.help_page]
        for keys, description in entries:
            line = Text(f"{keys:>16}  ", style="bold cyan")
            line.append(description)
            lines.append(line)
        return lines_to_text(lines, height)


PANEL_TYPES: dict[str, type[Panel]] = {
    "host": HostPanel,
    "cpu_spark": CpuSpark,
    "mem_spark": MemSpark,
    "swap_spark": SwapSpark,
    "load_spark": LoadSpark,
    "temp_spark": TempSpark,
    "net_rx": NetRxSpark,
    "net_tx": NetTxSpark,
    "cpu_bars": CpuBarsPanel,
    "cpu_cores": CpuCoresPanel,
    "memory": MemoryPanel,
    "disks": DisksPanel,
    "temps": TempsPanel,
    "network": NetworkPanel,
    "processes": ProcessPanel,
    "mesh": MeshPanel,
    "cluster": ClusterPanel,
    "billing": BillingPanel,
    "usage": UsagePanel,
    "personal": PersonalPanel,
}
