"""Tests for the pulsedash application and CLI."""

import io
import json
import sys

import pytest
from conftest import FakeProbe, make_config
from PIL import Image

from pulsedash.app import PulsedashApp, build_dashboard, create_parser, main, panel_names
from pulsedash.collectors import MESH, CacheFileCollector, CollectorSet, LocalMetricsCollector
from pulsedash.config import ImageConfig
from pulsedash.core import Dashboard
from pulsedash.errors import StartupError
from pulsedash.imaging import Gallery, GalleryEntry, ImagePipeline, ImageSource
from pulsedash.layout import Tab
from pulsedash.models import MeshStatus
from pulsedash.widgets import (
    ImagePanel,
    ProcessPanel,
    format_bytes,
    format_rate,
    format_uptime,
    sparkline,
    sparkline_rows,
)

WIDE = (130, 40)
NARROW = (100, 40)


def test_format_bytes_bytes():
    """Test format_bytes with byte values."""
    assert format_bytes(500) == "500B"


def test_format_bytes_kilobytes():
    """Test format_bytes with kilobyte values."""
    assert format_bytes(2048) == "2.0K"


def test_format_bytes_megabytes():
    """Test format_bytes with megabyte values."""
    assert format_bytes(5242880) == "5.0M"


def test_format_bytes_gigabytes():
    """Test format_bytes with gigabyte values."""
    assert format_bytes(1073741824) == "1.0G"


def test_format_rate_and_uptime():
    assert format_rate(1536) == "1.5K/s"
    assert format_uptime(3 * 3600 + 5 * 60) == "03:05"
    assert format_uptime(2 * 86400 + 60) == "2d 00:01"


def test_sparkline_scales_to_max():
    assert sparkline([0.0, 50.0, 100.0], 3, 100.0) == " ▄█"
    assert sparkline([100.0], 4, 100.0) == "   █"
    assert sparkline([], 5) == ""


def test_sparkline_rows_stack_eighths():
    assert sparkline_rows([100.0, 0.0, 50.0], 3, 2, 100.0) == ["█  ", "█ █"]
    assert sparkline_rows([], 4, 3) == ["", "", ""]


class TestApp:
    """Tests for PulsedashApp driven through the Textual pilot."""

    @pytest.mark.asyncio
    async def test_app_creation(self, dashboard):
        """Test PulsedashApp can be instantiated."""
        app = PulsedashApp(dashboard)
        assert app.title == "pulsedash"
        assert dashboard.spawn is not None

    @pytest.mark.asyncio
    async def test_wide_dashboard_panels(self, dashboard):
        app = PulsedashApp(dashboard)
        async with app.run_test(size=WIDE) as pilot:
            assert pilot.app.query_one("#host").display
            assert pilot.app.query_one("#cluster").display
            assert pilot.app.query_one("#tabs").display
            assert not pilot.app.query_one("#processes").display
            assert not pilot.app.query_one("#image").display
            assert not pilot.app.query_one("#help").display

    @pytest.mark.asyncio
    async def test_narrow_dashboard_panels(self, dashboard):
        app = PulsedashApp(dashboard)
        async with app.run_test(size=NARROW) as pilot:
            assert pilot.app.query_one("#host").display
            assert not pilot.app.query_one("#cluster").display

    @pytest.mark.asyncio
    async def test_number_key_switches_tab(self, dashboard):
        app = PulsedashApp(dashboard)
        async with app.run_test(size=WIDE) as pilot:
            await pilot.press("2")
            assert dashboard.active_tab is Tab.SYSTEM
            assert pilot.app.query_one("#processes").display
            assert not pilot.app.query_one("#host").display

    @pytest.mark.asyncio
    async def test_tab_key_cycles(self, dashboard):
        app = PulsedashApp(dashboard)
        async with app.run_test(size=WIDE) as pilot:
            await pilot.press("tab")
            assert dashboard.active_tab is Tab.SYSTEM
            await pilot.press("shift+tab", "shift+tab")
            assert dashboard.active_tab is Tab.BILLING

    @pytest.mark.asyncio
    async def test_click_tab(self, dashboard):
        app = PulsedashApp(dashboard)
        async with app.run_test(size=WIDE) as pilot:
            await pilot.click("#tabs", offset=(40, 0))
            assert dashboard.active_tab is Tab.SYSTEM

    @pytest.mark.asyncio
    async def test_app_quit_binding(self, dashboard):
        """Test that 'q' quits."""
        app = PulsedashApp(dashboard)
        async with app.run_test(size=WIDE) as pilot:
            await pilot.press("q")
            assert pilot.app._exit

    @pytest.mark.asyncio
    async def test_space_freezes(self, dashboard):
        app = PulsedashApp(dashboard)
        async with app.run_test(size=WIDE) as pilot:
            await pilot.press("space")
            assert dashboard.frozen
            ticks = dashboard.tick_count
            await pilot.pause(1.2)
            assert dashboard.tick_count == ticks

    @pytest.mark.asyncio
    async def test_refresh_keys_restart_timer(self, dashboard):
        app = PulsedashApp(dashboard)
        async with app.run_test(size=WIDE) as pilot:
            await pilot.press("plus")
            assert dashboard.refresh_ms == 750
            assert pilot.app._interval_ms == 750

    @pytest.mark.asyncio
    async def test_help_overlay(self, dashboard):
        app = PulsedashApp(dashboard)
        async with app.run_test(size=WIDE) as pilot:
            await pilot.press("question_mark")
            assert pilot.app.query_one("#help").display
            await pilot.press("escape")
            assert not pilot.app.query_one("#help").display

    @pytest.mark.asyncio
    async def test_filter_title(self, dashboard):
        app = PulsedashApp(dashboard)
        async with app.run_test(size=WIDE) as pilot:
            await pilot.press("2", "slash", "p", "r", "o", "c", "2")
            panel = pilot.app.query_one("#processes", ProcessPanel)
            assert "/proc2_ 1/2" in panel.border_title
            await pilot.press("enter")
            assert not dashboard.filter_mode
            assert "/proc2 1/2" in panel.border_title

    @pytest.mark.asyncio
    async def test_failed_collector_marks_panel(self, tmp_path, clock):
        probe = FakeProbe()
        collectors = CollectorSet(
            [LocalMetricsCollector(probe), CacheFileCollector(MESH, tmp_path / "tailscale.json", MeshStatus)],
            clock=clock,
        )
        dashboard = Dashboard(make_config(tmp_path), collectors, probe, clock=clock)
        app = PulsedashApp(dashboard)
        async with app.run_test(size=WIDE) as pilot:
            panel = pilot.app.query_one("#mesh")
            assert panel.border_title == "Tailscale [error]"
            assert panel.has_class("-error")
            assert pilot.app.query_one("#host").border_title == "Host"

    @pytest.mark.asyncio
    async def test_stale_collector_keeps_data(self, tmp_path, clock):
        path = tmp_path / "tailscale.json"
        path.write_text(json.dumps({"peers": [{"hostname": "a", "online": True}]}), encoding="utf-8")
        probe = FakeProbe()
        collectors = CollectorSet(
            [LocalMetricsCollector(probe), CacheFileCollector(MESH, path, MeshStatus)], clock=clock
        )
        dashboard = Dashboard(make_config(tmp_path), collectors, probe, clock=clock)
        app = PulsedashApp(dashboard)
        async with app.run_test(size=WIDE) as pilot:
            path.unlink()
            clock.advance(10)
            dashboard.tick()
            pilot.app.refresh_view()
            panel = pilot.app.query_one("#mesh")
            assert "[stale " in panel.border_title
            assert panel.has_class("-stale")
            assert dashboard.snapshot(MESH).data.peers[0].hostname == "a"

    @pytest.mark.asyncio
    async def test_image_panel_shown_with_gallery(self, tmp_path, probe, clock):
        entry = GalleryEntry(Image.new("RGB", (20, 20), (0, 128, 255)), "sky", ImageSource.BUNDLED)
        pipeline = ImagePipeline(gallery=Gallery([entry]))
        collectors = CollectorSet([LocalMetricsCollector(probe)], clock=clock)
        config = make_config(tmp_path, image=ImageConfig(enabled=True))
        dashboard = Dashboard(config, collectors, probe, pipeline, clock=clock)
        app = PulsedashApp(dashboard)
        async with app.run_test(size=WIDE) as pilot:
            panel = pilot.app.query_one("#image", ImagePanel)
            assert panel.display
            assert not pilot.app.query_one("#cluster").display
            await pilot.press("i")
            assert panel.border_subtitle == "sky  1/1"

    @pytest.mark.asyncio
    async def test_expanded_start(self, tmp_path, probe, clock):
        collectors = CollectorSet([LocalMetricsCollector(probe)], clock=clock)
        dashboard = Dashboard(make_config(tmp_path), collectors, probe, clock=clock, expanded="processes")
        app = PulsedashApp(dashboard)
        async with app.run_test(size=NARROW) as pilot:
            assert pilot.app.query_one("#processes").display
            assert not pilot.app.query_one("#tabs").display
            await pilot.press("escape")
            assert pilot.app.query_one("#tabs").display


class TTYStream(io.StringIO):
    def isatty(self):
        return True


class TestCli:
    def test_parser_defaults(self):
        args = create_parser().parse_args([])
        assert args.config is None
        assert args.expand is None
        assert not args.print_config

    def test_panel_names(self):
        names = panel_names()
        assert {"image", "processes", "host", "mesh", "personal"} <= names

    def test_print_config(self, capsys):
        assert main(["--print-config"]) == 0
        assert "[general]" in capsys.readouterr().out

    def test_not_a_terminal(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, "stdin", io.StringIO())
        assert main([]) == 1
        assert "not a terminal" in capsys.readouterr().err

    def test_missing_config_file(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr(sys, "stdin", TTYStream())
        monkeypatch.setattr(sys, "stdout", TTYStream())
        assert main(["--config", str(tmp_path / "missing.toml")]) == 1
        assert "config file not found" in capsys.readouterr().err

    def test_wrongly_typed_config_file(self, tmp_path, monkeypatch, capsys):
        path = tmp_path / "typed.toml"
        path.write_text('[general]\nrefresh_ms = "fast"\n', encoding="utf-8")
        monkeypatch.setattr(sys, "stdin", TTYStream())
        monkeypatch.setattr(sys, "stdout", TTYStream())
        assert main(["--config", str(path)]) == 1
        assert "invalid config" in capsys.readouterr().err

    def test_unknown_expand_panel(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        monkeypatch.setattr(sys, "stdin", TTYStream())
        monkeypatch.setattr(sys, "stdout", TTYStream())
        assert main(["--expand", "bogus"]) == 1
        assert "unknown panel" in capsys.readouterr().err

    def test_build_dashboard(self, tmp_path):
        dashboard, renderer = build_dashboard(make_config(tmp_path, enabled={"billing": False}))
        names = [c.name for c in dashboard.collectors.collectors]
        assert names == ["sysmetrics", "mesh", "cluster", "usage", "personal"]
        assert not dashboard.pipeline.live
        assert renderer.picker.chosen is None

    def test_build_dashboard_rejects_unknown_panel(self, tmp_path):
        with pytest.raises(StartupError):
            build_dashboard(make_config(tmp_path), expand="nope")
