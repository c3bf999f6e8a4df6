"""Configuration loading for pulsedash.

Loads settings from TOML config files with sensible defaults.
Search order: explicit --config path → $XDG_CONFIG_HOME/pulsedash/config.toml
→ defaults only. Every field has a default, so nothing is ever undefined.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pulsedash.errors import StartupError

logger = logging.getLogger(__name__)

MIN_REFRESH_MS = 250
MAX_REFRESH_MS = 5000
DEFAULT_REFRESH_MS = 1000

IMAGE_PROTOCOLS = ("auto", "kitty", "iterm2", "sixel", "halfblocks")
CACHE_COLLECTORS = ("tailscale", "kubernetes", "claude", "billing", "personal")

DEFAULT_CONFIG: dict[str, Any] = {
    "general": {"cache_dir": "", "refresh_ms": DEFAULT_REFRESH_MS},
    "collectors": {
        "sysmetrics": {"enabled": True},
        "tailscale": {"enabled": True},
        "kubernetes": {"enabled": True},
        "claude": {"enabled": True},
        "billing": {"enabled": True},
        "personal": {"enabled": True},
        "waifu": {"enabled": False, "endpoint": "", "category": "", "max_images": 20},
    },
    "image": {"protocol": "auto", "waifu_enabled": False, "waifu_category": ""},
    "theme": {"name": "default"},
}


@dataclass(frozen=True)
class ImageConfig:
    enabled: bool = False
    endpoint: str = ""
    category: str = "sfw"
    protocol: str = "auto"
    max_images: int = 20

    @property
    def live(self) -> bool:
        return bool(self.endpoint)


@dataclass(frozen=True)
class DashboardConfig:
    cache_dir: Path
    refresh_ms: int = DEFAULT_REFRESH_MS
    enabled: dict[str, bool] = field(default_factory=dict)
    image: ImageConfig = field(default_factory=ImageConfig)
    theme: str = "default"

    def collector_enabled(self, name: str) -> bool:
        return self.enabled.get(name, True)


def clamp_refresh(ms: int) -> int:
    return max(MIN_REFRESH_MS, min(MAX_REFRESH_MS, int(ms)))


def default_config_path() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / "pulsedash" / "config.toml"


def default_cache_dir() -> Path:
    base = os.environ.get("XDG_CACHE_HOME") or str(Path.home() / ".cache")
    return Path(base) / "pulsedash"


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into base, recursing into nested tables."""
    merged = dict(base)
    for key, value in overlay.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# TOMLDecodeError is a ValueError; wrong value types surface as the rest.
BAD_VALUE_ERRORS = (ValueError, TypeError, KeyError, AttributeError)


def build_config(raw: dict[str, Any]) -> DashboardConfig:
    """Turn a merged TOML document into a DashboardConfig."""
    general = raw["general"]
    collectors = raw["collectors"]
    image = raw["image"]
    waifu = collectors["waifu"]

    cache_dir = Path(general["cache_dir"]).expanduser() if general["cache_dir"] else default_cache_dir()

    protocol = str(image.get("protocol") or "auto").lower()
    if protocol not in IMAGE_PROTOCOLS:
        logger.warning("unknown image protocol %r, using auto", protocol)
        protocol = "auto"

    category = waifu.get("category") or image.get("waifu_category") or "sfw"

    enabled = {
        name: bool(section.get("enabled", True))
        for name, section in collectors.items()
        if isinstance(section, dict) and name != "waifu"
    }

    return DashboardConfig(
        cache_dir=cache_dir,
        refresh_ms=clamp_refresh(general.get("refresh_ms", DEFAULT_REFRESH_MS)),
        enabled=enabled,
        image=ImageConfig(
            enabled=bool(image.get("waifu_enabled")) or bool(waifu.get("enabled")),
            endpoint=str(waifu.get("endpoint") or "").rstrip("/"),
            category=str(category),
            protocol=protocol,
            max_images=max(1, int(waifu.get("max_images", 20))),
        ),
        theme=str(raw["theme"].get("name") or "default"),
    )


def load_config(path: Path | None = None) -> DashboardConfig:
    """Load configuration, merging user TOML over defaults.

    Args:
        path: Explicit config file path (from --config). If None, tries the
              default location.

    Raises:
        StartupError: If an explicit path doesn't exist or can't be parsed.
    """
    if path is not None:
        if not path.is_file():
            raise StartupError(f"config file not found: {path}")
        try:
            user_config = tomllib.loads(path.read_text(encoding="utf-8"))
            return build_config(_deep_merge(DEFAULT_CONFIG, user_config))
        except (OSError, *BAD_VALUE_ERRORS) as e:
            raise StartupError(f"invalid config {path}: {e}") from e

    default_path = default_config_path()
    if default_path.is_file():
        try:
            user_config = tomllib.loads(default_path.read_text(encoding="utf-8"))
            return build_config(_deep_merge(DEFAULT_CONFIG, user_config))
        except (OSError, *BAD_VALUE_ERRORS) as e:
            logger.warning("ignoring invalid config %s: %s", default_path, e)

    return build_config(DEFAULT_CONFIG)


def dump_default_config() -> str:
    """Return the default configuration as a TOML string."""
    lines = [
        "# pulsedash configuration",
        f"# Place this file at {default_config_path()}",
        "",
        "[general]",
        'cache_dir = ""',
        f"refresh_ms = {DEFAULT_REFRESH_MS}",
        "",
    ]

    for name, section in DEFAULT_CONFIG["collectors"].items():
        lines.append(f"[collectors.{name}]")
        for key, value in section.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")

    for table in ("image", "theme"):
        lines.append(f"[{table}]")
        for key, value in DEFAULT_CONFIG[table].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")

    return "\n".join(lines)


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return f'"{value}"'
    return str(value)
