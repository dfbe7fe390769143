"""Configuration loading for sysmoni.

Settings are layered: built-in defaults → TOML config file → environment
overrides → command-line flags.  Config file search order: explicit
--config path → ~/.config/sysmoni/config.toml → defaults only.
"""

from __future__ import annotations

import os
import re
import sys
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

SORT_KEYS = ("cpu", "mem", "io", "fd")

DEFAULT_CONFIG: dict[str, Any] = {
    "interval": 1.0,
    "sort": "cpu",
    "filter": "",
    "json": False,
    "json_stream": False,
    "gpu": True,
    "battery": True,
    "json_file": "",
    "mouse": True,
    "history_size": 60,
    "thresholds": {
        "cpu_percent": {"warning": 80.0, "critical": 95.0},
        "ram_percent": {"warning": 85.0, "critical": 95.0},
        "swap_percent": {"warning": 50.0, "critical": 80.0},
        "cpu_temp": {"warning": 80.0, "critical": 90.0},
    },
}

_DEFAULT_PATH = Path.home() / ".config" / "sysmoni" / "config.toml"

# Environment variables honoured by the srps installer's wrapper scripts.
ENV_INTERVAL = "SRPS_SYSMONI_INTERVAL"
ENV_GPU = "SRPS_SYSMONI_GPU"
ENV_BATTERY = "SRPS_SYSMONI_BATT"
ENV_JSON_FILE = "SRPS_SYSMON_JSON_FILE"

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d*)?|\.\d+)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


@dataclass
class Config:
    """Runtime options shared by the sampler, dashboard and exporter."""

    interval: float = 1.0
    sort: str = "cpu"
    filter: str = ""
    json: bool = False
    json_stream: bool = False
    enable_gpu: bool = True
    enable_battery: bool = True
    json_file: str = ""
    mouse: bool = True
    history_size: int = 60
    thresholds: dict[str, dict[str, float]] = field(
        default_factory=lambda: {
            k: dict(v) for k, v in DEFAULT_CONFIG["thresholds"].items()
        }
    )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> Config:
        """Build a Config from a merged config dict, coercing loose values."""
        sort = str(data.get("sort", "cpu")).lower()
        if sort not in SORT_KEYS:
            sort = "cpu"
        thresholds = _deep_merge(
            DEFAULT_CONFIG["thresholds"], dict(data.get("thresholds") or {})
        )
        interval = data.get("interval", 1.0)
        if isinstance(interval, str):
            interval = parse_interval(interval, 1.0)
        return cls(
            interval=float(interval),
            sort=sort,
            filter=str(data.get("filter") or ""),
            json=bool(data.get("json", False)),
            json_stream=bool(data.get("json_stream", False)),
            enable_gpu=bool(data.get("gpu", True)),
            enable_battery=bool(data.get("battery", True)),
            json_file=str(data.get("json_file") or ""),
            mouse=bool(data.get("mouse", True)),
            history_size=max(1, int(data.get("history_size", 60))),
            thresholds=thresholds,
        )

    def threshold(self, metric: str, level: str = "warning") -> float:
        return float(self.thresholds.get(metric, {}).get(level, 100.0))


def parse_interval(text: str, default: float) -> float:
    """Parse a duration such as ``500ms``, ``2s``, ``1.5`` or ``1m``.

    A bare number is taken as seconds.  Unparseable text returns *default*.
    """
    m = _DURATION_RE.match(text)
    if not m:
        return default
    return float(m.group(1)) * _DURATION_UNITS[m.group(2) or "s"]


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into base. Nested dicts are merged at the first level only."""
    merged = dict(base)
    for key, value in overlay.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def load_config(path: Path | None = None) -> dict[str, Any]:
    """Load configuration, merging user TOML over defaults.

    Args:
        path: Explicit config file path (from --config). If None, tries the
              default location ~/.config/sysmoni/config.toml.

    Returns:
        Merged configuration dict.

    Raises:
        SystemExit: If an explicit path doesn't exist or can't be parsed.
    """
    if path is not None:
        if not path.is_file():
            print(f"sysmoni: config file not found: {path}", file=sys.stderr)
            raise SystemExit(1)
        try:
            user_config = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as e:
            print(f"sysmoni: invalid TOML in {path}: {e}", file=sys.stderr)
            raise SystemExit(1) from e
        return _deep_merge(DEFAULT_CONFIG, user_config)

    if _DEFAULT_PATH.is_file():
        try:
            user_config = tomllib.loads(_DEFAULT_PATH.read_text(encoding="utf-8"))
            return _deep_merge(DEFAULT_CONFIG, user_config)
        except tomllib.TOMLDecodeError:
            print(
                f"sysmoni: warning: ignoring invalid TOML in {_DEFAULT_PATH}",
                file=sys.stderr,
            )

    return _deep_merge(DEFAULT_CONFIG, {})


def apply_env(
    config: dict[str, Any], environ: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """Overlay the SRPS_* environment variables onto a config dict."""
    env = os.environ if environ is None else environ
    merged = dict(config)
    if v := env.get(ENV_INTERVAL, ""):
        merged["interval"] = parse_interval(v, float(merged.get("interval", 1.0)))
    if env.get(ENV_GPU) == "0":
        merged["gpu"] = False
    if env.get(ENV_BATTERY) == "0":
        merged["battery"] = False
    if v := env.get(ENV_JSON_FILE, ""):
        merged["json_file"] = v
    return merged


def dump_default_config() -> str:
    """Return the default configuration as a TOML string."""
    lines = [
        "# sysmoni configuration",
        "# Place this file at ~/.config/sysmoni/config.toml",
        "",
    ]
    for key, value in DEFAULT_CONFIG.items():
        if isinstance(value, dict):
            continue
        if isinstance(value, bool):
            lines.append(f"{key} = {'true' if value else 'false'}")
        elif isinstance(value, str):
            lines.append(f'{key} = "{value}"')
        else:
            lines.append(f"{key} = {value}")
    lines.append("")

    for metric, levels in DEFAULT_CONFIG["thresholds"].items():
        lines.append(f"[thresholds.{metric}]")
        lines.append(f"warning = {levels['warning']}")
        lines.append(f"critical = {levels['critical']}")
        lines.append("")

    return "\n".join(lines) + "\n"
