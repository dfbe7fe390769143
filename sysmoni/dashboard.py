"""Interactive terminal dashboard: sysmoni's live view of a tuned host.

Shows CPU (per-core), memory, disk/network I/O, GPU, battery, thermal,
inotify and cgroup pressure together with the process table, so operators
can check that priority/OOM tuning applied elsewhere is doing its job.
The whole frame is redrawn with curses on every animation tick.

Usage:
    sysmoni
    sysmoni --interval 500ms --sort mem --filter python
    sysmoni --json            # one JSON sample, then exit
    sysmoni --json-stream     # NDJSON until interrupted
"""

from __future__ import annotations

import argparse
import curses
import logging
import os
import queue
import sys
import threading
import time
from collections import deque
from collections.abc import Callable
from pathlib import Path
from typing import Any

import psutil

from sysmoni.config import (
    SORT_KEYS,
    Config,
    _deep_merge,
    apply_env,
    dump_default_config,
    load_config,
    parse_interval,
)
from sysmoni.export import JsonSink, run_export
from sysmoni.model import Process
from sysmoni.sampler import STREAM_CLOSED, Sampler
from sysmoni.state import (
    DashboardState,
    SortKey,
    View,
    blink_on,
    exceeded_thresholds,
)

logger = logging.getLogger(__name__)

# ── Constants ──────────────────────────────────────────────────────────────

SPARK = " ▁▂▃▄▅▆▇█"
BAR_FILL = "█"
BAR_EMPTY = "░"

FRAME_SECONDS = 0.2
MEDIUM_WIDTH = 100  # extra process columns
WIDE_WIDTH = 140  # secondary panel column
SIDE_W = 46
THROTTLED_MIN_H = 4
MIN_W, MIN_H = 60, 16

# Curses colour-pair IDs
C_NORMAL = 1
C_WARNING = 2
C_CRITICAL = 3
C_TITLE = 4
C_DIM = 5
C_BLUE = 6
C_GRADIENT_BASE = 10

# xterm-256 green → yellow → red
GRADIENT = (46, 82, 118, 154, 190, 226, 220, 214, 208, 202, 196)

_gradient_enabled = False


# ── Colour helpers ─────────────────────────────────────────────────────────


def _init_colors() -> None:
    global _gradient_enabled
    curses.start_color()
    curses.use_default_colors()
    curses.init_pair(C_NORMAL, curses.COLOR_GREEN, -1)
    curses.init_pair(C_WARNING, curses.COLOR_YELLOW, -1)
    curses.init_pair(C_CRITICAL, curses.COLOR_RED, -1)
    curses.init_pair(C_TITLE, curses.COLOR_CYAN, -1)
    curses.init_pair(C_DIM, curses.COLOR_WHITE, -1)
    curses.init_pair(C_BLUE, curses.COLOR_BLUE, -1)
    _gradient_enabled = False
    if curses.COLORS >= 256 and curses.COLOR_PAIRS > C_GRADIENT_BASE + len(GRADIENT):
        try:
            for i, color in enumerate(GRADIENT):
                curses.init_pair(C_GRADIENT_BASE + i, color, -1)
            _gradient_enabled = True
        except curses.error:
            _gradient_enabled = False


def _severity_color(value: float, warn: float, crit: float) -> int:
    if value >= crit:
        return C_CRITICAL
    if value >= warn:
        return C_WARNING
    return C_NORMAL


def gradient_step(pct: float, steps: int = len(GRADIENT)) -> int:
    """Index into a *steps*-long nominal → critical ramp for *pct* (0-100)."""
    pct = min(100.0, max(0.0, pct))
    return min(steps - 1, int(pct / 100.0 * (steps - 1) + 0.5))


def _pct_color(pct: float) -> int:
    if _gradient_enabled:
        return C_GRADIENT_BASE + gradient_step(pct)
    return _severity_color(pct, 60.0, 85.0)


# ── Formatting helpers ─────────────────────────────────────────────────────


def fmt_bytes(n: int | float) -> str:
    """Human-readable byte count (binary prefixes)."""
    v = float(n)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if abs(v) < 1024:
            return f"{v:.1f} {unit}"
        v /= 1024
    return f"{v:.1f} TiB"


def fmt_duration(seconds: float) -> str:
    minutes = int(seconds // 60)
    if minutes < 60:
        return f"{minutes}m"
    hours, minutes = divmod(minutes, 60)
    if hours < 24:
        return f"{hours}h {minutes:02d}m"
    days, hours = divmod(hours, 24)
    return f"{days}d {hours}h"


def gauge(pct: float, width: int) -> str:
    """Fixed-width block gauge: ``████░░░░``."""
    if width <= 0:
        return ""
    filled = int(width * min(max(pct, 0.0), 100.0) / 100.0)
    return BAR_FILL * filled + BAR_EMPTY * (width - filled)


def sparkline(values: deque[float] | list[float], width: int, max_val: float = 100.0) -> str:
    """Block-ramp sparkline of the most recent *width* values."""
    if width <= 0 or not values:
        return ""
    recent = list(values)[-width:]
    top = len(SPARK) - 1
    scale = max_val if max_val > 0 else 1.0
    return "".join(SPARK[max(0, min(top, int(v / scale * top)))] for v in recent)


def _auto_max(values: deque[float], floor: float = 1.0) -> float:
    return max(max(values, default=0.0), floor)


# ── Curses drawing primitives ──────────────────────────────────────────────


def _safe(win: curses.window, *args: Any) -> None:
    """addstr wrapper that swallows out-of-bounds errors."""
    try:
        win.addstr(*args)
    except curses.error:
        pass


def _draw_box(
    win: curses.window,
    y: int,
    x: int,
    h: int,
    w: int,
    title: str = "",
    clear: bool = False,
) -> curses.window | None:
    """Draw a bordered box and return the inner sub-window."""
    max_y, max_x = win.getmaxyx()
    h = min(h, max_y - y)
    w = min(w, max_x - x)
    if h < 3 or w < 4:
        return None
    try:
        sub = win.subwin(h, w, y, x)
        if clear:
            sub.erase()
        sub.box()
        if title and len(title) + 4 < w:
            sub.addstr(0, 2, f" {title} ", curses.color_pair(C_TITLE) | curses.A_BOLD)
        return sub
    except curses.error:
        return None


def _draw_bar(
    win: curses.window,
    y: int,
    x: int,
    width: int,
    pct: float,
    label: str = "",
    color: int | None = None,
    suffix: str | None = None,
) -> None:
    """Render ``label ████░░░░ suffix`` on one line."""
    max_y, max_x = win.getmaxyx()
    if y >= max_y - 1 or x >= max_x - 1:
        return
    if color is None:
        color = _pct_color(pct)

    cx = x
    if label:
        _safe(win, y, cx, f"{label:>6s} ", curses.color_pair(C_DIM))
        cx += 7

    if suffix is None:
        suffix = f" {pct:5.1f}%"

    bar_w = min(width - (cx - x) - len(suffix), max_x - cx - len(suffix) - 1)
    if bar_w < 3:
        return

    bar = gauge(pct, bar_w)
    filled = len(bar.rstrip(BAR_EMPTY))
    _safe(win, y, cx, bar[:filled], curses.color_pair(color) | curses.A_BOLD)
    _safe(win, bar[filled:], curses.color_pair(C_DIM))
    _safe(win, suffix, curses.color_pair(color) | curses.A_BOLD)


def _draw_sparkline(
    win: curses.window,
    y: int,
    x: int,
    width: int,
    history: deque[float],
    max_val: float = 100.0,
    color: int = C_BLUE,
) -> None:
    max_y, max_x = win.getmaxyx()
    if y >= max_y - 1 or x >= max_x - 1:
        return
    w = min(width, max_x - x - 1)
    line = sparkline(history, w, max_val)
    if line:
        _safe(win, y, x, line, curses.color_pair(color))


def _text(win: curses.window, y: int, x: int, text: str, attr: int = 0) -> None:
    """Clipped single-line text inside a box."""
    max_y, max_x = win.getmaxyx()
    if y >= max_y - 1 or x >= max_x - 1:
        return
    _safe(win, y, x, text[: max_x - x - 1], attr)


# ── Panel renderers ────────────────────────────────────────────────────────


def draw_cpu_panel(
    win: curses.window, y: int, x: int, w: int, h: int, state: DashboardState
) -> None:
    cpu = state.latest.cpu
    box = _draw_box(win, y, x, h, w, "CPU")
    if not box:
        return
    _draw_bar(box, 1, 1, w - 3, cpu.total, "Total")
    load = f" Load {cpu.load1:.2f} {cpu.load5:.2f} {cpu.load15:.2f}  ({len(cpu.per_core)} cores)"
    _text(box, 2, 1, load, curses.color_pair(C_DIM))
    _draw_sparkline(box, 3, 2, w - 4, state.history.cpu, 100.0, C_BLUE)

    # Per-core sparkline grid
    cell_w = 18
    cols = max(1, (w - 3) // cell_w)
    rows = h - 5
    shown = min(len(cpu.per_core), cols * rows)
    for i in range(shown):
        ry, cx = 4 + i // cols, 1 + (i % cols) * cell_w
        pct = cpu.per_core[i]
        hist = state.history.per_core.get(i, deque())
        _text(box, ry, cx, f"{i:>3}", curses.color_pair(C_DIM))
        _text(box, ry, cx + 4, sparkline(hist, 8), curses.color_pair(C_BLUE))
        _text(box, ry, cx + 13, f"{pct:3.0f}%", curses.color_pair(_pct_color(pct)))
    if len(cpu.per_core) > shown and rows > 0:
        more = f"+{len(cpu.per_core) - shown} cores"
        _text(box, h - 2, max(1, w - len(more) - 3), more, curses.color_pair(C_DIM))


def draw_mem_panel(
    win: curses.window, y: int, x: int, w: int, h: int, state: DashboardState
) -> None:
    mem = state.latest.memory
    box = _draw_box(win, y, x, h, w, "Memory")
    if not box:
        return
    _draw_bar(box, 1, 1, w - 3, mem.percent, "RAM")
    detail = (
        f"       {fmt_bytes(mem.used_bytes)} / {fmt_bytes(mem.total_bytes)}"
        f"  cache {fmt_bytes(mem.cached)}  buf {fmt_bytes(mem.buffers)}"
    )
    _text(box, 2, 1, detail, curses.color_pair(C_DIM))
    _draw_bar(box, 3, 1, w - 3, mem.swap_percent, "Swap")
    detail = f"       {fmt_bytes(mem.swap_used)} / {fmt_bytes(mem.swap_total)}"
    _text(box, 4, 1, detail, curses.color_pair(C_DIM))
    if h > 6:
        _draw_sparkline(box, 5, 2, w - 4, state.history.mem, 100.0, C_BLUE)


def draw_io_panel(
    win: curses.window, y: int, x: int, w: int, h: int, state: DashboardState
) -> None:
    io = state.latest.io
    hist = state.history
    box = _draw_box(win, y, x, h, w, "I/O & Network")
    if not box:
        return
    _text(box, 1, 1, f"Disk R {io.disk_read_mbs:6.1f}  W {io.disk_write_mbs:6.1f} MB/s",
          curses.color_pair(C_BLUE) | curses.A_BOLD)
    _draw_sparkline(box, 2, 1, w - 3, hist.disk_read, _auto_max(hist.disk_read), C_BLUE)
    _text(box, 3, 1, f"Net RX {io.net_rx_mbps:6.1f}  TX {io.net_tx_mbps:6.1f} Mb/s",
          curses.color_pair(C_NORMAL) | curses.A_BOLD)
    _draw_sparkline(box, 4, 1, w - 3, hist.net_rx, _auto_max(hist.net_rx), C_NORMAL)


def draw_gpu_panel(
    win: curses.window,
    y: int,
    x: int,
    w: int,
    h: int,
    state: DashboardState,
    enabled: bool = True,
) -> None:
    gpus = state.latest.gpus
    box = _draw_box(win, y, x, h, w, f"GPU ({len(gpus)})" if gpus else "GPU")
    if not box:
        return
    if not enabled:
        _text(box, 1, 2, "GPU probing disabled", curses.color_pair(C_DIM))
        return
    if not gpus:
        _text(box, 1, 2, "no GPU detected", curses.color_pair(C_DIM))
        return
    for row, gpu in enumerate(gpus[: h - 2], start=1):
        line = (
            f"{gpu.name[:14]:<14s} {gpu.util:3.0f}% "
            f"{gpu.mem_used_mb:5.0f}/{gpu.mem_total_mb:.0f}M {gpu.temp_c:3.0f}°C"
        )
        _text(box, row, 1, line, curses.color_pair(_pct_color(gpu.util)))


def draw_temp_panel(
    win: curses.window,
    y: int,
    x: int,
    w: int,
    h: int,
    state: DashboardState,
    config: Config,
) -> None:
    temps = sorted(state.latest.temps, key=lambda t: -t.temp)
    box = _draw_box(win, y, x, h, w, "Temperature")
    if not box:
        return
    if not temps:
        _text(box, 1, 2, "no thermal sensors", curses.color_pair(C_DIM))
        return
    warn = config.threshold("cpu_temp", "warning")
    crit = config.threshold("cpu_temp", "critical")
    zone_w = max(4, w - 12)
    for row, t in enumerate(temps[: h - 2], start=1):
        color = _severity_color(t.temp, warn, crit)
        _text(box, row, 1, f"{t.zone[:zone_w]:<{zone_w}s}{t.temp:5.1f}°C", curses.color_pair(color))


def draw_battery_panel(
    win: curses.window, y: int, x: int, w: int, h: int, state: DashboardState
) -> None:
    batt = state.latest.battery
    box = _draw_box(win, y, x, h, w, "Battery")
    if not box:
        return
    color = _pct_color(100.0 - batt.percent)
    _draw_bar(box, 1, 1, w - 3, batt.percent, "", color)
    _text(box, 2, 2, batt.state or "unknown", curses.color_pair(C_DIM))
    if batt.seconds_remaining > 0:
        _text(box, 3, 2, f"{fmt_duration(batt.seconds_remaining)} left", curses.color_pair(C_DIM))


def draw_inotify_panel(
    win: curses.window, y: int, x: int, w: int, h: int, state: DashboardState
) -> None:
    ino = state.latest.inotify
    box = _draw_box(win, y, x, h, w, "inotify")
    if not box:
        return
    _draw_bar(box, 1, 1, w - 3, ino.percent, "watch")
    _text(box, 2, 2, f"{ino.nr_watches:,} / {ino.max_user_watches:,} watches", curses.color_pair(C_DIM))
    _text(box, 3, 2, f"max instances {ino.max_user_instances:,}", curses.color_pair(C_DIM))


def draw_cgroup_panel(
    win: curses.window, y: int, x: int, w: int, h: int, state: DashboardState
) -> None:
    cgroups = state.latest.cgroups
    box = _draw_box(win, y, x, h, w, "Top cgroups")
    if not box:
        return
    if not cgroups:
        _text(box, 1, 2, "no cgroup data", curses.color_pair(C_DIM))
        return
    name_w = max(8, w - 12)
    for row, cg in enumerate(cgroups[: h - 2], start=1):
        _text(box, row, 1, f"{cg.name[:name_w]:<{name_w}s}{cg.cpu:6.1f}%", curses.color_pair(_pct_color(cg.cpu)))


def draw_throttled_panel(
    win: curses.window, y: int, x: int, w: int, h: int, state: DashboardState
) -> None:
    procs = state.visible_throttled()
    box = _draw_box(win, y, x, h, w, f"Throttled nice>0 ({len(procs)})")
    if not box:
        return
    _text(box, 1, 1, f"{'PID':>7s} {'NI':>3s} {'CPU%':>5s}  COMMAND", curses.color_pair(C_TITLE) | curses.A_BOLD)
    if not procs:
        _text(box, 2, 2, "none", curses.color_pair(C_DIM))
        return
    for row, p in enumerate(procs[: h - 3], start=2):
        line = f"{p.pid:>7d} {p.nice:>3d} {p.cpu:5.1f}  {p.command}"
        _text(box, row, 1, line, curses.color_pair(C_WARNING))


# ── Process table ──────────────────────────────────────────────────────────

Column = tuple[str, int, Callable[[Process], str], SortKey | None]


def process_columns(width: int, io: bool = True) -> list[Column]:
    """Columns before COMMAND; more appear as the terminal gets wider.

    The FD and I/O columns follow the `i` panel toggle.
    """
    cols: list[Column] = [
        ("PID", 7, lambda p: f"{p.pid:>7d}", None),
        ("NI", 3, lambda p: f"{p.nice:>3d}", None),
        ("CPU%", 6, lambda p: f"{p.cpu:6.1f}", SortKey.CPU),
        ("MEM%", 6, lambda p: f"{p.memory:6.1f}", SortKey.MEM),
    ]
    if not io:
        return cols
    if width >= MEDIUM_WIDTH:
        cols += [
            ("FD", 5, lambda p: f"{p.fd_count:>5d}", SortKey.FD),
            ("R KB/s", 8, lambda p: f"{p.read_kbs:8.1f}", SortKey.IO),
            ("W KB/s", 8, lambda p: f"{p.write_kbs:8.1f}", SortKey.IO),
        ]
    if width >= WIDE_WIDTH:
        cols.append(("FDΔ", 5, lambda p: f"{p.fd_diff:>+5d}", None))
    return cols


def draw_proc_panel(
    win: curses.window,
    y: int,
    x: int,
    w: int,
    h: int,
    state: DashboardState,
    term_w: int,
) -> None:
    procs = state.visible_processes()
    title = f"Processes ({len(procs)}) sort:{state.sort_key.value}"
    if state.filter:
        title += f" filter:{state.filter}"
    box = _draw_box(win, y, x, h, w, title)
    if not box:
        return

    # Report table geometry back so paging and clicks match the screen.
    state.page_size = max(1, h - 3)
    state.table_top = y + 2
    state.scroll_by(0)

    cols = process_columns(term_w, state.panels["io"])
    cx = 1
    for label, width, _, key in cols:
        attr = curses.color_pair(C_TITLE) | curses.A_BOLD
        if key is state.sort_key:
            attr |= curses.A_UNDERLINE
        _text(box, 1, cx, f"{label:>{width}s}", attr)
        cx += width + 1
    _text(box, 1, cx, "COMMAND", curses.color_pair(C_TITLE) | curses.A_BOLD)

    if not procs:
        msg = "no processes match filter" if state.filter else "waiting for first sample…"
        _text(box, 2, 2, msg, curses.color_pair(C_DIM))
        return

    visible = procs[state.scroll : state.scroll + state.page_size]
    for offset, p in enumerate(visible):
        row = 2 + offset
        index = state.scroll + offset
        line = " ".join(fmt(p) for _, _, fmt, _ in cols) + " " + p.command
        attr = curses.color_pair(_pct_color(p.cpu))
        if p.nice > 0:
            attr = curses.color_pair(C_WARNING)
        if index == state.selected:
            attr |= curses.A_REVERSE | curses.A_BOLD
        _text(box, row, 1, line.ljust(w - 3), attr)


# ── Views ──────────────────────────────────────────────────────────────────


def draw_dashboard_view(
    stdscr: curses.window, state: DashboardState, config: Config, max_y: int, max_x: int
) -> None:
    wide = max_x >= WIDE_WIDTH
    left_w = max_x - SIDE_W if wide else max_x
    body_h = max_y - 2
    top_h = 9 if body_h >= 34 else 7

    half = left_w // 2
    draw_cpu_panel(stdscr, 1, 0, half, top_h, state)
    draw_mem_panel(stdscr, 1, half, left_w - half, top_h, state)
    cur_y = 1 + top_h

    strip: list[Callable[[int, int, int, int], None]] = []
    if state.panels["io"]:
        strip.append(lambda y, x, w, h: draw_io_panel(stdscr, y, x, w, h, state))
    if state.panels["gpu"]:
        strip.append(
            lambda y, x, w, h: draw_gpu_panel(stdscr, y, x, w, h, state, config.enable_gpu)
        )
    if state.panels["temp"]:
        strip.append(lambda y, x, w, h: draw_temp_panel(stdscr, y, x, w, h, state, config))
    if state.panels["battery"] and state.latest.battery.present:
        strip.append(lambda y, x, w, h: draw_battery_panel(stdscr, y, x, w, h, state))
    if state.panels["inotify"]:
        strip.append(lambda y, x, w, h: draw_inotify_panel(stdscr, y, x, w, h, state))
    if state.panels["cgroups"] and not wide:
        strip.append(lambda y, x, w, h: draw_cgroup_panel(stdscr, y, x, w, h, state))

    strip_h = 6
    if strip and body_h - top_h - strip_h >= 6:
        per_row = max(1, min(len(strip), left_w // 30))
        rows = [strip[i : i + per_row] for i in range(0, len(strip), per_row)]
        for panels in rows:
            if max_y - 1 - (cur_y + strip_h) < 6:
                break
            box_w = left_w // len(panels)
            for i, draw in enumerate(panels):
                w = box_w if i < len(panels) - 1 else left_w - box_w * i
                draw(cur_y, box_w * i, w, strip_h)
            cur_y += strip_h

    remaining = max_y - 1 - cur_y
    if not wide:
        # Throttled rows stay on screen below the table in narrow layouts.
        throttled_h = max(THROTTLED_MIN_H, min(8, remaining // 3))
        if remaining - throttled_h >= 5:
            remaining -= throttled_h
            draw_throttled_panel(stdscr, cur_y + remaining, 0, left_w, throttled_h, state)

    draw_proc_panel(stdscr, cur_y, 0, left_w, remaining, state, max_x)

    if wide:
        side_x = left_w
        side_h = max_y - 2
        if state.panels["cgroups"]:
            throttled_h = side_h // 2
            draw_throttled_panel(stdscr, 1, side_x, SIDE_W, throttled_h, state)
            draw_cgroup_panel(stdscr, 1 + throttled_h, side_x, SIDE_W, side_h - throttled_h, state)
        else:
            draw_throttled_panel(stdscr, 1, side_x, SIDE_W, side_h, state)


def draw_analysis_view(
    stdscr: curses.window, state: DashboardState, max_y: int, max_x: int
) -> None:
    two_col = max_x >= MEDIUM_WIDTH
    col_w = max_x // 2 if two_col else max_x
    body_h = max_y - 2

    heavy_h = body_h // 2 if two_col else body_h // 3
    box = _draw_box(stdscr, 1, 0, heavy_h, col_w, "Heaviest cumulative consumers")
    if box:
        _text(box, 1, 1, f"{'COMMAND':<22s}{'CPU-s':>10s}{'maxCPU':>8s}{'maxMEM':>8s}",
              curses.color_pair(C_TITLE) | curses.A_BOLD)
        heaviest = state.heaviest(heavy_h - 3)
        if not heaviest:
            _text(box, 2, 2, "(no samples yet)", curses.color_pair(C_DIM))
        for row, (name, secs) in enumerate(heaviest, start=2):
            line = (
                f"{name[:21]:<22s}{secs:10.1f}"
                f"{state.max_cpu.get(name, 0.0):7.1f}%{state.max_mem.get(name, 0.0):7.1f}%"
            )
            _text(box, row, 1, line)

    thr_y = 1 + heavy_h
    thr_h = body_h - heavy_h if two_col else body_h // 3
    box = _draw_box(stdscr, thr_y, 0, thr_h, col_w, "Most frequently throttled")
    if box:
        _text(box, 1, 1, f"{'COMMAND':<22s}{'TICKS':>8s}", curses.color_pair(C_TITLE) | curses.A_BOLD)
        throttled = state.most_throttled(thr_h - 3)
        if not throttled:
            _text(box, 2, 2, "(nothing throttled yet)", curses.color_pair(C_DIM))
        for row, (name, count) in enumerate(throttled, start=2):
            _text(box, row, 1, f"{name[:21]:<22s}{count:8d}", curses.color_pair(C_WARNING))

    if two_col:
        rx, ry, rw = col_w, 1, max_x - col_w
    else:
        rx, ry, rw = 0, thr_y + thr_h, max_x
    remaining = max_y - 1 - ry

    peaks_h = 6
    box = _draw_box(stdscr, ry, rx, peaks_h, rw, "Peak rates since start")
    if box:
        p = state.peaks
        _text(box, 1, 2, f"Disk read  {p['disk_read']:8.1f} MB/s   write {p['disk_write']:8.1f} MB/s")
        _text(box, 2, 2, f"Net  rx    {p['net_rx']:8.1f} Mb/s   tx    {p['net_tx']:8.1f} Mb/s")
        _text(box, 3, 2, "net rx ", curses.color_pair(C_DIM))
        _draw_sparkline(box, 3, 9, rw - 12, state.history.net_rx, _auto_max(state.history.net_rx), C_NORMAL)
        _text(box, 4, 2, "net tx ", curses.color_pair(C_DIM))
        _draw_sparkline(box, 4, 9, rw - 12, state.history.net_tx, _auto_max(state.history.net_tx), C_NORMAL)
    ry += peaks_h
    remaining -= peaks_h

    devices = state.latest.io.per_device
    dev_h = min(len(devices) + 3, max(3, remaining // 3))
    box = _draw_box(stdscr, ry, rx, dev_h, rw, "Per-device I/O")
    if box:
        _text(box, 1, 1, f"{'DEVICE':<14s}{'READ MB/s':>11s}{'WRITE MB/s':>12s}",
              curses.color_pair(C_TITLE) | curses.A_BOLD)
        for row, dev in enumerate(devices[: dev_h - 3], start=2):
            _text(box, row, 1, f"{dev.name[:13]:<14s}{dev.read_mbs:11.2f}{dev.write_mbs:12.2f}")
    ry += dev_h
    remaining -= dev_h

    if remaining >= 4:
        half = remaining // 2
        draw_throttled_panel(stdscr, ry, rx, rw, half, state)
        draw_cgroup_panel(stdscr, ry + half, rx, rw, remaining - half, state)


def system_info_lines(state: DashboardState, config: Config) -> list[tuple[str, str]]:
    """Key/value rows for the System view."""
    s = state.latest
    uname = os.uname()
    try:
        uptime = fmt_duration(time.time() - psutil.boot_time())
    except (OSError, psutil.Error):
        uptime = "n/a"
    rows = [
        ("Host", uname.nodename),
        ("Kernel", f"{uname.sysname} {uname.release} {uname.machine}"),
        ("Uptime", uptime),
        ("CPU cores", str(len(s.cpu.per_core) or os.cpu_count() or 0)),
        ("Load", f"{s.cpu.load1:.2f} {s.cpu.load5:.2f} {s.cpu.load15:.2f}"),
        ("Memory", fmt_bytes(s.memory.total_bytes)),
        ("Swap", fmt_bytes(s.memory.swap_total)),
        ("inotify watches", f"{s.inotify.nr_watches:,} / {s.inotify.max_user_watches:,}"),
        ("inotify instances", f"max {s.inotify.max_user_instances:,}"),
    ]
    if not config.enable_gpu:
        rows.append(("GPU", "probing disabled"))
    elif not s.gpus:
        rows.append(("GPU", "no GPU detected"))
    for i, gpu in enumerate(s.gpus):
        rows.append((f"GPU {i}", f"{gpu.name}  {gpu.mem_total_mb:.0f} MiB"))
    if s.battery.present:
        rows.append(("Battery", f"{s.battery.percent:.0f}% ({s.battery.state or 'unknown'})"))
    elif not config.enable_battery:
        rows.append(("Battery", "probing disabled"))
    else:
        rows.append(("Battery", "absent"))
    rows.append(("Thermal zones", str(len(s.temps))))
    rows.append(("Sample interval", f"{s.interval:g}s"))
    rows.append(("Samples seen", str(state.samples_seen)))
    rows.append(("JSON export", config.json_file or "off"))
    return rows


def draw_sysinfo_view(
    stdscr: curses.window, state: DashboardState, config: Config, max_y: int, max_x: int
) -> None:
    box = _draw_box(stdscr, 1, 0, max_y - 2, max_x, "System")
    if not box:
        return
    for row, (key, value) in enumerate(system_info_lines(state, config), start=1):
        _text(box, row, 2, f"{key:<20s}", curses.color_pair(C_DIM))
        _text(box, row, 22, value, curses.A_BOLD)


def detail_lines(state: DashboardState, proc: Process) -> list[str]:
    """Full detail for one process, shown in the Enter modal."""
    name = proc.name
    return [
        f"PID        {proc.pid}",
        f"Command    {proc.command}",
        f"Nice       {proc.nice}" + ("  (throttled)" if proc.nice > 0 else ""),
        f"CPU        {proc.cpu:.1f}%   max {state.max_cpu.get(name, proc.cpu):.1f}%",
        f"Memory     {proc.memory:.1f}%   max {state.max_mem.get(name, proc.memory):.1f}%",
        f"FDs        {proc.fd_count}  ({proc.fd_diff:+d} since last tick)",
        f"I/O        read {proc.read_kbs:.1f} KB/s   write {proc.write_kbs:.1f} KB/s",
        f"CPU time   {state.cumulative_cpu.get(name, 0.0):.1f} s this session ({name})",
        f"Throttled  {state.throttle_counts.get(name, 0)} ticks this session",
    ]


def draw_detail_modal(stdscr: curses.window, state: DashboardState, max_y: int, max_x: int) -> None:
    proc = state.detail_process()
    if proc is None:
        return
    lines = detail_lines(state, proc)
    w = min(max_x - 4, max(60, max(len(line) for line in lines) + 4))
    h = min(max_y - 2, len(lines) + 4)
    y, x = (max_y - h) // 2, (max_x - w) // 2
    box = _draw_box(stdscr, y, x, h, w, f"Process {proc.pid}", clear=True)
    if not box:
        return
    for row, line in enumerate(lines, start=1):
        _text(box, row, 2, line)
    _text(box, h - 2, 2, "Esc / Enter / q: close", curses.color_pair(C_DIM))


# ── Header / footer ────────────────────────────────────────────────────────


def _draw_header(
    win: curses.window, w: int, state: DashboardState, config: Config
) -> None:
    attr = curses.color_pair(C_TITLE) | curses.A_REVERSE
    _safe(win, 0, 0, " " * (w - 1), attr)
    _safe(win, 0, 1, "sysmoni", attr | curses.A_BOLD)
    cx = 10
    for i, view in enumerate(View, start=1):
        label = f" {i}:{view.value} "
        tab_attr = attr | curses.A_BOLD if view is state.view else attr
        if view is state.view:
            tab_attr &= ~curses.A_REVERSE
        _safe(win, 0, cx, label, tab_attr)
        cx += len(label) + 1

    ts = state.latest.timestamp.strftime("%H:%M:%S")
    info = f"{ts}  sort:{state.sort_key.value}"
    if state.filter:
        info += f"  filter:{state.filter}"
    if state.paused:
        info += "  PAUSED"
    if not state.mouse_enabled:
        info += "  mouse:off"
    _safe(win, 0, cx + 1, info[: max(0, w - cx - 12)], attr)

    if exceeded_thresholds(state.latest, config.thresholds):
        badge = " ALERT "
        badge_x = max(0, w - len(badge) - 2)
        if blink_on(state.tick):
            _safe(win, 0, badge_x, badge, curses.color_pair(C_CRITICAL) | curses.A_REVERSE | curses.A_BOLD)
        else:
            _safe(win, 0, badge_x, badge, attr)


def _draw_footer(win: curses.window, y: int, w: int, state: DashboardState) -> None:
    if state.input_mode:
        _safe(win, y, 0, f"/{state.input_buffer}_"[: w - 1], curses.A_BOLD)
        _safe(win, y, max(0, w - 28), "Enter apply  Esc cancel"[: w - 1], curses.color_pair(C_DIM))
        return
    hint = (
        "q quit  Tab view  s sort  / filter  g b i t n c panels  "
        "f pause  m mouse  Enter detail  Esc back"
    )
    _safe(win, y, 0, hint[: w - 1], curses.color_pair(C_DIM))


def draw_frame(stdscr: curses.window, state: DashboardState, config: Config) -> None:
    """Recompute and paint the entire screen from the current state."""
    stdscr.erase()
    max_y, max_x = stdscr.getmaxyx()
    if max_y < MIN_H or max_x < MIN_W:
        _safe(stdscr, 0, 0, f"Terminal too small (need {MIN_W}x{MIN_H}+)"[: max_x - 1])
        stdscr.refresh()
        return

    _draw_header(stdscr, max_x, state, config)
    if state.view is View.DASHBOARD:
        draw_dashboard_view(stdscr, state, config, max_y, max_x)
    elif state.view is View.ANALYSIS:
        draw_analysis_view(stdscr, state, max_y, max_x)
    else:
        draw_sysinfo_view(stdscr, state, config, max_y, max_x)
    _draw_footer(stdscr, max_y - 1, max_x, state)
    if state.detail_open:
        draw_detail_modal(stdscr, state, max_y, max_x)
    stdscr.refresh()


# ── Main loop ──────────────────────────────────────────────────────────────


def _set_mouse(enabled: bool) -> None:
    mask = curses.ALL_MOUSE_EVENTS | curses.REPORT_MOUSE_POSITION if enabled else 0
    try:
        curses.mousemask(mask)
        curses.mouseinterval(0)
    except curses.error:
        pass


def _dashboard_loop(
    stdscr: curses.window,
    config: Config,
    sampler: Sampler,
    sink: JsonSink | None,
) -> None:
    _init_colors()
    try:
        curses.curs_set(0)
    except curses.error:
        pass
    curses.raw()  # deliver Ctrl+C as a key
    curses.set_escdelay(25)
    stdscr.keypad(True)
    stdscr.timeout(int(FRAME_SECONDS * 1000))

    state = DashboardState(config.sort, config.filter, config.history_size, config.mouse)
    stop = threading.Event()
    samples = sampler.stream(stop)
    mouse_on: bool | None = None

    try:
        while True:
            if mouse_on is not state.mouse_enabled:
                _set_mouse(state.mouse_enabled)
                mouse_on = state.mouse_enabled

            if not state.paused:
                try:
                    item = samples.get_nowait()
                except queue.Empty:
                    pass
                else:
                    if item is STREAM_CLOSED:
                        return
                    state.ingest(item)
                    if sink is not None:
                        sink.write(item)

            draw_frame(stdscr, state, config)
            state.tick += 1

            key = stdscr.getch()
            if key == -1:
                continue
            if key == curses.KEY_RESIZE:
                stdscr.clear()
            elif key == curses.KEY_MOUSE:
                try:
                    _, mx, my, _, bstate = curses.getmouse()
                except curses.error:
                    continue
                state.handle_mouse(mx, my, bstate)
            elif not state.handle_key(key):
                return
    finally:
        stop.set()
        sampler.join(timeout=1.0)


# ── CLI entry point ────────────────────────────────────────────────────────


def _setup_logging(path: Path | None) -> None:
    if path is None:
        # Keep sampler warnings off the terminal while curses owns it.
        logging.getLogger("sysmoni").addHandler(logging.NullHandler())
        return
    logging.basicConfig(
        filename=str(path),
        level=logging.DEBUG,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Live resource dashboard for hosts with priority/OOM tuning.",
    )
    parser.add_argument(
        "--interval",
        default=None,
        help="Sampling interval, e.g. 1s, 500ms or 2 (default: 1s)",
    )
    parser.add_argument("--sort", choices=SORT_KEYS, default=None, help="Initial sort column")
    parser.add_argument("--filter", default=None, help="Initial process filter (substring)")
    parser.add_argument(
        "--json", action="store_true", default=None, help="Print one JSON sample and exit"
    )
    parser.add_argument(
        "--json-stream", action="store_true", default=None, help="Stream NDJSON until interrupted"
    )
    parser.add_argument(
        "--gpu", action=argparse.BooleanOptionalAction, default=None, help="GPU probing"
    )
    parser.add_argument(
        "--battery", action=argparse.BooleanOptionalAction, default=None, help="Battery probing"
    )
    parser.add_argument("--json-file", default=None, metavar="PATH", help="Write JSON samples to PATH")
    parser.add_argument("--no-mouse", action="store_true", help="Start with mouse support off")
    parser.add_argument("--config", type=Path, default=None, metavar="PATH", help="Path to TOML config file")
    parser.add_argument("--log-file", type=Path, default=None, metavar="PATH", help="Write debug log to PATH")
    parser.add_argument("--dump-config", action="store_true", help="Print the default config and exit")
    return parser


def resolve_config(args: argparse.Namespace, environ: dict[str, str] | None = None) -> Config:
    """Defaults < TOML file < SRPS_* environment < command-line flags."""
    merged = apply_env(load_config(args.config), environ)
    overrides: dict[str, Any] = {
        "sort": args.sort,
        "filter": args.filter,
        "json": args.json,
        "json_stream": args.json_stream,
        "gpu": args.gpu,
        "battery": args.battery,
        "json_file": args.json_file,
    }
    if args.interval is not None:
        overrides["interval"] = parse_interval(args.interval, float(merged.get("interval", 1.0)))
    if args.no_mouse:
        overrides["mouse"] = False
    merged = _deep_merge(merged, {k: v for k, v in overrides.items() if v is not None})
    return Config.from_mapping(merged)


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    if args.dump_config:
        print(dump_default_config(), end="")
        return

    _setup_logging(args.log_file)
    config = resolve_config(args)
    sampler = Sampler(config.interval, config.enable_gpu, config.enable_battery)

    if config.json or config.json_stream or not sys.stdout.isatty():
        sink = JsonSink(config.json_file, stream=config.json_stream)
        raise SystemExit(run_export(sampler, sink))

    sink = JsonSink(config.json_file, stream=True) if config.json_file else None
    try:
        curses.wrapper(_dashboard_loop, config, sampler, sink)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
