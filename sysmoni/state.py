"""Dashboard state: session history, view options and the input state machine.

Everything here is plain Python so it can be driven from tests without a
terminal.  The curses renderer in :mod:`sysmoni.dashboard` reads this state
every frame and reports back the geometry of the process table
(``page_size`` and ``table_top``) so that paging and mouse clicks line up
with what is on screen.
"""

from __future__ import annotations

import curses
from collections import Counter, deque
from enum import Enum

from sysmoni.model import Process, Sample

# ── Key codes ──────────────────────────────────────────────────────────────

KEY_CTRL_C = 3
KEY_TAB = 9
KEY_ESC = 27
KEY_ENTER_CODES = (10, 13, curses.KEY_ENTER)
KEY_BACKSPACE_CODES = (8, 127, curses.KEY_BACKSPACE)

PANEL_KEYS: dict[int, str] = {
    ord("g"): "gpu",
    ord("b"): "battery",
    ord("i"): "io",
    ord("t"): "temp",
    ord("n"): "inotify",
    ord("c"): "cgroups",
}

WHEEL_STEP = 3
BLINK_CYCLE = 4  # animation ticks per badge on/off cycle


class View(Enum):
    DASHBOARD = "Dashboard"
    ANALYSIS = "Analysis"
    SYSINFO = "System"


class SortKey(Enum):
    """Process-table sort keys, in cycling order."""

    CPU = "cpu"
    MEM = "mem"
    IO = "io"
    FD = "fd"

    def next(self) -> SortKey:
        keys = list(SortKey)
        return keys[(keys.index(self) + 1) % len(keys)]


_SORT_METRIC = {
    SortKey.CPU: lambda p: p.cpu,
    SortKey.MEM: lambda p: p.memory,
    SortKey.IO: lambda p: p.io_kbs,
    SortKey.FD: lambda p: p.fd_count,
}


def sort_processes(procs: tuple[Process, ...] | list[Process], key: SortKey) -> list[Process]:
    """Sort descending by *key*; ties go to the lower PID."""
    metric = _SORT_METRIC[key]
    return sorted(procs, key=lambda p: (-metric(p), p.pid))


def filter_processes(
    procs: tuple[Process, ...] | list[Process], text: str
) -> list[Process]:
    """Case-insensitive substring match on the command line."""
    if not text:
        return list(procs)
    needle = text.lower()
    return [p for p in procs if needle in p.command.lower()]


def exceeded_thresholds(
    sample: Sample, thresholds: dict[str, dict[str, float]]
) -> list[str]:
    """Names of the tracked metrics at or above their warning level."""
    values = {
        "cpu_percent": sample.cpu.total,
        "ram_percent": sample.memory.percent,
        "swap_percent": sample.memory.swap_percent,
        "cpu_temp": sample.max_temp,
    }
    hits = []
    for metric, value in values.items():
        limit = thresholds.get(metric, {}).get("warning")
        if limit is not None and value >= float(limit):
            hits.append(metric)
    return hits


def blink_on(tick: int) -> bool:
    """Badge phase for animation tick *tick*; independent of wall-clock time."""
    return tick % BLINK_CYCLE < BLINK_CYCLE // 2


class History:
    """Fixed-capacity sparkline buffers; the oldest value is evicted first."""

    def __init__(self, capacity: int = 60) -> None:
        self.capacity = capacity
        self.cpu: deque[float] = deque(maxlen=capacity)
        self.mem: deque[float] = deque(maxlen=capacity)
        self.net_rx: deque[float] = deque(maxlen=capacity)
        self.net_tx: deque[float] = deque(maxlen=capacity)
        self.disk_read: deque[float] = deque(maxlen=capacity)
        self.disk_write: deque[float] = deque(maxlen=capacity)
        self.per_core: dict[int, deque[float]] = {}

    def record(self, sample: Sample) -> None:
        self.cpu.append(sample.cpu.total)
        self.mem.append(sample.memory.percent)
        self.net_rx.append(sample.io.net_rx_mbps)
        self.net_tx.append(sample.io.net_tx_mbps)
        self.disk_read.append(sample.io.disk_read_mbs)
        self.disk_write.append(sample.io.disk_write_mbs)
        for i, pct in enumerate(sample.cpu.per_core):
            self.per_core.setdefault(i, deque(maxlen=self.capacity)).append(pct)


class DashboardState:
    """Everything the dashboard accumulates across ticks plus UI mode flags."""

    def __init__(
        self,
        sort: str = "cpu",
        filter_text: str = "",
        history_size: int = 60,
        mouse: bool = True,
    ) -> None:
        self.latest = Sample.zero()
        self.samples_seen = 0
        self.history = History(history_size)

        self.cumulative_cpu: Counter[str] = Counter()  # CPU-seconds per command
        self.throttle_counts: Counter[str] = Counter()
        self.max_cpu: dict[str, float] = {}
        self.max_mem: dict[str, float] = {}
        self.peaks: dict[str, float] = {
            "disk_read": 0.0,
            "disk_write": 0.0,
            "net_rx": 0.0,
            "net_tx": 0.0,
        }

        try:
            self.sort_key = SortKey(sort)
        except ValueError:
            self.sort_key = SortKey.CPU
        self.filter = filter_text
        self.input_mode = False
        self.input_buffer = ""

        self.scroll = 0
        self.selected: int | None = None
        self.page_size = 20
        self.table_top = 0

        self.panels: dict[str, bool] = {name: True for name in PANEL_KEYS.values()}
        self.paused = False
        self.mouse_enabled = mouse
        self.view = View.DASHBOARD
        self.detail_pid: int | None = None
        self._detail_snapshot: Process | None = None
        self.tick = 0

    # ── Sample consumption ─────────────────────────────────────────────

    def ingest(self, sample: Sample) -> None:
        """Fold one Sample into history and the cumulative maps."""
        self.latest = sample
        self.samples_seen += 1
        self.history.record(sample)

        for p in sample.top:
            name = p.name
            self.cumulative_cpu[name] += p.cpu / 100.0 * sample.interval
            self.max_cpu[name] = max(self.max_cpu.get(name, 0.0), p.cpu)
            self.max_mem[name] = max(self.max_mem.get(name, 0.0), p.memory)
        for p in sample.throttled:
            self.throttle_counts[p.name] += 1

        io = sample.io
        for key, value in (
            ("disk_read", io.disk_read_mbs),
            ("disk_write", io.disk_write_mbs),
            ("net_rx", io.net_rx_mbps),
            ("net_tx", io.net_tx_mbps),
        ):
            self.peaks[key] = max(self.peaks[key], value)

        self._clamp()

    # ── Derived views ──────────────────────────────────────────────────

    def visible_processes(self) -> list[Process]:
        return sort_processes(filter_processes(self.latest.top, self.filter), self.sort_key)

    def visible_throttled(self) -> list[Process]:
        return sort_processes(
            filter_processes(self.latest.throttled, self.filter), self.sort_key
        )

    def heaviest(self, n: int = 10) -> list[tuple[str, float]]:
        return self.cumulative_cpu.most_common(n)

    def most_throttled(self, n: int = 10) -> list[tuple[str, int]]:
        return self.throttle_counts.most_common(n)

    def detail_process(self) -> Process | None:
        if self.detail_pid is None:
            return None
        for p in self.latest.top:
            if p.pid == self.detail_pid:
                return p
        return self._detail_snapshot

    @property
    def detail_open(self) -> bool:
        return self.detail_pid is not None

    # ── Input ──────────────────────────────────────────────────────────

    def handle_key(self, key: int) -> bool:
        """Apply one key press.  Returns False when the user asked to quit."""
        if key == KEY_CTRL_C:
            return False
        if self.input_mode:
            self._edit_filter(key)
            return True
        if self.detail_open:
            if key in (KEY_ESC, ord("q"), *KEY_ENTER_CODES):
                self.close_detail()
            return True

        if key == ord("q"):
            return False
        if key == KEY_TAB:
            views = list(View)
            self.view = views[(views.index(self.view) + 1) % len(views)]
        elif key in (ord("1"), ord("2"), ord("3")):
            self.view = list(View)[key - ord("1")]
        elif key == ord("s"):
            self.sort_key = self.sort_key.next()
        elif key == ord("/"):
            self.input_mode = True
            self.input_buffer = self.filter
        elif key in PANEL_KEYS:
            name = PANEL_KEYS[key]
            self.panels[name] = not self.panels[name]
        elif key == ord("f"):
            self.paused = not self.paused
        elif key == ord("m"):
            self.mouse_enabled = not self.mouse_enabled
        elif key in KEY_ENTER_CODES:
            self.open_detail()
        elif key == KEY_ESC:
            self._back_out()
        elif key in (curses.KEY_DOWN, ord("j")):
            self.move_selection(1)
        elif key in (curses.KEY_UP, ord("k")):
            self.move_selection(-1)
        elif key == curses.KEY_NPAGE:
            self.move_selection(self.page_size)
        elif key == curses.KEY_PPAGE:
            self.move_selection(-self.page_size)
        elif key == curses.KEY_HOME:
            self.select_index(0)
        elif key == curses.KEY_END:
            self.select_index(len(self.visible_processes()) - 1)
        return True

    def _edit_filter(self, key: int) -> None:
        if key in KEY_ENTER_CODES:
            self.input_mode = False
            self._set_filter(self.input_buffer.strip())
        elif key == KEY_ESC:
            self.input_mode = False
        elif key in KEY_BACKSPACE_CODES:
            self.input_buffer = self.input_buffer[:-1]
        elif 32 <= key < 127:
            self.input_buffer += chr(key)

    def _set_filter(self, text: str) -> None:
        if text != self.filter:
            self.filter = text
            self.scroll = 0
            self.selected = None

    def _back_out(self) -> None:
        if self.view is not View.DASHBOARD:
            self.view = View.DASHBOARD
        elif self.selected is not None:
            self.selected = None
        elif self.filter:
            self._set_filter("")

    def handle_mouse(self, x: int, y: int, bstate: int) -> None:
        """Clicks select a table row; the wheel scrolls by WHEEL_STEP rows."""
        if not self.mouse_enabled or self.detail_open:
            return
        if bstate & curses.BUTTON4_PRESSED:
            self.scroll_by(-WHEEL_STEP)
        elif bstate & _BUTTON5_PRESSED:
            self.scroll_by(WHEEL_STEP)
        elif bstate & (curses.BUTTON1_CLICKED | curses.BUTTON1_PRESSED):
            row = y - self.table_top
            if self.view is View.DASHBOARD and 0 <= row < self.page_size:
                index = self.scroll + row
                if index < len(self.visible_processes()):
                    self.selected = index

    # ── Selection and scrolling ────────────────────────────────────────

    def open_detail(self) -> None:
        procs = self.visible_processes()
        if not procs:
            return
        index = self.selected if self.selected is not None else 0
        proc = procs[min(index, len(procs) - 1)]
        self.detail_pid = proc.pid
        self._detail_snapshot = proc

    def close_detail(self) -> None:
        self.detail_pid = None
        self._detail_snapshot = None

    def move_selection(self, delta: int) -> None:
        if self.selected is None:
            # first visible row, or a whole page past it
            self.select_index(self.scroll if abs(delta) == 1 else self.scroll + delta)
        else:
            self.select_index(self.selected + delta)

    def select_index(self, index: int) -> None:
        count = len(self.visible_processes())
        if count == 0:
            self.selected = None
            self.scroll = 0
            return
        self.selected = max(0, min(index, count - 1))
        if self.selected < self.scroll:
            self.scroll = self.selected
        elif self.selected >= self.scroll + self.page_size:
            self.scroll = self.selected - self.page_size + 1
        self._clamp()

    def scroll_by(self, delta: int) -> None:
        self.scroll += delta
        self._clamp()

    def _clamp(self) -> None:
        count = len(self.visible_processes())
        self.scroll = max(0, min(self.scroll, count - self.page_size))
        if self.selected is not None:
            if count == 0:
                self.selected = None
            else:
                self.selected = min(self.selected, count - 1)


# BUTTON5 is missing from some curses builds; 0x200000 is ncurses' value.
_BUTTON5_PRESSED = getattr(curses, "BUTTON5_PRESSED", 0x200000)
