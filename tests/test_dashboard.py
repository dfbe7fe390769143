"""Tests for the dashboard module helpers and CLI wiring."""

from __future__ import annotations

from collections import deque
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from sysmoni.config import Config
from sysmoni.dashboard import (
    BAR_EMPTY,
    BAR_FILL,
    C_CRITICAL,
    C_NORMAL,
    C_WARNING,
    GRADIENT,
    MEDIUM_WIDTH,
    SPARK,
    WIDE_WIDTH,
    _draw_header,
    _severity_color,
    build_parser,
    detail_lines,
    draw_frame,
    draw_gpu_panel,
    fmt_bytes,
    fmt_duration,
    gauge,
    gradient_step,
    main,
    process_columns,
    resolve_config,
    sparkline,
    system_info_lines,
)
from sysmoni.model import CPU, GPU, Battery, Process, Sample, Temp
from sysmoni.state import DashboardState, View

# ── fmt_bytes ──────────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (0, "0.0 B"),
        (512, "512.0 B"),
        (1024, "1.0 KiB"),
        (1024 * 1024, "1.0 MiB"),
        (1024**3, "1.0 GiB"),
        (1024**4, "1.0 TiB"),
        (1536, "1.5 KiB"),
        (2.5 * 1024**2, "2.5 MiB"),
    ],
)
def test_fmt_bytes(value: int | float, expected: str) -> None:
    assert fmt_bytes(value) == expected


@pytest.mark.parametrize(
    ("seconds", "expected"),
    [(0, "0m"), (59, "0m"), (600, "10m"), (3600, "1h 00m"), (5400, "1h 30m"), (90000, "1d 1h")],
)
def test_fmt_duration(seconds: float, expected: str) -> None:
    assert fmt_duration(seconds) == expected


# ── Colours ────────────────────────────────────────────────────────────────


def test_severity_normal() -> None:
    assert _severity_color(50.0, 80.0, 95.0) == C_NORMAL


def test_severity_warning() -> None:
    assert _severity_color(85.0, 80.0, 95.0) == C_WARNING


def test_severity_critical() -> None:
    assert _severity_color(96.0, 80.0, 95.0) == C_CRITICAL


def test_severity_at_boundary() -> None:
    assert _severity_color(80.0, 80.0, 95.0) == C_WARNING
    assert _severity_color(95.0, 80.0, 95.0) == C_CRITICAL


class TestGradientStep:
    def test_endpoints(self) -> None:
        assert gradient_step(0.0) == 0
        assert gradient_step(100.0) == len(GRADIENT) - 1

    def test_clamped(self) -> None:
        assert gradient_step(-20.0) == 0
        assert gradient_step(250.0) == len(GRADIENT) - 1

    def test_monotonic(self) -> None:
        steps = [gradient_step(float(p)) for p in range(101)]
        assert steps == sorted(steps)

    def test_custom_length(self) -> None:
        assert gradient_step(50.0, 3) == 1


# ── Gauges and sparklines ──────────────────────────────────────────────────


class TestGauge:
    def test_half(self) -> None:
        assert gauge(50.0, 10) == BAR_FILL * 5 + BAR_EMPTY * 5

    def test_bounds(self) -> None:
        assert gauge(-5.0, 4) == BAR_EMPTY * 4
        assert gauge(150.0, 4) == BAR_FILL * 4

    def test_zero_width(self) -> None:
        assert gauge(50.0, 0) == ""


class TestSparkline:
    def test_scales_to_max(self) -> None:
        assert sparkline([0.0, 50.0, 100.0], 10) == SPARK[0] + SPARK[4] + SPARK[8]

    def test_keeps_most_recent(self) -> None:
        history: deque[float] = deque([100.0] * 5 + [0.0] * 3, maxlen=8)
        assert sparkline(history, 3) == SPARK[0] * 3

    def test_empty(self) -> None:
        assert sparkline([], 10) == ""
        assert sparkline([1.0], 0) == ""

    def test_over_max_clamped(self) -> None:
        assert sparkline([500.0], 1, max_val=100.0) == SPARK[-1]


# ── Process table columns ──────────────────────────────────────────────────


class TestProcessColumns:
    def test_narrow(self) -> None:
        assert [c[0] for c in process_columns(80)] == ["PID", "NI", "CPU%", "MEM%"]

    def test_medium(self) -> None:
        labels = [c[0] for c in process_columns(MEDIUM_WIDTH)]
        assert labels[-3:] == ["FD", "R KB/s", "W KB/s"]
        assert "FDΔ" not in labels

    def test_wide(self) -> None:
        assert process_columns(WIDE_WIDTH)[-1][0] == "FDΔ"

    def test_io_toggle_off(self) -> None:
        assert [c[0] for c in process_columns(WIDE_WIDTH, io=False)] == ["PID", "NI", "CPU%", "MEM%"]

    def test_cells_fit_width(self) -> None:
        proc = Process(pid=123456, nice=-5, cpu=99.9, memory=12.3, fd_count=42, read_kbs=5.5, fd_diff=-2)
        for label, width, fmt, _ in process_columns(WIDE_WIDTH):
            assert len(fmt(proc)) == width, label


# ── Detail and system info ─────────────────────────────────────────────────


def test_detail_lines() -> None:
    state = DashboardState()
    proc = Process(pid=42, nice=10, cpu=10.0, memory=3.0, command="/usr/bin/rsync -a", fd_count=8, fd_diff=2)
    state.ingest(Sample(interval=2.0, top=(proc,), throttled=(proc,)))
    text = "\n".join(detail_lines(state, proc))
    assert "42" in text
    assert "/usr/bin/rsync -a" in text
    assert "(throttled)" in text
    assert "+2 since last tick" in text
    assert "0.2 s this session (rsync)" in text
    assert "1 ticks this session" in text


class TestSystemInfo:
    def _values(self, state: DashboardState, config: Config) -> dict[str, str]:
        return dict(system_info_lines(state, config))

    def test_no_gpu_detected(self) -> None:
        assert self._values(DashboardState(), Config())["GPU"] == "no GPU detected"

    def test_gpu_probing_disabled(self) -> None:
        assert self._values(DashboardState(), Config(enable_gpu=False))["GPU"] == "probing disabled"

    def test_gpus_listed(self) -> None:
        state = DashboardState()
        state.ingest(Sample(gpus=(GPU(name="A100", mem_total_mb=40960.0),)))
        values = self._values(state, Config())
        assert values["GPU 0"] == "A100  40960 MiB"
        assert "GPU" not in values

    def test_battery(self) -> None:
        state = DashboardState()
        assert self._values(state, Config())["Battery"] == "absent"
        state.ingest(Sample(battery=Battery(percent=55.0, state="Charging")))
        assert self._values(state, Config())["Battery"] == "55% (Charging)"


# ── CLI ────────────────────────────────────────────────────────────────────


class TestResolveConfig:
    @pytest.fixture(autouse=True)
    def _no_user_config(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("sysmoni.config._DEFAULT_PATH", tmp_path / "missing.toml")

    def test_defaults(self) -> None:
        cfg = resolve_config(build_parser().parse_args([]), {})
        assert cfg.interval == 1.0
        assert cfg.enable_gpu is True
        assert cfg.mouse is True

    def test_flags(self) -> None:
        args = build_parser().parse_args(
            ["--interval", "500ms", "--sort", "mem", "--no-gpu", "--filter", "java", "--no-mouse"]
        )
        cfg = resolve_config(args, {})
        assert cfg.interval == pytest.approx(0.5)
        assert cfg.sort == "mem"
        assert cfg.enable_gpu is False
        assert cfg.filter == "java"
        assert cfg.mouse is False

    def test_flags_beat_environment(self) -> None:
        env = {"SRPS_SYSMONI_GPU": "0", "SRPS_SYSMONI_INTERVAL": "3s"}
        cfg = resolve_config(build_parser().parse_args(["--gpu"]), env)
        assert cfg.enable_gpu is True
        assert cfg.interval == 3.0

    def test_environment_beats_file(self, tmp_path: Path) -> None:
        toml_file = tmp_path / "c.toml"
        toml_file.write_text('json_file = "/from/file"\nbattery = true\n')
        env = {"SRPS_SYSMON_JSON_FILE": "/from/env", "SRPS_SYSMONI_BATT": "0"}
        cfg = resolve_config(build_parser().parse_args(["--config", str(toml_file)]), env)
        assert cfg.json_file == "/from/env"
        assert cfg.enable_battery is False


class TestMain:
    def test_dump_config(self, capsys: pytest.CaptureFixture[str]) -> None:
        main(["--dump-config"])
        assert "[thresholds.cpu_percent]" in capsys.readouterr().out

    @patch("sysmoni.dashboard.curses.wrapper")
    @patch("sysmoni.dashboard.run_export", return_value=0)
    @patch("sysmoni.dashboard.Sampler")
    def test_json_flag_routes_to_export(
        self, mock_sampler: MagicMock, mock_export: MagicMock, mock_wrapper: MagicMock,
        tmp_path: Path, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr("sysmoni.config._DEFAULT_PATH", tmp_path / "missing.toml")
        with pytest.raises(SystemExit) as exc:
            main(["--json", "--interval", "2s"])
        assert exc.value.code == 0
        mock_sampler.assert_called_once_with(2.0, True, True)
        sink = mock_export.call_args.args[1]
        assert sink.stream is False
        mock_wrapper.assert_not_called()

    @patch("sysmoni.dashboard.sys")
    @patch("sysmoni.dashboard.curses.wrapper")
    @patch("sysmoni.dashboard.run_export", return_value=0)
    @patch("sysmoni.dashboard.Sampler")
    def test_tty_routes_to_dashboard(
        self, mock_sampler: MagicMock, mock_export: MagicMock, mock_wrapper: MagicMock, mock_sys: MagicMock,
        tmp_path: Path, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr("sysmoni.config._DEFAULT_PATH", tmp_path / "missing.toml")
        mock_sys.stdout.isatty.return_value = True
        main([])
        mock_export.assert_not_called()
        mock_wrapper.assert_called_once()
        assert mock_wrapper.call_args.args[3] is None


# ── Rendering ──────────────────────────────────────────────────────────────


class FakeWindow:
    """Records every addstr; sub-windows share the parent's log."""

    def __init__(self, h: int, w: int, log: list[tuple[str, int]] | None = None) -> None:
        self.h, self.w = h, w
        self.log = log if log is not None else []

    def getmaxyx(self) -> tuple[int, int]:
        return self.h, self.w

    def subwin(self, h: int, w: int, y: int, x: int) -> FakeWindow:
        return FakeWindow(h, w, self.log)

    def addstr(self, *args: object) -> None:
        if isinstance(args[0], int):
            args = args[2:]
        text = str(args[0])
        attr = args[1] if len(args) > 1 else 0
        self.log.append((text, int(attr)))  # type: ignore[call-overload]

    def erase(self) -> None:
        pass

    def box(self) -> None:
        pass

    def refresh(self) -> None:
        pass

    def text(self) -> str:
        return "\n".join(t for t, _ in self.log)


@pytest.fixture
def color_pairs(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("sysmoni.dashboard.curses.color_pair", lambda n: n << 8)


def _busy_state() -> DashboardState:
    procs = (
        Process(pid=10, nice=10, cpu=40.0, memory=2.0, command="/usr/bin/rsync -a", fd_count=9),
        Process(pid=11, nice=0, cpu=20.0, memory=5.0, command="/usr/bin/python3 app.py"),
    )
    state = DashboardState()
    state.ingest(
        Sample(
            cpu=CPU(total=97.0, per_core=(97.0, 95.0)),
            temps=(Temp(zone="x86_pkg_temp", temp=70.0),),
            top=procs,
            throttled=procs[:1],
        )
    )
    return state


@pytest.mark.usefixtures("color_pairs")
class TestRendering:
    def test_gpu_panel_without_gpus(self) -> None:
        win = FakeWindow(30, 80)
        draw_gpu_panel(win, 0, 0, 40, 6, DashboardState())  # type: ignore[arg-type]
        assert "no GPU detected" in win.text()

    def test_gpu_panel_probing_disabled(self) -> None:
        win = FakeWindow(30, 80)
        draw_gpu_panel(win, 0, 0, 40, 6, DashboardState(), enabled=False)  # type: ignore[arg-type]
        assert "GPU probing disabled" in win.text()

    @pytest.mark.parametrize("width", [80, MEDIUM_WIDTH + 20, WIDE_WIDTH + 10])
    @pytest.mark.parametrize("view", list(View))
    def test_frame_at_each_width(self, width: int, view: View) -> None:
        state = _busy_state()
        state.view = view
        win = FakeWindow(40, width)
        draw_frame(win, state, Config())  # type: ignore[arg-type]
        assert "sysmoni" in win.text()

    def test_frame_with_detail_modal(self) -> None:
        state = _busy_state()
        state.handle_key(10)
        win = FakeWindow(30, 90)
        draw_frame(win, state, Config())  # type: ignore[arg-type]
        assert "Process 10" in win.text()

    def test_frame_too_small(self) -> None:
        win = FakeWindow(10, 40)
        draw_frame(win, DashboardState(), Config())  # type: ignore[arg-type]
        assert "Terminal too small" in win.text()

    @pytest.mark.parametrize("width", [80, MEDIUM_WIDTH + 20, WIDE_WIDTH + 10])
    def test_throttled_listed_at_every_width(self, width: int) -> None:
        win = FakeWindow(24, width)
        draw_frame(win, _busy_state(), Config())  # type: ignore[arg-type]
        text = win.text()
        assert "Throttled nice>0 (1)" in text
        # once in the process table, once in the throttled list
        assert sum("rsync" in line for line in text.splitlines()) >= 2

    def test_io_toggle_hides_fd_columns(self) -> None:
        state = _busy_state()
        state.handle_key(ord("i"))
        win = FakeWindow(40, WIDE_WIDTH + 10)
        draw_frame(win, state, Config())  # type: ignore[arg-type]
        labels = {t.strip() for t, _ in win.log}
        assert "PID" in labels
        assert "FD" not in labels
        assert "FDΔ" not in labels

    def test_alert_badge_blinks_with_tick(self) -> None:
        state = _busy_state()

        def badge_attr(tick: int) -> int:
            state.tick = tick
            win = FakeWindow(40, 120)
            _draw_header(win, 120, state, Config())  # type: ignore[arg-type]
            return next(a for t, a in win.log if t == " ALERT ")

        on = badge_attr(0)
        off = badge_attr(2)
        assert on != off
        assert on & (C_CRITICAL << 8)
        assert [badge_attr(t) for t in range(4)] == [on, on, off, off]

    def test_no_badge_below_thresholds(self) -> None:
        win = FakeWindow(40, 120)
        _draw_header(win, 120, DashboardState(), Config())  # type: ignore[arg-type]
        assert "ALERT" not in win.text()
