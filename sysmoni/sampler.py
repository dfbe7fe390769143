"""Sampling engine: turns /proc, /sys, psutil and vendor tools into Samples.

Two daemon threads run per stream:

* the fast tick, which reads CPU, memory, I/O and process state every
  ``interval`` seconds and computes rates from the previous tick's counters;
* the slow probe, which every couple of seconds shells out to GPU tools and
  walks the slower sysfs trees (battery, thermal zones, inotify fdinfo).

The slow probe publishes its latest result into a lock-guarded cell; the fast
tick copies whatever is there without waiting.  All delta baselines live on
the :class:`Sampler` instance so independent samplers never interfere.

Known noise: PID reuse is not reconciled.  A recycled PID inherits the dead
process's I/O and FD baseline and may show one tick of bogus delta.
"""

from __future__ import annotations

import json
import logging
import os
import queue
import subprocess
import threading
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import psutil

from sysmoni.model import (
    CPU,
    GPU,
    IO,
    Battery,
    Cgroup,
    Inotify,
    IODevice,
    Memory,
    Process,
    Sample,
    Temp,
)

logger = logging.getLogger(__name__)

# ── Constants ──────────────────────────────────────────────────────────────

STREAM_CLOSED = None  # queued after the last Sample of a stream

SLOW_PROBE_INTERVAL = 2.0
COMMAND_TIMEOUT = 0.4

TOP_LIMIT = 64
THROTTLED_LIMIT = 32
CGROUP_LIMIT = 16
CGROUP_CACHE_TICKS = 60
COMMAND_WIDTH = 60

MB = 1024 * 1024

_VIRTUAL_DISK_PREFIXES = ("loop", "ram", "zram", "fd", "sr")
_VIRTUAL_NIC_PREFIXES = ("lo", "veth", "docker", "br-", "virbr", "tun", "tap")

_PROC_ATTRS = [
    "pid",
    "name",
    "nice",
    "cpu_percent",
    "memory_percent",
    "cmdline",
    "num_fds",
    "io_counters",
]


# ── Small helpers ──────────────────────────────────────────────────────────


def parse_float(text: str) -> float:
    """Parse a number from tool/sysfs output; anything malformed is 0."""
    text = text.strip().rstrip("%").strip()
    try:
        return float(text)
    except ValueError:
        return 0.0


def truncate(text: str, width: int) -> str:
    if len(text) <= width:
        return text
    return text[: width - 1] + "…"


def run_cmd(args: list[str], timeout: float = COMMAND_TIMEOUT) -> str:
    """Run an external tool with a hard timeout; return stdout or ``""``."""
    try:
        result = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired, OSError) as e:
        logger.debug("%s unavailable: %s", args[0], e)
        return ""
    if result.returncode != 0:
        logger.debug("%s exited with %d", args[0], result.returncode)
        return ""
    return result.stdout


def _guard(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Call a psutil/os reader, turning any source failure into None."""
    try:
        return fn(*args, **kwargs)
    except (OSError, RuntimeError, ValueError, psutil.Error) as e:
        logger.debug("%s failed: %s", getattr(fn, "__name__", fn), e)
        return None


def _read_text(path: Path) -> str:
    try:
        return path.read_text()
    except OSError:
        return ""


# ── CPU (/proc/stat) ───────────────────────────────────────────────────────


def read_cpu_times(proc_root: str = "/proc") -> dict[str, list[int]]:
    """Read the ``cpu`` and ``cpuN`` jiffie rows of /proc/stat."""
    rows: dict[str, list[int]] = {}
    try:
        with open(os.path.join(proc_root, "stat")) as f:
            for line in f:
                if not line.startswith("cpu"):
                    continue
                parts = line.split()
                try:
                    rows[parts[0]] = [int(x) for x in parts[1:]]
                except ValueError:
                    continue
    except OSError as e:
        logger.debug("cannot read /proc/stat: %s", e)
    return rows


def calc_cpu_percent(prev: list[int], curr: list[int]) -> float:
    """CPU busy % between two jiffie rows: ``100 × (1 − Δidle/Δtotal)``.

    Idle includes iowait; only the first eight fields (user … steal) count
    towards the total since guest time is already folded into user.
    """
    prev8, curr8 = prev[:8], curr[:8]
    if len(prev8) < 5 or len(curr8) < 5:
        return 0.0
    total = sum(curr8) - sum(prev8)
    idle = (curr8[3] + curr8[4]) - (prev8[3] + prev8[4])
    if total <= 0:
        return 0.0
    return min(100.0, max(0.0, 100.0 * (1.0 - idle / total)))


# ── Slow sources: GPU, battery, thermal, inotify ──────────────────────────


def parse_nvidia_csv(text: str) -> tuple[GPU, ...]:
    """Parse ``nvidia-smi --query-gpu=name,util,mem.used,mem.total,temp`` CSV."""
    gpus: list[GPU] = []
    for line in text.splitlines():
        parts = [p.strip() for p in line.split(",")]
        if len(parts) < 5:
            continue
        gpus.append(
            GPU(
                name=parts[0],
                util=parse_float(parts[1]),
                mem_used_mb=parse_float(parts[2]),
                mem_total_mb=parse_float(parts[3]),
                temp_c=parse_float(parts[4]),
            )
        )
    return tuple(gpus)


def _rocm_field(card: dict[str, Any], *needles: str) -> str:
    for key, value in card.items():
        if all(n in key for n in needles):
            return str(value)
    return ""


def parse_rocm_json(text: str) -> tuple[GPU, ...]:
    """Parse ``rocm-smi --json`` output (one object per ``cardN``)."""
    try:
        data = json.loads(text)
    except ValueError:
        return ()
    if not isinstance(data, dict):
        return ()
    gpus: list[GPU] = []
    for card_id, card in sorted(data.items()):
        if not card_id.startswith("card") or not isinstance(card, dict):
            continue
        name = _rocm_field(card, "Card series") or f"AMD-{card_id[4:]}"
        temp = _rocm_field(card, "Temperature", "edge") or _rocm_field(
            card, "Temperature"
        )
        gpus.append(
            GPU(
                name=name,
                util=parse_float(_rocm_field(card, "GPU use")),
                mem_used_mb=parse_float(_rocm_field(card, "VRAM Total Used")) / MB,
                mem_total_mb=parse_float(_rocm_field(card, "VRAM Total Memory")) / MB,
                temp_c=parse_float(temp),
            )
        )
    return tuple(gpus)


def query_gpus(timeout: float = COMMAND_TIMEOUT) -> tuple[GPU, ...]:
    """NVIDIA first, then AMD.  Missing or hung tools yield ``()``."""
    out = run_cmd(
        [
            "nvidia-smi",
            "--query-gpu=name,utilization.gpu,memory.used,memory.total,temperature.gpu",
            "--format=csv,noheader,nounits",
        ],
        timeout,
    )
    gpus = parse_nvidia_csv(out) if out else ()
    if gpus:
        return gpus
    out = run_cmd(
        [
            "rocm-smi",
            "--showuse",
            "--showtemp",
            "--showmeminfo",
            "vram",
            "--showproductname",
            "--json",
        ],
        timeout,
    )
    return parse_rocm_json(out) if out else ()


def _battery_seconds(base: Path, state: str) -> int:
    if state != "Discharging":
        return 0
    for now_name, rate_name in (("energy_now", "power_now"), ("charge_now", "current_now")):
        now = parse_float(_read_text(base / now_name))
        rate = parse_float(_read_text(base / rate_name))
        if now > 0 and rate > 0:
            return int(now / rate * 3600)
    return 0


def read_battery(sys_root: str = "/sys") -> Battery:
    """First ``BAT*`` supply under /sys/class/power_supply, or an absent Battery."""
    supply = Path(sys_root, "class", "power_supply")
    for cap_path in sorted(supply.glob("BAT*/capacity")):
        try:
            pct = parse_float(cap_path.read_text())
        except OSError:
            continue
        base = cap_path.parent
        state = _read_text(base / "status").strip()
        return Battery(
            percent=pct,
            state=state,
            seconds_remaining=_battery_seconds(base, state),
        )
    return Battery()


def read_temperatures(sys_root: str = "/sys") -> tuple[Temp, ...]:
    """Thermal zones in millidegrees; psutil's hwmon view when there are none."""
    temps: list[Temp] = []
    for path in sorted(Path(sys_root, "class", "thermal").glob("thermal_zone*/temp")):
        try:
            raw = path.read_text()
        except OSError:
            continue
        zone = _read_text(path.parent / "type").strip() or path.parent.name
        temps.append(Temp(zone=zone, temp=parse_float(raw) / 1000.0))
    if temps:
        return tuple(temps)

    try:
        sensors = psutil.sensors_temperatures()
    except AttributeError:
        return ()
    for chip, entries in sorted((sensors or {}).items()):
        for i, entry in enumerate(entries):
            label = getattr(entry, "label", "") or f"{chip}{i}"
            temps.append(Temp(zone=f"{chip}/{label}", temp=float(entry.current)))
    return tuple(temps)


def read_inotify_limits(proc_root: str = "/proc") -> tuple[int, int]:
    base = Path(proc_root, "sys", "fs", "inotify")
    watches = int(parse_float(_read_text(base / "max_user_watches")))
    instances = int(parse_float(_read_text(base / "max_user_instances")))
    return watches, instances


def count_inotify_watches(proc_root: str = "/proc") -> int:
    """Count live inotify watches by scanning every process's inotify fds."""
    total = 0
    for fd_dir in Path(proc_root).glob("[0-9]*/fd"):
        try:
            entries = list(fd_dir.iterdir())
        except OSError:
            continue
        for fd in entries:
            try:
                if os.readlink(fd) != "anon_inode:inotify":
                    continue
                text = (fd_dir.parent / "fdinfo" / fd.name).read_text()
            except OSError:
                continue
            total += sum(1 for line in text.splitlines() if line.startswith("inotify wd:"))
    return total


def read_proc_cgroup(pid: int, proc_root: str = "/proc") -> str | None:
    """Innermost non-empty path segment of the process's first cgroup entry."""
    try:
        with open(os.path.join(proc_root, str(pid), "cgroup")) as f:
            for line in f:
                parts = line.rstrip("\n").split(":", 2)
                if len(parts) != 3:
                    continue
                for seg in reversed(parts[2].split("/")):
                    if seg:
                        return seg
    except OSError:
        return None
    return None


# ── Sampler ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ProbeReading:
    """Latest result of the slow probe, swapped atomically under a lock."""

    gpus: tuple[GPU, ...] = ()
    battery: Battery = Battery()
    temps: tuple[Temp, ...] = ()
    nr_watches: int = 0


class Sampler:
    """Produces one :class:`Sample` per tick from kernel and process state."""

    def __init__(
        self,
        interval: float,
        enable_gpu: bool = True,
        enable_battery: bool = True,
        proc_root: str = "/proc",
        sys_root: str = "/sys",
        gpu_query: Callable[[], tuple[GPU, ...]] = query_gpus,
    ) -> None:
        self._interval = interval if interval > 0 else 1.0
        self._enable_gpu = enable_gpu
        self._enable_battery = enable_battery
        self._proc_root = proc_root
        self._sys_root = sys_root
        self._gpu_query = gpu_query

        self._prev_cpu: dict[str, list[int]] = {}
        self._prev_disk: dict[str, tuple[int, int]] = {}
        self._prev_net: dict[str, tuple[int, int]] = {}
        self._prev_proc_io: dict[int, tuple[int, int]] = {}
        self._prev_fd: dict[int, int] = {}

        self._cgroup_cache: dict[int, str] = {}
        self._tick = 0

        self._probe_lock = threading.Lock()
        self._probe = ProbeReading()
        self._threads: list[threading.Thread] = []

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def tick(self) -> int:
        return self._tick

    # ── Streaming ──────────────────────────────────────────────────────

    def stream(self, stop: threading.Event) -> queue.Queue[Sample | None]:
        """Start the fast and slow threads; return the one-slot output queue.

        Setting *stop* ends both threads.  The queue then receives
        ``STREAM_CLOSED`` so the consumer knows no more Samples will come.
        """
        out: queue.Queue[Sample | None] = queue.Queue(maxsize=1)
        self._threads = [
            threading.Thread(
                target=self._probe_loop, args=(stop,), daemon=True, name="sysmoni-probe"
            ),
            threading.Thread(
                target=self._tick_loop, args=(stop, out), daemon=True, name="sysmoni-tick"
            ),
        ]
        for t in self._threads:
            t.start()
        return out

    def join(self, timeout: float | None = 5.0) -> None:
        for t in self._threads:
            t.join(timeout=timeout)

    @property
    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def _tick_loop(self, stop: threading.Event, out: queue.Queue[Sample | None]) -> None:
        try:
            while not stop.is_set():
                try:
                    _offer(out, self.sample())
                except Exception:
                    # A broken tick must never end the stream.
                    logger.exception("sample failed")
                if stop.wait(timeout=self._interval):
                    break
        finally:
            _offer(out, STREAM_CLOSED)

    def _probe_loop(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                self.probe()
            except Exception:
                logger.exception("probe failed")
            if stop.wait(timeout=SLOW_PROBE_INTERVAL):
                break

    # ── Slow probe ─────────────────────────────────────────────────────

    def probe(self) -> ProbeReading:
        """Run the expensive probes and publish the result for the fast tick."""
        gpus = self._gpu_query() if self._enable_gpu else ()
        battery = read_battery(self._sys_root) if self._enable_battery else Battery()
        reading = ProbeReading(
            gpus=tuple(gpus),
            battery=battery,
            temps=read_temperatures(self._sys_root),
            nr_watches=count_inotify_watches(self._proc_root),
        )
        with self._probe_lock:
            self._probe = reading
        return reading

    def latest_probe(self) -> ProbeReading:
        with self._probe_lock:
            return self._probe

    # ── Fast tick ──────────────────────────────────────────────────────

    def sample(self, now: datetime | None = None) -> Sample:
        """Build one Sample, advancing every delta baseline by one tick."""
        if now is None:
            now = datetime.now().astimezone()
        self._tick += 1
        # Clears on ticks 61, 121, ... to bound memory and drop recycled PIDs.
        if self._tick > 1 and (self._tick - 1) % CGROUP_CACHE_TICKS == 0:
            self._cgroup_cache.clear()

        top, throttled, cgroups = self._processes()
        probe = self.latest_probe()
        max_watches, max_instances = read_inotify_limits(self._proc_root)

        return Sample(
            timestamp=now,
            interval=self._interval,
            cpu=self._cpu(),
            memory=self._memory(),
            io=self._io(),
            gpus=probe.gpus,
            battery=probe.battery,
            top=top,
            throttled=throttled,
            cgroups=cgroups,
            inotify=Inotify(
                max_user_watches=max_watches,
                max_user_instances=max_instances,
                nr_watches=probe.nr_watches,
            ),
            temps=probe.temps,
        )

    def _cpu(self) -> CPU:
        rows = read_cpu_times(self._proc_root)
        total = 0.0
        if "cpu" in rows and "cpu" in self._prev_cpu:
            total = calc_cpu_percent(self._prev_cpu["cpu"], rows["cpu"])

        cores = sorted(
            (k for k in rows if k != "cpu" and k[3:].isdigit()), key=lambda k: int(k[3:])
        )
        per_core = tuple(
            calc_cpu_percent(self._prev_cpu[k], rows[k]) if k in self._prev_cpu else 0.0
            for k in cores
        )
        self._prev_cpu = rows

        load = _guard(os.getloadavg) or (0.0, 0.0, 0.0)
        return CPU(
            total=total,
            per_core=per_core,
            load1=float(load[0]),
            load5=float(load[1]),
            load15=float(load[2]),
        )

    def _memory(self) -> Memory:
        vm = _guard(psutil.virtual_memory)
        sw = _guard(psutil.swap_memory)
        return Memory(
            used_bytes=int(getattr(vm, "used", 0)),
            total_bytes=int(getattr(vm, "total", 0)),
            swap_used=int(getattr(sw, "used", 0)),
            swap_total=int(getattr(sw, "total", 0)),
            cached=int(getattr(vm, "cached", 0)),
            buffers=int(getattr(vm, "buffers", 0)),
        )

    def _io(self) -> IO:
        dt = self._interval

        disks = _guard(psutil.disk_io_counters, perdisk=True) or {}
        new_disk: dict[str, tuple[int, int]] = {}
        devices: list[IODevice] = []
        read_total = write_total = 0
        for name, st in sorted(disks.items()):
            if name.startswith(_VIRTUAL_DISK_PREFIXES):
                continue
            prev = self._prev_disk.get(name)
            if prev is not None:
                rd = max(0, st.read_bytes - prev[0])
                wr = max(0, st.write_bytes - prev[1])
                read_total += rd
                write_total += wr
                devices.append(IODevice(name=name, read_mbs=rd / MB / dt, write_mbs=wr / MB / dt))
            new_disk[name] = (st.read_bytes, st.write_bytes)
        self._prev_disk = new_disk

        nics = _guard(psutil.net_io_counters, pernic=True) or {}
        new_net: dict[str, tuple[int, int]] = {}
        rx_total = tx_total = 0
        for name, st in nics.items():
            if name.startswith(_VIRTUAL_NIC_PREFIXES):
                continue
            prev = self._prev_net.get(name)
            if prev is not None:
                rx_total += max(0, st.bytes_recv - prev[0])
                tx_total += max(0, st.bytes_sent - prev[1])
            new_net[name] = (st.bytes_recv, st.bytes_sent)
        self._prev_net = new_net

        return IO(
            disk_read_mbs=read_total / MB / dt,
            disk_write_mbs=write_total / MB / dt,
            net_rx_mbps=rx_total * 8 / 1e6 / dt,
            net_tx_mbps=tx_total * 8 / 1e6 / dt,
            per_device=tuple(devices),
        )

    def _cgroup_name(self, pid: int) -> str | None:
        if pid in self._cgroup_cache:
            return self._cgroup_cache[pid]
        name = read_proc_cgroup(pid, self._proc_root)
        if name is not None:
            self._cgroup_cache[pid] = name
        return name

    def _processes(
        self,
    ) -> tuple[tuple[Process, ...], tuple[Process, ...], tuple[Cgroup, ...]]:
        dt = self._interval
        procs: list[Process] = []
        cg_cpu: defaultdict[str, float] = defaultdict(float)
        new_io: dict[int, tuple[int, int]] = {}
        new_fd: dict[int, int] = {}

        for proc in _guard(psutil.process_iter, attrs=_PROC_ATTRS) or []:
            try:
                info: dict[str, Any] = proc.info
                name = info.get("name") or ""
                if not name:
                    # kernel threads without a name
                    continue
                pid = int(info.get("pid") or 0)
                cpu = float(info.get("cpu_percent") or 0.0)
                cmdline = info.get("cmdline") or []
                command = " ".join(cmdline) if cmdline else name

                fd_count = int(info.get("num_fds") or 0)
                fd_diff = fd_count - self._prev_fd[pid] if pid in self._prev_fd else 0
                new_fd[pid] = fd_count

                read_kbs = write_kbs = 0.0
                counters = info.get("io_counters")
                if counters is not None:
                    rb, wb = int(counters.read_bytes), int(counters.write_bytes)
                    prev = self._prev_proc_io.get(pid)
                    if prev is not None:
                        if rb >= prev[0]:
                            read_kbs = (rb - prev[0]) / 1024.0 / dt
                        if wb >= prev[1]:
                            write_kbs = (wb - prev[1]) / 1024.0 / dt
                    new_io[pid] = (rb, wb)

                procs.append(
                    Process(
                        pid=pid,
                        nice=int(info.get("nice") or 0),
                        cpu=cpu,
                        memory=float(info.get("memory_percent") or 0.0),
                        command=truncate(command, COMMAND_WIDTH),
                        fd_count=fd_count,
                        read_kbs=read_kbs,
                        write_kbs=write_kbs,
                        fd_diff=fd_diff,
                    )
                )
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue

            cgroup = self._cgroup_name(pid)
            if cgroup is not None:
                cg_cpu[cgroup] += cpu

        self._prev_proc_io = new_io
        self._prev_fd = new_fd

        top = tuple(sorted(procs, key=lambda p: (-p.cpu, p.pid))[:TOP_LIMIT])
        throttled = tuple([p for p in top if p.nice > 0][:THROTTLED_LIMIT])
        cgroups = tuple(
            Cgroup(name=name, cpu=cpu)
            for name, cpu in sorted(cg_cpu.items(), key=lambda kv: (-kv[1], kv[0]))[
                :CGROUP_LIMIT
            ]
        )
        return top, throttled, cgroups


def _offer(out: queue.Queue[Sample | None], item: Sample | None) -> None:
    """Put without blocking, replacing a stale unconsumed item if needed."""
    try:
        out.put_nowait(item)
        return
    except queue.Full:
        pass
    try:
        out.get_nowait()
    except queue.Empty:
        pass
    try:
        out.put_nowait(item)
    except queue.Full:
        logger.debug("dropped sample: consumer busy")
