"""Value types for one sysmoni snapshot.

A :class:`Sample` is built once by the sampler, handed to the dashboard and
the JSON exporter, and never mutated afterwards.  JSON keys are PascalCase,
matching the NDJSON format earlier sysmoni releases wrote, so existing
consumers of the stream keep working.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime, timezone
from functools import cache
from typing import Any, ClassVar, get_args, get_origin, get_type_hints


@dataclass(frozen=True)
class CPU:
    total: float = 0.0  # percent 0-100
    per_core: tuple[float, ...] = ()
    load1: float = 0.0
    load5: float = 0.0
    load15: float = 0.0

    JSON_KEYS: ClassVar[dict[str, str]] = {
        "total": "Total",
        "per_core": "PerCore",
        "load1": "Load1",
        "load5": "Load5",
        "load15": "Load15",
    }


@dataclass(frozen=True)
class Memory:
    used_bytes: int = 0
    total_bytes: int = 0
    swap_used: int = 0
    swap_total: int = 0
    cached: int = 0
    buffers: int = 0

    JSON_KEYS: ClassVar[dict[str, str]] = {
        "used_bytes": "UsedBytes",
        "total_bytes": "TotalBytes",
        "swap_used": "SwapUsed",
        "swap_total": "SwapTotal",
        "cached": "Cached",
        "buffers": "Buffers",
    }

    @property
    def percent(self) -> float:
        return _pct(self.used_bytes, self.total_bytes)

    @property
    def swap_percent(self) -> float:
        return _pct(self.swap_used, self.swap_total)


@dataclass(frozen=True)
class IODevice:
    name: str = ""
    read_mbs: float = 0.0
    write_mbs: float = 0.0

    JSON_KEYS: ClassVar[dict[str, str]] = {
        "name": "Name",
        "read_mbs": "ReadMBs",
        "write_mbs": "WriteMBs",
    }


@dataclass(frozen=True)
class IO:
    disk_read_mbs: float = 0.0
    disk_write_mbs: float = 0.0
    net_rx_mbps: float = 0.0
    net_tx_mbps: float = 0.0
    per_device: tuple[IODevice, ...] = ()

    JSON_KEYS: ClassVar[dict[str, str]] = {
        "disk_read_mbs": "DiskReadMBs",
        "disk_write_mbs": "DiskWriteMBs",
        "net_rx_mbps": "NetRxMbps",
        "net_tx_mbps": "NetTxMbps",
        "per_device": "PerDevice",
    }


@dataclass(frozen=True)
class GPU:
    name: str = ""
    util: float = 0.0  # percent
    mem_used_mb: float = 0.0
    mem_total_mb: float = 0.0
    temp_c: float = 0.0

    JSON_KEYS: ClassVar[dict[str, str]] = {
        "name": "Name",
        "util": "Util",
        "mem_used_mb": "MemUsedMB",
        "mem_total_mb": "MemTotalMB",
        "temp_c": "TempC",
    }

    @property
    def mem_percent(self) -> float:
        if self.mem_total_mb <= 0:
            return 0.0
        return self.mem_used_mb * 100.0 / self.mem_total_mb


@dataclass(frozen=True)
class Battery:
    """Power state; absent when ``percent == 0``."""

    percent: float = 0.0
    state: str = ""
    seconds_remaining: int = 0

    JSON_KEYS: ClassVar[dict[str, str]] = {
        "percent": "Percent",
        "state": "State",
        "seconds_remaining": "SecondsRemaining",
    }

    @property
    def present(self) -> bool:
        return self.percent > 0


@dataclass(frozen=True)
class Process:
    pid: int = 0
    nice: int = 0
    cpu: float = 0.0
    memory: float = 0.0
    command: str = ""
    fd_count: int = 0
    read_kbs: float = 0.0
    write_kbs: float = 0.0
    fd_diff: int = 0

    JSON_KEYS: ClassVar[dict[str, str]] = {
        "pid": "PID",
        "nice": "Nice",
        "cpu": "CPU",
        "memory": "Memory",
        "command": "Command",
        "fd_count": "FDCount",
        "read_kbs": "ReadKBs",
        "write_kbs": "WriteKBs",
        "fd_diff": "FDDiff",
    }

    @property
    def io_kbs(self) -> float:
        return self.read_kbs + self.write_kbs

    @property
    def name(self) -> str:
        """Short command name: basename of the first word of the command."""
        head = self.command.split(" ", 1)[0] if self.command else ""
        return head.rsplit("/", 1)[-1] or self.command


@dataclass(frozen=True)
class Cgroup:
    name: str = ""
    cpu: float = 0.0

    JSON_KEYS: ClassVar[dict[str, str]] = {"name": "Name", "cpu": "CPU"}


@dataclass(frozen=True)
class Inotify:
    max_user_watches: int = 0
    max_user_instances: int = 0
    nr_watches: int = 0

    JSON_KEYS: ClassVar[dict[str, str]] = {
        "max_user_watches": "MaxUserWatches",
        "max_user_instances": "MaxUserInstances",
        "nr_watches": "NrWatches",
    }

    @property
    def percent(self) -> float:
        return _pct(self.nr_watches, self.max_user_watches)


@dataclass(frozen=True)
class Temp:
    zone: str = ""
    temp: float = 0.0

    JSON_KEYS: ClassVar[dict[str, str]] = {"zone": "Zone", "temp": "Temp"}


@dataclass(frozen=True)
class Sample:
    """The full snapshot exchanged between sampler, dashboard and exporter."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    interval: float = 1.0  # seconds
    cpu: CPU = CPU()
    memory: Memory = Memory()
    io: IO = IO()
    gpus: tuple[GPU, ...] = ()
    battery: Battery = Battery()
    top: tuple[Process, ...] = ()
    throttled: tuple[Process, ...] = ()
    cgroups: tuple[Cgroup, ...] = ()
    inotify: Inotify = Inotify()
    temps: tuple[Temp, ...] = ()

    JSON_KEYS: ClassVar[dict[str, str]] = {
        "timestamp": "Timestamp",
        "interval": "Interval",
        "cpu": "CPU",
        "memory": "Memory",
        "io": "IO",
        "gpus": "GPUs",
        "battery": "Battery",
        "top": "Top",
        "throttled": "Throttled",
        "cgroups": "Cgroups",
        "inotify": "Inotify",
        "temps": "Temps",
    }

    @classmethod
    def zero(cls) -> Sample:
        """Empty sample used before the first tick arrives."""
        return cls()

    @property
    def max_temp(self) -> float:
        return max((t.temp for t in self.temps), default=0.0)

    def to_dict(self) -> dict[str, Any]:
        return _encode(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Sample:
        return _decode(cls, data)


def dumps(sample: Sample) -> str:
    """Serialize a Sample to a single-line JSON document."""
    return json.dumps(sample.to_dict(), ensure_ascii=False)


def loads(text: str) -> Sample:
    return Sample.from_dict(json.loads(text))


# ── Codec internals ────────────────────────────────────────────────────────


def _pct(used: int | float, total: int | float) -> float:
    if total <= 0:
        return 0.0
    return float(used) * 100.0 / float(total)


@cache
def _hints(cls: type) -> dict[str, Any]:
    return get_type_hints(cls)


def _encode_value(hint: Any, value: Any) -> Any:
    if hint is datetime:
        return value.isoformat()
    if get_origin(hint) is tuple:
        inner = get_args(hint)[0]
        return [_encode_value(inner, v) for v in value]
    if is_dataclass(hint):
        return _encode(value)
    if hint is float:
        return float(value)
    if hint is int:
        return int(value)
    return value


def _encode(obj: Any) -> dict[str, Any]:
    cls = type(obj)
    hints = _hints(cls)
    out: dict[str, Any] = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        if cls is Sample and f.name == "interval":
            # Durations travel as integer nanoseconds.
            out[cls.JSON_KEYS[f.name]] = int(round(value * 1e9))
            continue
        out[cls.JSON_KEYS[f.name]] = _encode_value(hints[f.name], value)
    return out


def _decode_value(hint: Any, raw: Any) -> Any:
    if hint is datetime:
        return datetime.fromisoformat(raw)
    if get_origin(hint) is tuple:
        inner = get_args(hint)[0]
        return tuple(_decode_value(inner, r) for r in raw or ())
    if is_dataclass(hint):
        return _decode(hint, raw or {})
    if hint is float:
        return float(raw)
    if hint is int:
        return int(raw)
    if hint is str:
        return str(raw)
    return raw


def _decode(cls: type, data: dict[str, Any]) -> Any:
    hints = _hints(cls)
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        key = cls.JSON_KEYS[f.name]
        if data.get(key) is None:
            continue
        if cls is Sample and f.name == "interval":
            kwargs[f.name] = int(data[key]) / 1e9
            continue
        kwargs[f.name] = _decode_value(hints[f.name], data[key])
    return cls(**kwargs)
