"""JSON / NDJSON export of Samples."""

from __future__ import annotations

import logging
import queue
import sys
import threading
from typing import TextIO

from sysmoni.model import Sample, dumps
from sysmoni.sampler import STREAM_CLOSED, Sampler

logger = logging.getLogger(__name__)


class JsonSink:
    """Writes each Sample as one JSON line, to a file or to stdout.

    With a file path, streaming mode appends (NDJSON) and one-shot mode
    overwrites.  Write failures are logged and skipped so sampling never
    stalls on a full disk or a bad path.
    """

    def __init__(self, path: str = "", stream: bool = True, out: TextIO | None = None) -> None:
        self.path = path
        self.stream = stream
        self._out = out
        self.written = 0
        self.closed = False

    def write(self, sample: Sample) -> bool:
        line = dumps(sample) + "\n"
        try:
            if self.path:
                mode = "a" if self.stream else "w"
                with open(self.path, mode, encoding="utf-8") as f:
                    f.write(line)
            else:
                out = self._out or sys.stdout
                out.write(line)
                out.flush()
        except BrokenPipeError:
            # Reader went away (e.g. piped into head); nothing left to feed.
            self.closed = True
            return False
        except OSError as e:
            logger.debug("json sink write to %s failed: %s", self.path or "stdout", e)
            return False
        self.written += 1
        return True


def run_export(sampler: Sampler, sink: JsonSink, stop: threading.Event | None = None) -> int:
    """Drive a sampler straight into *sink* without a terminal UI.

    The first Sample is skipped because its CPU and rate fields have no
    baseline yet.  One-shot sinks stop after a single record; streaming
    sinks run until interrupted.
    """
    stop = stop or threading.Event()
    samples = sampler.stream(stop)
    warmed_up = False
    try:
        while not sink.closed:
            try:
                item = samples.get(timeout=0.5)
            except queue.Empty:
                continue
            if item is STREAM_CLOSED:
                break
            if not warmed_up:
                warmed_up = True
                continue
            sink.write(item)
            if not sink.stream:
                break
    except KeyboardInterrupt:
        pass
    finally:
        stop.set()
        sampler.join(timeout=2.0)
    return 0
