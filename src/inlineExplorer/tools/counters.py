"""
Reduces raw hardware-counter captures to per-iteration instruction counts.

The capture tool writes one JSON object per line:

    {"kind": "pmc", "ts": 12.5, "pid": 4242, "tid": 4243, "count": 1}
    {"kind": "iteration", "pid": 4242, "start": 10.0, "end": 250.0}
    {"kind": "calls", "method": "0600001a:deadbeef", "count": 1000}

Each ``pmc`` record is one counter rollover (``count`` rollovers if given).
Rollovers inside an iteration span, multiplied by the PMC reload interval,
estimate the instructions retired by that iteration.
"""

import json
import os
import shutil
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from ..config import ExplorerConfig
from ..errors import CounterUnavailable
from ..forest import MethodId

PARANOID_PATH = "/proc/sys/kernel/perf_event_paranoid"


@dataclass
class RunMeasurement:
    """Per-iteration instruction counts and call counts for one run."""

    samples: Tuple[float, ...] = ()
    discarded: int = 0
    call_counts: Dict[str, int] = field(default_factory=dict)

    @property
    def n(self) -> int:
        return len(self.samples)

    @property
    def mean(self) -> float:
        return float(np.mean(self.samples)) if self.samples else 0.0

    @property
    def std(self) -> float:
        if len(self.samples) < 2:
            return 0.0
        return float(np.std(self.samples, ddof=1))

    def calls(self, method: Optional[MethodId]) -> int:
        """Call count for *method*, matching on token alone if the hash is unknown."""
        if method is None:
            return 0
        key = str(method)
        if key in self.call_counts:
            return self.call_counts[key]
        return self.call_counts.get(f"{method.token:08x}", 0)


def read_events(path: str):
    """Split a capture file into ``(pmc, iterations, calls)``."""
    pmc: List[Tuple[float, int, int]] = []
    iterations: List[Tuple[float, float, int]] = []
    calls: Dict[str, int] = {}

    with open(path) as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(record, dict):
                continue
            # Incomplete or mistyped records are dropped like unparsable lines
            try:
                kind = record.get("kind")
                if kind == "pmc":
                    pmc.append((float(record["ts"]), int(record.get("pid", 0)), int(record.get("count", 1))))
                elif kind == "iteration":
                    iterations.append((float(record["start"]), float(record["end"]), int(record.get("pid", 0))))
                elif kind == "calls":
                    key = _method_key(str(record["method"]))
                    calls[key] = calls.get(key, 0) + int(record["count"])
            except (KeyError, TypeError, ValueError):
                continue
    return pmc, iterations, calls


def _method_key(text: str) -> str:
    token, _, hash_ = text.strip().partition(":")
    if hash_:
        return str(MethodId(int(token, 16), int(hash_, 16)))
    return f"{int(token, 16):08x}"


def aggregate(pmc, iterations, calls=None, pmc_interval: int = 100000) -> RunMeasurement:
    """Estimate instructions retired per iteration.

    An iteration only counts rollovers reported by its own process.
    Iterations with no rollovers (measurement not active) or with an empty
    span are discarded and counted in ``discarded``.
    """
    by_pid: Dict[int, List[Tuple[float, int]]] = {}
    for ts, pid, count in pmc:
        by_pid.setdefault(pid, []).append((ts, count))
    timelines = {}
    for pid in {pid for _, _, pid in iterations}:
        events = sorted(by_pid.get(pid, []))
        timelines[pid] = (
            np.array([e[0] for e in events], dtype=float),
            np.concatenate(([0], np.cumsum([e[1] for e in events], dtype=np.int64))),
        )

    samples = []
    discarded = 0
    for start, end, pid in sorted(iterations):
        if end <= start:
            discarded += 1
            continue
        ts, cumulative = timelines[pid]
        lo = np.searchsorted(ts, start, side="left")
        hi = np.searchsorted(ts, end, side="right")
        rollovers = int(cumulative[hi] - cumulative[lo])
        if rollovers <= 0:
            discarded += 1
            continue
        samples.append(float(rollovers * pmc_interval))

    return RunMeasurement(tuple(samples), discarded, dict(calls or {}))


def load_measurement(path: str, pmc_interval: int = 100000) -> RunMeasurement:
    pmc, iterations, calls = read_events(path)
    return aggregate(pmc, iterations, calls, pmc_interval)


def probe_counters(config: ExplorerConfig) -> None:
    """Check once that counter capture can work on this host.

    Raises:
        CounterUnavailable: no capture tool, or the kernel refuses
            unprivileged access to performance counters.
    """
    if not config.capture_command:
        raise CounterUnavailable("No counter capture command configured (EXPLORER_CAPTURE_COMMAND)")

    tool = config.capture_command.split()[0]
    if not shutil.which(tool) and not os.path.exists(tool):
        raise CounterUnavailable(f"Capture tool '{tool}' not found")

    if sys.platform.startswith("linux"):
        try:
            with open(PARANOID_PATH) as f:
                paranoid = int(f.read().strip())
        except (OSError, ValueError):
            raise CounterUnavailable(f"Kernel performance events unavailable ({PARANOID_PATH})") from None
        if paranoid > 2 and os.geteuid() != 0:
            raise CounterUnavailable(
                f"perf_event_paranoid={paranoid}; run as root or lower it to 2 or less"
            )
