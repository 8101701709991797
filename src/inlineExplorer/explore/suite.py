"""Benchmark suite loader.

Reads a YAML file listing the benchmarks to explore::

    benchmarks:
      - name: 8Queens
        path: jit/performance/codequality/benchi/8queens/8queens.exe
        expected_time: 0.5
        exit_code: 100
      - name: FFT
        path: /abs/path/fft.exe
        args: ["-quick"]
        timeout: 300

Relative paths are resolved against the suite file's directory.
"""

from pathlib import Path
from typing import List, Optional

import yaml

from ..tools.runner import Benchmark


def load_suite(path: str, only: Optional[List[str]] = None) -> List[Benchmark]:
    """Load benchmarks from *path*, optionally keeping only names in *only*."""
    suite_path = Path(path)
    if not suite_path.exists():
        raise FileNotFoundError(f"Benchmark suite not found: {suite_path}")

    with open(suite_path) as f:
        cfg = yaml.safe_load(f) or {}

    benchmarks = []
    for entry in cfg.get("benchmarks", []):
        if "name" not in entry or "path" not in entry:
            raise ValueError(f"Benchmark entry needs 'name' and 'path': {entry}")
        bench_path = Path(entry["path"])
        if not bench_path.is_absolute():
            bench_path = suite_path.parent / bench_path
        benchmarks.append(Benchmark(
            name=str(entry["name"]),
            path=str(bench_path),
            expected_time=float(entry.get("expected_time", 1.0)),
            exit_code=int(entry.get("exit_code", 100)),
            args=tuple(str(a) for a in entry.get("args", [])),
            timeout=entry.get("timeout"),
        ))

    if only:
        wanted = set(only)
        benchmarks = [b for b in benchmarks if b.name in wanted]
    return benchmarks
