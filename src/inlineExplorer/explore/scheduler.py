"""Exploration scheduler: grows each root's inline tree one decision at a time.

For every benchmark the full ("inline everything reachable") forest is
captured first. Roots are then visited by descending call count, and each
root's tree is grown breadth-first from empty to full. Every step pairs a
tree with its proper parent, so each dataset row isolates exactly one
inlining decision.

Only one benchmark process runs at a time; abort requests are honoured
between runs, never in the middle of one.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set

import numpy as np
from tqdm import tqdm

from ..config import ExplorerConfig
from ..configuration import (
    Configuration, base_configuration, default_configuration,
    full_configuration, synthesize,
)
from ..dataset import DatasetWriter, InlineDataRow
from ..errors import ExplorationAborted, MalformedForest, RunFailed
from ..estimator import estimate
from ..forest import InlineDecision, InlineForest, InlineTree, MethodId, load_forest
from ..tools.counters import RunMeasurement, load_measurement, probe_counters
from ..tools.runner import Benchmark, RunResult, run_benchmark


class RootState(Enum):
    UNVISITED = "unvisited"
    QUEUED = "queued"
    MEASURING = "measuring"
    ADVANCE = "advance"
    SHORT_CIRCUITED = "short-circuited"
    EXHAUSTED = "exhausted"
    EXCLUDED = "excluded"
    ABORTED = "aborted"


@dataclass
class RootReport:
    root: MethodId
    state: RootState = RootState.UNVISITED
    pairs: int = 0
    skipped: int = 0
    missing: int = 0
    reason: str = ""

    def to_dict(self):
        return {
            "root": str(self.root),
            "state": self.state.value,
            "pairs": self.pairs,
            "skipped": self.skipped,
            "missing": self.missing,
            "reason": self.reason,
        }


@dataclass
class BenchmarkReport:
    benchmark: str
    roots: Dict[MethodId, RootReport] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self):
        return {
            "benchmark": self.benchmark,
            "error": self.error,
            "roots": [r.to_dict() for r in self.roots.values()],
        }


@dataclass
class ExplorationReport:
    benchmarks: Dict[str, BenchmarkReport] = field(default_factory=dict)
    rows_written: int = 0
    aborted: bool = False

    def to_dict(self):
        return {
            "rows_written": self.rows_written,
            "aborted": self.aborted,
            "benchmarks": [b.to_dict() for b in self.benchmarks.values()],
        }


class Explorer:
    """Drives synthesizer -> executor -> aggregator -> estimator.

    *runner* and *loader* default to launching real processes and reading
    their counter captures; *probe* checks counter access once per
    exploration. *should_abort* is a callable or a ``threading.Event``.
    """

    def __init__(self, config: Optional[ExplorerConfig] = None,
                 dataset: Optional[DatasetWriter] = None,
                 runner: Callable[..., RunResult] = run_benchmark,
                 loader: Callable[..., RunMeasurement] = load_measurement,
                 probe: Callable[[ExplorerConfig], None] = probe_counters,
                 should_abort=None, verbose: bool = False,
                 very_verbose: bool = False):
        self.config = config or ExplorerConfig.from_env()
        self.dataset = dataset
        self._runner = runner
        self._loader = loader
        self._probe = probe
        if should_abort is None:
            self._should_abort = lambda: False
        elif hasattr(should_abort, "is_set"):
            self._should_abort = should_abort.is_set
        else:
            self._should_abort = should_abort
        self.verbose = verbose or very_verbose
        self.very_verbose = very_verbose

        # Shared across roots and benchmarks; only ever grows
        self.explored_contexts: Set[tuple] = set()
        self._measurements: Dict[tuple, RunMeasurement] = {}

    # ------------------------------------------------------------------
    # Measurement
    # ------------------------------------------------------------------

    def run(self, benchmark: Benchmark, configuration: Configuration):
        """Run once, retrying ``RunFailed`` up to ``max_retries`` times.

        Returns ``(RunResult, RunMeasurement)``. Raises ``ExplorationAborted``
        instead of retrying once an abort has been requested.
        """
        last_error = None
        for attempt in range(self.config.max_retries + 1):
            if attempt:
                if self._should_abort():
                    raise ExplorationAborted(
                        f"Abort requested after {benchmark.name} [{configuration.name}] failed"
                    ) from last_error
                print(f"  Retry {attempt}/{self.config.max_retries}: "
                      f"{benchmark.name} [{configuration.name}]", flush=True)
            try:
                result = self._runner(benchmark, configuration, self.config,
                                      verbose=self.very_verbose)
                try:
                    measurement = self._loader(result.events_file, self.config.pmc_interval)
                except (OSError, ValueError) as e:
                    raise RunFailed(f"Unreadable counter capture for {benchmark.name} "
                                    f"[{configuration.name}]: {e}", result) from e
                return result, measurement
            except RunFailed as e:
                print(f"  ERROR: {e}", flush=True)
                last_error = e
        raise last_error

    def measure(self, benchmark: Benchmark, configuration: Configuration) -> RunMeasurement:
        """Measurement for a configuration, reusing an earlier run of the same name."""
        key = (benchmark.name, configuration.name)
        if key not in self._measurements:
            _, self._measurements[key] = self.run(benchmark, configuration)
        return self._measurements[key]

    def measure_tree(self, benchmark: Benchmark, tree: InlineTree) -> RunMeasurement:
        return self.measure(benchmark, synthesize(tree, self.config.results_dir))

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    def full_forest(self, benchmark: Benchmark):
        """Run under the full policy; returns ``(forest, measurement)``."""
        configuration = full_configuration(self.config.results_dir, self.config.depth_limit)
        result, measurement = self.run(benchmark, configuration)
        self._measurements[(benchmark.name, configuration.name)] = measurement
        forest = load_forest(result.log_file)
        if self.verbose:
            print(f"*** Full config has {len(forest)} methods, "
                  f"{forest.inline_count()} inlines", flush=True)
        return forest, measurement

    def build_models(self, benchmark: Benchmark) -> Dict[str, InlineForest]:
        """Capture the base, default and full forests for *benchmark*."""
        models = {}
        for configuration in (base_configuration(self.config.results_dir),
                              default_configuration(self.config.results_dir),
                              full_configuration(self.config.results_dir, self.config.depth_limit)):
            result, measurement = self.run(benchmark, configuration)
            self._measurements[(benchmark.name, configuration.name)] = measurement
            forest = load_forest(result.log_file)
            models[configuration.name] = forest
            print(f"*** {configuration.name.capitalize()} config has {len(forest)} methods, "
                  f"{forest.inline_count()} inlines", flush=True)
        return models

    # ------------------------------------------------------------------
    # Exploration
    # ------------------------------------------------------------------

    def explore(self, benchmarks: Iterable[Benchmark]) -> ExplorationReport:
        """Explore every benchmark in turn.

        Raises ``CounterUnavailable`` or ``BenchmarkNotFound``; all other
        failures are recorded in the report.
        """
        self._probe(self.config)
        report = ExplorationReport()
        start_rows = self.dataset.rows_written if self.dataset else 0

        for benchmark in benchmarks:
            if self._should_abort():
                report.aborted = True
                break
            bench_report = BenchmarkReport(benchmark.name)
            report.benchmarks[benchmark.name] = bench_report
            try:
                self.explore_benchmark(benchmark, report=bench_report)
            except (MalformedForest, RunFailed) as e:
                print(f"  Skipping {benchmark.name}: {e}", flush=True)
                bench_report.error = str(e)
            except ExplorationAborted as e:
                print(f"  Aborted {benchmark.name}: {e}", flush=True)
                bench_report.error = str(e)
                report.aborted = True
                break
            if any(r.state == RootState.ABORTED for r in bench_report.roots.values()):
                report.aborted = True
                break

        if self.dataset:
            report.rows_written = self.dataset.rows_written - start_rows
        return report

    def explore_benchmark(self, benchmark: Benchmark, forest: Optional[InlineForest] = None,
                          report: Optional[BenchmarkReport] = None) -> BenchmarkReport:
        report = report or BenchmarkReport(benchmark.name)
        call_counts = {}
        if forest is None:
            forest, measurement = self.full_forest(benchmark)
            call_counts = {r: measurement.calls(r) for r in forest.roots() if measurement.calls(r)}

        for root in sorted(forest.ambiguous):
            print(f"  Excluding ambiguous root {root}", flush=True)
            report.roots[root] = RootReport(root, RootState.EXCLUDED, reason="ambiguous root identity")

        roots = forest.roots_by_call_count(call_counts)
        for root in roots:
            report.roots[root] = RootReport(root, RootState.QUEUED)

        for root in tqdm(roots, desc=f"Exploring {benchmark.name}", disable=not self.verbose):
            if self._should_abort():
                report.roots[root].state = RootState.ABORTED
                break
            self.explore_root(benchmark, forest, root, report.roots[root])
            if report.roots[root].state == RootState.ABORTED:
                break
        return report

    def is_noise(self, empty: RunMeasurement, full: RunMeasurement) -> bool:
        """True if the full tree is indistinguishable from no inlining."""
        delta = abs(full.mean - empty.mean)
        relative = self.config.noise_threshold * abs(empty.mean)
        stderr = np.sqrt(empty.std ** 2 / max(empty.n, 1) + full.std ** 2 / max(full.n, 1))
        return delta <= max(relative, self.config.noise_sigmas * stderr)

    def explore_root(self, benchmark: Benchmark, forest: InlineForest, root: MethodId,
                     report: Optional[RootReport] = None) -> RootReport:
        report = report or RootReport(root)
        full = forest.tree(root)
        chain = full.ordered()

        if not chain:
            report.state = RootState.SHORT_CIRCUITED
            report.reason = "no candidate decisions"
            return report
        if all(d.context in self.explored_contexts for d in chain):
            report.state = RootState.EXHAUSTED
            report.skipped = len(chain)
            report.reason = "all decisions already explored"
            return report

        report.state = RootState.MEASURING
        empty = full.empty()
        try:
            empty_m = self.measure_tree(benchmark, empty)
            if self._should_abort():
                raise ExplorationAborted("Abort requested before the full-tree run")
            full_m = self.measure_tree(benchmark, full)
        except ExplorationAborted as e:
            return self._abort(report, str(e))
        except RunFailed as e:
            self._record_missing(benchmark, root, chain, report, str(e))
            return report

        if self.is_noise(empty_m, full_m):
            report.state = RootState.SHORT_CIRCUITED
            report.reason = f"full tree within noise of empty tree ({full_m.mean - empty_m.mean:+.0f})"
            if self.verbose:
                print(f"  {root}: short-circuited, {report.reason}", flush=True)
            return report

        root_record = forest.methods.get(root)
        tree, parent_m = empty, empty_m
        for i, decision in enumerate(chain):
            if self._should_abort():
                report.state = RootState.ABORTED
                return report
            child = tree.with_decision(decision)
            if decision.context in self.explored_contexts:
                report.skipped += 1
                tree, parent_m = child, None
                continue

            report.state = RootState.MEASURING
            try:
                if parent_m is None:
                    parent_m = self.measure_tree(benchmark, tree)
                child_m = self.measure_tree(benchmark, child)
            except ExplorationAborted as e:
                return self._abort(report, str(e))
            except RunFailed as e:
                self._record_missing(benchmark, root, chain[i:], report, str(e))
                return report

            root_calls = (child_m.calls(root) or parent_m.calls(root)
                          or (root_record.call_count if root_record else 0))
            delta = estimate(
                child_m, parent_m,
                callee=decision.callee, root=root, root_call_count=root_calls,
                resamples=self.config.bootstrap_resamples,
                min_samples=self.config.min_samples, seed=self.config.seed,
            )
            self._append(InlineDataRow(benchmark.name, root, decision, delta))
            self.explored_contexts.add(decision.context)
            report.pairs += 1
            report.state = RootState.ADVANCE
            tree, parent_m = child, child_m

            if self.very_verbose:
                print(f"  {root} +{decision}: {delta.inst_retired_delta or 0:+.0f} "
                      f"(confidence {delta.confidence})", flush=True)

        report.state = RootState.EXHAUSTED
        return report

    def _abort(self, report: RootReport, reason: str) -> RootReport:
        report.state = RootState.ABORTED
        report.reason = reason
        return report

    def _record_missing(self, benchmark: Benchmark, root: MethodId,
                        decisions: List[InlineDecision], report: RootReport, reason: str):
        """Mark the rest of a root's chain as missing data."""
        print(f"  {root}: giving up on branch after retries: {reason}", flush=True)
        for decision in decisions:
            if decision.context in self.explored_contexts:
                continue
            self._append(InlineDataRow(benchmark.name, root, decision, None))
            report.missing += 1
        report.state = RootState.EXHAUSTED
        report.reason = reason

    def _append(self, row: InlineDataRow):
        if self.dataset is not None:
            self.dataset.append(row)
