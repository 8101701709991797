import os

import pytest

from inlineExplorer.config import ExplorerConfig
from inlineExplorer.configuration import REPLAY_FILE, ENV_PREFIX
from inlineExplorer.errors import RunFailed
from inlineExplorer.forest import load_forest
from inlineExplorer.tools.counters import RunMeasurement
from inlineExplorer.tools.runner import Benchmark, RunResult


def method_xml(token, hash_=0, inlines="", call_count=None):
    extra = f"<CallCount>{call_count}</CallCount>" if call_count is not None else ""
    return (f"<Method><Token>{token}</Token><Hash>{hash_}</Hash>{extra}"
            f"<Inlines>{inlines}</Inlines></Method>")


def inline_xml(token, offset, hash_=0, inlines="", data=""):
    nested = f"<Inlines>{inlines}</Inlines>" if inlines else ""
    data = f"<Data>{data}</Data>" if data else ""
    return (f"<Inline><MethodToken>{token}</MethodToken><Hash>{hash_}</Hash>"
            f"<Offset>{offset}</Offset><Reason>aggressive</Reason>{data}{nested}</Inline>")


def forest_xml(*methods):
    return "<InlineForest><Methods>" + "".join(methods) + "</Methods></InlineForest>"


class FakeHost:
    """Stands in for the benchmark process and the counter capture.

    *cost* maps the replayed ``InlineTree`` (None for the standard models)
    to the instructions retired per iteration.
    """

    def __init__(self, forests, cost, samples=5, fail=None, calls=None):
        self.forests = forests if isinstance(forests, dict) else {None: forests}
        self.cost = cost
        self.samples = samples
        self.fail = fail or (lambda tree: False)
        self.calls = calls or (lambda tree: {})
        self.runs = []
        self._measurements = {}

    def run(self, benchmark, configuration, config, verbose=False):
        self.runs.append(configuration.name)
        replay = configuration.env.get(ENV_PREFIX + REPLAY_FILE)
        tree = None
        if replay:
            tree = next(iter(load_forest(replay).trees.values()))
        if self.fail(tree):
            raise RunFailed(f"{benchmark.name} [{configuration.name}] exited with -1")

        os.makedirs(configuration.results_dir, exist_ok=True)
        log_file = configuration.log_path(benchmark.name, "err")
        with open(log_file, "w") as f:
            if tree is None:
                f.write(self.forests.get(benchmark.name, self.forests.get(None, "")))
        events = configuration.log_path(benchmark.name, "events")
        value = float(self.cost(tree))
        self._measurements[events] = RunMeasurement(
            tuple([value] * self.samples), 0, dict(self.calls(tree))
        )
        return RunResult(benchmark.exit_code, True, log_file, events, [], 0.0)

    def load(self, events_file, pmc_interval):
        return self._measurements[events_file]

    def count(self, name):
        return self.runs.count(name)


@pytest.fixture
def explorer_config(tmp_path):
    return ExplorerConfig(results_dir=str(tmp_path / "results"), max_retries=1,
                          bootstrap_resamples=200, min_samples=3)


@pytest.fixture
def benchmark(tmp_path):
    path = tmp_path / "bench" / "8queens.exe"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("")
    return Benchmark("8Queens", str(path))
