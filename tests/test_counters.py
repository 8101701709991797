import json
from unittest.mock import patch, mock_open

import pytest

from inlineExplorer.config import ExplorerConfig
from inlineExplorer.errors import CounterUnavailable
from inlineExplorer.forest import MethodId
from inlineExplorer.tools.counters import aggregate, load_measurement, probe_counters


def _write_events(path, records):
    with open(path, "w") as f:
        for r in records:
            f.write(json.dumps(r) + "\n")


def test_rollovers_per_iteration_times_interval():
    pmc = [(1.0, 7, 1), (2.0, 7, 1), (3.0, 7, 2), (11.0, 7, 1), (12.0, 7, 1)]
    iterations = [(0.0, 5.0, 7), (10.0, 15.0, 7)]
    m = aggregate(pmc, iterations, pmc_interval=1000)
    assert m.samples == (4000.0, 2000.0)
    assert m.mean == 3000.0
    assert m.std == pytest.approx(1414.2135, rel=1e-4)
    assert m.discarded == 0


def test_other_processes_are_ignored():
    pmc = [(1.0, 7, 1), (1.5, 8, 50), (2.0, 7, 1)]
    m = aggregate(pmc, [(0.0, 5.0, 7)], pmc_interval=10)
    assert m.samples == (20.0,)


def test_zero_count_iterations_are_discarded():
    pmc = [(1.0, 7, 3)]
    iterations = [(0.0, 5.0, 7), (20.0, 25.0, 7), (30.0, 30.0, 7)]
    m = aggregate(pmc, iterations, pmc_interval=100)
    assert m.samples == (300.0,)
    assert m.discarded == 2


def test_no_events_at_all():
    m = aggregate([], [(0.0, 1.0, 7)], pmc_interval=100)
    assert m.samples == ()
    assert m.mean == 0.0
    assert m.std == 0.0


def test_load_measurement_reads_json_lines(tmp_path):
    path = tmp_path / "FFT-full.events"
    _write_events(path, [
        {"kind": "iteration", "pid": 3, "start": 0.0, "end": 10.0},
        {"kind": "pmc", "ts": 1.0, "pid": 3, "tid": 4},
        {"kind": "pmc", "ts": 2.0, "pid": 3, "tid": 4, "count": 2},
        {"kind": "calls", "method": "06000002:0000002a", "count": 10},
        {"kind": "calls", "method": "06000002:0000002a", "count": 5},
        {"kind": "calls", "method": "06000003", "count": 7},
    ])
    with open(path, "a") as f:
        f.write("not json\n\n")

    m = load_measurement(str(path), pmc_interval=100)
    assert m.samples == (300.0,)
    assert m.calls(MethodId(0x06000002, 0x2A)) == 15
    # Hash unknown to instrumentation: match on token
    assert m.calls(MethodId(0x06000003, 0x99)) == 7
    assert m.calls(MethodId(0x06000009)) == 0
    assert m.calls(None) == 0


def test_probe_requires_capture_command():
    with pytest.raises(CounterUnavailable):
        probe_counters(ExplorerConfig(results_dir="/tmp", capture_command=""))


@patch('inlineExplorer.tools.counters.shutil.which', return_value=None)
def test_probe_requires_capture_tool(mock_which):
    config = ExplorerConfig(results_dir="/tmp", capture_command="no-such-capture-tool --out {events}")
    with pytest.raises(CounterUnavailable):
        probe_counters(config)


@patch('inlineExplorer.tools.counters.sys.platform', 'linux')
@patch('inlineExplorer.tools.counters.os.geteuid', return_value=1000)
@patch('inlineExplorer.tools.counters.shutil.which', return_value='/usr/bin/capture')
def test_probe_checks_perf_event_paranoid(mock_which, mock_euid):
    config = ExplorerConfig(results_dir="/tmp", capture_command="capture --out {events}")

    with patch('builtins.open', mock_open(read_data="3\n")):
        with pytest.raises(CounterUnavailable):
            probe_counters(config)

    with patch('builtins.open', mock_open(read_data="1\n")):
        probe_counters(config)


def test_rollovers_are_matched_to_their_own_process():
    pmc = [(1.0, 7, 2), (1.5, 8, 40), (11.0, 8, 3)]
    iterations = [(0.0, 5.0, 7), (10.0, 15.0, 8)]
    m = aggregate(pmc, iterations, pmc_interval=10)
    assert m.samples == (20.0, 30.0)


def test_incomplete_records_are_skipped(tmp_path):
    path = tmp_path / "FFT-full.events"
    _write_events(path, [
        {"kind": "iteration", "pid": 3, "start": 0.0, "end": 10.0},
        {"kind": "iteration", "pid": 3, "end": 20.0},
        {"kind": "pmc", "pid": 3},
        {"kind": "pmc", "ts": 2.0, "pid": 3},
        {"kind": "pmc", "ts": "soon", "pid": 3},
        {"kind": "calls", "method": "not-hex", "count": 4},
        {"kind": "calls", "method": "06000002", "count": None},
        {"kind": "calls", "method": "06000002", "count": 2},
        [1, 2, 3],
        "pmc",
    ])

    m = load_measurement(str(path), pmc_interval=100)
    assert m.samples == (100.0,)
    assert m.calls(MethodId(0x06000002)) == 2
