import os
import subprocess
import sys
from unittest.mock import patch, MagicMock

import pytest

from inlineExplorer.config import ExplorerConfig
from inlineExplorer.configuration import Configuration
from inlineExplorer.errors import BenchmarkNotFound, RunFailed
from inlineExplorer.tools.runner import (
    ITERATIONS_ENV, Benchmark, build_command, iterations_for, run_benchmark,
)


def _ok(returncode=100):
    response = MagicMock()
    response.returncode = returncode
    return response


@patch('inlineExplorer.tools.runner.subprocess.run')
def test_configuration_overrides_ambient_environment(mock_subprocess, benchmark, tmp_path, monkeypatch):
    monkeypatch.setenv("COMPlus_JitInlineLimit", "99")
    monkeypatch.setenv("UNRELATED", "kept")
    mock_subprocess.return_value = _ok()
    config = ExplorerConfig(results_dir=str(tmp_path / "results"))
    configuration = Configuration("base", {"COMPlus_JitInlineLimit": "0"}, config.results_dir)

    result = run_benchmark(benchmark, configuration, config)

    assert result.success is True
    kwargs = mock_subprocess.call_args.kwargs
    assert kwargs["env"]["COMPlus_JitInlineLimit"] == "0"
    assert kwargs["env"]["UNRELATED"] == "kept"
    assert kwargs["env"][ITERATIONS_ENV] == "10"
    assert kwargs["cwd"] == benchmark.directory
    assert result.log_file == os.path.join(config.results_dir, "8Queens-base.err")


@patch('inlineExplorer.tools.runner.subprocess.run')
def test_unexpected_exit_code_raises(mock_subprocess, benchmark, tmp_path):
    mock_subprocess.return_value = _ok(returncode=0)
    config = ExplorerConfig(results_dir=str(tmp_path))

    with pytest.raises(RunFailed) as err:
        run_benchmark(benchmark, Configuration("default", {}, str(tmp_path)), config)

    assert err.value.result.exit_code == 0
    assert err.value.result.success is False


@patch('inlineExplorer.tools.runner.subprocess.run')
def test_timeout_and_launch_failure_raise(mock_subprocess, benchmark, tmp_path):
    config = ExplorerConfig(results_dir=str(tmp_path))
    configuration = Configuration("default", {}, str(tmp_path))

    mock_subprocess.side_effect = subprocess.TimeoutExpired(cmd="bench", timeout=1)
    with pytest.raises(RunFailed):
        run_benchmark(benchmark, configuration, config)

    mock_subprocess.side_effect = PermissionError("not executable")
    with pytest.raises(RunFailed):
        run_benchmark(benchmark, configuration, config)


def test_missing_executable_is_fatal(tmp_path):
    config = ExplorerConfig(results_dir=str(tmp_path))
    missing = Benchmark("gone", str(tmp_path / "gone.exe"))
    with pytest.raises(BenchmarkNotFound):
        run_benchmark(missing, Configuration("default", {}, str(tmp_path)), config)


def test_command_with_runner_and_capture(benchmark, tmp_path):
    config = ExplorerConfig(results_dir=str(tmp_path), runner="/core/corerun",
                            capture_command="capture --every {interval} --out {events} --",
                            pmc_interval=4096)
    configuration = Configuration("full", {}, str(tmp_path))
    cmd = build_command(benchmark, configuration, config)
    assert cmd == [
        "capture", "--every", "4096", "--out", os.path.join(str(tmp_path), "8Queens-full.events"),
        "--", "/core/corerun", os.path.abspath(benchmark.path),
    ]


def test_iterations_normalized_by_expected_time():
    config = ExplorerConfig(results_dir="/tmp", min_iterations=5, target_seconds=10.0)
    assert iterations_for(Benchmark("slow", "x", expected_time=5.0), config) == 5
    assert iterations_for(Benchmark("fast", "x", expected_time=0.25), config) == 40
    assert iterations_for(Benchmark("odd", "x", expected_time=0.0), config) == 5


def test_subprocess_sees_configured_value(tmp_path, monkeypatch):
    """Launches a real process and checks what it observed."""
    script = tmp_path / "bench" / "show_env.py"
    script.parent.mkdir()
    script.write_text(
        "import os, sys\n"
        "sys.stderr.write(os.environ.get('EXPLORER_TEST_KNOB', '<unset>') + '\\n')\n"
        "sys.stderr.write(os.getcwd() + '\\n')\n"
        "sys.exit(100)\n"
    )
    monkeypatch.setenv("EXPLORER_TEST_KNOB", "ambient")
    config = ExplorerConfig(results_dir=str(tmp_path / "results"), runner=sys.executable)
    configuration = Configuration("override", {"EXPLORER_TEST_KNOB": "configured"}, config.results_dir)

    result = run_benchmark(Benchmark("show_env", str(script), timeout=60), configuration, config)
    seen, cwd = open(result.log_file).read().splitlines()[:2]

    assert seen == "configured"
    assert os.path.realpath(cwd) == os.path.realpath(str(script.parent))

    # Same configuration name: the log is overwritten, not appended
    run_benchmark(Benchmark("show_env", str(script), timeout=60), configuration, config)
    assert len(open(result.log_file).read().splitlines()) == 2


@patch('inlineExplorer.tools.runner.subprocess.run')
def test_stale_capture_is_removed_before_the_run(mock_subprocess, benchmark, tmp_path):
    mock_subprocess.return_value = _ok()
    config = ExplorerConfig(results_dir=str(tmp_path), capture_command="capture --out {events} --")
    configuration = Configuration("replay-1234", {}, str(tmp_path))
    stale = tmp_path / "8Queens-replay-1234.events"
    stale.write_text('{"kind": "pmc", "ts": 1.0, "pid": 1, "count": 7}\n')

    with pytest.raises(RunFailed) as err:
        run_benchmark(benchmark, configuration, config)

    assert not stale.exists()
    assert err.value.result.success is True


@patch('inlineExplorer.tools.runner.subprocess.run')
def test_fresh_capture_is_accepted(mock_subprocess, benchmark, tmp_path):
    config = ExplorerConfig(results_dir=str(tmp_path), capture_command="capture --out {events} --")
    configuration = Configuration("default", {}, str(tmp_path))

    def capture(cmd, **kwargs):
        with open(cmd[2], "w") as f:
            f.write('{"kind": "iteration", "pid": 1, "start": 0.0, "end": 1.0}\n')
        return _ok()

    mock_subprocess.side_effect = capture
    result = run_benchmark(benchmark, configuration, config)
    assert os.path.exists(result.events_file)
