import math
import os
import subprocess
import time
from dataclasses import dataclass, field
from typing import List, Optional

from ..config import Config, ExplorerConfig
from ..configuration import Configuration
from ..errors import BenchmarkNotFound, RunFailed

# Exported to every benchmark; a configuration may override it
ITERATIONS_ENV = "EXPLORER_ITERATIONS"


@dataclass(frozen=True)
class Benchmark:
    """A benchmark executable and what a successful run looks like."""

    name: str
    path: str
    expected_time: float = 1.0      # seconds per iteration, roughly
    exit_code: int = 100            # CoreCLR tests return 100 on success
    args: tuple = ()
    timeout: Optional[int] = None

    @property
    def directory(self) -> str:
        return os.path.dirname(os.path.abspath(self.path))


@dataclass
class RunResult:
    exit_code: int
    success: bool
    log_file: str
    events_file: str
    command: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0


def iterations_for(benchmark: Benchmark, config: ExplorerConfig) -> int:
    """Iteration count that keeps each run near the target duration."""
    if benchmark.expected_time <= 0:
        return config.min_iterations
    return max(config.min_iterations, math.ceil(config.target_seconds / benchmark.expected_time))


def build_command(benchmark: Benchmark, configuration: Configuration,
                  config: ExplorerConfig) -> List[str]:
    cmd = []
    if config.capture_command:
        cmd += config.capture_command.format(
            events=configuration.log_path(benchmark.name, "events"),
            interval=config.pmc_interval,
        ).split()
    if config.runner:
        cmd.append(config.runner)
    cmd.append(os.path.abspath(benchmark.path))
    cmd += list(benchmark.args)
    return cmd


def build_environment(benchmark: Benchmark, configuration: Configuration,
                      config: ExplorerConfig) -> dict:
    """Ambient environment overlaid with the configuration's settings."""
    env = dict(os.environ)
    env[ITERATIONS_ENV] = str(iterations_for(benchmark, config))
    if config.runner:
        env["CORE_ROOT"] = os.path.dirname(os.path.abspath(config.runner))
    env.update(configuration.env)
    return env


def run_benchmark(benchmark: Benchmark, configuration: Configuration,
                  config: Optional[ExplorerConfig] = None,
                  verbose: bool = False) -> RunResult:
    """
    Runs *benchmark* once under *configuration* and waits for it to exit.

    stderr goes to ``<results>/<benchmark>-<configuration>.err``; a rerun
    with the same configuration name overwrites it.

    Raises:
        BenchmarkNotFound: the benchmark or runner executable is missing.
        RunFailed: the process could not start, timed out, exited with
            a code other than the benchmark's expected one, or (with a
            capture command configured) left no counter capture.
    """
    config = config or ExplorerConfig.from_env()

    if not os.path.exists(benchmark.path):
        raise BenchmarkNotFound(f"Benchmark {benchmark.name} not found at {benchmark.path}")
    if config.runner and not os.path.exists(config.runner):
        raise BenchmarkNotFound(f"Runner not found at {config.runner}")

    os.makedirs(configuration.results_dir, exist_ok=True)
    log_file = configuration.log_path(benchmark.name, "err")
    events_file = configuration.log_path(benchmark.name, "events")
    cmd = build_command(benchmark, configuration, config)
    env = build_environment(benchmark, configuration, config)
    timeout = benchmark.timeout or config.run_timeout

    if verbose:
        print(f"  Launching {' '.join(cmd)}", flush=True)

    # Drop any capture left by an earlier run of this configuration
    if os.path.exists(events_file):
        os.remove(events_file)

    start = time.time()
    try:
        with open(log_file, "w") as err:
            proc = subprocess.run(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=err,
                cwd=benchmark.directory,
                env=env,
                timeout=timeout,
            )
    except subprocess.TimeoutExpired:
        raise RunFailed(
            f"{benchmark.name} [{configuration.name}] timed out after {timeout}s"
        ) from None
    except OSError as e:
        raise RunFailed(f"{benchmark.name} [{configuration.name}] failed to launch: {e}") from e
    duration = time.time() - start

    result = RunResult(
        exit_code=proc.returncode,
        success=proc.returncode == benchmark.exit_code,
        log_file=log_file,
        events_file=events_file,
        command=cmd,
        duration_seconds=duration,
    )

    if verbose:
        print(f"  Finished {benchmark.name} -- configuration: {configuration.name}, "
              f"exit code: {proc.returncode} (expected {benchmark.exit_code})", flush=True)

    if not result.success:
        raise RunFailed(
            f"{benchmark.name} [{configuration.name}] exited with {proc.returncode}, "
            f"expected {benchmark.exit_code}",
            result,
        )
    if config.capture_command and not os.path.exists(events_file):
        raise RunFailed(
            f"{benchmark.name} [{configuration.name}] wrote no counter capture to {events_file}",
            result,
        )
    return result
