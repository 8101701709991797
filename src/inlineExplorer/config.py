import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()


class Config:
    # --- Project Paths ---
    PROJECT_ROOT = Path(__file__).parent.parent.parent
    RESULTS_DIR = Path(os.getenv("EXPLORER_RESULTS_DIR", str(PROJECT_ROOT / "results")))

    # --- Host Runner ---
    # CoreCLR-style hosts run a benchmark as `corerun <benchmark>`.
    # Leave unset to launch the benchmark executable directly.
    CORE_ROOT = os.getenv("CORE_ROOT", "")
    RUNNER_PATH = os.getenv(
        "EXPLORER_RUNNER",
        os.path.join(CORE_ROOT, "corerun") if CORE_ROOT else "",
    )

    # --- Counter Capture ---
    # e.g. "perfcollect-lite --interval {interval} --out {events} --"
    CAPTURE_COMMAND = os.getenv("EXPLORER_CAPTURE_COMMAND", "")
    PMC_INTERVAL = int(os.getenv("EXPLORER_PMC_INTERVAL", "100000"))

    # --- Measurement ---
    MIN_ITERATIONS = int(os.getenv("EXPLORER_MIN_ITERATIONS", "5"))
    TARGET_SECONDS = float(os.getenv("EXPLORER_TARGET_SECONDS", "10.0"))
    RUN_TIMEOUT = int(os.getenv("EXPLORER_RUN_TIMEOUT", "600"))
    MAX_RETRIES = int(os.getenv("EXPLORER_MAX_RETRIES", "2"))

    # --- Exploration ---
    NOISE_THRESHOLD = float(os.getenv("EXPLORER_NOISE_THRESHOLD", "0.01"))
    NOISE_SIGMAS = float(os.getenv("EXPLORER_NOISE_SIGMAS", "2.0"))
    DEPTH_LIMIT = int(os.getenv("EXPLORER_DEPTH_LIMIT", "10"))

    # --- Confidence ---
    BOOTSTRAP_RESAMPLES = int(os.getenv("EXPLORER_BOOTSTRAP_RESAMPLES", "1000"))
    MIN_SAMPLES = int(os.getenv("EXPLORER_MIN_SAMPLES", "3"))
    SEED = int(os.getenv("EXPLORER_SEED", "0"))

    @classmethod
    def validate(cls):
        """Ensures the environment is set up correctly."""
        os.makedirs(cls.RESULTS_DIR, exist_ok=True)

        if cls.RUNNER_PATH and not os.path.exists(cls.RUNNER_PATH):
            print(f"⚠️  WARNING: Runner not found at {cls.RUNNER_PATH}. Benchmarks will fail to launch.")

        if cls.CAPTURE_COMMAND:
            tool = cls.CAPTURE_COMMAND.split()[0]
            if not shutil.which(tool):
                print(f"⚠️  WARNING: Capture tool '{tool}' is not on PATH.")


@dataclass
class ExplorerConfig:
    """Programmatic config for one exploration.

    Every field can be set via constructor args or falls back to the
    ``Config`` defaults (i.e. environment variables) via ``from_env()``.
    """

    results_dir: str = ""
    runner: str = ""
    capture_command: str = ""
    pmc_interval: int = 100000
    min_iterations: int = 5
    target_seconds: float = 10.0
    run_timeout: int = 600
    max_retries: int = 2
    noise_threshold: float = 0.01
    noise_sigmas: float = 2.0
    depth_limit: int = 10
    bootstrap_resamples: int = 1000
    min_samples: int = 3
    seed: int = 0

    def __post_init__(self):
        if not self.results_dir:
            self.results_dir = str(Config.RESULTS_DIR)

    @classmethod
    def from_env(cls, **overrides) -> "ExplorerConfig":
        """Build config from environment variables with keyword overrides."""
        defaults = {
            "results_dir": str(Config.RESULTS_DIR),
            "runner": Config.RUNNER_PATH,
            "capture_command": Config.CAPTURE_COMMAND,
            "pmc_interval": Config.PMC_INTERVAL,
            "min_iterations": Config.MIN_ITERATIONS,
            "target_seconds": Config.TARGET_SECONDS,
            "run_timeout": Config.RUN_TIMEOUT,
            "max_retries": Config.MAX_RETRIES,
            "noise_threshold": Config.NOISE_THRESHOLD,
            "noise_sigmas": Config.NOISE_SIGMAS,
            "depth_limit": Config.DEPTH_LIMIT,
            "bootstrap_resamples": Config.BOOTSTRAP_RESAMPLES,
            "min_samples": Config.MIN_SAMPLES,
            "seed": Config.SEED,
        }
        defaults.update(overrides)
        return cls(**defaults)

    @staticmethod
    def add_arguments(parser) -> None:
        """Add ExplorerConfig flags to an argparse parser."""
        parser.add_argument("--results-dir", default=None,
                            help="Results directory (env: EXPLORER_RESULTS_DIR)")
        parser.add_argument("--runner", default=None,
                            help="Host runner executable (env: EXPLORER_RUNNER)")
        parser.add_argument("--max-retries", type=int, default=None,
                            help="Retries per failed measurement (default: 2)")
        parser.add_argument("--noise-threshold", type=float, default=None,
                            help="Relative short-circuit threshold (default: 0.01)")
        parser.add_argument("--resamples", type=int, default=None,
                            help="Bootstrap resamples for confidence (default: 1000)")

    @classmethod
    def from_args(cls, args, **overrides) -> "ExplorerConfig":
        """Build config from parsed CLI args, falling back to env vars."""
        cli = {}
        if getattr(args, "results_dir", None):
            cli["results_dir"] = args.results_dir
        if getattr(args, "runner", None):
            cli["runner"] = args.runner
        if getattr(args, "max_retries", None) is not None:
            cli["max_retries"] = args.max_retries
        if getattr(args, "noise_threshold", None) is not None:
            cli["noise_threshold"] = args.noise_threshold
        if getattr(args, "resamples", None) is not None:
            cli["bootstrap_resamples"] = args.resamples
        cli.update(overrides)
        return cls.from_env(**cli)


# Run validation
Config.validate()
