"""CLI entry point for inline exploration.

Usage:
    python -m inlineExplorer.explore.run --suite benchmarks.yaml
    python -m inlineExplorer.explore.run --suite benchmarks.yaml --list
    python -m inlineExplorer.explore.run --suite benchmarks.yaml --only 8Queens --models-only
    python -m inlineExplorer.explore.run --suite benchmarks.yaml --dry-run
"""

import argparse
import json
import os
import signal
import sys
import threading

from ..config import ExplorerConfig
from ..dataset import DatasetWriter
from ..errors import BenchmarkNotFound, CounterUnavailable, MalformedForest, RunFailed
from .scheduler import Explorer
from .suite import load_suite


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Measure the performance impact of individual inlining decisions"
    )
    parser.add_argument("--suite", "-s", required=True, help="Benchmark suite YAML file")
    parser.add_argument("--only", nargs="+", help="Benchmark names to explore")
    parser.add_argument("--dataset", "-o", default=None,
                        help="Output CSV (default: <results-dir>/inline-data.csv)")
    parser.add_argument("--list", action="store_true", help="List benchmarks and exit")
    parser.add_argument("--dry-run", action="store_true", help="Print config without running")
    parser.add_argument("--models-only", action="store_true",
                        help="Only capture the base/default/full forests")
    parser.add_argument("--verbose", "-v", action="count", default=0)
    ExplorerConfig.add_arguments(parser)

    args = parser.parse_args(argv)
    config = ExplorerConfig.from_args(args)
    benchmarks = load_suite(args.suite, args.only)

    if args.list:
        print("Benchmarks:\n")
        for b in benchmarks:
            print(f"    - {b.name}: {b.path}")
        return 0

    dataset_path = args.dataset or os.path.join(config.results_dir, "inline-data.csv")
    if args.dry_run:
        print(json.dumps({
            "config": vars(config),
            "dataset": dataset_path,
            "benchmarks": [b.name for b in benchmarks],
        }, indent=2))
        return 0

    abort = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: abort.set())

    with DatasetWriter(dataset_path) as dataset:
        explorer = Explorer(config, dataset, should_abort=abort,
                            verbose=args.verbose > 0, very_verbose=args.verbose > 1)
        try:
            if args.models_only:
                for b in benchmarks:
                    try:
                        explorer.build_models(b)
                    except (RunFailed, MalformedForest) as e:
                        print(f"Error: {b.name}: {e}")
                return 0
            report = explorer.explore(benchmarks)
        except (CounterUnavailable, BenchmarkNotFound) as e:
            print(f"Error: {e}")
            return 1

    print(json.dumps(report.to_dict(), indent=2))
    print(f"Dataset: {dataset_path} ({report.rows_written} rows)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
