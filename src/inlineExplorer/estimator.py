"""Paired deltas between a tree and its proper parent, with bootstrap confidence."""

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from .errors import InsufficientSamples
from .forest import MethodId
from .tools.counters import RunMeasurement

MEASURED = "measured"
LOW_SAMPLES = "low-samples"
MISSING = "missing"


@dataclass
class DeltaEstimate:
    inst_retired_delta: Optional[float]
    inst_retired_sd: Optional[float]
    call_delta: int
    root_call_count: int
    confidence: Optional[float]
    status: str = MEASURED

    @property
    def per_call_delta(self) -> Optional[float]:
        if self.inst_retired_delta is None:
            return None
        if self.call_delta == 0:
            return 0.0
        return self.inst_retired_delta / self.call_delta

    @property
    def per_root_call_delta(self) -> Optional[float]:
        if self.inst_retired_delta is None:
            return None
        if self.root_call_count == 0:
            return 0.0
        return self.inst_retired_delta / self.root_call_count


def bootstrap_confidence(child: Sequence[float], parent: Sequence[float],
                         resamples: int = 1000, seed: int = 0,
                         min_samples: int = 1) -> float:
    """Fraction of bootstrap resamples whose delta has the observed sign.

    Iterations of each run are resampled with replacement independently.

    Raises:
        InsufficientSamples: either run has fewer than *min_samples*
            iterations.
    """
    child = np.asarray(child, dtype=float)
    parent = np.asarray(parent, dtype=float)
    if min(len(child), len(parent)) < max(min_samples, 1):
        raise InsufficientSamples(
            f"{len(child)} and {len(parent)} iterations, need {min_samples}"
        )
    observed = np.sign(child.mean() - parent.mean())

    rng = np.random.default_rng(seed)
    child_means = child[rng.integers(0, len(child), size=(resamples, len(child)))].mean(axis=1)
    parent_means = parent[rng.integers(0, len(parent), size=(resamples, len(parent)))].mean(axis=1)
    return float(np.mean(np.sign(child_means - parent_means) == observed))


def estimate(child: RunMeasurement, parent: RunMeasurement,
             callee: Optional[MethodId] = None, root: Optional[MethodId] = None,
             root_call_count: Optional[int] = None, resamples: int = 1000,
             min_samples: int = 3, seed: int = 0) -> DeltaEstimate:
    """Delta of *child* (tree Y) over *parent* (its proper parent X).

    With fewer than *min_samples* valid iterations in either run the
    confidence is left undefined and the estimate is marked low-samples.
    A run with no valid iterations leaves the delta undefined as well.
    """
    call_delta = child.calls(callee) - parent.calls(callee)
    if root_call_count is None:
        root_call_count = child.calls(root) or parent.calls(root)

    if child.n == 0 or parent.n == 0:
        return DeltaEstimate(None, None, call_delta, root_call_count, None, LOW_SAMPLES)

    delta = child.mean - parent.mean
    sd = float(np.sqrt(child.std ** 2 / child.n + parent.std ** 2 / parent.n))

    try:
        confidence = bootstrap_confidence(child.samples, parent.samples, resamples, seed, min_samples)
    except InsufficientSamples:
        return DeltaEstimate(delta, sd, call_delta, root_call_count, None, LOW_SAMPLES)
    return DeltaEstimate(delta, sd, call_delta, root_call_count, confidence, MEASURED)
