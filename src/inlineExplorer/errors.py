"""Failure conditions raised while exploring inline forests.

Resource-level failures (``CounterUnavailable``, ``BenchmarkNotFound``)
abort the whole exploration. Everything else is contained by the
scheduler and recorded as missing or partial data.
"""


class ExplorerError(Exception):
    """Base class for exploration failures."""


class RunFailed(ExplorerError):
    """A benchmark process crashed, exited unexpectedly, or did not launch."""

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result


class CounterUnavailable(ExplorerError):
    """Hardware performance counters cannot be read on this host."""


class BenchmarkNotFound(ExplorerError):
    """The benchmark (or its host runner) executable does not exist."""


class AmbiguousRoot(ExplorerError):
    """A root method identity occurs more than once in a forest."""

    def __init__(self, root):
        super().__init__(f"Ambiguous root method {root}")
        self.root = root


class MalformedForest(ExplorerError):
    """The compiler's inline forest dump could not be parsed."""


class InsufficientSamples(ExplorerError):
    """Too few valid iterations to estimate confidence.

    Never escapes the estimator: the row is written with
    ``Status=low-samples`` and an empty ``Confidence``.
    """


class ExplorationAborted(ExplorerError):
    """An abort was requested; no further runs are started."""


class StructuralError(ExplorerError):
    """An edit would break the ancestor-before-descendant invariant."""
