"""Run configurations and the replay synthesizer.

A ``Configuration`` is the complete set of JIT environment settings for one
benchmark run. The synthesizer is the only place that turns an
``InlineTree`` into such settings: it writes a replay file holding just
that tree and points the JIT's replay policy at it.
"""

import hashlib
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Tuple, Union

from .config import Config
from .forest import InlineTree, dump_forest

ENV_PREFIX = "COMPlus_"

# JIT knobs, without the environment prefix
ZAP_DISABLE = "ZapDisable"
INLINE_LIMIT = "JitInlineLimit"
INLINE_DEPTH_LIMIT = "JitInlineDepthLimit"
INLINE_DUMP_XML = "JitInlineDumpXml"
POLICY_DISCRETIONARY = "JitInlinePolicyDiscretionary"
POLICY_FULL = "JitInlinePolicyFull"
POLICY_REPLAY = "JitInlinePolicyReplay"
REPLAY_FILE = "JitInlineReplayFile"


@dataclass(frozen=True)
class Configuration:
    """Named, immutable environment for one run.

    ``environment`` may be given as a dict; it is stored as sorted
    ``(key, value)`` pairs so equal settings compare and hash equal.
    """

    name: str
    environment: Tuple[Tuple[str, str], ...] = ()
    results_dir: str = ""

    def __post_init__(self):
        env = self.environment
        items = env.items() if isinstance(env, dict) else env
        object.__setattr__(
            self, "environment", tuple(sorted((str(k), str(v)) for k, v in items))
        )
        if not self.results_dir:
            object.__setattr__(self, "results_dir", str(Config.RESULTS_DIR))

    @property
    def env(self) -> Dict[str, str]:
        return dict(self.environment)

    def log_path(self, benchmark_name: str, suffix: str = "err") -> str:
        """Deterministic per-(benchmark, configuration) artifact path."""
        return os.path.join(self.results_dir, f"{benchmark_name}-{self.name}.{suffix}")


def _jit_env(**knobs) -> Dict[str, str]:
    return {ENV_PREFIX + k: str(v) for k, v in knobs.items()}


# ---------------------------------------------------------------------------
# Standard models
# ---------------------------------------------------------------------------

def base_configuration(results_dir: str = "") -> Configuration:
    """Inlining disabled everywhere; the forest is minimal."""
    return Configuration("base", _jit_env(**{
        ZAP_DISABLE: 1,
        POLICY_DISCRETIONARY: 1,
        INLINE_LIMIT: 0,
        INLINE_DUMP_XML: 1,
    }), results_dir)


def default_configuration(results_dir: str = "") -> Configuration:
    """Current JIT behavior. Used to estimate the inherent noise level."""
    return Configuration("default", _jit_env(**{
        ZAP_DISABLE: 1,
        INLINE_DUMP_XML: 1,
    }), results_dir)


def full_configuration(results_dir: str = "", depth_limit: int = None) -> Configuration:
    """Inline everything reachable down to *depth_limit*.

    The trees explored later are sub-trees of this forest.
    """
    if depth_limit is None:
        depth_limit = Config.DEPTH_LIMIT
    return Configuration("full", _jit_env(**{
        ZAP_DISABLE: 1,
        POLICY_FULL: 1,
        INLINE_DEPTH_LIMIT: depth_limit,
        INLINE_DUMP_XML: 1,
    }), results_dir)


# ---------------------------------------------------------------------------
# Replay synthesis
# ---------------------------------------------------------------------------

def replay_name(tree: InlineTree, content: str = None) -> str:
    if content is None:
        content = dump_forest([tree])
    digest = hashlib.md5(content.encode()).hexdigest()[:10]
    return f"replay-{tree.root.token:08x}-{len(tree)}-{digest}"


def synthesize(tree: InlineTree, results_dir: Union[str, Path] = "") -> Configuration:
    """Configuration that replays exactly *tree* for its root and nothing else.

    Methods absent from the replay file get no inlines, so the only
    inlining performed is the tree's. Structurally equal trees produce
    the same replay file, name and environment.
    """
    results_dir = str(results_dir or Config.RESULTS_DIR)
    content = dump_forest([tree])
    name = replay_name(tree, content)

    replay_dir = Path(results_dir) / "replay"
    replay_dir.mkdir(parents=True, exist_ok=True)
    replay_path = replay_dir / f"{name}.xml"
    if not replay_path.exists() or replay_path.read_text() != content:
        replay_path.write_text(content)

    return Configuration(name, _jit_env(**{
        ZAP_DISABLE: 1,
        POLICY_REPLAY: 1,
        REPLAY_FILE: str(replay_path),
    }), results_dir)
