from __future__ import annotations

from typing import TYPE_CHECKING

__all__ = [
    "__version__",
    "LoopConfig",
    "LoopOutcome",
    "LoopRunner",
    "SessionTracker",
    "TerminationReason",
    "run_loop",
]

__version__ = "0.1.0"

if TYPE_CHECKING:
    from .runner import LoopConfig, LoopOutcome, LoopRunner, TerminationReason, run_loop
    from .tracker import SessionTracker


def __getattr__(name: str):
    if name in {"LoopConfig", "LoopOutcome", "LoopRunner", "TerminationReason", "run_loop"}:
        from . import runner

        return getattr(runner, name)
    if name == "SessionTracker":
        from .tracker import SessionTracker

        return SessionTracker
    raise AttributeError(f"module 'ralph' has no attribute {name!r}")
