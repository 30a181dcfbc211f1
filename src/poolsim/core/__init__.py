"""Runner, oracle, comparison, shrinking and the bug base."""
from .bugbase import BugBase, BugBaseEntry
from .comparator import Divergence, compare_traces, normalize_rowset
from .modes import Executor, ModeResult, ResetConfig, RunnerOptions
from .results import FailureRecord, QueryObservation, RunResult, Trace, TraceEvent
from .runner import Runner
from .shrinker import ShrinkResult, shrink, shrink_with_report

__all__ = [
    "BugBase",
    "BugBaseEntry",
    "Divergence",
    "Executor",
    "FailureRecord",
    "ModeResult",
    "QueryObservation",
    "ResetConfig",
    "RunResult",
    "Runner",
    "RunnerOptions",
    "ShrinkResult",
    "Trace",
    "TraceEvent",
    "compare_traces",
    "normalize_rowset",
    "shrink",
    "shrink_with_report",
]
