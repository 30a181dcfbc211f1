"""Plan generation."""
from .planner import PlanGenerator, WorkloadModel, generate, guard_operation

__all__ = [
    "PlanGenerator",
    "WorkloadModel",
    "generate",
    "guard_operation",
]
