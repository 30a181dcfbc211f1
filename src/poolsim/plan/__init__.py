"""Plan model, codec and built-in properties."""
from .loader import dump_plan, load_plan, plan_digest, plan_from_dict, plan_to_dict
from .models import (
    Begin,
    Checkout,
    Commit,
    ErrorClass,
    ErrorExpectation,
    Execute,
    Expectation,
    InjectFault,
    Interaction,
    Operation,
    Plan,
    Query,
    Return,
    Rollback,
    Sleep,
    WorkloadConfig,
)

__all__ = [
    "Begin",
    "Checkout",
    "Commit",
    "ErrorClass",
    "ErrorExpectation",
    "Execute",
    "Expectation",
    "InjectFault",
    "Interaction",
    "Operation",
    "Plan",
    "Query",
    "Return",
    "Rollback",
    "Sleep",
    "WorkloadConfig",
    "dump_plan",
    "load_plan",
    "plan_digest",
    "plan_from_dict",
    "plan_to_dict",
]
