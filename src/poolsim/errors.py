"""Exception hierarchy shared across poolsim."""
from __future__ import annotations


class PoolsimError(Exception):
    """Base class for every error raised by poolsim itself."""


class ConfigError(PoolsimError, ValueError):
    """Workload or run configuration is malformed; raised before execution."""


class PlanFormatError(PoolsimError, ValueError):
    """A stored plan does not match the plan file format."""


class BugBaseError(PoolsimError, RuntimeError):
    """Reading or writing a bug base entry failed."""
