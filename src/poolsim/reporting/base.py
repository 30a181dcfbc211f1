"""Reporter interface definitions."""
from __future__ import annotations

from typing import TYPE_CHECKING, List, Sequence

from poolsim.plan.models import Plan

if TYPE_CHECKING:
    from poolsim.config import RunSettings
    from poolsim.core.session import SessionResult


class Reporter:
    """Interface for output renderers."""

    def on_start(self, settings: "RunSettings", plan: Plan) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def on_complete(self, result: "SessionResult") -> None:  # pragma: no cover - interface
        raise NotImplementedError


class ReportManager:
    """Dispatches session callbacks to multiple reporters."""

    def __init__(self, reporters: Sequence[Reporter]) -> None:
        self._reporters = list(reporters)

    def start(self, settings: "RunSettings", plan: Plan) -> None:
        for reporter in self._reporters:
            reporter.on_start(settings, plan)

    def complete(self, result: "SessionResult") -> None:
        for reporter in self._reporters:
            reporter.on_complete(result)

    def reporters(self) -> List[Reporter]:
        return list(self._reporters)
