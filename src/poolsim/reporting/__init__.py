"""Reporters for session results."""
from __future__ import annotations

from typing import List, Optional

from .base import ReportManager, Reporter
from .json_report import JsonReporter
from .terminal import TerminalReporter, print_replay


def build_report_manager(report_format: str, report_path: Optional[str], *, use_color: bool) -> ReportManager:
    reporters: List[Reporter] = []
    if report_format == "json":
        reporters.append(JsonReporter(report_path))
        # A report written to a file still gets the terminal summary.
        if report_path:
            reporters.append(TerminalReporter(use_color=use_color))
    else:
        reporters.append(TerminalReporter(use_color=use_color))
    return ReportManager(reporters)


__all__ = [
    "JsonReporter",
    "ReportManager",
    "Reporter",
    "TerminalReporter",
    "build_report_manager",
    "print_replay",
]
