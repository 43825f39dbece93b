from __future__ import annotations

import time
from typing import Callable

from siem_agent.errors import ParseError
from siem_agent.events import Event, Severity, new_event
from siem_agent.normalizer import LogParser


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll predicate until it holds or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def make_event(label: str, source: str = "test") -> Event:
    return Event(
        timestamp="2026-01-01T00:00:00Z",
        hostname="host-a",
        source=source,
        event_type="line",
        severity=Severity.LOW,
        raw_log=label,
    )


class LineParser(LogParser):
    """Test parser: every line is an event, except 'garbage...' (skip) and 'boom...' (error)."""

    source_type = "test"

    def parse(self, line: str, hostname: str) -> Event | None:
        line = line.strip()
        if not line or line.startswith("garbage"):
            return None
        if line.startswith("boom"):
            raise ParseError("unparseable")
        return new_event(self.source_type, "line", Severity.LOW, line, hostname)
