"""
Normalized event record and the transport message that carries a batch.

Provides:
- Severity: closed set of severity levels
- Event: immutable normalized record for one observed log line
- TransportMessage: one delivery unit (agent identity, send time, events)
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

OPTIONAL_FIELDS = ("user", "process", "command")


def utc_timestamp(now: Optional[datetime] = None) -> str:
    """Render a UTC timestamp in the fixed wire format."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.strftime(TIMESTAMP_FORMAT)


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Event:
    """
    One normalized log line.

    Built by a parser and never mutated afterwards; parsers that refine a
    classification build a new instance with dataclasses.replace().
    """

    timestamp: str
    hostname: str
    source: str
    event_type: str
    severity: Severity
    raw_log: str
    user: Optional[str] = None
    process: Optional[str] = None
    command: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.severity, Severity):
            object.__setattr__(self, "severity", Severity(self.severity))

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready mapping; unset optional fields are omitted."""
        data = {
            "timestamp": self.timestamp,
            "hostname": self.hostname,
            "source": self.source,
            "event_type": self.event_type,
            "severity": self.severity.value,
        }
        for name in OPTIONAL_FIELDS:
            value = getattr(self, name)
            if value:
                data[name] = value
        data["raw_log"] = self.raw_log
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        """Rebuild an event from its JSON mapping. Raises ValueError if malformed."""
        if not isinstance(data, dict):
            raise ValueError(f"event must be an object, got {type(data).__name__}")
        try:
            return cls(
                timestamp=data["timestamp"],
                hostname=data.get("hostname", ""),
                source=data["source"],
                event_type=data["event_type"],
                severity=Severity(data["severity"]),
                raw_log=data.get("raw_log", ""),
                user=data.get("user") or None,
                process=data.get("process") or None,
                command=data.get("command") or None,
            )
        except KeyError as e:
            raise ValueError(f"event is missing field {e.args[0]!r}") from e


def new_event(
    source: str,
    event_type: str,
    severity: Severity,
    raw_log: str,
    hostname: str,
    **optional: Optional[str],
) -> Event:
    """Create an event stamped with the current UTC time."""
    return Event(
        timestamp=utc_timestamp(),
        hostname=hostname,
        source=source,
        event_type=event_type,
        severity=severity,
        raw_log=raw_log,
        **optional,
    )


@dataclass
class TransportMessage:
    """A batch wrapped with the sending agent's identity and send time."""

    agent_id: str
    events: Tuple[Event, ...]
    timestamp: str = field(default_factory=utc_timestamp)

    @classmethod
    def build(cls, agent_id: str, events: Sequence[Event]) -> "TransportMessage":
        return cls(agent_id=agent_id, events=tuple(events))

    def to_request(self, database: str, collection: str) -> Dict[str, Any]:
        """Collector ingestion body."""
        body: Dict[str, Any] = {
            "database": database,
            "collection": collection,
            "events": self.event_dicts(),
        }
        body["agent_id"] = self.agent_id
        body["timestamp"] = self.timestamp
        return body

    def event_dicts(self) -> List[Dict[str, Any]]:
        return [event.to_dict() for event in self.events]
