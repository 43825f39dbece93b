"""
On-disk overflow snapshot for the event buffer.

The snapshot is a JSON array of events. Writes go to a temp file in the same
directory and are moved into place with os.replace, so readers never observe
a half-written snapshot. A new save is appended after whatever snapshot is
already on disk; an unreadable one is moved aside first so it never blocks
later writes.
"""

import json
import logging
import os
import tempfile
import time
from typing import List, Optional, Sequence

from siem_agent.errors import OverflowStoreError
from siem_agent.events import Event

DEFAULT_FILENAME = "buffer.json"


class OverflowStore:
    """Atomic JSON snapshot of buffered events at a configured path."""

    def __init__(self, path: str, logger: Optional[logging.Logger] = None):
        self.configured_path = path
        self.log = logger or logging.getLogger(__name__)

    @property
    def path(self) -> str:
        """Snapshot file; a directory path stores into <dir>/buffer.json."""
        if os.path.isdir(self.configured_path):
            return os.path.join(self.configured_path, DEFAULT_FILENAME)
        return self.configured_path

    def exists(self) -> bool:
        return os.path.isfile(self.path)

    def save(self, events: Sequence[Event]):
        """Persist events after any snapshot already on disk."""
        if not events:
            return
        path = self.path
        pending = []
        if os.path.isfile(path):
            try:
                pending = self._read_raw(path)
            except OverflowStoreError as e:
                self.log.error("Existing snapshot is unreadable: %s", e)
                self.quarantine()
        pending.extend(event.to_dict() for event in events)

        directory = os.path.dirname(path) or "."
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=directory, prefix=".buffer-", suffix=".json")
        except OSError as e:
            raise OverflowStoreError(f"failed to prepare {path}: {e}") from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(pending, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except OSError as e:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise OverflowStoreError(f"failed to write {path}: {e}") from e

        self.log.info("Wrote %d event(s) to overflow snapshot %s", len(events), path)

    def load(self) -> List[Event]:
        """Read the snapshot. An absent snapshot is an empty list."""
        path = self.path
        if not os.path.isfile(path):
            return []
        events = []
        for item in self._read_raw(path):
            try:
                events.append(Event.from_dict(item))
            except ValueError as e:
                raise OverflowStoreError(f"malformed event in {path}: {e}") from e
        return events

    def quarantine(self) -> str:
        """Move an unreadable snapshot aside to <path>.corrupt-<utc stamp>; returns the new path."""
        path = self.path
        target = f"{path}.corrupt-{time.strftime('%Y%m%dT%H%M%SZ', time.gmtime())}"
        try:
            os.replace(path, target)
        except OSError as e:
            raise OverflowStoreError(f"failed to move {path} aside: {e}") from e
        self.log.warning("Moved unreadable snapshot %s to %s", path, target)
        return target

    def delete(self):
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise OverflowStoreError(f"failed to remove {self.path}: {e}") from e

    @staticmethod
    def _read_raw(path: str) -> list:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise OverflowStoreError(f"failed to read {path}: {e}") from e
        if not isinstance(data, list):
            raise OverflowStoreError(f"{path} does not hold a JSON array")
        return data
