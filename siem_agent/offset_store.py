"""
Per-source read offsets.

Each source gets one plain-text file holding the decimal count of bytes
already consumed. Files are rewritten atomically (temp file + os.replace)
so a crash mid-write never leaves a truncated offset behind.
"""

import logging
import os
import re
import tempfile
from typing import Optional

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9._-]')


class OffsetStore:
    """Persists the last consumed byte position of every source."""

    def __init__(self, directory: str, logger: Optional[logging.Logger] = None):
        self.directory = directory
        self.log = logger or logging.getLogger(__name__)

    def path_for(self, source_id: str) -> str:
        name = _UNSAFE_CHARS.sub("_", source_id) or "source"
        return os.path.join(self.directory, f"{name}.offset")

    def load(self, source_id: str) -> int:
        """Return the persisted offset, or 0 when none is usable."""
        path = self.path_for(source_id)
        try:
            with open(path, "r", encoding="ascii") as f:
                raw = f.read().strip()
        except FileNotFoundError:
            return 0
        except OSError as e:
            self.log.warning("Could not read offset file %s: %s", path, e)
            return 0

        try:
            offset = int(raw)
        except ValueError:
            self.log.warning("Ignoring malformed offset %r in %s", raw[:40], path)
            return 0
        return max(offset, 0)

    def save(self, source_id: str, offset: int):
        """Overwrite the source's offset file. Raises OSError on failure."""
        path = self.path_for(source_id)
        os.makedirs(self.directory or ".", exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.directory or ".", prefix=".offset-")
        try:
            with os.fdopen(fd, "w", encoding="ascii") as f:
                f.write(str(int(offset)))
            os.replace(tmp, path)
        except Exception:
            os.unlink(tmp)
            raise
