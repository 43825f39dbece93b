"""
Incremental tailing of one log source.

Provides:
- SourceTailer: replays unread lines from the persisted offset, then polls
  for appends and rotation, normalizing each complete line into an Event

Each tailer owns two threads: a replay thread that drains everything present
at start-up through a blocking handoff, and a watch thread that takes over
once replay is done and hands events off without blocking (dropping them when
the consumer is saturated, unless drop_when_full is off).
"""

import logging
import os
import queue
import threading
from typing import Iterator, List, Optional

from siem_agent.errors import ParseError, TailerError
from siem_agent.events import Event
from siem_agent.normalizer import LogParser
from siem_agent.offset_store import OffsetStore

HANDOFF_TIMEOUT = 0.2
JOIN_TIMEOUT = 5.0


class SourceTailer:
    """
    Tail one log file, yielding normalized events with offset persistence.

    Features:
    - start(): opens the file and seeks to the saved offset (reset to 0 when
      the file is now shorter than the offset)
    - events(): lazy, non-restartable iterator ending after stop()
    - Offset advanced and persisted after every successfully parsed line
    - Partial trailing lines are left unconsumed until their newline arrives
    - Rotation detection via inode change, shrink below the read position, or
      disappearance; the path is reopened from offset 0 and retried until it
      reappears
    """

    def __init__(
        self,
        source_id: str,
        path: str,
        parser: LogParser,
        hostname: str,
        offset_store: OffsetStore,
        queue_size: int = 100,
        poll_interval: float = 0.5,
        reopen_delay: float = 0.1,
        drop_when_full: bool = True,
        stop_event: Optional[threading.Event] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.source_id = source_id
        self.path = path
        self.parser = parser
        self.hostname = hostname
        self.offset_store = offset_store
        self.poll_interval = poll_interval
        self.reopen_delay = reopen_delay
        self.drop_when_full = drop_when_full
        self.log = logger or logging.getLogger(__name__)

        self.dropped = 0
        self.emitted = 0

        self._queue: "queue.Queue[Event]" = queue.Queue(maxsize=queue_size)
        self._stop = stop_event or threading.Event()
        self._replay_done = threading.Event()
        self._lock = threading.Lock()
        self._threads: List[threading.Thread] = []
        self._file = None
        self._inode = None
        self._offset = 0
        self._started = False
        self._events_taken = False
        self._missing_logged = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def offset(self) -> int:
        with self._lock:
            return self._offset

    def start(self):
        """Open the file at its persisted offset and launch replay + watch threads."""
        if self._started:
            raise TailerError(f"tailer for {self.path} already started")

        with self._lock:
            self._offset = self.offset_store.load(self.source_id)
            self._open()
            size = os.fstat(self._file.fileno()).st_size
            if self._offset > size:
                self.log.warning(
                    "%s: saved offset %d is past end of file (%d bytes), starting over",
                    self.source_id, self._offset, size,
                )
                self._offset = 0
                self._persist_offset()
            self._file.seek(self._offset)

        self._started = True
        self._threads = [
            threading.Thread(target=self._replay, name=f"replay-{self.source_id}", daemon=True),
            threading.Thread(target=self._watch, name=f"watch-{self.source_id}", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        self.log.info("Tailing %s (%s) from offset %d", self.path, self.source_id, self._offset)

    def events(self) -> Iterator[Event]:
        """Iterator over emitted events; may only be taken once."""
        if self._events_taken:
            raise TailerError(f"events() of {self.source_id} already consumed")
        self._events_taken = True
        return self._iter_events()

    def stop(self):
        """Signal the tailer to stop, wait for its threads, close the file."""
        self._stop.set()
        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current:
                thread.join(timeout=JOIN_TIMEOUT)
        with self._lock:
            if self._file:
                self._file.close()
                self._file = None

    def poll_once(self):
        """One reactive step: handle rotation, then read any appended lines."""
        if self._rotated():
            if self._stop.wait(self.reopen_delay):
                return
            self._reopen()
        with self._lock:
            if self._file is not None:
                self._consume(blocking=not self.drop_when_full)

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    def _replay(self):
        with self._lock:
            if self._file is not None:
                self._consume(blocking=True)
        self._replay_done.set()
        self.log.debug("%s: replay complete at offset %d", self.source_id, self._offset)

    def _watch(self):
        while not self._replay_done.wait(HANDOFF_TIMEOUT):
            if self._stop.is_set():
                return
        while not self._stop.wait(self.poll_interval):
            self.poll_once()

    def _iter_events(self) -> Iterator[Event]:
        while True:
            try:
                event = self._queue.get(timeout=HANDOFF_TIMEOUT)
            except queue.Empty:
                if self._stop.is_set() and not self._running():
                    return
                continue
            yield event

    def _running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    # ------------------------------------------------------------------
    # Internal helpers (call with self._lock held)
    # ------------------------------------------------------------------

    def _open(self):
        """Open (or reopen) the path in binary mode so offsets are byte exact."""
        try:
            handle = open(self.path, "rb")
        except OSError as e:
            raise TailerError(f"failed to open log file {self.path}: {e}") from e
        if self._file:
            self._file.close()
        self._file = handle
        self._inode = os.fstat(handle.fileno()).st_ino

    def _consume(self, blocking: bool):
        """Read every complete line available on the current handle."""
        while not self._stop.is_set():
            line_start = self._file.tell()
            raw = self._file.readline()
            if not raw:
                return
            if not raw.endswith(b"\n"):
                # Partial write: leave it for the next pass
                self._file.seek(line_start)
                return

            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue

            event = self._parse(line)
            if event is None:
                continue

            if not self._emit(event, blocking):
                return

            self._offset = self._file.tell()
            self._persist_offset()

    def _parse(self, line: str) -> Optional[Event]:
        try:
            return self.parser.parse(line, self.hostname)
        except (ParseError, ValueError) as e:
            self.log.debug("%s: skipping unparseable line: %s (%s)", self.source_id, line[:100], e)
            return None

    def _emit(self, event: Event, blocking: bool) -> bool:
        """Hand an event to the consumer. False only when stop aborted a blocking handoff."""
        if not blocking:
            try:
                self._queue.put_nowait(event)
            except queue.Full:
                self.dropped += 1
                if self.dropped == 1 or self.dropped % 100 == 0:
                    self.log.warning(
                        "%s: consumer saturated, dropped %d event(s) so far",
                        self.source_id, self.dropped,
                    )
                return True
            self.emitted += 1
            return True

        while not self._stop.is_set():
            try:
                self._queue.put(event, timeout=HANDOFF_TIMEOUT)
            except queue.Full:
                continue
            self.emitted += 1
            return True
        return False

    def _persist_offset(self):
        try:
            self.offset_store.save(self.source_id, self._offset)
        except OSError as e:
            self.log.warning("%s: could not save offset %d: %s", self.source_id, self._offset, e)

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def _rotated(self) -> bool:
        """Detect rotation by inode change, shrink below the read position, or disappearance."""
        with self._lock:
            if self._file is None:
                return True
            # Skipped lines put the handle ahead of the persisted offset
            inode, position = self._inode, self._file.tell()
        try:
            stat = os.stat(self.path)
        except FileNotFoundError:
            return True
        return stat.st_ino != inode or stat.st_size < position

    def _reopen(self):
        with self._lock:
            if self._file is not None:
                # A renamed or unlinked file stays readable through the old handle
                self._consume(blocking=not self.drop_when_full)
                self._file.close()
                self._file = None

            try:
                self._open()
            except TailerError as e:
                if not self._missing_logged:
                    self.log.warning("%s: %s; will keep retrying", self.source_id, e)
                    self._missing_logged = True
                return

            self._missing_logged = False
            self._offset = 0
            self._persist_offset()
        self.log.info("%s: reopened %s after rotation", self.source_id, self.path)
