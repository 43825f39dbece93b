"""
Agent supervisor: tailers -> fan-in -> ring buffer -> batch sender.

Lifecycle:
    IDLE -> STARTING -> RUNNING -> STOPPING -> STOPPED

Threads while running:
    per source   replay + watch (inside SourceTailer), forwarder into fan-in
    aggregator   fan-in queue -> RingBuffer.add
    drainer      every send_interval: peek batch, send, remove on success
    main thread  waits for SIGINT/SIGTERM (run())

A single threading.Event is the shared stop signal; every blocking wait is
bounded and re-checks it.
"""

import logging
import queue
import signal
import threading
from enum import Enum
from typing import Callable, List, Optional

from siem_agent.config import AgentConfig, SourceConfig
from siem_agent.errors import (
    AgentError,
    ConfigError,
    DeliveryError,
    InvalidStateError,
    OverflowStoreError,
    StartupError,
    TailerError,
)
from siem_agent.events import Event
from siem_agent.file_tailer import SourceTailer
from siem_agent.normalizer import LogParser, build_parser
from siem_agent.offset_store import OffsetStore
from siem_agent.overflow_store import OverflowStore
from siem_agent.ring_buffer import RingBuffer
from siem_agent.sender import BatchSender

HANDOFF_TIMEOUT = 0.2
SHUTDOWN_TIMEOUT = 10  # seconds to wait for each worker thread


class AgentState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class AgentSupervisor:
    """Owns the tailers, the fan-in point, the buffer and the sender."""

    def __init__(
        self,
        config: AgentConfig,
        parser_factory: Callable[[str], LogParser] = build_parser,
        sender: Optional[BatchSender] = None,
        buffer: Optional[RingBuffer] = None,
        offset_store: Optional[OffsetStore] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.parser_factory = parser_factory
        self.log = logger or logging.getLogger(__name__)

        self._stop = threading.Event()
        self._aggregator_stop = threading.Event()
        self._shutdown_requested = threading.Event()
        self._state_lock = threading.Lock()
        self._drain_lock = threading.Lock()
        self._state = AgentState.IDLE

        self.buffer = buffer or RingBuffer(
            config.buffer.memory_size,
            OverflowStore(config.buffer.disk_path, logger=self.log.getChild("overflow")),
            logger=self.log.getChild("buffer"),
        )
        self.sender = sender or BatchSender(
            config.server,
            config.sender,
            config.agent.id,
            cancel=self._stop,
            logger=self.log.getChild("sender"),
        )
        self.offset_store = offset_store or OffsetStore(
            config.buffer.offsets_dir, logger=self.log.getChild("offsets")
        )

        self.tailers: List[SourceTailer] = []
        self._fan_in: "queue.Queue[Event]" = queue.Queue(maxsize=config.fan_in_size)
        self._forwarders: List[threading.Thread] = []
        self._aggregator: Optional[threading.Thread] = None
        self._drainer: Optional[threading.Thread] = None

        self.add_failures = 0
        self.delivered = 0

    @property
    def state(self) -> AgentState:
        return self._state

    def _transition(self, expected, new: AgentState):
        with self._state_lock:
            if self._state not in expected:
                raise InvalidStateError(f"cannot move from {self._state.value} to {new.value}")
            self._state = new

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def start(self):
        """Open sources and launch worker threads. Raises StartupError if no source opens."""
        self._transition({AgentState.IDLE}, AgentState.STARTING)
        cfg = self.config

        self.log.info("Starting SIEM agent %s", cfg.agent.id)
        self.log.info("Collector: %s:%d (%s/%s)", cfg.server.host, cfg.server.port,
                      cfg.server.database, cfg.server.collection)

        if self.sender.test_connectivity():
            self.log.info("Collector is reachable")
        else:
            self.log.warning("Collector not reachable, will keep retrying on each send")

        for source in cfg.sources:
            tailer = self._open_source(source)
            if tailer is not None:
                self.tailers.append(tailer)

        if not self.tailers:
            self.sender.close()
            self._transition({AgentState.STARTING}, AgentState.STOPPED)
            raise StartupError("no log source could be initialized")

        for tailer in self.tailers:
            thread = threading.Thread(
                target=self._forward, args=(tailer,), name=f"forward-{tailer.source_id}", daemon=True
            )
            self._forwarders.append(thread)
            thread.start()

        self._aggregator = threading.Thread(target=self._aggregate, name="aggregator", daemon=True)
        self._aggregator.start()
        self._drainer = threading.Thread(target=self._periodic_drain, name="drainer", daemon=True)
        self._drainer.start()

        self._transition({AgentState.STARTING}, AgentState.RUNNING)
        self.log.info("Agent running with %d source(s)", len(self.tailers))

    def _open_source(self, source: SourceConfig) -> Optional[SourceTailer]:
        """Build and start one tailer; failures are logged and skipped."""
        if not source.enabled:
            self.log.info("Source %s is disabled, skipping", source.source_id)
            return None

        try:
            parser = self.parser_factory(source.type)
        except ConfigError as e:
            self.log.error("Source %s skipped: %s", source.source_id, e)
            return None

        tcfg = self.config.tailer
        tailer = SourceTailer(
            source.source_id,
            source.path,
            parser,
            self.config.agent.hostname,
            self.offset_store,
            queue_size=tcfg.queue_size,
            poll_interval=tcfg.poll_interval,
            reopen_delay=tcfg.reopen_delay,
            drop_when_full=tcfg.drop_when_full,
            stop_event=self._stop,
            logger=self.log.getChild(f"tailer.{source.source_id}"),
        )
        try:
            tailer.start()
        except TailerError as e:
            self.log.error("Source %s skipped: %s", source.source_id, e)
            return None
        return tailer

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _forward(self, tailer: SourceTailer):
        """Move one tailer's events into the shared fan-in queue, in order."""
        for event in tailer.events():
            while True:
                try:
                    self._fan_in.put(event, timeout=HANDOFF_TIMEOUT)
                    break
                except queue.Full:
                    if self._aggregator_stop.is_set():
                        self.log.warning("Fan-in closed, dropping event from %s", tailer.source_id)
                        break

    def _aggregate(self):
        """Single consumer of the fan-in queue; drains it fully before exiting."""
        while True:
            try:
                event = self._fan_in.get(timeout=HANDOFF_TIMEOUT)
            except queue.Empty:
                if self._aggregator_stop.is_set():
                    return
                continue
            self._add(event)

    def _add(self, event: Event):
        try:
            self.buffer.add(event)
        except AgentError as e:
            self.add_failures += 1
            self.log.error("Could not buffer event from %s, dropping it: %s", event.source, e)

    def _periodic_drain(self):
        interval = self.config.sender.send_interval
        while not self._stop.wait(interval):
            try:
                self._drain_cycle()
            except Exception:
                self.log.exception("Drain cycle failed, retrying on the next tick")

    # ------------------------------------------------------------------
    # Draining
    # ------------------------------------------------------------------

    def drain(self) -> int:
        """Run one drain cycle now. Returns the number of events delivered."""
        if self._state == AgentState.STOPPED:
            raise InvalidStateError("agent is stopped")
        return self._drain_cycle()

    def _drain_cycle(self) -> int:
        with self._drain_lock:
            pending = self.buffer.size()
            if pending == 0:
                return 0

            batch = self.buffer.peek_batch(self.config.sender.max_batch_size)
            if not batch:
                return 0
            self.log.debug("Draining %d of %d buffered event(s)", len(batch), pending)

            try:
                self.sender.send(batch)
            except DeliveryError as e:
                self.log.error("Delivery failed, %d event(s) stay buffered: %s", len(batch), e)
                return 0

            removed = self.buffer.discard_delivered(batch)
            self.delivered += len(batch)
            if removed != len(batch):
                self.log.warning(
                    "Buffer spilled during delivery; %d delivered event(s) remain in the snapshot",
                    len(batch) - removed,
                )
            return len(batch)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def stop(self) -> bool:
        """
        Stop every worker, drain once more and flush the buffer to disk.

        Returns False when the final flush failed. A second call is a no-op.
        """
        with self._state_lock:
            if self._state in (AgentState.STOPPING, AgentState.STOPPED):
                return True
            if self._state == AgentState.IDLE:
                self._state = AgentState.STOPPED
                return True
            self._state = AgentState.STOPPING

        self.log.info("Stopping agent...")
        self._stop.set()

        for tailer in self.tailers:
            tailer.stop()
        for thread in self._forwarders:
            thread.join(timeout=SHUTDOWN_TIMEOUT)

        self._aggregator_stop.set()
        for thread in (self._aggregator, self._drainer):
            if thread is not None:
                thread.join(timeout=SHUTDOWN_TIMEOUT)

        self._drain_cycle()

        ok = True
        try:
            written = self.buffer.flush()
        except OverflowStoreError as e:
            self.log.error("Could not save buffer to disk: %s", e)
            ok = False
        else:
            if written:
                self.log.info("Saved %d undelivered event(s) to disk", written)

        self.sender.close()
        self._state = AgentState.STOPPED
        self.log.info("Agent stopped")
        return ok

    def request_shutdown(self):
        self._shutdown_requested.set()

    def install_signal_handlers(self):
        """Route SIGINT/SIGTERM to a shutdown request. Main thread only."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        if not self._shutdown_requested.is_set():
            self.log.info("Received signal %d, shutting down...", signum)
            self.request_shutdown()

    def run(self) -> bool:
        """Start, block until a shutdown request, then stop."""
        self.start()
        self.install_signal_handlers()
        try:
            while not self._shutdown_requested.wait(1.0):
                pass
        except KeyboardInterrupt:
            self.log.info("Interrupted, shutting down...")
        return self.stop()
