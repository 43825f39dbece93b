"""
Shared pytest fixtures.

- `collector`: a local HTTP collector whose failures and health status are
  controlled by the test.
- `agent_config`: factory for a fully populated AgentConfig rooted in tmp_path
  and pointed at the fake collector, with short intervals.
"""

from __future__ import annotations

from pathlib import Path
from threading import Thread
from typing import Callable, Iterator

import pytest

from siem_agent.config import (
    AgentConfig,
    AgentIdentity,
    BufferConfig,
    SenderConfig,
    ServerConfig,
    SourceConfig,
    TailerConfig,
)
from tests.support.collector import FakeCollector, _Handler, _Server


@pytest.fixture
def collector() -> Iterator[FakeCollector]:
    fake = FakeCollector()
    httpd = _Server(("127.0.0.1", 0), _Handler)
    httpd.collector = fake
    fake.port = int(httpd.server_address[1])
    thread = Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield fake
    finally:
        httpd.shutdown()
        httpd.server_close()
        thread.join(timeout=5)


@pytest.fixture
def agent_config(tmp_path: Path, collector: FakeCollector) -> Callable[..., AgentConfig]:
    def build(sources: list[SourceConfig], **overrides) -> AgentConfig:
        cfg = AgentConfig(
            server=ServerConfig(
                host=collector.host,
                port=collector.port,
                database="siem",
                collection="events",
                timeout=2.0,
            ),
            agent=AgentIdentity(id="agent-test", hostname="host-a"),
            sources=sources,
            buffer=BufferConfig(
                memory_size=overrides.pop("memory_size", 100),
                disk_path=str(tmp_path / "buffer" / "buffer.json"),
                offsets_dir=str(tmp_path / "offsets"),
            ),
            sender=SenderConfig(
                max_batch_size=overrides.pop("max_batch_size", 50),
                send_interval=overrides.pop("send_interval", 60.0),
                retry_interval=0.0,
                max_retries=overrides.pop("max_retries", 0),
            ),
            tailer=TailerConfig(poll_interval=0.05, reopen_delay=0.05, queue_size=100),
        )
        assert not overrides, f"unused overrides: {overrides}"
        return cfg

    return build
