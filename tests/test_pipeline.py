from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from siem_agent.config import SourceConfig
from siem_agent.errors import InvalidStateError, StartupError
from siem_agent.pipeline import AgentState, AgentSupervisor
from tests.support.collector import FakeCollector
from tests.support.helpers import wait_for

AUTH_LINES = [
    "Jun 1 12:00:00 web01 sshd[101]: Accepted publickey for alice from 10.0.0.2 port 50000 ssh2",
    "Jun 1 12:00:05 web01 sudo: alice : TTY=pts/0 ; PWD=/home/alice ; USER=root ; COMMAND=/bin/rm -rf /tmp/x",
    "Jun 1 12:00:09 web01 login[7]: pam_unix(login:auth): authentication failure; user=bob",
]


def write_lines(path: Path, lines: list[str], mode: str = "w") -> None:
    with open(path, mode, encoding="utf-8") as f:
        f.write("".join(line + "\n" for line in lines))


@pytest.fixture
def auth_log(tmp_path: Path) -> Path:
    path = tmp_path / "auth.log"
    write_lines(path, AUTH_LINES)
    return path


@pytest.mark.integration
def test_events_flow_from_file_to_collector(agent_config, collector: FakeCollector, auth_log: Path) -> None:
    cfg = agent_config([SourceConfig(type="auth", path=str(auth_log))])
    agent = AgentSupervisor(cfg)
    agent.start()
    try:
        assert agent.state is AgentState.RUNNING
        assert wait_for(lambda: agent.buffer.size() == 3)
        assert agent.drain() == 3
        assert agent.buffer.size() == 0

        write_lines(auth_log, ["Jun 1 12:01:00 web01 systemd[1]: Started Session 4."], mode="a")
        assert wait_for(lambda: agent.buffer.size() == 1)
        assert agent.drain() == 1
    finally:
        assert agent.stop() is True

    delivered = collector.delivered_events()
    assert [e["raw_log"] for e in delivered[:3]] == AUTH_LINES
    assert delivered[1]["severity"] == "high"
    assert delivered[3]["event_type"] == "systemd_event"
    assert agent.state is AgentState.STOPPED
    assert not Path(cfg.buffer.disk_path).exists()


@pytest.mark.integration
def test_failed_delivery_keeps_batch_and_survives_restart(
    agent_config, collector: FakeCollector, auth_log: Path
) -> None:
    collector.fail_first = 1000
    cfg = agent_config([SourceConfig(type="auth", path=str(auth_log))])

    agent = AgentSupervisor(cfg)
    agent.start()
    assert wait_for(lambda: agent.buffer.size() == 3)
    assert agent.drain() == 0
    assert agent.buffer.size() == 3
    agent.stop()

    snapshot = json.loads(Path(cfg.buffer.disk_path).read_text(encoding="utf-8"))
    assert [e["raw_log"] for e in snapshot] == AUTH_LINES

    # Next start recovers the snapshot and does not re-read consumed lines
    collector.fail_first = 0
    collector.requests.clear()
    restarted = AgentSupervisor(cfg)
    assert restarted.buffer.size() == 3
    assert not Path(cfg.buffer.disk_path).exists()
    restarted.start()
    try:
        assert restarted.drain() == 3
    finally:
        restarted.stop()
    assert [e["raw_log"] for e in collector.delivered_events()] == AUTH_LINES


@pytest.mark.integration
def test_small_buffer_spills_to_disk(agent_config, collector: FakeCollector, auth_log: Path) -> None:
    collector.fail_first = 1000
    cfg = agent_config([SourceConfig(type="auth", path=str(auth_log))], memory_size=2)
    agent = AgentSupervisor(cfg)
    agent.start()
    try:
        assert wait_for(lambda: Path(cfg.buffer.disk_path).exists())
        assert wait_for(lambda: agent.buffer.size() == 1)
    finally:
        agent.stop()

    snapshot = json.loads(Path(cfg.buffer.disk_path).read_text(encoding="utf-8"))
    assert [e["raw_log"] for e in snapshot] == AUTH_LINES


@pytest.mark.integration
def test_unhealthy_collector_does_not_block_startup(
    agent_config, collector: FakeCollector, auth_log: Path
) -> None:
    """A 503 health check is reported but the agent still runs its drain timer."""
    collector.health_status = 503
    cfg = agent_config([SourceConfig(type="auth", path=str(auth_log))], send_interval=0.1)
    agent = AgentSupervisor(cfg)
    assert agent.sender.test_connectivity() is False

    agent.start()
    try:
        assert agent.state is AgentState.RUNNING
        assert agent._drainer is not None and agent._drainer.is_alive()
        assert wait_for(lambda: len(collector.delivered_events()) == 3)
    finally:
        agent.stop()


@pytest.mark.integration
def test_unexpected_send_error_does_not_end_periodic_drain(
    agent_config, collector: FakeCollector, auth_log: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    cfg = agent_config([SourceConfig(type="auth", path=str(auth_log))], send_interval=0.05)
    agent = AgentSupervisor(cfg)
    real_send = agent.sender.send
    calls: list[int] = []

    def flaky_send(batch):
        calls.append(len(batch))
        if len(calls) == 1:
            raise RuntimeError("connection pool exploded")
        return real_send(batch)

    monkeypatch.setattr(agent.sender, "send", flaky_send)
    agent.start()
    try:
        assert wait_for(lambda: len(collector.delivered_events()) == 3)
        assert len(calls) >= 2
        assert agent._drainer is not None and agent._drainer.is_alive()
    finally:
        agent.stop()


@pytest.mark.integration
def test_bad_sources_are_skipped(agent_config, tmp_path: Path, auth_log: Path) -> None:
    cfg = agent_config([
        SourceConfig(type="auth", path=str(tmp_path / "missing.log")),
        SourceConfig(type="journald", path=str(auth_log), name="journal"),
        SourceConfig(type="syslog", path=str(auth_log), enabled=False),
        SourceConfig(type="auth", path=str(auth_log)),
    ])
    agent = AgentSupervisor(cfg)
    agent.start()
    try:
        assert [t.source_id for t in agent.tailers] == ["auth"]
    finally:
        agent.stop()


@pytest.mark.integration
def test_no_usable_source_is_fatal(agent_config, tmp_path: Path) -> None:
    cfg = agent_config([SourceConfig(type="auth", path=str(tmp_path / "missing.log"))])
    agent = AgentSupervisor(cfg)
    with pytest.raises(StartupError):
        agent.start()
    assert agent.state is AgentState.STOPPED
    with pytest.raises(InvalidStateError):
        agent.start()


@pytest.mark.integration
def test_stopped_agent_rejects_further_operations(agent_config, auth_log: Path) -> None:
    cfg = agent_config([SourceConfig(type="auth", path=str(auth_log))])
    agent = AgentSupervisor(cfg)
    agent.start()
    assert agent.stop() is True
    assert agent.stop() is True
    with pytest.raises(InvalidStateError):
        agent.drain()
    with pytest.raises(InvalidStateError):
        agent.start()


@pytest.mark.integration
def test_per_source_order_is_preserved(agent_config, collector: FakeCollector, tmp_path: Path) -> None:
    history = tmp_path / "history"
    write_lines(history, [f"echo {i}" for i in range(40)])
    cfg = agent_config([SourceConfig(type="bash_history", path=str(history))], max_batch_size=7)
    agent = AgentSupervisor(cfg)
    agent.start()
    try:
        assert wait_for(lambda: agent.buffer.size() == 40)
        while agent.buffer.size():
            assert agent.drain() > 0
    finally:
        agent.stop()

    assert [e["command"] for e in collector.delivered_events()] == [f"echo {i}" for i in range(40)]
    assert max(len(body["events"]) for body in collector.requests) == 7


@pytest.mark.integration
def test_request_shutdown_unblocks_run(agent_config, auth_log: Path) -> None:
    cfg = agent_config([SourceConfig(type="auth", path=str(auth_log))])
    agent = AgentSupervisor(cfg)
    agent.install_signal_handlers = lambda: None  # signal.signal needs the main thread
    result: list[bool] = []
    runner = threading.Thread(target=lambda: result.append(agent.run()))
    runner.start()
    assert wait_for(lambda: agent.state is AgentState.RUNNING)
    agent.request_shutdown()
    runner.join(timeout=10)
    assert result == [True]
    assert agent.state is AgentState.STOPPED
