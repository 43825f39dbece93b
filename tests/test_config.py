from __future__ import annotations

from pathlib import Path

import pytest

from siem_agent.config import apply_env_overrides, config_from_dict, load_config
from siem_agent.errors import ConfigError

REPO_ROOT = Path(__file__).resolve().parents[1]

MINIMAL = {
    "server": {"host": "collector.local", "port": 8080},
    "agent": {"id": "agent-1", "hostname": "web01"},
    "sources": [{"type": "auth", "path": "/var/log/auth.log"}],
}


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("SIEM_SERVER_HOST", "SIEM_SERVER_PORT", "SIEM_AGENT_ID"):
        monkeypatch.delenv(name, raising=False)


@pytest.mark.unit
def test_sample_config_loads() -> None:
    cfg = load_config(str(REPO_ROOT / "configs" / "agent.yaml"))
    assert cfg.server.port == 8080
    assert [s.type for s in cfg.sources] == ["auth", "syslog", "auditd", "bash_history"]
    assert cfg.sources[2].enabled is False
    assert not cfg.sources[3].path.startswith("~")
    assert cfg.agent.hostname


@pytest.mark.unit
def test_defaults_fill_missing_sections() -> None:
    cfg = config_from_dict(MINIMAL)
    assert cfg.buffer.memory_size == 1000
    assert cfg.sender.max_retries == 3
    assert cfg.tailer.drop_when_full is True
    assert cfg.sources[0].enabled is True
    assert cfg.sources[0].source_id == "auth"


@pytest.mark.unit
def test_env_overrides_win(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SIEM_SERVER_HOST", "10.1.1.1")
    monkeypatch.setenv("SIEM_SERVER_PORT", "9443")
    monkeypatch.setenv("SIEM_AGENT_ID", "agent-env")
    cfg = config_from_dict(MINIMAL)
    assert (cfg.server.host, cfg.server.port, cfg.agent.id) == ("10.1.1.1", 9443, "agent-env")


@pytest.mark.unit
def test_non_numeric_port_override_is_ignored() -> None:
    cfg = config_from_dict(MINIMAL)
    apply_env_overrides(cfg, {"SIEM_SERVER_PORT": "http"})
    assert cfg.server.port == 8080


@pytest.mark.unit
@pytest.mark.parametrize(
    ("patch", "message"),
    [
        ({"server": {"host": "", "port": 8080}}, "server.host"),
        ({"server": {"host": "h", "port": 0}}, "server.port"),
        ({"agent": {"id": ""}}, "agent.id"),
        ({"sources": []}, "at least one source"),
        ({"buffer": {"memory_size": 0}}, "memory_size"),
        ({"sender": {"colour": "blue"}}, "unknown key"),
    ],
)
def test_invalid_config_is_rejected(patch: dict, message: str) -> None:
    data = {**MINIMAL, **patch}
    with pytest.raises(ConfigError, match=message):
        config_from_dict(data)


@pytest.mark.unit
def test_load_config_reports_missing_and_broken_files(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_config(str(tmp_path / "nope.yaml"))

    broken = tmp_path / "broken.yaml"
    broken.write_text("server: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="failed to parse"):
        load_config(str(broken))
