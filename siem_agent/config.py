"""
Agent configuration.

Loaded from a YAML file (see configs/agent.yaml), then adjusted by the
SIEM_SERVER_HOST, SIEM_SERVER_PORT and SIEM_AGENT_ID environment variables.
"""

import logging
import os
import socket
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

import yaml

from siem_agent.errors import ConfigError

log = logging.getLogger(__name__)


@dataclass
class ServerConfig:
    host: str = ""
    port: int = 0
    database: str = "siem"
    collection: str = "events"
    ingest_path: str = "/query"
    health_path: str = "/health"
    timeout: float = 10.0

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass
class AgentIdentity:
    id: str = ""
    hostname: str = ""


@dataclass
class LoggingConfig:
    file: str = ""
    level: str = "INFO"


@dataclass
class SourceConfig:
    type: str
    path: str
    enabled: bool = True
    name: str = ""

    @property
    def source_id(self) -> str:
        """Key for the offset file; defaults to the source type."""
        return self.name or self.type


@dataclass
class BufferConfig:
    memory_size: int = 1000
    disk_path: str = "./buffer/buffer.json"
    offsets_dir: str = ".offsets"


@dataclass
class SenderConfig:
    max_batch_size: int = 100
    send_interval: float = 10.0
    retry_interval: float = 5.0
    max_retries: int = 3


@dataclass
class TailerConfig:
    poll_interval: float = 0.5
    reopen_delay: float = 0.1
    queue_size: int = 100
    drop_when_full: bool = True


@dataclass
class AgentConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    agent: AgentIdentity = field(default_factory=AgentIdentity)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    sources: List[SourceConfig] = field(default_factory=list)
    buffer: BufferConfig = field(default_factory=BufferConfig)
    sender: SenderConfig = field(default_factory=SenderConfig)
    tailer: TailerConfig = field(default_factory=TailerConfig)
    fan_in_size: int = 100

    def validate(self):
        if not self.server.host:
            raise ConfigError("server.host is required")
        if self.server.port <= 0:
            raise ConfigError("server.port must be positive")
        if not self.agent.id:
            raise ConfigError("agent.id is required")
        if not self.sources:
            raise ConfigError("at least one source must be configured")
        for source in self.sources:
            if not source.type or not source.path:
                raise ConfigError(f"source {source.source_id!r} needs both type and path")
        if self.buffer.memory_size <= 0:
            raise ConfigError("buffer.memory_size must be positive")
        if self.sender.max_batch_size <= 0:
            raise ConfigError("sender.max_batch_size must be positive")
        if self.sender.send_interval <= 0:
            raise ConfigError("sender.send_interval must be positive")
        if self.sender.max_retries < 0 or self.sender.retry_interval < 0:
            raise ConfigError("sender.max_retries and sender.retry_interval must not be negative")
        if self.tailer.queue_size <= 0 or self.fan_in_size <= 0:
            raise ConfigError("queue sizes must be positive")


# ============================================================================
# LOADING
# ============================================================================

def _section(cls, data: Any, name: str):
    """Build a section dataclass, rejecting unknown keys."""
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"{name} must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"unknown key(s) in {name}: {', '.join(sorted(unknown))}")
    try:
        return cls(**data)
    except TypeError as e:
        raise ConfigError(f"invalid {name}: {e}") from e


def expand_path(path: str) -> str:
    return os.path.expanduser(path) if path else path


def config_from_dict(data: Dict[str, Any]) -> AgentConfig:
    """Build and validate an AgentConfig from a parsed mapping."""
    if not isinstance(data, dict):
        raise ConfigError("configuration must be a mapping")

    raw_sources = data.get("sources") or []
    if not isinstance(raw_sources, list):
        raise ConfigError("sources must be a list")

    cfg = AgentConfig(
        server=_section(ServerConfig, data.get("server"), "server"),
        agent=_section(AgentIdentity, data.get("agent"), "agent"),
        logging=_section(LoggingConfig, data.get("logging"), "logging"),
        sources=[_section(SourceConfig, s, f"sources[{i}]") for i, s in enumerate(raw_sources)],
        buffer=_section(BufferConfig, data.get("buffer"), "buffer"),
        sender=_section(SenderConfig, data.get("sender"), "sender"),
        tailer=_section(TailerConfig, data.get("tailer"), "tailer"),
        fan_in_size=data.get("fan_in_size", 100),
    )

    apply_env_overrides(cfg)

    if not cfg.agent.hostname:
        cfg.agent.hostname = socket.gethostname() or "unknown"

    for source in cfg.sources:
        source.path = expand_path(source.path)
    cfg.logging.file = expand_path(cfg.logging.file)
    cfg.buffer.disk_path = expand_path(cfg.buffer.disk_path)
    cfg.buffer.offsets_dir = expand_path(cfg.buffer.offsets_dir)

    cfg.validate()
    return cfg


def load_config(path: str) -> AgentConfig:
    """Read and validate the YAML configuration file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"config file not found: {path}") from None
    except OSError as e:
        raise ConfigError(f"failed to read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse config {path}: {e}") from e
    return config_from_dict(data or {})


def apply_env_overrides(cfg: AgentConfig, environ: Optional[Dict[str, str]] = None):
    env = os.environ if environ is None else environ

    host = env.get("SIEM_SERVER_HOST")
    if host:
        cfg.server.host = host
        log.info("Server host overridden from env: %s", host)

    port = env.get("SIEM_SERVER_PORT")
    if port:
        try:
            value = int(port)
        except ValueError:
            log.warning("Ignoring non-numeric SIEM_SERVER_PORT=%r", port)
        else:
            if value > 0:
                cfg.server.port = value
                log.info("Server port overridden from env: %d", value)

    agent_id = env.get("SIEM_AGENT_ID")
    if agent_id:
        cfg.agent.id = agent_id
        log.info("Agent ID overridden from env: %s", agent_id)
